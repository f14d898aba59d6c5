from journey_engine.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str, str]] = {
    404: ("not_found", "Journey not found", "/journeys/journey_missing"),
    409: ("conflict", "Enrollment has already finished", "/journeys/enrollments/enroll_done/exit"),
    422: ("validation_error", "Validation failed", "/journeys"),
    500: ("integrity_error", "Record could not be serialized", "/journeys/events"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    """OpenAPI ``responses`` entries documenting the error envelope for each status."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message, path = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error", "/journeys"))
        details = None
        if code == "validation_error":
            details = [{"field": "nodes", "message": "Duplicate node id 'goal-1'", "type": "value_error"}]
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": path,
                            "details": details,
                        }
                    }
                }
            },
        }
    return responses
