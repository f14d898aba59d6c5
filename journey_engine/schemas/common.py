from pydantic import BaseModel, ConfigDict


class PaginationMeta(BaseModel):
    total: int
    limit: int
    offset: int
    count: int
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total": 120,
                "limit": 50,
                "offset": 0,
                "count": 50,
                "has_next": True,
            }
        }
    )

    @classmethod
    def for_page(cls, *, total: int, limit: int, offset: int, count: int) -> "PaginationMeta":
        return cls(total=total, limit=limit, offset=offset, count=count, has_next=offset + count < total)


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "conflict",
                    "message": "Enrollment enroll_3kTMd92xHq was modified concurrently",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/journeys/enrollments/enroll_3kTMd92xHq/exit",
                    "details": None,
                }
            }
        }
    )
