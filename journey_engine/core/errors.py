class JourneyEngineError(Exception):
    """Base class for errors raised by the journey engine."""


class RecordIntegrityError(JourneyEngineError):
    """A record could not be serialized; the intended payload was written to a backup file."""

    def __init__(self, message: str, *, backup_path: str | None = None):
        super().__init__(message)
        self.backup_path = backup_path


class NodeConfigError(JourneyEngineError):
    def __init__(self, node_id: str, message: str):
        super().__init__(f"Node '{node_id}' has invalid configuration: {message}")
        self.node_id = node_id
        self.message = message


class ActionExecutionError(JourneyEngineError):
    pass


class EnrollmentConflictError(JourneyEngineError):
    """The enrollment was modified by a concurrent writer."""
