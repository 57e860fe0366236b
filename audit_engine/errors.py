"""
Error taxonomy for the engine.

Every rejected operation raises one of these. They subclass
ValueError so callers that only care about "the request was
bad" can keep catching ValueError. Each error knows its HTTP
status and a stable code, and renders a structured reason.
"""


class EngineError(ValueError):
    status_code: int = 400
    code: str = "EngineError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(EngineError):
    """Malformed or incomplete input. Nothing was changed."""
    status_code = 422
    code = "ValidationError"


class InvalidTransition(EngineError):
    """A state machine rule was violated. Current state is unchanged."""
    status_code = 409
    code = "InvalidTransition"


class Conflict(EngineError):
    """A concurrent writer won the race. Re-fetch and retry."""
    status_code = 409
    code = "Conflict"


class NotFound(EngineError):
    status_code = 404
    code = "NotFound"


class UpstreamTimeout(EngineError):
    """An external oracle did not answer in time."""
    status_code = 504
    code = "UpstreamTimeout"


class StorageError(EngineError):
    """Append or read against the store failed."""
    status_code = 503
    code = "StorageError"
