class EventHubError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

class ValidationError(EventHubError):
    """Malformed or missing input."""
    status_code = 400

class AuthorizationError(EventHubError):
    """Caller lacks the role or ownership required."""
    status_code = 403

class NotFoundError(EventHubError):
    status_code = 404

class CapacityExceededError(EventHubError):
    status_code = 409

class AlreadyJoinedError(EventHubError):
    status_code = 409

class NotJoinedError(EventHubError):
    status_code = 409

class ConflictError(EventHubError):
    """State transition not allowed from the record's current state."""
    status_code = 409
