class EngagementError(Exception):
    """Request-level failure reported to the caller as a structured error."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(EngagementError):
    status_code = 401


class TurnValidationError(EngagementError):
    status_code = 400


class SessionNotFoundError(EngagementError):
    status_code = 404
