"""Error taxonomy for the session and notification core."""


class CareLinkError(Exception):
    """Base class. `message` is always safe to show to an end user."""

    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthError(CareLinkError):
    default_message = "Authentication failed"


class InvalidCredentials(AuthError):
    default_message = "Invalid username or password"


class InvalidServerResponse(AuthError):
    default_message = "Login failed: invalid server response"


class SessionExpiredError(AuthError):
    default_message = "Your session has expired. Please sign in again."


class NetworkError(CareLinkError):
    default_message = "No response from server. Please check your connection."


class ApiError(CareLinkError):
    default_message = "The server could not process the request"

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(CareLinkError):
    default_message = "Could not access local session storage"


class ChannelError(CareLinkError):
    default_message = "Realtime connection failed"


class ReconciliationError(CareLinkError):
    default_message = "Notification state could not be synchronised"
