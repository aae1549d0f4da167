from typing import Optional


class FinanceAPIError(Exception):
    """Base class for failures surfaced by the remote finance API layer."""

    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class Unauthenticated(FinanceAPIError):
    default_message = "Not authenticated"


class SessionExpired(FinanceAPIError):
    default_message = "Session expired"


class RequestFailed(FinanceAPIError):
    def __init__(self, message: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ParseFailed(RequestFailed):
    default_message = "Request failed: unreadable server response"


class ValidationFailed(ValueError):
    """Client-side rejection; raised before anything reaches the network."""
