"""
Error taxonomy for the chat service.

Every failure surfaced to a client is a ChatError subclass carrying the HTTP
status it maps to. The exception handlers in main.py turn them into the JSON
error body.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for errors reported to chat clients."""

    status_code = 500
    result = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message}


class Forbidden(ChatError):
    """Anti-forgery token missing or wrong."""

    status_code = 403
    result = "forbidden"

    def __init__(self, message: str = "Invalid CSRF token"):
        super().__init__(message)


class RateLimited(ChatError):
    """The session posted again before its interval elapsed."""

    status_code = 429
    result = "rate_limited"

    def __init__(self, message: str = "You are sending messages too quickly. Please slow down."):
        super().__init__(message)


class InvalidInput(ChatError):
    """A request field failed validation. Always names the field."""

    status_code = 422
    result = "invalid_input"

    def __init__(self, field: str, reason: str, message: Optional[str] = None):
        super().__init__(message or f"{field} {reason}")
        self.field = field
        self.reason = reason

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["field"] = self.field
        body["reason"] = self.reason
        return body


class ServerError(ChatError):
    """Storage or transaction failure. Carries no internal detail."""

    status_code = 500
    result = "error"

    def __init__(self, message: str = "Server error"):
        super().__init__(message)
