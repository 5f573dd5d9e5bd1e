"""Exception taxonomy for the conversation service."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for all conversation-service errors."""


class ValidationError(ChatError, ValueError):
    """Submission rejected before any state was touched (e.g. empty text)."""


class BusyError(ChatError):
    """A turn is already in flight for this session."""


class DeliveryError(ChatError):
    """The remote completion backend failed or broke mid-stream."""


# Stable, user-facing auth error codes
EMAIL_IN_USE = "email-in-use"
INVALID_EMAIL = "invalid-email"
USER_NOT_FOUND = "user-not-found"
WRONG_PASSWORD = "wrong-password"
AUTH_FAILED = "auth-failed"

_AUTH_MESSAGES = {
    EMAIL_IN_USE: "Email already registered.",
    INVALID_EMAIL: "Please enter a valid email address.",
    USER_NOT_FOUND: "No account found for that email.",
    WRONG_PASSWORD: "Incorrect password.",
    AUTH_FAILED: "Authentication failed.",
}


class AuthError(ChatError):
    """Identity failure mapped onto a small fixed set of codes."""

    def __init__(self, code: str, message: str | None = None) -> None:
        if code not in _AUTH_MESSAGES:
            code = AUTH_FAILED
        self.code = code
        super().__init__(message or _AUTH_MESSAGES[code])
