from __future__ import annotations


class ChatError(Exception):
    """Base class for failures surfaced to the view layer.

    ``user_message`` is safe to render inline next to the action that failed;
    it is ``None`` when the raiser had nothing more specific than the
    action's own failure text.
    """

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(message or user_message or self.default_message)
        self.user_message = user_message

    def display_message(self, fallback: str | None = None) -> str:
        return self.user_message or fallback or self.default_message


class Unauthenticated(ChatError):
    default_message = "Not authenticated"


class NotFound(ChatError):
    default_message = "Not found"


class Invalid(ChatError):
    default_message = "Invalid request"


class Transient(ChatError):
    default_message = "Network error. Please try again."
