from typing import Optional


class FieldError(Exception):
    """Input rejected locally before any store call."""

    def __init__(self, field: Optional[str], message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class NotFoundError(Exception):
    pass


class TransitionError(Exception):
    """A booking lifecycle rule forbids the requested change."""
