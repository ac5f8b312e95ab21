"""Typed failures raised by chat commands."""

from __future__ import annotations

from datetime import datetime

from fastapi import status


class ChatError(Exception):
    """Base class for command failures surfaced to the caller."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "chat_error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)

    def to_payload(self) -> dict[str, object]:
        return {"detail": self.detail, "code": self.code}


class InvalidBody(ChatError):
    """Message body is empty or malformed."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_body"


class AuthorSuspended(ChatError):
    """Author is suspended and cannot send messages."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "author_suspended"

    def __init__(self, until: datetime, detail: str | None = None) -> None:
        self.until = until
        super().__init__(detail or f"Author is suspended until {until.isoformat()}")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["until"] = self.until.isoformat()
        return payload


class NotFound(ChatError):
    """Requested entity does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Forbidden(ChatError):
    """Caller is not allowed to perform this action."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class InvalidReport(ChatError):
    """Report cannot be accepted."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_report"


class Transient(ChatError):
    """Service temporarily unavailable, safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "transient"
    retry_after_seconds = 1


__all__ = [
    "ChatError",
    "InvalidBody",
    "AuthorSuspended",
    "NotFound",
    "Forbidden",
    "InvalidReport",
    "Transient",
]
