"""Core utilities for the SafeYou backend."""

from .errors import (
    AuthorSuspended,
    ChatError,
    Forbidden,
    InvalidBody,
    InvalidReport,
    NotFound,
    Transient,
)

__all__ = [
    "ChatError",
    "InvalidBody",
    "AuthorSuspended",
    "NotFound",
    "Forbidden",
    "InvalidReport",
    "Transient",
]
