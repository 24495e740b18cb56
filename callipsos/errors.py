"""Application errors and how they surface to API clients."""

from __future__ import annotations

import logging
import sqlite3

log = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"
_INTERNAL_MESSAGE = "Internal server error"


class AppError(Exception):
    """Base class for errors that map to an HTTP status and a JSON error body."""

    status_code: int = 500
    label: str = "Internal error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.label}: {self.message}"

    def body(self) -> dict:
        """The JSON body sent to the client."""
        return {"error": self.message}


class DatabaseError(AppError):
    """A storage failure; its details are logged, never shown to clients."""

    status_code = 500
    label = "Database error"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause

    def body(self) -> dict:
        log.error("Database error: %s", self.message)
        return {"error": _INTERNAL_MESSAGE}


class NotFound(AppError):
    status_code = 404
    label = "Not found"


class BadRequest(AppError):
    status_code = 400
    label = "Bad request"


class Conflict(AppError):
    status_code = 409
    label = "Conflict"


class InternalError(AppError):
    """An unexpected failure; its details are logged, never shown to clients."""

    status_code = 500
    label = "Internal error"

    def body(self) -> dict:
        log.error("Internal error: %s", self.message)
        return {"error": _INTERNAL_MESSAGE}


def _constraint_code(exc: BaseException) -> str | None:
    for attribute in ("sqlstate", "pgcode"):
        code = getattr(exc, attribute, None)
        if code:
            return str(code)
    if isinstance(exc, sqlite3.IntegrityError):
        text = str(exc).upper()
        if text.startswith("UNIQUE CONSTRAINT FAILED") or text.startswith(
            "PRIMARY KEY CONSTRAINT FAILED"
        ):
            return _UNIQUE_VIOLATION
        if text.startswith("FOREIGN KEY CONSTRAINT FAILED"):
            return _FOREIGN_KEY_VIOLATION
    return None


def from_db(exc: BaseException) -> AppError:
    """Map a storage exception to an application error.

    Unique violations become Conflict (409), foreign key violations NotFound
    (404), anything else DatabaseError (500). Application errors pass through.
    """
    if isinstance(exc, AppError):
        return exc
    code = _constraint_code(exc)
    if code == _UNIQUE_VIOLATION:
        return Conflict("Resource already exists")
    if code == _FOREIGN_KEY_VIOLATION:
        return NotFound("Referenced resource not found")
    return DatabaseError(exc)