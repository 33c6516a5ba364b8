"""Typed outcomes raised by the directory and its store.

Domain outcomes (``DuplicateConflict``, ``NotFound``) are kept apart from
infrastructure failures (``TransientUnavailable``, ``StoreUnavailable``) so the
HTTP layer can pick a status code and callers can decide whether to retry.
"""
from __future__ import annotations
from typing import Optional


class DirectoryError(Exception):
    code = "DIRECTORY_ERROR"
    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationFailure(DirectoryError):
    code = "VALIDATION_ERROR"
    status_code = 400


class DuplicateConflict(DirectoryError):
    code = "DUPLICATE_ERROR"
    status_code = 409

    def __init__(self, field: str):
        super().__init__(f"{field} already exists", field=field)


class NotFound(DirectoryError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404


class TransientUnavailable(DirectoryError):
    """Cache or filter backend unreachable. Recovered locally; kept for callers
    that probe a backend directly."""
    code = "CACHE_UNAVAILABLE"
    status_code = 503


class StoreUnavailable(DirectoryError):
    code = "DATABASE_ERROR"
    status_code = 503
