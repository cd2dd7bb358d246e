"""
Typed failures raised by PharmDesk.

Every error carries:

- ``code``:    a stable machine-readable identifier
- ``message``: the human-readable explanation shown to staff
- ``detail``:  optional extra context (dict / list / None)

Callers distinguish "you lack permission" (``AuthorizationError``) from
"this record is administratively locked" (``LockedRecordError``) from
"the database rejected the write" (``StorageError``); each calls for a
different operator action.
"""

from __future__ import annotations

from typing import Any, Optional


class PharmDeskError(Exception):
    """Base class for all PharmDesk errors."""

    code = "PHARMDESK_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)


class AuthorizationError(PharmDeskError):
    """The actor's role does not permit the attempted operation."""

    code = "NOT_AUTHORIZED"


class LockedRecordError(PharmDeskError):
    """The record is locked by an administrator."""

    code = "RECORD_LOCKED"


class StorageError(PharmDeskError):
    """The underlying store rejected or failed an operation."""

    code = "STORAGE_ERROR"


class ValidationError(PharmDeskError):
    """A field is missing, malformed or outside its allowed values."""

    code = "VALIDATION_ERROR"


class InvalidTransitionError(PharmDeskError):
    """The requested status change is not allowed from the current state."""

    code = "INVALID_TRANSITION"


class RecordNotFoundError(PharmDeskError):
    code = "RECORD_NOT_FOUND"


class ConflictError(PharmDeskError):
    """Another writer changed the record between read and write."""

    code = "CONCURRENT_UPDATE"


class EnrichmentError(PharmDeskError):
    """The enrichment gateway could not produce an assessment."""

    code = "ENRICHMENT_FAILED"
