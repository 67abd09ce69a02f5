"""Error taxonomy surfaced to API callers.

Each error carries a machine-readable ``kind`` so clients (the userscript,
the recovery page) can branch on it without parsing messages.  Acquisition
failures are deliberately absent: a failed download is reported by the
backing file staying absent, never by an exception.
"""

from __future__ import annotations

from typing import Any


class ArchiveError(Exception):
    """Base class for errors returned to the caller with a ``kind``."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": False, "error": self.kind, "message": self.message}
        body.update(self.extra)
        return body


class InvalidInputError(ArchiveError):
    """Missing or malformed request fields, rejected before any side effect."""

    kind = "invalid_input"
    status_code = 400


class RecordNotFoundError(ArchiveError):
    kind = "not_found"
    status_code = 404


class QuotaExhaustedError(ArchiveError):
    """The visitor has no free or paid recoveries left."""

    kind = "quota_exhausted"
    status_code = 402
