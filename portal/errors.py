"""Row-level error taxonomy for roster ingestion.

Every row error carries the row locator (email when known, otherwise a
1-based ``Row N`` label) and is recovered into a failed row outcome by the
batch orchestrator; none of them aborts a batch.
"""
from __future__ import annotations

from typing import Any


class RowError(Exception):
    """Base class for errors scoped to a single roster row."""

    def __init__(self, row_locator: str, reason: str, details: dict[str, Any] | None = None):
        super().__init__(reason)
        self.row_locator = row_locator
        self.reason = reason
        self.details = dict(details or {})


class RowValidationError(RowError):
    """A mapped field is missing or empty; the row has no side effects."""


class DuplicateError(RowError):
    """The row collides with an existing identity."""


class PersistenceError(RowError):
    """A store write failed while enrolling the row."""


class NotifyError(Exception):
    """Welcome notification could not be delivered. Logged only."""

    def __init__(self, email: str, reason: str):
        super().__init__(f"Welcome email to {email} failed: {reason}")
        self.email = email
        self.reason = reason


def row_label(index: int) -> str:
    """Label for a 0-based row index."""
    return f"Row {index + 1}"
