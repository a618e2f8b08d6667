"""Row normalization: positional roster rows to typed enrollment candidates.

Column positions are a fixed contract with the upload format:

    faculty:  external_id, email, name, department
    student:  external_id, name, email, department

Student rows take their batch name from the upload form, not the file.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from ..errors import RowValidationError, row_label

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Enrollment roles."""
    FACULTY = "faculty"
    STUDENT = "student"


COLUMN_LAYOUT: dict[Role, tuple[str, ...]] = {
    Role.FACULTY: ("external_id", "email", "name", "department"),
    Role.STUDENT: ("external_id", "name", "email", "department"),
}


@dataclass(frozen=True)
class Candidate:
    """Validated identity waiting for deduplication and enrollment."""
    external_id: str
    name: str
    email: str
    department: str
    role: Role
    provisional_password: str
    batch_name: str | None = None

    @property
    def locator(self) -> str:
        return self.email


def describe_layout(role: Role) -> str:
    """Human-readable column order, used in API docs and CLI help."""
    return ", ".join(COLUMN_LAYOUT[role])


def _clean(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_candidate(
    role: Role,
    *,
    external_id: object,
    name: object,
    email: object,
    department: object,
    provisional_password: str,
    batch_name: object = None,
    locator: str | None = None,
) -> Candidate:
    """Build a candidate from named fields.

    Args:
        role: Target role
        external_id: Institution-issued identifier
        name: Display name
        email: Login email (lower-cased)
        department: Department name
        provisional_password: Initial password for the account
        batch_name: Cohort name, required for students
        locator: Fallback row locator when the email is missing

    Returns:
        Frozen Candidate

    Raises:
        RowValidationError: If any required field is empty
    """
    fields = {
        "external_id": _clean(external_id),
        "name": _clean(name),
        "email": _clean(email).lower(),
        "department": _clean(department),
    }
    if role is Role.STUDENT:
        fields["batch_name"] = _clean(batch_name)

    missing = [key for key, value in fields.items() if not value]
    if not provisional_password:
        missing.append("provisional_password")
    if missing:
        row_locator = fields["email"] or locator or "unknown"
        raise RowValidationError(row_locator, f"Missing attributes: {', '.join(missing)}")

    return Candidate(
        external_id=fields["external_id"],
        name=fields["name"],
        email=fields["email"],
        department=fields["department"],
        role=role,
        provisional_password=provisional_password,
        batch_name=fields.get("batch_name"),
    )


def normalize_row(
    row: Sequence[str],
    role: Role,
    batch_name: str | None = None,
    *,
    index: int,
    provisional_password: str,
) -> Candidate:
    """Map a positional roster row onto a candidate.

    Args:
        row: Raw row fields in file order
        role: Role shared by every row of the upload
        batch_name: Cohort name for student uploads
        index: 0-based row index, used for the locator when email is empty
        provisional_password: Initial password for the account

    Raises:
        RowValidationError: If any mapped field is empty
    """
    layout = COLUMN_LAYOUT[role]
    values = {key: row[pos] if pos < len(row) else "" for pos, key in enumerate(layout)}
    return build_candidate(
        role,
        provisional_password=provisional_password,
        batch_name=batch_name,
        locator=row_label(index),
        **values,
    )
