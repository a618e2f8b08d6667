"""Duplicate resolution against the identity registries.

Lookups here are an early exit only. The unique constraints on the account
and role tables remain the authoritative guard when two enrollments race
(see ``portal.pipelines.enrollment``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models
from ..errors import DuplicateError, row_label
from .normalization import Candidate

logger = logging.getLogger(__name__)

_KEY_LABELS = {"external_id": "ID", "email": "email"}


@dataclass
class Resolution:
    """Outcome of a duplicate check."""
    accepted: bool
    reason: str | None = None
    existing: dict[str, Any] | None = None

    def raise_if_rejected(self, candidate: Candidate) -> None:
        if not self.accepted:
            raise DuplicateError(candidate.locator, self.reason or "Duplicate identity", self.existing)


@dataclass
class BatchClaims:
    """First row of an upload to use each email / external id.

    Built in file order before rows are dispatched, so later repeats inside
    the same upload are rejected deterministically whichever task runs first.
    """
    first_row: dict[tuple[str, str], int] = field(default_factory=dict)

    @classmethod
    def from_candidates(cls, indexed: Iterable[tuple[int, Candidate]]) -> BatchClaims:
        claims = cls()
        for index, candidate in indexed:
            for key in _KEY_LABELS:
                claims.first_row.setdefault((key, getattr(candidate, key)), index)
        return claims

    def conflict(self, candidate: Candidate, row_index: int) -> tuple[str, str, int] | None:
        """Return (key, value, earlier_row) if an earlier row claimed one of our keys."""
        for key in _KEY_LABELS:
            value = getattr(candidate, key)
            owner = self.first_row.get((key, value), row_index)
            if owner != row_index:
                return key, value, owner
        return None


def record_details(record: models.Faculty | models.Student | Candidate) -> dict[str, Any]:
    """Identity fields surfaced in failure reports."""
    return {
        "external_id": record.external_id,
        "name": record.name,
        "email": record.email,
        "department": record.department,
    }


class DuplicateResolver:
    """Check a candidate against the account and role registries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        claims: BatchClaims | None = None,
    ):
        self._session_factory = session_factory
        self._claims = claims

    async def resolve(self, candidate: Candidate, row_index: int | None = None) -> Resolution:
        """Accept or reject a candidate.

        Order: earlier rows of the same upload, then the account registry by
        email, then the role registry by email or external id.
        """
        if self._claims is not None and row_index is not None:
            conflict = self._claims.conflict(candidate, row_index)
            if conflict:
                key, value, owner = conflict
                return Resolution(
                    accepted=False,
                    reason=f"Duplicate {_KEY_LABELS[key]} '{value}' in upload (first used by {row_label(owner)}).",
                    existing=record_details(candidate),
                )

        role_model = models.ROLE_MODELS[candidate.role.value]
        async with self._session_factory() as session:
            account_id = await session.scalar(
                select(models.Account.id).where(models.Account.email == candidate.email)
            )
            result = await session.scalars(
                select(role_model).where(
                    or_(
                        role_model.email == candidate.email,
                        role_model.external_id == candidate.external_id,
                    )
                )
            )
            role_records = list(result.all())

        if not role_records:
            if account_id is None:
                return Resolution(accepted=True)
            logger.info(f"Account exists without {candidate.role.value} record: {candidate.email}")
            return Resolution(
                accepted=False,
                reason=f"User already exists but {candidate.role.value} record not found.",
            )

        collisions = []
        if any(r.external_id == candidate.external_id for r in role_records):
            collisions.append(f"ID '{candidate.external_id}'")
        if any(r.email == candidate.email for r in role_records):
            collisions.append(f"email '{candidate.email}'")

        # Record owning this email first, else the one owning the ID
        existing = next((r for r in role_records if r.email == candidate.email), role_records[0])
        return Resolution(
            accepted=False,
            reason=(
                f"User or {candidate.role.value} already exists "
                f"({' and '.join(collisions)} already registered)."
            ),
            existing=record_details(existing),
        )
