"""Enrollment of accepted candidates into the identity registries.

The account, the cohort (created on first reference), the cohort
membership and the role record are written in one transaction, so a
failed row leaves nothing behind, not even a new empty cohort.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from werkzeug.security import generate_password_hash

from .. import models
from ..errors import DuplicateError, PersistenceError
from .dedupe import record_details
from .normalization import Candidate, Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommittedIdentity:
    """An enrolled identity, as needed by the report and the welcome email."""
    external_id: str
    name: str
    email: str
    department: str
    role: Role
    provisional_password: str
    batch_name: str | None = None


async def ensure_cohort(session: AsyncSession, batch_name: str) -> int:
    """Locate or create a cohort inside the caller's transaction.

    Creation runs in a savepoint. When a concurrent enrollment creates the
    same cohort first, the unique constraint rolls back only the savepoint
    and the winner's row is read instead.

    Raises:
        PersistenceError: If the cohort can neither be read nor created
    """
    query = select(models.Cohort.id).where(models.Cohort.batch_name == batch_name)
    cohort_id = await session.scalar(query)
    if cohort_id is not None:
        return cohort_id

    cohort = models.Cohort(batch_name=batch_name)
    try:
        async with session.begin_nested():
            session.add(cohort)
    except IntegrityError:
        cohort_id = await session.scalar(query)
        if cohort_id is None:
            raise PersistenceError(batch_name, f"Batch {batch_name!r} could not be created")
        return cohort_id

    logger.info(f"Created cohort {batch_name!r}")
    return cohort.id


class EnrollmentCommitter:
    """Persist accepted candidates."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hasher: Callable[[str], str] = generate_password_hash,
    ):
        self._session_factory = session_factory
        self._hasher = hasher

    async def commit(self, candidate: Candidate) -> CommittedIdentity:
        """Create the account, cohort membership and role record.

        Args:
            candidate: Accepted candidate

        Returns:
            CommittedIdentity for reporting and notification

        Raises:
            DuplicateError: If a unique constraint rejects the write
            PersistenceError: On any other store failure
        """
        password_hash = await asyncio.to_thread(self._hasher, candidate.provisional_password)

        identity_fields = {
            "external_id": candidate.external_id,
            "name": candidate.name,
            "email": candidate.email,
            "department": candidate.department,
        }

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        models.Account(
                            name=candidate.name,
                            email=candidate.email,
                            password_hash=password_hash,
                            role=candidate.role.value,
                            must_reset_password=True,
                        )
                    )
                    # The account insert opens the transaction before any savepoint
                    await session.flush()

                    if candidate.role is Role.STUDENT:
                        cohort_id = await ensure_cohort(session, candidate.batch_name)
                        session.add(models.CohortMember(cohort_id=cohort_id, **identity_fields))
                        session.add(models.Student(batch_name=candidate.batch_name, **identity_fields))
                    else:
                        session.add(models.Faculty(**identity_fields))
        except PersistenceError as e:
            raise PersistenceError(candidate.locator, e.reason) from e
        except IntegrityError as e:
            logger.warning(f"Write conflict enrolling {candidate.email}: {e.orig}")
            raise DuplicateError(
                candidate.locator,
                f"User or {candidate.role.value} already exists (email or ID registered concurrently).",
                record_details(candidate),
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to enroll {candidate.email}: {e}", exc_info=True)
            raise PersistenceError(candidate.locator, f"Error saving user: {e}") from e

        logger.info(f"Enrolled {candidate.role.value} {candidate.external_id} <{candidate.email}>")
        return CommittedIdentity(
            role=candidate.role,
            provisional_password=candidate.provisional_password,
            batch_name=candidate.batch_name,
            **identity_fields,
        )
