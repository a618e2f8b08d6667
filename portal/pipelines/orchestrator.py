"""Batch orchestration for roster uploads.

Rows run as independent asyncio tasks through resolve -> commit, and every
committed row schedules its welcome email as a separate task. The batch
waits for all rows to settle; a failing row never cancels its siblings.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import IngestSettings, settings
from ..errors import DuplicateError, PersistenceError, RowError, RowValidationError, row_label
from ..notifications import NotifyResult, WelcomeNotifier
from .dedupe import BatchClaims, DuplicateResolver
from .enrollment import CommittedIdentity, EnrollmentCommitter
from .normalization import Candidate, Role, normalize_row

logger = logging.getLogger(__name__)

REPORT_MESSAGES = {
    Role.FACULTY: "Faculty list uploaded and processed successfully!",
    Role.STUDENT: "Student batch uploaded and processed successfully!",
}

ERROR_KINDS: dict[type[RowError], str] = {
    RowValidationError: "validation",
    DuplicateError: "duplicate",
    PersistenceError: "persistence",
}


@dataclass
class RowSuccess:
    """A committed row."""
    external_id: str
    name: str
    department: str
    email: str | None = None

    @classmethod
    def from_identity(cls, identity: CommittedIdentity) -> RowSuccess:
        return cls(
            external_id=identity.external_id,
            name=identity.name,
            department=identity.department,
            # Faculty reports historically omit the email
            email=identity.email if identity.role is Role.STUDENT else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = {"id": self.external_id, "name": self.name, "department": self.department}
        if self.email is not None:
            payload["email"] = self.email
        return payload


@dataclass
class RowFailure:
    """A row that was not enrolled."""
    row_locator: str
    reason: str
    details: dict[str, Any] = field(default_factory=dict)
    kind: str = "error"

    @classmethod
    def from_error(cls, error: RowError) -> RowFailure:
        kind = ERROR_KINDS.get(type(error), "error")
        return cls(row_locator=error.row_locator, reason=error.reason, details=error.details, kind=kind)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.details:
            payload.update(
                id=self.details.get("external_id"),
                name=self.details.get("name"),
                email=self.details.get("email"),
                department=self.details.get("department"),
            )
        payload["location"] = self.row_locator
        payload["message"] = self.reason
        return {key: value for key, value in payload.items() if value is not None}


RowOutcome = RowSuccess | RowFailure


@dataclass
class BatchReport:
    """Successes and failures of one upload."""
    message: str
    successes: list[RowSuccess] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures)

    def to_response(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "success": [s.to_dict() for s in self.successes],
            "error": [f.to_dict() for f in self.failures],
        }


class BatchOrchestrator:
    """Fan roster rows out through the enrollment stages and collect outcomes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        committer: EnrollmentCommitter,
        notifier: WelcomeNotifier,
        config: IngestSettings | None = None,
    ):
        self._session_factory = session_factory
        self._committer = committer
        self._notifier = notifier
        self._config = config or settings.ingest
        self._notifications: set[asyncio.Task[NotifyResult]] = set()

    @property
    def config(self) -> IngestSettings:
        return self._config

    @property
    def pending_notifications(self) -> int:
        return sum(1 for task in self._notifications if not task.done())

    async def run(
        self,
        rows: Sequence[Sequence[str]],
        role: Role,
        *,
        batch_name: str | None = None,
    ) -> BatchReport:
        """Process every decoded row and return the batch report.

        Args:
            rows: Decoded roster rows in file order
            role: Role shared by all rows
            batch_name: Cohort name for student uploads

        Returns:
            BatchReport with one outcome per row
        """
        report = BatchReport(message=REPORT_MESSAGES[role])
        indexed: list[tuple[int, Candidate]] = []

        for index, row in enumerate(rows):
            try:
                candidate = normalize_row(
                    row,
                    role,
                    batch_name,
                    index=index,
                    provisional_password=self._config.provisional_password,
                )
            except RowValidationError as e:
                logger.info(f"{row_label(index)} rejected: {e.reason}")
                report.failures.append(RowFailure.from_error(e))
            else:
                indexed.append((index, candidate))

        resolver = DuplicateResolver(self._session_factory, BatchClaims.from_candidates(indexed))
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        tasks = {
            asyncio.create_task(self._run_row(resolver, index, candidate, semaphore)): candidate
            for index, candidate in indexed
        }

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._config.batch_deadline_seconds)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Batch deadline reached with {len(pending)} rows unfinished")
                await asyncio.gather(*pending, return_exceptions=True)

            for task, candidate in tasks.items():
                if task in pending:
                    report.failures.append(
                        RowFailure(
                            candidate.locator,
                            "Batch deadline exceeded before the row was processed.",
                            kind="timeout",
                        )
                    )
                    continue
                outcome = task.result()
                if isinstance(outcome, RowSuccess):
                    report.successes.append(outcome)
                else:
                    report.failures.append(outcome)

        logger.info(
            f"{role.value} batch processed: {len(report.successes)} enrolled, "
            f"{len(report.failures)} failed of {len(rows)} rows"
        )

        if self._config.await_notifications:
            await self.drain_notifications()
        return report

    async def enroll_one(self, candidate: Candidate) -> RowOutcome:
        """Run a single validated candidate through resolve -> commit -> notify."""
        resolver = DuplicateResolver(self._session_factory)
        return await self._run_row(resolver, None, candidate, asyncio.Semaphore(1))

    async def drain_notifications(self) -> list[NotifyResult]:
        """Wait for scheduled welcome emails and return their results."""
        tasks = list(self._notifications)
        self._notifications.difference_update(tasks)
        if not tasks:
            return []
        results = await asyncio.gather(*tasks)
        failed = sum(1 for r in results if not r.delivered)
        if failed:
            logger.warning(f"{failed} of {len(results)} welcome emails failed")
        return list(results)

    async def _run_row(
        self,
        resolver: DuplicateResolver,
        index: int | None,
        candidate: Candidate,
        semaphore: asyncio.Semaphore,
    ) -> RowOutcome:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self._process(resolver, index, candidate),
                    timeout=self._config.row_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Row for {candidate.email} timed out")
                return RowFailure(
                    candidate.locator,
                    f"Timed out after {self._config.row_timeout_seconds:g}s.",
                    kind="timeout",
                )

    async def _process(
        self,
        resolver: DuplicateResolver,
        index: int | None,
        candidate: Candidate,
    ) -> RowOutcome:
        try:
            resolution = await resolver.resolve(candidate, index)
            resolution.raise_if_rejected(candidate)
            identity = await self._committer.commit(candidate)
        except RowError as e:
            logger.info(f"Row {candidate.locator} failed: {e.reason}")
            return RowFailure.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error processing {candidate.locator}: {e}", exc_info=True)
            return RowFailure(candidate.locator, f"Error saving user: {e}")

        self._notifications.add(asyncio.create_task(self._notifier.notify(identity)))
        return RowSuccess.from_identity(identity)
