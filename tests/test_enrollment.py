"""Tests for the enrollment committer."""

import asyncio

import pytest
from sqlalchemy import select, text
from werkzeug.security import check_password_hash

from portal import models
from portal.errors import DuplicateError, PersistenceError
from portal.pipelines.enrollment import EnrollmentCommitter, ensure_cohort
from portal.pipelines.normalization import Role, build_candidate


def _candidate(role, external_id, email, name="Alice", batch_name=None):
    return build_candidate(
        role,
        external_id=external_id,
        name=name,
        email=email,
        department="CS",
        batch_name=batch_name,
        provisional_password="12345678",
    )


async def test_commit_faculty_creates_account_and_role_record(session_factory, committer, count_rows):
    identity = await committer.commit(_candidate(Role.FACULTY, "F1", "ada@x.com", name="Ada"))

    assert identity.external_id == "F1"
    assert identity.role is Role.FACULTY
    assert await count_rows(models.Account) == 1
    assert await count_rows(models.Faculty) == 1
    assert await count_rows(models.Student) == 0

    async with session_factory() as session:
        account = await session.scalar(select(models.Account).where(models.Account.email == "ada@x.com"))
    assert account.role == "faculty"
    assert account.must_reset_password is True
    assert account.password_hash != "12345678"
    assert check_password_hash(account.password_hash, "12345678")


async def test_commit_student_appends_to_cohort(session_factory, committer, count_rows):
    await committer.commit(_candidate(Role.STUDENT, "S1", "a@x.com", batch_name="2024A"))
    await committer.commit(_candidate(Role.STUDENT, "S2", "b@x.com", name="Bob", batch_name="2024A"))

    assert await count_rows(models.Cohort) == 1
    assert await count_rows(models.CohortMember) == 2
    assert await count_rows(models.Student, models.Student.batch_name == "2024A") == 2

    async with session_factory() as session:
        members = (await session.scalars(select(models.CohortMember).order_by(models.CohortMember.id))).all()
    assert [m.external_id for m in members] == ["S1", "S2"]
    assert members[1].name == "Bob"


async def test_concurrent_students_share_one_new_cohort(committer, count_rows):
    candidates = [
        _candidate(Role.STUDENT, f"S{n}", f"s{n}@x.com", name=f"Student {n}", batch_name="2025B")
        for n in range(5)
    ]

    await asyncio.gather(*(committer.commit(c) for c in candidates))

    assert await count_rows(models.Cohort) == 1
    assert await count_rows(models.CohortMember) == 5


async def test_ensure_cohort_reuses_existing_cohort(session_factory):
    async with session_factory() as session:
        async with session.begin():
            first = await ensure_cohort(session, "2025B")
        async with session.begin():
            second = await ensure_cohort(session, "2025B")

    assert first == second


async def test_failed_student_row_leaves_no_new_cohort(session_factory, committer, count_rows):
    async with session_factory() as session:
        session.add(
            models.Student(external_id="S1", name="Alice", email="a@x.com", department="CS", batch_name="2024A")
        )
        await session.commit()

    with pytest.raises(DuplicateError):
        await committer.commit(_candidate(Role.STUDENT, "S1", "new@x.com", name="Eve", batch_name="2099Z"))

    assert await count_rows(models.Cohort) == 0
    assert await count_rows(models.CohortMember) == 0
    assert await count_rows(models.Account) == 0


async def test_write_conflict_is_reported_as_duplicate_without_partial_writes(
    session_factory, committer, count_rows
):
    async with session_factory() as session:
        session.add(models.Faculty(external_id="F1", name="Ada", email="ada@x.com", department="CS"))
        await session.commit()

    with pytest.raises(DuplicateError) as excinfo:
        await committer.commit(_candidate(Role.FACULTY, "F1", "new@x.com", name="Newcomer"))

    assert excinfo.value.row_locator == "new@x.com"
    assert await count_rows(models.Account, models.Account.email == "new@x.com") == 0
    assert await count_rows(models.Faculty) == 1


async def test_store_failure_is_reported_as_persistence_error(session_factory, committer, count_rows):
    async with session_factory() as session:
        await session.execute(text("DROP TABLE faculty"))
        await session.commit()

    with pytest.raises(PersistenceError) as excinfo:
        await committer.commit(_candidate(Role.FACULTY, "F1", "ada@x.com"))

    assert excinfo.value.row_locator == "ada@x.com"
    assert "Error saving user" in excinfo.value.reason
    assert await count_rows(models.Account) == 0


async def test_custom_hasher_is_used(session_factory, count_rows):
    committer = EnrollmentCommitter(session_factory, hasher=lambda plain: f"hashed:{plain[::-1]}")

    await committer.commit(_candidate(Role.FACULTY, "F9", "h@x.com"))

    async with session_factory() as session:
        digest = await session.scalar(select(models.Account.password_hash))
    assert digest == "hashed:87654321"
