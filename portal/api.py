"""FastAPI app with health, roster upload and enrollment endpoints.

Bulk uploads are headerless CSV files with fixed column positions:

- faculty: external_id, email, name, department
- student: external_id, name, email, department (batch name from the form)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .config import settings
from .db import get_session, get_session_factory
from .errors import RowValidationError
from .logging_config import setup_logging
from .notifications import MailTransport, WelcomeNotifier, build_transport
from .parsers import MalformedInputError, decode_roster, has_allowed_extension
from .pipelines.enrollment import EnrollmentCommitter
from .pipelines.normalization import Role, build_candidate, describe_layout
from .pipelines.orchestrator import BatchOrchestrator, RowSuccess

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class RowSuccessDTO(BaseModel):
    """Enrolled row."""
    id: str
    name: str
    department: str
    email: str | None = None


class RowFailureDTO(BaseModel):
    """Rejected row."""
    id: str | None = None
    name: str | None = None
    department: str | None = None
    email: str | None = None
    location: str | None = None
    message: str


class BatchResponse(BaseModel):
    """Roster upload report."""
    message: str
    success: list[RowSuccessDTO] = Field(default_factory=list)
    error: list[RowFailureDTO] = Field(default_factory=list)


class EnrollmentResponse(BaseModel):
    """Single enrollment / deletion response."""
    success: bool
    message: str


class AddFacultyRequest(BaseModel):
    """Single faculty enrollment request."""
    id: str | None = None
    name: str | None = None
    email: str | None = None
    department: str | None = None


class AddStudentRequest(AddFacultyRequest):
    """Single student enrollment request."""
    model_config = ConfigDict(populate_by_name=True)

    batch_name: str | None = Field(default=None, alias="batchName")


class FacultyDTO(BaseModel):
    """Faculty record."""
    model_config = ConfigDict(from_attributes=True)

    record_id: int = Field(validation_alias="id")
    id: str = Field(validation_alias="external_id")
    name: str
    email: str
    department: str


class StudentDTO(FacultyDTO):
    """Student record."""
    batch_name: str


class CohortDTO(BaseModel):
    """Student batch summary."""
    batch_name: str
    created_at: str
    member_count: int


class UploadRejected(Exception):
    """Request-level rejection of an upload or enrollment."""

    def __init__(self, status_code: int, message: str, error: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error = error


# Dependencies
def get_mail_transport() -> MailTransport:
    """Mail transport selected by MAIL_BACKEND."""
    return build_transport(settings.mail)


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    transport: MailTransport = Depends(get_mail_transport),
) -> BatchOrchestrator:
    """Per-request orchestrator wired to the store and the mail transport."""
    return BatchOrchestrator(
        session_factory,
        EnrollmentCommitter(session_factory),
        WelcomeNotifier(transport, settings.mail),
        settings.ingest,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info("Application starting up")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Admin portal backend: bulk faculty and student roster enrollment",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(UploadRejected)
async def upload_rejected_handler(request, exc: UploadRejected):
    """Render request-level rejections."""
    if exc.status_code >= 500:
        logger.error(f"Upload error: {exc.message}: {exc.error}")
    else:
        logger.info(f"Upload rejected: {exc.message}")
    content = {"message": exc.message}
    if exc.error is not None:
        content["error"] = exc.error
    return JSONResponse(status_code=exc.status_code, content=content)


def _schedule_notifications(orchestrator: BatchOrchestrator, background_tasks: BackgroundTasks) -> None:
    if orchestrator.pending_notifications:
        background_tasks.add_task(orchestrator.drain_notifications)


async def _process_upload(
    file: UploadFile | None,
    role: Role,
    orchestrator: BatchOrchestrator,
    background_tasks: BackgroundTasks,
    *,
    failure_message: str,
    batch_name: str | None = None,
) -> BatchResponse:
    if file is None or not file.filename:
        raise UploadRejected(status.HTTP_400_BAD_REQUEST, "No file uploaded")

    if not has_allowed_extension(file.filename, orchestrator.config.allowed_extensions):
        raise UploadRejected(status.HTTP_400_BAD_REQUEST, "Only CSV files are allowed!")

    logger.info(f"Received {role.value} roster upload: {file.filename}")

    try:
        content = await file.read()
    finally:
        await file.close()

    try:
        rows = decode_roster(content)
        report = await orchestrator.run(rows, role, batch_name=batch_name)
    except MalformedInputError as e:
        raise UploadRejected(status.HTTP_500_INTERNAL_SERVER_ERROR, failure_message, str(e)) from e
    except Exception as e:
        logger.error(f"Unexpected error processing {file.filename}: {e}", exc_info=True)
        raise UploadRejected(status.HTTP_500_INTERNAL_SERVER_ERROR, failure_message, str(e)) from e

    _schedule_notifications(orchestrator, background_tasks)
    return BatchResponse(**report.to_response())


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "upload_facultyset": "/upload-facultyset",
            "upload_studentbatch": "/upload-studentbatch",
            "add_faculty": "/addFaculty",
            "add_student": "/addStudent",
            "faculty_list": "/faculty-list",
            "student_list": "/student-list",
            "student_batches": "/student-batches",
            "docs": "/docs",
        },
        "csv_columns": {
            "faculty": describe_layout(Role.FACULTY),
            "student": describe_layout(Role.STUDENT),
        },
    }


@app.post(
    "/upload-facultyset",
    response_model=BatchResponse,
    response_model_exclude_none=True,
)
async def upload_facultyset(
    background_tasks: BackgroundTasks,
    csv_file: UploadFile | None = File(
        default=None,
        alias="csvFile",
        description=f"Headerless CSV, columns: {describe_layout(Role.FACULTY)}",
    ),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchResponse:
    """Enroll every faculty row of an uploaded CSV.

    Always answers 200 with a per-row report once the file decodes; rows
    that fail validation, deduplication or persistence are listed under
    ``error`` without affecting the others.
    """
    return await _process_upload(
        csv_file,
        Role.FACULTY,
        orchestrator,
        background_tasks,
        failure_message="Failed to upload faculty list",
    )


@app.post(
    "/upload-studentbatch",
    response_model=BatchResponse,
    response_model_exclude_none=True,
)
async def upload_studentbatch(
    background_tasks: BackgroundTasks,
    csv_file: UploadFile | None = File(
        default=None,
        alias="csvFile",
        description=f"Headerless CSV, columns: {describe_layout(Role.STUDENT)}",
    ),
    batch_name: str | None = Form(default=None, alias="batchName"),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchResponse:
    """Enroll every student row of an uploaded CSV into one batch."""
    return await _process_upload(
        csv_file,
        Role.STUDENT,
        orchestrator,
        background_tasks,
        failure_message="Failed to upload student batch",
        batch_name=batch_name,
    )


async def _enroll_single(
    role: Role,
    request: AddFacultyRequest,
    orchestrator: BatchOrchestrator,
    background_tasks: BackgroundTasks,
    batch_name: str | None = None,
) -> JSONResponse:
    label = "Faculty" if role is Role.FACULTY else "Student"
    try:
        candidate = build_candidate(
            role,
            external_id=request.id,
            name=request.name,
            email=request.email,
            department=request.department,
            batch_name=batch_name,
            provisional_password=orchestrator.config.provisional_password,
        )
    except RowValidationError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "All fields are required."},
        )

    outcome = await orchestrator.enroll_one(candidate)
    _schedule_notifications(orchestrator, background_tasks)

    if isinstance(outcome, RowSuccess):
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": True, "message": f"{label} added successfully"},
        )
    if outcome.kind == "duplicate":
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": outcome.reason},
        )
    logger.error(f"Failed to add {role.value} {candidate.email}: {outcome.reason}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "message": f"Failed to add {role.value}."},
    )


@app.post("/addFaculty", response_model=EnrollmentResponse)
async def add_faculty(
    request: AddFacultyRequest,
    background_tasks: BackgroundTasks,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Enroll one faculty member."""
    return await _enroll_single(Role.FACULTY, request, orchestrator, background_tasks)


@app.post("/addStudent", response_model=EnrollmentResponse)
async def add_student(
    request: AddStudentRequest,
    background_tasks: BackgroundTasks,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Enroll one student into a batch."""
    return await _enroll_single(
        Role.STUDENT,
        request,
        orchestrator,
        background_tasks,
        batch_name=request.batch_name,
    )


@app.get("/faculty-list", response_model=list[FacultyDTO])
async def faculty_list(session: AsyncSession = Depends(get_session)) -> list[FacultyDTO]:
    """All faculty records."""
    result = await session.scalars(select(models.Faculty).order_by(models.Faculty.id))
    return [FacultyDTO.model_validate(record) for record in result.all()]


@app.get("/student-list", response_model=list[StudentDTO])
async def student_list(session: AsyncSession = Depends(get_session)) -> list[StudentDTO]:
    """All student records."""
    result = await session.scalars(select(models.Student).order_by(models.Student.id))
    return [StudentDTO.model_validate(record) for record in result.all()]


@app.get("/student-batches", response_model=list[CohortDTO])
async def student_batches(session: AsyncSession = Depends(get_session)) -> list[CohortDTO]:
    """Student batches with their member counts."""
    query = (
        select(models.Cohort, func.count(models.CohortMember.id))
        .outerjoin(models.CohortMember, models.CohortMember.cohort_id == models.Cohort.id)
        .group_by(models.Cohort.id)
        .order_by(models.Cohort.created_at)
    )
    result = await session.execute(query)
    return [
        CohortDTO(
            batch_name=cohort.batch_name,
            created_at=cohort.created_at.isoformat(),
            member_count=count,
        )
        for cohort, count in result.all()
    ]


async def _delete_role_record(
    session: AsyncSession,
    model: type[models.Faculty] | type[models.Student],
    record_id: int,
    label: str,
) -> JSONResponse:
    record = await session.get(model, record_id)
    if record is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "message": f"{label} not found."},
        )

    await session.delete(record)
    await session.commit()
    logger.info(f"Deleted {label.lower()} {record.external_id}")
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "message": f"{label} deleted successfully."},
    )


@app.delete("/delete-faculty/{record_id}", response_model=EnrollmentResponse)
async def delete_faculty(record_id: int, session: AsyncSession = Depends(get_session)) -> JSONResponse:
    """Delete a faculty record (the login account is kept)."""
    return await _delete_role_record(session, models.Faculty, record_id, "Faculty member")


@app.delete("/delete-student/{record_id}", response_model=EnrollmentResponse)
async def delete_student(record_id: int, session: AsyncSession = Depends(get_session)) -> JSONResponse:
    """Delete a student record (the login account and batch membership are kept)."""
    return await _delete_role_record(session, models.Student, record_id, "Student")
