# job_store.py
# ------------------------------------------------------------------------------------
#  Job table for the render API.
#    * InMemoryJobStore -> dict + lock, lives as long as the process
#    * SQLJobStore      -> SQLModel table (render_jobs), survives restarts
#  Both enforce the same lifecycle: RENDERING -> RENDERED | FAILED, once.
# ------------------------------------------------------------------------------------

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, Field as SQLField, Session, create_engine, select

from errors import Conflict, InvalidTransition, NotFound

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    RENDERING = "RENDERING"
    RENDERED = "RENDERED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.RENDERING


class ArtifactKind(str, Enum):
    VIDEO = "video"
    THUMBNAIL = "thumbnail"
    SUBTITLES = "subtitles"


class JobRecord(BaseModel):
    id: str
    submitted_at: datetime = Field(default_factory=utcnow)
    content_reference: str
    status: JobStatus = JobStatus.RENDERING
    artifacts: Dict[ArtifactKind, str] = Field(default_factory=dict)
    error: Optional[str] = None
    completed_at: Optional[datetime] = None


def outcome_problem(
    status: JobStatus, artifacts: Dict[ArtifactKind, str], error: Optional[str] = None
) -> Optional[str]:
    """Describe why (status, artifacts, error) is not a valid job outcome, or None if it is."""
    if status is JobStatus.RENDERING:
        return "a job cannot move back to RENDERING"
    if status is JobStatus.RENDERED:
        missing = [kind.value for kind in ArtifactKind if not artifacts.get(kind)]
        if missing:
            return f"RENDERED jobs need artifact ids for: {', '.join(missing)}"
        if error:
            return "RENDERED jobs carry no error"
    if status is JobStatus.FAILED and any(artifacts.values()):
        return "FAILED jobs carry no artifacts"
    return None


def is_replay(record: JobRecord, status: JobStatus, artifacts: Dict[ArtifactKind, str], error: Optional[str]) -> bool:
    """True when applying this outcome to an already finished record would change nothing."""
    if record.status is not status:
        return False
    if status is JobStatus.RENDERED:
        return dict(record.artifacts) == dict(artifacts) and record.error == error
    return record.error == error


class JobStore(ABC):
    """Durable mapping from job id to JobRecord."""

    def init(self) -> None:
        pass

    def close(self) -> None:
        pass

    @abstractmethod
    def create(self, record: JobRecord) -> None:
        """Insert a new record. Raises Conflict if the id is taken."""

    @abstractmethod
    def get(self, job_id: str) -> JobRecord:
        """Raises NotFound for unknown ids."""

    @abstractmethod
    def update_status(
        self,
        job_id: str,
        new_status: JobStatus,
        artifacts: Dict[ArtifactKind, str],
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> JobRecord:
        """
        Move a RENDERING job to a terminal status and return the stored record.
        Re-applying the outcome a job already has is a no-op. Anything else on a
        finished job raises InvalidTransition.
        """

    @abstractmethod
    def list_older_than(self, age: timedelta, now: Optional[datetime] = None) -> List[JobRecord]:
        """Records submitted more than `age` ago, oldest first."""


class InMemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: JobRecord) -> None:
        with self._lock:
            if record.id in self._jobs:
                raise Conflict(f"Render job {record.id} already exists")
            self._jobs[record.id] = record.model_copy(deep=True)

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                raise NotFound("Render job not found")
            return job.model_copy(deep=True)

    def update_status(self, job_id, new_status, artifacts, error=None, completed_at=None):
        new_status = JobStatus(new_status)
        problem = outcome_problem(new_status, artifacts, error)
        if problem:
            raise InvalidTransition(problem)
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                raise NotFound("Render job not found")
            if job.status.terminal:
                if is_replay(job, new_status, artifacts, error):
                    return job.model_copy(deep=True)
                raise InvalidTransition(f"Render job {job_id} is already {job.status.value}")
            job.status = new_status
            job.artifacts = dict(artifacts)
            job.error = error
            job.completed_at = completed_at or utcnow()
            return job.model_copy(deep=True)

    def list_older_than(self, age: timedelta, now: Optional[datetime] = None) -> List[JobRecord]:
        cutoff = (now or utcnow()) - age
        with self._lock:
            old = [j.model_copy(deep=True) for j in self._jobs.values() if j.submitted_at < cutoff]
        return sorted(old, key=lambda j: j.submitted_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


# ---------------- DB setup ----------------
class RenderJobRow(SQLModel, table=True):
    __tablename__ = "render_jobs"

    id: str = SQLField(primary_key=True, index=True)
    submitted_at: datetime = SQLField(sa_column=Column(DateTime(timezone=True), index=True, nullable=False))
    content_reference: str
    status: str = JobStatus.RENDERING.value
    video_artifact: str = ""
    thumbnail_artifact: str = ""
    subtitles_artifact: str = ""
    error: Optional[str] = None
    completed_at: Optional[datetime] = SQLField(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


_ARTIFACT_COLUMNS = {
    ArtifactKind.VIDEO: "video_artifact",
    ArtifactKind.THUMBNAIL: "thumbnail_artifact",
    ArtifactKind.SUBTITLES: "subtitles_artifact",
}


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values; the column always holds UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row: RenderJobRow) -> JobRecord:
    artifacts = {}
    for kind, column in _ARTIFACT_COLUMNS.items():
        if getattr(row, column):
            artifacts[kind] = getattr(row, column)
    return JobRecord(
        id=row.id,
        submitted_at=_from_db_time(row.submitted_at),
        content_reference=row.content_reference,
        status=JobStatus(row.status),
        artifacts=artifacts,
        error=row.error,
        completed_at=_from_db_time(row.completed_at),
    )


class SQLJobStore(JobStore):
    def __init__(self, db_url: str):
        self.db_url = db_url
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        self._engine = create_engine(db_url, connect_args=connect_args)

    def init(self) -> None:
        SQLModel.metadata.create_all(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    def create(self, record: JobRecord) -> None:
        row = RenderJobRow(
            id=record.id,
            submitted_at=_to_db_time(record.submitted_at),
            content_reference=record.content_reference,
            status=record.status.value,
            error=record.error,
            completed_at=_to_db_time(record.completed_at),
        )
        for kind, column in _ARTIFACT_COLUMNS.items():
            setattr(row, column, record.artifacts.get(kind, ""))
        with Session(self._engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"Render job {record.id} already exists")

    def get(self, job_id: str) -> JobRecord:
        with Session(self._engine) as session:
            row = session.get(RenderJobRow, job_id)
            if not row:
                raise NotFound("Render job not found")
            return _row_to_record(row)

    def update_status(self, job_id, new_status, artifacts, error=None, completed_at=None):
        new_status = JobStatus(new_status)
        problem = outcome_problem(new_status, artifacts, error)
        if problem:
            raise InvalidTransition(problem)

        values = {
            "status": new_status.value,
            "error": error,
            "completed_at": _to_db_time(completed_at or utcnow()),
        }
        for kind, column in _ARTIFACT_COLUMNS.items():
            values[column] = artifacts.get(kind, "")

        # Only a RENDERING row can move; the WHERE clause makes racing completions safe.
        stmt = (
            update(RenderJobRow)
            .where(RenderJobRow.id == job_id)
            .where(RenderJobRow.status == JobStatus.RENDERING.value)
            .values(**values)
        )
        with self._engine.begin() as conn:
            moved = conn.execute(stmt).rowcount == 1

        job = self.get(job_id)
        if moved or is_replay(job, new_status, artifacts, error):
            return job
        raise InvalidTransition(f"Render job {job_id} is already {job.status.value}")

    def list_older_than(self, age: timedelta, now: Optional[datetime] = None) -> List[JobRecord]:
        cutoff = _to_db_time((now or utcnow()) - age)
        stmt = (
            select(RenderJobRow)
            .where(RenderJobRow.submitted_at < cutoff)
            .order_by(RenderJobRow.submitted_at)
        )
        with Session(self._engine) as session:
            return [_row_to_record(row) for row in session.exec(stmt).all()]


def build_job_store(settings) -> JobStore:
    kind = settings.job_store
    if kind == "memory":
        return InMemoryJobStore()
    if kind in ("sqlite", "sql"):
        logger.info("Using SQL job store at %s", settings.database_url)
        return SQLJobStore(settings.database_url)
    raise ValueError(f"Unknown JOB_STORE {kind!r} (expected 'memory' or 'sqlite')")
