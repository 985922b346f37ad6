# render_service.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from errors import Conflict, InvalidTransition, ValidationError
from job_ids import generate_job_id
from job_store import (
    ArtifactKind,
    JobRecord,
    JobStatus,
    JobStore,
    is_replay,
    outcome_problem,
    utcnow,
)
from status_deriver import derive_status

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RenderService:
    """
    Job lifecycle behind the HTTP routes: submit, query, complete.

    Everything here assumes the caller already passed the auth check.
    Inputs are validated before the store is touched.
    """

    def __init__(self, store: JobStore, completion_threshold: Optional[timedelta] = None, clock: Clock = utcnow):
        self.store = store
        self.completion_threshold = completion_threshold
        self.clock = clock

    def start(self, content_json_file_id: Optional[str], render_job_id: Optional[str] = None) -> JobRecord:
        if not content_json_file_id:
            raise ValidationError("contentJsonFileId is required")

        now = self.clock()
        job_id = generate_job_id(render_job_id, now_ms=int(now.timestamp() * 1000))
        record = JobRecord(id=job_id, submitted_at=now, content_reference=content_json_file_id)
        try:
            self.store.create(record)
        except Conflict:
            existing = self.store.get(job_id)
            if existing.content_reference != content_json_file_id:
                raise Conflict(f"renderJobId {job_id} is already used for different content")
            logger.info("Replayed submission for render job %s", job_id)
            return self._current(existing)

        logger.info("Render job %s accepted (content %s)", job_id, content_json_file_id)
        return record

    def status(self, render_job_id: str) -> JobRecord:
        return self._current(self.store.get(render_job_id))

    def complete(
        self,
        render_job_id: str,
        status: JobStatus,
        artifacts: Dict[ArtifactKind, str],
        error: Optional[str] = None,
    ) -> JobRecord:
        """Worker callback: record the outcome of a render exactly once."""
        status = JobStatus(status)
        artifacts = {k: v for k, v in artifacts.items() if v}
        error = error or None
        problem = outcome_problem(status, artifacts, error)
        if problem:
            raise ValidationError(problem)

        job = self.store.get(render_job_id)
        if job.status.terminal and not is_replay(job, status, artifacts, error):
            raise Conflict(f"Render job {render_job_id} is already {job.status.value}")

        try:
            updated = self.store.update_status(render_job_id, status, artifacts, error=error, completed_at=self.clock())
        except InvalidTransition:
            # Another completion won the race.
            raise Conflict(f"Render job {render_job_id} already finished")
        logger.info("Render job %s finished as %s", render_job_id, updated.status.value)
        return updated

    def _current(self, record: JobRecord) -> JobRecord:
        derived = derive_status(record, self.clock(), self.completion_threshold)
        if not derived.simulated:
            return record
        # Persist the simulated completion so later queries never go back to RENDERING.
        try:
            updated = self.store.update_status(record.id, derived.status, derived.artifacts, completed_at=self.clock())
        except InvalidTransition:
            # A worker callback finished the job first; report what it stored.
            return self.store.get(record.id)
        logger.info("Render job %s reached completion threshold", record.id)
        return updated
