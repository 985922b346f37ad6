# status_deriver.py
from datetime import datetime, timedelta
from typing import Dict, NamedTuple, Optional

from job_store import ArtifactKind, JobRecord, JobStatus


class DerivedStatus(NamedTuple):
    status: JobStatus
    artifacts: Dict[ArtifactKind, str]
    # True when RENDERED was synthesized from elapsed time and is not stored yet
    simulated: bool = False


def stub_artifacts(job_id: str) -> Dict[ArtifactKind, str]:
    return {
        ArtifactKind.VIDEO: f"video_{job_id}",
        ArtifactKind.THUMBNAIL: f"thumb_{job_id}",
        ArtifactKind.SUBTITLES: f"subs_{job_id}",
    }


def derive_status(record: JobRecord, now: datetime, completion_threshold: Optional[timedelta]) -> DerivedStatus:
    """
    Externally visible status of `record` at `now`.

    Finished jobs report what is stored. A RENDERING job counts as RENDERED once
    `completion_threshold` has elapsed since submission (boundary inclusive);
    this stands in for a render worker. With no threshold the stored status is
    passed through and only the worker callback can finish a job.
    """
    if record.status.terminal or completion_threshold is None:
        return DerivedStatus(record.status, dict(record.artifacts))
    if now - record.submitted_at >= completion_threshold:
        return DerivedStatus(JobStatus.RENDERED, stub_artifacts(record.id), simulated=True)
    return DerivedStatus(JobStatus.RENDERING, {})
