"""Unit tests for the job stores.

Every test runs against both backends:
- InMemoryJobStore
- SQLJobStore on a temporary SQLite file
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from errors import Conflict, InvalidTransition, NotFound
from job_store import (
    ArtifactKind,
    InMemoryJobStore,
    JobRecord,
    JobStatus,
    SQLJobStore,
    build_job_store,
)
from tests.conftest import make_settings

T0 = datetime(2024, 1, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)

ARTIFACTS = {
    ArtifactKind.VIDEO: "v1",
    ArtifactKind.THUMBNAIL: "t1",
    ArtifactKind.SUBTITLES: "s1",
}


@pytest.fixture(params=["memory", "sqlite"])
def job_store(request, tmp_path):
    if request.param == "memory":
        store = InMemoryJobStore()
    else:
        store = SQLJobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    store.init()
    yield store
    store.close()


def _record(job_id="job-1", content="abc", submitted_at=T0):
    return JobRecord(id=job_id, submitted_at=submitted_at, content_reference=content)


class TestCreateAndGet:
    def test_round_trip(self, job_store):
        job_store.create(_record())
        job = job_store.get("job-1")

        assert job.id == "job-1"
        assert job.content_reference == "abc"
        assert job.status is JobStatus.RENDERING
        assert job.artifacts == {}
        assert job.submitted_at == T0
        assert job.completed_at is None

    def test_duplicate_id_conflicts(self, job_store):
        job_store.create(_record())
        with pytest.raises(Conflict):
            job_store.create(_record(content="other"))
        assert job_store.get("job-1").content_reference == "abc"

    def test_missing_id(self, job_store):
        with pytest.raises(NotFound):
            job_store.get("nope")

    def test_returned_records_are_copies(self, job_store):
        job_store.create(_record())
        job = job_store.get("job-1")
        job.status = JobStatus.RENDERED
        assert job_store.get("job-1").status is JobStatus.RENDERING

    def test_concurrent_creates_with_same_id(self, job_store):
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def submit(n):
            barrier.wait()
            try:
                job_store.create(_record(content=f"c{n}"))
                result = "created"
            except Conflict:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=submit, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("created") == 1
        assert outcomes.count("conflict") == 7


class TestUpdateStatus:
    def test_rendering_to_rendered(self, job_store):
        job_store.create(_record())
        done_at = T0 + timedelta(seconds=70)
        job = job_store.update_status("job-1", JobStatus.RENDERED, ARTIFACTS, completed_at=done_at)

        assert job.status is JobStatus.RENDERED
        assert job.artifacts == ARTIFACTS
        assert job.completed_at == done_at
        assert job_store.get("job-1").artifacts == ARTIFACTS

    def test_rendering_to_failed(self, job_store):
        job_store.create(_record())
        job = job_store.update_status("job-1", JobStatus.FAILED, {}, error="encoder crashed")

        assert job.status is JobStatus.FAILED
        assert job.artifacts == {}
        assert job.error == "encoder crashed"

    def test_same_outcome_twice_is_a_noop(self, job_store):
        job_store.create(_record())
        first = job_store.update_status("job-1", JobStatus.RENDERED, ARTIFACTS, completed_at=T0)
        second = job_store.update_status(
            "job-1", JobStatus.RENDERED, ARTIFACTS, completed_at=T0 + timedelta(hours=1)
        )
        assert second == first

    @pytest.mark.parametrize(
        "status,artifacts,error",
        [
            (JobStatus.FAILED, {}, "late failure"),
            (JobStatus.RENDERED, {**ARTIFACTS, ArtifactKind.VIDEO: "v2"}, None),
        ],
    )
    def test_finished_job_cannot_change(self, job_store, status, artifacts, error):
        job_store.create(_record())
        job_store.update_status("job-1", JobStatus.RENDERED, ARTIFACTS)
        with pytest.raises(InvalidTransition):
            job_store.update_status("job-1", status, artifacts, error=error)
        assert job_store.get("job-1").artifacts == ARTIFACTS

    def test_cannot_return_to_rendering(self, job_store):
        job_store.create(_record())
        with pytest.raises(InvalidTransition):
            job_store.update_status("job-1", JobStatus.RENDERING, {})

    def test_rendered_needs_all_artifacts(self, job_store):
        job_store.create(_record())
        with pytest.raises(InvalidTransition):
            job_store.update_status("job-1", JobStatus.RENDERED, {ArtifactKind.VIDEO: "v1"})
        assert job_store.get("job-1").status is JobStatus.RENDERING

    def test_rendered_carries_no_error(self, job_store):
        job_store.create(_record())
        with pytest.raises(InvalidTransition):
            job_store.update_status("job-1", JobStatus.RENDERED, ARTIFACTS, error="oops")
        assert job_store.get("job-1").error is None

    def test_timestamps_stay_utc_aware(self, job_store):
        job_store.create(_record())
        job_store.update_status("job-1", JobStatus.FAILED, {}, completed_at=T0 + timedelta(seconds=5))
        job = job_store.get("job-1")
        assert job.submitted_at.tzinfo is not None
        assert job.completed_at == T0 + timedelta(seconds=5)
        assert job.completed_at.utcoffset() == timedelta(0)

    def test_failed_carries_no_artifacts(self, job_store):
        job_store.create(_record())
        with pytest.raises(InvalidTransition):
            job_store.update_status("job-1", JobStatus.FAILED, ARTIFACTS)

    def test_missing_job(self, job_store):
        with pytest.raises(NotFound):
            job_store.update_status("nope", JobStatus.FAILED, {})

    def test_racing_outcomes_pick_one_winner(self, job_store):
        job_store.create(_record())
        outcomes = {}
        barrier = threading.Barrier(6)

        def finish(n):
            status = JobStatus.RENDERED if n % 2 else JobStatus.FAILED
            artifacts = ARTIFACTS if status is JobStatus.RENDERED else {}
            barrier.wait()
            try:
                job_store.update_status("job-1", status, artifacts)
                outcomes[n] = status
            except InvalidTransition:
                outcomes[n] = None

        threads = [threading.Thread(target=finish, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = job_store.get("job-1").status
        for n, result in outcomes.items():
            expected = JobStatus.RENDERED if n % 2 else JobStatus.FAILED
            assert result == (expected if expected is final else None)


class TestListOlderThan:
    def test_oldest_first(self, job_store):
        for n, minutes in enumerate([5, 1, 10]):
            job_store.create(_record(job_id=f"job-{n}", submitted_at=T0 - timedelta(minutes=minutes)))

        old = job_store.list_older_than(timedelta(minutes=2), now=T0)
        assert [j.id for j in old] == ["job-2", "job-0"]

    def test_nothing_old_enough(self, job_store):
        job_store.create(_record())
        assert job_store.list_older_than(timedelta(hours=1), now=T0) == []


class TestBuildJobStore:
    def test_memory(self):
        assert isinstance(build_job_store(make_settings(job_store="memory")), InMemoryJobStore)

    def test_sqlite(self, tmp_path):
        config = make_settings(job_store="sqlite", database_url=f"sqlite:///{tmp_path / 'x.db'}")
        store = build_job_store(config)
        assert isinstance(store, SQLJobStore)
        store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_job_store(make_settings(job_store="redis"))
