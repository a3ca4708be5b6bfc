from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pytest

from reelqueue.core.constants import JobStatus
from reelqueue.core.errors import (
    DuplicateJobError,
    InvalidTransitionError,
    NotFoundError,
    UnknownProfileError,
    ValidationError,
)
from reelqueue.services import repository

T0 = datetime(2026, 1, 1, 12, 0, 0)


def _create(db, registry, job_id: str, profiles=("720p",), now: datetime = T0):
    job = repository.create_job(
        db,
        job_id=job_id,
        source=f"/tmp/{job_id}.mp4",
        profiles=list(profiles),
        registry=registry,
        now=now,
    )
    db.commit()
    return job


def test_create_job_defaults(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1", profiles=("480p", "1080p"))

        job = repository.get_job(db, "v1")
        assert job is not None
        assert job.status == JobStatus.QUEUED.value
        assert job.attempts == 0
        assert job.step == "queued"
        assert job.created_at == T0
        assert repository.job_profiles(job) == ["480p", "1080p"]

        out = repository.to_job_out(job)
        assert out.profiles == ["480p", "1080p"]
        events = repository.list_events(db, "v1")
        assert [event.message for event in events] == ["job queued"]


def test_create_job_rejects_duplicates(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        with pytest.raises(DuplicateJobError):
            _create(db, registry, "v1")


def test_insert_race_leaves_rollback_to_caller(session_factory, registry, monkeypatch) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        db.expunge_all()

        rollbacks: list[bool] = []
        # Hide the committed row so the insert itself hits the primary key.
        monkeypatch.setattr(db, "get", lambda *args, **kwargs: None)
        monkeypatch.setattr(db, "rollback", lambda: rollbacks.append(True))
        with pytest.raises(DuplicateJobError):
            repository.create_job(db, job_id="v1", source="/tmp/other.mp4", profiles=["480p"], registry=registry)
        assert rollbacks == []

        monkeypatch.undo()
        db.rollback()
        job = repository.get_job(db, "v1")
        assert job is not None
        assert job.source == "/tmp/v1.mp4"


def test_create_job_validates_input(session_factory, registry) -> None:
    with session_factory() as db:
        with pytest.raises(UnknownProfileError):
            _create(db, registry, "v1", profiles=("999p",))
        with pytest.raises(ValidationError):
            _create(db, registry, "v1", profiles=())
        with pytest.raises(ValidationError):
            _create(db, registry, "bad-id")
        with pytest.raises(ValidationError):
            repository.create_job(db, job_id="v2", source=" ", profiles=["720p"], registry=registry)
        assert repository.list_jobs(db) == []


def test_duplicate_profiles_collapse_in_order(registry) -> None:
    assert repository.normalize_profiles(["720p", " 480p", "720p", ""], registry) == ["720p", "480p"]


def test_status_transitions_are_checked(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        with pytest.raises(InvalidTransitionError):
            repository.update_status(db, "v1", JobStatus.DONE)

        claimed = repository.claim_next_job(db, now=T0)
        assert claimed is not None
        repository.update_status(db, "v1", JobStatus.DONE, "done", now=T0)
        db.commit()

        for target in JobStatus:
            with pytest.raises(InvalidTransitionError):
                repository.update_status(db, "v1", target)


def test_update_missing_job_raises(session_factory) -> None:
    with session_factory() as db:
        with pytest.raises(NotFoundError):
            repository.update_status(db, "ghost", JobStatus.PROCESSING)
        with pytest.raises(NotFoundError):
            repository.increment_attempts(db, "ghost")
        with pytest.raises(NotFoundError):
            repository.delete_job(db, "ghost")


def test_claim_follows_enqueue_order(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "b", now=T0)
        _create(db, registry, "a", now=T0)
        _create(db, registry, "c", now=T0 - timedelta(seconds=1))

        order = []
        while True:
            job = repository.claim_next_job(db, now=T0)
            if job is None:
                break
            db.commit()
            order.append(job.id)
            assert job.status == JobStatus.PROCESSING.value
            assert job.attempts == 1
            assert job.started_at == T0

        assert order == ["c", "a", "b"]


def test_claim_skips_jobs_in_backoff(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        repository.claim_next_job(db, now=T0)
        repository.requeue_job(db, "v1", delay_s=30, step="retrying", now=T0)
        db.commit()

        assert repository.claim_next_job(db, now=T0 + timedelta(seconds=10)) is None
        job = repository.claim_next_job(db, now=T0 + timedelta(seconds=30))
        assert job is not None
        assert job.attempts == 2


def test_requeued_job_goes_to_back(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1", now=T0)
        _create(db, registry, "v2", now=T0 + timedelta(seconds=1))
        repository.claim_next_job(db, now=T0 + timedelta(seconds=2))
        repository.requeue_job(db, "v1", now=T0 + timedelta(seconds=3))
        db.commit()

        job = repository.claim_next_job(db, now=T0 + timedelta(seconds=4))
        assert job is not None and job.id == "v2"


def test_concurrent_claims_never_share_a_job(session_factory, registry) -> None:
    with session_factory() as db:
        for index in range(6):
            _create(db, registry, f"v{index}")

    claimed: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        while True:
            with session_factory() as db:
                job = repository.claim_next_job(db, now=T0)
                db.commit()
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == [f"v{index}" for index in range(6)]
    with session_factory() as db:
        assert all(job.attempts == 1 for job in repository.list_jobs(db))


def test_delete_job_removes_events(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        repository.delete_job(db, "v1")
        db.commit()

        assert repository.get_job(db, "v1") is None
        assert repository.list_events(db, "v1") == []


def test_count_by_status(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        _create(db, registry, "v2")
        repository.claim_next_job(db, now=T0)
        db.commit()

        counts = repository.count_by_status(db)
        assert counts["queued"] == 1
        assert counts["processing"] == 1
        assert counts["done"] == 0
