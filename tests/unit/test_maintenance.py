from __future__ import annotations

from datetime import datetime, timedelta

from reelqueue.core.constants import JobStatus
from reelqueue.db.session import make_session_factory
from reelqueue.schemas.config import RetentionConfig
from reelqueue.services import maintenance, repository

T0 = datetime(2026, 1, 1, 12, 0, 0)
STALE = timedelta(minutes=10)


def _create(db, registry, job_id: str, now: datetime = T0) -> None:
    repository.create_job(db, job_id=job_id, source=f"/tmp/{job_id}.mp4", profiles=["720p"], registry=registry, now=now)


def _finish(db, job_id: str, status: JobStatus, now: datetime) -> None:
    repository.claim_next_job(db, now=now)
    repository.update_status(db, job_id, status, status.value, now=now)


def test_restart_recovers_job_left_processing(session_factory, registry, tmp_path) -> None:
    with session_factory() as db:
        _create(db, registry, "v3")
        claimed = repository.claim_next_job(db, now=T0)
        assert claimed is not None
        db.commit()

    # A fresh engine on the same file stands in for a process restart.
    restarted = make_session_factory(f"sqlite:///{tmp_path / 'jobs.sqlite3'}")
    with restarted() as db:
        recovered = maintenance.recover_stuck_jobs(db, stale_after=STALE, now=T0 + timedelta(minutes=11))
        db.commit()
        assert recovered == 1

        job = repository.require_job(db, "v3")
        assert job.status == JobStatus.QUEUED.value
        assert job.step == "recovered"
        assert job.attempts == 1

        assert maintenance.recover_stuck_jobs(db, stale_after=STALE, now=T0 + timedelta(minutes=12)) == 0


def test_recent_processing_job_is_left_alone(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        repository.claim_next_job(db, now=T0)
        db.commit()

        assert maintenance.recover_stuck_jobs(db, stale_after=STALE, now=T0 + timedelta(minutes=5)) == 0
        assert repository.require_job(db, "v1").status == JobStatus.PROCESSING.value


def test_flag_then_recover(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        repository.claim_next_job(db, now=T0)
        db.commit()

        flagged = maintenance.flag_stale_jobs(db, stale_after=STALE, now=T0 + timedelta(minutes=30))
        db.commit()
        assert flagged == ["v1"]
        assert repository.require_job(db, "v1").status == JobStatus.STUCK.value
        assert maintenance.flag_stale_jobs(db, stale_after=STALE, now=T0 + timedelta(minutes=40)) == []

        assert maintenance.recover_stuck_jobs(db, stale_after=STALE, now=T0 + timedelta(minutes=40)) == 1
        assert repository.require_job(db, "v1").status == JobStatus.QUEUED.value


def test_recovered_job_is_claimable_again(session_factory, registry) -> None:
    with session_factory() as db:
        _create(db, registry, "v1")
        repository.claim_next_job(db, now=T0)
        later = T0 + timedelta(hours=1)
        maintenance.recover_stuck_jobs(db, stale_after=STALE, now=later)
        db.commit()

        job = repository.claim_next_job(db, now=later)
        assert job is not None
        assert job.attempts == 2


def test_cleanup_only_removes_terminal_jobs(session_factory, registry) -> None:
    with session_factory() as db:
        for index, job_id in enumerate(["queued1", "proc1", "stuck1", "done1", "failed1"]):
            _create(db, registry, job_id, now=T0 + timedelta(seconds=index))
        db.commit()

        for job_id in ["proc1", "stuck1", "done1", "failed1"]:
            job = repository.claim_next_job(db, now=T0 + timedelta(minutes=1), exclude={"queued1"})
            assert job is not None and job.id == job_id
        repository.update_status(db, "done1", JobStatus.DONE, now=T0 + timedelta(minutes=2))
        repository.update_status(db, "failed1", JobStatus.FAILED, now=T0 + timedelta(minutes=2))
        repository.update_status(db, "stuck1", JobStatus.STUCK, now=T0 + timedelta(minutes=2))
        db.commit()

        removed = maintenance.cleanup_completed(db, maintenance.RetentionPolicy())
        db.commit()

        assert sorted(removed) == ["done1", "failed1"]
        remaining = {job.id: job.status for job in repository.list_jobs(db)}
        assert remaining == {
            "queued1": JobStatus.QUEUED.value,
            "proc1": JobStatus.PROCESSING.value,
            "stuck1": JobStatus.STUCK.value,
        }
        assert maintenance.cleanup_completed(db, maintenance.RetentionPolicy()) == []


def test_cleanup_keeps_latest_and_respects_age(session_factory, registry) -> None:
    with session_factory() as db:
        for index in range(4):
            job_id = f"d{index}"
            _create(db, registry, job_id, now=T0)
            _finish(db, job_id, JobStatus.DONE, now=T0 + timedelta(hours=index))
        db.commit()

        policy = maintenance.RetentionPolicy(keep_latest=1, older_than=timedelta(hours=2))
        removed = maintenance.cleanup_completed(db, policy, now=T0 + timedelta(hours=3, minutes=1))
        db.commit()

        # d3 is the newest; d2 is younger than two hours.
        assert sorted(removed) == ["d0", "d1"]
        assert sorted(job.id for job in repository.list_jobs(db)) == ["d2", "d3"]


def test_retention_policy_from_config() -> None:
    policy = maintenance.RetentionPolicy.from_config(RetentionConfig(keep_latest=5, older_than_s=3600))
    assert policy.keep_latest == 5
    assert policy.older_than == timedelta(hours=1)

    assert maintenance.RetentionPolicy.from_config(RetentionConfig()).older_than is None
    assert maintenance.RetentionPolicy.from_config(RetentionConfig()).keep_latest == 0
