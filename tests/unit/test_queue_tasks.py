from __future__ import annotations

from datetime import datetime

import pytest

from reelqueue.core.constants import JobStatus
from reelqueue.db.base import Base
from reelqueue.db.session import SessionLocal, engine
from reelqueue.schemas.config import AppConfig, RetentionConfig, default_profiles
from reelqueue.services import repository
from reelqueue.services.profiles import ProfileRegistry
from reelqueue.workers import queue as queue_module

Base.metadata.create_all(bind=engine)

LONG_AGO = datetime(2020, 1, 1)


@pytest.fixture
def stale_job():
    registry = ProfileRegistry.from_config(default_profiles())
    with SessionLocal() as db:
        repository.create_job(
            db, job_id="hueystale", source="/tmp/x.mp4", profiles=["480p"], registry=registry, now=LONG_AGO
        )
        repository.claim_next_job(db, now=LONG_AGO)
        db.commit()
    yield "hueystale"
    with SessionLocal() as db:
        if repository.get_job(db, "hueystale") is not None:
            repository.delete_job(db, "hueystale")
            db.commit()


def test_flag_stale_jobs_task(stale_job: str) -> None:
    assert queue_module.flag_stale_jobs_task.call_local() >= 1
    with SessionLocal() as db:
        assert repository.require_job(db, stale_job).status == JobStatus.STUCK.value


def test_cleanup_task_is_gated_by_config(monkeypatch, stale_job: str) -> None:
    monkeypatch.setattr(queue_module, "load_config", lambda: AppConfig())
    assert queue_module.cleanup_completed_task.call_local() == 0

    with SessionLocal() as db:
        repository.update_status(db, stale_job, JobStatus.FAILED, "failed", now=LONG_AGO)
        db.commit()

    enabled = AppConfig(retention=RetentionConfig(keep_latest=0, auto_cleanup=True))
    monkeypatch.setattr(queue_module, "load_config", lambda: enabled)
    assert queue_module.cleanup_completed_task.call_local() >= 1
    with SessionLocal() as db:
        assert repository.get_job(db, stale_job) is None
