"""Persistence helpers for jobs and events.

This module is the job store: the only code that reads or writes job rows.
Functions flush but never commit, so a caller can group several calls into
one transaction.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Collection, Iterable, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reelqueue.core.constants import (
    ALLOWED_TRANSITIONS,
    JOB_ID_PATTERN,
    STEP_QUEUED,
    STEP_STARTING,
    TERMINAL_STATES,
    JobStatus,
)
from reelqueue.core.errors import (
    DuplicateJobError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from reelqueue.models.job import Job, JobEvent
from reelqueue.schemas.job import JobOut
from reelqueue.services.profiles import ProfileRegistry

CLAIM_BATCH = 16


def utc_now() -> datetime:
    # Naive UTC, matching what SQLite hands back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _json_load(value: str) -> list[str]:
    try:
        loaded = json.loads(value)
    except Exception:
        return []
    return [str(item) for item in loaded] if isinstance(loaded, list) else []


def job_profiles(job: Job) -> list[str]:
    return _json_load(job.profiles_json)


def to_job_out(job: Job) -> JobOut:
    return JobOut(
        id=job.id,
        source=job.source,
        profiles=job_profiles(job),
        status=job.status,
        step=job.step,
        attempts=job.attempts,
        error_message=job.error_message,
        created_at=job.created_at,
        enqueued_at=job.enqueued_at,
        available_at=job.available_at,
        started_at=job.started_at,
        updated_at=job.updated_at,
    )


def validate_job_id(job_id: str) -> str:
    if not JOB_ID_PATTERN.fullmatch(job_id or ""):
        raise ValidationError("id must be 1-64 alphanumeric characters")
    return job_id


def normalize_profiles(profiles: Iterable[str], registry: ProfileRegistry) -> list[str]:
    ordered: list[str] = []
    for raw in profiles:
        name = raw.strip()
        if not name or name in ordered:
            continue
        registry.resolve(name)
        ordered.append(name)
    if not ordered:
        raise ValidationError("at least one profile is required")
    return ordered


def create_job(
    db: Session,
    *,
    job_id: str,
    source: str,
    profiles: Iterable[str],
    registry: ProfileRegistry,
    now: Optional[datetime] = None,
) -> Job:
    validate_job_id(job_id)
    if not source or not source.strip():
        raise ValidationError("source is required")
    names = normalize_profiles(profiles, registry)
    if db.get(Job, job_id) is not None:
        raise DuplicateJobError(job_id)

    now = now or utc_now()
    job = Job(
        id=job_id,
        source=source,
        profiles_json=json.dumps(names),
        status=JobStatus.QUEUED.value,
        step=STEP_QUEUED,
        attempts=0,
        created_at=now,
        enqueued_at=now,
        available_at=now,
        updated_at=now,
    )
    db.add(job)
    try:
        db.flush()
    except IntegrityError as exc:
        # The session now needs a rollback; that is the caller's call.
        raise DuplicateJobError(job_id) from exc
    append_event(db, job_id, JobStatus.QUEUED.value, "job queued", now=now)
    return job


def list_jobs(db: Session) -> list[Job]:
    stmt = select(Job).order_by(Job.created_at.asc(), Job.id.asc())
    return list(db.scalars(stmt))


def get_job(db: Session, job_id: str) -> Optional[Job]:
    return db.get(Job, job_id)


def require_job(db: Session, job_id: str) -> Job:
    job = get_job(db, job_id)
    if job is None:
        raise NotFoundError(f"job not found: {job_id}")
    return job


def delete_job(db: Session, job_id: str) -> None:
    job = require_job(db, job_id)
    db.delete(job)
    db.flush()


def _check_transition(job: Job, target: JobStatus) -> None:
    current = JobStatus(job.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(job.id, current.value, target.value)


def update_status(
    db: Session,
    job_id: str,
    status: Union[JobStatus, str],
    step: Optional[str] = None,
    *,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    target = JobStatus(status)
    job = require_job(db, job_id)
    _check_transition(job, target)

    now = now or utc_now()
    job.status = target.value
    if step is not None:
        job.step = step
    if error_message is not None:
        job.error_message = error_message
    job.updated_at = now
    append_event(db, job_id, target.value, step or target.value, now=now)
    db.flush()
    return job


def update_step(db: Session, job_id: str, step: str, now: Optional[datetime] = None) -> Job:
    job = require_job(db, job_id)
    now = now or utc_now()
    job.step = step
    job.updated_at = now
    append_event(db, job_id, job.status, step, now=now)
    db.flush()
    return job


def increment_attempts(db: Session, job_id: str, now: Optional[datetime] = None) -> Job:
    job = require_job(db, job_id)
    job.attempts += 1
    job.updated_at = now or utc_now()
    db.flush()
    return job


def claim_next_job(
    db: Session,
    *,
    now: Optional[datetime] = None,
    exclude: Collection[str] = (),
) -> Optional[Job]:
    """Atomically move the oldest eligible queued job to processing.

    The status flip is a compare-and-set on ``status = 'queued'``, so two
    claimers racing for the same row cannot both win.
    """
    now = now or utc_now()
    stmt = (
        select(Job.id)
        .where(Job.status == JobStatus.QUEUED.value, Job.available_at <= now)
        .order_by(Job.enqueued_at.asc(), Job.id.asc())
        .limit(CLAIM_BATCH + len(exclude))
    )
    for candidate in list(db.scalars(stmt)):
        if candidate in exclude:
            continue
        result = db.execute(
            update(Job)
            .where(Job.id == candidate, Job.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.PROCESSING.value,
                step=STEP_STARTING,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        job = db.get(Job, candidate, populate_existing=True)
        increment_attempts(db, candidate, now=now)
        append_event(
            db,
            candidate,
            JobStatus.PROCESSING.value,
            f"dispatched (attempt {job.attempts})",
            now=now,
        )
        return job
    return None


def requeue_job(
    db: Session,
    job_id: str,
    *,
    delay_s: float = 0.0,
    step: str = STEP_QUEUED,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    now = now or utc_now()
    job = update_status(db, job_id, JobStatus.QUEUED, step, error_message=error_message, now=now)
    job.enqueued_at = now
    job.available_at = now + timedelta(seconds=max(0.0, delay_s))
    db.flush()
    return job


def touch_jobs(db: Session, job_ids: Collection[str], now: Optional[datetime] = None) -> int:
    if not job_ids:
        return 0
    result = db.execute(
        update(Job)
        .where(Job.id.in_(list(job_ids)), Job.status == JobStatus.PROCESSING.value)
        .values(updated_at=now or utc_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def flag_stale_jobs(
    db: Session,
    *,
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> list[str]:
    """Mark processing jobs that stopped updating as stuck."""
    now = now or utc_now()
    cutoff = now - stale_after
    stmt = (
        select(Job)
        .where(Job.status == JobStatus.PROCESSING.value, Job.updated_at < cutoff)
        .order_by(Job.updated_at.asc(), Job.id.asc())
    )
    flagged: list[str] = []
    for job in list(db.scalars(stmt)):
        update_status(
            db,
            job.id,
            JobStatus.STUCK,
            f"no progress since {job.updated_at.isoformat(timespec='seconds')}",
            now=now,
        )
        flagged.append(job.id)
    return flagged


def requeue_stuck_jobs(db: Session, now: Optional[datetime] = None) -> list[str]:
    now = now or utc_now()
    stmt = select(Job.id).where(Job.status == JobStatus.STUCK.value).order_by(Job.enqueued_at.asc(), Job.id.asc())
    requeued: list[str] = []
    for job_id in list(db.scalars(stmt)):
        requeue_job(db, job_id, step="recovered", now=now)
        requeued.append(job_id)
    return requeued


def purge_terminal_jobs(
    db: Session,
    *,
    keep_latest: int = 0,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> list[str]:
    stmt = (
        select(Job)
        .where(Job.status.in_([state.value for state in TERMINAL_STATES]))
        .order_by(Job.updated_at.desc(), Job.id.desc())
    )
    terminal_jobs = list(db.scalars(stmt))
    removable = terminal_jobs[max(0, keep_latest):]
    if older_than is not None:
        cutoff = (now or utc_now()) - older_than
        removable = [job for job in removable if job.updated_at < cutoff]

    removed_ids = [job.id for job in removable]
    for job in removable:
        db.delete(job)
    db.flush()
    return removed_ids


def count_dispatchable(db: Session, now: Optional[datetime] = None) -> int:
    stmt = select(func.count()).select_from(Job).where(
        Job.status == JobStatus.QUEUED.value, Job.available_at <= (now or utc_now())
    )
    return int(db.scalar(stmt) or 0)


def count_by_status(db: Session) -> dict[str, int]:
    counts = {status.value: 0 for status in JobStatus}
    stmt = select(Job.status, func.count()).group_by(Job.status)
    for status, count in db.execute(stmt):
        counts[status] = count
    return counts


def append_event(
    db: Session,
    job_id: str,
    status: str,
    message: str,
    now: Optional[datetime] = None,
) -> JobEvent:
    event = JobEvent(job_id=job_id, status=status, message=message, created_at=now or utc_now())
    db.add(event)
    db.flush()
    return event


def list_events(db: Session, job_id: str, after_id: int = 0) -> list[JobEvent]:
    stmt = (
        select(JobEvent)
        .where(JobEvent.job_id == job_id, JobEvent.id > after_id)
        .order_by(JobEvent.id.asc())
    )
    return list(db.scalars(stmt))
