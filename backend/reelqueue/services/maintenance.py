"""Operator-triggered recovery and retention cleanup for the job store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from reelqueue.schemas.config import RetentionConfig
from reelqueue.services import repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Which terminal job records to keep.

    ``keep_latest`` newest done/failed records always survive; when
    ``older_than`` is set, only records untouched for that long are removed.
    """

    keep_latest: int = 0
    older_than: Optional[timedelta] = None

    @classmethod
    def from_config(cls, config: RetentionConfig) -> "RetentionPolicy":
        older_than = timedelta(seconds=config.older_than_s) if config.older_than_s is not None else None
        return cls(keep_latest=config.keep_latest, older_than=older_than)


def flag_stale_jobs(db: Session, *, stale_after: timedelta, now: Optional[datetime] = None) -> list[str]:
    flagged = repository.flag_stale_jobs(db, stale_after=stale_after, now=now)
    for job_id in flagged:
        logger.warning("job %s has not progressed for %s, marked stuck", job_id, stale_after)
    return flagged


def recover_stuck_jobs(db: Session, *, stale_after: timedelta, now: Optional[datetime] = None) -> int:
    """Run the stale scan, then requeue every stuck job. Returns the count requeued."""
    now = now or repository.utc_now()
    flag_stale_jobs(db, stale_after=stale_after, now=now)
    requeued = repository.requeue_stuck_jobs(db, now=now)
    if requeued:
        logger.info("recovered %d stuck job(s): %s", len(requeued), ", ".join(requeued))
    else:
        logger.info("recovery found no stuck jobs")
    return len(requeued)


def cleanup_completed(
    db: Session,
    policy: RetentionPolicy,
    now: Optional[datetime] = None,
) -> list[str]:
    removed = repository.purge_terminal_jobs(
        db,
        keep_latest=policy.keep_latest,
        older_than=policy.older_than,
        now=now,
    )
    logger.info("cleanup removed %d terminal job record(s)", len(removed))
    return removed
