"""Huey periodic maintenance tasks.

Run with ``huey_consumer reelqueue.workers.queue.huey``.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from huey import SqliteHuey, crontab

from reelqueue.core.settings import PATHS
from reelqueue.db.session import session_scope
from reelqueue.services import maintenance
from reelqueue.services.config_store import load_config

logger = logging.getLogger(__name__)

huey = SqliteHuey("reelqueue", filename=str(PATHS.queue_path))


@huey.periodic_task(crontab(minute="*/5"), retries=0)
def flag_stale_jobs_task() -> int:
    config = load_config()
    with session_scope() as db:
        flagged = maintenance.flag_stale_jobs(db, stale_after=timedelta(seconds=config.queue.stale_after_s))
    return len(flagged)


@huey.periodic_task(crontab(minute="0", hour="*/6"), retries=0)
def cleanup_completed_task() -> int:
    config = load_config()
    if not config.retention.auto_cleanup:
        logger.debug("automatic cleanup disabled")
        return 0
    policy = maintenance.RetentionPolicy.from_config(config.retention)
    with session_scope() as db:
        removed = maintenance.cleanup_completed(db, policy)
    return len(removed)
