"""Bounded worker pool that drives queued jobs through the executor."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from reelqueue.core.constants import JobStatus
from reelqueue.core.errors import (
    ExecutionCancelled,
    InvalidTransitionError,
    NotFoundError,
    TransientExecutionError,
)
from reelqueue.schemas.job import JobOut
from reelqueue.services import repository
from reelqueue.services.catalog import AssetCatalog
from reelqueue.services.executor import Executor

logger = logging.getLogger(__name__)


def backoff_delay(attempts: int, base_s: float, max_s: float) -> float:
    """Exponential retry delay: base, 2*base, 4*base ... capped at max_s."""
    if base_s <= 0:
        return 0.0
    return min(max_s, base_s * (2 ** max(0, attempts - 1)))


class Scheduler:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        executor: Executor,
        *,
        max_workers: int = 1,
        max_attempts: int = 3,
        backoff_base_s: float = 5.0,
        backoff_max_s: float = 300.0,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 60.0,
        clock: Callable[[], datetime] = repository.utc_now,
        catalog: Optional[AssetCatalog] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session_factory = session_factory
        self.executor = executor
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.clock = clock
        self.catalog = catalog

        self._cond = threading.Condition()
        self._wakeup = threading.Event()
        self._running: dict[str, threading.Event] = {}
        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = False
        self._claiming = False
        self._dispatch_lock = threading.Lock()
        self._last_heartbeat = 0.0

    @property
    def running_job_ids(self) -> set[str]:
        with self._cond:
            return set(self._running)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reelqueue-worker")
            self._thread = threading.Thread(target=self._loop, name="reelqueue-dispatcher", daemon=True)
            self._thread.start()
        logger.info("scheduler started with %d worker slot(s)", self.max_workers)

    def notify(self) -> None:
        self._wakeup.set()

    def stop(self, grace_s: float = 30.0) -> None:
        with self._cond:
            thread, pool = self._thread, self._pool
            if thread is None:
                return
            self._stopping = True
            self._cond.notify_all()
        self._wakeup.set()
        thread.join()

        deadline = time.monotonic() + max(0.0, grace_s)
        with self._cond:
            while self._running:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            leftovers = list(self._running.items())

        for job_id, cancel in leftovers:
            logger.warning("canceling job %s at shutdown; it stays processing until recovered", job_id)
            cancel.set()
        if pool is not None:
            pool.shutdown(wait=True)

        with self._cond:
            self._thread = None
            self._pool = None
        logger.info("scheduler stopped")

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until nothing is running and nothing is ready to dispatch."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._cond:
                busy = bool(self._running) or self._claiming
            if not busy and not self._has_eligible():
                with self._cond:
                    if not self._running and not self._claiming:
                        return True
            self.notify()
            time.sleep(0.02)
        return False

    def _has_eligible(self) -> bool:
        with self.session_factory() as db:
            return repository.count_dispatchable(db, now=self.clock()) > 0

    def _loop(self) -> None:
        while True:
            self._wakeup.clear()
            with self._cond:
                if self._stopping:
                    return
            try:
                dispatched = self.dispatch_available()
                self._heartbeat()
            except Exception:
                logger.exception("dispatcher iteration failed")
                dispatched = 0
            if dispatched:
                continue
            self._wakeup.wait(self.poll_interval_s)

    def dispatch_available(self) -> int:
        """Claim and submit jobs while worker slots are free."""
        with self._dispatch_lock:
            return self._dispatch_locked()

    def _dispatch_locked(self) -> int:
        dispatched = 0
        while True:
            with self._cond:
                if self._stopping or self._pool is None or len(self._running) >= self.max_workers:
                    break
                exclude = set(self._running)
                self._claiming = True
            try:
                job = self._claim(exclude)
                if job is None:
                    break
                cancel = threading.Event()
                with self._cond:
                    self._running[job.id] = cancel
                    pool = self._pool
            finally:
                with self._cond:
                    self._claiming = False
            logger.info("dispatching job %s (attempt %d)", job.id, job.attempts)
            pool.submit(self._run_job, job.id, job.source, job.profiles, cancel)
            dispatched += 1
        return dispatched

    def _claim(self, exclude: set[str]) -> Optional[JobOut]:
        with self.session_factory() as db:
            job = repository.claim_next_job(db, now=self.clock(), exclude=exclude)
            out = repository.to_job_out(job) if job is not None else None
            db.commit()
            return out

    def _heartbeat(self) -> None:
        now_m = time.monotonic()
        if now_m - self._last_heartbeat < self.heartbeat_interval_s:
            return
        self._last_heartbeat = now_m
        job_ids = self.running_job_ids
        if not job_ids:
            return
        with self.session_factory() as db:
            repository.touch_jobs(db, job_ids, now=self.clock())
            db.commit()

    def _run_job(self, job_id: str, source: str, profiles: Sequence[str], cancel: threading.Event) -> None:
        try:
            self._execute(job_id, source, profiles, cancel)
        except Exception:
            logger.exception("unexpected error while finishing job %s", job_id)
        finally:
            with self._cond:
                self._running.pop(job_id, None)
                self._cond.notify_all()
            self.notify()

    def _report_step(self, job_id: str, step: str) -> None:
        try:
            with self.session_factory() as db:
                repository.update_step(db, job_id, step, now=self.clock())
                db.commit()
        except NotFoundError:
            logger.debug("job %s vanished while reporting step %r", job_id, step)

    def _execute(self, job_id: str, source: str, profiles: Sequence[str], cancel: threading.Event) -> None:
        try:
            produced = self.executor.execute(
                job_id,
                source,
                profiles,
                cancel=cancel,
                on_step=lambda step: self._report_step(job_id, step),
            )
        except ExecutionCancelled:
            logger.warning("job %s canceled mid-run", job_id)
            return
        except TransientExecutionError as exc:
            self._handle_transient(job_id, exc)
            return
        except Exception as exc:
            # Unclassified errors are terminal so broken input cannot loop forever.
            logger.warning("job %s failed: %s", job_id, exc)
            self._finish(job_id, JobStatus.FAILED, f"failed: {exc}", error_message=str(exc))
            return

        produced_set = set(produced or [])
        missing = [name for name in profiles if name not in produced_set]
        if missing:
            message = f"executor did not produce: {', '.join(missing)}"
            logger.warning("job %s incomplete: %s", job_id, message)
            self._finish(job_id, JobStatus.FAILED, message, error_message=message)
            return

        logger.info("job %s done", job_id)
        self._finish(job_id, JobStatus.DONE, "done")

    def _handle_transient(self, job_id: str, exc: TransientExecutionError) -> None:
        try:
            with self.session_factory() as db:
                job = repository.require_job(db, job_id)
                if job.attempts >= self.max_attempts:
                    logger.warning("job %s exhausted %d attempts: %s", job_id, job.attempts, exc)
                    repository.update_status(
                        db,
                        job_id,
                        JobStatus.FAILED,
                        f"failed after {job.attempts} attempts: {exc}",
                        error_message=str(exc),
                        now=self.clock(),
                    )
                else:
                    delay = backoff_delay(job.attempts, self.backoff_base_s, self.backoff_max_s)
                    logger.info("job %s hit a transient error, retrying in %.1fs: %s", job_id, delay, exc)
                    repository.requeue_job(
                        db,
                        job_id,
                        delay_s=delay,
                        step=f"retrying after: {exc}",
                        error_message=str(exc),
                        now=self.clock(),
                    )
                db.commit()
        except (NotFoundError, InvalidTransitionError) as err:
            logger.warning("could not record retry for job %s: %s", job_id, err)

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        step: str,
        *,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            with self.session_factory() as db:
                repository.update_status(db, job_id, status, step, error_message=error_message, now=self.clock())
                db.commit()
        except NotFoundError as err:
            logger.warning("could not mark job %s %s: %s", job_id, status.value, err)
            # The row was deleted mid-run; whatever the executor published has no owner.
            if status is JobStatus.DONE and self.catalog is not None and self.catalog.delete(job_id):
                logger.warning("removed asset %s published after its job was deleted", job_id)
        except InvalidTransitionError as err:
            # Recovered while the executor was still running.
            logger.warning("could not mark job %s %s: %s", job_id, status.value, err)
