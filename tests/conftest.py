from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

# Point the runtime root at a scratch directory before reelqueue is imported.
os.environ.setdefault("REELQUEUE_RUNTIME_ROOT", tempfile.mkdtemp(prefix="reelqueue-tests-"))

import pytest
from sqlalchemy.orm import Session, sessionmaker

from reelqueue.db.base import Base
from reelqueue.db.session import make_session_factory
from reelqueue.models import Job, JobEvent  # noqa: F401
from reelqueue.schemas.config import default_profiles
from reelqueue.services.catalog import AssetCatalog
from reelqueue.services.profiles import ProfileRegistry

Outcome = Union[str, BaseException]


class FakeExecutor:
    """Scripted stand-in for the ffmpeg executor.

    ``outcomes`` maps a job id to a list consumed one entry per call; an entry
    is either ``"ok"`` or an exception instance to raise. Jobs without a
    script succeed. Successful runs publish an empty asset when a catalog is
    given.
    """

    def __init__(
        self,
        outcomes: Optional[dict[str, list[Outcome]]] = None,
        catalog: Optional[AssetCatalog] = None,
        gate: Optional[threading.Event] = None,
        produce: Optional[Callable[[Sequence[str]], list[str]]] = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.catalog = catalog
        self.gate = gate
        self.produce = produce
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, job_id, source, profiles, *, cancel, on_step):
        with self._lock:
            self.calls.append(job_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            on_step("encoding")
            if self.gate is not None:
                while not self.gate.wait(0.01):
                    if cancel.is_set():
                        from reelqueue.core.errors import ExecutionCancelled

                        raise ExecutionCancelled("canceled")
            script = self.outcomes.get(job_id)
            outcome = script.pop(0) if script else "ok"
            if isinstance(outcome, BaseException):
                raise outcome
            produced = self.produce(profiles) if self.produce else list(profiles)
            if self.catalog is not None:
                staged = Path(tempfile.mkdtemp(prefix=f"stage-{job_id}-"))
                self.catalog.publish(job_id, staged, produced, source)
            return produced
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def session_factory(tmp_path: Path) -> sessionmaker[Session]:
    factory = make_session_factory(f"sqlite:///{tmp_path / 'jobs.sqlite3'}")
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def registry() -> ProfileRegistry:
    return ProfileRegistry.from_config(default_profiles())


@pytest.fixture
def catalog(tmp_path: Path) -> AssetCatalog:
    root = tmp_path / "assets"
    root.mkdir()
    return AssetCatalog(root)
