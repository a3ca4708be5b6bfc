"""Project-wide constants and state definitions."""

from __future__ import annotations

import re
from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    STUCK = "stuck"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.DONE, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.STUCK}
    ),
    JobStatus.STUCK: frozenset({JobStatus.QUEUED}),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATES = {JobStatus.DONE, JobStatus.FAILED}

JOB_ID_PATTERN = re.compile(r"[A-Za-z0-9]{1,64}")

STEP_QUEUED = "queued"
STEP_STARTING = "starting"

META_FILENAME = "meta.json"
MASTER_PLAYLIST = "master.m3u8"
