"""Domain error taxonomy shared by the queue, executor and token issuer."""

from __future__ import annotations


class ReelQueueError(Exception):
    pass


class ValidationError(ReelQueueError, ValueError):
    """Rejected input; nothing was queued or issued."""


class DuplicateJobError(ValidationError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job already exists: {job_id}")
        self.job_id = job_id


class UnknownProfileError(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown profile: {name}")
        self.name = name


class NotFoundError(ReelQueueError, LookupError):
    pass


class UnknownVideoError(NotFoundError):
    def __init__(self, video_id: str) -> None:
        super().__init__(f"video does not exist: {video_id}")
        self.video_id = video_id


class InvalidTransitionError(ReelQueueError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"job {job_id}: cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class ExecutionError(ReelQueueError, RuntimeError):
    pass


class TransientExecutionError(ExecutionError):
    """Failure worth retrying, such as an I/O hiccup."""


class TerminalExecutionError(ExecutionError):
    """Failure that will not go away on retry (bad source, codec error)."""


class ExecutionCancelled(ExecutionError):
    pass


class AuthorizationError(ReelQueueError):
    pass


class TokenExpiredError(AuthorizationError):
    pass


class InvalidSignatureError(AuthorizationError):
    pass
