"""Pydantic schemas for job API responses."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class JobCreateResponse(BaseModel):
    job_id: str
    status: str


class JobEventOut(BaseModel):
    id: int
    job_id: str
    status: str
    message: str
    created_at: datetime


class JobOut(BaseModel):
    id: str
    source: str
    profiles: list[str]
    status: str
    step: str
    attempts: int
    error_message: Optional[str]
    created_at: datetime
    enqueued_at: datetime
    available_at: datetime
    started_at: Optional[datetime]
    updated_at: datetime


class QueueOut(BaseModel):
    queue: list[JobOut]


class RecoverOut(BaseModel):
    recovered: int


class CleanupOut(BaseModel):
    removed: list[str]
    count: int
