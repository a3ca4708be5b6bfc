"""FastAPI route definitions."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from reelqueue.core.constants import JOB_ID_PATTERN, TERMINAL_STATES
from reelqueue.core.errors import (
    AuthorizationError,
    DuplicateJobError,
    NotFoundError,
    UnknownVideoError,
    ValidationError,
)
from reelqueue.core.settings import APP_VERSION, PATHS
from reelqueue.db.session import SessionLocal, get_db_session
from reelqueue.schemas.config import AppConfig
from reelqueue.schemas.job import CleanupOut, JobCreateResponse, JobEventOut, JobOut, QueueOut, RecoverOut
from reelqueue.schemas.token import TokenOut, TokenRequest, VideoOut
from reelqueue.services import maintenance, repository
from reelqueue.services.catalog import AssetCatalog
from reelqueue.services.config_store import load_config, save_config
from reelqueue.services.media import tool_available
from reelqueue.services.profiles import ProfileRegistry
from reelqueue.services.scheduler import Scheduler
from reelqueue.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)


def require_api_key(x_api_key: Optional[str] = Header(None)) -> None:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing x-api-key header")
    expected = load_config().api.api_key
    if not expected:
        raise HTTPException(status_code=401, detail="api key is not configured")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="api key is invalid")


router = APIRouter(prefix="/api", tags=["api"], dependencies=[Depends(require_api_key)])
player_router = APIRouter(prefix="/play", tags=["player"])


def get_registry(request: Request) -> ProfileRegistry:
    return request.app.state.registry


def get_catalog(request: Request) -> AssetCatalog:
    return request.app.state.catalog


def get_scheduler(request: Request) -> Optional[Scheduler]:
    return request.app.state.scheduler


def get_token_issuer(request: Request) -> TokenIssuer:
    issuer = request.app.state.token_issuer
    if issuer is None:
        raise HTTPException(status_code=503, detail="token secret is not configured")
    return issuer


def _upload_dir(job_id: str) -> Path:
    return PATHS.uploads_root / job_id


async def _save_upload(upload: UploadFile, target: Path, max_bytes: int) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with target.open("wb") as f:
        while True:
            chunk = await upload.read(1024 * 1024)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                raise HTTPException(status_code=413, detail="Uploaded file exceeds max size")
            f.write(chunk)


def _id_in_use(db: Session, catalog: AssetCatalog, job_id: str) -> bool:
    return catalog.exists(job_id) or repository.get_job(db, job_id) is not None


def _discard_upload(path: Path) -> None:
    path.unlink(missing_ok=True)
    # Leaves the directory alone while another upload for the same id owns a file in it.
    with contextlib.suppress(OSError):
        path.parent.rmdir()


@router.get("/health")
def health(db: Session = Depends(get_db_session)) -> dict[str, object]:
    config = load_config()
    return {
        "version": APP_VERSION,
        "ffmpeg_available": tool_available(config.encoder.ffmpeg_bin),
        "ffprobe_available": tool_available(config.encoder.ffprobe_bin),
        "jobs": repository.count_by_status(db),
    }


@router.get("/config", response_model=AppConfig)
def get_config() -> AppConfig:
    return load_config()


@router.put("/config", response_model=AppConfig)
def put_config(config: AppConfig) -> AppConfig:
    return save_config(config)


@router.get("/profiles")
def list_profiles(registry: ProfileRegistry = Depends(get_registry)) -> list[dict[str, object]]:
    return [
        {
            "name": params.name,
            "resolution": params.resolution,
            "video_bitrate": params.video_bitrate,
            "audio_bitrate": params.audio_bitrate,
        }
        for params in registry
    ]


@router.post("/jobs", response_model=JobCreateResponse)
async def create_job(
    job_id: Optional[str] = Form(None, alias="id"),
    profiles: str = Form(...),
    video_file: UploadFile = File(...),
    db: Session = Depends(get_db_session),
    registry: ProfileRegistry = Depends(get_registry),
    catalog: AssetCatalog = Depends(get_catalog),
    scheduler: Optional[Scheduler] = Depends(get_scheduler),
) -> JobCreateResponse:
    job_id = job_id or uuid.uuid4().hex
    try:
        repository.validate_job_id(job_id)
        names = repository.normalize_profiles(profiles.split(","), registry)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if _id_in_use(db, catalog, job_id):
        raise HTTPException(status_code=409, detail="id already exists")

    max_bytes = int(load_config().api.max_upload_mb) * 1024 * 1024
    source_path = _upload_dir(job_id) / "input"
    # Each request writes its own file; only the one that inserts the row moves it into place.
    staged_path = source_path.with_name(f".input-{uuid.uuid4().hex}")
    try:
        await _save_upload(video_file, staged_path, max_bytes)
        repository.create_job(db, job_id=job_id, source=str(source_path), profiles=names, registry=registry)
        staged_path.replace(source_path)
        db.commit()
    except HTTPException:
        db.rollback()
        _discard_upload(staged_path)
        raise
    except DuplicateJobError as exc:
        db.rollback()
        _discard_upload(staged_path)
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValidationError as exc:
        db.rollback()
        _discard_upload(staged_path)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info("queued job %s with profiles %s", job_id, ",".join(names))
    if scheduler is not None:
        scheduler.notify()
    return JobCreateResponse(job_id=job_id, status="queued")


@router.get("/queue", response_model=QueueOut)
def get_queue(db: Session = Depends(get_db_session)) -> QueueOut:
    return QueueOut(queue=[repository.to_job_out(job) for job in repository.list_jobs(db)])


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, db: Session = Depends(get_db_session)) -> JobOut:
    job = repository.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return repository.to_job_out(job)


@router.get("/jobs/{job_id}/events")
async def stream_job_events(job_id: str, db: Session = Depends(get_db_session)) -> EventSourceResponse:
    exists = repository.get_job(db, job_id)
    if not exists:
        raise HTTPException(status_code=404, detail="Job not found")

    async def event_generator():
        last_id = 0
        while True:
            with SessionLocal() as session:
                events = repository.list_events(session, job_id, after_id=last_id)
                job = repository.get_job(session, job_id)
                status = job.status if job else None

            for event in events:
                last_id = event.id
                payload = JobEventOut.model_validate(event, from_attributes=True).model_dump(mode="json")
                yield {
                    "event": "job_event",
                    "id": str(event.id),
                    "data": json.dumps(payload, ensure_ascii=False),
                }

            terminal = status is None or any(status == state.value for state in TERMINAL_STATES)
            if terminal and not events:
                yield {"event": "end", "data": json.dumps({"job_id": job_id, "status": status})}
                break

            await asyncio.sleep(1)

    return EventSourceResponse(event_generator())


@router.post("/queue/recover", response_model=RecoverOut)
def recover_queue(
    db: Session = Depends(get_db_session),
    scheduler: Optional[Scheduler] = Depends(get_scheduler),
) -> RecoverOut:
    stale_after = timedelta(seconds=load_config().queue.stale_after_s)
    recovered = maintenance.recover_stuck_jobs(db, stale_after=stale_after)
    db.commit()
    if recovered and scheduler is not None:
        scheduler.notify()
    return RecoverOut(recovered=recovered)


@router.post("/queue/cleanup", response_model=CleanupOut)
def cleanup_queue(
    keep_latest: Optional[int] = Query(None, ge=0, le=10000),
    older_than_s: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db_session),
) -> CleanupOut:
    policy = maintenance.RetentionPolicy.from_config(load_config().retention)
    if keep_latest is not None:
        policy = maintenance.RetentionPolicy(keep_latest=keep_latest, older_than=policy.older_than)
    if older_than_s is not None:
        policy = maintenance.RetentionPolicy(keep_latest=policy.keep_latest, older_than=timedelta(seconds=older_than_s))

    removed_ids = maintenance.cleanup_completed(db, policy)
    db.commit()

    for job_id in removed_ids:
        target = _upload_dir(job_id)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)

    return CleanupOut(removed=removed_ids, count=len(removed_ids))


@router.post("/token", response_model=TokenOut)
def issue_token(payload: TokenRequest, issuer: TokenIssuer = Depends(get_token_issuer)) -> TokenOut:
    try:
        token = issuer.issue_token(payload.id, payload.expires, payload.attributes)
    except UnknownVideoError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TokenOut(token=token.token, player_url=token.player_url, expires=int(token.expires_at.timestamp()))


@router.get("/videos/{video_id}", response_model=VideoOut)
def get_video(video_id: str, catalog: AssetCatalog = Depends(get_catalog)) -> VideoOut:
    asset = catalog.get(video_id)
    if asset is None:
        raise HTTPException(status_code=404, detail="id does not exist")
    return VideoOut(id=asset.id, sizes=asset.sizes, source=asset.source)


@router.delete("/videos/{video_id}")
def delete_video(
    video_id: str,
    db: Session = Depends(get_db_session),
    catalog: AssetCatalog = Depends(get_catalog),
    scheduler: Optional[Scheduler] = Depends(get_scheduler),
) -> dict[str, object]:
    if scheduler is not None and video_id in scheduler.running_job_ids:
        raise HTTPException(status_code=409, detail="video is being encoded")

    asset_deleted = catalog.delete(video_id)
    try:
        repository.delete_job(db, video_id)
        db.commit()
        job_deleted = True
    except NotFoundError:
        job_deleted = False

    if not asset_deleted and not job_deleted:
        raise HTTPException(status_code=404, detail="id does not exist")

    target = _upload_dir(video_id)
    if JOB_ID_PATTERN.fullmatch(video_id) and target.exists():
        shutil.rmtree(target, ignore_errors=True)

    return {"deleted": True, "id": video_id, "asset": asset_deleted, "job": job_deleted}


@player_router.get("/{video_id}/validate")
def validate_playback(
    video_id: str,
    token: Optional[str] = Header(None),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> dict[str, object]:
    if not token:
        raise HTTPException(status_code=401, detail="invalid token or id")
    try:
        issuer.verify_token(token, video_id=video_id)
    except AuthorizationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if not issuer.catalog.exists(video_id):
        raise HTTPException(status_code=401, detail="invalid token or id")
    return {"valid": True}
