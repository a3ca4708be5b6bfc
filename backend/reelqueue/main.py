"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reelqueue.api import player_router, router
from reelqueue.core.settings import APP_VERSION, PATHS
from reelqueue.db.base import Base
from reelqueue.db.session import SessionLocal, engine
from reelqueue.models import Job, JobEvent  # noqa: F401
from reelqueue.services import maintenance
from reelqueue.services.catalog import AssetCatalog
from reelqueue.services.config_store import load_config, save_config
from reelqueue.services.executor import Executor, FfmpegExecutor
from reelqueue.services.profiles import ProfileRegistry
from reelqueue.services.scheduler import Scheduler
from reelqueue.services.tokens import TokenIssuer, parse_duration

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def create_app(executor: Optional[Executor] = None, start_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for path in (PATHS.runtime_root, PATHS.uploads_root, PATHS.assets_root, PATHS.staging_root):
            path.mkdir(parents=True, exist_ok=True)

        Base.metadata.create_all(bind=engine)

        # Ensure config file exists with defaults.
        if not PATHS.config_path.exists():
            save_config(load_config())
        config = load_config()

        registry = ProfileRegistry.from_config(config.profiles)
        catalog = AssetCatalog(PATHS.assets_root)
        app.state.registry = registry
        app.state.catalog = catalog

        if config.token.secret:
            max_expires = parse_duration(config.token.max_expires) if config.token.max_expires else None
            app.state.token_issuer = TokenIssuer(
                config.token.secret,
                catalog,
                algorithm=config.token.algorithm,
                default_expires=config.token.default_expires,
                max_expires=max_expires,
            )
        else:
            logger.warning("token.secret is not set; playback tokens are disabled")
            app.state.token_issuer = None

        stale_after = timedelta(seconds=config.queue.stale_after_s)
        with SessionLocal() as db:
            maintenance.flag_stale_jobs(db, stale_after=stale_after)
            if config.queue.recover_on_startup:
                maintenance.recover_stuck_jobs(db, stale_after=stale_after)
            db.commit()

        scheduler = Scheduler(
            SessionLocal,
            executor or FfmpegExecutor(registry, catalog, PATHS.staging_root, config.encoder),
            max_workers=config.queue.max_parallel_jobs,
            max_attempts=config.queue.max_attempts,
            backoff_base_s=config.queue.backoff_base_s,
            backoff_max_s=config.queue.backoff_max_s,
            poll_interval_s=config.queue.poll_interval_s,
            heartbeat_interval_s=config.queue.heartbeat_interval_s,
            catalog=catalog,
        )
        app.state.scheduler = scheduler
        if start_scheduler:
            scheduler.start()

        try:
            yield
        finally:
            scheduler.stop(grace_s=config.queue.shutdown_grace_s)

    app = FastAPI(title="reelqueue", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.include_router(player_router)

    return app


app = create_app()
