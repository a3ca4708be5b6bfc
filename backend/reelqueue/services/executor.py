"""Executor adapter: turns a source file into renditions for a job."""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from typing import Callable, Protocol, Sequence

from reelqueue.core.constants import MASTER_PLAYLIST
from reelqueue.core.errors import (
    ExecutionCancelled,
    TerminalExecutionError,
    TransientExecutionError,
    UnknownProfileError,
)
from reelqueue.schemas.config import EncoderConfig
from reelqueue.services.catalog import AssetCatalog
from reelqueue.services.media import (
    MediaError,
    cleanup_pass_logs,
    encode_pass_args,
    master_playlist,
    probe_video,
    run_command,
    thumbnail_args,
    tool_available,
)
from reelqueue.services.profiles import ProfileRegistry

logger = logging.getLogger(__name__)

StepReporter = Callable[[str], None]


class Executor(Protocol):
    def execute(
        self,
        job_id: str,
        source: str,
        profiles: Sequence[str],
        *,
        cancel: threading.Event,
        on_step: StepReporter,
    ) -> list[str]:
        """Produce every requested profile or raise.

        Returns the profile names produced. Raises TransientExecutionError,
        TerminalExecutionError or ExecutionCancelled. A job is complete only
        when the returned list covers all requested profiles.
        """
        ...


class FfmpegExecutor:
    def __init__(
        self,
        registry: ProfileRegistry,
        catalog: AssetCatalog,
        staging_root: Path,
        config: EncoderConfig,
    ) -> None:
        self.registry = registry
        self.catalog = catalog
        self.staging_root = staging_root
        self.config = config

    def execute(
        self,
        job_id: str,
        source: str,
        profiles: Sequence[str],
        *,
        cancel: threading.Event,
        on_step: StepReporter,
    ) -> list[str]:
        existing = self.catalog.get(job_id)
        if existing is not None and set(profiles) <= set(existing.sizes):
            logger.info("asset %s already encoded, skipping", job_id)
            return existing.sizes

        source_path = Path(source)
        if not source_path.is_file():
            raise TerminalExecutionError(f"source not found: {source}")
        if not tool_available(self.config.ffmpeg_bin) or not tool_available(self.config.ffprobe_bin):
            raise TerminalExecutionError("ffmpeg or ffprobe is not available")

        try:
            params_list = [self.registry.resolve(name) for name in profiles]
        except UnknownProfileError as exc:
            raise TerminalExecutionError(str(exc)) from exc

        staging_dir = self.staging_root / job_id
        try:
            if staging_dir.exists():
                shutil.rmtree(staging_dir)
            staging_dir.mkdir(parents=True)

            on_step("probing")
            meta = probe_video(source_path, self.config.ffprobe_bin, cancel)
            if self.config.hwaccel != "none":
                logger.info("using hardware acceleration %s for %s", self.config.hwaccel, job_id)

            for params in params_list:
                output_dir = staging_dir / params.name
                output_dir.mkdir(parents=True, exist_ok=True)
                for pass_no in (1, 2):
                    on_step(f"encoding {params.name} pass {pass_no}/2")
                    run_command(
                        encode_pass_args(
                            source_path,
                            params,
                            output_dir,
                            pass_no,
                            ffmpeg_bin=self.config.ffmpeg_bin,
                            hwaccel=self.config.hwaccel,
                            preset=self.config.preset,
                            hls_time_s=self.config.hls_time_s,
                            has_audio=meta.has_audio,
                        ),
                        cancel,
                    )
                cleanup_pass_logs(output_dir)
                logger.info("encoded %s for %s", params.name, job_id)

            (staging_dir / MASTER_PLAYLIST).write_text(master_playlist(params_list), encoding="utf-8")

            if self.config.thumbnail:
                on_step("thumbnail")
                imgs_dir = staging_dir / "imgs"
                imgs_dir.mkdir(exist_ok=True)
                run_command(thumbnail_args(source_path, imgs_dir / "thumbnail.jpg", self.config.ffmpeg_bin), cancel)

            on_step("publishing")
            sizes = [params.name for params in params_list]
            self.catalog.publish(job_id, staging_dir, sizes, source)
            return sizes
        except ExecutionCancelled:
            raise
        except MediaError as exc:
            raise TerminalExecutionError(str(exc)) from exc
        except OSError as exc:
            raise TransientExecutionError(f"I/O error: {exc}") from exc
        finally:
            if staging_dir.exists():
                shutil.rmtree(staging_dir, ignore_errors=True)
