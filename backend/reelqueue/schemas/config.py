"""Pydantic schemas for persisted app configuration."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ApiConfig(BaseModel):
    api_key: str = ""
    max_upload_mb: int = Field(2048, ge=1)


class QueueConfig(BaseModel):
    max_parallel_jobs: int = Field(1, ge=1)
    max_attempts: int = Field(3, ge=1)
    stale_after_s: int = Field(600, ge=1)
    backoff_base_s: float = Field(5.0, ge=0)
    backoff_max_s: float = Field(300.0, ge=0)
    poll_interval_s: float = Field(1.0, gt=0)
    heartbeat_interval_s: float = Field(60.0, gt=0)
    shutdown_grace_s: float = Field(30.0, ge=0)
    recover_on_startup: bool = False

    @model_validator(mode="after")
    def check_heartbeat_interval(self) -> "QueueConfig":
        # Running jobs must refresh updated_at before the stale scan can flag them.
        if self.heartbeat_interval_s >= self.stale_after_s:
            raise ValueError("heartbeat_interval_s must be smaller than stale_after_s")
        return self


class EncoderConfig(BaseModel):
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    hwaccel: str = "none"
    preset: str = "slow"
    hls_time_s: int = Field(4, ge=1)
    thumbnail: bool = True


class TokenConfig(BaseModel):
    secret: str = ""
    algorithm: str = "HS256"
    default_expires: str = "1h"
    max_expires: Optional[str] = "168h"


class RetentionConfig(BaseModel):
    keep_latest: int = Field(0, ge=0)
    older_than_s: Optional[int] = Field(None, ge=0)
    auto_cleanup: bool = False


class ProfileConfig(BaseModel):
    name: str
    width: int = Field(ge=2)
    height: int = Field(ge=2)
    video_bitrate: str
    audio_bitrate: str
    bufsize: str
    crf: int = Field(ge=0, le=51)


def default_profiles() -> list[ProfileConfig]:
    ladder = [
        ("2160p", 3840, 2160, "12000k", "192k", "18000k", 18),
        ("1440p", 2560, 1440, "8000k", "160k", "12000k", 19),
        ("1080p", 1920, 1080, "5000k", "160k", "8000k", 20),
        ("720p", 1280, 720, "2500k", "128k", "4000k", 22),
        ("480p", 854, 480, "1200k", "96k", "2000k", 23),
        ("360p", 640, 360, "800k", "96k", "1500k", 24),
        ("240p", 426, 240, "500k", "64k", "1000k", 25),
        ("144p", 256, 144, "300k", "64k", "600k", 26),
    ]
    return [
        ProfileConfig(
            name=name,
            width=width,
            height=height,
            video_bitrate=video_bitrate,
            audio_bitrate=audio_bitrate,
            bufsize=bufsize,
            crf=crf,
        )
        for name, width, height, video_bitrate, audio_bitrate, bufsize, crf in ladder
    ]


class AppConfig(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    token: TokenConfig = Field(default_factory=TokenConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    profiles: list[ProfileConfig] = Field(default_factory=default_profiles)
