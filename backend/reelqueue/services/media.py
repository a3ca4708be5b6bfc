"""Media processing helpers powered by ffmpeg/ffprobe."""

from __future__ import annotations

import json
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from reelqueue.core.errors import ExecutionCancelled
from reelqueue.services.profiles import EncodeParameters


class MediaError(RuntimeError):
    pass


@dataclass
class VideoMeta:
    width: int
    height: int
    fps: float
    duration: float
    has_audio: bool


def run_command(
    cmd: list[str],
    cancel: Optional[threading.Event] = None,
    poll_s: float = 0.5,
) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as exc:
        raise MediaError(f"Executable not found: {cmd[0]}") from exc

    while True:
        try:
            stdout, stderr = proc.communicate(timeout=poll_s)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                proc.kill()
                proc.communicate()
                raise ExecutionCancelled(f"Command canceled: {cmd[0]}")

    if proc.returncode != 0:
        raise MediaError(f"Command failed: {' '.join(cmd)}\n{stderr.strip()}")
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def tool_available(binary: str) -> bool:
    try:
        run_command([binary, "-version"])
        return True
    except Exception:
        return False


def _fps_value(rate: Optional[str]) -> float:
    if not rate:
        return 30.0
    if "/" in rate:
        n, d = rate.split("/", maxsplit=1)
        try:
            denom = float(d)
            if denom == 0:
                return 30.0
            return float(n) / denom
        except Exception:
            return 30.0
    try:
        return float(rate)
    except Exception:
        return 30.0


def parse_probe_output(raw: str) -> VideoMeta:
    payload = json.loads(raw)
    streams = payload.get("streams", [])

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise MediaError("No video stream found")

    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    duration = video_stream.get("duration") or payload.get("format", {}).get("duration") or 0
    return VideoMeta(
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
        fps=max(_fps_value(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")), 1.0),
        duration=float(duration),
        has_audio=audio_stream is not None,
    )


def probe_video(path: Path, ffprobe_bin: str = "ffprobe", cancel: Optional[threading.Event] = None) -> VideoMeta:
    proc = run_command(
        [
            ffprobe_bin,
            "-v",
            "error",
            "-show_streams",
            "-show_format",
            "-of",
            "json",
            str(path),
        ],
        cancel,
    )
    return parse_probe_output(proc.stdout)


def _scale_filter(params: EncodeParameters) -> str:
    return (
        f"scale=w={params.width}:h={params.height}"
        ":force_original_aspect_ratio=decrease:force_divisible_by=2"
    )


def encode_pass_args(
    source: Path,
    params: EncodeParameters,
    output_dir: Path,
    pass_no: int,
    *,
    ffmpeg_bin: str = "ffmpeg",
    hwaccel: str = "none",
    preset: str = "slow",
    hls_time_s: int = 4,
    has_audio: bool = True,
) -> list[str]:
    """Build one pass of a two-pass bitrate-targeted HLS encode."""
    if pass_no not in (1, 2):
        raise ValueError(f"pass must be 1 or 2, got {pass_no}")

    cmd = [
        ffmpeg_bin,
        "-y",
        "-hwaccel",
        hwaccel,
        "-i",
        str(source),
        "-c:v",
        "libx264",
        "-preset",
        preset,
        "-b:v",
        params.video_bitrate,
        "-maxrate",
        params.video_bitrate,
        "-bufsize",
        params.bufsize,
        "-vf",
        _scale_filter(params),
        "-pass",
        str(pass_no),
        "-passlogfile",
        str(output_dir / "passlog"),
    ]

    if pass_no == 1:
        return cmd + ["-an", "-f", "mp4", "/dev/null"]

    if has_audio:
        cmd += ["-c:a", "aac", "-b:a", params.audio_bitrate]
    else:
        cmd += ["-an"]
    return cmd + [
        "-hls_time",
        str(hls_time_s),
        "-hls_playlist_type",
        "vod",
        "-hls_segment_type",
        "fmp4",
        "-hls_segment_filename",
        str(output_dir / "seg_%03d.m4s"),
        str(output_dir / "index.m3u8"),
    ]


def thumbnail_args(source: Path, output_image: Path, ffmpeg_bin: str = "ffmpeg") -> list[str]:
    return [
        ffmpeg_bin,
        "-y",
        "-i",
        str(source),
        "-vf",
        "thumbnail,scale=1280:720:force_original_aspect_ratio=decrease",
        "-frames:v",
        "1",
        str(output_image),
    ]


def master_playlist(profiles: Iterable[EncodeParameters]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for params in profiles:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={params.bandwidth},RESOLUTION={params.resolution}")
        lines.append(f"{params.name}/index.m3u8")
    return "\n".join(lines) + "\n"


def cleanup_pass_logs(output_dir: Path) -> None:
    for path in output_dir.glob("passlog*"):
        path.unlink(missing_ok=True)
