import os
import subprocess
import threading
from pathlib import Path

import pytest

from reelqueue.schemas.config import EncoderConfig
from reelqueue.services.executor import FfmpegExecutor


@pytest.mark.skipif(
    os.environ.get("RUN_E2E") != "1",
    reason="Set RUN_E2E=1 with ffmpeg and ffprobe on PATH to run e2e.",
)
def test_ffmpeg_executor_smoke(registry, catalog, tmp_path: Path) -> None:
    source = tmp_path / "source.mp4"
    subprocess.run(
        [
            "ffmpeg",
            "-y",
            "-f",
            "lavfi",
            "-i",
            "testsrc=duration=2:size=640x360:rate=25",
            "-f",
            "lavfi",
            "-i",
            "sine=frequency=440:duration=2",
            "-shortest",
            str(source),
        ],
        check=True,
        capture_output=True,
    )
    staging = tmp_path / "staging"
    staging.mkdir()
    executor = FfmpegExecutor(registry, catalog, staging, EncoderConfig(preset="ultrafast", hls_time_s=1))

    steps: list[str] = []
    produced = executor.execute("smoke1", str(source), ["144p", "240p"], cancel=threading.Event(), on_step=steps.append)

    assert produced == ["144p", "240p"]
    asset_dir = catalog.asset_path("smoke1")
    assert (asset_dir / "master.m3u8").is_file()
    assert (asset_dir / "144p" / "index.m3u8").is_file()
    assert (asset_dir / "imgs" / "thumbnail.jpg").is_file()
    assert not list((asset_dir / "144p").glob("passlog*"))
    assert "publishing" in steps
