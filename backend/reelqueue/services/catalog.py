"""Local on-disk catalog of finished video assets."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from reelqueue.core.constants import JOB_ID_PATTERN, META_FILENAME

logger = logging.getLogger(__name__)


@dataclass
class VideoAsset:
    id: str
    sizes: list[str] = field(default_factory=list)
    source: str = ""


class AssetCatalog:
    """Assets live under ``root/<id>``; ``meta.json`` marks a complete asset."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def asset_path(self, video_id: str) -> Optional[Path]:
        """Directory for ``video_id``, or None when the id is not a safe name."""
        if not JOB_ID_PATTERN.fullmatch(video_id or ""):
            return None
        return self.root / video_id

    def exists(self, video_id: str) -> bool:
        target = self.asset_path(video_id)
        return target is not None and (target / META_FILENAME).is_file()

    def get(self, video_id: str) -> Optional[VideoAsset]:
        target = self.asset_path(video_id)
        if target is None:
            return None
        meta_path = target / META_FILENAME
        if not meta_path.is_file():
            return None
        try:
            payload = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("unreadable asset metadata for %s", video_id)
            return None
        return VideoAsset(
            id=str(payload.get("id") or video_id),
            sizes=[str(size) for size in payload.get("sizes", [])],
            source=str(payload.get("source") or ""),
        )

    def publish(self, video_id: str, staged_dir: Path, sizes: list[str], source: str) -> VideoAsset:
        """Move a fully encoded staging directory into place, then write meta.json."""
        target = self.asset_path(video_id)
        if target is None:
            raise ValueError(f"invalid video id: {video_id}")
        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(staged_dir), str(target))

        asset = VideoAsset(id=video_id, sizes=list(sizes), source=source)
        meta_tmp = target / f"{META_FILENAME}.tmp"
        meta_tmp.write_text(
            json.dumps({"id": asset.id, "sizes": asset.sizes, "source": asset.source}, indent=2),
            encoding="utf-8",
        )
        meta_tmp.replace(target / META_FILENAME)
        logger.info("published asset %s with sizes %s", video_id, ",".join(sizes))
        return asset

    def delete(self, video_id: str) -> bool:
        target = self.asset_path(video_id)
        if target is None or not target.exists():
            return False
        # Drop the marker first so a half-deleted asset is never listed.
        (target / META_FILENAME).unlink(missing_ok=True)
        shutil.rmtree(target, ignore_errors=True)
        logger.info("deleted asset %s", video_id)
        return True
