from __future__ import annotations

import logging
import shutil
import tempfile
import time
from datetime import datetime
from pathlib import Path

from .errors import OutputNotFound

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "ytrelay-"

# yt-dlp does not always say which container it picked; these are probed in order.
OUTPUT_EXTENSIONS = {
    "video": ("mp4", "webm", "mkv"),
    "audio": ("m4a", "webm", "opus"),
    "merged": ("mp4", "mkv", "webm"),
}


class TemporaryWorkspace:
    """Request-owned scratch directory, removed with everything in it on exit.

    The directory name carries a timestamp and the video id and is created
    with ``mkdtemp``, so two requests for the same video never share a path.
    """

    def __init__(self, root: Path, video_id: str):
        self.root = Path(root)
        self.video_id = video_id
        self.stamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        self.path: Path | None = None

    def __enter__(self) -> "TemporaryWorkspace":
        self.root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{self.stamp}-{self.video_id}-", dir=self.root))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def stem(self, role: str) -> Path:
        if self.path is None:
            raise RuntimeError("Workspace is not open.")
        return self.path / f"{self.stamp}_{self.video_id}_{role}"

    def cleanup(self) -> None:
        if self.path is None:
            return
        path, self.path = self.path, None
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove workspace %s: %s", path, exc)


def sweep_stale_workspaces(root: Path, max_age_seconds: int) -> int:
    """Remove workspaces left behind by a process that died mid-request."""
    root = Path(root)
    if not root.is_dir():
        return 0
    cutoff = time.time() - max_age_seconds
    removed = 0
    for entry in root.glob(f"{WORKSPACE_PREFIX}*"):
        try:
            if not entry.is_dir() or entry.stat().st_mtime > cutoff:
                continue
            shutil.rmtree(entry)
            removed += 1
        except OSError as exc:
            logger.warning("Could not remove stale workspace %s: %s", entry, exc)
    if removed:
        logger.info("Removed %d stale workspace(s) from %s", removed, root)
    return removed


def locate_output(stem: Path, role: str) -> Path:
    """Find the file a fetch wrote for ``stem`` when the tool did not report it."""
    for ext in OUTPUT_EXTENSIONS.get(role, ()):
        candidate = stem.with_name(f"{stem.name}.{ext}")
        if candidate.is_file():
            return candidate

    matches = sorted(
        (
            p for p in stem.parent.glob(f"{stem.name}.*")
            if p.is_file() and not p.name.endswith(".part") and not p.name.endswith(".ytdl")
        ),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    if not matches:
        raise OutputNotFound()
    return matches[0]
