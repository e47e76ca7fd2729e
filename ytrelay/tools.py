"""External tools: the yt-dlp fetch tool and the ffmpeg transcoder."""

from __future__ import annotations

import importlib.util
import logging
import os
import shutil
import stat
import sys
import threading
from pathlib import Path

import requests

from .errors import FetchFailed, MergeFailed
from .sources import ByteSource, ProcessSource, run_checked_process

logger = logging.getLogger(__name__)

YTDLP_RELEASE_URL = "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"


def _release_filename() -> str:
    return "yt-dlp.exe" if os.name == "nt" else "yt-dlp"


class ToolLocator:
    """Resolves the yt-dlp command line once per process.

    Concurrent first callers wait on the same lock, so at most one of them
    searches for or downloads the binary; a failed attempt is not cached.
    """

    def __init__(
        self,
        binary: str = "yt-dlp",
        tools_dir: Path | None = None,
        download_url: str = YTDLP_RELEASE_URL,
        timeout_seconds: int = 180,
    ):
        self.binary = binary
        self.tools_dir = Path(tools_dir) if tools_dir else None
        self.download_url = download_url
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._command: list[str] | None = None

    def ensure_available(self) -> list[str]:
        command = self._command
        if command is None:
            with self._lock:
                if self._command is None:
                    self._command = self._resolve()
                command = self._command
        return list(command)

    def _resolve(self) -> list[str]:
        found = shutil.which(self.binary)
        if found:
            logger.info("Using %s from %s", self.binary, found)
            return [found]

        if self.tools_dir is not None:
            provisioned = self.tools_dir / _release_filename()
            if provisioned.exists():
                return [str(provisioned)]

        if importlib.util.find_spec("yt_dlp") is not None:
            logger.info("%s not on PATH, running the installed yt_dlp module", self.binary)
            return [sys.executable, "-m", "yt_dlp"]

        if self.tools_dir is None:
            raise FetchFailed("yt-dlp is not installed or not available in PATH.")
        return [str(self._provision(self.tools_dir / _release_filename()))]

    def _provision(self, target: Path) -> Path:
        logger.info("Downloading yt-dlp from %s", self.download_url)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f"{target.name}.part")
        try:
            with requests.get(self.download_url, stream=True, timeout=self.timeout_seconds) as response:
                response.raise_for_status()
                with open(partial, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=1024 * 64):
                        if chunk:
                            handle.write(chunk)
        except (requests.RequestException, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise FetchFailed(f"yt-dlp is not installed and could not be downloaded: {exc}") from exc

        partial.chmod(partial.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        partial.replace(target)
        return target


class Transcoder:
    """Merges and re-encodes streams using ffmpeg."""

    def __init__(self, binary: str = "ffmpeg", audio_bitrate: str = "192k", timeout_seconds: int = 7200):
        self.binary = binary
        self.audio_bitrate = audio_bitrate
        self.timeout_seconds = timeout_seconds

    @property
    def location(self) -> str | None:
        return shutil.which(self.binary)

    def available(self) -> bool:
        return self.location is not None

    def merge(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        for path, label in ((video_path, "Video"), (audio_path, "Audio")):
            if not path.exists() or path.stat().st_size == 0:
                raise MergeFailed(f"{label} file is missing or empty: {path.name}")

        cmd = [
            self.binary, "-y", "-loglevel", "error",
            "-i", str(video_path),
            "-i", str(audio_path),
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", self.audio_bitrate,
            "-movflags", "+faststart",
            str(output_path),
        ]
        run_checked_process(
            cmd,
            timeout_seconds=self.timeout_seconds,
            failure=MergeFailed,
            missing_error="ffmpeg is not installed or not available in PATH.",
        )
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise MergeFailed("ffmpeg produced an empty file.")
        return output_path

    def encode_mp3(self, source: ByteSource) -> ProcessSource:
        cmd = [
            self.binary, "-loglevel", "error",
            "-i", "pipe:0",
            "-vn",
            "-c:a", "libmp3lame",
            "-b:a", self.audio_bitrate,
            "-f", "mp3",
            "pipe:1",
        ]
        return ProcessSource(
            cmd,
            timeout_seconds=self.timeout_seconds,
            feed=source,
            missing_error="ffmpeg is not installed or not available in PATH.",
        )
