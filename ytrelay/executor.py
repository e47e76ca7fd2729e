from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .errors import OutputNotFound
from .formats import AUDIO_ONLY, BEST_AUDIO_TOKEN, MERGED, PROGRESSIVE, VIDEO_ONLY
from .models import AUDIO, FormatDescriptor, StreamSpec
from .providers import MediaProvider
from .sources import BufferedSource, ByteSource
from .tools import Transcoder
from .workspace import TemporaryWorkspace

logger = logging.getLogger(__name__)

AUTO = "auto"
COMBINED = "combined"
SEPARATE = "separate"
MERGE_STRATEGIES = (AUTO, COMBINED, SEPARATE)


@dataclass
class Delivery:
    source: ByteSource
    extension: str
    content_type: str
    buffered: bool = False


class FetchExecutor:
    """Turns a selected format into bytes ready to relay.

    Audio and single-file video are streamed straight from the provider.
    Video that needs separate tracks is fetched into a request workspace,
    merged, read into memory and the workspace removed before returning.
    """

    def __init__(
        self,
        provider: MediaProvider,
        transcoder: Transcoder,
        temp_root: Path,
        *,
        merge_strategy: str = AUTO,
        audio_transcode: bool = True,
    ):
        if merge_strategy not in MERGE_STRATEGIES:
            raise ValueError(f"Unknown merge strategy: {merge_strategy}")
        self.provider = provider
        self.transcoder = transcoder
        self.temp_root = Path(temp_root)
        self.merge_strategy = merge_strategy
        self.audio_transcode = audio_transcode

    def fetch(self, video_id: str, descriptor: FormatDescriptor, kind: str, itag: str = "") -> Delivery:
        if kind == AUDIO:
            return self._fetch_audio(video_id, descriptor, itag)

        height = descriptor.height or None
        if not self.transcoder.available():
            logger.info("ffmpeg not found, streaming a pre-combined format for %s", video_id)
            # A video-only itag would relay a silent file.
            return self._single_file(video_id, height, itag if descriptor.has_audio else "")
        if self._combined():
            logger.info("Fetching %s at %s with a single muxing call", video_id, descriptor.quality or "best")
            return self._combined_fetch(video_id, height, itag)
        logger.info("Fetching %s at %s as separate tracks", video_id, descriptor.quality or "best")
        return self._separate_fetch(video_id, height, itag)

    def _combined(self) -> bool:
        if self.merge_strategy == AUTO:
            return self.provider.can_mux
        return self.merge_strategy == COMBINED

    def _fetch_audio(self, video_id: str, descriptor: FormatDescriptor, itag: str) -> Delivery:
        token = itag or (descriptor.itag if descriptor.itag != BEST_AUDIO_TOKEN else "")
        source = self.provider.open_stream(video_id, StreamSpec(AUDIO_ONLY, itag=token))
        if self.audio_transcode and self.transcoder.available():
            source = self.transcoder.encode_mp3(source)
        return Delivery(self._primed(source), "mp3", "audio/mpeg")

    def _single_file(self, video_id: str, height: int | None, itag: str) -> Delivery:
        source = self.provider.open_stream(video_id, StreamSpec(PROGRESSIVE, height=height, itag=itag))
        return Delivery(self._primed(source), "mp4", "video/mp4")

    def _combined_fetch(self, video_id: str, height: int | None, itag: str) -> Delivery:
        with TemporaryWorkspace(self.temp_root, video_id) as workspace:
            output = self.provider.download(
                video_id, StreamSpec(MERGED, height=height, itag=itag), workspace.stem(MERGED)
            )
            return self._buffer(output)

    def _separate_fetch(self, video_id: str, height: int | None, itag: str) -> Delivery:
        with TemporaryWorkspace(self.temp_root, video_id) as workspace:
            video_path = self.provider.download(
                video_id, StreamSpec(VIDEO_ONLY, height=height, itag=itag), workspace.stem(VIDEO_ONLY)
            )
            audio_path = self.provider.download(video_id, StreamSpec(AUDIO_ONLY), workspace.stem(AUDIO_ONLY))
            merged_stem = workspace.stem(MERGED)
            output = self.transcoder.merge(video_path, audio_path, merged_stem.with_name(f"{merged_stem.name}.mp4"))
            return self._buffer(output)

    @staticmethod
    def _primed(source: ByteSource) -> ByteSource:
        try:
            source.prime()
        except BaseException:
            source.close()
            raise
        return source

    @staticmethod
    def _buffer(path: Path) -> Delivery:
        try:
            data = path.read_bytes()
        except FileNotFoundError as exc:
            raise OutputNotFound() from exc
        if not data:
            raise OutputNotFound("The downloaded file is empty.")
        return Delivery(BufferedSource(data), "mp4", "video/mp4", buffered=True)
