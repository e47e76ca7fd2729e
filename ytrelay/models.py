"""Data models shared by the providers, the resolver and the executor."""

from __future__ import annotations

from dataclasses import dataclass, field

VIDEO = "video"
AUDIO = "audio"
MEDIA_KINDS = (VIDEO, AUDIO)


@dataclass
class RawFormat:
    """One format entry as reported by a provider, before resolution."""
    format_id: str
    height: int | None = None
    quality_label: str = ""
    size: int = 0
    ext: str = ""
    fps: float = 0.0
    vcodec: str = "none"
    acodec: str = "none"
    abr: float = 0.0
    url: str = ""
    http_headers: dict[str, str] | None = None

    @property
    def has_video(self) -> bool:
        return bool(self.vcodec) and self.vcodec != "none"

    @property
    def has_audio(self) -> bool:
        return bool(self.acodec) and self.acodec != "none"


@dataclass
class ProviderListing:
    """Raw metadata returned by a provider for one video."""
    video_id: str
    title: str
    author: str
    duration: int
    thumbnail: str
    formats: list[RawFormat]
    audio: RawFormat | None = None


@dataclass
class FormatDescriptor:
    quality: str
    size: int
    itag: str
    container: str
    fps: float
    vcodec: str
    acodec: str
    has_audio: bool
    has_video: bool = True
    abr: float = 0.0

    @property
    def height(self) -> int:
        try:
            return int(self.quality.rstrip("p"))
        except ValueError:
            return 0

    def to_dict(self) -> dict:
        payload = {
            "quality": self.quality,
            "size": self.size,
            "itag": self.itag,
            "container": self.container,
            "fps": self.fps,
            "vcodec": self.vcodec,
            "acodec": self.acodec,
            "hasAudio": self.has_audio,
            "hasVideo": self.has_video,
        }
        if not self.has_video:
            payload["abr"] = self.abr
        return payload


@dataclass
class MediaInfo:
    video_id: str
    title: str
    author: str
    duration: str
    thumbnail: str
    qualities: list[FormatDescriptor] = field(default_factory=list)
    audio_format: FormatDescriptor | None = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail,
            "author": self.author,
            "duration": self.duration,
            "qualities": [item.to_dict() for item in self.qualities],
            "audioFormat": self.audio_format.to_dict() if self.audio_format else None,
        }


@dataclass
class DownloadRequest:
    video_id: str
    quality: str = ""
    itag: str = ""
    kind: str = VIDEO


@dataclass
class StreamSpec:
    """What the executor asks a provider to fetch.

    ``mode`` is one of ``merged`` (best video at or below ``height`` plus best
    audio, muxed by the fetch tool), ``progressive`` (a single pre-combined
    format), ``video`` (video-only) or ``audio`` (audio-only).
    """
    mode: str
    height: int | None = None
    itag: str = ""
