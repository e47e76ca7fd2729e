"""Metadata/fetch providers.

Every provider answers the same three questions: what formats does a video
have, give me a byte stream for a format, and write a format to disk. The
executor decides which of those it needs.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

import requests
import yt_dlp
from yt_dlp.utils import DownloadError

from .errors import ConfigurationMissing, FetchFailed, NoMatchingFormat, OutputNotFound, UpstreamUnavailable
from .formats import AUDIO_ONLY, MERGED, PROGRESSIVE, VIDEO_ONLY, derive_height, ytdlp_selector
from .models import ProviderListing, RawFormat, StreamSpec
from .references import watch_url
from .sources import ByteSource, HttpSource, ProcessSource, run_checked_process
from .tools import ToolLocator
from .workspace import locate_output

logger = logging.getLogger(__name__)

_MISSING_YTDLP = "yt-dlp is not installed or not available in PATH."


class MediaProvider(ABC):
    name = ""
    # Whether a single fetch can return video and audio already muxed.
    can_mux = False

    @abstractmethod
    def resolve_metadata(self, video_id: str) -> ProviderListing:
        pass

    @abstractmethod
    def open_stream(self, video_id: str, spec: StreamSpec) -> ByteSource:
        pass

    @abstractmethod
    def download(self, video_id: str, spec: StreamSpec, stem: Path) -> Path:
        """Write the requested stream next to ``stem`` and return the real path."""
        pass


def _format_size_bytes(item: dict) -> int:
    size = item.get("filesize") or item.get("filesize_approx")
    try:
        return int(size) if size else 0
    except (TypeError, ValueError):
        return 0


def _float(value) -> float:
    try:
        return float(value) if value else 0.0
    except (TypeError, ValueError):
        return 0.0


def listing_from_ytdlp_info(video_id: str, info: dict) -> ProviderListing:
    formats = []
    for item in info.get("formats") or []:
        format_id = item.get("format_id")
        if not format_id:
            continue
        formats.append(
            RawFormat(
                format_id=str(format_id),
                height=item.get("height"),
                quality_label=item.get("format_note") or "",
                size=_format_size_bytes(item),
                ext=item.get("ext") or "",
                fps=_float(item.get("fps")),
                vcodec=item.get("vcodec") or "none",
                acodec=item.get("acodec") or "none",
                abr=_float(item.get("abr") or (item.get("tbr") if item.get("vcodec") == "none" else 0)),
                url=item.get("url") or "",
                http_headers=item.get("http_headers"),
            )
        )
    return ProviderListing(
        video_id=video_id,
        title=info.get("title") or "",
        author=info.get("uploader") or info.get("channel") or "",
        duration=info.get("duration") or 0,
        thumbnail=info.get("thumbnail") or "",
        formats=formats,
    )


class YtDlpCliProvider(MediaProvider):
    """Runs the yt-dlp command line tool as a subprocess."""

    name = "cli"
    can_mux = True

    def __init__(
        self,
        locator: ToolLocator,
        *,
        extractor_args: str = "",
        cookies_from_browser: str = "",
        ffmpeg_location: str | None = None,
        metadata_timeout: int = 180,
        download_timeout: int = 7200,
    ):
        self.locator = locator
        self.extractor_args = extractor_args
        self.cookies_from_browser = cookies_from_browser
        self.ffmpeg_location = ffmpeg_location
        self.metadata_timeout = metadata_timeout
        self.download_timeout = download_timeout

    def _cmd_base(self) -> list[str]:
        cmd = self.locator.ensure_available() + ["--no-playlist", "--no-progress", "--no-warnings"]
        if self.extractor_args:
            cmd.extend(["--extractor-args", self.extractor_args])
        if self.cookies_from_browser:
            cmd.extend(["--cookies-from-browser", self.cookies_from_browser])
        if self.ffmpeg_location:
            cmd.extend(["--ffmpeg-location", self.ffmpeg_location])
        return cmd

    def resolve_metadata(self, video_id: str) -> ProviderListing:
        result = run_checked_process(
            self._cmd_base() + ["-J", watch_url(video_id)],
            timeout_seconds=self.metadata_timeout,
            failure=UpstreamUnavailable,
            missing_error=_MISSING_YTDLP,
        )
        try:
            info = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise UpstreamUnavailable("yt-dlp returned invalid format metadata.") from exc
        return listing_from_ytdlp_info(video_id, info)

    def open_stream(self, video_id: str, spec: StreamSpec) -> ByteSource:
        cmd = self._cmd_base() + ["-q", "-f", ytdlp_selector(spec), "-o", "-", watch_url(video_id)]
        return ProcessSource(cmd, timeout_seconds=self.download_timeout, missing_error=_MISSING_YTDLP)

    def download(self, video_id: str, spec: StreamSpec, stem: Path) -> Path:
        cmd = self._cmd_base() + [
            "-f", ytdlp_selector(spec),
            "--print", "after_move:filepath",
            "-o", f"{stem}.%(ext)s",
        ]
        if spec.mode == MERGED:
            cmd.extend(["--merge-output-format", "mp4"])
        cmd.append(watch_url(video_id))
        result = run_checked_process(
            cmd,
            timeout_seconds=self.download_timeout,
            failure=FetchFailed,
            missing_error=_MISSING_YTDLP,
        )
        for line in (result.stdout or "").splitlines():
            candidate = Path(line.strip())
            if line.strip() and candidate.is_file():
                return candidate
        return locate_output(stem, spec.mode)


class YtDlpLibraryProvider(MediaProvider):
    """Drives yt-dlp in-process through ``yt_dlp.YoutubeDL``."""

    name = "library"
    can_mux = True

    def __init__(
        self,
        *,
        cookies_from_browser: str = "",
        ffmpeg_location: str | None = None,
        socket_timeout: int = 180,
    ):
        self._ydl_opts = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "noprogress": True,
            "socket_timeout": socket_timeout,
        }
        if cookies_from_browser:
            self._ydl_opts["cookiesfrombrowser"] = (cookies_from_browser,)
        if ffmpeg_location:
            self._ydl_opts["ffmpeg_location"] = ffmpeg_location
        self.socket_timeout = socket_timeout

    def _extract(self, video_id: str, failure, download: bool = False, **extra) -> dict:
        opts = dict(self._ydl_opts, **extra)
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(watch_url(video_id), download=download)
        except DownloadError as exc:
            raise failure(str(exc)) from exc
        if not info:
            raise failure()
        return info

    def resolve_metadata(self, video_id: str) -> ProviderListing:
        info = self._extract(video_id, UpstreamUnavailable)
        return listing_from_ytdlp_info(video_id, info)

    def open_stream(self, video_id: str, spec: StreamSpec) -> ByteSource:
        info = self._extract(video_id, FetchFailed, format=ytdlp_selector(spec))
        if info.get("requested_formats"):
            raise FetchFailed("The selected format needs merging and cannot be streamed directly.")
        media_url = info.get("url")
        if not media_url:
            raise FetchFailed("No stream URL was returned for the selected format.")
        try:
            response = requests.get(
                media_url,
                headers=info.get("http_headers") or {},
                stream=True,
                timeout=self.socket_timeout,
            )
        except requests.RequestException as exc:
            raise FetchFailed(f"Failed to download from source: {exc}") from exc
        if not response.ok:
            response.close()
            raise FetchFailed("Failed to download video from source.", status_code=response.status_code)
        return HttpSource(response)

    def download(self, video_id: str, spec: StreamSpec, stem: Path) -> Path:
        extra = {"format": ytdlp_selector(spec), "outtmpl": f"{stem}.%(ext)s"}
        if spec.mode == MERGED:
            extra["merge_output_format"] = "mp4"
        info = self._extract(video_id, FetchFailed, download=True, **extra)
        for item in info.get("requested_downloads") or []:
            filepath = item.get("filepath")
            if filepath and Path(filepath).is_file():
                return Path(filepath)
        return locate_output(stem, spec.mode)


_CODECS_RE = re.compile(r'codecs="([^"]+)"')


def _hosted_raw_format(item: dict) -> RawFormat | None:
    format_id = item.get("itag") or item.get("formatId")
    if not format_id:
        return None
    mime = (item.get("mimeType") or "").lower()
    media_type, _, rest = mime.partition("/")
    subtype = rest.split(";", 1)[0].strip()
    match = _CODECS_RE.search(mime)
    codecs = [c.strip() for c in match.group(1).split(",")] if match else []

    if media_type == "audio":
        vcodec = "none"
        acodec = codecs[0] if codecs else "unknown"
        abr = _float(item.get("abr")) or _float(item.get("averageBitrate") or item.get("bitrate")) / 1000.0
    else:
        vcodec = item.get("vcodec") or (codecs[0] if codecs else "unknown")
        if item.get("acodec"):
            acodec = item["acodec"]
        elif codecs:
            acodec = codecs[1] if len(codecs) > 1 else "none"
        else:
            acodec = "unknown"
        if item.get("hasAudio") is False:
            acodec = "none"
        elif item.get("hasAudio") is True and acodec == "none":
            acodec = "unknown"
        if item.get("hasVideo") is False:
            vcodec = "none"
        abr = _float(item.get("abr"))

    ext = item.get("ext") or subtype or ""
    if media_type == "audio" and ext == "mp4":
        ext = "m4a"

    return RawFormat(
        format_id=str(format_id),
        height=item.get("height"),
        quality_label=item.get("qualityLabel") or item.get("quality") or "",
        size=int(item.get("filesize") or item.get("contentLength") or 0),
        ext=ext,
        fps=_float(item.get("fps")),
        vcodec=vcodec,
        acodec=acodec,
        abr=abr,
        url=item.get("url") or item.get("downloadUrl") or "",
    )


def _thumbnail(payload: dict) -> str:
    thumbnail = payload.get("thumbnail")
    if isinstance(thumbnail, list):
        return (thumbnail[-1] or {}).get("url", "") if thumbnail else ""
    if thumbnail:
        return str(thumbnail)
    thumbnails = payload.get("thumbnails") or []
    return (thumbnails[0] or {}).get("url", "") if thumbnails else ""


class HostedApiProvider(MediaProvider):
    """Resolves formats and direct URLs through the hosted yt-api service."""

    name = "hosted"
    can_mux = False

    def __init__(self, api_key: str | None, host: str = "yt-api.p.rapidapi.com", timeout: int = 180, session=None):
        self.api_key = api_key
        self.host = host
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch_payload(self, video_id: str) -> dict:
        if not self.api_key:
            logger.error("RAPIDAPI_KEY not configured")
            raise ConfigurationMissing(
                "API configuration missing. Please set RAPIDAPI_KEY environment variable."
            )
        try:
            response = self.session.get(
                f"https://{self.host}/dl",
                params={"id": video_id},
                headers={"x-rapidapi-key": self.api_key, "x-rapidapi-host": self.host},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Failed to fetch video info: {exc}") from exc
        if not response.ok:
            logger.error("Hosted API error: %s %s", response.status_code, response.reason)
            raise UpstreamUnavailable(
                f"Failed to fetch video info: {response.reason}", status_code=response.status_code
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("Hosted API returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("Hosted API returned an unexpected response.")
        return payload

    def resolve_metadata(self, video_id: str) -> ProviderListing:
        payload = self._fetch_payload(video_id)
        formats = []
        for item in [*(payload.get("formats") or []), *(payload.get("adaptiveFormats") or [])]:
            raw = _hosted_raw_format(item) if isinstance(item, dict) else None
            if raw is not None:
                formats.append(raw)

        audio = None
        audio_payload = payload.get("audio")
        if isinstance(audio_payload, dict) and (audio_payload.get("url") or audio_payload.get("downloadUrl")):
            audio = RawFormat(
                format_id=str(audio_payload.get("itag") or "audio"),
                size=int(audio_payload.get("filesize") or audio_payload.get("contentLength") or 0),
                ext=audio_payload.get("ext") or "mp3",
                acodec=audio_payload.get("acodec") or "mp3",
                abr=_float(audio_payload.get("abr")) or 128.0,
                url=audio_payload.get("url") or audio_payload.get("downloadUrl"),
            )

        return ProviderListing(
            video_id=video_id,
            title=payload.get("title") or "",
            author=payload.get("author") or payload.get("channelTitle") or payload.get("uploader") or "",
            duration=payload.get("lengthSeconds") or payload.get("duration") or 0,
            thumbnail=_thumbnail(payload),
            formats=formats,
            audio=audio,
        )

    def _pick(self, listing: ProviderListing, spec: StreamSpec) -> RawFormat:
        candidates = [item for item in listing.formats if item.url]
        if spec.itag:
            for item in [*candidates, *([listing.audio] if listing.audio else [])]:
                if item.format_id == spec.itag:
                    return item
            raise NoMatchingFormat(f"Format {spec.itag} is not available for this video.")

        if spec.mode == AUDIO_ONLY:
            audio = [item for item in candidates if item.has_audio and not item.has_video]
            if audio:
                return max(audio, key=lambda item: (item.abr, item.size))
            if listing.audio is not None:
                return listing.audio
            raise NoMatchingFormat("No audio stream is available for this video.")

        if spec.mode == VIDEO_ONLY:
            pool = [item for item in candidates if item.has_video and not item.has_audio]
        elif spec.mode == PROGRESSIVE:
            pool = [item for item in candidates if item.has_video and item.has_audio]
        else:
            raise FetchFailed("The hosted provider cannot merge streams in a single fetch.")
        if not pool:
            pool = [item for item in candidates if item.has_video]
        if spec.height:
            limited = [item for item in pool if derive_height(item) <= spec.height]
            pool = limited or pool
        if not pool:
            raise NoMatchingFormat()
        return max(pool, key=lambda item: (derive_height(item), item.size))

    def _open(self, raw: RawFormat) -> HttpSource:
        try:
            response = self.session.get(raw.url, stream=True, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchFailed(f"Failed to download video from source: {exc}") from exc
        if not response.ok:
            response.close()
            raise FetchFailed("Failed to download video from source.", status_code=response.status_code)
        return HttpSource(response)

    def open_stream(self, video_id: str, spec: StreamSpec) -> ByteSource:
        return self._open(self._pick(self.resolve_metadata(video_id), spec))

    def download(self, video_id: str, spec: StreamSpec, stem: Path) -> Path:
        raw = self._pick(self.resolve_metadata(video_id), spec)
        target = stem.with_name(f"{stem.name}.{raw.ext or 'bin'}")
        source = self._open(raw)
        try:
            with open(target, "wb") as handle:
                for chunk in source:
                    handle.write(chunk)
        finally:
            source.close()
        if target.stat().st_size == 0:
            raise OutputNotFound("The downloaded file is empty.")
        return target


def build_provider(name: str, **settings) -> MediaProvider:
    name = (name or "cli").strip().lower()
    if name == "cli":
        return YtDlpCliProvider(
            settings["locator"],
            extractor_args=settings.get("extractor_args", ""),
            cookies_from_browser=settings.get("cookies_from_browser", ""),
            ffmpeg_location=settings.get("ffmpeg_location"),
            metadata_timeout=settings.get("metadata_timeout", 180),
            download_timeout=settings.get("download_timeout", 7200),
        )
    if name == "library":
        return YtDlpLibraryProvider(
            cookies_from_browser=settings.get("cookies_from_browser", ""),
            ffmpeg_location=settings.get("ffmpeg_location"),
            socket_timeout=settings.get("metadata_timeout", 180),
        )
    if name == "hosted":
        return HostedApiProvider(
            settings.get("api_key"),
            host=settings.get("api_host", "yt-api.p.rapidapi.com"),
            timeout=settings.get("metadata_timeout", 180),
        )
    raise ValueError(f"Unknown provider: {name}")
