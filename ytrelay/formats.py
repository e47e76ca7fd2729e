from __future__ import annotations

import re

from .errors import NoFormatsFound, NoMatchingFormat
from .models import AUDIO, DownloadRequest, FormatDescriptor, MediaInfo, ProviderListing, RawFormat, StreamSpec

MIN_HEIGHT = 144
BEST_AUDIO_TOKEN = "bestaudio"

MERGED = "merged"
PROGRESSIVE = "progressive"
VIDEO_ONLY = "video"
AUDIO_ONLY = "audio"

_HEIGHT_TOKEN_RE = re.compile(r"(\d{3,4})p")


def derive_height(item: RawFormat) -> int:
    if item.height:
        try:
            return int(item.height)
        except (TypeError, ValueError):
            pass
    match = _HEIGHT_TOKEN_RE.search(item.quality_label or "")
    return int(match.group(1)) if match else 0


def _describe(item: RawFormat, quality: str) -> FormatDescriptor:
    return FormatDescriptor(
        quality=quality,
        size=int(item.size or 0),
        itag=str(item.format_id),
        container=item.ext or ("mp4" if item.has_video else "m4a"),
        fps=float(item.fps or 0),
        vcodec=item.vcodec or "none",
        acodec=item.acodec or "none",
        has_audio=item.has_audio,
        has_video=item.has_video,
        abr=float(item.abr or 0),
    )


def _replaces(candidate: FormatDescriptor, existing: FormatDescriptor) -> bool:
    if candidate.has_audio != existing.has_audio:
        return candidate.has_audio
    return candidate.size > existing.size


def collapse_qualities(formats: list[RawFormat]) -> list[FormatDescriptor]:
    """One descriptor per quality label, highest quality first.

    Entries under ``MIN_HEIGHT`` or without a video codec are skipped. On a
    label collision the entry with audio wins, otherwise the larger one.
    """
    by_quality: dict[str, FormatDescriptor] = {}
    for item in formats:
        if not item.format_id or not item.has_video:
            continue
        height = derive_height(item)
        if height < MIN_HEIGHT:
            continue
        descriptor = _describe(item, f"{height}p")
        existing = by_quality.get(descriptor.quality)
        if existing is None or _replaces(descriptor, existing):
            by_quality[descriptor.quality] = descriptor
    return sorted(by_quality.values(), key=lambda item: item.height, reverse=True)


def _audio_label(item: RawFormat) -> str:
    return f"{int(round(item.abr))}kbps" if item.abr else "audio"


def best_audio(formats: list[RawFormat], fallback: RawFormat | None = None) -> FormatDescriptor | None:
    audio_only = [item for item in formats if item.format_id and item.has_audio and not item.has_video]
    if audio_only:
        chosen = max(audio_only, key=lambda item: (float(item.abr or 0), int(item.size or 0)))
        return _describe(chosen, _audio_label(chosen))
    if fallback is not None:
        return _describe(fallback, _audio_label(fallback))
    return None


def build_media_info(listing: ProviderListing) -> MediaInfo:
    qualities = collapse_qualities(listing.formats)
    if not qualities:
        raise NoFormatsFound()
    try:
        duration = str(int(float(listing.duration or 0)))
    except (TypeError, ValueError):
        duration = "0"
    return MediaInfo(
        video_id=listing.video_id,
        title=listing.title or "Unknown Title",
        author=listing.author or "Unknown",
        duration=duration,
        thumbnail=listing.thumbnail or "",
        qualities=qualities,
        audio_format=best_audio(listing.formats, listing.audio),
    )


def _trusted_descriptor(info: MediaInfo, request: DownloadRequest) -> FormatDescriptor:
    known = [*info.qualities, *([info.audio_format] if info.audio_format else [])]
    for item in known:
        if item.itag == request.itag:
            return item
    return FormatDescriptor(
        quality=request.quality or "",
        size=0,
        itag=request.itag,
        container="",
        fps=0.0,
        vcodec="none" if request.kind == AUDIO else "unknown",
        acodec="unknown",
        has_audio=False,
        has_video=request.kind != AUDIO,
    )


def select_format(info: MediaInfo, request: DownloadRequest) -> FormatDescriptor:
    if request.itag:
        return _trusted_descriptor(info, request)

    if request.kind == AUDIO:
        if info.audio_format is not None:
            return info.audio_format
        return FormatDescriptor(
            quality="audio",
            size=0,
            itag=BEST_AUDIO_TOKEN,
            container="m4a",
            fps=0.0,
            vcodec="none",
            acodec="unknown",
            has_audio=True,
            has_video=False,
        )

    if request.quality:
        for item in info.qualities:
            if item.quality == request.quality:
                return item

    video_formats = [item for item in info.qualities if item.has_video]
    if not video_formats:
        raise NoMatchingFormat()
    return max(video_formats, key=lambda item: item.height)


def ytdlp_selector(spec: StreamSpec) -> str:
    """Translate a stream request into a yt-dlp ``-f`` expression."""
    if spec.itag and spec.itag != BEST_AUDIO_TOKEN:
        if spec.mode == MERGED:
            return f"{spec.itag}+bestaudio/{spec.itag}"
        return spec.itag

    limit = f"[height<={spec.height}]" if spec.height else ""
    if spec.mode == MERGED:
        return (
            f"bestvideo{limit}[ext=mp4]+bestaudio[ext=m4a]/"
            f"bestvideo{limit}+bestaudio/"
            f"best{limit}/best"
        )
    if spec.mode == PROGRESSIVE:
        return (
            f"best{limit}[ext=mp4][vcodec!=none][acodec!=none]/"
            f"best{limit}[vcodec!=none][acodec!=none]/best"
        )
    if spec.mode == VIDEO_ONLY:
        return f"bestvideo{limit}[ext=mp4]/bestvideo{limit}/bestvideo"
    return "bestaudio[ext=m4a]/bestaudio/best"
