from __future__ import annotations

import re

from .errors import InvalidReference

VIDEO_ID_PATTERN = r"[A-Za-z0-9_-]{11}"
_VIDEO_ID_RE = re.compile(VIDEO_ID_PATTERN)

_WATCH_URL_RE = re.compile(
    rf"(?:youtube\.com|youtube-nocookie\.com)/"
    rf"(?:watch\?(?:[^#\s]*&)?v=|shorts/|embed/|live/|v/)({VIDEO_ID_PATTERN})(?![A-Za-z0-9_-])",
    flags=re.IGNORECASE,
)
_SHORT_URL_RE = re.compile(rf"youtu\.be/({VIDEO_ID_PATTERN})(?![A-Za-z0-9_-])", flags=re.IGNORECASE)


def _from_watch_url(text: str) -> str | None:
    match = _WATCH_URL_RE.search(text)
    return match.group(1) if match else None


def _from_short_url(text: str) -> str | None:
    match = _SHORT_URL_RE.search(text)
    return match.group(1) if match else None


def _bare_id(text: str) -> str | None:
    return text if _VIDEO_ID_RE.fullmatch(text) else None


def parse_video_reference(raw_input: str) -> str:
    """Extract the 11-character video identifier from a pasted link or bare id.

    Watch-page URLs are tried first, then youtu.be short links, then the bare
    identifier form. Raises ``InvalidReference`` when nothing matches.
    """
    text = (raw_input or "").strip() if isinstance(raw_input, str) else ""
    if not text:
        raise InvalidReference()
    for extractor in (_from_watch_url, _from_short_url, _bare_id):
        video_id = extractor(text)
        if video_id:
            return video_id
    raise InvalidReference()


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"
