from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import InvalidRequest
from .executor import Delivery, FetchExecutor
from .formats import build_media_info, select_format
from .models import MEDIA_KINDS, VIDEO, DownloadRequest, MediaInfo
from .providers import MediaProvider
from .references import parse_video_reference

logger = logging.getLogger(__name__)


@dataclass
class PreparedDownload:
    delivery: Delivery
    title: str
    quality: str


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def download_request_from_payload(payload: dict) -> DownloadRequest:
    video_id = parse_video_reference(payload.get("url"))
    kind = _text(payload.get("downloadType")).lower() or VIDEO
    if kind not in MEDIA_KINDS:
        raise InvalidRequest(f"Unsupported downloadType: {kind}")
    return DownloadRequest(
        video_id=video_id,
        quality=_text(payload.get("quality")),
        itag=_text(payload.get("itag")),
        kind=kind,
    )


class RelayService:
    def __init__(self, provider: MediaProvider, executor: FetchExecutor):
        self.provider = provider
        self.executor = executor

    def video_info(self, raw_url) -> MediaInfo:
        video_id = parse_video_reference(raw_url)
        logger.info("Fetching video info for %s via %s", video_id, self.provider.name)
        return build_media_info(self.provider.resolve_metadata(video_id))

    def download(self, payload: dict) -> PreparedDownload:
        request = download_request_from_payload(payload)
        logger.info(
            "Downloading %s quality=%s itag=%s kind=%s",
            request.video_id, request.quality or "-", request.itag or "-", request.kind,
        )
        info = build_media_info(self.provider.resolve_metadata(request.video_id))
        descriptor = select_format(info, request)
        delivery = self.executor.fetch(request.video_id, descriptor, request.kind, itag=request.itag)
        quality = descriptor.quality if request.kind == VIDEO else ""
        return PreparedDownload(delivery=delivery, title=info.title, quality=quality)
