from __future__ import annotations

import logging
import os
import re
import sys
import tempfile
import threading
from pathlib import Path

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from ytrelay import FetchExecutor, RelayService, ToolLocator, Transcoder, build_provider
from ytrelay.errors import InvalidRequest, RelayError
from ytrelay.executor import Delivery
from ytrelay.workspace import sweep_stale_workspaces

app = Flask(__name__)

logger = logging.getLogger(__name__)

PROVIDER_NAME = os.environ.get("YTRELAY_PROVIDER", "cli").strip().lower() or "cli"
MERGE_STRATEGY = os.environ.get("YTRELAY_MERGE_STRATEGY", "auto").strip().lower() or "auto"
TEMP_ROOT = Path(os.environ.get("YTRELAY_TMP_DIR", tempfile.gettempdir())).expanduser()
STALE_WORKSPACE_SECONDS = int(os.environ.get("YTRELAY_STALE_WORKSPACE_SECONDS", "21600"))
METADATA_TIMEOUT_SECONDS = int(os.environ.get("YTRELAY_METADATA_TIMEOUT_SECONDS", "180"))
DOWNLOAD_TIMEOUT_SECONDS = int(os.environ.get("YTRELAY_DOWNLOAD_TIMEOUT_SECONDS", "7200"))
FILENAME_MAX_LENGTH = int(os.environ.get("YTRELAY_FILENAME_MAX_LENGTH", "100"))
AUDIO_TRANSCODE = os.environ.get("YTRELAY_AUDIO_TRANSCODE", "1").strip().lower() in {"1", "true", "yes", "on"}
AUDIO_BITRATE = os.environ.get("YTRELAY_AUDIO_BITRATE", "192k")
YTDLP_BIN = os.environ.get("YTDLP_BIN", "yt-dlp")
YTDLP_TOOLS_DIR = Path(os.environ.get("YTDLP_TOOLS_DIR", str(TEMP_ROOT / "ytrelay-tools"))).expanduser()
YTDLP_DOWNLOAD_URL = os.environ.get(
    "YTDLP_DOWNLOAD_URL", "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"
)
DEFAULT_YOUTUBE_EXTRACTOR_ARGS = os.environ.get("YTDLP_YOUTUBE_EXTRACTOR_ARGS", "")
COOKIES_FROM_BROWSER = os.environ.get("YTDLP_COOKIES_FROM_BROWSER", "")
FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
RAPIDAPI_HOST = os.environ.get("RAPIDAPI_HOST", "yt-api.p.rapidapi.com")

_SERVICE_LOCK = threading.Lock()


def _build_relay_service() -> RelayService:
    sweep_stale_workspaces(TEMP_ROOT, STALE_WORKSPACE_SECONDS)
    transcoder = Transcoder(FFMPEG_BIN, audio_bitrate=AUDIO_BITRATE, timeout_seconds=DOWNLOAD_TIMEOUT_SECONDS)
    provider = build_provider(
        PROVIDER_NAME,
        locator=ToolLocator(
            YTDLP_BIN,
            tools_dir=YTDLP_TOOLS_DIR,
            download_url=YTDLP_DOWNLOAD_URL,
            timeout_seconds=METADATA_TIMEOUT_SECONDS,
        ),
        extractor_args=DEFAULT_YOUTUBE_EXTRACTOR_ARGS,
        cookies_from_browser=COOKIES_FROM_BROWSER,
        ffmpeg_location=FFMPEG_BIN if FFMPEG_BIN != "ffmpeg" else None,
        metadata_timeout=METADATA_TIMEOUT_SECONDS,
        download_timeout=DOWNLOAD_TIMEOUT_SECONDS,
        # A missing key fails each hosted-API request with a 500, startup is unaffected.
        api_key=os.environ.get("RAPIDAPI_KEY"),
        api_host=RAPIDAPI_HOST,
    )
    executor = FetchExecutor(
        provider,
        transcoder,
        TEMP_ROOT,
        merge_strategy=MERGE_STRATEGY,
        audio_transcode=AUDIO_TRANSCODE,
    )
    logger.info("Relay service ready: provider=%s merge=%s", provider.name, MERGE_STRATEGY)
    return RelayService(provider, executor)


def _relay_service() -> RelayService:
    service = app.config.get("RELAY_SERVICE")
    if service is None:
        with _SERVICE_LOCK:
            service = app.config.get("RELAY_SERVICE")
            if service is None:
                service = _build_relay_service()
                app.config["RELAY_SERVICE"] = service
    return service


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object.")
    return payload


def build_download_filename(title: str, extension: str, quality: str = "", max_length: int = FILENAME_MAX_LENGTH) -> str:
    stem = re.sub(r"[^a-z0-9]", "_", (title or "").lower())[:max_length]
    if not stem.strip("_"):
        stem = "audio" if extension == "mp3" else "video"
    suffix = re.sub(r"[^a-z0-9]", "_", (quality or "").lower())
    if suffix:
        stem = f"{stem}_{suffix}"[:max_length]
    return f"{stem}.{extension}"


def _relay_chunks(source):
    try:
        yield from source
    except RelayError as exc:
        logger.error("Download stream interrupted: %s", exc)
        raise
    finally:
        source.close()


def _send_delivery(delivery: Delivery, final_filename: str) -> Response:
    headers = {
        "Content-Disposition": f'attachment; filename="{final_filename}"',
        "Cache-Control": "no-cache",
    }
    source = delivery.source
    if source.content_length is not None:
        headers["Content-Length"] = str(source.content_length)

    if delivery.buffered:
        body = b"".join(source)
        source.close()
        return Response(body, mimetype=delivery.content_type, headers=headers)

    response = Response(_relay_chunks(source), mimetype=delivery.content_type, headers=headers, direct_passthrough=True)
    response.call_on_close(source.close)
    return response


@app.errorhandler(RelayError)
def _handle_relay_error(exc: RelayError):
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc)
    else:
        logger.info("%s: %s", type(exc).__name__, exc)
    return jsonify({"error": exc.message}), exc.status_code


@app.errorhandler(HTTPException)
def _handle_http_error(exc: HTTPException):
    return jsonify({"error": exc.description}), exc.code


@app.errorhandler(Exception)
def _handle_unexpected_error(exc: Exception):
    logger.exception("Unhandled error while serving %s", request.path)
    return jsonify({"error": "Internal server error"}), 500


@app.get("/")
def index():
    return jsonify({"status": "ok", "provider": PROVIDER_NAME})


@app.post("/video-info")
def video_info():
    payload = _json_body()
    info = _relay_service().video_info(payload.get("url"))
    return jsonify(info.to_dict())


@app.post("/download")
def download():
    payload = _json_body()
    prepared = _relay_service().download(payload)
    final_filename = build_download_filename(
        prepared.title,
        prepared.delivery.extension,
        quality=prepared.quality,
    )
    return _send_delivery(prepared.delivery, final_filename)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("FLASK_DEBUG") else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug_enabled = os.environ.get("FLASK_DEBUG", "").strip().lower() in {"1", "true", "yes", "on"}
    app.run(host=host, port=port, debug=debug_enabled)
