from __future__ import annotations


class RelayError(RuntimeError):
    status_code = 500
    default_message = "Request failed."

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message or self.default_message)
        if status_code is not None:
            self.status_code = status_code

    @property
    def message(self) -> str:
        return str(self)


class InvalidRequest(RelayError):
    status_code = 400
    default_message = "Invalid request."


class InvalidReference(RelayError):
    status_code = 400
    default_message = "Invalid YouTube URL"


class ConfigurationMissing(RelayError):
    default_message = "API configuration missing."


class UpstreamUnavailable(RelayError):
    default_message = "Failed to fetch video information."

    def __init__(self, message: str | None = None, status_code: int | None = None):
        # Only propagate provider statuses that make sense as our own error status.
        if status_code is not None and not 400 <= status_code <= 599:
            status_code = None
        super().__init__(message, status_code)


class NoFormatsFound(RelayError):
    status_code = 404
    default_message = "No downloadable formats were returned for this video."


class NoMatchingFormat(RelayError):
    status_code = 404
    default_message = "No download URL available for this video."


class FetchFailed(RelayError):
    default_message = "Download failed."


class MergeFailed(RelayError):
    default_message = "Merging video and audio failed."


class OutputNotFound(RelayError):
    default_message = "Download completed but no file was produced."


class StreamInterrupted(RelayError):
    default_message = "The download stream was interrupted."
