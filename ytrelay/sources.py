"""Byte sources relayed to the client and the subprocess helpers behind them."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Iterator

import requests

from .errors import FetchFailed, RelayError, StreamInterrupted

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_STDERR_LIMIT = 64 * 1024


def run_checked_process(
    cmd: list[str],
    *,
    timeout_seconds: int,
    failure: type[RelayError] = FetchFailed,
    missing_error: str = "Required command is not installed or not available in PATH.",
) -> subprocess.CompletedProcess:
    logger.debug("Running %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as exc:
        raise failure(missing_error) from exc

    try:
        stdout_text, stderr_text = proc.communicate(timeout=timeout_seconds)
    except subprocess.TimeoutExpired as exc:
        proc.kill()
        proc.communicate()
        raise failure(f"{cmd[0]} timed out after {timeout_seconds} seconds.") from exc

    if proc.returncode != 0:
        error_output = (stderr_text or stdout_text or "").strip()
        raise failure(error_output or f"{cmd[0]} exited with code {proc.returncode}.")
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout_text, stderr_text)


class ByteSource:
    """An iterable of byte chunks that owns whatever produces them.

    ``prime`` is called before any response headers are sent so that failures
    which happen before the first byte can still become a JSON error.
    ``close`` must be safe to call more than once.
    """

    content_length: int | None = None

    def prime(self) -> None:
        pass

    def __iter__(self) -> Iterator[bytes]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class BufferedSource(ByteSource):
    def __init__(self, data: bytes):
        self.data = data
        self.content_length = len(data)

    def __iter__(self) -> Iterator[bytes]:
        if self.data:
            yield self.data


class HttpSource(ByteSource):
    """Relays the body of a streamed ``requests`` response."""

    def __init__(self, response: requests.Response, chunk_size: int = CHUNK_SIZE):
        self.response = response
        self.chunk_size = chunk_size
        length = response.headers.get("content-length")
        self.content_length = int(length) if length and length.isdigit() else None

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self.response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        except requests.RequestException as exc:
            raise StreamInterrupted(f"Upstream stream failed: {exc}") from exc
        finally:
            self.close()

    def close(self) -> None:
        self.response.close()


class ProcessSource(ByteSource):
    """Relays a subprocess' stdout, optionally feeding another source into its stdin."""

    def __init__(
        self,
        cmd: list[str],
        *,
        timeout_seconds: int,
        feed: ByteSource | None = None,
        missing_error: str = "Required command is not installed or not available in PATH.",
        chunk_size: int = CHUNK_SIZE,
    ):
        self.cmd = cmd
        self.timeout_seconds = timeout_seconds
        self.feed = feed
        self.chunk_size = chunk_size
        self._first_chunk = b""
        self._stderr = bytearray()
        self._feed_error: BaseException | None = None
        self._closed = False

        logger.debug("Streaming from %s", " ".join(cmd))
        try:
            self.proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if feed is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            if feed is not None:
                feed.close()
            raise FetchFailed(missing_error) from exc
        self._start = time.monotonic()

        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()
        self._feed_thread = None
        if feed is not None:
            self._feed_thread = threading.Thread(target=self._pump_feed, daemon=True)
            self._feed_thread.start()

    def _drain_stderr(self) -> None:
        try:
            for line in iter(self.proc.stderr.readline, b""):
                if len(self._stderr) < _STDERR_LIMIT:
                    self._stderr.extend(line)
        finally:
            self.proc.stderr.close()

    def _pump_feed(self) -> None:
        try:
            for chunk in self.feed:
                self.proc.stdin.write(chunk)
        except (OSError, ValueError):
            # The consumer went away; whatever is left of the feed is discarded.
            pass
        except RelayError as exc:
            self._feed_error = exc
        finally:
            self.feed.close()
            try:
                self.proc.stdin.close()
            except (OSError, ValueError):
                pass

    def _error_text(self) -> str:
        self._stderr_thread.join(timeout=2)
        text = bytes(self._stderr).decode("utf-8", errors="replace").strip()
        if self._feed_error is not None:
            return str(self._feed_error)
        return text or f"{self.cmd[0]} exited with code {self.proc.returncode}."

    def _read(self) -> bytes:
        if (time.monotonic() - self._start) > self.timeout_seconds:
            self.close()
            raise StreamInterrupted(f"{self.cmd[0]} timed out while streaming.")
        return self.proc.stdout.read(self.chunk_size)

    def prime(self) -> None:
        self._first_chunk = self._read()
        if self._first_chunk:
            return
        return_code = self.proc.wait()
        if self._feed_thread is not None:
            self._feed_thread.join(timeout=2)
        if return_code != 0 or self._feed_error is not None:
            message = self._error_text()
        else:
            message = "The downloaded stream is empty."
        self.close()
        raise FetchFailed(message)

    def __iter__(self) -> Iterator[bytes]:
        try:
            if self._first_chunk:
                yield self._first_chunk
                self._first_chunk = b""
            while True:
                chunk = self._read()
                if not chunk:
                    break
                yield chunk
            return_code = self.proc.wait()
            if self._feed_thread is not None:
                self._feed_thread.join(timeout=2)
            if return_code != 0 or self._feed_error is not None:
                raise StreamInterrupted(self._error_text())
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.proc.poll() is None:
            self.proc.terminate()
            try:
                self.proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.proc.kill()
                self.proc.wait()
        if self.proc.stdout is not None:
            self.proc.stdout.close()
        # The drain thread closes stderr once it reaches EOF.
        self._stderr_thread.join(timeout=2)
        if self.feed is not None:
            self.feed.close()
