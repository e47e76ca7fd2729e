"""
Tests for the HTTP surface.
"""
import os
import re
import shutil
import tempfile
import unittest
from pathlib import Path

from app import app, build_download_filename
from ytrelay import FetchExecutor, RelayService
from ytrelay.errors import MergeFailed, UpstreamUnavailable
from ytrelay.formats import AUDIO_ONLY
from ytrelay.models import ProviderListing, RawFormat
from ytrelay.providers import HostedApiProvider, MediaProvider
from ytrelay.sources import BufferedSource

FILENAME_RE = re.compile(r'^attachment; filename="([a-z0-9_]+\.(?:mp4|mp3))"$')


class FakeProvider(MediaProvider):
    name = "fake"

    def __init__(self, can_mux=True, error=None):
        self.can_mux = can_mux
        self.error = error
        self.resolved = []

    def resolve_metadata(self, video_id):
        self.resolved.append(video_id)
        if self.error is not None:
            raise self.error
        return ProviderListing(
            video_id=video_id,
            title="Never Gonna Give You Up",
            author="Rick Astley",
            duration=212,
            thumbnail="https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
            formats=[
                RawFormat("18", height=360, size=10, ext="mp4", fps=30, vcodec="avc1", acodec="mp4a.40.2"),
                RawFormat("22", height=720, size=100, ext="mp4", fps=30, vcodec="avc1", acodec="mp4a.40.2"),
                RawFormat("136", height=720, size=200, ext="mp4", fps=30, vcodec="avc1"),
                RawFormat("137", height=1080, size=400, ext="mp4", fps=30, vcodec="avc1"),
                RawFormat("140", size=30, ext="m4a", acodec="mp4a.40.2", abr=129.5),
            ],
        )

    def open_stream(self, video_id, spec):
        return BufferedSource(f"{spec.mode}-bytes".encode())

    def download(self, video_id, spec, stem):
        ext = "m4a" if spec.mode == AUDIO_ONLY else "mp4"
        path = stem.with_name(f"{stem.name}.{ext}")
        path.write_bytes(f"{spec.mode}-file".encode())
        return path


class FakeTranscoder:

    def __init__(self, fail=False):
        self.fail = fail

    def available(self):
        return True

    def merge(self, video_path, audio_path, output_path):
        output_path.write_bytes(b"partial")
        if self.fail:
            raise MergeFailed("ffmpeg exploded")
        output_path.write_bytes(video_path.read_bytes() + b"|" + audio_path.read_bytes())
        return output_path

    def encode_mp3(self, source):
        return BufferedSource(b"mp3:" + b"".join(source))


class AppTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_root = Path(tempfile.mkdtemp())
        self.provider = FakeProvider()
        self.use(self.provider, FakeTranscoder())
        self.client = app.test_client()

    def tearDown(self):
        app.config.pop("RELAY_SERVICE", None)
        shutil.rmtree(self.temp_root, ignore_errors=True)

    def use(self, provider, transcoder):
        executor = FetchExecutor(provider, transcoder, self.temp_root)
        app.config["RELAY_SERVICE"] = RelayService(provider, executor)

    def assertWorkspaceEmpty(self):
        self.assertEqual(os.listdir(self.temp_root), [])


class TestVideoInfo(AppTestCase):

    def test_video_info(self):
        response = self.client.post("/video-info", json={"url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"})
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["title"], "Never Gonna Give You Up")
        self.assertEqual(payload["author"], "Rick Astley")
        self.assertEqual(payload["duration"], "212")
        self.assertEqual(payload["thumbnail"], "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg")
        self.assertEqual([q["quality"] for q in payload["qualities"]], ["1080p", "720p", "360p"])
        self.assertEqual(payload["qualities"][1]["itag"], "22")
        self.assertTrue(payload["qualities"][1]["hasAudio"])
        self.assertEqual(payload["audioFormat"]["itag"], "140")
        self.assertEqual(self.provider.resolved, ["dQw4w9WgXcQ"])

    def test_invalid_url(self):
        response = self.client.post("/video-info", json={"url": "not a url"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "Invalid YouTube URL"})
        self.assertEqual(self.provider.resolved, [])

    def test_missing_url(self):
        response = self.client.post("/video-info", json={})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "Invalid YouTube URL"})

    def test_body_must_be_json_object(self):
        response = self.client.post("/video-info", data="url=x", content_type="text/plain")
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.get_json())

        response = self.client.post("/video-info", json=["https://youtu.be/dQw4w9WgXcQ"])
        self.assertEqual(response.status_code, 400)

    def test_missing_api_key(self):
        provider = HostedApiProvider(None)
        self.use(provider, FakeTranscoder())
        response = self.client.post("/video-info", json={"url": "https://youtu.be/dQw4w9WgXcQ"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            response.get_json(),
            {"error": "API configuration missing. Please set RAPIDAPI_KEY environment variable."},
        )

    def test_upstream_status_is_propagated(self):
        self.use(FakeProvider(error=UpstreamUnavailable("Failed to fetch video info: Forbidden", 403)), FakeTranscoder())
        response = self.client.post("/video-info", json={"url": "dQw4w9WgXcQ"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json(), {"error": "Failed to fetch video info: Forbidden"})

    def test_provider_failure_without_status(self):
        self.use(FakeProvider(error=UpstreamUnavailable("ERROR: Video unavailable")), FakeTranscoder())
        response = self.client.post("/video-info", json={"url": "dQw4w9WgXcQ"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "ERROR: Video unavailable"})

    def test_unexpected_error(self):
        self.use(FakeProvider(error=KeyError("formats")), FakeTranscoder())
        response = self.client.post("/video-info", json={"url": "dQw4w9WgXcQ"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Internal server error"})


class TestDownload(AppTestCase):

    def test_merged_video(self):
        response = self.client.post(
            "/download",
            json={"url": "https://youtu.be/dQw4w9WgXcQ", "quality": "720p", "downloadType": "video"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "video/mp4")
        self.assertEqual(response.headers["Cache-Control"], "no-cache")
        self.assertEqual(
            response.headers["Content-Disposition"],
            'attachment; filename="never_gonna_give_you_up_720p.mp4"',
        )
        self.assertEqual(response.data, b"merged-file")
        self.assertEqual(response.headers["Content-Length"], str(len(b"merged-file")))
        self.assertWorkspaceEmpty()

    def test_separate_tracks_are_merged(self):
        self.use(FakeProvider(can_mux=False), FakeTranscoder())
        response = self.client.post("/download", json={"url": "dQw4w9WgXcQ", "quality": "1080p"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"video-file|audio-file")
        self.assertTrue(response.headers["Content-Disposition"].endswith('_1080p.mp4"'))
        self.assertWorkspaceEmpty()

    def test_missing_quality_falls_back_to_best(self):
        response = self.client.post("/download", json={"url": "dQw4w9WgXcQ", "quality": "240p"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.headers["Content-Disposition"],
            'attachment; filename="never_gonna_give_you_up_1080p.mp4"',
        )

    def test_audio(self):
        response = self.client.post("/download", json={"url": "dQw4w9WgXcQ", "downloadType": "audio"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "audio/mpeg")
        self.assertEqual(
            response.headers["Content-Disposition"],
            'attachment; filename="never_gonna_give_you_up.mp3"',
        )
        self.assertEqual(response.data, b"mp3:audio-bytes")

    def test_merge_failure_returns_json_and_cleans_up(self):
        self.use(FakeProvider(can_mux=False), FakeTranscoder(fail=True))
        response = self.client.post("/download", json={"url": "dQw4w9WgXcQ", "quality": "720p"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "ffmpeg exploded"})
        self.assertWorkspaceEmpty()

    def test_invalid_url(self):
        response = self.client.post("/download", json={"url": "https://vimeo.com/1234", "quality": "720p"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "Invalid YouTube URL"})

    def test_unsupported_download_type(self):
        response = self.client.post("/download", json={"url": "dQw4w9WgXcQ", "downloadType": "subtitles"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("subtitles", response.get_json()["error"])

    def test_filename_is_sanitized(self):
        response = self.client.post("/download", json={"url": "dQw4w9WgXcQ", "quality": "720p"})
        self.assertRegex(response.headers["Content-Disposition"], FILENAME_RE)


class TestRoutes(AppTestCase):

    def test_health(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ok")

    def test_unknown_route_is_json(self):
        response = self.client.get("/nope")
        self.assertEqual(response.status_code, 404)
        self.assertIn("error", response.get_json())

    def test_wrong_method_is_json(self):
        response = self.client.get("/download")
        self.assertEqual(response.status_code, 405)
        self.assertIn("error", response.get_json())


class TestBuildDownloadFilename(unittest.TestCase):

    def test_only_safe_characters(self):
        for title in ("Héllo / Wörld: Part #2!", "日本語のタイトル", "", "!!!", "a" * 300, "MiXeD Case 1080p"):
            for extension in ("mp4", "mp3"):
                name = build_download_filename(title, extension, quality="720p" if extension == "mp4" else "")
                self.assertRegex(name, r"^[a-z0-9_]+\.(mp4|mp3)$", title)

    def test_examples(self):
        self.assertEqual(build_download_filename("Hello World", "mp4", "720p"), "hello_world_720p.mp4")
        self.assertEqual(build_download_filename("Hello World", "mp3"), "hello_world.mp3")
        self.assertEqual(build_download_filename("", "mp4", "720p"), "video_720p.mp4")
        self.assertEqual(build_download_filename("???", "mp3"), "audio.mp3")

    def test_title_is_truncated(self):
        name = build_download_filename("a" * 300, "mp4", max_length=100)
        self.assertEqual(name, "a" * 100 + ".mp4")

    def test_quality_suffix_is_bounded(self):
        name = build_download_filename("t" * 500, "mp4", quality="q" * 5000, max_length=100)
        self.assertEqual(name, "t" * 100 + ".mp4")
        name = build_download_filename("short", "mp4", quality="q" * 5000, max_length=100)
        self.assertEqual(len(name), 100 + len(".mp4"))
        self.assertTrue(name.startswith("short_qqq"))


if __name__ == "__main__":
    unittest.main()
