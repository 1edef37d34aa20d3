"""Unit tests for source adapters and reference parsing."""

from unittest.mock import patch

import httpx
import pytest
import yt_dlp

from src.ingestion.config import IngestionConfig
from src.ingestion.schemas import SourceKind
from src.ingestion.sources import (
    LoomAdapter,
    MuxAdapter,
    SourceRegistry,
    UploadAdapter,
    YouTubeAdapter,
    extract_loom_id,
    extract_mux_id,
    extract_youtube_id,
    raise_for_source_status,
    validate_upload_path,
)
from src.utils.errors import (
    InvalidReferenceError,
    ProviderError,
    RateLimitedError,
    SourceUnavailableError,
)

@pytest.mark.unit
class TestReferenceParsing:
    """Test reference syntax validation per source kind."""

    @pytest.mark.parametrize(
        "reference",
        [
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
            "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://youtu.be/dQw4w9WgXcQ?t=42",
            "https://www.youtube.com/embed/dQw4w9WgXcQ",
            "https://www.youtube-nocookie.com/embed/dQw4w9WgXcQ",
            "https://www.youtube.com/v/dQw4w9WgXcQ",
            "https://www.youtube.com/shorts/dQw4w9WgXcQ",
            "dQw4w9WgXcQ",
        ],
    )
    def test_youtube_shapes_yield_same_id(self, reference: str) -> None:
        """Test every accepted YouTube URL shape extracts the 11-char id."""
        assert extract_youtube_id(reference) == "dQw4w9WgXcQ"

    @pytest.mark.parametrize(
        "reference",
        ["not a url", "https://vimeo.com/123456", "https://youtube.com/watch?v=short", ""],
    )
    def test_youtube_rejects_invalid(self, reference: str) -> None:
        """Test malformed YouTube references are rejected."""
        with pytest.raises(InvalidReferenceError):
            extract_youtube_id(reference)

    def test_loom_share_and_embed(self) -> None:
        """Test Loom share and embed URLs yield the hex id."""
        assert extract_loom_id("https://www.loom.com/share/abc123def456") == "abc123def456"
        assert extract_loom_id("https://loom.com/embed/ABC123?hide_owner=true") == "abc123"

    def test_loom_rejects_other_hosts(self) -> None:
        """Test non-Loom URLs are rejected."""
        with pytest.raises(InvalidReferenceError):
            extract_loom_id("https://example.com/share/abc123")

    def test_mux_stream_url_and_bare_id(self) -> None:
        """Test Mux stream URLs and bare ids are accepted."""
        assert extract_mux_id("https://stream.mux.com/a1B2c3.m3u8") == "a1B2c3"
        assert extract_mux_id("a1B2c3") == "a1B2c3"

    def test_mux_rejects_garbage(self) -> None:
        """Test references with illegal characters are rejected."""
        with pytest.raises(InvalidReferenceError):
            extract_mux_id("not a mux id!")

    def test_upload_path_is_normalized(self) -> None:
        """Test leading slashes are stripped from storage paths."""
        assert validate_upload_path("/owner-1/lesson.MP4") == "owner-1/lesson.MP4"

    @pytest.mark.parametrize(
        "reference", ["", "owner/../secret.mp4", "owner/notes.pdf", "owner/noext"]
    )
    def test_upload_path_rejects_invalid(self, reference: str) -> None:
        """Test traversal, empty and unsupported paths are rejected."""
        with pytest.raises(InvalidReferenceError):
            validate_upload_path(reference)


@pytest.mark.unit
class TestRaiseForSourceStatus:
    """Test HTTP status mapping onto the error taxonomy."""

    @pytest.mark.parametrize("status", [403, 404, 410])
    def test_gone_statuses_are_unavailable(self, status: int) -> None:
        """Test deleted/private responses raise SourceUnavailableError."""
        with pytest.raises(SourceUnavailableError):
            raise_for_source_status(httpx.Response(status), "loom", "abc")

    def test_429_is_rate_limited(self) -> None:
        """Test rate-limit responses raise RateLimitedError."""
        with pytest.raises(RateLimitedError) as exc_info:
            raise_for_source_status(httpx.Response(429), "mux", "abc")
        assert exc_info.value.provider == "mux"

    def test_server_errors_are_retryable(self) -> None:
        """Test 5xx maps to a retryable ProviderError and 4xx to a terminal one."""
        with pytest.raises(ProviderError) as server:
            raise_for_source_status(httpx.Response(502), "mux", "abc")
        with pytest.raises(ProviderError) as client:
            raise_for_source_status(httpx.Response(400), "mux", "abc")

        assert server.value.retryable is True
        assert client.value.retryable is False
        assert client.value.status_code == 400

    def test_success_passes(self) -> None:
        """Test 2xx responses raise nothing."""
        raise_for_source_status(httpx.Response(200), "loom", "abc")


@pytest.mark.unit
class TestAdapters:
    """Test adapter metadata lookups with mocked sources."""

    @pytest.mark.asyncio
    async def test_upload_missing_object_is_unavailable(self, storage) -> None:
        """Test an upload whose object is gone raises SourceUnavailableError."""
        adapter = UploadAdapter(storage)

        with pytest.raises(SourceUnavailableError):
            await adapter.normalize("owner-1/lesson.mp4")

    @pytest.mark.asyncio
    async def test_upload_existing_object(self, storage) -> None:
        """Test an existing upload normalizes with its file stem as title."""
        storage.objects["owner-1/intro-lesson.mp4"] = b"data"
        adapter = UploadAdapter(storage)

        media = await adapter.normalize("owner-1/intro-lesson.mp4")

        assert media.source_kind == SourceKind.UPLOAD
        assert media.locator == "owner-1/intro-lesson.mp4"
        assert media.title == "intro-lesson"

    @pytest.mark.asyncio
    async def test_youtube_uses_ytdlp_metadata(self) -> None:
        """Test YouTube metadata comes from yt-dlp without downloading."""
        info = {
            "title": "Pricing Strategy",
            "duration": 754,
            "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/hq.jpg",
            "automatic_captions": {"en": [{}]},
        }
        adapter = YouTubeAdapter()

        with patch.object(adapter, "_extract_info", return_value=info) as mock_extract:
            media = await adapter.normalize("https://youtu.be/dQw4w9WgXcQ")

        mock_extract.assert_called_once_with("dQw4w9WgXcQ")
        assert media.title == "Pricing Strategy"
        assert media.duration_seconds == 754
        assert media.caption_hint is True

    @pytest.mark.asyncio
    async def test_youtube_private_video_is_unavailable(self) -> None:
        """Test yt-dlp 'Private video' errors map to SourceUnavailableError."""
        adapter = YouTubeAdapter()
        error = yt_dlp.utils.DownloadError("ERROR: [youtube] abc: Private video")

        with patch("src.ingestion.sources.yt_dlp.YoutubeDL") as mock_ydl:
            mock_ydl.return_value.__enter__.return_value.extract_info.side_effect = error
            with pytest.raises(SourceUnavailableError):
                await adapter.normalize("dQw4w9WgXcQ")

    @pytest.mark.asyncio
    async def test_loom_metadata(self, ingestion_config: IngestionConfig, http_mock) -> None:
        """Test Loom API fields map onto RawMedia with duration in seconds."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/videos/abc123"
            return httpx.Response(
                200,
                json={
                    "name": "Onboarding walkthrough",
                    "duration": 125000,
                    "thumbnail_url": "https://cdn.loom.com/thumb.jpg",
                    "download_url": "https://cdn.loom.com/video.mp4",
                },
            )

        with http_mock(handler):
            media = await LoomAdapter(ingestion_config).normalize(
                "https://www.loom.com/share/abc123"
            )

        assert media.title == "Onboarding walkthrough"
        assert media.duration_seconds == 125.0
        assert media.audio_url == "https://cdn.loom.com/video.mp4"

    @pytest.mark.asyncio
    async def test_loom_rate_limit_is_retried(
        self, ingestion_config: IngestionConfig, http_mock
    ) -> None:
        """Test a 429 is retried and the next success is used."""
        responses = [httpx.Response(429), httpx.Response(200, json={"name": "Recovered"})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        with http_mock(handler):
            media = await LoomAdapter(ingestion_config).normalize(
                "https://www.loom.com/share/abc123"
            )

        assert media.title == "Recovered"
        assert responses == []

    @pytest.mark.asyncio
    async def test_loom_deleted_video_not_retried(
        self, ingestion_config: IngestionConfig, http_mock
    ) -> None:
        """Test a 404 fails immediately as SourceUnavailableError."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        with http_mock(handler):
            with pytest.raises(SourceUnavailableError):
                await LoomAdapter(ingestion_config).normalize("https://www.loom.com/share/abc123")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_mux_asset_metadata(
        self, ingestion_config: IngestionConfig, http_mock
    ) -> None:
        """Test Mux asset fields, playback thumbnail and caption hint."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {
                        "status": "ready",
                        "duration": 61.5,
                        "playback_ids": [{"id": "play123", "policy": "public"}],
                        "tracks": [{"type": "video"}, {"type": "text", "status": "ready"}],
                        "meta": {"title": "Module 2"},
                    }
                },
            )

        with http_mock(handler):
            media = await MuxAdapter(ingestion_config).normalize("asset42")

        assert media.title == "Module 2"
        assert media.duration_seconds == 61.5
        assert media.caption_hint is True
        assert media.thumbnail_url == "https://image.mux.com/play123/thumbnail.jpg"

    @pytest.mark.asyncio
    async def test_mux_errored_asset_is_unavailable(
        self, ingestion_config: IngestionConfig, http_mock
    ) -> None:
        """Test an errored Mux asset raises SourceUnavailableError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"status": "errored"}})

        with http_mock(handler):
            with pytest.raises(SourceUnavailableError):
                await MuxAdapter(ingestion_config).normalize("asset42")


@pytest.mark.unit
class TestSourceRegistry:
    """Test adapter dispatch by source kind."""

    def test_adapter_for_each_kind(self, ingestion_config: IngestionConfig, storage) -> None:
        """Test every source kind has its own adapter."""
        registry = SourceRegistry(ingestion_config, storage)

        assert isinstance(registry.adapter_for(SourceKind.UPLOAD), UploadAdapter)
        assert isinstance(registry.adapter_for(SourceKind.YOUTUBE), YouTubeAdapter)
        assert isinstance(registry.adapter_for(SourceKind.LOOM), LoomAdapter)
        assert isinstance(registry.adapter_for(SourceKind.MUX), MuxAdapter)

    def test_parse_reference_validates_per_kind(
        self, ingestion_config: IngestionConfig, storage
    ) -> None:
        """Test a YouTube URL is invalid when submitted as a Loom reference."""
        registry = SourceRegistry(ingestion_config, storage)

        with pytest.raises(InvalidReferenceError):
            registry.parse_reference(SourceKind.LOOM, "https://youtu.be/dQw4w9WgXcQ")
