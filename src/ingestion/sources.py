"""Source adapters that normalize a video reference into ``RawMedia``.

One adapter per source kind. Each adapter validates its own reference
syntax before any network call (``parse_reference``), then performs
read-only metadata lookups against the source (``normalize``). Media that is
deleted, private or unreachable raises ``SourceUnavailableError``, which is
terminal and never retried.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Any

import httpx
import yt_dlp

from src.utils.errors import (
    InvalidReferenceError,
    ProviderError,
    RateLimitedError,
    SourceUnavailableError,
)
from src.utils.logging import get_logger
from src.utils.retry import create_retry_decorator

from .config import IngestionConfig
from .schemas import RawMedia, SourceKind
from .storage_service import StorageService

logger = get_logger(__name__)

YOUTUBE_ID_PATTERNS = [
    re.compile(r"(?:youtube\.com/watch\?(?:.*&)?v=)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"),
    re.compile(r"(?:m\.youtube\.com/watch\?(?:.*&)?v=)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"),
    re.compile(r"(?:youtu\.be/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"),
    re.compile(r"(?:youtube(?:-nocookie)?\.com/embed/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"),
    re.compile(r"(?:youtube\.com/v/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"),
    re.compile(r"(?:youtube\.com/shorts/)([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"),
]
YOUTUBE_BARE_ID = re.compile(r"^[A-Za-z0-9_-]{11}$")

LOOM_ID_PATTERN = re.compile(r"(?:www\.)?loom\.com/(?:share|embed)/([a-f0-9]+)", re.IGNORECASE)

MUX_STREAM_PATTERN = re.compile(r"stream\.mux\.com/([^/.?#]+)")
MUX_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

UPLOAD_EXTENSIONS = frozenset({".mp4", ".mov", ".webm", ".mkv", ".m4a", ".mp3", ".wav"})

# yt-dlp error fragments meaning the video itself cannot be reached
YOUTUBE_UNAVAILABLE_MARKERS = (
    "private video",
    "video unavailable",
    "has been removed",
    "account associated with this video has been terminated",
    "this video is not available",
    "members-only",
)

LOOM_API_URL = "https://api.loom.com/v1/videos"
MUX_API_URL = "https://api.mux.com/video/v1/assets"


def extract_youtube_id(reference: str) -> str:
    """Extract the 11-character video id from any accepted YouTube shape.

    Accepts watch, mobile, short (youtu.be), embed, ``/v/`` and shorts URLs,
    and a bare id.

    Raises:
        InvalidReferenceError: If no id can be extracted.
    """
    cleaned = reference.strip()
    if YOUTUBE_BARE_ID.match(cleaned):
        return cleaned
    for pattern in YOUTUBE_ID_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            return match.group(1)
    raise InvalidReferenceError(f"Not a YouTube video reference: {reference!r}")


def extract_loom_id(reference: str) -> str:
    """Extract the hex video id from a Loom share or embed URL."""
    match = LOOM_ID_PATTERN.search(reference.strip())
    if not match:
        raise InvalidReferenceError(f"Not a Loom video URL: {reference!r}")
    return match.group(1).lower()


def extract_mux_id(reference: str) -> str:
    """Extract an asset id from a Mux stream URL or a bare id."""
    cleaned = reference.strip()
    match = MUX_STREAM_PATTERN.search(cleaned)
    if match:
        return match.group(1)
    if MUX_ID_PATTERN.match(cleaned):
        return cleaned
    raise InvalidReferenceError(f"Not a Mux asset id or stream URL: {reference!r}")


def validate_upload_path(reference: str) -> str:
    """Validate a storage path for an uploaded media file."""
    cleaned = reference.strip().lstrip("/")
    path = PurePosixPath(cleaned)
    if not cleaned or ".." in path.parts:
        raise InvalidReferenceError(f"Invalid storage path: {reference!r}")
    if path.suffix.lower() not in UPLOAD_EXTENSIONS:
        raise InvalidReferenceError(
            f"Unsupported upload format {path.suffix or '(none)'!r}",
            user_message=(
                "This file type isn't supported. "
                "Upload mp4, mov, webm, mkv, m4a, mp3 or wav."
            ),
        )
    return cleaned


def raise_for_source_status(response: httpx.Response, provider: str, locator: str) -> None:
    """Map a source API response status onto the error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status in (403, 404, 410):
        raise SourceUnavailableError(
            f"{provider} returned {status} for {locator}"
        )
    if status == 429:
        raise RateLimitedError(f"{provider} rate limited request for {locator}", provider=provider)
    raise ProviderError(
        f"{provider} returned {status} for {locator}",
        provider=provider,
        retryable=status >= 500,
        status_code=status,
    )


class SourceAdapter(ABC):
    """Driver for one source kind."""

    kind: SourceKind

    @abstractmethod
    def parse_reference(self, reference: str) -> str:
        """Validate reference syntax and return the canonical locator."""

    @abstractmethod
    async def describe(self, locator: str) -> RawMedia:
        """Look up read-only metadata for an already validated locator."""

    async def normalize(self, reference: str) -> RawMedia:
        locator = self.parse_reference(reference)
        media = await self.describe(locator)
        logger.info(
            "source_normalized",
            source_kind=self.kind.value,
            locator=locator,
            duration_seconds=media.duration_seconds,
            caption_hint=media.caption_hint,
        )
        return media


class UploadAdapter(SourceAdapter):
    """Media uploaded to the storage bucket."""

    kind = SourceKind.UPLOAD

    def __init__(self, storage: StorageService):
        self.storage = storage

    def parse_reference(self, reference: str) -> str:
        return validate_upload_path(reference)

    async def describe(self, locator: str) -> RawMedia:
        if not await self.storage.object_exists(locator):
            raise SourceUnavailableError(f"Uploaded file not found: {locator}")
        return RawMedia(
            source_kind=self.kind,
            locator=locator,
            title=PurePosixPath(locator).stem,
        )


class YouTubeAdapter(SourceAdapter):
    """Public YouTube videos; metadata is read with yt-dlp without downloading."""

    kind = SourceKind.YOUTUBE

    def parse_reference(self, reference: str) -> str:
        return extract_youtube_id(reference)

    def _extract_info(self, video_id: str) -> dict[str, Any]:
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
        }
        url = f"https://www.youtube.com/watch?v={video_id}"
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except yt_dlp.utils.DownloadError as e:
            message = str(e).lower()
            if any(marker in message for marker in YOUTUBE_UNAVAILABLE_MARKERS):
                raise SourceUnavailableError(f"YouTube video {video_id} unavailable: {e}") from e
            if "429" in message or "too many requests" in message:
                raise RateLimitedError(
                    f"YouTube rate limited {video_id}", provider="youtube"
                ) from e
            raise ProviderError(
                f"yt-dlp metadata lookup failed for {video_id}: {e}",
                provider="youtube",
                retryable=True,
            ) from e
        if not info:
            raise SourceUnavailableError(f"YouTube returned no metadata for {video_id}")
        return info

    async def describe(self, locator: str) -> RawMedia:
        info = await asyncio.to_thread(self._extract_info, locator)
        has_captions = bool(info.get("subtitles")) or bool(info.get("automatic_captions"))
        return RawMedia(
            source_kind=self.kind,
            locator=locator,
            title=info.get("title") or "",
            duration_seconds=info.get("duration"),
            thumbnail_url=info.get("thumbnail"),
            caption_hint=has_captions,
            language=info.get("language"),
        )


class LoomAdapter(SourceAdapter):
    """Loom share/embed links, described through the Loom API."""

    kind = SourceKind.LOOM

    def __init__(self, config: IngestionConfig):
        self.config = config
        self._with_retry = create_retry_decorator(config.retry_policy(), (RateLimitedError,))

    def parse_reference(self, reference: str) -> str:
        return extract_loom_id(reference)

    async def describe(self, locator: str) -> RawMedia:
        @self._with_retry
        async def _fetch() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=self.config.http_timeout_seconds) as client:
                response = await client.get(
                    f"{LOOM_API_URL}/{locator}",
                    headers={"Authorization": f"Bearer {self.config.loom_api_key}"},
                )
            raise_for_source_status(response, "loom", locator)
            return response.json()

        data = await _fetch()
        duration_ms = data.get("duration")
        return RawMedia(
            source_kind=self.kind,
            locator=locator,
            title=data.get("name") or "",
            duration_seconds=duration_ms / 1000 if duration_ms else None,
            thumbnail_url=data.get("thumbnail_url"),
            caption_hint=True,
            audio_url=data.get("download_url"),
        )


class MuxAdapter(SourceAdapter):
    """Mux-hosted assets, described through the Mux video API."""

    kind = SourceKind.MUX

    def __init__(self, config: IngestionConfig):
        self.config = config
        self._with_retry = create_retry_decorator(config.retry_policy(), (RateLimitedError,))

    def parse_reference(self, reference: str) -> str:
        return extract_mux_id(reference)

    async def describe(self, locator: str) -> RawMedia:
        @self._with_retry
        async def _fetch() -> dict[str, Any]:
            async with httpx.AsyncClient(
                timeout=self.config.http_timeout_seconds,
                auth=(self.config.mux_token_id, self.config.mux_token_secret),
            ) as client:
                response = await client.get(f"{MUX_API_URL}/{locator}")
            raise_for_source_status(response, "mux", locator)
            return response.json().get("data", {})

        asset = await _fetch()
        if asset.get("status") == "errored":
            raise SourceUnavailableError(f"Mux asset {locator} is in errored state")

        playback_ids = asset.get("playback_ids") or []
        playback_id = playback_ids[0]["id"] if playback_ids else locator
        ready_text_track = any(
            track.get("type") == "text" and track.get("status", "ready") == "ready"
            for track in asset.get("tracks") or []
        )
        return RawMedia(
            source_kind=self.kind,
            locator=locator,
            title=(asset.get("meta") or {}).get("title") or asset.get("passthrough") or "",
            duration_seconds=asset.get("duration"),
            thumbnail_url=f"https://image.mux.com/{playback_id}/thumbnail.jpg",
            caption_hint=ready_text_track,
            audio_url=f"https://stream.mux.com/{playback_id}/audio.m4a",
        )


class SourceRegistry:
    """Selects the adapter for a source kind."""

    def __init__(self, config: IngestionConfig, storage: StorageService):
        self.upload = UploadAdapter(storage)
        self.youtube = YouTubeAdapter()
        self.loom = LoomAdapter(config)
        self.mux = MuxAdapter(config)

    def adapter_for(self, kind: SourceKind) -> SourceAdapter:
        match kind:
            case SourceKind.UPLOAD:
                return self.upload
            case SourceKind.YOUTUBE:
                return self.youtube
            case SourceKind.LOOM:
                return self.loom
            case SourceKind.MUX:
                return self.mux
            case _:
                raise InvalidReferenceError(f"Unknown source kind: {kind!r}")

    def parse_reference(self, kind: SourceKind, reference: str) -> str:
        return self.adapter_for(kind).parse_reference(reference)

    async def normalize(self, kind: SourceKind, reference: str) -> RawMedia:
        """Normalize a reference into ``RawMedia``.

        Raises:
            InvalidReferenceError: Reference syntax is wrong for the kind.
            SourceUnavailableError: Media is deleted, private or unreachable.
        """
        return await self.adapter_for(kind).normalize(reference)
