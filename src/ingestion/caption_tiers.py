"""Transcript extraction tiers.

Each tier is one way of getting a time-coded transcript for a video, tagged
with a cost. Free caption sources come first; Whisper speech-to-text is the
paid universal fallback. A tier either returns the complete segment list or
raises; rate limits are retried inside the tier before it gives up.
"""

import asyncio
import re
import tempfile
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Any

import httpx
import yt_dlp
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pydantic import BaseModel
from supadata import Supadata
from youtube_transcript_api import (
    CouldNotRetrieveTranscript,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    YouTubeTranscriptApi,
)

from src.utils.errors import (
    NoTranscriptAvailableError,
    ProviderError,
    RateLimitedError,
    SourceUnavailableError,
)
from src.utils.logging import get_logger
from src.utils.retry import create_retry_decorator

from .config import IngestionConfig
from .schemas import RawMedia, SourceKind, TranscriptSegment
from .sources import LOOM_API_URL, MUX_API_URL
from .storage_service import StorageService

logger = get_logger(__name__)

VTT_TIMESTAMP = re.compile(r"(?:(\d+):)?(\d{1,2}):(\d{2})[.,](\d{3})")
VTT_TAG = re.compile(r"<[^>]+>")

COST_QUANTUM = Decimal("0.000001")


class TierResult(BaseModel):
    """Segments produced by one tier, with what they cost."""

    segments: list[TranscriptSegment]
    language: str = "en"
    cost: Decimal = Decimal("0")


def parse_vtt_timestamp(value: str) -> float:
    match = VTT_TIMESTAMP.search(value)
    if not match:
        raise ValueError(f"Invalid WebVTT timestamp: {value!r}")
    hours, minutes, seconds, millis = match.groups()
    return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds) + int(millis) / 1000


def parse_webvtt(content: str) -> list[TranscriptSegment]:
    """Parse WebVTT cues into transcript segments.

    Cue identifiers, settings and inline tags are dropped. Cues with no text
    are skipped.
    """
    segments: list[TranscriptSegment] = []
    lines = content.replace("\r\n", "\n").split("\n")
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if "-->" not in line:
            i += 1
            continue

        start_raw, end_raw = (part.strip() for part in line.split("-->", 1))
        start = parse_vtt_timestamp(start_raw)
        end = parse_vtt_timestamp(end_raw.split()[0])

        text_lines = []
        i += 1
        while i < len(lines) and lines[i].strip() and "-->" not in lines[i]:
            text_lines.append(VTT_TAG.sub("", lines[i]).strip())
            i += 1

        text = " ".join(part for part in text_lines if part)
        if text:
            segments.append(
                TranscriptSegment(text=text, start=start, duration=max(end - start, 0.0))
            )
    return segments


class TranscriptTier(ABC):
    """One transcript extraction method."""

    name: str
    paid: bool = False

    def __init__(self, config: IngestionConfig):
        self.config = config
        self._with_retry = create_retry_decorator(
            config.retry_policy(), (RateLimitedError,)
        )

    async def extract(self, media: RawMedia) -> TierResult:
        """Run the tier, retrying rate-limit responses with backoff."""
        return await self._with_retry(self.fetch)(media)

    @abstractmethod
    async def fetch(self, media: RawMedia) -> TierResult:
        """Fetch segments once. Raise when this tier cannot deliver."""


class SupadataCaptionTier(TranscriptTier):
    """YouTube captions through the Supadata API."""

    name = "supadata"

    def __init__(self, config: IngestionConfig, client: Supadata | None = None):
        super().__init__(config)
        self.client = client or (
            Supadata(api_key=config.supadata_api_key) if config.supadata_api_key else None
        )

    async def fetch(self, media: RawMedia) -> TierResult:
        if self.client is None:
            raise NoTranscriptAvailableError("Supadata API key not configured")

        try:
            response = await asyncio.to_thread(
                self.client.youtube.transcript,
                video_id=media.locator,
                text=False,
            )
        except Exception as e:
            error_str = str(e).lower()
            if "limit-exceeded" in error_str or "429" in error_str:
                raise RateLimitedError(
                    f"Supadata rate limited {media.locator}", provider=self.name
                ) from e
            if "transcript-unavailable" in error_str or "206" in error_str:
                raise NoTranscriptAvailableError(
                    f"Supadata has no transcript for {media.locator}"
                ) from e
            raise ProviderError(
                f"Supadata transcript request failed: {e}", provider=self.name
            ) from e

        # Supadata reports offsets and durations in milliseconds
        segments = [
            TranscriptSegment(
                text=segment.text,
                start=float(segment.offset) / 1000,
                duration=float(segment.duration) / 1000,
            )
            for segment in response.content
        ]
        return TierResult(segments=segments, language=response.lang or "en")


class YouTubeTranscriptApiTier(TranscriptTier):
    """YouTube captions scraped with youtube-transcript-api."""

    name = "youtube_transcript_api"

    def __init__(self, config: IngestionConfig, api: YouTubeTranscriptApi | None = None):
        super().__init__(config)
        self.api = api or YouTubeTranscriptApi()

    async def fetch(self, media: RawMedia) -> TierResult:
        languages = list(self.config.transcript_languages)
        if media.language and media.language not in languages:
            languages.append(media.language)

        try:
            fetched = await asyncio.to_thread(
                self.api.fetch, media.locator, languages=languages
            )
        except VideoUnavailable as e:
            raise SourceUnavailableError(f"YouTube video {media.locator} unavailable") from e
        except (TranscriptsDisabled, NoTranscriptFound) as e:
            raise NoTranscriptAvailableError(
                f"No YouTube captions for {media.locator}"
            ) from e
        except RequestBlocked as e:
            raise RateLimitedError(
                f"YouTube blocked caption request for {media.locator}", provider=self.name
            ) from e
        except CouldNotRetrieveTranscript as e:
            raise ProviderError(
                f"Could not retrieve YouTube captions: {e}", provider=self.name
            ) from e

        segments = [
            TranscriptSegment(text=snippet.text, start=snippet.start, duration=snippet.duration)
            for snippet in fetched
        ]
        return TierResult(segments=segments, language=fetched.language_code or "en")


class LoomTranscriptTier(TranscriptTier):
    """Loom's own transcript API."""

    name = "loom_api"

    async def fetch(self, media: RawMedia) -> TierResult:
        async with httpx.AsyncClient(timeout=self.config.http_timeout_seconds) as client:
            response = await client.get(
                f"{LOOM_API_URL}/{media.locator}/transcript",
                headers={"Authorization": f"Bearer {self.config.loom_api_key}"},
            )

        if response.status_code == 404:
            raise NoTranscriptAvailableError(f"Loom has no transcript for {media.locator}")
        if response.status_code == 403:
            raise SourceUnavailableError(f"Loom video {media.locator} is private")
        if response.status_code == 429:
            raise RateLimitedError(f"Loom rate limited {media.locator}", provider=self.name)
        if response.status_code >= 400:
            raise ProviderError(
                f"Loom transcript request returned {response.status_code}",
                provider=self.name,
                retryable=response.status_code >= 500,
                status_code=response.status_code,
            )

        # Loom sentence timings are milliseconds
        sentences = response.json().get("sentences") or []
        segments = [
            TranscriptSegment(
                text=sentence.get("text", ""),
                start=sentence["start_time"] / 1000,
                duration=max(sentence["end_time"] - sentence["start_time"], 0) / 1000,
            )
            for sentence in sentences
        ]
        return TierResult(segments=segments, language=media.language or "en")


class MuxCaptionTier(TranscriptTier):
    """Mux auto-generated captions, downloaded as a WebVTT text track."""

    name = "mux_captions"

    async def fetch(self, media: RawMedia) -> TierResult:
        auth = (self.config.mux_token_id, self.config.mux_token_secret)
        async with httpx.AsyncClient(
            timeout=self.config.http_timeout_seconds, auth=auth
        ) as client:
            asset_response = await client.get(f"{MUX_API_URL}/{media.locator}")
            if asset_response.status_code == 429:
                raise RateLimitedError(f"Mux rate limited {media.locator}", provider=self.name)
            if asset_response.status_code >= 400:
                raise ProviderError(
                    f"Mux asset lookup returned {asset_response.status_code}",
                    provider=self.name,
                    status_code=asset_response.status_code,
                )
            asset = asset_response.json().get("data", {})

            track = next(
                (
                    t
                    for t in asset.get("tracks") or []
                    if t.get("type") == "text" and t.get("status", "ready") == "ready"
                ),
                None,
            )
            playback_ids = asset.get("playback_ids") or []
            if track is None or not playback_ids:
                raise NoTranscriptAvailableError(f"Mux asset {media.locator} has no caption track")

            vtt_response = await client.get(
                f"https://stream.mux.com/{playback_ids[0]['id']}/text/{track['id']}.vtt"
            )
            if vtt_response.status_code >= 400:
                raise ProviderError(
                    f"Mux caption download returned {vtt_response.status_code}",
                    provider=self.name,
                    status_code=vtt_response.status_code,
                )

        return TierResult(
            segments=parse_webvtt(vtt_response.text),
            language=track.get("language_code") or "en",
        )


class AudioLoader:
    """Fetches the audio bytes Whisper needs for each source kind."""

    def __init__(self, config: IngestionConfig, storage: StorageService):
        self.config = config
        self.storage = storage

    async def load(self, media: RawMedia) -> tuple[str, bytes]:
        match media.source_kind:
            case SourceKind.UPLOAD:
                data = await self.storage.download_object(media.locator)
                return Path(media.locator).name, data
            case SourceKind.YOUTUBE:
                return await asyncio.to_thread(self._download_youtube_audio, media.locator)
            case SourceKind.LOOM | SourceKind.MUX:
                if not media.audio_url:
                    raise NoTranscriptAvailableError(
                        f"No downloadable audio for {media.source_kind.value} {media.locator}"
                    )
                return await self._download_url(media.audio_url)
            case _:
                raise NoTranscriptAvailableError(f"Unsupported source kind {media.source_kind!r}")

    async def _download_url(self, url: str) -> tuple[str, bytes]:
        async with httpx.AsyncClient(
            timeout=self.config.http_timeout_seconds, follow_redirects=True
        ) as client:
            response = await client.get(url)
        if response.status_code >= 400:
            raise ProviderError(
                f"Audio download returned {response.status_code}",
                provider="audio_download",
                status_code=response.status_code,
            )
        name = httpx.URL(url).path.rsplit("/", 1)[-1] or "audio.m4a"
        return name, response.content

    def _download_youtube_audio(self, video_id: str) -> tuple[str, bytes]:
        with tempfile.TemporaryDirectory(prefix="yt-audio-") as tmp_dir:
            opts: dict[str, Any] = {
                "quiet": True,
                "no_warnings": True,
                "noplaylist": True,
                "format": "bestaudio[ext=m4a]/bestaudio",
                "outtmpl": str(Path(tmp_dir) / "%(id)s.%(ext)s"),
            }
            with yt_dlp.YoutubeDL(opts) as ydl:
                ydl.extract_info(f"https://www.youtube.com/watch?v={video_id}", download=True)
            files = sorted(Path(tmp_dir).glob(f"{video_id}.*"))
            if not files:
                raise ProviderError(
                    f"yt-dlp produced no audio file for {video_id}", provider="youtube"
                )
            return files[0].name, files[0].read_bytes()


class WhisperTier(TranscriptTier):
    """OpenAI Whisper speech-to-text, billed per minute of audio."""

    name = "whisper"
    paid = True

    _retryable_exceptions: tuple[type[Exception], ...] = (
        RateLimitError,
        APITimeoutError,
        APIConnectionError,
        InternalServerError,
    )

    def __init__(
        self,
        config: IngestionConfig,
        audio_loader: AudioLoader,
        client: AsyncOpenAI | None = None,
    ):
        super().__init__(config)
        self.audio_loader = audio_loader
        self.client = client or AsyncOpenAI(
            base_url=config.embedding_base_url, api_key=config.embedding_api_key
        )
        self._with_provider_retry = create_retry_decorator(
            config.retry_policy(), self._retryable_exceptions
        )

    def cost_for(self, duration_seconds: float) -> Decimal:
        per_minute = Decimal(self.config.whisper_cost_per_minute)
        minutes = Decimal(str(duration_seconds)) / Decimal(60)
        return (per_minute * minutes).quantize(COST_QUANTUM)

    async def extract(self, media: RawMedia) -> TierResult:
        # Retries wrap the API call only, so audio is downloaded once
        return await self.fetch(media)

    async def fetch(self, media: RawMedia) -> TierResult:
        filename, data = await self.audio_loader.load(media)
        if len(data) > self.config.whisper_max_bytes:
            raise NoTranscriptAvailableError(
                f"Audio for {media.locator} is {len(data)} bytes, over the Whisper upload limit"
            )

        @self._with_provider_retry
        async def _transcribe() -> Any:
            return await self.client.audio.transcriptions.create(
                model=self.config.whisper_model,
                file=(filename, data),
                response_format="verbose_json",
                timestamp_granularities=["segment"],
            )

        try:
            response = await _transcribe()
        except RateLimitError as e:
            raise RateLimitedError("Whisper rate limit exhausted", provider=self.name) from e
        except (APITimeoutError, APIConnectionError, InternalServerError) as e:
            raise ProviderError(
                f"Whisper transcription failed: {e}", provider=self.name, retryable=True
            ) from e

        segments = [
            TranscriptSegment(
                text=_field(segment, "text", ""),
                start=float(_field(segment, "start", 0.0)),
                duration=max(
                    float(_field(segment, "end", 0.0)) - float(_field(segment, "start", 0.0)),
                    0.0,
                ),
            )
            for segment in getattr(response, "segments", None) or []
        ]
        duration = getattr(response, "duration", None) or media.duration_seconds
        if duration is None and segments:
            duration = segments[-1].end
        cost = self.cost_for(float(duration or 0.0))

        logger.info(
            "whisper_transcription_completed",
            locator=media.locator,
            segments=len(segments),
            duration_seconds=duration,
            cost=str(cost),
        )
        return TierResult(
            segments=segments,
            language=getattr(response, "language", None) or media.language or "en",
            cost=cost,
        )


def _field(segment: Any, name: str, default: Any) -> Any:
    if isinstance(segment, dict):
        return segment.get(name, default)
    return getattr(segment, name, default)
