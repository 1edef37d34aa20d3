"""Transcript extraction with a cost-ordered fallback chain."""

from src.utils.errors import NoTranscriptAvailableError, SourceUnavailableError
from src.utils.logging import get_logger

from .caption_tiers import (
    AudioLoader,
    LoomTranscriptTier,
    MuxCaptionTier,
    SupadataCaptionTier,
    TranscriptTier,
    WhisperTier,
    YouTubeTranscriptApiTier,
)
from .config import IngestionConfig
from .schemas import RawMedia, SourceKind, Transcript
from .storage_service import StorageService

logger = get_logger(__name__)


class TranscriptService:
    """Service for extracting transcripts from normalized media.

    Tiers are tried in a fixed order per source kind, cheapest first:

    - youtube: Supadata captions, youtube-transcript-api, Whisper
    - loom: Loom transcript API, Whisper
    - mux: Mux caption track, Whisper
    - upload: Whisper

    A failing tier falls through to the next one. Only an unavailable source
    aborts the chain early.
    """

    def __init__(
        self,
        config: IngestionConfig,
        storage: StorageService | None = None,
        tiers: dict[SourceKind, list[TranscriptTier]] | None = None,
    ):
        """Initialize transcript service.

        Args:
            config: Configuration with provider credentials and retry policy.
            storage: Storage service, used by Whisper to read uploaded files.
            tiers: Explicit tier chains per source kind. Built from config
                when omitted.
        """
        self.config = config
        self.tiers = tiers if tiers is not None else self._build_tiers(config, storage)
        logger.info(
            "transcript_service_initialized",
            chains={
                kind.value: [tier.name for tier in chain] for kind, chain in self.tiers.items()
            },
        )

    @staticmethod
    def _build_tiers(
        config: IngestionConfig, storage: StorageService | None
    ) -> dict[SourceKind, list[TranscriptTier]]:
        if storage is None:
            raise ValueError("storage is required to build the default tier chains")
        whisper = WhisperTier(config, AudioLoader(config, storage))
        return {
            SourceKind.YOUTUBE: [
                SupadataCaptionTier(config),
                YouTubeTranscriptApiTier(config),
                whisper,
            ],
            SourceKind.LOOM: [LoomTranscriptTier(config), whisper],
            SourceKind.MUX: [MuxCaptionTier(config), whisper],
            SourceKind.UPLOAD: [whisper],
        }

    def tiers_for(self, kind: SourceKind) -> list[TranscriptTier]:
        return self.tiers.get(kind, [])

    async def extract(self, media: RawMedia, video_id: str) -> Transcript:
        """Extract a transcript for ``media``.

        Full text and segments are both built from the first tier that
        succeeds, never mixed across tiers.

        Args:
            media: Normalized media description.
            video_id: Id of the video the transcript belongs to.

        Returns:
            Transcript with its tier name and cost.

        Raises:
            SourceUnavailableError: A tier found the media itself unreachable.
            NoTranscriptAvailableError: Every tier failed or returned nothing.
        """
        attempts: list[str] = []

        for tier in self.tiers_for(media.source_kind):
            logger.info(
                "transcript_tier_started",
                video_id=video_id,
                tier=tier.name,
                paid=tier.paid,
            )
            try:
                result = await tier.extract(media)
            except SourceUnavailableError:
                logger.warning("transcript_source_unavailable", video_id=video_id, tier=tier.name)
                raise
            except Exception as e:
                attempts.append(f"{tier.name}: {type(e).__name__}")
                logger.warning(
                    "transcript_tier_failed",
                    video_id=video_id,
                    tier=tier.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            transcript = Transcript.from_segments(
                video_id,
                result.segments,
                method=tier.name,
                language=result.language,
                cost=result.cost,
            )
            if not transcript.segments:
                attempts.append(f"{tier.name}: empty")
                logger.warning("transcript_tier_empty", video_id=video_id, tier=tier.name)
                continue

            logger.info(
                "transcript_extracted",
                video_id=video_id,
                tier=tier.name,
                segments=len(transcript.segments),
                word_count=transcript.word_count,
                cost=str(transcript.cost),
            )
            return transcript

        logger.warning("transcript_unavailable", video_id=video_id, attempts=attempts)
        raise NoTranscriptAvailableError(
            f"No transcript tier succeeded for video {video_id}", attempts=attempts
        )
