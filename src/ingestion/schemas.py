"""Pydantic schemas for the video ingestion pipeline."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class SourceKind(str, Enum):
    """Where a video's media lives."""

    UPLOAD = "upload"
    YOUTUBE = "youtube"
    LOOM = "loom"
    MUX = "mux"


class VideoStatus(str, Enum):
    """Processing status of a video."""

    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.FAILED)


class Video(BaseModel):
    """One piece of source media and its processing state.

    Uploaded files are located by ``storage_path``; every other source kind by
    ``external_id``. Exactly one of the two is set.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str
    source_kind: SourceKind
    storage_path: str | None = None
    external_id: str | None = None
    title: str = ""
    duration_seconds: float | None = None
    thumbnail_url: str | None = None
    status: VideoStatus = VideoStatus.PENDING
    error_reason: str | None = None
    error_message: str | None = None
    view_count: int = 0
    reference_count: int = 0
    transcript_method: str | None = None
    transcript_cost: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    status_changed_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_locator(self) -> "Video":
        if (self.storage_path is None) == (self.external_id is None):
            raise ValueError("exactly one of storage_path and external_id must be set")
        if self.source_kind == SourceKind.UPLOAD and self.storage_path is None:
            raise ValueError("upload videos are located by storage_path")
        if self.source_kind != SourceKind.UPLOAD and self.external_id is None:
            raise ValueError(f"{self.source_kind.value} videos are located by external_id")
        return self

    @property
    def locator(self) -> str:
        return self.storage_path or self.external_id or ""


class RawMedia(BaseModel):
    """Normalized description of a video reference.

    Produced by a source adapter before any transcript work starts.
    """

    source_kind: SourceKind
    locator: str
    title: str = ""
    duration_seconds: float | None = None
    thumbnail_url: str | None = None
    caption_hint: bool = False
    audio_url: str | None = None
    language: str | None = None


class TranscriptSegment(BaseModel):
    """Single time-coded transcript segment (seconds)."""

    text: str
    start: float = Field(ge=0.0)
    duration: float = Field(default=0.0, ge=0.0)

    @property
    def end(self) -> float:
        return self.start + self.duration

    @property
    def word_count(self) -> int:
        return len(self.text.split())


class Transcript(BaseModel):
    """Full video transcript produced by one extraction tier.

    ``full_text`` is always derived from ``segments`` so the text used for
    embedding and the timings used for citations cannot drift apart.
    """

    video_id: str
    full_text: str
    language: str = "en"
    word_count: int
    segments: list[TranscriptSegment]
    method: str
    cost: Decimal = Decimal("0")

    @classmethod
    def from_segments(
        cls,
        video_id: str,
        segments: list[TranscriptSegment],
        *,
        method: str,
        language: str = "en",
        cost: Decimal = Decimal("0"),
    ) -> "Transcript":
        cleaned = [
            segment.model_copy(update={"text": " ".join(segment.text.split())})
            for segment in segments
            if segment.text.strip()
        ]
        full_text = " ".join(segment.text for segment in cleaned)
        return cls(
            video_id=video_id,
            full_text=full_text,
            language=language,
            word_count=len(full_text.split()),
            segments=cleaned,
            method=method,
            cost=cost,
        )


class Chunk(BaseModel):
    """Contiguous transcript slice prepared for embedding."""

    video_id: str
    chunk_index: int = Field(ge=0)
    text: str
    start_seconds: float
    end_seconds: float
    word_count: int
    overlap_word_count: int = 0
    segment_count: int
    embedding: list[float] | None = None


class IngestionRequest(BaseModel):
    """Request to ingest one video."""

    source_kind: SourceKind
    source_locator: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    title: str | None = None


class VideoStatusRecord(BaseModel):
    """Pollable processing status of a video."""

    video_id: str
    status: VideoStatus
    error_reason: str | None = None
    error_message: str | None = None
    status_changed_at: datetime
    updated_at: datetime

    @classmethod
    def from_video(cls, video: Video) -> "VideoStatusRecord":
        return cls(
            video_id=video.id,
            status=video.status,
            error_reason=video.error_reason,
            error_message=video.error_message,
            status_changed_at=video.status_changed_at,
            updated_at=video.updated_at,
        )


class ReprocessResult(BaseModel):
    """Outcome of re-entering one video into the pipeline."""

    video_id: str
    resumed_from: VideoStatus | None = None
    status: VideoStatus
    error_reason: str | None = None
