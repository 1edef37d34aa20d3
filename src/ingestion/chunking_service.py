"""Chunking service for segment-aligned transcript splitting."""

from dataclasses import dataclass

from src.utils.logging import get_logger

from .config import IngestionConfig
from .schemas import Chunk, Transcript, TranscriptSegment

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChunkSpan:
    """Segment range ``[start, end)`` of one chunk.

    The first ``overlap`` segments repeat the tail of the previous chunk.
    """

    start: int
    end: int
    overlap: int = 0

    @property
    def new_start(self) -> int:
        return self.start + self.overlap


class ChunkingService:
    """Service for chunking transcripts on segment boundaries.

    Segments carry the timing used for citations, so they are never split:
    a chunk grows segment by segment until it reaches the target word count,
    stopping at whichever boundary lands nearest the target. Each following
    chunk re-includes the trailing segments of the previous one (about
    ``overlap_words`` words) so context is not lost at boundaries.
    """

    def __init__(self, config: IngestionConfig):
        """Initialize chunking service with configuration.

        Args:
            config: Configuration object with word targets and overlap.
        """
        if not config.min_words <= config.target_words <= config.max_words:
            raise ValueError("target_words must lie between min_words and max_words")
        self.config = config
        logger.info(
            "chunking_service_initialized",
            target_words=config.target_words,
            max_words=config.max_words,
            overlap_words=config.overlap_words,
        )

    def plan(self, segments: list[TranscriptSegment]) -> list[ChunkSpan]:
        """Compute chunk boundaries over a segment list.

        Args:
            segments: Ordered transcript segments.

        Returns:
            Spans in order. Ignoring overlap, the spans cover every segment
            exactly once.
        """
        target = self.config.target_words
        spans: list[ChunkSpan] = []
        total = len(segments)
        start, overlap = 0, 0

        while start + overlap < total:
            words = sum(seg.word_count for seg in segments[start : start + overlap])
            end = start + overlap

            while end < total:
                seg_words = segments[end].word_count
                has_new_content = end > start + overlap
                if has_new_content and words + seg_words > target:
                    # Stop at whichever boundary is nearer the target
                    overshoot = words + seg_words - target
                    undershoot = target - words
                    if overshoot < undershoot and words + seg_words <= self.config.max_words:
                        end += 1
                    break
                words += seg_words
                end += 1
                if words >= target:
                    break

            spans.append(ChunkSpan(start=start, end=end, overlap=overlap))
            if end >= total:
                break

            next_start = self._overlap_start(segments, spans[-1])
            start, overlap = next_start, end - next_start

        return spans

    def _overlap_start(self, segments: list[TranscriptSegment], span: ChunkSpan) -> int:
        """Index of the first trailing segment carried into the next chunk."""
        overlap_words = 0
        index = span.end
        limit = self.config.target_words // 2
        # Never carry the chunk's first segment, so the next chunk always advances
        while index - 1 > span.start and overlap_words < self.config.overlap_words:
            seg_words = segments[index - 1].word_count
            if overlap_words + seg_words > limit:
                break
            overlap_words += seg_words
            index -= 1
        return index

    def chunk_transcript(self, transcript: Transcript) -> list[Chunk]:
        """Split a transcript into ordered, time-annotated chunks.

        Pure function over the transcript: no I/O.

        Args:
            transcript: Full transcript with timed segments.

        Returns:
            Chunks with dense zero-based indices. Empty when the transcript
            has no segments.
        """
        segments = transcript.segments
        if not segments:
            logger.warning("no_segments_to_chunk", video_id=transcript.video_id)
            return []

        chunks: list[Chunk] = []
        for index, span in enumerate(self.plan(segments)):
            chunk_segments = segments[span.start : span.end]
            chunks.append(
                Chunk(
                    video_id=transcript.video_id,
                    chunk_index=index,
                    text=" ".join(seg.text for seg in chunk_segments),
                    start_seconds=chunk_segments[0].start,
                    end_seconds=chunk_segments[-1].end,
                    word_count=sum(seg.word_count for seg in chunk_segments),
                    overlap_word_count=sum(
                        seg.word_count for seg in segments[span.start : span.new_start]
                    ),
                    segment_count=len(chunk_segments),
                )
            )

        logger.info(
            "transcript_chunked",
            video_id=transcript.video_id,
            total_chunks=len(chunks),
            total_words=transcript.word_count,
            avg_words=sum(c.word_count for c in chunks) // len(chunks),
        )
        return chunks
