"""Pipeline orchestrator for video ingestion.

Sequences transcript extraction, chunking and embedding for one video at a
time, with every status change persisted through the state machine before
the next stage starts. Stages are strictly sequential within a video;
different videos run concurrently up to ``pipeline_concurrency``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta

from supabase import Client, create_client

from src.retrieval.vector_store import SupabaseVectorStore, VectorStore
from src.utils.errors import (
    InvalidTransitionError,
    NoTranscriptAvailableError,
    PipelineTimeoutError,
    VideoRAGError,
)
from src.utils.logging import get_logger

from .chunking_service import ChunkingService
from .config import IngestionConfig, get_config
from .embedding_service import EmbeddingService
from .schemas import (
    IngestionRequest,
    ReprocessResult,
    SourceKind,
    Video,
    VideoStatus,
    VideoStatusRecord,
    utc_now,
)
from .sources import SourceRegistry
from .status import StatusMachine
from .storage_service import StorageService
from .transcript_service import TranscriptService

logger = get_logger(__name__)

STAGES = (VideoStatus.TRANSCRIBING, VideoStatus.CHUNKING, VideoStatus.EMBEDDING)
IN_PROGRESS = frozenset(STAGES)


class VideoPipeline:
    """Orchestrates ingestion of videos.

    Failures inside a stage are retried by the component that owns the call.
    Once a stage gives up, or exceeds its timeout, the video moves to
    ``failed`` with the error's reason code and stays there until someone
    explicitly reprocesses it.
    """

    def __init__(
        self,
        config: IngestionConfig,
        storage: StorageService,
        vector_store: VectorStore,
        sources: SourceRegistry | None = None,
        transcripts: TranscriptService | None = None,
        chunker: ChunkingService | None = None,
        embeddings: EmbeddingService | None = None,
    ):
        """Initialize pipeline with all required services.

        Args:
            config: Ingestion configuration.
            storage: Video and transcript persistence.
            vector_store: Chunk and vector persistence.
            sources: Source adapters. Built from config when omitted.
            transcripts: Transcript extractor. Built from config when omitted.
            chunker: Chunker. Built from config when omitted.
            embeddings: Embedding generator. Built from config when omitted.
        """
        self.config = config
        self.storage = storage
        self.vector_store = vector_store
        self.sources = sources or SourceRegistry(config, storage)
        self.transcripts = transcripts or TranscriptService(config, storage)
        self.chunker = chunker or ChunkingService(config)
        self.embeddings = embeddings or EmbeddingService(config)
        self.status = StatusMachine(storage)
        self._stage_runners: dict[VideoStatus, Callable[[Video], Awaitable[None]]] = {
            VideoStatus.TRANSCRIBING: self._transcribe,
            VideoStatus.CHUNKING: self._chunk,
            VideoStatus.EMBEDDING: self._embed,
        }

        logger.info(
            "pipeline_initialized",
            timeouts=config.stage_timeouts(),
            concurrency=config.pipeline_concurrency,
        )

    @classmethod
    def from_config(
        cls, config: IngestionConfig | None = None, client: Client | None = None
    ) -> "VideoPipeline":
        """Build a pipeline backed by Supabase from environment configuration."""
        config = config or get_config()
        client = client or create_client(config.supabase_url, config.supabase_key)
        storage = StorageService(config, client)
        return cls(config, storage, SupabaseVectorStore(client))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def ingest(self, request: IngestionRequest) -> Video:
        """Validate a reference and create its pending video record.

        Reference syntax is checked before anything is written, so a bad
        reference never produces a video row.

        Raises:
            InvalidReferenceError: Reference does not fit the source kind.
        """
        locator = self.sources.parse_reference(request.source_kind, request.source_locator)
        is_upload = request.source_kind == SourceKind.UPLOAD
        video = Video(
            owner_id=request.owner_id,
            source_kind=request.source_kind,
            storage_path=locator if is_upload else None,
            external_id=None if is_upload else locator,
            title=request.title or "",
        )
        video = await self.storage.create_video(video)
        logger.info(
            "ingestion_requested",
            video_id=video.id,
            owner_id=video.owner_id,
            source_kind=video.source_kind.value,
        )
        return video

    async def ingest_and_process(self, request: IngestionRequest) -> Video:
        video = await self.ingest(request)
        return await self.process_video(video.id)

    async def process_video(self, video_id: str) -> Video:
        """Run every stage for a pending video.

        Returns:
            The video in its final status, ``completed`` or ``failed``.

        Raises:
            InvalidTransitionError: The video is not pending.
        """
        video = await self.storage.require_video(video_id)
        if video.status != VideoStatus.PENDING:
            raise InvalidTransitionError(video.id, video.status.value, "process")
        return await self._run(video, VideoStatus.TRANSCRIBING)

    async def process_many(self, video_ids: list[str]) -> list[Video | VideoRAGError]:
        """Process several pending videos concurrently."""
        semaphore = asyncio.Semaphore(self.config.pipeline_concurrency)

        async def _one(video_id: str) -> Video | VideoRAGError:
            async with semaphore:
                try:
                    return await self.process_video(video_id)
                except VideoRAGError as e:
                    logger.warning(
                        "video_not_processed", video_id=video_id, error_type=type(e).__name__
                    )
                    return e

        return list(await asyncio.gather(*[_one(video_id) for video_id in video_ids]))

    async def get_status(self, video_id: str) -> VideoStatusRecord:
        video = await self.storage.require_video(video_id)
        return VideoStatusRecord.from_video(video)

    # ------------------------------------------------------------------
    # Reprocessing
    # ------------------------------------------------------------------

    def is_stuck(self, video: Video) -> bool:
        threshold = timedelta(minutes=self.config.stuck_after_minutes)
        return video.status in IN_PROGRESS and utc_now() - video.status_changed_at > threshold

    async def resume_stage(self, video: Video, force: bool = False) -> VideoStatus:
        """Earliest stage whose output is missing.

        ``completed`` means every chunk is already embedded and only the
        status needs repairing.
        """
        transcript = await self.storage.get_transcript(video.id)
        if transcript is None:
            return VideoStatus.TRANSCRIBING
        if force:
            return VideoStatus.CHUNKING

        stats = await self.vector_store.chunk_stats(video.id)
        if stats.total == 0:
            return VideoStatus.CHUNKING
        if stats.embedded < stats.total:
            return VideoStatus.EMBEDDING
        return VideoStatus.COMPLETED

    async def reprocess(self, video_id: str, force: bool = False) -> ReprocessResult:
        """Re-enter a video at its earliest incomplete stage.

        Args:
            video_id: Video to reprocess.
            force: Re-chunk and re-embed from the stored transcript even if
                the video completed.

        Raises:
            InvalidTransitionError: The video is still being processed and is
                not yet considered stuck.
        """
        video = await self.storage.require_video(video_id)

        if video.status in IN_PROGRESS:
            if not self.is_stuck(video):
                raise InvalidTransitionError(video.id, video.status.value, "reprocess")
            stage = video.status.value
            video = await self.status.advance(
                video,
                VideoStatus.FAILED,
                error=PipelineTimeoutError(
                    f"Video {video.id} stuck in {stage}",
                    stage=stage,
                    timeout_seconds=self.config.stuck_after_minutes * 60,
                ),
            )

        if video.status == VideoStatus.COMPLETED and not force:
            logger.info("reprocess_skipped_completed", video_id=video.id)
            return ReprocessResult(video_id=video.id, status=video.status)

        resume = await self.resume_stage(video, force=force)
        logger.info(
            "reprocess_started",
            video_id=video.id,
            current_status=video.status.value,
            resume_stage=resume.value,
            force=force,
        )

        if resume == VideoStatus.COMPLETED:
            video = await self.status.advance(video, VideoStatus.COMPLETED, repair=True)
            return ReprocessResult(video_id=video.id, resumed_from=resume, status=video.status)

        if video.status == VideoStatus.PENDING:
            resume = VideoStatus.TRANSCRIBING

        video = await self._run(video, resume, force=force)
        return ReprocessResult(
            video_id=video.id,
            resumed_from=resume,
            status=video.status,
            error_reason=video.error_reason,
        )

    async def reprocess_many(
        self, video_ids: list[str], force: bool = False
    ) -> list[ReprocessResult]:
        """Reprocess several videos concurrently; one failure does not stop the rest."""
        semaphore = asyncio.Semaphore(self.config.pipeline_concurrency)

        async def _one(video_id: str) -> ReprocessResult:
            async with semaphore:
                try:
                    return await self.reprocess(video_id, force=force)
                except VideoRAGError as e:
                    logger.warning(
                        "reprocess_rejected",
                        video_id=video_id,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    video = await self.storage.get_video(video_id)
                    return ReprocessResult(
                        video_id=video_id,
                        status=video.status if video else VideoStatus.FAILED,
                        error_reason=e.reason,
                    )

        results = await asyncio.gather(*[_one(video_id) for video_id in video_ids])
        logger.info(
            "reprocess_batch_completed",
            total=len(results),
            completed=sum(1 for r in results if r.status == VideoStatus.COMPLETED),
            failed=sum(1 for r in results if r.status == VideoStatus.FAILED),
        )
        return list(results)

    async def reprocess_failed(
        self, owner_id: str | None = None, exclude: set[str] | None = None
    ) -> list[ReprocessResult]:
        """Re-enter every failed video, skipping ids in ``exclude``."""
        failed = await self.storage.list_videos_by_status([VideoStatus.FAILED], owner_id=owner_id)
        skip = exclude or set()
        return await self.reprocess_many([video.id for video in failed if video.id not in skip])

    async def recover_stuck(self, older_than_minutes: int | None = None) -> list[ReprocessResult]:
        """Fail and re-enter videos stuck in a processing status."""
        minutes = older_than_minutes or self.config.stuck_after_minutes
        if minutes < self.config.min_stuck_minutes():
            logger.warning(
                "stuck_threshold_raised",
                requested_minutes=minutes,
                minimum_minutes=self.config.min_stuck_minutes(),
            )
            minutes = self.config.min_stuck_minutes()
        cutoff = utc_now() - timedelta(minutes=minutes)
        stuck = await self.storage.list_stuck_videos(cutoff)
        logger.info("stuck_videos_found", count=len(stuck), older_than_minutes=minutes)

        results = []
        for video in stuck:
            stage = video.status.value
            try:
                await self.status.advance(
                    video,
                    VideoStatus.FAILED,
                    error=PipelineTimeoutError(
                        f"Video {video.id} stuck in {stage}",
                        stage=stage,
                        timeout_seconds=minutes * 60,
                    ),
                )
            except InvalidTransitionError:
                # Moved on since the listing; leave it to its worker
                logger.info("stuck_video_moved_on", video_id=video.id)
                continue
            results.append(video.id)

        return await self.reprocess_many(results)

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _run(self, video: Video, start: VideoStatus, force: bool = False) -> Video:
        stages = STAGES[STAGES.index(start) :]
        try:
            for stage in stages:
                video = await self.status.advance(
                    video, stage, force=force and video.status == VideoStatus.COMPLETED
                )
                await self._run_stage(video, stage)
            video = await self.status.advance(video, VideoStatus.COMPLETED)
            logger.info("video_processed", video_id=video.id)
            return video
        except InvalidTransitionError:
            raise
        except VideoRAGError as e:
            return await self._fail(video, e)
        except Exception as e:
            logger.exception("video_stage_crashed", video_id=video.id, error_type=type(e).__name__)
            return await self._fail(video, VideoRAGError(str(e)))

    async def _run_stage(self, video: Video, stage: VideoStatus) -> None:
        timeout = self.config.stage_timeouts()[stage.value]
        logger.info("stage_started", video_id=video.id, stage=stage.value, timeout=timeout)
        try:
            await asyncio.wait_for(self._stage_runners[stage](video), timeout=timeout)
        except TimeoutError as e:
            raise PipelineTimeoutError(
                f"Stage {stage.value} exceeded {timeout}s for video {video.id}",
                stage=stage.value,
                timeout_seconds=timeout,
            ) from e
        logger.info("stage_completed", video_id=video.id, stage=stage.value)

    async def _fail(self, video: Video, error: VideoRAGError) -> Video:
        logger.warning(
            "video_processing_failed",
            video_id=video.id,
            status=video.status.value,
            error_reason=error.reason,
            error=str(error),
        )
        if video.status.is_terminal:
            return video
        return await self.status.advance(video, VideoStatus.FAILED, error=error)

    async def _transcribe(self, video: Video) -> None:
        media = await self.sources.normalize(video.source_kind, video.locator)
        metadata = {
            "duration_seconds": media.duration_seconds,
            "thumbnail_url": media.thumbnail_url,
        }
        if not video.title and media.title:
            metadata["title"] = media.title
        await self.storage.update_video_fields(
            video.id, {key: value for key, value in metadata.items() if value is not None}
        )

        transcript = await self.transcripts.extract(media, video.id)
        await self.storage.save_transcript(transcript)
        await self.storage.update_video_fields(
            video.id,
            {"transcript_method": transcript.method, "transcript_cost": str(transcript.cost)},
        )

    async def _chunk(self, video: Video) -> None:
        transcript = await self.storage.get_transcript(video.id)
        if transcript is None:
            raise NoTranscriptAvailableError(f"No stored transcript for video {video.id}")

        chunks = self.chunker.chunk_transcript(transcript)
        if not chunks:
            raise NoTranscriptAvailableError(f"Transcript for video {video.id} is empty")

        # Delete-then-recreate keeps reprocessing idempotent
        await self.vector_store.replace_chunks(video.id, video.owner_id, chunks)

    async def _embed(self, video: Video) -> None:
        chunks = await self.vector_store.get_chunks(video.id)
        if not chunks:
            raise VideoRAGError(f"No chunks stored for video {video.id}")

        embedded = await self.embeddings.embed_chunks(chunks)
        await self.vector_store.attach_embeddings(
            video.id, {chunk.chunk_index: chunk.embedding for chunk in embedded}
        )
