"""Storage service for videos, transcripts and uploaded media in Supabase."""

from datetime import datetime
from typing import Any

from supabase import Client, create_client

from src.utils.errors import InvalidTransitionError, NotFoundError
from src.utils.logging import get_logger

from .config import IngestionConfig
from .schemas import Transcript, Video, VideoStatus, utc_now

logger = get_logger(__name__)

IN_PROGRESS_STATUSES = [
    VideoStatus.TRANSCRIBING.value,
    VideoStatus.CHUNKING.value,
    VideoStatus.EMBEDDING.value,
]


class StorageService:
    """Service for persisting video records and transcripts in Supabase.

    Chunks and vectors live in the vector store; this service owns the
    ``videos``, ``transcripts`` and ``course_videos`` tables plus the upload
    bucket.
    """

    def __init__(self, config: IngestionConfig, client: Client | None = None):
        """Initialize storage service with configuration.

        Args:
            config: Configuration object with Supabase credentials.
            client: Existing Supabase client to share. Created from config when
                omitted.
        """
        self.config = config
        self.client: Client = client or create_client(
            config.supabase_url,
            config.supabase_key,
        )
        logger.info(
            "storage_service_initialized",
            supabase_url=config.supabase_url,
            bucket=config.upload_bucket,
        )

    async def create_video(self, video: Video) -> Video:
        """Insert a new video record.

        Raises:
            Exception: If the insert fails.
        """
        try:
            response = (
                self.client.table("videos")
                .insert(video.model_dump(mode="json"))
                .execute()
            )
            logger.info(
                "video_created",
                video_id=video.id,
                owner_id=video.owner_id,
                source_kind=video.source_kind.value,
            )
            return Video.model_validate(response.data[0]) if response.data else video
        except Exception as e:
            logger.exception(
                "video_create_failed",
                video_id=video.id,
                error_type=type(e).__name__,
            )
            raise

    async def get_video(self, video_id: str) -> Video | None:
        response = self.client.table("videos").select("*").eq("id", video_id).execute()
        if not response.data:
            return None
        return Video.model_validate(response.data[0])

    async def require_video(self, video_id: str) -> Video:
        video = await self.get_video(video_id)
        if video is None:
            raise NotFoundError(f"Video {video_id} not found")
        return video

    async def get_videos(self, video_ids: list[str]) -> list[Video]:
        if not video_ids:
            return []
        response = self.client.table("videos").select("*").in_("id", video_ids).execute()
        return [Video.model_validate(row) for row in response.data or []]

    async def update_video_status(
        self,
        video_id: str,
        *,
        expected: VideoStatus,
        status: VideoStatus,
        error_reason: str | None = None,
        error_message: str | None = None,
    ) -> Video:
        """Compare-and-set a video's status.

        The update only applies while the stored status still equals
        ``expected``, so two workers cannot both advance the same video.

        Raises:
            InvalidTransitionError: If the stored status changed underneath.
        """
        now = utc_now().isoformat()
        data = {
            "status": status.value,
            "error_reason": error_reason,
            "error_message": error_message,
            "status_changed_at": now,
            "updated_at": now,
        }
        response = (
            self.client.table("videos")
            .update(data)
            .eq("id", video_id)
            .eq("status", expected.value)
            .execute()
        )
        if not response.data:
            current = await self.get_video(video_id)
            raise InvalidTransitionError(
                video_id,
                current.status.value if current else "missing",
                status.value,
            )
        return Video.model_validate(response.data[0])

    async def update_video_fields(self, video_id: str, fields: dict[str, Any]) -> None:
        """Update descriptive fields (title, duration, transcript cost, ...)."""
        data = {**fields, "updated_at": utc_now().isoformat()}
        self.client.table("videos").update(data).eq("id", video_id).execute()
        logger.debug("video_fields_updated", video_id=video_id, fields=sorted(fields))

    async def list_videos_by_status(
        self, statuses: list[VideoStatus], owner_id: str | None = None
    ) -> list[Video]:
        query = (
            self.client.table("videos")
            .select("*")
            .in_("status", [status.value for status in statuses])
        )
        if owner_id:
            query = query.eq("owner_id", owner_id)
        response = query.order("created_at").execute()
        return [Video.model_validate(row) for row in response.data or []]

    async def list_stuck_videos(self, older_than: datetime) -> list[Video]:
        """Videos in a processing status whose status has not changed since ``older_than``."""
        response = (
            self.client.table("videos")
            .select("*")
            .in_("status", IN_PROGRESS_STATUSES)
            .lt("status_changed_at", older_than.isoformat())
            .execute()
        )
        return [Video.model_validate(row) for row in response.data or []]

    async def increment_reference_counts(self, video_ids: list[str]) -> None:
        if not video_ids:
            return
        self.client.rpc(
            "increment_video_references", {"video_ids": sorted(set(video_ids))}
        ).execute()

    async def list_course_video_ids(self, course_id: str) -> list[str]:
        response = (
            self.client.table("course_videos")
            .select("video_id")
            .eq("course_id", course_id)
            .execute()
        )
        return [row["video_id"] for row in response.data or []]

    async def save_transcript(self, transcript: Transcript) -> None:
        """Store a transcript in a single upsert.

        A transcript is either fully present or absent; there is no partial
        write path.
        """
        data = transcript.model_dump(mode="json")
        try:
            self.client.table("transcripts").upsert(data, on_conflict="video_id").execute()
            logger.info(
                "transcript_saved",
                video_id=transcript.video_id,
                method=transcript.method,
                word_count=transcript.word_count,
                segments=len(transcript.segments),
            )
        except Exception as e:
            logger.exception(
                "transcript_save_failed",
                video_id=transcript.video_id,
                error_type=type(e).__name__,
            )
            raise

    async def get_transcript(self, video_id: str) -> Transcript | None:
        response = (
            self.client.table("transcripts").select("*").eq("video_id", video_id).execute()
        )
        if not response.data:
            return None
        return Transcript.model_validate(response.data[0])

    async def object_exists(self, path: str) -> bool:
        """Check that an uploaded object exists in the upload bucket."""
        folder, _, name = path.rpartition("/")
        items = self.client.storage.from_(self.config.upload_bucket).list(
            folder, {"search": name}
        )
        return any(item.get("name") == name for item in items or [])

    async def download_object(self, path: str) -> bytes:
        return self.client.storage.from_(self.config.upload_bucket).download(path)
