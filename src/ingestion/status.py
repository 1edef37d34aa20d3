"""Processing status state machine.

Every status change of a video goes through ``StatusMachine.advance``, which
checks the transition table and persists the new status (compare-and-set on
the previous one) before the caller starts the next stage.

Forward path::

    pending -> transcribing -> chunking -> embedding -> completed

``failed`` is reachable from every non-terminal status. Re-entry edges:

- ``failed -> transcribing | chunking | embedding``: reprocess at the
  earliest incomplete stage.
- ``completed -> chunking``: forced reprocess only.
- ``pending | failed -> completed``: status repair only, when every chunk is
  already embedded.
"""

from src.utils.errors import InvalidTransitionError, VideoRAGError
from src.utils.logging import get_logger

from .schemas import Video, VideoStatus
from .storage_service import StorageService

logger = get_logger(__name__)

S = VideoStatus

TRANSITIONS: dict[VideoStatus, frozenset[VideoStatus]] = {
    S.PENDING: frozenset({S.TRANSCRIBING, S.FAILED, S.COMPLETED}),
    S.TRANSCRIBING: frozenset({S.CHUNKING, S.FAILED}),
    S.CHUNKING: frozenset({S.EMBEDDING, S.FAILED}),
    S.EMBEDDING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset({S.CHUNKING}),
    S.FAILED: frozenset({S.TRANSCRIBING, S.CHUNKING, S.EMBEDDING, S.COMPLETED}),
}

FORCE_EDGES = frozenset({(S.COMPLETED, S.CHUNKING)})
REPAIR_EDGES = frozenset({(S.PENDING, S.COMPLETED), (S.FAILED, S.COMPLETED)})


def can_transition(
    current: VideoStatus, target: VideoStatus, *, force: bool = False, repair: bool = False
) -> bool:
    if target not in TRANSITIONS[current]:
        return False
    if (current, target) in FORCE_EDGES and not force:
        return False
    if (current, target) in REPAIR_EDGES and not repair:
        return False
    return True


class StatusMachine:
    """Single authority for moving a video between processing statuses."""

    def __init__(self, storage: StorageService):
        self.storage = storage

    async def advance(
        self,
        video: Video,
        target: VideoStatus,
        *,
        error: VideoRAGError | None = None,
        force: bool = False,
        repair: bool = False,
    ) -> Video:
        """Validate and persist a status change.

        Args:
            video: Video as last read; its status is the expected current one.
            target: Status to move to.
            error: Failure being recorded. Required when ``target`` is failed.
            force: Allows the forced-reprocess edge.
            repair: Allows the status-repair edges.

        Returns:
            The updated video record.

        Raises:
            InvalidTransitionError: Edge not allowed, or the stored status
                changed since ``video`` was read.
        """
        if not can_transition(video.status, target, force=force, repair=repair):
            raise InvalidTransitionError(video.id, video.status.value, target.value)
        if target == S.FAILED and error is None:
            raise ValueError("a failed transition must record its error")

        updated = await self.storage.update_video_status(
            video.id,
            expected=video.status,
            status=target,
            error_reason=error.reason if error else None,
            error_message=error.user_message if error else None,
        )
        log = logger.warning if target == S.FAILED else logger.info
        log(
            "video_status_changed",
            video_id=video.id,
            from_status=video.status.value,
            to_status=target.value,
            error_reason=error.reason if error else None,
        )
        return updated
