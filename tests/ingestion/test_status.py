"""Unit tests for the processing status state machine."""

import pytest

from src.ingestion.schemas import SourceKind, Video, VideoStatus
from src.ingestion.status import StatusMachine, can_transition
from src.utils.errors import InvalidTransitionError, SourceUnavailableError

S = VideoStatus


@pytest.mark.unit
class TestCanTransition:
    """Test the transition table."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.TRANSCRIBING),
            (S.TRANSCRIBING, S.CHUNKING),
            (S.CHUNKING, S.EMBEDDING),
            (S.EMBEDDING, S.COMPLETED),
            (S.TRANSCRIBING, S.FAILED),
            (S.EMBEDDING, S.FAILED),
            (S.FAILED, S.TRANSCRIBING),
            (S.FAILED, S.CHUNKING),
            (S.FAILED, S.EMBEDDING),
        ],
    )
    def test_allowed(self, current: VideoStatus, target: VideoStatus) -> None:
        """Test forward and re-entry edges are allowed."""
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.CHUNKING),
            (S.TRANSCRIBING, S.EMBEDDING),
            (S.CHUNKING, S.COMPLETED),
            (S.COMPLETED, S.FAILED),
            (S.COMPLETED, S.TRANSCRIBING),
            (S.EMBEDDING, S.TRANSCRIBING),
        ],
    )
    def test_rejected(self, current: VideoStatus, target: VideoStatus) -> None:
        """Test skipped stages and moves out of completed are rejected."""
        assert not can_transition(current, target)

    def test_forced_reprocess_edge(self) -> None:
        """Test completed -> chunking needs force."""
        assert not can_transition(S.COMPLETED, S.CHUNKING)
        assert can_transition(S.COMPLETED, S.CHUNKING, force=True)

    def test_repair_edge(self) -> None:
        """Test pending/failed -> completed needs repair."""
        assert not can_transition(S.PENDING, S.COMPLETED)
        assert not can_transition(S.FAILED, S.COMPLETED)
        assert can_transition(S.FAILED, S.COMPLETED, repair=True)


@pytest.mark.unit
class TestStatusMachine:
    """Test persisted status changes."""

    @pytest.fixture
    def video(self, storage) -> Video:
        video = Video(owner_id="creator-1", source_kind=SourceKind.YOUTUBE, external_id="abc")
        storage.videos[video.id] = video
        return video

    @pytest.mark.asyncio
    async def test_advance_persists(self, storage, video: Video) -> None:
        """Test a valid change is written with compare-and-set."""
        machine = StatusMachine(storage)

        updated = await machine.advance(video, S.TRANSCRIBING)

        assert updated.status == S.TRANSCRIBING
        assert storage.videos[video.id].status == S.TRANSCRIBING
        assert storage.status_updates == [(video.id, S.PENDING, S.TRANSCRIBING)]

    @pytest.mark.asyncio
    async def test_invalid_edge_not_written(self, storage, video: Video) -> None:
        """Test an invalid edge raises and leaves storage untouched."""
        machine = StatusMachine(storage)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await machine.advance(video, S.EMBEDDING)

        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "embedding"
        assert storage.status_updates == []

    @pytest.mark.asyncio
    async def test_failed_records_reason(self, storage, video: Video) -> None:
        """Test a failure stores the error's reason code and user message."""
        machine = StatusMachine(storage)
        video = await machine.advance(video, S.TRANSCRIBING)

        failed = await machine.advance(
            video, S.FAILED, error=SourceUnavailableError("video is private")
        )

        assert failed.status == S.FAILED
        assert failed.error_reason == "SourceUnavailable"
        assert failed.error_message == SourceUnavailableError.user_message

    @pytest.mark.asyncio
    async def test_failed_requires_error(self, storage, video: Video) -> None:
        """Test moving to failed without an error is a programming error."""
        machine = StatusMachine(storage)

        with pytest.raises(ValueError):
            await machine.advance(video, S.FAILED)

    @pytest.mark.asyncio
    async def test_stale_read_rejected(self, storage, video: Video) -> None:
        """Test a concurrent change makes the compare-and-set fail."""
        machine = StatusMachine(storage)
        storage.set_status(video.id, S.TRANSCRIBING)

        with pytest.raises(InvalidTransitionError):
            await machine.advance(video, S.TRANSCRIBING)
