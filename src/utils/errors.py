"""Error taxonomy shared by the ingestion pipeline and the chat path.

Every error carries a stable ``reason`` code (stored on failed videos and
used in API responses) and a ``user_message`` that is safe to show to a
creator or student. Provider internals stay in the log, never in
``user_message``.

Hierarchy:
    VideoRAGError
    ├── InvalidReferenceError        (bad input, not retried)
    ├── SourceUnavailableError       (terminal)
    ├── NoTranscriptAvailableError   (terminal, all tiers exhausted)
    ├── RateLimitedError             (transient, retried by the owning stage)
    ├── ProviderError                (transient if retryable, else terminal)
    │   └── ChatCompletionError
    ├── PipelineTimeoutError         (terminal, stage exceeded its bound)
    ├── StreamCancelled              (caller disconnected mid-stream)
    ├── InvalidTransitionError
    ├── SessionOwnershipError
    └── NotFoundError
"""


class VideoRAGError(Exception):
    """Base class for all pipeline and chat errors."""

    reason = "InternalError"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class InvalidReferenceError(VideoRAGError):
    """The video reference could not be parsed for its source kind."""

    reason = "InvalidReference"
    user_message = "That video link or file reference isn't valid for the selected source."


class SourceUnavailableError(VideoRAGError):
    """The source media is deleted, private, or unreachable."""

    reason = "SourceUnavailable"
    user_message = "The video is private, deleted, or can't be reached."


class NoTranscriptAvailableError(VideoRAGError):
    """No transcript tier produced a usable transcript."""

    reason = "NoTranscriptAvailable"
    user_message = "No captions or transcript available for this video."

    def __init__(self, message: str, *, attempts: list[str] | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


class RateLimitedError(VideoRAGError):
    """A third-party service answered with a rate-limit response."""

    reason = "RateLimited"
    user_message = "The video service is busy right now. Please retry in a few minutes."

    def __init__(self, message: str, *, provider: str) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderError(VideoRAGError):
    """An embedding, transcription, or completion provider failed.

    Args:
        message: Description of the failure (logged, never shown to users).
        provider: Name of the provider ("openai", "loom", "mux", ...).
        retryable: True for 5xx/timeouts, False for 4xx.
        status_code: HTTP status returned by the provider, when known.
    """

    reason = "ProviderError"
    user_message = "A processing service failed. Please retry."

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code


class ChatCompletionError(ProviderError):
    """The language model failed to produce a response."""

    reason = "ChatCompletionFailed"
    user_message = "Couldn't get a response, try again."


class PipelineTimeoutError(VideoRAGError):
    """A pipeline stage ran longer than its configured bound."""

    reason = "PipelineTimeout"
    user_message = "Processing took too long and was stopped. Please retry."

    def __init__(self, message: str, *, stage: str, timeout_seconds: float) -> None:
        super().__init__(message)
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class StreamCancelled(VideoRAGError):
    """The caller disconnected before the response finished streaming."""

    reason = "StreamCancelled"
    user_message = "The response was interrupted."


class InvalidTransitionError(VideoRAGError):
    """A status change that the processing state machine does not allow."""

    reason = "InvalidTransition"
    user_message = "This video can't be moved to that processing state right now."

    def __init__(self, video_id: str, current: str, target: str) -> None:
        super().__init__(f"Video {video_id}: transition {current} -> {target} not allowed")
        self.video_id = video_id
        self.current = current
        self.target = target


class SessionOwnershipError(VideoRAGError):
    """A chat session was used by a different student or creator."""

    reason = "SessionOwnership"
    user_message = "This conversation belongs to a different account."


class NotFoundError(VideoRAGError):
    """A requested record does not exist."""

    reason = "NotFound"
    user_message = "The requested item was not found."


TERMINAL_INGESTION_ERRORS: tuple[type[VideoRAGError], ...] = (
    InvalidReferenceError,
    SourceUnavailableError,
    NoTranscriptAvailableError,
    PipelineTimeoutError,
)
