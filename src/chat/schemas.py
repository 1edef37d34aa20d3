"""Pydantic schemas for chat sessions, messages and events."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from src.ingestion.schemas import utc_now
from src.retrieval.schemas import Citation


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class VideoReference(BaseModel):
    """A cited moment in a video, stored with the assistant message."""

    video_id: str
    video_title: str = ""
    timestamp_seconds: float
    relevance_score: float
    snippet: str
    url: str | None = None

    @classmethod
    def from_citation(cls, citation: Citation) -> "VideoReference":
        return cls(
            video_id=citation.video_id,
            video_title=citation.video_title,
            timestamp_seconds=citation.timestamp_seconds,
            relevance_score=round(citation.relevance_score, 6),
            snippet=citation.snippet,
            url=citation.url,
        )


class UsageRecord(BaseModel):
    """Token usage and cost of one assistant answer."""

    input_tokens: int = 0
    output_tokens: int = 0
    embedding_calls: int = 0
    total_cost: Decimal = Decimal("0")


class ChatSession(BaseModel):
    """A conversation between one student and one creator's content.

    The (student, creator) pair is fixed for the lifetime of the session.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    student_id: str
    creator_id: str
    course_id: str | None = None
    title: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    last_message_at: datetime = Field(default_factory=utc_now)


class ChatMessage(BaseModel):
    """One immutable message in a session."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    role: MessageRole
    content: str
    video_references: list[VideoReference] = Field(default_factory=list)
    usage: UsageRecord | None = None
    incomplete: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class ChatRequest(BaseModel):
    """A student's question."""

    session_id: str | None = None
    message: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    course_id: str | None = None


class ChatEvent(BaseModel):
    """One item of the streamed chat response.

    ``session`` comes first, then zero or more ``token`` events, then exactly
    one ``message`` (final record) or ``error``.
    """

    type: Literal["session", "token", "message", "error"]
    session_id: str
    text: str | None = None
    message: ChatMessage | None = None
    error: str | None = None
