"""Chat session continuity: ownership, history, titles and per-session locks."""

import asyncio
import weakref
from datetime import timedelta

from pydantic_ai import Agent
from pydantic_ai.models import Model

from src.ingestion.schemas import utc_now
from src.utils.errors import NotFoundError, SessionOwnershipError
from src.utils.logging import get_logger

from .config import ChatConfig, get_model
from .schemas import ChatMessage, ChatSession
from .storage import ChatStore

logger = get_logger(__name__)

TITLE_INSTRUCTIONS = (
    "Write a short title (at most six words) for a conversation that starts with "
    "the student's message below. Reply with the title only, no quotes."
)

# Smallest step used to keep message timestamps strictly increasing
TIMESTAMP_STEP = timedelta(microseconds=1)


def fallback_title(message: str, max_words: int = 6) -> str:
    """First words of the message, or a dated placeholder when it is empty."""
    words = message.split()
    if not words:
        return f"Chat from {utc_now():%b %d, %Y}"
    title = " ".join(words[:max_words])
    if len(words) > max_words:
        title += "..."
    return title


def clean_title(raw: str, max_words: int = 6) -> str:
    title = raw.strip().strip("\"'").strip()
    words = title.split()
    return " ".join(words[: max_words * 2])


class SessionManager:
    """Owns chat sessions for (student, creator) pairs."""

    def __init__(
        self,
        config: ChatConfig,
        store: ChatStore,
        title_model: Model | str | None = None,
    ):
        self.config = config
        self.store = store
        self.title_agent = Agent(
            model=title_model or get_model(config),
            system_prompt=TITLE_INSTRUCTIONS,
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock(self, session_id: str) -> asyncio.Lock:
        """Process-local lock that serializes questions within one session.

        Entries live only while a caller holds or awaits the lock.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def get_session(self, session_id: str) -> ChatSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Chat session {session_id} not found")
        return session

    async def get_or_create(
        self,
        session_id: str | None,
        student_id: str,
        creator_id: str,
        course_id: str | None = None,
    ) -> ChatSession:
        """Load a session for this pair, or open a new one when no id is given.

        Raises:
            NotFoundError: If ``session_id`` is unknown.
            SessionOwnershipError: If the session belongs to another
                student or creator.
        """
        if not session_id:
            session = ChatSession(
                student_id=student_id, creator_id=creator_id, course_id=course_id
            )
            return await self.store.create_session(session)

        session = await self.get_session(session_id)
        if session.student_id != student_id or session.creator_id != creator_id:
            logger.warning(
                "chat_session_ownership_rejected",
                session_id=session_id,
                student_id=student_id,
                creator_id=creator_id,
            )
            raise SessionOwnershipError(
                f"Session {session_id} does not belong to this student/creator pair"
            )
        return session

    async def append_message(self, session: ChatSession, message: ChatMessage) -> ChatMessage:
        """Persist a message and bump the session's ``last_message_at``.

        Timestamps within a session are kept strictly increasing so arrival
        order survives a database round trip.
        """
        if message.created_at <= session.last_message_at:
            message = message.model_copy(
                update={"created_at": session.last_message_at + TIMESTAMP_STEP}
            )
        stored = await self.store.insert_message(message)
        session.last_message_at = stored.created_at
        await self.store.update_session(
            session.id, {"last_message_at": stored.created_at.isoformat()}
        )
        return stored

    async def history(self, session: ChatSession, pairs: int | None = None) -> list[ChatMessage]:
        """Messages in arrival order, limited to the last ``pairs`` exchanges."""
        messages = await self.store.list_messages(session.id)
        messages.sort(key=lambda m: m.created_at)
        if pairs is None:
            return messages
        if pairs <= 0:
            return []
        return messages[-pairs * 2 :]

    async def generate_title(self, first_message: str) -> str:
        """Title from the title agent, falling back to the message's first words."""
        max_words = self.config.title_max_words
        try:
            result = await asyncio.wait_for(
                self.title_agent.run(first_message),
                timeout=self.config.title_timeout_seconds,
            )
            title = clean_title(str(result.output), max_words)
            if title:
                return title
            logger.warning("chat_title_empty")
        except TimeoutError:
            logger.warning(
                "chat_title_timeout", timeout_seconds=self.config.title_timeout_seconds
            )
        except Exception as e:
            logger.exception("chat_title_failed", error_type=type(e).__name__)
        return fallback_title(first_message, max_words)

    async def ensure_title(self, session: ChatSession, first_message: str) -> str:
        """Set the session title once; later calls keep the existing title."""
        if session.title:
            return session.title
        title = await self.generate_title(first_message)
        session.title = title
        await self.store.update_session(session.id, {"title": title})
        logger.info("chat_title_set", session_id=session.id, title=title)
        return title

