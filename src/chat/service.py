"""Query path: one student question in, a streamed grounded answer out."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing

from src.ingestion.storage_service import StorageService
from src.retrieval.ranking import RetrievalService
from src.retrieval.schemas import SearchScope
from src.utils.errors import StreamCancelled, VideoRAGError
from src.utils.logging import get_logger

from .completion_service import CompletionRun, CompletionService
from .config import ChatConfig
from .context_builder import BuiltPrompt, ContextBuilder
from .schemas import (
    ChatEvent,
    ChatMessage,
    ChatRequest,
    ChatSession,
    MessageRole,
    VideoReference,
)
from .session_manager import SessionManager

logger = get_logger(__name__)


class ChatService:
    """Answers questions over a creator's videos.

    Event order for one question is ``session``, any number of ``token``
    events, then exactly one ``message`` or ``error``.
    """

    def __init__(
        self,
        config: ChatConfig,
        sessions: SessionManager,
        retrieval: RetrievalService,
        context_builder: ContextBuilder,
        completions: CompletionService,
        videos: StorageService,
    ):
        self.config = config
        self.sessions = sessions
        self.retrieval = retrieval
        self.context_builder = context_builder
        self.completions = completions
        self.videos = videos

    async def open_session(self, request: ChatRequest) -> ChatSession:
        """Resolve the request's session before streaming starts.

        Raises:
            NotFoundError: If the session id is unknown.
            SessionOwnershipError: If the session belongs to another pair.
        """
        return await self.sessions.get_or_create(
            request.session_id,
            request.student_id,
            request.creator_id,
            request.course_id,
        )

    async def resolve_scope(self, request: ChatRequest, session: ChatSession) -> SearchScope:
        course_id = request.course_id or session.course_id
        if not course_id:
            return SearchScope(owner_id=session.creator_id)
        video_ids = await self.videos.list_course_video_ids(course_id)
        return SearchScope(owner_id=session.creator_id, video_ids=video_ids)

    async def ask(
        self, request: ChatRequest, session: ChatSession | None = None
    ) -> AsyncIterator[ChatEvent]:
        """Stream the answer to one question as chat events."""
        if session is None:
            session = await self.open_session(request)

        async with self.sessions.lock(session.id):
            # A question queued behind this lock may hold a stale title
            session = await self.sessions.get_session(session.id)
            yield ChatEvent(type="session", session_id=session.id)

            history = await self.sessions.history(session)
            await self.sessions.append_message(
                session,
                ChatMessage(session_id=session.id, role=MessageRole.USER, content=request.message),
            )

            title_task = None
            if not session.title:
                title_task = asyncio.create_task(
                    self.sessions.ensure_title(session, request.message)
                )

            logger.info(
                "chat_request_started",
                session_id=session.id,
                creator_id=session.creator_id,
                history_messages=len(history),
                query_length=len(request.message),
            )

            run: CompletionRun | None = None
            try:
                scope = await self.resolve_scope(request, session)
                retrieval = await self.retrieval.retrieve(
                    request.message, scope, self.config.retrieval_k
                )
                prompt = self.context_builder.build(retrieval.citations, history, request.message)

                run = self.completions.start(prompt, retrieval.embedding_calls)
                async with aclosing(run.tokens()) as tokens:
                    async for delta in tokens:
                        yield ChatEvent(type="token", session_id=session.id, text=delta)

            except VideoRAGError as e:
                logger.warning(
                    "chat_request_failed",
                    session_id=session.id,
                    reason=e.reason,
                    error_type=type(e).__name__,
                )
                await self._finish_title(title_task)
                yield ChatEvent(type="error", session_id=session.id, error=e.user_message)
                return

            except (asyncio.CancelledError, GeneratorExit):
                if run is not None:
                    await asyncio.shield(self._save_incomplete(session, run))
                if title_task is not None:
                    title_task.cancel()
                logger.info(
                    "chat_stream_cancelled",
                    session_id=session.id,
                    reason=StreamCancelled.reason,
                    streamed_chars=len(run.content) if run else 0,
                )
                raise

            except Exception as e:
                logger.exception(
                    "chat_request_failed",
                    session_id=session.id,
                    error_type=type(e).__name__,
                )
                await self._finish_title(title_task)
                yield ChatEvent(
                    type="error", session_id=session.id, error=VideoRAGError.user_message
                )
                return

            answer = await self.sessions.append_message(
                session,
                ChatMessage(
                    session_id=session.id,
                    role=MessageRole.ASSISTANT,
                    content=run.content,
                    video_references=self._references(prompt),
                    usage=run.usage(),
                ),
            )
            await self._bump_references(prompt)
            await self._finish_title(title_task)

            logger.info(
                "chat_request_completed",
                session_id=session.id,
                citations=len(answer.video_references),
                total_cost=str(answer.usage.total_cost) if answer.usage else None,
            )
            yield ChatEvent(type="message", session_id=session.id, message=answer)

    @staticmethod
    def _references(prompt: BuiltPrompt) -> list[VideoReference]:
        return [VideoReference.from_citation(citation) for citation in prompt.citations]

    async def _save_incomplete(self, session: ChatSession, run: CompletionRun) -> None:
        await self.sessions.append_message(
            session,
            ChatMessage(
                session_id=session.id,
                role=MessageRole.ASSISTANT,
                content=run.content,
                video_references=self._references(run.prompt),
                usage=run.partial_usage(),
                incomplete=True,
            ),
        )

    async def _bump_references(self, prompt: BuiltPrompt) -> None:
        video_ids = sorted({citation.video_id for citation in prompt.citations})
        if not video_ids:
            return
        try:
            await self.videos.increment_reference_counts(video_ids)
        except Exception as e:
            # Counters only feed ranking; the answer is already stored
            logger.exception(
                "reference_count_update_failed",
                video_ids=video_ids,
                error_type=type(e).__name__,
            )

    async def _finish_title(self, title_task: asyncio.Task | None) -> None:
        if title_task is None:
            return
        try:
            await title_task
        except Exception as e:
            logger.exception("chat_title_task_failed", error_type=type(e).__name__)
