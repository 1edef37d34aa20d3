"""Supabase persistence for chat sessions and messages."""

from typing import Any

from supabase import Client, create_client

from src.utils.logging import get_logger

from .config import ChatConfig
from .schemas import ChatMessage, ChatSession

logger = get_logger(__name__)


class ChatStore:
    """Reads and writes the ``chat_sessions`` and ``chat_messages`` tables.

    Messages are insert-only; nothing here updates or deletes a message.
    """

    def __init__(self, config: ChatConfig, client: Client | None = None):
        self.config = config
        self.client: Client = client or create_client(
            config.supabase_url,
            config.supabase_key,
        )

    async def create_session(self, session: ChatSession) -> ChatSession:
        response = (
            self.client.table("chat_sessions")
            .insert(session.model_dump(mode="json"))
            .execute()
        )
        logger.info(
            "chat_session_created",
            session_id=session.id,
            student_id=session.student_id,
            creator_id=session.creator_id,
        )
        return ChatSession.model_validate(response.data[0]) if response.data else session

    async def get_session(self, session_id: str) -> ChatSession | None:
        response = (
            self.client.table("chat_sessions").select("*").eq("id", session_id).execute()
        )
        if not response.data:
            return None
        return ChatSession.model_validate(response.data[0])

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        self.client.table("chat_sessions").update(fields).eq("id", session_id).execute()

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        try:
            self.client.table("chat_messages").insert(
                message.model_dump(mode="json")
            ).execute()
        except Exception as e:
            logger.exception(
                "chat_message_insert_failed",
                session_id=message.session_id,
                role=message.role.value,
                error_type=type(e).__name__,
            )
            raise
        return message

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        response = (
            self.client.table("chat_messages")
            .select("*")
            .eq("session_id", session_id)
            .order("created_at")
            .execute()
        )
        return [ChatMessage.model_validate(row) for row in response.data or []]
