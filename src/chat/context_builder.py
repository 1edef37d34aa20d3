"""Token-budgeted prompt assembly."""

from collections.abc import Callable

from pydantic import BaseModel, Field

from src.retrieval.formatting import format_timestamp_display
from src.retrieval.schemas import Citation
from src.utils.logging import get_logger
from src.utils.tokens import TokenCounter

from .config import ChatConfig
from .schemas import ChatMessage, MessageRole

logger = get_logger(__name__)

SYSTEM_INSTRUCTIONS = """You are a teaching assistant for a video course. Answer the \
student's question using only the video sources below.

- Cite the sources you use as [Source n] and mention the timestamp so the \
student can jump to that moment.
- If the sources don't contain the answer, say so plainly instead of guessing.
- Keep answers focused and practical."""

NO_SOURCES_NOTE = "No relevant video sources were found for this question."


class BuiltPrompt(BaseModel):
    """Everything the completion call needs, plus what it cited."""

    system_prompt: str
    history: list[ChatMessage] = Field(default_factory=list)
    question: str
    citations: list[Citation] = Field(default_factory=list)
    context_tokens: int = 0
    estimated_tokens: int = 0


def format_source(number: int, citation: Citation) -> str:
    title = citation.video_title or "Untitled video"
    timestamp = format_timestamp_display(citation.timestamp_seconds)
    return f"### Source {number}: {title} @ {timestamp}\n{citation.text.strip()}"


class ContextBuilder:
    """Builds prompts from ranked citations and recent history.

    Chunks go in whole, in rank order, while they fit the token budget; a
    chunk that would overflow it is left out rather than cut.
    """

    def __init__(self, config: ChatConfig, count_tokens: Callable[[str], int] | None = None):
        self.config = config
        self.count_tokens = count_tokens or TokenCounter(config.llm_choice)

    def select_history(self, history: list[ChatMessage], pairs: int) -> list[ChatMessage]:
        """Last ``pairs`` user/assistant exchanges, in arrival order."""
        if pairs <= 0:
            return []
        complete = [m for m in history if m.role in (MessageRole.USER, MessageRole.ASSISTANT)]
        return complete[-pairs * 2 :]

    def build(
        self,
        ranked: list[Citation],
        history: list[ChatMessage],
        question: str,
        token_budget: int | None = None,
    ) -> BuiltPrompt:
        budget = token_budget if token_budget is not None else self.config.context_token_budget

        sections: list[str] = []
        included: list[Citation] = []
        used = 0
        for citation in ranked:
            block = format_source(len(included) + 1, citation)
            tokens = self.count_tokens(block)
            if used + tokens > budget:
                logger.debug(
                    "context_chunk_skipped",
                    video_id=citation.video_id,
                    chunk_index=citation.chunk_index,
                    tokens=tokens,
                    remaining=budget - used,
                )
                continue
            sections.append(block)
            included.append(citation)
            used += tokens

        context = "\n\n".join(sections) if sections else NO_SOURCES_NOTE
        system_prompt = f"{SYSTEM_INSTRUCTIONS}\n\n## Video sources\n\n{context}"
        selected_history = self.select_history(history, self.config.history_pairs)

        estimated = (
            self.count_tokens(system_prompt)
            + sum(self.count_tokens(m.content) for m in selected_history)
            + self.count_tokens(question)
        )
        logger.info(
            "context_built",
            chunks_included=len(included),
            chunks_available=len(ranked),
            context_tokens=used,
            history_messages=len(selected_history),
            estimated_tokens=estimated,
        )
        return BuiltPrompt(
            system_prompt=system_prompt,
            history=selected_history,
            question=question,
            citations=included,
            context_tokens=used,
            estimated_tokens=estimated,
        )
