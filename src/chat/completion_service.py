"""Streamed chat completions with usage and cost metering."""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model

from src.utils.errors import ChatCompletionError
from src.utils.logging import get_logger
from src.utils.tokens import TokenCounter

from .config import ChatConfig, get_model
from .context_builder import BuiltPrompt
from .costs import compute_cost
from .schemas import ChatMessage, MessageRole, UsageRecord

logger = get_logger(__name__)

# Queued by the producer task once the provider stream has ended
_STREAM_END = object()


def to_model_messages(prompt: BuiltPrompt) -> list[ModelMessage]:
    """Convert the prompt's system context and history to pydantic-ai messages."""
    messages: list[ModelMessage] = [
        ModelRequest(parts=[SystemPromptPart(content=prompt.system_prompt)])
    ]
    for message in prompt.history:
        if message.role == MessageRole.USER:
            messages.append(ModelRequest(parts=[UserPromptPart(content=message.content)]))
        else:
            messages.append(ModelResponse(parts=[TextPart(content=message.content)]))
    return messages


def read_usage(result: Any) -> Any:
    """Run usage from a stream result; a method on older pydantic-ai, a property on newer."""
    usage = result.usage
    return usage() if callable(usage) else usage


def _usage_tokens(usage: Any) -> tuple[int, int]:
    input_tokens = getattr(usage, "input_tokens", None)
    output_tokens = getattr(usage, "output_tokens", None)
    return int(input_tokens or 0), int(output_tokens or 0)


class CompletionRun:
    """One streamed answer.

    Iterate ``tokens()`` to receive text deltas; once it finishes,
    ``usage()`` returns the metered usage. Closing the iterator early closes
    the provider stream.
    """

    def __init__(
        self,
        service: "CompletionService",
        prompt: BuiltPrompt,
        embedding_calls: int = 0,
    ):
        self.service = service
        self.prompt = prompt
        self.embedding_calls = embedding_calls
        self.content = ""
        self.finished = False
        self._usage: UsageRecord | None = None

    async def _produce(self, queue: asyncio.Queue) -> tuple[int, int]:
        """Drive the provider stream in its own task, feeding deltas to ``queue``.

        ``run_stream`` is entered and exited inside this task; cancelling the
        task is how an early close tears the provider stream down.
        """
        messages = to_model_messages(self.prompt)
        try:
            async with self.service.agent.run_stream(
                self.prompt.question, message_history=messages
            ) as result:
                async for delta in result.stream_text(delta=True):
                    if delta:
                        queue.put_nowait(delta)
                return _usage_tokens(read_usage(result))
        finally:
            queue.put_nowait(_STREAM_END)

    async def tokens(self) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce(queue))
        try:
            while (delta := await queue.get()) is not _STREAM_END:
                self.content += delta
                yield delta
            input_tokens, output_tokens = await producer
        except Exception as e:
            logger.exception(
                "chat_completion_failed",
                error_type=type(e).__name__,
                streamed_chars=len(self.content),
            )
            raise ChatCompletionError(
                f"Completion provider failed: {e}", provider="llm"
            ) from e
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.wait([producer])

        self._usage = self.service.meter(
            self.prompt, self.content, input_tokens, output_tokens, self.embedding_calls
        )
        self.finished = True
        logger.info(
            "chat_completion_finished",
            response_length=len(self.content),
            input_tokens=self._usage.input_tokens,
            output_tokens=self._usage.output_tokens,
            total_cost=str(self._usage.total_cost),
        )

    def usage(self) -> UsageRecord:
        """Usage of the finished run.

        Raises:
            RuntimeError: If the stream has not finished.
        """
        if self._usage is None:
            raise RuntimeError("usage is only available after the stream finishes")
        return self._usage

    def partial_usage(self) -> UsageRecord:
        """Estimated usage for a stream that was cut short."""
        return self.service.meter(self.prompt, self.content, 0, 0, self.embedding_calls)


class CompletionService:
    """Streams grounded answers from the configured language model."""

    def __init__(
        self,
        config: ChatConfig,
        model: Model | str | None = None,
        count_tokens: Callable[[str], int] | None = None,
    ):
        self.config = config
        self.agent = Agent(model=model or get_model(config))
        self.count_tokens = count_tokens or TokenCounter(config.llm_choice)

    def start(self, prompt: BuiltPrompt, embedding_calls: int = 0) -> CompletionRun:
        return CompletionRun(self, prompt, embedding_calls)

    def meter(
        self,
        prompt: BuiltPrompt,
        content: str,
        input_tokens: int,
        output_tokens: int,
        embedding_calls: int,
    ) -> UsageRecord:
        """Build the usage record, estimating counts the provider didn't report."""
        if input_tokens <= 0:
            input_tokens = prompt.estimated_tokens
        if output_tokens <= 0 and content:
            output_tokens = self.count_tokens(content)

        return UsageRecord(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            embedding_calls=embedding_calls,
            total_cost=compute_cost(
                self.config.pricing_model,
                input_tokens,
                output_tokens,
                embedding_calls,
                self.config.embedding_model,
            ),
        )

    async def complete(self, prompt: BuiltPrompt, embedding_calls: int = 0) -> ChatMessage:
        """Run a completion to the end without streaming (CLI and tests)."""
        run = self.start(prompt, embedding_calls)
        async for _ in run.tokens():
            pass
        return ChatMessage(
            session_id="",
            role=MessageRole.ASSISTANT,
            content=run.content,
            usage=run.usage(),
        )
