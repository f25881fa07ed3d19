"""Language-model collaborator.

The orchestration core only ever needs one operation from the model:
``complete(conversation) -> Completion``. This module provides the default
implementation on top of an OpenAI-compatible endpoint, plus the small
value types shared by every caller.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from openai import AsyncOpenAI

from falalo import config

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Prompt/completion token counters for one call or a whole run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __iadd__(self, other: "TokenUsage") -> "TokenUsage":
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        return self


@dataclass
class Completion:
    """Text returned by the model and the tokens it cost."""

    text: str
    usage: TokenUsage


# Injected everywhere the core talks to the model so tests can script replies.
Complete = Callable[[list[BaseMessage], str], Awaitable[Completion]]


def _get_openai_client() -> AsyncOpenAI:
    """Create an AsyncOpenAI client from config."""
    return AsyncOpenAI(
        base_url=config.LLM_BASE_URL,
        api_key=config.LLM_API_KEY or "not-set",
    )


def to_openai_messages(messages: list[BaseMessage]) -> list[dict]:
    """Convert LangChain messages to OpenAI chat format."""
    openai_messages = []
    for msg in messages:
        if isinstance(msg, SystemMessage):
            role = "system"
        elif isinstance(msg, HumanMessage):
            role = "user"
        elif isinstance(msg, AIMessage):
            role = "assistant"
        else:
            role = "user"
        openai_messages.append({"role": role, "content": str(msg.content)})
    return openai_messages


async def complete(
    messages: list[BaseMessage],
    model_type: str = "reasoning",
) -> Completion:
    """Send a conversation to the model and return its full reply.

    The request is streamed; ``reasoning_content`` deltas from reasoning
    models are dropped and only the answer text is returned. Usage is read
    from the final chunk (``stream_options.include_usage``).

    Errors from the client propagate unchanged.
    """
    client = _get_openai_client()
    model_name = config.get_model_name(model_type) or "default"

    logger.debug("Model request (%s, %d messages)", model_name, len(messages))
    stream = await client.chat.completions.create(
        model=model_name,
        messages=to_openai_messages(messages),
        stream=True,
        stream_options={"include_usage": True},
    )

    content_parts: list[str] = []
    usage = TokenUsage()

    async for chunk in stream:
        chunk_usage = getattr(chunk, "usage", None)
        if chunk_usage is not None:
            usage = TokenUsage(
                prompt_tokens=getattr(chunk_usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(chunk_usage, "completion_tokens", 0) or 0,
            )
        if not chunk.choices:
            continue
        content = chunk.choices[0].delta.content
        if content:
            content_parts.append(content)

    text = "".join(content_parts)
    logger.debug(
        "Model response (%d chars, %d prompt / %d completion tokens)",
        len(text),
        usage.prompt_tokens,
        usage.completion_tokens,
    )
    return Completion(text=text, usage=usage)


def truncate(text: str, max_len: int = 500) -> str:
    """Truncate text for display."""
    text = text.strip()
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


class UsageTracker:
    """Wraps a ``Complete`` callable and sums the token usage of every call."""

    def __init__(self, complete: Complete):
        self._complete = complete
        self.usage = TokenUsage()
        self.calls = 0

    async def __call__(
        self, messages: list[BaseMessage], model_type: str = "reasoning"
    ) -> Completion:
        completion = await self._complete(messages, model_type)
        self.usage += completion.usage
        self.calls += 1
        return completion
