"""
Base LLM provider abstraction.
All providers implement this interface so the orchestrator can treat them uniformly.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

from stepsync.models import ConversationMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_api(cls, usage: dict | None) -> "TokenUsage":
        usage = usage or {}
        return cls(
            prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
            completion_tokens=int(usage.get("completion_tokens", 0) or 0),
        )


@dataclass
class LLMResponse:
    """Standardized result from any provider. Failures are values, not exceptions."""
    text: str = ""
    success: bool = True
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: float = 0.0
    error: str = ""
    status_code: int | None = None   # None when the request never got an HTTP answer
    provider: str = ""
    model: str = ""
    finish_reason: str | None = None
    timed_out: bool = False          # the request ran out of time before any answer

    @classmethod
    def failure(
        cls, error: str, status_code: int | None = None, **kwargs
    ) -> "LLMResponse":
        return cls(success=False, error=error, status_code=status_code, **kwargs)


@dataclass(frozen=True)
class StreamChunk:
    """One piece of a streamed reply. The last chunk has done=True."""
    content: str = ""
    done: bool = False
    error: str = ""
    finish_reason: str | None = None
    usage: TokenUsage | None = None

    @classmethod
    def text(cls, content: str) -> "StreamChunk":
        return cls(content=content)

    @classmethod
    def finished(
        cls, finish_reason: str | None = "stop", usage: TokenUsage | None = None
    ) -> "StreamChunk":
        return cls(done=True, finish_reason=finish_reason, usage=usage)

    @classmethod
    def failed(cls, error: str) -> "StreamChunk":
        return cls(done=True, error=error, finish_reason="error")

    @property
    def is_error(self) -> bool:
        return bool(self.error)


def build_messages(
    prompt: str,
    history: Sequence[ConversationMessage] | None = None,
    system_prompt: str | None = None,
) -> list[dict]:
    """OpenAI-style message list: system, then history, then the prompt."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.extend(m.to_chat() for m in history or ())
    messages.append({"role": "user", "content": prompt})
    return messages


class LLMProvider(abc.ABC):
    """
    Abstract base for chat-completion providers.
    Each provider knows how to answer a prompt, stream an answer, and report health.
    """

    def __init__(self, name: str, model: str = ""):
        self.name = name
        self.model = model

    @property
    def provider_name(self) -> str:
        return self.name

    @abc.abstractmethod
    async def generate_response(
        self,
        prompt: str,
        history: Sequence[ConversationMessage] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Complete one chat turn.
        Never raises for transport or HTTP errors; returns success=False instead.
        """
        ...

    @abc.abstractmethod
    def generate_streaming_response(
        self,
        prompt: str,
        history: Sequence[ConversationMessage] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream one chat turn.
        Always ends with a done chunk; errors arrive as StreamChunk.failed().
        """
        ...

    @abc.abstractmethod
    async def is_available(self) -> bool:
        """Check if this provider is reachable and responsive."""
        ...

    async def close(self):
        """Release pooled resources, if any."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} model={self.model!r}>"
