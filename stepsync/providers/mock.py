"""
Mock provider — deterministic, offline, scriptable.

Used by the test suite and for running the service without an API key
(provider.kind: mock). Script it with queue():

    mock = MockProvider()
    mock.queue("first reply", LLMResponse.failure("HTTP 503", status_code=503))

Queued items are consumed one per call; a string becomes a successful reply,
an LLMResponse is returned as-is, and an exception instance is raised. Once
the queue is empty the provider answers from a small keyword table.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import AsyncIterator, Sequence

from stepsync.models import ConversationMessage
from stepsync.providers.base import LLMProvider, LLMResponse, StreamChunk, TokenUsage

logger = logging.getLogger(__name__)

_KEYWORD_REPLIES = [
    (("battery", "background"),
     "Battery optimization can pause background syncing. Let's adjust that setting together."),
    (("permission", "access"),
     "It looks like a permission is missing. I can walk you through granting it."),
    (("install", "health connect"),
     "You may need Health Connect installed. I can guide you through it."),
    (("sync", "not updating"),
     "Syncing issues have a few common causes. Let's check them one by one."),
    (("multiple", "apps", "sources"),
     "Several apps tracking steps can conflict. Picking one primary source usually fixes it."),
]

_DEFAULT_REPLY = (
    "I'm here to help with step tracking. Could you tell me a bit more about "
    "what you're seeing?"
)


class MockProvider(LLMProvider):
    def __init__(
        self,
        name: str = "mock",
        model: str = "mock-model",
        delay: float = 0.0,
        available: bool = True,
    ):
        super().__init__(name, model)
        self.delay = delay
        self.available = available
        self.calls: list[dict] = []
        self._script: list = []

    def queue(self, *items) -> "MockProvider":
        self._script.extend(items)
        return self

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _reply_for(self, prompt: str) -> str:
        lower = prompt.lower()
        for keywords, reply in _KEYWORD_REPLIES:
            if any(k in lower for k in keywords):
                return reply
        return _DEFAULT_REPLY

    async def generate_response(
        self,
        prompt: str,
        history: Sequence[ConversationMessage] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.calls.append({
            "prompt": prompt,
            "history": list(history or ()),
            "system_prompt": system_prompt,
            "max_tokens": max_tokens,
        })
        if self.delay:
            await asyncio.sleep(self.delay)

        item = self._script.pop(0) if self._script else self._reply_for(prompt)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            return item

        text = str(item)
        return LLMResponse(
            text=text,
            usage=TokenUsage(
                prompt_tokens=math.ceil(len(prompt) / 4),
                completion_tokens=math.ceil(len(text) / 4),
            ),
            latency_ms=self.delay * 1000,
            status_code=200,
            provider=self.name,
            model=self.model,
            finish_reason="stop",
        )

    async def generate_streaming_response(
        self,
        prompt: str,
        history: Sequence[ConversationMessage] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        try:
            response = await self.generate_response(prompt, history, system_prompt, max_tokens)
        except Exception as e:
            yield StreamChunk.failed(type(e).__name__)
            return
        if not response.success:
            yield StreamChunk.failed(response.error)
            return
        for word in response.text.split(" "):
            yield StreamChunk.text(word + " ")
        yield StreamChunk.finished(response.finish_reason, response.usage)

    async def is_available(self) -> bool:
        return self.available
