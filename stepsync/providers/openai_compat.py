"""
OpenAI-compatible chat-completions provider.

Works with any endpoint that implements /v1/chat/completions and /v1/models:
- Groq (default)
- OpenAI
- Ollama
- vLLM / llama.cpp server
"""

from __future__ import annotations

import json
import logging
import time
from typing import AsyncIterator, Sequence

import httpx

from stepsync.models import ConversationMessage
from stepsync.providers.base import (
    LLMProvider,
    LLMResponse,
    StreamChunk,
    TokenUsage,
    build_messages,
)

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(LLMProvider):
    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        model: str = "llama-3.3-70b-versatile",
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float = 30,
    ):
        super().__init__(name, model)
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _body(self, messages: list[dict], max_tokens: int | None, stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }

    async def generate_response(
        self,
        prompt: str,
        history: Sequence[ConversationMessage] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        body = self._body(build_messages(prompt, history, system_prompt), max_tokens, False)
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    # Body is logged truncated, never returned to the user
                    logger.warning(
                        "Provider '%s' returned HTTP %d: %s",
                        self.name, resp.status_code, resp.text[:200],
                    )
                    return LLMResponse.failure(
                        f"HTTP {resp.status_code}",
                        status_code=resp.status_code,
                        latency_ms=latency,
                        provider=self.name,
                        model=self.model,
                    )

                data = resp.json()
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Provider '%s' timed out after %.0fms", self.name, latency)
            return LLMResponse.failure(
                f"Timeout after {self.timeout}s",
                timed_out=True,
                latency_ms=latency,
                provider=self.name,
                model=self.model,
            )
        except (httpx.HTTPError, ValueError) as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Provider '%s' failed: %s", self.name, e)
            return LLMResponse.failure(
                type(e).__name__,
                latency_ms=latency,
                provider=self.name,
                model=self.model,
            )

        choices = data.get("choices") or []
        if not choices:
            return LLMResponse.failure(
                "Response had no choices",
                status_code=resp.status_code,
                latency_ms=latency,
                provider=self.name,
                model=self.model,
            )
        choice = choices[0]
        return LLMResponse(
            text=(choice.get("message") or {}).get("content") or "",
            usage=TokenUsage.from_api(data.get("usage")),
            latency_ms=latency,
            status_code=resp.status_code,
            provider=self.name,
            model=data.get("model", self.model),
            finish_reason=choice.get("finish_reason"),
        )

    async def generate_streaming_response(
        self,
        prompt: str,
        history: Sequence[ConversationMessage] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield text chunks parsed from the SSE stream, then one done chunk."""
        body = self._body(build_messages(prompt, history, system_prompt), max_tokens, True)
        finish_reason = None
        usage = None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        logger.warning(
                            "Provider '%s' stream returned HTTP %d", self.name, resp.status_code
                        )
                        yield StreamChunk.failed(f"HTTP {resp.status_code}")
                        return
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        payload = line[5:].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            event = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.debug("Skipping malformed SSE line from '%s'", self.name)
                            continue
                        if event.get("usage"):
                            usage = TokenUsage.from_api(event["usage"])
                        for choice in event.get("choices") or []:
                            delta = (choice.get("delta") or {}).get("content")
                            if delta:
                                yield StreamChunk.text(delta)
                            if choice.get("finish_reason"):
                                finish_reason = choice["finish_reason"]
        except httpx.TimeoutException:
            logger.warning("Provider '%s' stream timed out", self.name)
            yield StreamChunk.failed(f"Timeout after {self.timeout}s")
            return
        except httpx.HTTPError as e:
            logger.warning("Provider '%s' stream failed: %s", self.name, e)
            yield StreamChunk.failed(type(e).__name__)
            return

        yield StreamChunk.finished(finish_reason or "stop", usage)

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
