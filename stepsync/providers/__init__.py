"""
LLM providers for StepSync.
OpenAI-compatible endpoints (Groq, OpenAI, Ollama, vLLM) plus an offline mock.
"""

from __future__ import annotations

import logging

from stepsync.config import get_section
from stepsync.providers.base import LLMProvider, LLMResponse, StreamChunk, TokenUsage
from stepsync.providers.mock import MockProvider
from stepsync.providers.openai_compat import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

PROVIDERS = {
    "openai_compat": OpenAICompatibleProvider,
    "mock": MockProvider,
}

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "MockProvider",
    "OpenAICompatibleProvider",
    "StreamChunk",
    "TokenUsage",
    "make_provider",
]


def make_provider(cfg: dict | None = None) -> LLMProvider:
    """Instantiate the provider described by the `provider` config section."""
    cfg = get_section("provider") if cfg is None else cfg
    kind = cfg.get("kind", "openai_compat")
    cls = PROVIDERS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown provider kind '{kind}' (expected one of {sorted(PROVIDERS)})")

    name = cfg.get("name", kind)
    if cls is MockProvider:
        provider = MockProvider(name=name, model=cfg.get("model", "mock-model"))
    else:
        url = cfg.get("url", "")
        if not url:
            raise ValueError(f"Provider '{name}' has no url")
        if not cfg.get("api_key"):
            logger.warning("Provider '%s' has no api_key configured", name)
        provider = cls(
            name=name,
            url=url,
            api_key=cfg.get("api_key", ""),
            model=cfg.get("model", "llama-3.3-70b-versatile"),
            temperature=float(cfg.get("temperature", 0.7)),
            max_tokens=int(cfg.get("max_tokens", 1024)),
            timeout=float(cfg.get("timeout", 30)),
        )
    logger.info("LLM provider: %r", provider)
    return provider
