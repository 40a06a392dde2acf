"""
Tests for the response generator.
The provider is a MockProvider or a patched httpx client, and backoff sleeps are mocked out.
Run with: pytest tests/test_orchestrator.py
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from stepsync.agents.context import ConversationContext
from stepsync.agents.strategy import ResponseStrategy, StrategySelector
from stepsync.breaker import CircuitBreaker, CircuitState
from stepsync.intents import Intent
from stepsync.memory import ConversationMemory
from stepsync.orchestrator import ProviderError, ResponseGenerator
from stepsync.providers import LLMResponse, MockProvider, OpenAICompatibleProvider
from stepsync.ratelimit import RateLimiter
from stepsync.templates import (
    ENHANCEMENT_PLACEHOLDER,
    FRUSTRATION_PREFIX,
    SAFE_REFUSAL,
    TemplateLibrary,
)
from stepsync.tokens import TokenCounter


def _make(provider=None, **kwargs):
    provider = provider or MockProvider()
    kwargs.setdefault("sleep", AsyncMock())
    kwargs.setdefault("breaker", CircuitBreaker(name="test", failure_threshold=5))
    return ResponseGenerator(provider, **kwargs)


def _context(session_id="s1", *messages):
    ctx = ConversationContext(session_id=session_id)
    for text in messages:
        ctx.add_user_message(text)
    return ctx


def _fail(status):
    return LLMResponse.failure(f"HTTP {status}", status_code=status)


# ---------------------------------------------------------------------------
# ProviderError
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("status,retryable", [
    (None, True), (404, True), (408, True), (429, True), (503, True),
    (400, False), (401, False), (403, False),
])
def test_provider_error_retryable(status, retryable):
    assert ProviderError("x", status).retryable is retryable


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_template_path_skips_provider():
    mock = MockProvider()
    gen = _make(mock)
    ctx = _context("s1", "hi")
    reply = await gen.generate("hi", Intent.GREETING, ctx)
    assert reply == TemplateLibrary().render(Intent.GREETING)
    assert mock.call_count == 0
    history = gen.memory.get_history("s1")
    assert [m.role for m in history] == ["user", "assistant"]
    assert history[1].metadata["strategy"] == "template"
    assert gen.outcomes["template"] == 1


@pytest.mark.asyncio
async def test_llm_path_returns_provider_text():
    mock = MockProvider().queue("  Open the app and pull to refresh.  ")
    gen = _make(mock)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == "Open the app and pull to refresh."
    assert mock.call_count == 1
    assert "CONVERSATION CONTEXT" in mock.calls[0]["system_prompt"]
    assert gen.outcomes["llm"] == 1


@pytest.mark.asyncio
async def test_llm_path_sends_history():
    mock = MockProvider().queue("first", "second")
    gen = _make(mock)
    ctx = _context("s1", "help")
    await gen.generate("help", Intent.NEED_HELP, ctx)
    ctx.add_user_message("more help")
    await gen.generate("more help", Intent.NEED_HELP, ctx)
    sent = mock.calls[1]["history"]
    assert [m.content for m in sent] == ["help", "first"]


@pytest.mark.asyncio
async def test_hybrid_splices_enhancement():
    mock = MockProvider().queue("Background sync looks paused.")
    gen = _make(mock, enhancement_max_tokens=80)
    ctx = _context("s1", "my steps stopped")
    reply = await gen.generate("my steps stopped", Intent.STEPS_NOT_SYNCING, ctx)
    assert reply == (
        "Let's get your steps syncing again. Background sync looks paused. "
        "When did you last see your steps update?"
    )
    call = mock.calls[0]
    assert call["max_tokens"] == 80
    assert call["history"] == []
    assert ENHANCEMENT_PLACEHOLDER in call["prompt"]
    assert gen.outcomes["hybrid"] == 1


@pytest.mark.asyncio
async def test_hybrid_goes_through_template_library():
    templates = TemplateLibrary({
        Intent.STEPS_NOT_SYNCING: f"Custom opener. {ENHANCEMENT_PLACEHOLDER} Custom close.",
    })
    mock = MockProvider().queue("  Sync   is paused. ")
    gen = _make(mock, templates=templates)
    with patch.object(templates, "splice", wraps=templates.splice) as splice:
        ctx = _context("s1", "my steps stopped")
        reply = await gen.generate("my steps stopped", Intent.STEPS_NOT_SYNCING, ctx)
    splice.assert_called_once_with(Intent.STEPS_NOT_SYNCING, "  Sync   is paused. ")
    assert reply == "Custom opener. Sync is paused. Custom close."
    assert f"Template: Custom opener. {ENHANCEMENT_PLACEHOLDER}" in mock.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_hybrid_failure_returns_bare_template():
    mock = MockProvider().queue(_fail(500))
    gen = _make(mock, max_retries=0)
    ctx = _context("s1", "my steps stopped")
    reply = await gen.generate("my steps stopped", Intent.STEPS_NOT_SYNCING, ctx)
    assert reply == TemplateLibrary().render(Intent.STEPS_NOT_SYNCING)
    assert ENHANCEMENT_PLACEHOLDER not in reply
    assert gen.memory.get_history("s1") == ()


# ---------------------------------------------------------------------------
# Privacy
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_strict_phi_is_refused_locally():
    mock = MockProvider()
    gen = _make(mock)
    ctx = _context("s1", "help")
    reply = await gen.generate("email me at bob@example.com", Intent.NEED_HELP, ctx)
    assert reply == SAFE_REFUSAL
    assert mock.call_count == 0
    assert not gen.memory.has_session("s1")
    assert gen.outcomes["blocked"] == 1


@pytest.mark.asyncio
async def test_only_sanitized_text_leaves_the_process():
    mock = MockProvider().queue("Let's check FITNESS_APP.")
    gen = _make(mock)
    msg = "My Strava lost 10,000 steps yesterday"
    ctx = _context("s1", msg)
    await gen.generate(msg, Intent.NEED_HELP, ctx)

    call = mock.calls[0]
    assert call["prompt"] == "My FITNESS_APP lost METRIC_VALUE steps TIMEFRAME"
    assert "strava" not in call["system_prompt"].lower()
    assert "Discussing app: FITNESS_APP" in call["system_prompt"]

    stored = gen.memory.get_history("s1")[0]
    assert stored.content == "My FITNESS_APP lost METRIC_VALUE steps TIMEFRAME"
    assert stored.metadata["intent"] == "need_help"


@pytest.mark.asyncio
async def test_diagnostics_are_sanitized():
    mock = MockProvider().queue("ok")
    gen = _make(mock)
    ctx = _context("s1", "help")
    await gen.generate(
        "help", Intent.NEED_HELP, ctx,
        diagnostic_results={"primary_source": "Google Fit", "steps_today": 4200},
    )
    prompt = mock.calls[0]["system_prompt"]
    assert "DIAGNOSTIC RESULTS" in prompt
    assert "- primary_source: FITNESS_APP" in prompt
    assert "4200" not in prompt


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_breaker_falls_back_without_calling():
    mock = MockProvider()
    gen = _make(mock)
    gen.breaker.force_open()
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert mock.call_count == 0
    assert gen.memory.get_history("s1") == ()
    assert gen.outcomes["fallback"] == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff():
    mock = MockProvider().queue(_fail(503), _fail(429), "finally")
    sleep = AsyncMock()
    gen = _make(mock, sleep=sleep, backoff_base=1.5)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == "finally"
    assert mock.call_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.5, 2.25]

    m = gen.breaker.get_metrics()
    assert m.total_calls == 3
    assert m.failed_calls == 2
    assert m.successful_calls == 1


@pytest.mark.asyncio
async def test_backoff_is_capped():
    gen = _make(backoff_base=2.0, backoff_max=5.0)
    assert gen._backoff_seconds(1) == 2.0
    assert gen._backoff_seconds(2) == 4.0
    assert gen._backoff_seconds(3) == 5.0


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    mock = MockProvider().queue(_fail(401), "never reached")
    sleep = AsyncMock()
    gen = _make(mock, sleep=sleep)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert mock.call_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_retries_exhausted():
    mock = MockProvider().queue(_fail(500), _fail(500), _fail(500), "never reached")
    sleep = AsyncMock()
    gen = _make(mock, sleep=sleep, max_retries=2)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert mock.call_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_retries_trip_the_breaker():
    mock = MockProvider().queue(*[_fail(503)] * 4)
    gen = _make(mock, breaker=CircuitBreaker(name="test", failure_threshold=2), max_retries=3)
    ctx = _context("s1", "help")
    await gen.generate("help", Intent.NEED_HELP, ctx)
    assert mock.call_count == 2
    assert gen.breaker.state is CircuitState.OPEN
    assert gen.breaker.get_metrics().rejected_calls == 1


@pytest.mark.asyncio
async def test_empty_completion_is_a_failure():
    mock = MockProvider().queue("   ")
    gen = _make(mock, max_retries=0)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)


@pytest.mark.asyncio
async def test_slow_provider_times_out():
    mock = MockProvider(delay=0.5)
    gen = _make(mock, timeout=0.05, max_retries=0)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert gen.breaker.get_metrics().failed_calls == 1


@pytest.mark.asyncio
async def test_provider_timeouts_use_timeout_weight():
    timeout = LLMResponse.failure("Timeout after 1s", timed_out=True)
    mock = MockProvider().queue(timeout, timeout)
    breaker = CircuitBreaker(name="test", failure_threshold=2, timeout_failure_weight=0.5)
    gen = _make(mock, breaker=breaker, max_retries=1)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert mock.call_count == 2
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 1.0


@pytest.mark.asyncio
async def test_http_read_timeouts_use_timeout_weight():
    provider = OpenAICompatibleProvider(name="groq", url="http://fake", timeout=1)
    breaker = CircuitBreaker(name="groq", failure_threshold=2, timeout_failure_weight=0.5)
    gen = _make(provider, breaker=breaker, max_retries=1)

    with patch("stepsync.providers.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client
        mock_client.post.side_effect = httpx.ReadTimeout("slow")

        reply = await gen.generate("help", Intent.NEED_HELP, _context("s1", "help"))

    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert mock_client.post.await_count == 2
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 1.0


@pytest.mark.asyncio
async def test_rate_limit_falls_back_without_calling():
    mock = MockProvider().queue("first", "never reached")
    limiter = RateLimiter(max_calls_per_user_per_hour=1)
    gen = _make(mock, limiter=limiter)
    ctx = _context("s1", "help")
    assert await gen.generate("help", Intent.NEED_HELP, ctx) == "first"

    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)
    assert mock.call_count == 1
    assert gen.outcomes["rate_limited"] == 1
    assert len(gen.memory.get_history("s1")) == 2


@pytest.mark.asyncio
async def test_rate_limit_skips_template_turns():
    limiter = RateLimiter(max_calls_per_user_per_hour=1)
    gen = _make(MockProvider(), limiter=limiter)
    for _ in range(3):
        await gen.generate("hi", Intent.GREETING, _context("s1", "hi"))
    assert limiter.get_stats()["calls_in_last_hour"] == 0
    assert gen.outcomes["template"] == 3


@pytest.mark.asyncio
async def test_rate_limit_is_keyed_by_user():
    mock = MockProvider().queue("a", "b")
    limiter = RateLimiter(max_calls_per_user_per_hour=1)
    gen = _make(mock, limiter=limiter)
    await gen.generate("help", Intent.NEED_HELP, _context("s1", "help"), user_id="u1")
    await gen.generate("help", Intent.NEED_HELP, _context("s2", "help"), user_id="u1")
    assert mock.call_count == 1
    assert limiter.get_user_stats("u1")["calls_in_last_hour"] == 1


@pytest.mark.asyncio
async def test_llm_turn_cost_is_recorded():
    limiter = RateLimiter()
    gen = _make(MockProvider().queue("ok"), limiter=limiter)
    await gen.generate("help", Intent.NEED_HELP, _context("s1", "help"))
    stats = limiter.get_stats()
    assert stats["total_cost_usd"] == StrategySelector.estimated_cost(ResponseStrategy.LLM)
    status = await gen.status()
    assert status["rate_limit"]["calls_in_last_hour"] == 1


@pytest.mark.asyncio
async def test_unexpected_exception_never_escapes():
    mock = MockProvider().queue(RuntimeError("boom"))
    gen = _make(mock, max_retries=0)
    ctx = _context("s1", "help")
    reply = await gen.generate("help", Intent.NEED_HELP, ctx)
    assert reply == TemplateLibrary().render(Intent.NEED_HELP)


@pytest.mark.asyncio
async def test_frustrated_fallback_apologizes():
    mock = MockProvider().queue(_fail(500))
    gen = _make(mock, max_retries=0)
    ctx = _context("s1", "this is useless!!")
    reply = await gen.generate("this is useless!!", Intent.GREETING, ctx)
    assert reply.startswith(FRUSTRATION_PREFIX)
    assert mock.call_count == 1


# ---------------------------------------------------------------------------
# Token budget
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_history_is_truncated_to_budget():
    mock = MockProvider().queue("ok")
    gen = _make(mock, memory=ConversationMemory(max_messages=50))
    for i in range(10):
        gen.memory.add_user_message("s1", f"message {i} " + "word " * 18)

    ctx = _context("s1", "help")
    system_prompt = gen._build_system_prompt(Intent.NEED_HELP, ctx, None)
    counter = TokenCounter(model="generic")
    base = counter.count_conversation_tokens(system_prompt, "help").tokens
    # Each history entry costs 26 tokens + overhead, so two of them fit
    gen.token_counter = TokenCounter(model="generic", max_context_tokens=base + 70, safety_margin=0)

    await gen.generate("help", Intent.NEED_HELP, ctx)
    sent = mock.calls[0]["history"]
    history = gen.memory.get_history("s1")
    assert [m.content for m in sent] == [m.content for m in history[8:10]]


# ---------------------------------------------------------------------------
# Enhancement helper and status
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_enhancement_without_placeholder():
    mock = MockProvider()
    gen = _make(mock)
    assert await gen.generate_enhancement("Plain text.", _context()) == "Plain text."
    assert mock.call_count == 0


@pytest.mark.asyncio
async def test_generate_enhancement_failure_strips_placeholder():
    mock = MockProvider().queue(_fail(400))
    gen = _make(mock)
    text = await gen.generate_enhancement(f"Start. {ENHANCEMENT_PLACEHOLDER} End.", _context())
    assert text == "Start. End."


@pytest.mark.asyncio
async def test_generate_enhancement_splices_reply():
    mock = MockProvider().queue("  Middle   bit. ")
    gen = _make(mock)
    text = await gen.generate_enhancement(f"Start. {ENHANCEMENT_PLACEHOLDER} End.", _context())
    assert text == "Start. Middle bit. End."


@pytest.mark.asyncio
async def test_status():
    gen = _make(MockProvider(name="mock", model="m1"))
    await gen.generate("hi", Intent.GREETING, _context("s1", "hi"))
    status = await gen.status()
    assert status["provider"] == {"name": "mock", "model": "m1", "available": True}
    assert status["breaker"]["state"] == "closed"
    assert status["memory"]["active_sessions"] == 1
    assert status["outcomes"] == {"template": 1}


def test_from_config(monkeypatch):
    from stepsync import config as cfg_mod
    monkeypatch.setattr(cfg_mod, "_config", {
        "provider": {"kind": "mock", "max_retries": 1, "timeout": 5, "enhancement_max_tokens": 60},
        "breaker": {"failure_threshold": 2},
        "tokens": {"model": "generic"},
    })
    gen = ResponseGenerator.from_config()
    assert isinstance(gen.provider, MockProvider)
    assert gen.max_retries == 1
    assert gen.timeout == 5.0
    assert gen.enhancement_max_tokens == 60
    assert gen.breaker.failure_threshold == 2
    assert gen.token_counter.model == "generic"
    assert gen.limiter is None
