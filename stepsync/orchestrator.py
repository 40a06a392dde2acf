"""
Orchestrator — turn one user message into one reply, whatever happens.

Per turn:
  1. screen the raw text; a strict-mode block gets a local refusal and
     nothing is sent anywhere
  2. pick a strategy (template / llm / hybrid)
  3. template: canned reply
     llm:      bounded prompt (system + truncated history + sanitized message)
               sent through the circuit breaker with retries
     hybrid:   canned reply plus one short LLM-written sentence
  4. success: sanitized user text and the reply go into conversation memory
  5. any failure, or a rate limit hit: the intent's canned reply, never
     an exception

Only sanitized text is ever handed to the provider or stored in memory.

Retries follow the backend retry policy: transient statuses (404, 408, 429,
5xx) and transport errors/timeouts are retried with exponential backoff;
400/401/403 are not. Every attempt is a separate breaker call, so a provider
that keeps failing trips the breaker and later attempts fail fast.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Mapping, Sequence

from stepsync.agents.context import ConversationContext
from stepsync.agents.strategy import ResponseStrategy, StrategySelector
from stepsync.breaker import CircuitBreaker, CircuitOpenError
from stepsync.config import get_section
from stepsync.intents import Intent
from stepsync.memory import ConversationMemory
from stepsync.models import ConversationMessage
from stepsync.privacy import Blocked, Sanitizer
from stepsync.providers import LLMProvider, LLMResponse, make_provider
from stepsync.ratelimit import RateLimiter
from stepsync.templates import (
    ENHANCEMENT_PLACEHOLDER,
    SAFE_REFUSAL,
    TemplateLibrary,
    splice_text,
    strip_placeholder,
)
from stepsync.tokens import TokenCounter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({404, 408, 429, 500, 501, 502, 503, 504})


class ProviderError(Exception):
    """A provider call that came back unsuccessful."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # No status means the request never got an answer (network, timeout)
        if self.status_code is None:
            return True
        return self.status_code in RETRYABLE_STATUS


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are Step Sync Assistant, a friendly chatbot that helps people fix step tracking problems.

PERSONALITY:
- Conversational and warm, like a helpful friend
- {empathy}
- Action-oriented: always give a clear next step
- Concise: two or three sentences unless detail is needed

{conversation_state}

RULES:
1. Placeholders such as METRIC_VALUE, TIMEFRAME, FITNESS_APP, DEVICE and LOCATION stand for details removed for privacy. Never guess what they were.
2. Say "your steps", never a specific count.
3. If the message is vague or incomplete, offer two or three concrete options instead of saying you don't understand.
4. Don't repeat earlier replies; the user can scroll up.
5. End with a clear next action.

{intent_instruction}

CONVERSATION CONTEXT:
{summary}
{diagnostics}"""

ENHANCEMENT_SYSTEM_PROMPT = """You are filling in one sentence of a support reply about step tracking.
{empathy}
Output ONLY the sentence that replaces {placeholder}. One or two sentences maximum, no preamble."""

INTENT_INSTRUCTIONS = {
    Intent.WHY_PERMISSION_NEEDED: "Explain why the permission is needed. Transparency builds trust.",
    Intent.STEPS_NOT_SYNCING: "Use the diagnostic results, if any, to explain the likely cause and the fix.",
    Intent.WRONG_STEP_COUNT: "Explain that several data sources can conflict and double count.",
    Intent.BATTERY_OPTIMIZATION: "Explain that battery optimization blocks background sync.",
    Intent.MULTIPLE_APPS_CONFLICT: "Help the user choose one primary source (a watch usually beats a phone).",
    Intent.GREETING: "Be warm and offer a quick check of their tracking setup.",
    Intent.THANKS: "Be gracious and offer more help if needed.",
    Intent.NEED_HELP: "Offer a short list of common problems to pick from.",
}
DEFAULT_INTENT_INSTRUCTION = "Be helpful and guide the user to a resolution."


class ResponseGenerator:
    """
    Produces the reply for one turn. Shared by all sessions.

    Mutable state lives in the collaborators (memory, breaker, limiter),
    which do their own locking; the generator itself only keeps outcome
    counters.
    """

    def __init__(
        self,
        provider: LLMProvider,
        sanitizer: Sanitizer | None = None,
        memory: ConversationMemory | None = None,
        token_counter: TokenCounter | None = None,
        breaker: CircuitBreaker | None = None,
        selector: StrategySelector | None = None,
        templates: TemplateLibrary | None = None,
        max_retries: int = 3,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
        timeout: float = 30.0,
        enhancement_max_tokens: int = 120,
        limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.sanitizer = sanitizer or Sanitizer()
        self.token_counter = token_counter or TokenCounter()
        self.memory = memory or ConversationMemory(token_counter=self.token_counter)
        self.breaker = breaker or CircuitBreaker(name=provider.provider_name)
        self.templates = templates or TemplateLibrary()
        self.selector = selector or StrategySelector(templates=self.templates)
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.enhancement_max_tokens = enhancement_max_tokens
        self.limiter = limiter
        self._sleep = sleep
        self.outcomes: Counter[str] = Counter()

    @classmethod
    def from_config(cls, provider: LLMProvider | None = None) -> "ResponseGenerator":
        """Create a ResponseGenerator and all its collaborators from config.yaml."""
        p_cfg = get_section("provider")
        provider = provider or make_provider(p_cfg)
        token_counter = TokenCounter.from_config()
        templates = TemplateLibrary()
        return cls(
            provider=provider,
            sanitizer=Sanitizer.from_config(),
            memory=ConversationMemory.from_config(token_counter=token_counter),
            token_counter=token_counter,
            breaker=CircuitBreaker.from_config(name=provider.provider_name),
            selector=StrategySelector.from_config(templates=templates),
            templates=templates,
            max_retries=int(p_cfg.get("max_retries", 3)),
            backoff_base=float(p_cfg.get("backoff_base", 1.5)),
            backoff_max=float(p_cfg.get("backoff_max", 10.0)),
            timeout=float(p_cfg.get("timeout", 30)),
            enhancement_max_tokens=int(p_cfg.get("enhancement_max_tokens", 120)),
            limiter=RateLimiter.from_config(),
        )

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    async def generate(
        self,
        user_message: str,
        intent: Intent | str,
        context: ConversationContext,
        diagnostic_results: Mapping[str, Any] | None = None,
        confidence: float = 1.0,
        user_id: str | None = None,
    ) -> str:
        """
        Reply to one user message. Never raises.

        user_id keys the per-user rate limit and defaults to the session id.
        """
        t0 = time.monotonic()
        intent = Intent.parse(intent)
        session_id = context.session_id

        screened = self.sanitizer.screen(user_message)
        if isinstance(screened, Blocked):
            self._log_outcome(session_id, intent, None, "blocked", t0, screened.category)
            return SAFE_REFUSAL
        sanitized = screened.sanitized_text

        decision = self.selector.explain(intent, confidence, context.signals())
        strategy = decision.strategy

        if strategy is ResponseStrategy.TEMPLATE:
            reply = self.templates.render(intent)
            self._record(session_id, sanitized, reply, intent, strategy)
            self._log_outcome(session_id, intent, strategy, "template", t0)
            return reply

        if self.limiter is not None:
            refusal = self.limiter.acquire(user_id or session_id)
            if refusal:
                self._log_outcome(session_id, intent, strategy, "rate_limited", t0, refusal)
                return self.templates.fallback(intent, context.is_frustrated)

        try:
            if strategy is ResponseStrategy.HYBRID:
                template = self.templates.hybrid_template(intent) or self.templates.raw(intent)
                enhancement = await self._request_enhancement(template, context)
                reply = self.templates.splice(intent, enhancement)
            else:
                reply = await self._generate_llm(sanitized, intent, context, diagnostic_results)
        except CircuitOpenError as e:
            self._log_outcome(session_id, intent, strategy, "fallback", t0, f"circuit open, retry in {e.retry_after:.0f}s")
            return self.templates.fallback(intent, context.is_frustrated)
        except Exception as e:
            # Only the type: provider errors can echo request content
            self._log_outcome(session_id, intent, strategy, "fallback", t0, type(e).__name__)
            return self.templates.fallback(intent, context.is_frustrated)

        if self.limiter is not None:
            self.limiter.record_cost(self.selector.estimated_cost(strategy))
        self._record(session_id, sanitized, reply, intent, strategy)
        self._log_outcome(session_id, intent, strategy, strategy.value, t0)
        return reply

    async def generate_enhancement(self, template: str, context: ConversationContext) -> str:
        """
        Fill a template's placeholder with one LLM-written sentence.

        On any failure the template comes back with the placeholder removed.
        """
        if ENHANCEMENT_PLACEHOLDER not in template:
            return template
        try:
            enhancement = await self._request_enhancement(template, context)
        except Exception as e:
            logger.warning("Enhancement failed, using bare template: %s", type(e).__name__)
            return strip_placeholder(template)
        return splice_text(template, enhancement)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _generate_llm(
        self,
        sanitized: str,
        intent: Intent,
        context: ConversationContext,
        diagnostic_results: Mapping[str, Any] | None,
    ) -> str:
        system_prompt = self._build_system_prompt(intent, context, diagnostic_results)
        history = self.memory.get_history(context.session_id)

        report = self.token_counter.count_conversation_tokens(system_prompt, sanitized, history)
        if report.exceeds_limit:
            logger.warning(
                "Prompt for session %s over budget (%d tokens), truncating history",
                context.session_id[:16], report.tokens,
            )
            history = self.token_counter.truncate_history(history, system_prompt, sanitized)

        response = await self._call_provider(sanitized, history, system_prompt)
        return response.text.strip()

    async def _request_enhancement(self, template: str, context: ConversationContext) -> str:
        """The sentence the provider wrote for the template's placeholder."""
        system_prompt = ENHANCEMENT_SYSTEM_PROMPT.format(
            empathy=context.empathy_instruction,
            placeholder=ENHANCEMENT_PLACEHOLDER,
        )
        prompt = (
            f"Template: {template}\n\n"
            f"Context:\n{context.build_summary(redact=self._sanitize_hint)}\n\n"
            f"Write the sentence for {ENHANCEMENT_PLACEHOLDER}."
        )
        response = await self._call_provider(
            prompt, (), system_prompt, max_tokens=self.enhancement_max_tokens
        )
        return response.text

    def _build_system_prompt(
        self,
        intent: Intent,
        context: ConversationContext,
        diagnostic_results: Mapping[str, Any] | None,
    ) -> str:
        diagnostics = ""
        if diagnostic_results:
            lines = "\n".join(f"- {k}: {v}" for k, v in diagnostic_results.items())
            diagnostics = f"\nDIAGNOSTIC RESULTS:\n{self._sanitize_hint(lines)}\n"

        if context.is_new_conversation:
            state = "This is a new conversation. Introduce yourself briefly."
        else:
            state = "Continue the ongoing conversation naturally."

        return SYSTEM_PROMPT.format(
            empathy=context.empathy_instruction,
            conversation_state=state,
            intent_instruction=INTENT_INSTRUCTIONS.get(intent, DEFAULT_INTENT_INSTRUCTION),
            summary=context.build_summary(redact=self._sanitize_hint),
            diagnostics=diagnostics,
        )

    def _sanitize_hint(self, text: str) -> str:
        """Non-strict pass for text we generated ourselves."""
        return self.sanitizer.sanitize(text, strict=False).sanitized_text

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _backoff_seconds(self, attempt: int) -> float:
        return min(self.backoff_base ** attempt, self.backoff_max)

    async def _call_provider(
        self,
        prompt: str,
        history: Sequence[ConversationMessage],
        system_prompt: str,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        One logical request: up to max_retries + 1 breaker-tracked attempts.

        Raises CircuitOpenError as soon as the breaker rejects an attempt,
        ProviderError on a permanent error or when attempts run out.
        """

        async def attempt() -> LLMResponse:
            response = await asyncio.wait_for(
                self.provider.generate_response(
                    prompt, history=history, system_prompt=system_prompt, max_tokens=max_tokens
                ),
                timeout=self.timeout,
            )
            if response.timed_out:
                # Same breaker weight as our own wait_for timeout
                raise asyncio.TimeoutError(response.error)
            if not response.success:
                raise ProviderError(response.error or "provider error", response.status_code)
            if not response.text.strip():
                raise ProviderError("empty completion", response.status_code)
            return response

        last_error: ProviderError | None = None
        for n in range(self.max_retries + 1):
            try:
                return await self.breaker.execute(attempt)
            except ProviderError as e:
                if not e.retryable:
                    logger.warning(
                        "Provider '%s' returned non-retryable %s: %s",
                        self.provider.provider_name, e.status_code, e,
                    )
                    raise
                last_error = e
            except asyncio.TimeoutError:
                last_error = ProviderError(f"timed out after {self.timeout}s")

            if n < self.max_retries:
                backoff = self._backoff_seconds(n + 1)
                logger.warning(
                    "Provider '%s' transient failure (%s), retry in %.1fs (%d/%d)",
                    self.provider.provider_name, last_error, backoff, n + 1, self.max_retries,
                )
                await self._sleep(backoff)

        logger.error(
            "Provider '%s' exhausted retries (last: %s)", self.provider.provider_name, last_error
        )
        raise last_error

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(
        self,
        session_id: str,
        sanitized: str,
        reply: str,
        intent: Intent,
        strategy: ResponseStrategy,
    ):
        self.memory.add_user_message(session_id, sanitized, metadata={"intent": intent.value})
        self.memory.add_assistant_message(session_id, reply, metadata={"strategy": strategy.value})

    def _log_outcome(
        self,
        session_id: str,
        intent: Intent,
        strategy: ResponseStrategy | None,
        outcome: str,
        t0: float,
        detail: str = "",
    ):
        self.outcomes[outcome] += 1
        elapsed = (time.monotonic() - t0) * 1000
        level = logging.WARNING if outcome in ("blocked", "fallback", "rate_limited") else logging.INFO
        logger.log(
            level,
            "Turn %s: intent=%s strategy=%s outcome=%s %.0fms%s",
            session_id[:16],
            intent.value,
            strategy.value if strategy else "-",
            outcome,
            elapsed,
            f" ({detail})" if detail else "",
        )

    async def status(self) -> dict:
        return {
            "provider": {
                "name": self.provider.provider_name,
                "model": self.provider.model,
                "available": await self.provider.is_available(),
            },
            "breaker": self.breaker.to_dict(),
            "memory": self.memory.get_stats(),
            "token_cache": self.token_counter.cache_stats(),
            "rate_limit": self.limiter.get_stats() if self.limiter else None,
            "outcomes": dict(self.outcomes),
        }
