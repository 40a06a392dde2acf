"""
Response strategy — decide per turn between a canned template, a full LLM
reply, or a template with one LLM-written sentence spliced in.

Selection is pure: same inputs, same strategy, no I/O. Rules are checked in
order and the first match wins:

  1. open-ended intent (need_help, unclear)      → llm
  2. classifier confidence below the threshold   → llm
  3. frustrated user                             → llm (empathy)
  4. multi-turn chat that refers back to earlier → llm
  5. intent has a hybrid template                → hybrid
  6. anything else                               → template
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from stepsync.agents.context import ConversationSignals
from stepsync.config import get_section
from stepsync.intents import OPEN_ENDED_INTENTS, Intent
from stepsync.templates import TemplateLibrary

logger = logging.getLogger(__name__)

MULTI_TURN_THRESHOLD = 3


class ResponseStrategy(str, Enum):
    TEMPLATE = "template"
    LLM = "llm"
    HYBRID = "hybrid"


# Rough USD per turn, for analytics only
ESTIMATED_COSTS = {
    ResponseStrategy.TEMPLATE: 0.0,
    ResponseStrategy.LLM: 0.0005,
    ResponseStrategy.HYBRID: 0.0002,
}


@dataclass
class StrategyDecision:
    strategy: ResponseStrategy
    reasons: list[str] = field(default_factory=list)
    estimated_cost: float = 0.0

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy.value,
            "reasons": list(self.reasons),
            "estimated_cost": self.estimated_cost,
        }


class StrategySelector:
    def __init__(
        self,
        template_confidence_threshold: float = 0.85,
        templates: TemplateLibrary | None = None,
    ):
        if not 0.0 <= template_confidence_threshold <= 1.0:
            raise ValueError("template_confidence_threshold must be within [0, 1]")
        self.template_confidence_threshold = template_confidence_threshold
        self.templates = templates or TemplateLibrary()

    @classmethod
    def from_config(cls, templates: TemplateLibrary | None = None) -> "StrategySelector":
        """Create a StrategySelector from config.yaml settings."""
        s_cfg = get_section("strategy")
        return cls(
            template_confidence_threshold=float(
                s_cfg.get("template_confidence_threshold", 0.85)
            ),
            templates=templates,
        )

    def select(
        self,
        intent: Intent,
        confidence: float = 1.0,
        signals: ConversationSignals | None = None,
    ) -> ResponseStrategy:
        return self._decide(intent, confidence, signals)[0]

    def explain(
        self,
        intent: Intent,
        confidence: float = 1.0,
        signals: ConversationSignals | None = None,
    ) -> StrategyDecision:
        """Same decision as select(), with the rule that produced it."""
        strategy, reason = self._decide(intent, confidence, signals)
        return StrategyDecision(
            strategy=strategy,
            reasons=[reason],
            estimated_cost=self.estimated_cost(strategy),
        )

    def _decide(
        self,
        intent: Intent,
        confidence: float,
        signals: ConversationSignals | None,
    ) -> tuple[ResponseStrategy, str]:
        intent = Intent.parse(intent)
        signals = signals or ConversationSignals()

        if intent in OPEN_ENDED_INTENTS:
            decision = ResponseStrategy.LLM, f"open-ended intent '{intent.value}'"
        elif confidence < self.template_confidence_threshold:
            decision = ResponseStrategy.LLM, (
                f"low confidence {confidence:.2f} < {self.template_confidence_threshold:.2f}"
            )
        elif signals.is_frustrated:
            decision = ResponseStrategy.LLM, f"user is {signals.sentiment.value}"
        elif signals.turn_count > MULTI_TURN_THRESHOLD and signals.references_previous:
            decision = ResponseStrategy.LLM, (
                f"turn {signals.turn_count} refers to earlier messages"
            )
        elif self.templates.has_enhancement(intent):
            decision = ResponseStrategy.HYBRID, f"'{intent.value}' has a hybrid template"
        else:
            decision = ResponseStrategy.TEMPLATE, f"'{intent.value}' has a canned reply"

        logger.debug("Strategy for %s: %s (%s)", intent.value, decision[0].value, decision[1])
        return decision

    @staticmethod
    def estimated_cost(strategy: ResponseStrategy) -> float:
        return ESTIMATED_COSTS[ResponseStrategy(strategy)]
