"""
Conversation context — per-session dialogue state for the strategy selector.

Tracks the last few messages, the user's current sentiment, how many turns
have happened, and what the user last talked about (app, device, problem).
None of this leaves the process directly: the summary is passed through the
sanitizer before it is embedded in a prompt.

Callers record the user's turn with add_user_message() before asking the
orchestrator for a reply, so signals() reflects the message being answered.
An optional redact hook rewrites user text before it is stored; sentiment and
mentions are still read from the original.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from stepsync.models import ConversationMessage, utcnow

MAX_CONTEXT_MESSAGES = 10


class SentimentLevel(str, Enum):
    VERY_FRUSTRATED = "very_frustrated"
    FRUSTRATED = "frustrated"
    NEUTRAL = "neutral"
    SATISFIED = "satisfied"
    HAPPY = "happy"


_SENTIMENT_PATTERNS: list[tuple[SentimentLevel, list[re.Pattern]]] = [
    (SentimentLevel.VERY_FRUSTRATED, [
        re.compile(r"!!+"),
        re.compile(r"so (annoying|frustrating|angry)"),
        re.compile(r"(hate|terrible|awful|useless)"),
        re.compile(r"\b(wtf|wth|omg)\b"),
        re.compile(r"(still|again|always) (not|broken|failing)"),
    ]),
    (SentimentLevel.FRUSTRATED, [
        re.compile(r"(not working|broken|failing|issue)"),
        re.compile(r"(annoying|frustrating)"),
        re.compile(r"(wrong|incorrect|missing)"),
        re.compile(r"why (isn'?t|doesn'?t|won'?t)"),
    ]),
    (SentimentLevel.HAPPY, [
        re.compile(r"(perfect|awesome|amazing|excellent)"),
        re.compile(r"(love|great|fantastic)"),
        re.compile(r"(thank you|thanks).*(!|much)"),
        re.compile("\U0001F389|\U0001F60A|❤|\U0001F44D"),
    ]),
    (SentimentLevel.SATISFIED, [
        re.compile(r"(works|working|fixed|resolved)"),
        re.compile(r"(got it|understand|makes sense)"),
        re.compile(r"(thank|thanks)"),
        re.compile(r"\bgood\b"),
        re.compile("✓|✅"),
    ]),
]

_REFERENCE_PATTERNS = [
    re.compile(r"\b(it|that|this|those|these)\b"),
    re.compile(r"\b(the same|like before|still|again)\b"),
    re.compile(r"\b(you said|you mentioned|earlier)\b"),
]

_APPS = (
    "google fit", "samsung health", "fitbit", "strava",
    "apple health", "health connect", "myfitnesspal", "my fitness pal",
)
_DEVICES = ("iphone", "android", "galaxy", "pixel", "watch", "fitbit")

# Prompt wording per sentiment
SENTIMENT_LABELS = {
    SentimentLevel.VERY_FRUSTRATED: "very frustrated (be extra empathetic and fast)",
    SentimentLevel.FRUSTRATED: "frustrated (acknowledge frustration first)",
    SentimentLevel.NEUTRAL: "neutral (be helpful and friendly)",
    SentimentLevel.SATISFIED: "satisfied (encourage and guide)",
    SentimentLevel.HAPPY: "happy (celebrate success with them)",
}

EMPATHY_INSTRUCTIONS = {
    SentimentLevel.VERY_FRUSTRATED: (
        "Be very empathetic and apologetic. Acknowledge their feelings first, "
        "then solve it fast."
    ),
    SentimentLevel.FRUSTRATED: "Be empathetic. Acknowledge the frustration, then give the fix.",
    SentimentLevel.NEUTRAL: "Be helpful and friendly.",
    SentimentLevel.SATISFIED: "Be encouraging and build on their progress.",
    SentimentLevel.HAPPY: "Be enthusiastic and celebrate the success with them.",
}


def detect_sentiment(text: str) -> SentimentLevel:
    """Classify a single message. Earlier levels win on overlap."""
    lower = text.lower()
    for level, patterns in _SENTIMENT_PATTERNS:
        if any(p.search(lower) for p in patterns):
            return level
    return SentimentLevel.NEUTRAL


def references_previous(text: str) -> bool:
    """True if the message leans on something said earlier ("it", "again")."""
    lower = text.lower()
    return any(p.search(lower) for p in _REFERENCE_PATTERNS)


@dataclass(frozen=True)
class ConversationSignals:
    """Everything the strategy selector needs to know about the dialogue."""
    sentiment: SentimentLevel = SentimentLevel.NEUTRAL
    turn_count: int = 0
    references_previous: bool = False

    @property
    def is_frustrated(self) -> bool:
        return self.sentiment in (SentimentLevel.FRUSTRATED, SentimentLevel.VERY_FRUSTRATED)


class ConversationContext:
    def __init__(self, session_id: str = "default", redact: Callable[[str], str] | None = None):
        self.session_id = session_id
        self._redact = redact
        self._reset()

    def _reset(self):
        self._messages: deque[ConversationMessage] = deque(maxlen=MAX_CONTEXT_MESSAGES)
        self._sentiment = SentimentLevel.NEUTRAL
        self.turn_count = 0
        self.started_at: datetime | None = None
        self.last_mentioned_app: str | None = None
        self.last_mentioned_device: str | None = None
        self.last_mentioned_problem: str | None = None
        self.last_mentioned_action: str | None = None
        self.last_activity: datetime = utcnow()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def add_user_message(self, text: str, intent: str | None = None):
        sentiment = detect_sentiment(text)
        metadata = {"sentiment": sentiment.value}
        if intent is not None:
            metadata["intent"] = str(getattr(intent, "value", intent))
        # Signals come from the raw text; only the redacted copy is kept
        content = self._redact(text) if self._redact else text
        self._messages.append(
            ConversationMessage(role="user", content=content, metadata=metadata)
        )
        self._sentiment = sentiment
        self.turn_count += 1
        self.last_activity = utcnow()
        if self.started_at is None:
            self.started_at = self.last_activity
        self._update_references(text)

    def add_bot_message(self, text: str):
        self._messages.append(ConversationMessage(role="assistant", content=text))
        self.last_activity = utcnow()

    def _update_references(self, text: str):
        lower = text.lower()
        # Last match in list order wins, as with repeated mentions
        for app in _APPS:
            if app in lower:
                self.last_mentioned_app = app
        for device in _DEVICES:
            if device in lower:
                self.last_mentioned_device = device

        if "sync" in lower:
            self.last_mentioned_problem = "syncing"
        elif "permission" in lower:
            self.last_mentioned_problem = "permissions"
        elif "count" in lower or "wrong" in lower:
            self.last_mentioned_problem = "step count accuracy"

        if "grant" in lower or "allow" in lower:
            self.last_mentioned_action = "grant permission"
        elif "check" in lower or "verify" in lower:
            self.last_mentioned_action = "check status"

    def clear(self):
        """Start over as a fresh conversation."""
        self._reset()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_recent_messages(self, count: int | None = None) -> list[ConversationMessage]:
        messages = list(self._messages)
        if count is None:
            return messages
        return messages[-count:] if count > 0 else []

    @property
    def user_messages(self) -> list[ConversationMessage]:
        return [m for m in self._messages if m.is_user]

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def sentiment(self) -> SentimentLevel:
        return self._sentiment

    @property
    def is_frustrated(self) -> bool:
        return self._sentiment in (SentimentLevel.FRUSTRATED, SentimentLevel.VERY_FRUSTRATED)

    @property
    def is_happy(self) -> bool:
        return self._sentiment in (SentimentLevel.SATISFIED, SentimentLevel.HAPPY)

    @property
    def sentiment_score(self) -> float:
        """0.0 = very frustrated … 1.0 = happy."""
        order = list(SentimentLevel)
        return order.index(self._sentiment) / (len(order) - 1)

    @property
    def is_new_conversation(self) -> bool:
        return self.turn_count <= 2

    @property
    def is_long_conversation(self) -> bool:
        return self.turn_count > 15

    @property
    def references_previous(self) -> bool:
        users = self.user_messages
        return bool(users) and references_previous(users[-1].content)

    @property
    def empathy_instruction(self) -> str:
        return EMPATHY_INSTRUCTIONS[self._sentiment]

    def signals(self) -> ConversationSignals:
        return ConversationSignals(
            sentiment=self._sentiment,
            turn_count=self.turn_count,
            references_previous=self.references_previous,
        )

    def build_summary(self, redact: Callable[[str], str] | None = None) -> str:
        """
        Plain-text summary embedded in LLM system prompts.

        redact, if given, is applied to the user-derived mentions only.
        """
        redact = redact or (lambda s: s)
        lines = [
            f"User sentiment: {SENTIMENT_LABELS[self._sentiment]}",
            f"Messages exchanged: {self.turn_count}",
        ]
        if self.last_mentioned_app:
            lines.append(f"Discussing app: {redact(self.last_mentioned_app)}")
        if self.last_mentioned_device:
            lines.append(f"User device: {redact(self.last_mentioned_device)}")
        if self.last_mentioned_problem:
            lines.append(f"Current issue: {self.last_mentioned_problem}")
        return "\n".join(lines)
