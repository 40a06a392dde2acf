"""
PHI sanitizer — scrub outbound text before it reaches an LLM provider.

Five independent detectors rewrite sensitive substrings to generic
placeholders:

  timeframe  → TIMEFRAME      weekdays, yesterday/today, "last week",
                              month names, 12/05/2024, 2024-05-12, 7:30 pm
  app        → FITNESS_APP    Google Fit, Samsung Health, Strava, ...
  device     → DEVICE         iPhone 15 Pro, Galaxy S24, Pixel 8, ...
  metric     → METRIC_VALUE   10,000 / 8.5 / 10k
  location   → LOCATION       "in New York" → "in LOCATION"

Detectors run in that order so multi-token entities (dates, model numbers)
are consumed before bare numbers. Every firing is recorded as
"PLACEHOLDER: matched text".

High-severity identifiers (email, SSN-style numbers, phone) are checked
first. Strict mode aborts the call on them. Non-strict mode rewrites them to
[EMAIL], [SSN] and [PHONE] before the detectors above run. Self-introduced
names ("my name is Ana", "I'm Ana") become [USER] in both modes. Identifier
firings are recorded by placeholder only, so the replacement list never
carries them.

Strict mode finally re-scans its own output for digit runs, dates, emails
and phone numbers that slipped through, and aborts if any are left.

Known profile (best-effort, not certified de-identification):
  - false negatives: lowercase place names, spelled-out numbers
    ("ten thousand"), device names outside the list, street addresses
  - false positives: capitalised words after in/at/near/from
    ("at Home" → "at LOCATION"), version strings ("Android 14")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from stepsync.config import get_section

logger = logging.getLogger(__name__)

METRIC_PLACEHOLDER = "METRIC_VALUE"
TIMEFRAME_PLACEHOLDER = "TIMEFRAME"
APP_PLACEHOLDER = "FITNESS_APP"
DEVICE_PLACEHOLDER = "DEVICE"
LOCATION_PLACEHOLDER = "LOCATION"


class PHIDetectedError(Exception):
    """Raised in strict mode when a high-severity identifier is present."""

    def __init__(self, category: str, content_length: int):
        self.category = category
        self.content_length = content_length
        # Never carry the offending text in the message
        super().__init__(
            f"{category} detected in input (content length: {content_length} chars)"
        )


@dataclass
class SanitizationResult:
    """Outcome of one sanitize() call."""
    original_text: str
    sanitized_text: str
    was_sanitized: bool = False
    replacements: list[str] = field(default_factory=list)
    had_phi: bool = False

    @property
    def replacement_count(self) -> int:
        return len(self.replacements)


@dataclass(frozen=True)
class Blocked:
    """A message refused by strict mode. Nothing may be sent for it."""
    reason: str
    category: str


# ── Pattern library ──────────────────────────────────────────────────────────
# Each entry: (placeholder, compiled_regex)

_MONTHS = (
    r"january|february|march|april|june|july|august|september|october|november|december"
    r"|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)

_TIMEFRAME_PATTERNS: list[re.Pattern] = [
    # ISO and numeric dates
    re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b"),
    re.compile(r"\b\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}\b"),
    # Clock times
    re.compile(r"\b\d{1,2}:\d{2}(?:\s*[ap]\.?m\.?)?(?!\w)", re.IGNORECASE),
    re.compile(r"\b\d{1,2}\s*[ap]\.?m\.?(?!\w)", re.IGNORECASE),
    # "3 days ago", "2 weeks ago"
    re.compile(r"\b\d+\s+(?:minutes?|hours?|days?|weeks?|months?|years?)\s+ago\b", re.IGNORECASE),
    # Month names, optionally with a day ("March 3rd"); "may" only with a day
    re.compile(rf"\b(?:{_MONTHS})\b(?:\s+\d{{1,2}}(?:st|nd|rd|th)?\b)?", re.IGNORECASE),
    re.compile(r"\bmay\s+\d{1,2}(?:st|nd|rd|th)?\b", re.IGNORECASE),
    # Relative references ("last Monday" is one firing, not two)
    re.compile(
        r"\b(?:last|this|next|past)\s+(?:week(?:end)?|month|year|night|morning|afternoon|evening|\w*day)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:yesterday|today|tomorrow|tonight)\b", re.IGNORECASE),
    # Weekdays
    re.compile(r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)s?\b", re.IGNORECASE),
]

_APP_PATTERN = re.compile(
    r"\b(?:Google\s+Fit|Samsung\s+Health|Apple\s+Health|Health\s+Connect|Garmin\s+Connect"
    r"|My\s*Fitness\s*Pal|Nike\s+Run\s+Club|Fitbit|Strava|Garmin|Oura|Whoop|Runkeeper)\b",
    re.IGNORECASE,
)

_DEVICE_PATTERNS: list[re.Pattern] = [
    re.compile(r"\b(?:Apple|Galaxy|Pixel|Fitbit)\s+Watch(?:\s*\d+)?(?:\s+(?:Ultra|SE|Pro))?\b", re.IGNORECASE),
    re.compile(r"\biPhone(?:\s*(?:\d{1,2}|SE|X[RS]?))?(?:\s+(?:Pro|Plus|Max|Mini))*\b", re.IGNORECASE),
    re.compile(
        r"\b(?:Samsung\s+)?(?:Galaxy|Pixel|OnePlus|Xiaomi|Redmi)"
        r"(?:\s+[A-Z]?\d{1,3}[a-z]?)?(?:\s+(?:Pro|Plus|Ultra|FE|XL|Lite))*\b",
        re.IGNORECASE,
    ),
]

_METRIC_PATTERN = re.compile(r"\b\d+(?:,\d{3})*(?:\.\d+)?(?:k\b)?\b", re.IGNORECASE)

# Preposition is case-insensitive; the place itself must be capitalised,
# otherwise every "in the morning" would be treated as a location.
_LOCATION_PATTERN = re.compile(
    r"\b(?i:(in|at|near|from))\s+((?:[A-Z][a-z]+)(?:\s+[A-Z][a-z]+)*)\b"
)

# High-severity identifiers: strict mode aborts, non-strict rewrites.
# Each entry: (category, placeholder, compiled_regex)
_CRITICAL_PATTERNS: list[tuple[str, str, re.Pattern]] = [
    ("Email address", "[EMAIL]", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")),
    ("SSN pattern", "[SSN]", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("Phone number", "[PHONE]",
     re.compile(r"(?:\+?\d{1,2}[\s.-]?)?\(?\b\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")),
]

USER_PLACEHOLDER = "[USER]"

# The lead-in stays; only the capitalised name is replaced
_NAME_PATTERN = re.compile(
    r"\b((?:[Ii][’']m|[Mm]y\s+name\s+is|[Ii]\s+am)\s+)([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b"
)

# Anything these find in strict output means a detector missed something
_LEFTOVER_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("Unredacted number", re.compile(r"(?<!\d)\d{4,}(?!\d)")),
    ("Unredacted date", re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b")),
    ("Email address", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")),
    ("Phone number", re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b")),
]


class Sanitizer:
    """
    Removes health and personal details from user text.

    One instance is safe to share: it holds only compiled patterns and the
    strict_mode flag.
    """

    def __init__(self, strict_mode: bool = True):
        self.strict_mode = strict_mode

    @classmethod
    def from_config(cls) -> "Sanitizer":
        """Create a Sanitizer from config.yaml settings."""
        s_cfg = get_section("sanitizer")
        return cls(strict_mode=bool(s_cfg.get("strict_mode", True)))

    def sanitize(self, text: str, strict: bool | None = None) -> SanitizationResult:
        """
        Sanitize one string.

        Raises PHIDetectedError only when strict (the instance default or the
        per-call override) and a high-severity identifier is present, either
        in the input or left over in the rewritten text.
        """
        if not text:
            return SanitizationResult(original_text=text, sanitized_text=text)

        strict = self.strict_mode if strict is None else strict
        critical = self._find_critical(text)

        if critical and strict:
            logger.warning(
                "Sanitizer blocked input: %s (%d chars)", critical, len(text)
            )
            raise PHIDetectedError(critical, len(text))

        replacements: list[str] = []
        sanitized = text
        for _, placeholder, pattern in _CRITICAL_PATTERNS:
            sanitized = self._redact(pattern, placeholder, sanitized, replacements)
        sanitized = self._redact_names(sanitized, replacements)
        for pattern in _TIMEFRAME_PATTERNS:
            sanitized = self._substitute(pattern, TIMEFRAME_PLACEHOLDER, sanitized, replacements)
        sanitized = self._substitute(_APP_PATTERN, APP_PLACEHOLDER, sanitized, replacements)
        for pattern in _DEVICE_PATTERNS:
            sanitized = self._substitute(pattern, DEVICE_PLACEHOLDER, sanitized, replacements)
        sanitized = self._substitute(_METRIC_PATTERN, METRIC_PLACEHOLDER, sanitized, replacements)
        sanitized = self._substitute_locations(sanitized, replacements)

        was_sanitized = bool(replacements)
        if not was_sanitized:
            sanitized = text

        if strict:
            leftover = self._find_leftover(sanitized)
            if leftover:
                logger.error(
                    "PHI detected after sanitization: %s (%d chars)", leftover, len(text)
                )
                raise PHIDetectedError(leftover, len(text))

        if critical:
            logger.warning(
                "High-severity identifier redacted (non-strict): %s", critical
            )
        if was_sanitized:
            logger.info("Sanitization complete: %d replacements", len(replacements))
        else:
            logger.debug("No PHI detected in input (%d chars)", len(text))

        return SanitizationResult(
            original_text=text,
            sanitized_text=sanitized,
            was_sanitized=was_sanitized,
            replacements=replacements,
            had_phi=was_sanitized or critical is not None,
        )

    def screen(self, text: str) -> SanitizationResult | Blocked:
        """Non-raising variant: strict-mode aborts come back as Blocked."""
        try:
            return self.sanitize(text)
        except PHIDetectedError as e:
            return Blocked(reason=str(e), category=e.category)

    def contains_phi(self, text: str) -> bool:
        """True if any detector (including high-severity ones) would fire."""
        return self.sanitize(text, strict=False).had_phi

    @staticmethod
    def _find_critical(text: str) -> str | None:
        for name, _, pattern in _CRITICAL_PATTERNS:
            if pattern.search(text):
                return name
        return None

    @staticmethod
    def _find_leftover(text: str) -> str | None:
        for name, pattern in _LEFTOVER_PATTERNS:
            if pattern.search(text):
                return name
        return None

    @staticmethod
    def _redact(
        pattern: re.Pattern, placeholder: str, text: str, replacements: list[str]
    ) -> str:
        def repl(match: re.Match) -> str:
            replacements.append(placeholder)
            return placeholder
        return pattern.sub(repl, text)

    @staticmethod
    def _redact_names(text: str, replacements: list[str]) -> str:
        def repl(match: re.Match) -> str:
            replacements.append(USER_PLACEHOLDER)
            return match.group(1) + USER_PLACEHOLDER
        return _NAME_PATTERN.sub(repl, text)

    @staticmethod
    def _substitute(
        pattern: re.Pattern, placeholder: str, text: str, replacements: list[str]
    ) -> str:
        def repl(match: re.Match) -> str:
            replacements.append(f"{placeholder}: {match.group(0)}")
            return placeholder
        return pattern.sub(repl, text)

    @staticmethod
    def _substitute_locations(text: str, replacements: list[str]) -> str:
        def repl(match: re.Match) -> str:
            replacements.append(f"{LOCATION_PLACEHOLDER}: {match.group(2)}")
            return f"{match.group(1)} {LOCATION_PLACEHOLDER}"
        return _LOCATION_PATTERN.sub(repl, text)
