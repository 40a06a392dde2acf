"""
Intent labels produced by the (external) intent classifier.
"""

from __future__ import annotations

from enum import Enum


class Intent(str, Enum):
    # Permissions
    PERMISSION_DENIED = "permission_denied"
    WANT_TO_GRANT_PERMISSION = "want_to_grant_permission"
    WHY_PERMISSION_NEEDED = "why_permission_needed"

    # Sync
    STEPS_NOT_SYNCING = "steps_not_syncing"
    SYNC_DELAYED = "sync_delayed"

    # Data
    WRONG_STEP_COUNT = "wrong_step_count"
    DUPLICATE_STEPS = "duplicate_steps"
    DATA_MISSING = "data_missing"

    # Multiple apps
    MULTIPLE_APPS_CONFLICT = "multiple_apps_conflict"
    WANT_TO_SWITCH_SOURCE = "want_to_switch_source"

    # Technical
    BATTERY_OPTIMIZATION = "battery_optimization"
    HEALTH_CONNECT_NOT_INSTALLED = "health_connect_not_installed"

    # General
    GREETING = "greeting"
    THANKS = "thanks"
    CHECKING_STATUS = "checking_status"
    NEED_HELP = "need_help"

    UNCLEAR = "unclear"

    @classmethod
    def parse(cls, value: "str | Intent") -> "Intent":
        """Accept an Intent or its string value; unknown labels map to UNCLEAR."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNCLEAR


# Inherently open-ended: a template can't answer these well
OPEN_ENDED_INTENTS = frozenset({Intent.NEED_HELP, Intent.UNCLEAR})
