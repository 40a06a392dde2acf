"""
Canned replies, one per intent.

These are the cheap, deterministic path and the fallback for every failure
of the LLM path. Templates containing ENHANCEMENT_PLACEHOLDER are hybrid
templates: the orchestrator asks the provider for one short sentence to
splice in, and strips the placeholder if that call fails.
"""

from __future__ import annotations

from stepsync.intents import Intent

ENHANCEMENT_PLACEHOLDER = "[LLM_ENHANCEMENT]"

SAFE_REFUSAL = (
    "I can't send personal details like email addresses or phone numbers "
    "along with a request. Could you describe the problem without them? "
    "I'll take it from there."
)

FRUSTRATION_PREFIX = (
    "I understand this is frustrating, and I'm sorry it's getting in your way. "
)

_TEMPLATES: dict[Intent, str] = {
    Intent.GREETING: (
        "Hi! I'm Step Sync Assistant. I help fix step syncing issues. "
        "What's going on with your steps?"
    ),
    Intent.THANKS: "You're welcome! Let me know if you need anything else.",
    Intent.WHY_PERMISSION_NEEDED: (
        "Fair question! Step permission lets me read your daily step data to spot "
        "syncing issues, and activity permission shows which apps and devices are "
        "recording. Your data stays on your device and is never shared."
    ),
    Intent.WANT_TO_GRANT_PERMISSION: (
        "Great! I'll open the permission settings for you. "
        "Select Steps and Activity, then tap Allow."
    ),
    Intent.PERMISSION_DENIED: (
        "It looks like step permissions are turned off. "
        f"{ENHANCEMENT_PLACEHOLDER} "
        "Would you like to grant permission now?"
    ),
    Intent.STEPS_NOT_SYNCING: (
        "Let's get your steps syncing again. "
        f"{ENHANCEMENT_PLACEHOLDER} "
        "When did you last see your steps update?"
    ),
    Intent.SYNC_DELAYED: (
        "Sync can lag for a few minutes, especially when the phone is idle. "
        "Try opening your health app to trigger a refresh, then check again."
    ),
    Intent.WRONG_STEP_COUNT: (
        "A count that looks off usually means more than one source is recording. "
        f"{ENHANCEMENT_PLACEHOLDER} "
        "Which count do you think is right?"
    ),
    Intent.DUPLICATE_STEPS: (
        "Duplicate steps usually come from a phone and a watch both counting. "
        "Picking one primary data source fixes it."
    ),
    Intent.DATA_MISSING: (
        "Sorry your data is missing. Which days are affected? "
        "Missing days often recover after the source app syncs again."
    ),
    Intent.MULTIPLE_APPS_CONFLICT: (
        "Several apps are writing steps, which can cause conflicts. "
        "A watch is usually more accurate than a phone, so it's a good primary source."
    ),
    Intent.WANT_TO_SWITCH_SOURCE: (
        "Sure! Open your health app's data sources and move your preferred "
        "source to the top of the list."
    ),
    Intent.BATTERY_OPTIMIZATION: (
        "Battery optimization can stop step tracking from running in the background. "
        f"{ENHANCEMENT_PLACEHOLDER} "
        "Want me to walk you through turning it off for your fitness app?"
    ),
    Intent.HEALTH_CONNECT_NOT_INSTALLED: (
        "Your phone needs Health Connect to share step data between apps. "
        f"{ENHANCEMENT_PLACEHOLDER} "
        "I can open the store page for you."
    ),
    Intent.CHECKING_STATUS: (
        "Let me check your tracking status. Permissions, data sources and "
        "background sync all get a quick look."
    ),
    Intent.NEED_HELP: (
        "I'm here to help! I can check why steps aren't syncing, fix a wrong "
        "count, or review your tracking setup. Which would you like?"
    ),
    Intent.UNCLEAR: (
        "I'm here to help! Could you tell me a bit more about what's happening "
        "with your steps?"
    ),
}


def strip_placeholder(text: str) -> str:
    return " ".join(text.replace(ENHANCEMENT_PLACEHOLDER, "").split())


def splice_text(template: str, enhancement: str) -> str:
    """Put enhancement where the placeholder is; a blank one just strips it."""
    enhancement = " ".join(enhancement.split())
    if not enhancement:
        return strip_placeholder(template)
    return template.replace(ENHANCEMENT_PLACEHOLDER, enhancement, 1)


class TemplateLibrary:
    """Looks up canned replies by intent."""

    def __init__(self, overrides: dict[Intent, str] | None = None):
        self._templates = dict(_TEMPLATES)
        if overrides:
            self._templates.update(overrides)

    def raw(self, intent: Intent | str) -> str:
        """The template as stored, placeholder included."""
        return self._templates.get(Intent.parse(intent), self._templates[Intent.UNCLEAR])

    def has_enhancement(self, intent: Intent) -> bool:
        return ENHANCEMENT_PLACEHOLDER in self.raw(intent)

    def hybrid_template(self, intent: Intent) -> str | None:
        """The placeholder-carrying template, or None if intent has none."""
        return self.raw(intent) if self.has_enhancement(intent) else None

    def render(self, intent: Intent) -> str:
        """The template ready to show, with any placeholder removed."""
        return strip_placeholder(self.raw(intent))

    def fallback(self, intent: Intent, frustrated: bool = False) -> str:
        """Reply used when the LLM path fails for this intent."""
        text = self.render(intent)
        return FRUSTRATION_PREFIX + text if frustrated else text

    def splice(self, intent: Intent, enhancement: str) -> str:
        """Insert an enhancement sentence at the placeholder."""
        return splice_text(self.raw(intent), enhancement)
