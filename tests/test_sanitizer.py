"""
Tests for the privacy sanitizer.
Run with: pytest tests/test_sanitizer.py
"""

import logging

import pytest

from stepsync.privacy import Blocked, PHIDetectedError, SanitizationResult, Sanitizer


@pytest.fixture
def sanitizer():
    return Sanitizer(strict_mode=True)


@pytest.fixture
def lenient():
    return Sanitizer(strict_mode=False)


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------

def test_metric_and_timeframe(sanitizer):
    result = sanitizer.sanitize("I walked 10,000 steps yesterday")
    assert result.sanitized_text == "I walked METRIC_VALUE steps TIMEFRAME"
    assert result.replacements == ["TIMEFRAME: yesterday", "METRIC_VALUE: 10,000"]
    assert result.was_sanitized
    assert result.had_phi
    assert result.replacement_count == 2


def test_app_and_decimal(sanitizer):
    result = sanitizer.sanitize("My Google Fit shows 8.5 km")
    assert result.sanitized_text == "My FITNESS_APP shows METRIC_VALUE km"
    assert "FITNESS_APP: Google Fit" in result.replacements
    assert "METRIC_VALUE: 8.5" in result.replacements


def test_device_consumed_before_bare_number(sanitizer):
    result = sanitizer.sanitize("My iPhone 15 Pro stopped counting")
    assert result.sanitized_text == "My DEVICE stopped counting"
    assert result.replacements == ["DEVICE: iPhone 15 Pro"]


def test_watch_is_single_device(sanitizer):
    result = sanitizer.sanitize("synced from my Galaxy Watch")
    assert result.sanitized_text == "synced from my DEVICE"
    assert result.replacements == ["DEVICE: Galaxy Watch"]


def test_location_keeps_preposition(sanitizer):
    result = sanitizer.sanitize("I was walking in New York")
    assert result.sanitized_text == "I was walking in LOCATION"
    assert result.replacements == ["LOCATION: New York"]


def test_lowercase_place_is_not_a_location(sanitizer):
    result = sanitizer.sanitize("steps stop in the morning")
    assert result.sanitized_text == "steps stop in the morning"
    assert not result.was_sanitized


def test_relative_timeframe_is_one_firing(sanitizer):
    result = sanitizer.sanitize("it broke last Monday")
    assert result.sanitized_text == "it broke TIMEFRAME"
    assert result.replacements == ["TIMEFRAME: last Monday"]


def test_iso_date_not_split_into_numbers(sanitizer):
    result = sanitizer.sanitize("missing since 2024-05-12")
    assert result.sanitized_text == "missing since TIMEFRAME"
    assert result.replacements == ["TIMEFRAME: 2024-05-12"]


def test_case_insensitive(sanitizer):
    result = sanitizer.sanitize("STRAVA says zero TODAY")
    assert result.sanitized_text == "FITNESS_APP says zero TIMEFRAME"


def test_multiple_firings_of_one_detector(sanitizer):
    result = sanitizer.sanitize("72 then 80")
    assert result.sanitized_text == "METRIC_VALUE then METRIC_VALUE"
    assert result.replacements == ["METRIC_VALUE: 72", "METRIC_VALUE: 80"]


# ---------------------------------------------------------------------------
# No-op cases
# ---------------------------------------------------------------------------

def test_no_matches_is_identity(sanitizer):
    text = "my steps are not syncing"
    result = sanitizer.sanitize(text)
    assert result.sanitized_text is text
    assert not result.was_sanitized
    assert result.replacements == []
    assert not result.had_phi


def test_empty_input(sanitizer):
    result = sanitizer.sanitize("")
    assert isinstance(result, SanitizationResult)
    assert result.sanitized_text == ""
    assert not result.was_sanitized
    assert result.replacement_count == 0


# ---------------------------------------------------------------------------
# High-severity identifiers
# ---------------------------------------------------------------------------

def test_strict_email_raises_without_content(sanitizer):
    with pytest.raises(PHIDetectedError) as exc:
        sanitizer.sanitize("reach me at bob@example.com please")
    assert exc.value.category == "Email address"
    assert exc.value.content_length == len("reach me at bob@example.com please")
    assert "bob@example.com" not in str(exc.value)


def test_strict_block_is_not_logged_with_content(sanitizer, caplog):
    caplog.set_level(logging.DEBUG, logger="stepsync.privacy.sanitizer")
    with pytest.raises(PHIDetectedError):
        sanitizer.sanitize("my ssn is 123-45-6789")
    assert "123-45-6789" not in caplog.text


def test_non_strict_redacts_identifiers(lenient, caplog):
    caplog.set_level(logging.WARNING, logger="stepsync.privacy.sanitizer")
    result = lenient.sanitize("my name is John Smith, mail me at john@x.com or 555-123-4567")
    assert result.sanitized_text == "my name is [USER], mail me at [EMAIL] or [PHONE]"
    assert result.replacements == ["[EMAIL]", "[PHONE]", "[USER]"]
    assert result.was_sanitized
    assert result.had_phi
    assert "redacted (non-strict): Email address" in caplog.text
    assert "john" not in caplog.text.lower()


def test_non_strict_redacts_ssn_before_numbers(lenient):
    result = lenient.sanitize("ssn 123-45-6789 and 72 steps")
    assert result.sanitized_text == "ssn [SSN] and METRIC_VALUE steps"
    assert "123-45-6789" not in " ".join(result.replacements)


def test_phone_is_not_split_into_metrics(lenient):
    result = lenient.sanitize("text (555) 123-4567 tonight")
    assert "METRIC_VALUE" not in result.sanitized_text
    assert "[PHONE]" in result.sanitized_text
    assert "TIMEFRAME" in result.sanitized_text


@pytest.mark.parametrize("text,expected", [
    ("I'm Ana and my steps are gone", "I'm [USER] and my steps are gone"),
    ("Hi, I am Maria Lopez", "Hi, I am [USER]"),
    ("My name is Sam from Boston", "My name is [USER] from LOCATION"),
])
def test_self_introduced_names(sanitizer, text, expected):
    result = sanitizer.sanitize(text)
    assert result.sanitized_text == expected
    assert "[USER]" in result.replacements


def test_lowercase_after_im_is_not_a_name(sanitizer):
    result = sanitizer.sanitize("i'm stuck and my steps are gone")
    assert not result.was_sanitized


def test_per_call_override(sanitizer):
    result = sanitizer.sanitize("email bob@example.com", strict=False)
    assert result.had_phi
    assert result.sanitized_text == "email [EMAIL]"


# ---------------------------------------------------------------------------
# Strict re-scan of the rewritten text
# ---------------------------------------------------------------------------

def test_strict_blocks_digit_run_the_detectors_missed(sanitizer, caplog):
    caplog.set_level(logging.DEBUG, logger="stepsync.privacy.sanitizer")
    with pytest.raises(PHIDetectedError) as exc:
        sanitizer.sanitize("my member id is A12345678")
    assert exc.value.category == "Unredacted number"
    assert "12345678" not in caplog.text
    assert "PHI detected after sanitization" in caplog.text


def test_strict_rescan_passes_rewritten_numbers(sanitizer):
    result = sanitizer.sanitize("10,000 steps on 12/05/2024, about 12000 total")
    assert result.sanitized_text == "METRIC_VALUE steps on TIMEFRAME, about METRIC_VALUE total"


def test_non_strict_skips_rescan(lenient):
    result = lenient.sanitize("my member id is A12345678")
    assert result.sanitized_text == "my member id is A12345678"


def test_screen_blocks_leftovers(sanitizer):
    result = sanitizer.screen("ref X99999")
    assert isinstance(result, Blocked)
    assert result.category == "Unredacted number"


def test_screen_returns_blocked(sanitizer):
    result = sanitizer.screen("call me on 555-123-4567")
    assert isinstance(result, Blocked)
    assert result.category == "Phone number"
    assert "555" not in result.reason


def test_screen_passes_clean_text(sanitizer):
    result = sanitizer.screen("Fitbit lost 3 days ago")
    assert isinstance(result, SanitizationResult)
    assert result.sanitized_text == "FITNESS_APP lost TIMEFRAME"


def test_contains_phi(sanitizer):
    assert sanitizer.contains_phi("bob@example.com")
    assert sanitizer.contains_phi("I use Strava")
    assert not sanitizer.contains_phi("steps are not syncing")


def test_from_config(monkeypatch):
    from stepsync import config as cfg_mod
    monkeypatch.setattr(cfg_mod, "_config", {"sanitizer": {"strict_mode": False}})
    assert Sanitizer.from_config().strict_mode is False
