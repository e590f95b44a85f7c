"""Tests for single-submission plausibility validation."""

import math

import pytest

from reaction_shield.lib.store import Keys
from reaction_shield.models.enums import ValidationAction, ValidationFlag, Severity, SecurityEventType
from reaction_shield.models.validation import DeviceCapabilities, SessionData, SessionStatistics
from reaction_shield.services.plausibility_service import PlausibilityValidator


@pytest.fixture
def validator(store, monitor, clock):
    return PlausibilityValidator(store, monitor=monitor, clock=clock)


# --- Magnitude ---


@pytest.mark.parametrize("reaction_time", [0, -5, 12.5, 49.9])
def test_below_fifty_ms_is_rejected_with_zero_confidence(validator, reaction_time):
    result = validator.validate(reaction_time)
    assert result.action == ValidationAction.REJECT
    assert result.confidence == 0.0
    assert result.is_valid is False
    assert ValidationFlag.PHYSICALLY_IMPOSSIBLE in result.flags


@pytest.mark.parametrize("reaction_time", [math.nan, math.inf, -math.inf, "212", None, True, 10 ** 400])
def test_non_numeric_input_is_rejected(validator, reaction_time):
    result = validator.validate(reaction_time)
    assert result.action == ValidationAction.REJECT
    assert result.flags == {ValidationFlag.INVALID_NUMBER}


def test_impossibly_fast_band(validator):
    result = validator.validate(79.9)
    assert ValidationFlag.IMPOSSIBLY_FAST in result.flags
    assert result.action == ValidationAction.REJECT


@pytest.mark.parametrize("reaction_time,band,confidence", [
    (80.5, ValidationFlag.SUPERHUMAN_SPEED, 0.1),
    (100.5, ValidationFlag.SUSPICIOUSLY_FAST, 0.2),
    (120.5, ValidationFlag.VERY_FAST, 0.6),
    (1000.5, ValidationFlag.UNUSUALLY_SLOW, 0.8),
])
def test_band_confidence(validator, reaction_time, band, confidence):
    result = validator.validate(reaction_time)
    assert band in result.flags
    assert result.confidence == confidence


def test_band_lower_edges_are_inclusive(validator):
    assert ValidationFlag.SUPERHUMAN_SPEED in validator.validate(80).flags
    assert ValidationFlag.SUSPICIOUSLY_FAST in validator.validate(100).flags
    assert ValidationFlag.VERY_FAST in validator.validate(120).flags


def test_one_fifty_and_one_thousand_carry_no_band(validator):
    bands = {
        ValidationFlag.VERY_FAST, ValidationFlag.SUSPICIOUSLY_FAST,
        ValidationFlag.SUPERHUMAN_SPEED, ValidationFlag.UNUSUALLY_SLOW,
    }
    assert not validator.validate(150).flags & bands
    assert not validator.validate(1000).flags & bands


def test_very_fast_is_flagged_but_still_valid(validator):
    result = validator.validate(120.5)
    assert result.action == ValidationAction.FLAG
    assert result.is_valid is True


def test_superhuman_is_flagged_not_rejected(validator):
    result = validator.validate(80.5)
    assert result.action == ValidationAction.FLAG
    assert result.is_valid is False


# --- Precision ---


def test_ordinary_time_is_accepted_clean(validator):
    result = validator.validate(212.347)
    assert result.action == ValidationAction.ACCEPT
    assert result.confidence == 1.0
    assert result.flags == set()
    assert result.is_valid is True


def test_round_number_is_accepted_with_flags(validator):
    result = validator.validate(180)
    assert result.action == ValidationAction.ACCEPT
    assert result.confidence == 0.8
    assert ValidationFlag.SUSPICIOUS_ROUND_NUMBER in result.flags
    assert ValidationFlag.NO_DECIMAL_PRECISION in result.flags


def test_round_number_above_ceiling_is_not_flagged(validator):
    result = validator.validate(310)
    assert result.flags == set()


def test_excessive_precision(validator):
    result = validator.validate(212.3456)
    assert ValidationFlag.EXCESSIVE_PRECISION in result.flags
    assert result.confidence == 0.6
    assert result.action == ValidationAction.FLAG


def test_decimal_places():
    assert PlausibilityValidator.decimal_places(245.1234) == 4
    assert PlausibilityValidator.decimal_places(245.1) == 1
    assert PlausibilityValidator.decimal_places(245.0) == 0


# --- Session and game duration ---


def test_instant_submission_is_rejected(validator, clock):
    session = SessionData(user_id="u1", session_start=clock.ms - 200)
    result = validator.validate(212.3, session)
    assert ValidationFlag.INSTANT_SUBMISSION in result.flags
    assert result.action == ValidationAction.REJECT


def test_very_quick_submission(validator, clock):
    session = SessionData(user_id="u1", session_start=clock.ms - 1000)
    result = validator.validate(212.3, session)
    assert ValidationFlag.VERY_QUICK_SUBMISSION in result.flags
    assert result.confidence == 0.2


def test_game_too_short(validator, clock):
    result = validator.validate(212.3, game_start_time=clock.ms - 1000)
    assert ValidationFlag.GAME_TOO_SHORT in result.flags
    assert result.confidence == 0.1


def test_skipped_light_sequence_needs_experienced_session(validator, clock):
    fresh = SessionData(session_stats=SessionStatistics(games_played=3))
    seasoned = SessionData(session_stats=SessionStatistics(games_played=6))

    assert ValidationFlag.SKIPPED_LIGHT_SEQUENCE not in validator.validate(
        212.3, fresh, game_start_time=clock.ms - 3000).flags
    result = validator.validate(212.3, seasoned, game_start_time=clock.ms - 3000)
    assert ValidationFlag.SKIPPED_LIGHT_SEQUENCE in result.flags
    assert result.confidence == 0.3


def test_excessive_submissions(validator):
    session = SessionData(session_stats=SessionStatistics(games_played=51))
    result = validator.validate(212.3, session)
    assert ValidationFlag.EXCESSIVE_SUBMISSIONS in result.flags
    assert result.action == ValidationAction.FLAG


# --- Device capabilities ---


def test_low_resolution_timer(validator):
    caps = DeviceCapabilities(high_resolution_time=False)
    result = validator.validate(140.5, device_capabilities=caps)
    assert ValidationFlag.DEVICE_PRECISION_MISMATCH in result.flags
    assert result.confidence == 0.4


def test_mobile_floor(validator):
    caps = DeviceCapabilities(is_mobile=True)
    assert ValidationFlag.MOBILE_TIMING_SUSPICIOUS in validator.validate(110.5, device_capabilities=caps).flags
    assert ValidationFlag.MOBILE_IMPOSSIBLE_PRECISION in validator.validate(95.5, device_capabilities=caps).flags


def test_legacy_browser(validator):
    caps = DeviceCapabilities(user_agent="Mozilla/5.0 (Windows NT 6.1; Trident/7.0; rv:11.0) like Gecko")
    result = validator.validate(250.5, device_capabilities=caps)
    assert ValidationFlag.LEGACY_BROWSER_TIMING in result.flags
    assert result.action == ValidationAction.FLAG
    assert result.is_valid is True


def test_browser_info():
    chrome = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    assert PlausibilityValidator.extract_browser_info(chrome).name == "chrome"
    assert PlausibilityValidator.extract_browser_info(None).name == "unknown"


# --- Logging and auto-flagging ---


def test_validate_submission_persists_log_and_hourly_metrics(validator, store, clock):
    outcome = validator.validate_submission("u1", 212.3)
    assert outcome.validation.action == ValidationAction.ACCEPT
    assert outcome.auto_flagged is False

    log = validator.get_validation_log("u1")
    assert len(log) == 1
    assert log[0].reaction_time == 212.3
    assert log[0].severity == Severity.LOW

    hourly = store.get(Keys.validation_metrics(clock.ms // 3_600_000))
    assert hourly["total_validations"] == 1
    assert hourly["accepted_validations"] == 1


def test_validation_log_is_capped(validator):
    for i in range(105):
        validator.validate_submission("u1", 200.5 + i)
    log = validator.get_validation_log("u1")
    assert len(log) == PlausibilityValidator.LOG_HISTORY_LIMIT
    assert log[-1].reaction_time == 304.5


def test_reject_auto_flags_and_reports_event(validator, monitor, store, broker):
    outcome = validator.validate_submission("cheater", 40)

    assert outcome.auto_flagged is True
    assert outcome.log_entry.requires_review is True
    assert outcome.log_entry.escalation_reason == "Physically impossible reaction time detected"
    assert store.get(Keys.flagged_user("cheater"))["flag_count"] == 1

    events = monitor.get_user_events("cheater")
    assert [e.type for e in events] == [SecurityEventType.IMPOSSIBLE_TIME]
    assert events[0].severity == Severity.CRITICAL
    assert len(broker.critical_events) == 1


def test_user_validation_stats(validator):
    assert validator.get_user_validation_stats("nobody") is None

    validator.validate_submission("u1", 212.3)
    validator.validate_submission("u1", 40)
    stats = validator.get_user_validation_stats("u1")

    assert stats.total_validations == 2
    assert stats.rejected_count == 1
    assert stats.accepted_count == 1
    assert stats.risk_level == Severity.CRITICAL


def test_store_failure_does_not_block_validation(failing_store, clock):
    validator = PlausibilityValidator(failing_store, clock=clock)
    outcome = validator.validate_submission("u1", 212.3)
    assert outcome.validation.action == ValidationAction.ACCEPT
    assert validator.get_validation_log("u1") == []
