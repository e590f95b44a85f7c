"""Tests for the end-to-end submission chain."""

import pytest

from reaction_shield.lib.store import Keys
from reaction_shield.models.enums import (
    ValidationAction, ValidationFlag, Verdict, RateLimitAction, SecurityEventType,
    BehaviorFlag, OutlierReason
)
from reaction_shield.models.validation import (
    SessionData, SessionStatistics, ValidationResult, BehaviorProfile
)
from reaction_shield.services.rate_limit_service import RateLimiter
from reaction_shield.services.submission_service import SubmissionService

HUMAN_HISTORY = [200.0, 300.0, 250.0, 220.0, 280.0, 240.0, 260.0, 210.0, 290.0, 250.0]
BOT_HISTORY = [250.0, 255.0, 248.0, 252.0, 249.0, 251.0, 253.0, 247.0]


@pytest.fixture
def service(store, monitor, clock):
    return SubmissionService(store, monitor=monitor, clock=clock)


def event_types(monitor, user_id):
    return [e.type for e in monitor.get_user_events(user_id)]


# --- Outcomes ---


def test_plausible_first_score_is_accepted(service):
    decision = service.evaluate_submission("u1", 212.3)

    assert decision.action == ValidationAction.ACCEPT
    assert decision.accepted is True
    assert decision.verdict == Verdict.PASS
    assert decision.outlier_analysis.reason == OutlierReason.INSUFFICIENT_DATA
    assert decision.behavior_profile.suspicious_flags == {BehaviorFlag.INSUFFICIENT_DATA}
    assert decision.reasons == []
    assert service.get_history("u1") == [212.3]
    status = service.rate_limiter.get_rate_limit_status("u1", RateLimitAction.SCORE_SUBMISSION)
    assert status.usage.minute == 1


def test_impossible_score_is_rejected(service, monitor):
    decision = service.evaluate_submission("u1", 40)

    assert decision.action == ValidationAction.REJECT
    assert decision.verdict == Verdict.FAIL
    assert decision.outlier_analysis is None
    assert ValidationFlag.PHYSICALLY_IMPOSSIBLE.value in decision.reasons
    assert service.get_history("u1") == []
    assert event_types(monitor, "u1") == [SecurityEventType.IMPOSSIBLE_TIME]
    # Rejected attempts still use quota
    status = service.rate_limiter.get_rate_limit_status("u1", RateLimitAction.SCORE_SUBMISSION)
    assert status.usage.minute == 1


def test_non_numeric_score_is_rejected(service):
    decision = service.evaluate_submission("u1", "fast")
    assert decision.action == ValidationAction.REJECT
    assert decision.reaction_time is None
    assert decision.validation.flags == {ValidationFlag.INVALID_NUMBER}


def test_integer_too_large_for_float_is_rejected(service):
    decision = service.evaluate_submission("u1", 10 ** 400)
    assert decision.action == ValidationAction.REJECT
    assert decision.reaction_time is None
    assert decision.validation.flags == {ValidationFlag.INVALID_NUMBER}
    assert service.get_history("u1") == []


def test_bot_like_history_is_flagged(service, store, monitor):
    store.set(Keys.history("u1"), BOT_HISTORY, 0)
    decision = service.evaluate_submission("u1", 250.4)

    assert decision.action == ValidationAction.FLAG
    assert decision.accepted is False
    assert ValidationFlag.BOT_LIKE_CONSISTENCY in decision.validation.flags
    assert "outlier:BOT_LIKE_CONSISTENCY" in decision.reasons
    assert SecurityEventType.BOT_DETECTION in event_types(monitor, "u1")
    assert service.get_history("u1") == BOT_HISTORY


def test_dramatic_improvement_is_flagged_as_anomaly(service, store, monitor):
    store.set(Keys.history("u1"), HUMAN_HISTORY, 0)
    decision = service.evaluate_submission("u1", 160.5)

    assert decision.action == ValidationAction.FLAG
    assert ValidationFlag.STATISTICAL_OUTLIER in decision.validation.flags
    assert event_types(monitor, "u1") == [SecurityEventType.ANOMALY_DETECTION]


def test_ordinary_score_extends_history(service, store):
    store.set(Keys.history("u1"), HUMAN_HISTORY, 0)
    decision = service.evaluate_submission("u1", 245.6)
    assert decision.accepted is True
    assert service.get_history("u1") == HUMAN_HISTORY + [245.6]


def test_behaviour_flags_lower_confidence(service, store):
    store.set(Keys.history("u1"), HUMAN_HISTORY, 0)
    session = SessionData(user_id="u1", session_stats=SessionStatistics(games_played=30, false_starts=0))
    decision = service.evaluate_submission("u1", 245.6, session_data=session)

    assert decision.action == ValidationAction.FLAG
    assert decision.validation.confidence == 0.7
    assert ValidationFlag.SUSPICIOUS_BEHAVIOR in decision.validation.flags
    assert "behavior:UNUSUALLY_LOW_FALSE_START_RATE" in decision.reasons


def test_combine_with_many_behaviour_flags(service):
    validation = ValidationResult(is_valid=True, confidence=1.0, action=ValidationAction.ACCEPT)
    behavior = BehaviorProfile(
        consistency_score=0.9, false_start_rate=0.0, improvement_pattern=0.4,
        suspicious_flags={
            BehaviorFlag.UNUSUALLY_LOW_FALSE_START_RATE,
            BehaviorFlag.MACHINE_LIKE_PRECISION,
            BehaviorFlag.UNREALISTIC_IMPROVEMENT_RATE,
        },
    )
    combined = service.combine(validation, None, behavior)
    assert combined.confidence == 0.5
    assert combined.action == ValidationAction.FLAG
    assert combined.is_valid is False


def test_insufficient_data_does_not_lower_confidence(service):
    validation = ValidationResult(is_valid=True, confidence=1.0, action=ValidationAction.ACCEPT)
    behavior = BehaviorProfile(
        consistency_score=0.5, false_start_rate=0.0, improvement_pattern=0.0,
        suspicious_flags={BehaviorFlag.INSUFFICIENT_DATA},
    )
    combined = service.combine(validation, None, behavior)
    assert combined.action == ValidationAction.ACCEPT
    assert ValidationFlag.SUSPICIOUS_BEHAVIOR not in combined.flags


# --- Rate limiting ---


def test_rate_limited_submission_is_rejected_before_validation(service):
    for _ in range(10):
        service.rate_limiter.record_action("u1", RateLimitAction.SCORE_SUBMISSION)

    decision = service.evaluate_submission("u1", 212.3)
    assert decision.action == ValidationAction.REJECT
    assert decision.rate_limit.allowed is False
    assert decision.verdict == Verdict.FAIL
    assert decision.validation is None
    assert decision.reasons[0].startswith("User rate limit exceeded: minute limit (10)")
    assert service.get_history("u1") == []


# --- Store failures ---


def test_store_outage_fails_open_with_inconclusive_verdict(failing_store, clock):
    service = SubmissionService(failing_store, clock=clock)
    decision = service.evaluate_submission("u1", 212.3)

    assert decision.accepted is True
    assert decision.verdict == Verdict.INCONCLUSIVE
    assert decision.rate_limit.verdict == Verdict.INCONCLUSIVE
    assert decision.outlier_analysis.reason == OutlierReason.INCONCLUSIVE


def test_store_outage_fails_closed_when_configured(failing_store, clock):
    limiter = RateLimiter(failing_store, fail_open=False, clock=clock)
    service = SubmissionService(failing_store, rate_limiter=limiter, clock=clock)
    decision = service.evaluate_submission("u1", 212.3)

    assert decision.action == ValidationAction.REJECT
    assert decision.verdict == Verdict.INCONCLUSIVE
