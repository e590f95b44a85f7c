"""Tests for the security monitor: events, alerts, dashboard, reports, appeals and forensics."""

from reaction_shield.lib.store import Keys
from reaction_shield.models.enums import (
    SecurityEventType, Severity, AlertType, Priority, ReportStatus,
    AppealStatus, SubmissionStatus, Verdict, ComponentStatus
)
from reaction_shield.models.security import SecurityEvent, SecurityMetrics, CommunityReport, ScoreAppeal
from reaction_shield.services.penalty_service import PenaltyEscalator
from reaction_shield.services.security_service import SecurityMonitor


def event(event_type, user_id="u1", **data):
    return SecurityEvent(type=event_type, user_id=user_id, data=data)


def snapshot(store):
    return {key: store.get(key) for key in store.keys()}


# --- Event log ---


def test_severity_is_a_function_of_type():
    assert SecurityMonitor.event_severity(SecurityEventType.IMPOSSIBLE_TIME) == Severity.CRITICAL
    assert SecurityMonitor.event_severity(SecurityEventType.BOT_DETECTION) == Severity.CRITICAL
    assert SecurityMonitor.event_severity(SecurityEventType.SUSPICIOUS_ACTIVITY) == Severity.MEDIUM
    assert SecurityMonitor.event_severity(SecurityEventType.RATE_LIMIT_VIOLATION) == Severity.MEDIUM
    assert SecurityMonitor.event_severity(SecurityEventType.ANOMALY_DETECTION) == Severity.LOW
    assert SecurityMonitor.event_severity(SecurityEventType.COMMUNITY_REPORT) == Severity.LOW


def test_log_event_enriches_and_persists(monitor, store, clock):
    logged = monitor.log_event(event(SecurityEventType.ANOMALY_DETECTION, ip_address="10.1.1.1"))

    assert logged.timestamp == clock.ms
    assert logged.severity == Severity.LOW
    assert logged.context.ip_address == "10.1.1.1"
    assert logged.context.user_agent == "unknown"
    assert store.get(Keys.security_event(logged.id))["id"] == logged.id
    assert [e.id for e in monitor.get_user_events("u1")] == [logged.id]


def test_context_counts_previous_violations(monitor, store, clock):
    PenaltyEscalator(store, clock=clock).record_violation("u1", "score_submission")
    logged = monitor.log_event(event(SecurityEventType.RATE_LIMIT_VIOLATION))
    assert logged.context.previous_violations == 1


def test_only_critical_events_are_published(monitor, broker):
    monitor.log_event(event(SecurityEventType.RATE_LIMIT_VIOLATION))
    assert broker.critical_events == []

    monitor.log_event(event(SecurityEventType.BOT_DETECTION))
    assert len(broker.critical_events) == 1
    assert broker.critical_events[0]["type"] == "bot_detection"


def test_store_failure_still_returns_event(failing_store, clock):
    monitor = SecurityMonitor(failing_store, clock=clock)
    logged = monitor.log_event(event(SecurityEventType.IMPOSSIBLE_TIME))
    assert logged.severity == Severity.CRITICAL


# --- Metrics ---


def test_security_metrics_over_last_hour(monitor):
    for i in range(5):
        monitor.log_event(event(SecurityEventType.IMPOSSIBLE_TIME, user_id=f"cheater-{i}"))
    monitor.log_event(event(SecurityEventType.RATE_LIMIT_VIOLATION))
    monitor.log_event(event(SecurityEventType.RATE_LIMIT_VIOLATION))

    metrics = monitor.get_security_metrics()
    assert metrics.total_events == 7
    assert metrics.critical_violations == 5
    assert metrics.suspicious_users == 5
    assert metrics.rate_limit_violations == 2
    assert metrics.top_violation_types[0].type == "impossible_time"
    assert metrics.top_violation_types[0].count == 5


def test_metrics_window_expires(monitor, clock):
    monitor.log_event(event(SecurityEventType.ANOMALY_DETECTION))
    clock.advance(3601)
    assert monitor.get_security_metrics().total_events == 0


# --- Alerts ---


def test_all_alert_rules_fire_independently(monitor, broker):
    metrics = SecurityMetrics(
        critical_violations=5, suspicious_users=10, rate_limit_violations=50, anomaly_detections=20
    )
    alerts = monitor.generate_alerts(metrics)

    assert [a.type for a in alerts] == [
        AlertType.CRITICAL_VIOLATIONS, AlertType.SUSPICIOUS_ACTIVITY,
        AlertType.RATE_LIMIT_ABUSE, AlertType.ANOMALY_SPIKE,
    ]
    assert alerts[0].severity == Severity.HIGH
    assert alerts[0].action_required is True
    assert alerts[0].message == "5 critical violations detected in the last hour"
    assert len(broker.alerts) == 4


def test_no_alerts_below_thresholds(monitor, broker):
    metrics = SecurityMetrics(
        critical_violations=4, suspicious_users=9, rate_limit_violations=49, anomaly_detections=19
    )
    assert monitor.generate_alerts(metrics) == []
    assert broker.alerts == []


# --- Dashboard ---


def test_dashboard(monitor):
    for i in range(12):
        monitor.log_event(event(SecurityEventType.IMPOSSIBLE_TIME, user_id=f"cheater-{i % 6}"))

    dashboard = monitor.get_security_dashboard()
    assert dashboard.metrics.critical_violations == 12
    assert AlertType.CRITICAL_VIOLATIONS in [a.type for a in dashboard.alerts]
    assert dashboard.active_threats[0].type == "impossible_time"
    assert dashboard.active_threats[0].affected_users == 6
    assert len(dashboard.recent_events) == SecurityMonitor.DASHBOARD_RECENT_EVENTS
    assert dashboard.system_health.anti_cheat_status == ComponentStatus.OPERATIONAL
    assert dashboard.summary == "12 events, 1 active alerts"


def test_dashboard_when_store_is_down(failing_store, clock):
    dashboard = SecurityMonitor(failing_store, clock=clock).get_security_dashboard()
    assert dashboard.summary == "Dashboard unavailable"
    assert dashboard.system_health.monitoring_status == ComponentStatus.DOWN


# --- Community reports ---


def test_report_requires_fields(monitor):
    result = monitor.submit_community_report(CommunityReport(reported_user_id="u2", reporter_id="u1"))
    assert result.success is False
    assert result.status == SubmissionStatus.REJECTED
    assert result.message == "Missing required fields"


def test_cannot_report_yourself(monitor):
    result = monitor.submit_community_report(
        CommunityReport(reported_user_id="u1", reporter_id="u1", reason="cheating")
    )
    assert result.message == "Cannot report yourself"


def test_bot_report_is_high_priority_and_investigated(monitor):
    result = monitor.submit_community_report(
        CommunityReport(reported_user_id="u2", reporter_id="u1", reason="Obvious BOT, 90ms every game")
    )
    assert result.success is True
    assert result.status == SubmissionStatus.PENDING

    report = monitor.get_report(result.report_id)
    assert report.priority == Priority.HIGH
    assert report.status == ReportStatus.INVESTIGATING
    assert report.investigation is not None

    events = monitor.get_user_events("u2")
    assert events[-1].type == SecurityEventType.COMMUNITY_REPORT
    assert events[-1].reporter_id == "u1"


def test_ordinary_report_waits(monitor):
    first = monitor.submit_community_report(
        CommunityReport(reported_user_id="u2", reporter_id="u1", reason="offensive username")
    )
    second = monitor.submit_community_report(
        CommunityReport(reported_user_id="u2", reporter_id="u3", reason="offensive username")
    )
    report = monitor.get_report(first.report_id)
    assert report.priority == Priority.MEDIUM
    assert report.status == ReportStatus.PENDING
    assert monitor.get_report(second.report_id).server_evidence.prior_reports == 1


def test_update_report_status(monitor, clock):
    result = monitor.submit_community_report(
        CommunityReport(reported_user_id="u2", reporter_id="u1", reason="offensive username")
    )
    clock.advance(60)
    updated = monitor.update_report_status(result.report_id, ReportStatus.RESOLVED, "Name changed")
    assert updated.status == ReportStatus.RESOLVED
    assert updated.resolution == "Name changed"
    assert updated.updated_at == clock.ms
    assert monitor.update_report_status("report-missing", ReportStatus.DISMISSED) is None


def test_report_fails_cleanly_when_store_is_down(failing_store, clock):
    monitor = SecurityMonitor(failing_store, clock=clock)
    result = monitor.submit_community_report(
        CommunityReport(reported_user_id="u2", reporter_id="u1", reason="cheating")
    )
    assert result.success is False
    assert result.status == SubmissionStatus.ERROR


# --- Appeals ---


def test_invalid_appeal(monitor):
    result = monitor.submit_appeal(ScoreAppeal(user_id="u1"))
    assert result.success is False
    assert result.message == "Invalid appeal data"


def test_pending_appeals_are_capped(monitor):
    results = [
        monitor.submit_appeal(ScoreAppeal(user_id="u1", flagged_score=180, reason="legit score"))
        for _ in range(4)
    ]
    assert [r.success for r in results] == [True, True, True, False]
    assert results[-1].message == "Too many pending appeals"

    monitor.review_appeal(results[0].appeal_id, AppealStatus.DENIED, "mod-1")
    assert monitor.submit_appeal(ScoreAppeal(user_id="u1", reason="legit score")).success is True


def test_appeal_priority():
    assert SecurityMonitor.calculate_appeal_priority(ScoreAppeal(user_id="u1", reason="x", flagged_score=180)) \
        == Priority.HIGH
    assert SecurityMonitor.calculate_appeal_priority(ScoreAppeal(user_id="u1", reason="x", flagged_score=95)) \
        == Priority.MEDIUM


def test_appeal_evidence_uses_history(monitor, store):
    store.set(Keys.history("u1"), [240.0, 260.0], 0)
    result = monitor.submit_appeal(ScoreAppeal(user_id="u1", flagged_score=180, reason="legit"))
    appeal = monitor.get_user_appeals("u1")[0]
    assert appeal.id == result.appeal_id
    assert appeal.server_evidence.personal_best == 240.0
    assert appeal.server_evidence.history_mean == 250.0


def test_reviews_drive_false_positive_rate(monitor):
    assert monitor.calculate_false_positive_rate() == 0.0
    first = monitor.submit_appeal(ScoreAppeal(user_id="u1", reason="legit"))
    second = monitor.submit_appeal(ScoreAppeal(user_id="u2", reason="legit"))

    reviewed = monitor.review_appeal(first.appeal_id, AppealStatus.APPROVED, "mod-1", "Replay checks out")
    assert reviewed.status == AppealStatus.APPROVED
    assert reviewed.reviewer_id == "mod-1"
    assert monitor.calculate_false_positive_rate() == 1.0

    monitor.review_appeal(second.appeal_id, AppealStatus.DENIED, "mod-1")
    assert monitor.calculate_false_positive_rate() == 0.5

    # Changing a decided appeal does not count twice
    monitor.review_appeal(second.appeal_id, AppealStatus.APPROVED, "mod-2")
    assert monitor.calculate_false_positive_rate() == 0.5


def test_review_unknown_appeal(monitor):
    assert monitor.review_appeal("appeal-missing", AppealStatus.APPROVED, "mod-1") is None


# --- Forensics ---


def test_forensic_analysis(monitor, store, clock):
    monitor.log_event(event(SecurityEventType.IMPOSSIBLE_TIME))
    monitor.log_event(event(SecurityEventType.IMPOSSIBLE_TIME))
    penalties = PenaltyEscalator(store, clock=clock)
    for _ in range(3):
        penalties.record_violation("u1", "score_submission")

    before = snapshot(store)
    report = monitor.conduct_forensic_analysis("u1")
    assert snapshot(store) == before

    assert len(report.events) == 2
    assert report.violation_count == 3
    assert report.pattern_analysis.burst_detected is True
    assert [t.kind for t in report.timeline].count("violation") == 3
    assert report.timeline == sorted(report.timeline, key=lambda t: t.timestamp)
    assert report.risk_assessment.score == 59
    assert report.risk_assessment.level == Severity.HIGH
    assert report.risk_assessment.verdict == Verdict.FAIL
    assert report.recommendations[0] == "Manual review of recent scores"


def test_forensic_analysis_of_clean_user(monitor):
    report = monitor.conduct_forensic_analysis("nobody")
    assert report.risk_assessment.level == Severity.LOW
    assert report.risk_assessment.verdict == Verdict.PASS
    assert report.recommendations == ["No action required"]


def test_forensic_analysis_when_store_is_down(failing_store, clock):
    report = SecurityMonitor(failing_store, clock=clock).conduct_forensic_analysis("u1")
    assert report.risk_assessment.verdict == Verdict.INCONCLUSIVE
