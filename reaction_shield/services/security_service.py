"""
Security Monitoring Service.
Aggregates validation and rate-limit events into rolling metrics and alerts,
and runs the community report, appeal and forensic workflows.
"""

import time
import logging
from collections import Counter as TallyCounter
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from reaction_shield.models.security import (
    SecurityEvent, EnrichedSecurityEvent, EventContext, EventIndexEntry,
    RealTimeMetrics, SecurityMetrics, ViolationTypeCount, SecurityAlert,
    ActiveThreat, SystemHealth, SecurityDashboard, AppealStats,
    CommunityReport, EnrichedCommunityReport, ReportEvidence, CommunityReportResult,
    ScoreAppeal, EnrichedScoreAppeal, AppealEvidence, AppealResult,
    TimeRange, TimelineEntry, PatternAnalysis, ForensicStatistics,
    RiskAssessment, ForensicReport
)
from reaction_shield.models.rate_limit import UserPenalty, UserViolations
from reaction_shield.models.validation import ValidationLogEntry
from reaction_shield.models.enums import (
    SecurityEventType, Severity, AlertType, Priority, ReportStatus,
    AppealStatus, SubmissionStatus, ComponentStatus, ValidationAction, Verdict
)
from reaction_shield.lib.store import KVStore, Keys, StoreError
from reaction_shield.lib.kafka_client import MessageBroker
from reaction_shield.lib.metrics import MetricsExporter
from reaction_shield.services.statistics_service import (
    calculate_basic_statistics, calculate_trend, coefficient_of_variation
)

logger = logging.getLogger(__name__)

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS


class SecurityMonitor:
    """
    Security event log, alerting and ticketing.
    All state lives in the store; the monitor itself holds none.
    """

    # Severity is a pure function of event type
    EVENT_SEVERITY = {
        SecurityEventType.IMPOSSIBLE_TIME: Severity.CRITICAL,
        SecurityEventType.BOT_DETECTION: Severity.CRITICAL,
        SecurityEventType.SUSPICIOUS_ACTIVITY: Severity.MEDIUM,
        SecurityEventType.RATE_LIMIT_VIOLATION: Severity.MEDIUM,
        SecurityEventType.ANOMALY_DETECTION: Severity.LOW,
    }

    # Per-hour alert thresholds
    ALERT_THRESHOLDS = {
        'critical_violations': 5,
        'suspicious_users': 10,
        'rate_limit_violations': 50,
        'anomaly_detections': 20,
    }

    # TTLs (seconds)
    EVENT_TTL = 30 * 24 * 3600
    REALTIME_TTL = 3600
    REPORT_TTL = 90 * 24 * 3600
    APPEAL_TTL = 60 * 24 * 3600
    APPEAL_STATS_TTL = 365 * 24 * 3600

    USER_EVENT_LIMIT = 100
    RECENT_EVENT_LIMIT = 100
    DASHBOARD_RECENT_EVENTS = 10
    MAX_PENDING_APPEALS = 3
    HIGH_PRIORITY_REPORT_TERMS = ('bot', 'cheat')

    # Dashboard
    THREAT_MIN_EVENTS = 10
    DEGRADED_LATENCY_MS = 250

    # Forensics
    DEFAULT_FORENSIC_WINDOW_MS = 7 * DAY_MS
    BURST_EVENTS_PER_MINUTE = 5

    def __init__(
        self,
        store: KVStore,
        broker: Optional[MessageBroker] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.broker = broker
        self.clock = clock or time.time

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _store_failed(self, operation: str, error: StoreError):
        logger.error(f"Security monitor {operation} failed: {error}")
        MetricsExporter.record_store_error(operation)

    # --- Event log ---

    @classmethod
    def event_severity(cls, event_type: SecurityEventType) -> Severity:
        return cls.EVENT_SEVERITY.get(event_type, Severity.LOW)

    def log_event(self, event: SecurityEvent) -> EnrichedSecurityEvent:
        """
        Enrich, persist and index an event.
        Store failures are logged; the enriched event is returned either way.
        """
        now = self._now_ms()
        enriched = EnrichedSecurityEvent(
            **event.model_dump(),
            id=str(uuid4()),
            timestamp=now,
            severity=self.event_severity(event.type),
            context=self._enrich_context(event),
        )
        index_entry = EventIndexEntry(
            id=enriched.id,
            type=enriched.type,
            severity=enriched.severity,
            user_id=enriched.user_id,
            timestamp=now,
        )
        MetricsExporter.record_security_event(enriched.type.value, enriched.severity.value)

        try:
            self.store.set(Keys.security_event(enriched.id), enriched.model_dump(mode="json"), self.EVENT_TTL)
            self._append_index(Keys.user_events(enriched.user_id), index_entry, self.USER_EVENT_LIMIT)
            self._append_index(Keys.recent_events(), index_entry, self.RECENT_EVENT_LIMIT)
            self._update_realtime_metrics(index_entry)
        except StoreError as e:
            self._store_failed("log_event", e)

        if enriched.severity == Severity.CRITICAL:
            self._trigger_immediate_alert(enriched)

        return enriched

    def _enrich_context(self, event: SecurityEvent) -> EventContext:
        data = event.data or {}
        previous = 0
        try:
            raw = self.store.get(Keys.violations(event.user_id))
            if raw:
                previous = UserViolations.model_validate(raw).total_violations
        except StoreError as e:
            self._store_failed("enrich_context", e)

        return EventContext(
            user_agent=str(data.get('user_agent') or 'unknown'),
            ip_address=str(data.get('ip_address') or 'unknown'),
            session_duration=int(data.get('session_duration') or 0),
            previous_violations=previous,
        )

    def _append_index(self, key: str, entry: EventIndexEntry, limit: int):
        record = entry.model_dump(mode="json")

        def append(current):
            entries = list(current or [])
            entries.append(record)
            return entries[-limit:]

        self.store.atomic_update(key, append, self.EVENT_TTL)

    def _update_realtime_metrics(self, entry: EventIndexEntry):
        record = entry.model_dump(mode="json")

        def update(current):
            window = RealTimeMetrics.model_validate(current) if current else RealTimeMetrics()
            cutoff = entry.timestamp - HOUR_MS
            events = [e.model_dump(mode="json") for e in window.events if e.timestamp > cutoff]
            events.append(record)
            return {'events': events, 'last_updated': entry.timestamp}

        updated = self.store.atomic_update(Keys.realtime_metrics(), update, self.REALTIME_TTL)
        MetricsExporter.update_events_last_hour(len(updated['events']))

    def _trigger_immediate_alert(self, event: EnrichedSecurityEvent):
        logger.warning(
            f"CRITICAL SECURITY EVENT: {event.type.value} for user {event.user_id} "
            f"(event {event.id}, ip {event.context.ip_address})"
        )
        alert = SecurityAlert(
            id=f"alert-event-{event.id}",
            type=AlertType.CRITICAL_EVENT,
            severity=Severity.CRITICAL,
            title=f"Critical security event: {event.type.value}",
            message=f"User {event.user_id} triggered {event.type.value}",
            timestamp=event.timestamp,
            action_required=True,
            suggested_actions=['Review user activity', 'Consider manual penalty'],
        )
        MetricsExporter.record_alert(alert.type.value)
        if self.broker is not None:
            self.broker.publish_critical_event(event.model_dump(mode="json"))

    def _load_events(self, index: List[dict]) -> List[EnrichedSecurityEvent]:
        events = []
        for item in index:
            raw = self.store.get(Keys.security_event(item['id']))
            if raw:
                events.append(EnrichedSecurityEvent.model_validate(raw))
        return events

    def get_user_events(self, user_id: str, time_range: Optional[TimeRange] = None) -> List[EnrichedSecurityEvent]:
        """Events logged for a user, oldest first; raises StoreError."""
        index = self.store.get(Keys.user_events(user_id)) or []
        if time_range is not None:
            index = [i for i in index if time_range.start <= i['timestamp'] <= time_range.end]
        return self._load_events(index)

    # --- Metrics and alerts ---

    def _events_last_hour(self) -> List[EventIndexEntry]:
        raw = self.store.get(Keys.realtime_metrics())
        if not raw:
            return []
        cutoff = self._now_ms() - HOUR_MS
        return [e for e in RealTimeMetrics.model_validate(raw).events if e.timestamp > cutoff]

    def get_security_metrics(self) -> SecurityMetrics:
        """Metrics over the rolling hour window; raises StoreError."""
        events = self._events_last_hour()
        by_type = TallyCounter(e.type.value for e in events)
        suspicious_users = {
            e.user_id for e in events
            if e.severity == Severity.CRITICAL or e.type == SecurityEventType.SUSPICIOUS_ACTIVITY
        }

        return SecurityMetrics(
            total_events=len(events),
            critical_violations=sum(1 for e in events if e.severity == Severity.CRITICAL),
            suspicious_users=len(suspicious_users),
            rate_limit_violations=by_type[SecurityEventType.RATE_LIMIT_VIOLATION.value],
            anomaly_detections=by_type[SecurityEventType.ANOMALY_DETECTION.value],
            false_positive_rate=self.calculate_false_positive_rate(),
            top_violation_types=[
                ViolationTypeCount(type=t, count=c)
                for t, c in sorted(by_type.items(), key=lambda kv: (-kv[1], kv[0]))[:5]
            ],
        )

    def calculate_false_positive_rate(self) -> float:
        """Share of decided appeals that were approved."""
        raw = self.store.get(Keys.appeal_stats())
        stats = AppealStats.model_validate(raw) if raw else AppealStats()
        decided = stats.approved + stats.denied
        return stats.approved / decided if decided else 0.0

    def generate_alerts(self, metrics: SecurityMetrics) -> List[SecurityAlert]:
        """Independent threshold rules; several may fire at once."""
        now = self._now_ms()
        alerts: List[SecurityAlert] = []

        if metrics.critical_violations >= self.ALERT_THRESHOLDS['critical_violations']:
            alerts.append(SecurityAlert(
                id=f"alert-critical-{now}",
                type=AlertType.CRITICAL_VIOLATIONS,
                severity=Severity.HIGH,
                title='High Number of Critical Violations',
                message=f"{metrics.critical_violations} critical violations detected in the last hour",
                timestamp=now,
                action_required=True,
                suggested_actions=[
                    'Review flagged users',
                    'Increase rate limiting',
                    'Enable CAPTCHA for suspicious IPs',
                ],
            ))

        if metrics.suspicious_users >= self.ALERT_THRESHOLDS['suspicious_users']:
            alerts.append(SecurityAlert(
                id=f"alert-suspicious-{now}",
                type=AlertType.SUSPICIOUS_ACTIVITY,
                severity=Severity.MEDIUM,
                title='Unusual Number of Suspicious Users',
                message=f"{metrics.suspicious_users} users flagged as suspicious in the last hour",
                timestamp=now,
                suggested_actions=['Monitor user patterns', 'Review anti-cheat thresholds'],
            ))

        if metrics.rate_limit_violations >= self.ALERT_THRESHOLDS['rate_limit_violations']:
            alerts.append(SecurityAlert(
                id=f"alert-ratelimit-{now}",
                type=AlertType.RATE_LIMIT_ABUSE,
                severity=Severity.MEDIUM,
                title='High Rate Limit Violations',
                message=f"{metrics.rate_limit_violations} rate limit violations in the last hour",
                timestamp=now,
                suggested_actions=['Review rate limit settings', 'Implement IP-based blocking'],
            ))

        if metrics.anomaly_detections >= self.ALERT_THRESHOLDS['anomaly_detections']:
            alerts.append(SecurityAlert(
                id=f"alert-anomaly-{now}",
                type=AlertType.ANOMALY_SPIKE,
                severity=Severity.LOW,
                title='Anomaly Detection Spike',
                message=f"{metrics.anomaly_detections} anomalies detected in the last hour",
                timestamp=now,
                suggested_actions=['Review anomaly detection parameters', 'Check for system issues'],
            ))

        for alert in alerts:
            logger.warning(f"Security alert {alert.type.value}: {alert.message}")
            MetricsExporter.record_alert(alert.type.value)
            if self.broker is not None:
                self.broker.publish_alert(alert.model_dump(mode="json"))

        return alerts

    # --- Dashboard ---

    def get_security_dashboard(self) -> SecurityDashboard:
        now = self._now_ms()
        try:
            health = self._system_health()
            metrics = self.get_security_metrics()
            threats = self._active_threats(self._events_last_hour())
            recent_index = (self.store.get(Keys.recent_events()) or [])[-self.DASHBOARD_RECENT_EVENTS:]
            recent_events = list(reversed(self._load_events(recent_index)))
        except StoreError as e:
            self._store_failed("dashboard", e)
            return SecurityDashboard(
                timestamp=now,
                metrics=SecurityMetrics(),
                system_health=SystemHealth(
                    anti_cheat_status=ComponentStatus.DEGRADED,
                    rate_limiting_status=ComponentStatus.DEGRADED,
                    monitoring_status=ComponentStatus.DOWN,
                    last_health_check=now,
                ),
                summary='Dashboard unavailable',
            )

        alerts = self.generate_alerts(metrics)
        return SecurityDashboard(
            timestamp=now,
            metrics=metrics,
            active_threats=threats,
            system_health=health,
            alerts=alerts,
            recent_events=recent_events,
            summary=f"{metrics.total_events} events, {len(alerts)} active alerts",
        )

    def _system_health(self) -> SystemHealth:
        started = time.perf_counter()
        self.store.get(Keys.realtime_metrics())
        latency_ms = (time.perf_counter() - started) * 1000
        status = ComponentStatus.DEGRADED if latency_ms > self.DEGRADED_LATENCY_MS else ComponentStatus.OPERATIONAL
        return SystemHealth(
            anti_cheat_status=status,
            rate_limiting_status=status,
            monitoring_status=status,
            last_health_check=self._now_ms(),
            store_latency_ms=latency_ms,
        )

    def _active_threats(self, events: List[EventIndexEntry]) -> List[ActiveThreat]:
        grouped: Dict[SecurityEventType, List[EventIndexEntry]] = {}
        for event in events:
            grouped.setdefault(event.type, []).append(event)

        threats = []
        for event_type, items in grouped.items():
            severity = self.event_severity(event_type)
            if severity != Severity.CRITICAL and len(items) < self.THREAT_MIN_EVENTS:
                continue
            users = {e.user_id for e in items}
            threats.append(ActiveThreat(
                id=f"threat-{event_type.value}",
                type=event_type.value,
                severity=severity,
                description=f"{len(items)} {event_type.value} events from {len(users)} users in the last hour",
                affected_users=len(users),
                first_detected=min(e.timestamp for e in items),
                last_seen=max(e.timestamp for e in items),
            ))
        return sorted(threats, key=lambda t: (-t.severity.rank, -t.affected_users))

    # --- Community reports ---

    def submit_community_report(self, report: CommunityReport) -> CommunityReportResult:
        reason = self._validate_report(report)
        if reason:
            return CommunityReportResult(success=False, message=reason, status=SubmissionStatus.REJECTED)

        now = self._now_ms()
        try:
            enriched = EnrichedCommunityReport(
                **report.model_dump(),
                id=f"report-{uuid4()}",
                submitted_at=now,
                priority=self.calculate_report_priority(report),
                server_evidence=self._gather_evidence(report.reported_user_id),
            )
            if enriched.priority == Priority.HIGH:
                enriched = self._auto_investigate(enriched)

            self.store.set(Keys.report(enriched.id), enriched.model_dump(mode="json"), self.REPORT_TTL)
            self.store.atomic_update(
                Keys.user_reports(report.reported_user_id),
                lambda ids: list(ids or []) + [enriched.id],
                self.REPORT_TTL,
            )
        except StoreError as e:
            self._store_failed("submit_report", e)
            return CommunityReportResult(
                success=False, message='Failed to submit report', status=SubmissionStatus.ERROR
            )

        self.log_event(SecurityEvent(
            type=SecurityEventType.COMMUNITY_REPORT,
            user_id=report.reported_user_id,
            reporter_id=report.reporter_id,
            data={'report_id': enriched.id, 'reason': report.reason, 'priority': enriched.priority.value},
        ))
        logger.info(f"Community report {enriched.id} against {report.reported_user_id} ({enriched.priority.value})")
        return CommunityReportResult(
            success=True, report_id=enriched.id,
            message='Report submitted successfully', status=SubmissionStatus.PENDING
        )

    @staticmethod
    def _validate_report(report: CommunityReport) -> Optional[str]:
        if not report.reported_user_id.strip() or not report.reporter_id.strip() or not report.reason.strip():
            return 'Missing required fields'
        if report.reported_user_id == report.reporter_id:
            return 'Cannot report yourself'
        return None

    def calculate_report_priority(self, report: CommunityReport) -> Priority:
        reason = report.reason.lower()
        if any(term in reason for term in self.HIGH_PRIORITY_REPORT_TERMS):
            return Priority.HIGH
        return Priority.MEDIUM

    def _gather_evidence(self, user_id: str) -> ReportEvidence:
        now = self._now_ms()
        penalty_level = 0
        raw_penalty = self.store.get(Keys.penalty(user_id))
        if raw_penalty:
            penalty = UserPenalty.model_validate(raw_penalty)
            if penalty.expires_at > now:
                penalty_level = penalty.level

        raw_violations = self.store.get(Keys.violations(user_id))
        recent_violations = 0
        if raw_violations:
            history = UserViolations.model_validate(raw_violations).history
            recent_violations = sum(1 for v in history if v.timestamp > now - DAY_MS)

        index = self.store.get(Keys.user_events(user_id)) or []
        recent_index = [i for i in index if i['timestamp'] > now - 7 * DAY_MS]
        log = self.store.get(Keys.validation_log(user_id)) or []

        return ReportEvidence(
            penalty_level=penalty_level,
            recent_violations=recent_violations,
            recent_security_events=len(recent_index),
            critical_events=sum(1 for i in recent_index if i['severity'] == Severity.CRITICAL.value),
            prior_reports=len(self.store.get(Keys.user_reports(user_id)) or []),
            validation_rejections=sum(
                1 for item in log if item['validation']['action'] == ValidationAction.REJECT.value
            ),
        )

    def _auto_investigate(self, report: EnrichedCommunityReport) -> EnrichedCommunityReport:
        forensic = self.conduct_forensic_analysis(report.reported_user_id)
        report.investigation = forensic.risk_assessment
        report.status = ReportStatus.INVESTIGATING
        report.updated_at = self._now_ms()
        logger.info(
            f"Auto-investigated report {report.id}: risk {forensic.risk_assessment.level.value} "
            f"({forensic.risk_assessment.score:.0f})"
        )
        return report

    def get_report(self, report_id: str) -> Optional[EnrichedCommunityReport]:
        raw = self.store.get(Keys.report(report_id))
        return EnrichedCommunityReport.model_validate(raw) if raw else None

    def update_report_status(
        self,
        report_id: str,
        status: ReportStatus,
        resolution: Optional[str] = None
    ) -> Optional[EnrichedCommunityReport]:
        """Move a report along its lifecycle; None if it does not exist."""
        now = self._now_ms()

        def update(current):
            if not current:
                return current
            report = EnrichedCommunityReport.model_validate(current)
            report.status = status
            report.updated_at = now
            if resolution is not None:
                report.resolution = resolution
            return report.model_dump(mode="json")

        try:
            if self.store.get(Keys.report(report_id)) is None:
                return None
            updated = self.store.atomic_update(Keys.report(report_id), update, self.REPORT_TTL)
        except StoreError as e:
            self._store_failed("update_report", e)
            return None
        if not updated:
            return None
        logger.info(f"Report {report_id} -> {status.value}")
        return EnrichedCommunityReport.model_validate(updated)

    # --- Appeals ---

    def submit_appeal(self, appeal: ScoreAppeal) -> AppealResult:
        if not appeal.user_id.strip() or not appeal.reason.strip():
            return AppealResult(success=False, message='Invalid appeal data', status=SubmissionStatus.REJECTED)

        now = self._now_ms()
        try:
            existing = self.get_user_appeals(appeal.user_id)
            pending = [a for a in existing if a.status == AppealStatus.PENDING]
            if len(pending) >= self.MAX_PENDING_APPEALS:
                return AppealResult(
                    success=False, message='Too many pending appeals', status=SubmissionStatus.REJECTED
                )

            enriched = EnrichedScoreAppeal(
                **appeal.model_dump(),
                id=f"appeal-{uuid4()}",
                submitted_at=now,
                priority=self.calculate_appeal_priority(appeal),
                server_evidence=self._gather_appeal_evidence(appeal),
            )
            self.store.set(Keys.appeal(enriched.id), enriched.model_dump(mode="json"), self.APPEAL_TTL)
            self.store.atomic_update(
                Keys.user_appeals(appeal.user_id),
                lambda ids: list(ids or []) + [enriched.id],
                self.APPEAL_TTL,
            )
        except StoreError as e:
            self._store_failed("submit_appeal", e)
            return AppealResult(success=False, message='Failed to submit appeal', status=SubmissionStatus.ERROR)

        self.log_event(SecurityEvent(
            type=SecurityEventType.SCORE_APPEAL,
            user_id=appeal.user_id,
            data={'appeal_id': enriched.id, 'flagged_score': appeal.flagged_score},
        ))
        logger.info(f"Appeal {enriched.id} submitted by {appeal.user_id}")
        return AppealResult(
            success=True, appeal_id=enriched.id,
            message='Appeal submitted successfully', status=SubmissionStatus.PENDING
        )

    @staticmethod
    def calculate_appeal_priority(appeal: ScoreAppeal) -> Priority:
        # Scores in the ordinary human range are the likeliest false positives
        if appeal.flagged_score is not None and appeal.flagged_score >= 150:
            return Priority.HIGH
        return Priority.MEDIUM

    def _gather_appeal_evidence(self, appeal: ScoreAppeal) -> AppealEvidence:
        now = self._now_ms()
        raw_penalty = self.store.get(Keys.penalty(appeal.user_id))
        active_penalty = bool(raw_penalty) and UserPenalty.model_validate(raw_penalty).expires_at > now

        raw_violations = self.store.get(Keys.violations(appeal.user_id))
        recent_violations = 0
        if raw_violations:
            history = UserViolations.model_validate(raw_violations).history
            recent_violations = sum(1 for v in history if v.timestamp > now - DAY_MS)

        history = [float(t) for t in (self.store.get(Keys.history(appeal.user_id)) or [])]
        return AppealEvidence(
            active_penalty=active_penalty,
            recent_violations=recent_violations,
            personal_best=min(history) if history else None,
            history_mean=sum(history) / len(history) if history else None,
            history_size=len(history),
        )

    def get_user_appeals(self, user_id: str) -> List[EnrichedScoreAppeal]:
        appeals = []
        for appeal_id in self.store.get(Keys.user_appeals(user_id)) or []:
            raw = self.store.get(Keys.appeal(appeal_id))
            if raw:
                appeals.append(EnrichedScoreAppeal.model_validate(raw))
        return appeals

    def review_appeal(
        self,
        appeal_id: str,
        status: AppealStatus,
        reviewer_id: str,
        notes: Optional[str] = None
    ) -> Optional[EnrichedScoreAppeal]:
        """Record a review decision; approved/denied outcomes feed the false-positive rate."""
        now = self._now_ms()
        decided = (AppealStatus.APPROVED, AppealStatus.DENIED)
        previous: Dict[str, Optional[AppealStatus]] = {'status': None}

        def update(current):
            if not current:
                return current
            appeal = EnrichedScoreAppeal.model_validate(current)
            previous['status'] = appeal.status
            appeal.status = status
            appeal.reviewer_id = reviewer_id
            appeal.review_notes = notes
            appeal.updated_at = now
            return appeal.model_dump(mode="json")

        def count(current):
            stats = AppealStats.model_validate(current) if current else AppealStats()
            if status == AppealStatus.APPROVED:
                stats.approved += 1
            else:
                stats.denied += 1
            return stats.model_dump(mode="json")

        try:
            if self.store.get(Keys.appeal(appeal_id)) is None:
                return None
            updated = self.store.atomic_update(Keys.appeal(appeal_id), update, self.APPEAL_TTL)
            if updated and status in decided and previous['status'] not in decided:
                self.store.atomic_update(Keys.appeal_stats(), count, self.APPEAL_STATS_TTL)
        except StoreError as e:
            self._store_failed("review_appeal", e)
            return None
        if not updated:
            return None

        logger.info(f"Appeal {appeal_id} -> {status.value} by {reviewer_id}")
        return EnrichedScoreAppeal.model_validate(updated)

    # --- Forensics ---

    def conduct_forensic_analysis(self, user_id: str, time_range: Optional[TimeRange] = None) -> ForensicReport:
        """Read-only reconstruction of a user's activity over time_range (default: last 7 days)."""
        now = self._now_ms()
        time_range = time_range or TimeRange(start=now - self.DEFAULT_FORENSIC_WINDOW_MS, end=now)

        def in_range(ts: int) -> bool:
            return time_range.start <= ts <= time_range.end

        try:
            events = self.get_user_events(user_id, time_range)
            raw_violations = self.store.get(Keys.violations(user_id))
            violations = []
            if raw_violations:
                violations = [
                    v for v in UserViolations.model_validate(raw_violations).history if in_range(v.timestamp)
                ]
            validations = [
                entry for entry in (
                    ValidationLogEntry.model_validate(item)
                    for item in (self.store.get(Keys.validation_log(user_id)) or [])
                )
                if in_range(entry.timestamp)
            ]
        except StoreError as e:
            self._store_failed("forensics", e)
            return ForensicReport(
                user_id=user_id,
                time_range=time_range,
                generated_at=now,
                risk_assessment=RiskAssessment(
                    level=Severity.LOW, score=0.0,
                    factors=['Data unavailable'], verdict=Verdict.INCONCLUSIVE
                ),
                recommendations=['Retry analysis when storage is available'],
            )

        patterns = self._analyze_patterns(events, violations)
        statistics = self._statistical_analysis(validations)
        timeline = self._build_timeline(events, violations, validations)
        risk = self._assess_risk(events, violations, patterns, statistics)

        return ForensicReport(
            user_id=user_id,
            time_range=time_range,
            generated_at=now,
            events=events,
            violation_count=len(violations),
            pattern_analysis=patterns,
            statistical_analysis=statistics,
            timeline=timeline,
            risk_assessment=risk,
            recommendations=self._recommendations(risk),
        )

    def _analyze_patterns(self, events, violations) -> PatternAnalysis:
        timestamps = [e.timestamp for e in events] + [v.timestamp for v in violations]
        if not timestamps:
            return PatternAnalysis()

        hourly = TallyCounter(datetime.fromtimestamp(ts / 1000, tz=timezone.utc).hour for ts in timestamps)
        per_minute = TallyCounter(ts // 60000 for ts in timestamps)
        max_per_minute = max(per_minute.values())

        return PatternAnalysis(
            event_counts=dict(TallyCounter(e.type.value for e in events)),
            hourly_distribution=dict(sorted(hourly.items())),
            peak_hour=max(sorted(hourly), key=lambda h: hourly[h]),
            burst_detected=max_per_minute >= self.BURST_EVENTS_PER_MINUTE,
            max_events_per_minute=max_per_minute,
        )

    @staticmethod
    def _statistical_analysis(validations: List[ValidationLogEntry]) -> ForensicStatistics:
        times = [e.reaction_time for e in validations if e.reaction_time is not None]
        if not validations:
            return ForensicStatistics()

        rejections = sum(1 for e in validations if e.validation.action == ValidationAction.REJECT)
        return ForensicStatistics(
            sample_size=len(times),
            statistics=calculate_basic_statistics(times),
            coefficient_of_variation=coefficient_of_variation(times),
            trend=calculate_trend(times),
            outlier_count=sum(1 for e in validations if e.outlier_analysis and e.outlier_analysis.is_outlier),
            rejection_rate=rejections / len(validations),
        )

    @staticmethod
    def _build_timeline(events, violations, validations) -> List[TimelineEntry]:
        timeline = [
            TimelineEntry(
                timestamp=e.timestamp, kind='security_event',
                description=f"{e.type.value} event", severity=e.severity
            )
            for e in events
        ]
        timeline += [
            TimelineEntry(
                timestamp=v.timestamp, kind='violation',
                description=f"{v.type.value} violation on {v.action}", severity=Severity.MEDIUM
            )
            for v in violations
        ]
        timeline += [
            TimelineEntry(
                timestamp=e.timestamp, kind='validation',
                description=(
                    f"{e.validation.action.value} {e.reaction_time}ms "
                    f"({', '.join(sorted(f.value for f in e.validation.flags)) or 'no flags'})"
                ),
                severity=e.severity
            )
            for e in validations if e.validation.action != ValidationAction.ACCEPT
        ]
        return sorted(timeline, key=lambda t: t.timestamp)

    @staticmethod
    def _assess_risk(events, violations, patterns: PatternAnalysis, stats: ForensicStatistics) -> RiskAssessment:
        score = 0.0
        factors = []

        critical = sum(1 for e in events if e.severity == Severity.CRITICAL)
        if critical:
            score += min(40, critical * 20)
            factors.append(f"{critical} critical security events")
        medium = sum(1 for e in events if e.severity == Severity.MEDIUM)
        if medium:
            score += min(20, medium * 5)
            factors.append(f"{medium} medium-severity security events")
        if violations:
            score += min(20, len(violations) * 3)
            factors.append(f"{len(violations)} rate-limit violations")
        if stats.rejection_rate > 0:
            score += stats.rejection_rate * 30
            factors.append(f"{stats.rejection_rate:.0%} of validations rejected")
        if stats.sample_size >= 10 and stats.coefficient_of_variation < 0.05:
            score += 20
            factors.append('Machine-like timing consistency')
        if patterns.burst_detected:
            score += 10
            factors.append(f"Burst of {patterns.max_events_per_minute} events in one minute")

        score = min(100.0, score)
        if score >= 75:
            level = Severity.CRITICAL
        elif score >= 50:
            level = Severity.HIGH
        elif score >= 25:
            level = Severity.MEDIUM
        else:
            level = Severity.LOW

        verdict = Verdict.FAIL if level.rank >= Severity.HIGH.rank else Verdict.PASS
        return RiskAssessment(level=level, score=score, factors=factors, verdict=verdict)

    @staticmethod
    def _recommendations(risk: RiskAssessment) -> List[str]:
        if risk.level == Severity.CRITICAL:
            return ['Suspend leaderboard eligibility', 'Remove flagged scores', 'Apply maximum penalty']
        if risk.level == Severity.HIGH:
            return ['Manual review of recent scores', 'Require CAPTCHA on submissions']
        if risk.level == Severity.MEDIUM:
            return ['Monitor user activity']
        return ['No action required']
