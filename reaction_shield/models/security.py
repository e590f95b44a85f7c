"""
Security monitoring data models.
Events, alerts, dashboard read models, community reports, appeals and forensic reports.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from reaction_shield.models.enums import (
    SecurityEventType, Severity, AlertType, Priority, ReportStatus,
    AppealStatus, SubmissionStatus, ComponentStatus, PerformanceTrend, Verdict
)
from reaction_shield.models.validation import BasicStatistics


class SecurityEvent(BaseModel):
    """Raw event as reported by a service."""
    type: SecurityEventType
    user_id: str
    reporter_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class EventContext(BaseModel):
    user_agent: str = "unknown"
    ip_address: str = "unknown"
    session_duration: int = 0
    previous_violations: int = 0


class EnrichedSecurityEvent(SecurityEvent):
    """Event as persisted: severity is a pure function of type."""
    id: str
    timestamp: int  # epoch ms
    severity: Severity
    context: EventContext = Field(default_factory=EventContext)


class EventIndexEntry(BaseModel):
    """Pointer kept in the per-user and global event lists."""
    id: str
    type: SecurityEventType
    severity: Severity
    user_id: str
    timestamp: int


class RealTimeMetrics(BaseModel):
    """Rolling window of recent events, trimmed to the last hour."""
    events: List[EventIndexEntry] = Field(default_factory=list)
    last_updated: int = 0


class ViolationTypeCount(BaseModel):
    type: str
    count: int


class SecurityMetrics(BaseModel):
    total_events: int = 0
    critical_violations: int = 0
    suspicious_users: int = 0
    rate_limit_violations: int = 0
    anomaly_detections: int = 0
    false_positive_rate: float = 0.0
    top_violation_types: List[ViolationTypeCount] = Field(default_factory=list)


class SecurityAlert(BaseModel):
    id: str
    type: AlertType
    severity: Severity
    title: str
    message: str
    timestamp: int
    action_required: bool = False
    suggested_actions: List[str] = Field(default_factory=list)


class ActiveThreat(BaseModel):
    id: str
    type: str
    severity: Severity
    description: str
    affected_users: int
    first_detected: int
    last_seen: int


class SystemHealth(BaseModel):
    anti_cheat_status: ComponentStatus = ComponentStatus.OPERATIONAL
    rate_limiting_status: ComponentStatus = ComponentStatus.OPERATIONAL
    monitoring_status: ComponentStatus = ComponentStatus.OPERATIONAL
    last_health_check: int = 0
    store_latency_ms: float = 0.0


class SecurityDashboard(BaseModel):
    timestamp: int
    metrics: SecurityMetrics
    active_threats: List[ActiveThreat] = Field(default_factory=list)
    system_health: SystemHealth
    alerts: List[SecurityAlert] = Field(default_factory=list)
    recent_events: List[EnrichedSecurityEvent] = Field(default_factory=list)
    summary: str


class AppealStats(BaseModel):
    """Counters used to estimate the false-positive rate."""
    approved: int = 0
    denied: int = 0


class CommunityReport(BaseModel):
    reported_user_id: str = ""
    reporter_id: str = ""
    reason: str = ""
    description: Optional[str] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)


class ReportEvidence(BaseModel):
    """Server-side evidence gathered about the reported user."""
    penalty_level: int = 0
    recent_violations: int = 0
    recent_security_events: int = 0
    critical_events: int = 0
    prior_reports: int = 0
    validation_rejections: int = 0


class EnrichedCommunityReport(CommunityReport):
    id: str
    submitted_at: int
    status: ReportStatus = ReportStatus.PENDING
    priority: Priority
    server_evidence: ReportEvidence = Field(default_factory=ReportEvidence)
    investigation: Optional["RiskAssessment"] = None
    resolution: Optional[str] = None
    updated_at: Optional[int] = None


class CommunityReportResult(BaseModel):
    success: bool
    report_id: Optional[str] = None
    message: str
    status: SubmissionStatus


class ScoreAppeal(BaseModel):
    user_id: str = ""
    flagged_score: Optional[float] = None
    reason: str = ""
    evidence: Dict[str, Any] = Field(default_factory=dict)


class AppealEvidence(BaseModel):
    active_penalty: bool = False
    recent_violations: int = 0
    personal_best: Optional[float] = None
    history_mean: Optional[float] = None
    history_size: int = 0


class EnrichedScoreAppeal(ScoreAppeal):
    id: str
    submitted_at: int
    status: AppealStatus = AppealStatus.PENDING
    priority: Priority
    server_evidence: AppealEvidence = Field(default_factory=AppealEvidence)
    reviewer_id: Optional[str] = None
    review_notes: Optional[str] = None
    updated_at: Optional[int] = None


class AppealResult(BaseModel):
    success: bool
    appeal_id: Optional[str] = None
    message: str
    status: SubmissionStatus


class TimeRange(BaseModel):
    start: int
    end: int


class TimelineEntry(BaseModel):
    timestamp: int
    kind: str  # security_event | violation | validation
    description: str
    severity: Severity = Severity.LOW


class PatternAnalysis(BaseModel):
    event_counts: Dict[str, int] = Field(default_factory=dict)
    hourly_distribution: Dict[int, int] = Field(default_factory=dict)
    peak_hour: Optional[int] = None
    burst_detected: bool = False
    max_events_per_minute: int = 0


class ForensicStatistics(BaseModel):
    sample_size: int = 0
    statistics: BasicStatistics = Field(default_factory=BasicStatistics)
    coefficient_of_variation: float = 0.0
    trend: PerformanceTrend = PerformanceTrend.INSUFFICIENT_DATA
    outlier_count: int = 0
    rejection_rate: float = 0.0


class RiskAssessment(BaseModel):
    level: Severity
    score: float = Field(ge=0.0, le=100.0)
    factors: List[str] = Field(default_factory=list)
    verdict: Verdict = Verdict.PASS


class ForensicReport(BaseModel):
    user_id: str
    time_range: TimeRange
    generated_at: int
    events: List[EnrichedSecurityEvent] = Field(default_factory=list)
    violation_count: int = 0
    pattern_analysis: PatternAnalysis = Field(default_factory=PatternAnalysis)
    statistical_analysis: ForensicStatistics = Field(default_factory=ForensicStatistics)
    timeline: List[TimelineEntry] = Field(default_factory=list)
    risk_assessment: RiskAssessment
    recommendations: List[str] = Field(default_factory=list)


EnrichedCommunityReport.model_rebuild()
