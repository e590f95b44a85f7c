"""
Validation data models.
Per-submission results produced by the plausibility, outlier and behaviour checks.
"""

import math
from typing import Optional, List, Dict, Set, Any
from pydantic import BaseModel, Field, field_serializer, field_validator

from reaction_shield.models.enums import (
    ValidationAction, ValidationFlag, OutlierReason, BehaviorFlag, INFORMATIONAL_BEHAVIOR_FLAGS,
    PerformanceTrend, TimeOfDay, SessionLength, Severity
)


class ValidationResult(BaseModel):
    """
    Outcome of validating a single reaction time.
    action is REJECT whenever confidence is 0 or an auto-reject flag is present.
    """
    is_valid: bool
    confidence: float = Field(ge=0.0, le=1.0)
    flags: Set[ValidationFlag] = Field(default_factory=set)
    action: ValidationAction

    @field_serializer("flags")
    def _serialize_flags(self, flags: Set[ValidationFlag]) -> List[str]:
        return sorted(flag.value for flag in flags)


class SessionStatistics(BaseModel):
    """Cumulative per-session counters, owned by the user session."""
    games_played: int = Field(ge=0, default=0)
    average_time: float = 0.0
    false_starts: int = Field(ge=0, default=0)
    perfect_scores: int = Field(ge=0, default=0)
    improvement_rate: float = 0.0


class SessionData(BaseModel):
    """The slice of a user session the validators look at."""
    user_id: Optional[str] = None
    session_start: Optional[int] = None  # epoch ms
    session_stats: Optional[SessionStatistics] = None


class DeviceCapabilities(BaseModel):
    """Client-reported timing capabilities."""
    high_resolution_time: bool = True
    performance_api: bool = True
    is_mobile: bool = False
    timing_precision: Optional[float] = None  # milliseconds
    user_agent: Optional[str] = None
    screen_refresh_rate: Optional[float] = None  # Hz


class ContextualFactors(BaseModel):
    """Optional context that raises confidence of an outlier call."""
    time_of_day: TimeOfDay = TimeOfDay.NORMAL
    session_length: SessionLength = SessionLength.NORMAL
    device_change: bool = False
    network_latency: float = 0.0  # ms


class OutlierAnalysis(BaseModel):
    """
    Z-score comparison of a new time against the user's recent history.
    z_score is infinite for zero-variance histories.
    """
    is_outlier: bool
    z_score: float = Field(ge=0.0)
    confidence: float = Field(ge=0.0, le=1.0)
    reason: OutlierReason

    @field_validator("z_score", mode="before")
    @classmethod
    def _load_infinite(cls, value: Any) -> Any:
        return math.inf if value is None else value

    @field_serializer("z_score")
    def _serialize_z_score(self, value: float) -> Optional[float]:
        # JSON has no infinity
        return None if math.isinf(value) else value


class BehaviorProfile(BaseModel):
    """Suspicion profile computed from accumulated session counters."""
    consistency_score: float = Field(ge=0.0, le=1.0)
    false_start_rate: float = Field(ge=0.0, le=1.0)
    improvement_pattern: float
    suspicious_flags: Set[BehaviorFlag] = Field(default_factory=set)

    @property
    def risk_flags(self) -> Set[BehaviorFlag]:
        """suspicious_flags without the informational ones"""
        return self.suspicious_flags - INFORMATIONAL_BEHAVIOR_FLAGS

    @field_serializer("suspicious_flags")
    def _serialize_flags(self, flags: Set[BehaviorFlag]) -> List[str]:
        return sorted(flag.value for flag in flags)


class FalseStartAnalysis(BaseModel):
    false_start_rate: float
    recent_rate: float
    flags: List[BehaviorFlag] = Field(default_factory=list)
    suspicious_score: float = Field(ge=0.0, le=1.0)
    is_normal: bool


class BasicStatistics(BaseModel):
    mean: float = 0.0
    median: float = 0.0
    standard_deviation: float = 0.0
    variance: float = 0.0
    min: float = 0.0
    max: float = 0.0


class ImprovementMetrics(BaseModel):
    rate: float = 0.0         # first half vs second half
    consistency: float = 0.0  # 1 / (1 + variance of rolling improvements)
    recent: float = 0.0       # last 10 vs previous 10


class PerformanceProfile(BaseModel):
    """Rolling performance history of one user."""
    user_id: str
    history: List[float] = Field(default_factory=list)
    statistics: BasicStatistics = Field(default_factory=BasicStatistics)
    trend: PerformanceTrend = PerformanceTrend.INSUFFICIENT_DATA
    volatility: float = 0.0
    improvement: ImprovementMetrics = Field(default_factory=ImprovementMetrics)
    last_updated: int = 0  # epoch ms


class BrowserInfo(BaseModel):
    name: str = "unknown"
    engine: str = "unknown"


class ValidationLogMetadata(BaseModel):
    flag_count: int = 0
    primary_flag: str = "NONE"
    device_type: str = "desktop"
    timing_precision: float = 0.0
    session_duration: int = 0
    game_count: int = 0
    browser: BrowserInfo = Field(default_factory=BrowserInfo)
    risk_score: float = Field(ge=0.0, le=100.0, default=0.0)


class ValidationLogEntry(BaseModel):
    """Forensic record of one validated submission."""
    user_id: str
    timestamp: int  # epoch ms
    reaction_time: Optional[float] = None
    validation: ValidationResult
    outlier_analysis: Optional[OutlierAnalysis] = None
    behavior_profile: Optional[BehaviorProfile] = None
    device_capabilities: Optional[DeviceCapabilities] = None
    severity: Severity = Severity.LOW
    metadata: ValidationLogMetadata = Field(default_factory=ValidationLogMetadata)
    requires_review: bool = False
    escalation_reason: Optional[str] = None


class ValidationMetrics(BaseModel):
    """Hourly validation counters kept in the store."""
    total_validations: int = 0
    rejected_validations: int = 0
    flagged_validations: int = 0
    accepted_validations: int = 0
    average_confidence: float = 0.0
    flag_counts: Dict[str, int] = Field(default_factory=dict)
    severity_distribution: Dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in Severity}
    )


class AutoFlaggedUser(BaseModel):
    user_id: str
    first_flagged: int
    last_flagged: int
    flag_count: int = 0
    flags: List[str] = Field(default_factory=list)
    severity: Severity = Severity.LOW


class UserValidationStats(BaseModel):
    user_id: str
    total_validations: int
    rejected_count: int
    flagged_count: int
    accepted_count: int
    average_confidence: float
    flag_frequency: Dict[str, int] = Field(default_factory=dict)
    last_validation: int
    risk_level: Severity


class PlausibilityValidationResult(BaseModel):
    """validate_submission output: the decision plus its log entry."""
    validation: ValidationResult
    log_entry: Optional[ValidationLogEntry] = None
    processing_time_ms: float = 0.0
    auto_flagged: bool = False
