"""
Enumeration definitions for the reaction-time anti-abuse core.
Decisions, flags, severities and ticket states shared by all services.
"""

from enum import Enum


class ValidationAction(str, Enum):
    """Final decision for a submitted score."""
    ACCEPT = "accept"
    FLAG = "flag"       # Stored, but held for review
    REJECT = "reject"   # Never reaches the leaderboard


class Verdict(str, Enum):
    """
    Outcome of a check that may not be computable.
    INCONCLUSIVE means the store failed and the caller picks the policy.
    """
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class ValidationFlag(str, Enum):
    """Flags raised by plausibility validation."""
    # Magnitude bands
    INVALID_NUMBER = "INVALID_NUMBER"
    PHYSICALLY_IMPOSSIBLE = "PHYSICALLY_IMPOSSIBLE"
    IMPOSSIBLY_FAST = "IMPOSSIBLY_FAST"
    SUPERHUMAN_SPEED = "SUPERHUMAN_SPEED"
    SUSPICIOUSLY_FAST = "SUSPICIOUSLY_FAST"
    VERY_FAST = "VERY_FAST"
    UNUSUALLY_SLOW = "UNUSUALLY_SLOW"

    # Precision
    SUSPICIOUS_ROUND_NUMBER = "SUSPICIOUS_ROUND_NUMBER"
    NO_DECIMAL_PRECISION = "NO_DECIMAL_PRECISION"
    EXCESSIVE_PRECISION = "EXCESSIVE_PRECISION"

    # Session / game duration
    INSTANT_SUBMISSION = "INSTANT_SUBMISSION"
    VERY_QUICK_SUBMISSION = "VERY_QUICK_SUBMISSION"
    GAME_TOO_SHORT = "GAME_TOO_SHORT"
    SKIPPED_LIGHT_SEQUENCE = "SKIPPED_LIGHT_SEQUENCE"
    EXCESSIVE_SUBMISSIONS = "EXCESSIVE_SUBMISSIONS"

    # Device capabilities
    DEVICE_PRECISION_MISMATCH = "DEVICE_PRECISION_MISMATCH"
    TIMING_API_UNAVAILABLE = "TIMING_API_UNAVAILABLE"
    MOBILE_IMPOSSIBLE_PRECISION = "MOBILE_IMPOSSIBLE_PRECISION"
    MOBILE_TIMING_SUSPICIOUS = "MOBILE_TIMING_SUSPICIOUS"
    LOW_REFRESH_RATE_MISMATCH = "LOW_REFRESH_RATE_MISMATCH"
    LOW_PRECISION_DEVICE = "LOW_PRECISION_DEVICE"
    PRECISION_CAPABILITY_MISMATCH = "PRECISION_CAPABILITY_MISMATCH"
    SAFARI_TIMING_LIMITATION = "SAFARI_TIMING_LIMITATION"
    FIREFOX_TIMING_SUSPICIOUS = "FIREFOX_TIMING_SUSPICIOUS"
    LEGACY_BROWSER_TIMING = "LEGACY_BROWSER_TIMING"

    # Added when statistical checks are combined in
    STATISTICAL_OUTLIER = "STATISTICAL_OUTLIER"
    BOT_LIKE_CONSISTENCY = "BOT_LIKE_CONSISTENCY"
    SUSPICIOUS_BEHAVIOR = "SUSPICIOUS_BEHAVIOR"


# Any of these forces a reject regardless of confidence
AUTO_REJECT_FLAGS = frozenset({
    ValidationFlag.INVALID_NUMBER,
    ValidationFlag.PHYSICALLY_IMPOSSIBLE,
    ValidationFlag.IMPOSSIBLY_FAST,
    ValidationFlag.INSTANT_SUBMISSION,
})


class OutlierReason(str, Enum):
    """Classification produced by the outlier detector."""
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    NORMAL_VARIATION = "NORMAL_VARIATION"
    ZERO_VARIANCE_SUSPICIOUS = "ZERO_VARIANCE_SUSPICIOUS"
    MODERATE_IMPROVEMENT = "MODERATE_IMPROVEMENT"
    SIGNIFICANT_IMPROVEMENT = "SIGNIFICANT_IMPROVEMENT"
    DRAMATIC_IMPROVEMENT = "DRAMATIC_IMPROVEMENT"
    SUDDEN_DRAMATIC_IMPROVEMENT = "SUDDEN_DRAMATIC_IMPROVEMENT"
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    BOT_LIKE_CONSISTENCY = "BOT_LIKE_CONSISTENCY"
    INCONCLUSIVE = "INCONCLUSIVE"


class BehaviorFlag(str, Enum):
    """Flags raised by the behaviour profiler."""
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    UNUSUALLY_LOW_FALSE_START_RATE = "UNUSUALLY_LOW_FALSE_START_RATE"
    IMPOSSIBLY_LOW_FALSE_START_RATE = "IMPOSSIBLY_LOW_FALSE_START_RATE"
    EXCESSIVE_FALSE_STARTS = "EXCESSIVE_FALSE_STARTS"
    INCONSISTENT_FALSE_START_PATTERN = "INCONSISTENT_FALSE_START_PATTERN"
    PERFECT_STREAK_SUSPICIOUS = "PERFECT_STREAK_SUSPICIOUS"
    MACHINE_LIKE_PRECISION = "MACHINE_LIKE_PRECISION"
    UNREALISTIC_IMPROVEMENT_RATE = "UNREALISTIC_IMPROVEMENT_RATE"
    ROBOTIC_TIMING_RHYTHM = "ROBOTIC_TIMING_RHYTHM"


# Reported for context only; they never count as suspicious behaviour
INFORMATIONAL_BEHAVIOR_FLAGS = frozenset({
    BehaviorFlag.INSUFFICIENT_DATA,
})


class PerformanceTrend(str, Enum):
    """Direction of a user's reaction times over their history."""
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


class TimeOfDay(str, Enum):
    NORMAL = "normal"
    UNUSUAL = "unusual"


class SessionLength(str, Enum):
    SHORT = "short"
    NORMAL = "normal"
    LONG = "long"


class RateLimitAction(str, Enum):
    """Actions subject to per-user rate limiting."""
    SCORE_SUBMISSION = "score_submission"
    LEADERBOARD_VIEW = "leaderboard_view"
    CHALLENGE_CREATE = "challenge_create"
    CHALLENGE_ACCEPT = "challenge_accept"


class RateLimitScope(str, Enum):
    USER = "user"
    IP = "ip"
    PENALTY = "penalty"


class WhitelistLevel(str, Enum):
    """Whitelist tiers; each multiplies base limits upward."""
    VERIFIED = "verified"
    MODERATOR = "moderator"
    ADMIN = "admin"


class ViolationKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    MANUAL = "manual"


class CaptchaDifficulty(str, Enum):
    NORMAL = "normal"
    HARD = "hard"


class ActivityRecommendation(str, Enum):
    ALLOW = "allow"
    MONITOR = "monitor"
    BLOCK = "block"


class Severity(str, Enum):
    """Severity of security events, alerts and validation logs."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class SecurityEventType(str, Enum):
    """Types of events reported to the security monitor."""
    IMPOSSIBLE_TIME = "impossible_time"
    BOT_DETECTION = "bot_detection"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_VIOLATION = "rate_limit_violation"
    ANOMALY_DETECTION = "anomaly_detection"
    COMMUNITY_REPORT = "community_report"
    SCORE_APPEAL = "score_appeal"


class AlertType(str, Enum):
    CRITICAL_VIOLATIONS = "critical_violations"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_ABUSE = "rate_limit_abuse"
    ANOMALY_SPIKE = "anomaly_spike"
    CRITICAL_EVENT = "critical_event"


class Priority(str, Enum):
    """Ticket priority for community reports and appeals."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReportStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class AppealStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    DENIED = "denied"


class SubmissionStatus(str, Enum):
    """Status returned to the submitter of a report or appeal."""
    PENDING = "pending"
    REJECTED = "rejected"
    ERROR = "error"


class ComponentStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    DOWN = "down"
