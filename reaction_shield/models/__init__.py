"""
Data models for the anti-abuse core.

    from reaction_shield.models import ValidationResult, RateLimitResult, SecurityEvent
"""

from reaction_shield.models.enums import (
    ValidationAction,
    ValidationFlag,
    AUTO_REJECT_FLAGS,
    INFORMATIONAL_BEHAVIOR_FLAGS,
    Verdict,
    OutlierReason,
    BehaviorFlag,
    RateLimitAction,
    WhitelistLevel,
    SecurityEventType,
    Severity,
)
from reaction_shield.models.validation import (
    ValidationResult,
    SessionStatistics,
    SessionData,
    DeviceCapabilities,
    ContextualFactors,
    OutlierAnalysis,
    BehaviorProfile,
)
from reaction_shield.models.rate_limit import (
    RateLimitData,
    RateLimitResult,
    RateLimitStatus,
    UserPenalty,
    WhitelistEntry,
)
from reaction_shield.models.security import (
    SecurityEvent,
    EnrichedSecurityEvent,
    SecurityAlert,
    SecurityDashboard,
    CommunityReport,
    ScoreAppeal,
    ForensicReport,
    TimeRange,
)
from reaction_shield.models.submission import SubmissionPayload, SubmissionDecision

__all__ = [
    'ValidationAction',
    'ValidationFlag',
    'AUTO_REJECT_FLAGS',
    'INFORMATIONAL_BEHAVIOR_FLAGS',
    'Verdict',
    'OutlierReason',
    'BehaviorFlag',
    'RateLimitAction',
    'WhitelistLevel',
    'SecurityEventType',
    'Severity',
    'ValidationResult',
    'SessionStatistics',
    'SessionData',
    'DeviceCapabilities',
    'ContextualFactors',
    'OutlierAnalysis',
    'BehaviorProfile',
    'RateLimitData',
    'RateLimitResult',
    'RateLimitStatus',
    'UserPenalty',
    'WhitelistEntry',
    'SecurityEvent',
    'EnrichedSecurityEvent',
    'SecurityAlert',
    'SecurityDashboard',
    'CommunityReport',
    'ScoreAppeal',
    'ForensicReport',
    'TimeRange',
    'SubmissionPayload',
    'SubmissionDecision',
]
