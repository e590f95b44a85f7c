"""
Rate limiting and penalty data models.
Sliding-window records, progressive penalties and whitelist entries.
"""

from typing import Optional, List
from pydantic import BaseModel, Field

from reaction_shield.models.enums import (
    RateLimitAction, RateLimitScope, WhitelistLevel, ViolationKind,
    Verdict, CaptchaDifficulty, ActivityRecommendation
)


class RateLimitData(BaseModel):
    """
    Per-(identity, action) sliding windows.
    Each list holds epoch-ms timestamps still inside its window.
    """
    minute: List[int] = Field(default_factory=list)
    hour: List[int] = Field(default_factory=list)
    day: List[int] = Field(default_factory=list)


class UsageCounts(BaseModel):
    minute: int = 0
    hour: int = 0
    day: int = 0


class RateLimitResult(BaseModel):
    """
    Allow/deny decision for one action.
    verdict is INCONCLUSIVE when the store failed; allowed then follows the fail-open policy.
    """
    allowed: bool
    remaining: int = Field(ge=0)
    reset_time: int  # epoch ms
    reason: Optional[str] = None
    verdict: Verdict = Verdict.PASS
    scope: RateLimitScope = RateLimitScope.USER


class RateLimitStatus(BaseModel):
    """Full usage breakdown for client-facing 'submissions remaining' displays."""
    action: RateLimitAction
    limits: UsageCounts
    usage: UsageCounts
    remaining: UsageCounts
    reset_times: UsageCounts
    is_limited: bool
    verdict: Verdict = Verdict.PASS


class UserPenalty(BaseModel):
    """Temporary lockout; while unexpired every rate-limit check is denied."""
    user_id: str
    level: int = Field(ge=1, le=5)
    reason: str
    applied_at: int
    expires_at: int
    multiplier: float


class ViolationRecord(BaseModel):
    action: str
    timestamp: int
    type: ViolationKind = ViolationKind.RATE_LIMIT
    user_id: Optional[str] = None


class UserViolations(BaseModel):
    """Append-only violation history, capped at 100 entries."""
    user_id: str
    total_violations: int = 0
    history: List[ViolationRecord] = Field(default_factory=list)


class IPViolations(BaseModel):
    ip_address: str
    total_violations: int = 0
    history: List[ViolationRecord] = Field(default_factory=list)


class WhitelistEntry(BaseModel):
    user_id: str
    level: WhitelistLevel
    reason: str
    added_at: int
    added_by: str = "system"


class CaptchaRequirement(BaseModel):
    required: bool
    reason: str
    difficulty: CaptchaDifficulty = CaptchaDifficulty.NORMAL


class SuspiciousActivityResult(BaseModel):
    user_id: str
    suspicion_score: float = Field(ge=0.0, le=1.0)
    flags: List[str] = Field(default_factory=list)
    is_suspicious: bool
    recommendation: ActivityRecommendation
    timestamp: int
