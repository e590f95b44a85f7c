"""
Submission models.
The inbound payload of one score submission and the combined outcome of the
rate limit gate and the validation checks for it.
"""

from typing import Any, Optional, List
from pydantic import BaseModel, Field, field_validator

from reaction_shield.models.enums import ValidationAction, Verdict, WhitelistLevel
from reaction_shield.models.validation import (
    ValidationResult, OutlierAnalysis, BehaviorProfile, SessionData,
    DeviceCapabilities, ContextualFactors
)
from reaction_shield.models.rate_limit import RateLimitResult


class SubmissionPayload(BaseModel):
    """
    Decoded request body of a score submission.
    reaction_time is left untyped so that a malformed score reaches the
    validator and comes back as a normal reject.
    """
    user_id: str
    reaction_time: Any = None
    session: Optional[SessionData] = None
    device: Optional[DeviceCapabilities] = None
    context: Optional[ContextualFactors] = None
    game_start_time: Optional[int] = None  # epoch ms
    ip_address: Optional[str] = None
    whitelist_level: Optional[WhitelistLevel] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _numeric_user_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("session", "device", "context", "whitelist_level", mode="before")
    @classmethod
    def _empty_as_missing(cls, value: Any) -> Any:
        return value or None


class SubmissionDecision(BaseModel):
    """
    accepted is True only for ACCEPT. verdict is INCONCLUSIVE when some
    check could not read its state and fell back to a neutral result.
    rate_limit is None only for payloads rejected before the rate gate.
    """
    user_id: str
    reaction_time: Optional[float] = None
    action: ValidationAction
    accepted: bool
    verdict: Verdict
    rate_limit: Optional[RateLimitResult] = None
    validation: Optional[ValidationResult] = None
    outlier_analysis: Optional[OutlierAnalysis] = None
    behavior_profile: Optional[BehaviorProfile] = None
    reasons: List[str] = Field(default_factory=list)
    timestamp: int
