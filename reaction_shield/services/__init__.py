"""
Anti-abuse services.

    from reaction_shield.services import SubmissionService
    decision = SubmissionService(store).evaluate_submission("user-1", 212.4)
"""

from reaction_shield.services.statistics_service import OutlierDetector, BehaviorProfiler
from reaction_shield.services.security_service import SecurityMonitor
from reaction_shield.services.plausibility_service import PlausibilityValidator
from reaction_shield.services.penalty_service import PenaltyEscalator
from reaction_shield.services.rate_limit_service import RateLimiter
from reaction_shield.services.submission_service import SubmissionService

__all__ = [
    'OutlierDetector',
    'BehaviorProfiler',
    'SecurityMonitor',
    'PlausibilityValidator',
    'PenaltyEscalator',
    'RateLimiter',
    'SubmissionService',
]
