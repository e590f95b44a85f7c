"""
Score Submission Service.
Runs one reaction-time submission through the whole anti-abuse chain.
"""

import math
import time
import logging
from typing import Callable, List, Optional

from reaction_shield.models.validation import (
    SessionData, DeviceCapabilities, ContextualFactors, ValidationResult,
    OutlierAnalysis, BehaviorProfile
)
from reaction_shield.models.security import SecurityEvent
from reaction_shield.models.submission import SubmissionDecision
from reaction_shield.models.enums import (
    ValidationAction, ValidationFlag, OutlierReason, RateLimitAction,
    WhitelistLevel, Verdict, SecurityEventType
)
from reaction_shield.lib.store import KVStore, Keys, StoreError
from reaction_shield.lib.metrics import MetricsExporter
from reaction_shield.services.plausibility_service import PlausibilityValidator
from reaction_shield.services.statistics_service import OutlierDetector, BehaviorProfiler, is_finite_number
from reaction_shield.services.rate_limit_service import RateLimiter
from reaction_shield.services.security_service import SecurityMonitor

logger = logging.getLogger(__name__)


class SubmissionService:
    """
    Orchestrates a score submission:
    1. Rate limit gate (penalties and whitelist included)
    2. Plausibility validation
    3. Outlier and behaviour analysis over stored history
    4. Combined accept/flag/reject
    5. Security events, validation log, action and history bookkeeping
    """

    HISTORY_LIMIT = 100
    HISTORY_TTL = 90 * 24 * 3600

    IMPROVEMENT_REASONS = {
        OutlierReason.MODERATE_IMPROVEMENT,
        OutlierReason.SIGNIFICANT_IMPROVEMENT,
        OutlierReason.DRAMATIC_IMPROVEMENT,
        OutlierReason.SUDDEN_DRAMATIC_IMPROVEMENT,
    }
    BOT_REASONS = {
        OutlierReason.BOT_LIKE_CONSISTENCY,
        OutlierReason.ZERO_VARIANCE_SUSPICIOUS,
    }
    # Confidence ceilings when behaviour flags are present
    BEHAVIOR_CONFIDENCE = 0.7
    HEAVY_BEHAVIOR_CONFIDENCE = 0.5
    HEAVY_BEHAVIOR_FLAGS = 2

    def __init__(
        self,
        store: KVStore,
        rate_limiter: Optional[RateLimiter] = None,
        validator: Optional[PlausibilityValidator] = None,
        detector: Optional[OutlierDetector] = None,
        profiler: Optional[BehaviorProfiler] = None,
        monitor: Optional[SecurityMonitor] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.clock = clock or time.time
        self.monitor = monitor
        self.rate_limiter = rate_limiter or RateLimiter(store, monitor=monitor, clock=self.clock)
        self.validator = validator or PlausibilityValidator(store, monitor=monitor, clock=self.clock)
        self.detector = detector or OutlierDetector(clock=self.clock)
        self.profiler = profiler or BehaviorProfiler()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @MetricsExporter.track_duration("submission")
    def evaluate_submission(
        self,
        user_id: str,
        reaction_time: float,
        session_data: Optional[SessionData] = None,
        device_capabilities: Optional[DeviceCapabilities] = None,
        game_start_time: Optional[int] = None,
        ip_address: Optional[str] = None,
        whitelist_level: Optional[WhitelistLevel] = None,
        contextual_factors: Optional[ContextualFactors] = None
    ) -> SubmissionDecision:
        now = self._now_ms()
        session_data = session_data or SessionData(user_id=user_id)
        finite_time = reaction_time if is_finite_number(reaction_time) else None

        # Step 1: rate limit gate, before any scoring logic
        rate = self.rate_limiter.check_rate_limit(
            user_id, RateLimitAction.SCORE_SUBMISSION, ip_address, whitelist_level
        )
        if not rate.allowed:
            MetricsExporter.record_submission('rate_limited')
            return SubmissionDecision(
                user_id=user_id,
                reaction_time=finite_time,
                action=ValidationAction.REJECT,
                accepted=False,
                verdict=rate.verdict,
                rate_limit=rate,
                reasons=[self.rate_limiter.get_rate_limit_message(rate)],
                timestamp=now,
            )
        inconclusive = rate.verdict == Verdict.INCONCLUSIVE

        # Step 2: plausibility
        validation = self.validator.validate(reaction_time, session_data, device_capabilities, game_start_time)
        outlier: Optional[OutlierAnalysis] = None
        behavior: Optional[BehaviorProfile] = None
        history: List[float] = []

        # Step 3: statistics over stored history
        if validation.action != ValidationAction.REJECT:
            history, loaded = self._load_history(user_id)
            inconclusive = inconclusive or not loaded
            if loaded:
                outlier = self.detector.analyze(reaction_time, history, contextual_factors)
            else:
                outlier = OutlierAnalysis(
                    is_outlier=False, z_score=0.0, confidence=0.0, reason=OutlierReason.INCONCLUSIVE
                )
            behavior = self.profiler.profile(session_data.session_stats, history)

            # Step 4: combine
            validation = self.combine(validation, outlier, behavior)

        # Step 5: bookkeeping
        self.validator.validate_submission(
            user_id, reaction_time, session_data, device_capabilities, game_start_time,
            outlier_analysis=outlier, behavior_profile=behavior, validation=validation
        )
        self._report_events(user_id, reaction_time, validation, outlier, behavior)

        # The attempt consumed quota whatever its outcome
        self.rate_limiter.record_action(user_id, RateLimitAction.SCORE_SUBMISSION, ip_address)
        if validation.action == ValidationAction.ACCEPT:
            self._append_history(user_id, reaction_time)

        if validation.action == ValidationAction.REJECT:
            verdict = Verdict.FAIL
        elif inconclusive:
            verdict = Verdict.INCONCLUSIVE
        else:
            verdict = Verdict.PASS

        MetricsExporter.record_submission(validation.action.value)
        logger.info(
            f"Submission from {user_id}: {finite_time}ms -> {validation.action.value} "
            f"(confidence {validation.confidence:.2f}, flags {sorted(f.value for f in validation.flags)})"
        )
        return SubmissionDecision(
            user_id=user_id,
            reaction_time=finite_time,
            action=validation.action,
            accepted=validation.action == ValidationAction.ACCEPT,
            verdict=verdict,
            rate_limit=rate,
            validation=validation,
            outlier_analysis=outlier,
            behavior_profile=behavior,
            reasons=self._reasons(validation, outlier, behavior),
            timestamp=now,
        )

    def combine(
        self,
        validation: ValidationResult,
        outlier: Optional[OutlierAnalysis],
        behavior: Optional[BehaviorProfile]
    ) -> ValidationResult:
        """Fold statistical findings into the plausibility result."""
        flags = set(validation.flags)
        confidence = validation.confidence

        if outlier is not None:
            if outlier.reason in self.BOT_REASONS:
                flags.add(ValidationFlag.BOT_LIKE_CONSISTENCY)
                confidence = min(confidence, 1 - outlier.confidence)
            elif outlier.reason in self.IMPROVEMENT_REASONS:
                flags.add(ValidationFlag.STATISTICAL_OUTLIER)
                confidence = min(confidence, 1 - outlier.confidence)

        if behavior is not None and behavior.risk_flags:
            flags.add(ValidationFlag.SUSPICIOUS_BEHAVIOR)
            ceiling = (
                self.HEAVY_BEHAVIOR_CONFIDENCE
                if len(behavior.risk_flags) > self.HEAVY_BEHAVIOR_FLAGS
                else self.BEHAVIOR_CONFIDENCE
            )
            confidence = min(confidence, ceiling)

        return self.validator.decide(flags, confidence)

    def _load_history(self, user_id: str):
        """(history, loaded); loaded is False when the store failed."""
        try:
            raw = self.store.get(Keys.history(user_id)) or []
        except StoreError as e:
            logger.error(f"Failed to load history for {user_id}: {e}")
            MetricsExporter.record_store_error("load_history")
            return [], False
        return [float(t) for t in raw], True

    def _append_history(self, user_id: str, reaction_time: float):
        def append(current):
            history = list(current or [])
            history.append(float(reaction_time))
            return history[-self.HISTORY_LIMIT:]

        try:
            self.store.atomic_update(Keys.history(user_id), append, self.HISTORY_TTL)
        except StoreError as e:
            logger.error(f"Failed to extend history for {user_id}: {e}")
            MetricsExporter.record_store_error("append_history")

    def get_history(self, user_id: str) -> List[float]:
        return self._load_history(user_id)[0]

    def _report_events(self, user_id, reaction_time, validation, outlier, behavior):
        # Critical plausibility failures are reported by the validator's auto-flag path
        if self.monitor is None:
            return
        data = {
            'reaction_time': reaction_time if is_finite_number(reaction_time) else None,
            'confidence': validation.confidence,
            'flags': sorted(f.value for f in validation.flags),
        }
        if ValidationFlag.BOT_LIKE_CONSISTENCY in validation.flags:
            self.monitor.log_event(SecurityEvent(
                type=SecurityEventType.BOT_DETECTION,
                user_id=user_id,
                data={**data, 'outlier_reason': outlier.reason.value if outlier else None},
            ))
        elif ValidationFlag.STATISTICAL_OUTLIER in validation.flags:
            self.monitor.log_event(SecurityEvent(
                type=SecurityEventType.ANOMALY_DETECTION,
                user_id=user_id,
                data={**data, 'z_score': outlier.z_score if outlier and math.isfinite(outlier.z_score) else None},
            ))
        if behavior is not None and len(behavior.risk_flags) > self.HEAVY_BEHAVIOR_FLAGS:
            self.monitor.log_event(SecurityEvent(
                type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                user_id=user_id,
                data={**data, 'behavior_flags': sorted(f.value for f in behavior.risk_flags)},
            ))

    @staticmethod
    def _reasons(validation, outlier, behavior) -> List[str]:
        reasons = [flag.value for flag in sorted(validation.flags, key=lambda f: f.value)]
        if outlier is not None and outlier.reason not in (OutlierReason.NORMAL_VARIATION, OutlierReason.INSUFFICIENT_DATA):
            reasons.append(f"outlier:{outlier.reason.value}")
        if behavior is not None:
            reasons += [f"behavior:{flag.value}" for flag in sorted(behavior.risk_flags, key=lambda f: f.value)]
        return reasons
