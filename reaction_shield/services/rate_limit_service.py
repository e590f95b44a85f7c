"""
Rate Limiting Service.
Per-user and per-IP sliding windows over minute/hour/day, adjusted by
whitelist multipliers and progressive penalties.
"""

import math
import time
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from reaction_shield.models.rate_limit import (
    RateLimitData, RateLimitResult, RateLimitStatus, UsageCounts,
    WhitelistEntry, CaptchaRequirement, SuspiciousActivityResult
)
from reaction_shield.models.security import SecurityEvent
from reaction_shield.models.enums import (
    RateLimitAction, RateLimitScope, WhitelistLevel, Verdict,
    CaptchaDifficulty, ActivityRecommendation, SecurityEventType
)
from reaction_shield.lib.store import KVStore, Keys, StoreError
from reaction_shield.lib.metrics import MetricsExporter
from reaction_shield.services.penalty_service import PenaltyEscalator
from reaction_shield.services.security_service import SecurityMonitor
from reaction_shield.services.statistics_service import coefficient_of_variation

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Multi-period rate limiting.
    Checks never raise: store failures return an INCONCLUSIVE verdict whose
    allowed flag follows fail_open.
    """

    # Window sizes in seconds
    WINDOWS = {
        'minute': 60,
        'hour': 3600,
        'day': 86400,
    }

    RATE_LIMITS = {
        RateLimitAction.SCORE_SUBMISSION: {'minute': 10, 'hour': 50, 'day': 200},
        RateLimitAction.LEADERBOARD_VIEW: {'minute': 100, 'hour': 1000, 'day': 5000},
        RateLimitAction.CHALLENGE_CREATE: {'minute': 5, 'hour': 20, 'day': 100},
        RateLimitAction.CHALLENGE_ACCEPT: {'minute': 10, 'hour': 50, 'day': 300},
    }

    # Looser per-IP limits; actions without their own entry share 'general'
    IP_RATE_LIMITS = {
        RateLimitAction.SCORE_SUBMISSION.value: {'minute': 10, 'hour': 100, 'day': 500},
        'general': {'minute': 100, 'hour': 2000, 'day': 10000},
    }

    WHITELIST_MULTIPLIERS = {
        WhitelistLevel.VERIFIED: 2,
        WhitelistLevel.MODERATOR: 5,
        WhitelistLevel.ADMIN: 10,
    }
    WHITELIST_TTL = 365 * 24 * 3600
    RECORD_TTL = 86400

    # Suspicious activity scoring
    MAX_USAGE_RATIO = 0.9
    UNIFORM_TIMING_COV = 0.1
    UNIFORM_TIMING_MIN_ACTIONS = 10
    SUSPICION_WEIGHTS = {
        'CONSISTENT_MAX_USAGE': 0.3,
        'RATE_LIMITED': 0.2,
        'UNIFORM_TIMING': 0.4,
        'MULTIPLE_ACTIONS_LIMITED': 0.5,
    }
    SUSPICIOUS_THRESHOLD = 0.6
    BLOCK_THRESHOLD = 0.8

    # CAPTCHA
    CAPTCHA_PENALTY_LEVEL = 2
    HARD_CAPTCHA_PENALTY_LEVEL = 4
    CAPTCHA_IP_VIOLATIONS = 10

    def __init__(
        self,
        store: KVStore,
        penalties: Optional[PenaltyEscalator] = None,
        monitor: Optional[SecurityMonitor] = None,
        fail_open: bool = True,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.clock = clock or time.time
        self.penalties = penalties or PenaltyEscalator(store, clock=self.clock)
        self.monitor = monitor
        self.fail_open = fail_open

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _store_failed(self, operation: str, error: StoreError):
        logger.error(f"Rate limiter {operation} failed, failing {'open' if self.fail_open else 'closed'}: {error}")
        MetricsExporter.record_store_error(operation)

    # --- Limits ---

    @classmethod
    def base_limits(cls, action: RateLimitAction) -> Dict[str, int]:
        return dict(cls.RATE_LIMITS[RateLimitAction(action)])

    @classmethod
    def effective_limits(
        cls,
        action: RateLimitAction,
        whitelist_level: Optional[WhitelistLevel] = None,
        penalty_level: int = 0
    ) -> Dict[str, int]:
        """base x whitelist / penalty, rounded down, never below 1. Whitelist applies first."""
        whitelist = cls.WHITELIST_MULTIPLIERS[WhitelistLevel(whitelist_level)] if whitelist_level else 1
        divisor = PenaltyEscalator.penalty_multiplier(penalty_level)
        return {
            window: max(1, math.floor(limit * whitelist / divisor))
            for window, limit in cls.base_limits(action).items()
        }

    @classmethod
    def ip_limit_key(cls, action: RateLimitAction) -> str:
        value = RateLimitAction(action).value
        return value if value in cls.IP_RATE_LIMITS else 'general'

    # --- Sliding windows ---

    def _prune(self, data: RateLimitData, now: int) -> RateLimitData:
        return RateLimitData(**{
            window: [ts for ts in getattr(data, window) if ts > now - seconds * 1000]
            for window, seconds in self.WINDOWS.items()
        })

    def _load(self, key: str, now: int) -> RateLimitData:
        raw = self.store.get(key)
        return self._prune(RateLimitData.model_validate(raw) if raw else RateLimitData(), now)

    def _append(self, key: str, now: int):
        def update(current):
            data = self._prune(RateLimitData.model_validate(current) if current else RateLimitData(), now)
            for window in self.WINDOWS:
                getattr(data, window).append(now)
            return data.model_dump(mode="json")

        self.store.atomic_update(key, update, self.RECORD_TTL)

    def _reset_times(self, data: RateLimitData, now: int) -> Dict[str, int]:
        return {
            window: (getattr(data, window)[0] if getattr(data, window) else now) + seconds * 1000
            for window, seconds in self.WINDOWS.items()
        }

    def _evaluate(self, data: RateLimitData, limits: Dict[str, int], now: int):
        """(violated windows in minute/hour/day order, remaining, reset time)"""
        violated = [w for w in self.WINDOWS if len(getattr(data, w)) >= limits[w]]
        resets = self._reset_times(data, now)
        remaining = min(max(0, limits[w] - len(getattr(data, w))) for w in self.WINDOWS)
        if violated:
            reset_time = min(resets[w] for w in violated)
        else:
            reset_time = min(resets.values())
        return violated, remaining, reset_time

    @staticmethod
    def _describe(violated: List[str], limits: Dict[str, int]) -> str:
        return ', '.join(f"{window} limit ({limits[window]})" for window in violated)

    # --- Checks ---

    @MetricsExporter.track_duration("rate_limit")
    def check_rate_limit(
        self,
        user_id: str,
        action: RateLimitAction,
        ip_address: Optional[str] = None,
        whitelist_level: Optional[WhitelistLevel] = None
    ) -> RateLimitResult:
        """
        Allow/deny one action.
        Order: active penalty, whitelist and penalty-level adjusted user windows, then IP windows.
        """
        action = RateLimitAction(action)
        now = self._now_ms()

        try:
            # Step 1: an active penalty is a hard deny
            penalty = self.penalties.check_active_penalty(user_id)
            if penalty is not None:
                until = datetime.fromtimestamp(penalty.expires_at / 1000, tz=timezone.utc).isoformat()
                MetricsExporter.record_rate_limit(RateLimitScope.PENALTY.value, False)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=penalty.expires_at,
                    reason=f"Temporary ban active until {until}. Reason: {penalty.reason}",
                    verdict=Verdict.FAIL,
                    scope=RateLimitScope.PENALTY,
                )

            # Step 2: limits for this user
            if whitelist_level is None:
                entry = self.get_whitelist_status(user_id)
                whitelist_level = entry.level if entry else None
            penalty_level = self.penalties.get_penalty_level(user_id)
            limits = self.effective_limits(action, whitelist_level, penalty_level)

            # Step 3: user windows
            data = self._load(Keys.rate_limit(action.value, user_id), now)
            violated, remaining, reset_time = self._evaluate(data, limits, now)
            if violated:
                reason = f"User rate limit exceeded: {self._describe(violated, limits)}"
                self._on_user_violation(user_id, action, ip_address, reason)
                MetricsExporter.record_rate_limit(RateLimitScope.USER.value, False)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=reset_time,
                    reason=reason,
                    verdict=Verdict.FAIL,
                    scope=RateLimitScope.USER,
                )

            # Step 4: IP windows
            if ip_address:
                ip_result = self._check_ip(ip_address, action, now)
                if not ip_result.allowed:
                    return ip_result
                remaining = min(remaining, ip_result.remaining)
                reset_time = min(reset_time, ip_result.reset_time)
        except StoreError as e:
            self._store_failed("check_rate_limit", e)
            return RateLimitResult(
                allowed=self.fail_open,
                remaining=0,
                reset_time=now + self.WINDOWS['minute'] * 1000,
                reason="Rate limit state unavailable",
                verdict=Verdict.INCONCLUSIVE,
            )

        MetricsExporter.record_rate_limit(RateLimitScope.USER.value, True)
        return RateLimitResult(allowed=True, remaining=remaining, reset_time=reset_time)

    def _on_user_violation(self, user_id: str, action: RateLimitAction, ip_address: Optional[str], reason: str):
        logger.info(f"Rate limit denied for {user_id} on {action.value}: {reason}")
        try:
            self.penalties.record_violation(user_id, action.value)
        except StoreError as e:
            # The deny stands even if the violation could not be recorded
            self._store_failed("record_violation", e)

        if self.monitor is not None:
            self.monitor.log_event(SecurityEvent(
                type=SecurityEventType.RATE_LIMIT_VIOLATION,
                user_id=user_id,
                data={'action': action.value, 'reason': reason, 'ip_address': ip_address},
            ))

    def _check_ip(self, ip_address: str, action: RateLimitAction, now: int) -> RateLimitResult:
        limit_key = self.ip_limit_key(action)
        limits = self.IP_RATE_LIMITS[limit_key]
        data = self._load(Keys.ip_rate_limit(limit_key, ip_address), now)
        violated, remaining, reset_time = self._evaluate(data, limits, now)

        if not violated:
            MetricsExporter.record_rate_limit(RateLimitScope.IP.value, True)
            return RateLimitResult(
                allowed=True, remaining=remaining, reset_time=reset_time, scope=RateLimitScope.IP
            )

        reason = f"IP rate limit exceeded: {self._describe(violated, limits)}"
        logger.info(f"Rate limit denied for IP {ip_address} on {action.value}: {reason}")
        try:
            self.penalties.record_ip_violation(ip_address, action.value)
        except StoreError as e:
            self._store_failed("record_ip_violation", e)
        MetricsExporter.record_rate_limit(RateLimitScope.IP.value, False)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=reset_time,
            reason=reason,
            verdict=Verdict.FAIL,
            scope=RateLimitScope.IP,
        )

    def record_action(self, user_id: str, action: RateLimitAction, ip_address: Optional[str] = None) -> bool:
        """Append now to every window of the user (and IP) record. False if the store failed."""
        action = RateLimitAction(action)
        now = self._now_ms()
        try:
            self._append(Keys.rate_limit(action.value, user_id), now)
            if ip_address:
                self._append(Keys.ip_rate_limit(self.ip_limit_key(action), ip_address), now)
            return True
        except StoreError as e:
            self._store_failed("record_action", e)
            return False

    def get_rate_limit_status(
        self,
        user_id: str,
        action: RateLimitAction,
        whitelist_level: Optional[WhitelistLevel] = None
    ) -> RateLimitStatus:
        """Read-only usage breakdown; repeated calls without new actions agree."""
        action = RateLimitAction(action)
        now = self._now_ms()

        try:
            if whitelist_level is None:
                entry = self.get_whitelist_status(user_id)
                whitelist_level = entry.level if entry else None
            penalty = self.penalties.check_active_penalty(user_id)
            limits = self.effective_limits(action, whitelist_level, self.penalties.get_penalty_level(user_id))
            data = self._load(Keys.rate_limit(action.value, user_id), now)
        except StoreError as e:
            self._store_failed("get_rate_limit_status", e)
            limits = self.base_limits(action)
            return RateLimitStatus(
                action=action,
                limits=UsageCounts(**limits),
                usage=UsageCounts(),
                remaining=UsageCounts(**limits),
                reset_times=UsageCounts(**{w: now + s * 1000 for w, s in self.WINDOWS.items()}),
                is_limited=not self.fail_open,
                verdict=Verdict.INCONCLUSIVE,
            )

        usage = {w: len(getattr(data, w)) for w in self.WINDOWS}
        is_limited = penalty is not None or any(usage[w] >= limits[w] for w in self.WINDOWS)
        return RateLimitStatus(
            action=action,
            limits=UsageCounts(**limits),
            usage=UsageCounts(**usage),
            remaining=UsageCounts(**{w: max(0, limits[w] - usage[w]) for w in self.WINDOWS}),
            reset_times=UsageCounts(**self._reset_times(data, now)),
            is_limited=is_limited,
            verdict=Verdict.FAIL if is_limited else Verdict.PASS,
        )

    def reset_rate_limit(self, user_id: str, action: Optional[RateLimitAction] = None) -> bool:
        """Clear one action's windows, or all of them."""
        actions = [RateLimitAction(action)] if action else list(RateLimitAction)
        try:
            for item in actions:
                self.store.delete(Keys.rate_limit(item.value, user_id))
        except StoreError as e:
            self._store_failed("reset_rate_limit", e)
            return False
        logger.info(f"Rate limits reset for {user_id}: {[a.value for a in actions]}")
        return True

    # --- Abuse signals ---

    def detect_suspicious_activity(self, user_id: str) -> SuspiciousActivityResult:
        now = self._now_ms()
        flags: List[str] = []
        score = 0.0

        try:
            limited_actions = 0
            uniform = False
            near_max = False
            for action in RateLimitAction:
                data = self._load(Keys.rate_limit(action.value, user_id), now)
                limits = self.base_limits(action)
                if len(data.hour) >= limits['hour'] * self.MAX_USAGE_RATIO:
                    near_max = True
                if any(len(getattr(data, w)) >= limits[w] for w in self.WINDOWS):
                    limited_actions += 1
                if len(data.day) >= self.UNIFORM_TIMING_MIN_ACTIONS:
                    intervals = [b - a for a, b in zip(data.day, data.day[1:])]
                    if coefficient_of_variation(intervals) < self.UNIFORM_TIMING_COV and min(intervals) > 0:
                        uniform = True
        except StoreError as e:
            self._store_failed("detect_suspicious_activity", e)
            return SuspiciousActivityResult(
                user_id=user_id, suspicion_score=0.0, flags=['INCONCLUSIVE'],
                is_suspicious=False, recommendation=ActivityRecommendation.ALLOW, timestamp=now
            )

        if near_max:
            flags.append('CONSISTENT_MAX_USAGE')
        if limited_actions:
            flags.append('RATE_LIMITED')
        if uniform:
            flags.append('UNIFORM_TIMING')
        if limited_actions > 1:
            flags.append('MULTIPLE_ACTIONS_LIMITED')
        score = min(1.0, sum(self.SUSPICION_WEIGHTS[f] for f in flags))

        is_suspicious = score > self.SUSPICIOUS_THRESHOLD
        if score > self.BLOCK_THRESHOLD:
            recommendation = ActivityRecommendation.BLOCK
        elif is_suspicious:
            recommendation = ActivityRecommendation.MONITOR
        else:
            recommendation = ActivityRecommendation.ALLOW

        if is_suspicious and self.monitor is not None:
            self.monitor.log_event(SecurityEvent(
                type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                user_id=user_id,
                data={'flags': flags, 'suspicion_score': score},
            ))

        return SuspiciousActivityResult(
            user_id=user_id,
            suspicion_score=score,
            flags=flags,
            is_suspicious=is_suspicious,
            recommendation=recommendation,
            timestamp=now,
        )

    def requires_captcha(self, user_id: str, ip_address: Optional[str] = None) -> CaptchaRequirement:
        try:
            level = self.penalties.get_penalty_level(user_id)
            if level >= self.CAPTCHA_PENALTY_LEVEL:
                difficulty = (
                    CaptchaDifficulty.HARD if level >= self.HARD_CAPTCHA_PENALTY_LEVEL
                    else CaptchaDifficulty.NORMAL
                )
                return CaptchaRequirement(required=True, reason=f"Penalty level {level}", difficulty=difficulty)

            if ip_address and self.penalties.get_ip_violation_count(ip_address) > self.CAPTCHA_IP_VIOLATIONS:
                return CaptchaRequirement(required=True, reason='Excessive violations from IP address')
        except StoreError as e:
            self._store_failed("requires_captcha", e)
            return CaptchaRequirement(required=False, reason='Verification state unavailable')

        activity = self.detect_suspicious_activity(user_id)
        if activity.is_suspicious:
            return CaptchaRequirement(required=True, reason='Suspicious activity detected')

        return CaptchaRequirement(required=False, reason='No verification needed')

    # --- Whitelist ---

    def add_to_whitelist(
        self,
        user_id: str,
        level: WhitelistLevel,
        reason: str,
        added_by: str = 'system'
    ) -> Optional[WhitelistEntry]:
        entry = WhitelistEntry(
            user_id=user_id,
            level=WhitelistLevel(level),
            reason=reason,
            added_at=self._now_ms(),
            added_by=added_by,
        )
        try:
            self.store.set(Keys.whitelist(user_id), entry.model_dump(mode="json"), self.WHITELIST_TTL)
        except StoreError as e:
            self._store_failed("add_to_whitelist", e)
            return None
        logger.info(f"Whitelisted {user_id} as {entry.level.value} by {added_by}: {reason}")
        return entry

    def remove_from_whitelist(self, user_id: str) -> bool:
        try:
            removed = self.store.delete(Keys.whitelist(user_id))
        except StoreError as e:
            self._store_failed("remove_from_whitelist", e)
            return False
        logger.info(f"Removed {user_id} from whitelist")
        return removed

    def get_whitelist_status(self, user_id: str) -> Optional[WhitelistEntry]:
        """Raises StoreError; callers inside this class handle it."""
        raw = self.store.get(Keys.whitelist(user_id))
        return WhitelistEntry.model_validate(raw) if raw else None

    def get_rate_limit_message(self, result: RateLimitResult) -> str:
        """User-facing text for a check result."""
        if result.allowed:
            return f"{result.remaining} requests remaining"

        wait_ms = max(0, result.reset_time - self._now_ms())
        minutes = math.ceil(wait_ms / 60000)
        if wait_ms < 60000:
            wait = 'less than a minute'
        elif minutes < 60:
            wait = f"{minutes} minutes"
        else:
            wait = f"{math.ceil(minutes / 60)} hours"
        return f"{result.reason or 'Rate limit exceeded'}. Try again in {wait}."
