"""
Penalty Escalation Service.
Tracks rate-limit violations and promotes users through five penalty levels.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from reaction_shield.models.rate_limit import (
    UserPenalty, UserViolations, IPViolations, ViolationRecord
)
from reaction_shield.models.enums import ViolationKind
from reaction_shield.lib.store import KVStore, Keys
from reaction_shield.lib.metrics import MetricsExporter

logger = logging.getLogger(__name__)


class PenaltyEscalator:
    """
    Progressive penalties.
    Level = violations in the trailing 24h, capped at 5. Every level imposes a
    lockout and divides rate limits by its multiplier once the lockout ends.
    Store errors propagate; the rate limiter decides how to degrade.
    """

    # level -> (lockout seconds, limit divisor)
    PENALTY_LEVELS: Dict[int, Tuple[int, float]] = {
        1: (5 * 60, 1.5),
        2: (15 * 60, 2.0),
        3: (60 * 60, 3.0),
        4: (6 * 60 * 60, 5.0),
        5: (24 * 60 * 60, 10.0),
    }
    MAX_LEVEL = 5

    VIOLATION_WINDOW_MS = 24 * 3600 * 1000
    VIOLATION_HISTORY_LIMIT = 100
    VIOLATION_TTL = 7 * 24 * 3600

    def __init__(self, store: KVStore, clock: Optional[Callable[[], float]] = None):
        self.store = store
        self.clock = clock or time.time

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @classmethod
    def penalty_multiplier(cls, level: int) -> float:
        if level <= 0:
            return 1.0
        return cls.PENALTY_LEVELS[min(level, cls.MAX_LEVEL)][1]

    def check_active_penalty(self, user_id: str) -> Optional[UserPenalty]:
        """The user's unexpired penalty, if any."""
        raw = self.store.get(Keys.penalty(user_id))
        if not raw:
            return None
        penalty = UserPenalty.model_validate(raw)
        if penalty.expires_at <= self._now_ms():
            return None
        return penalty

    def get_user_violations(self, user_id: str) -> UserViolations:
        raw = self.store.get(Keys.violations(user_id))
        return UserViolations.model_validate(raw) if raw else UserViolations(user_id=user_id)

    def _recent_count(self, history, now: int) -> int:
        cutoff = now - self.VIOLATION_WINDOW_MS
        return sum(1 for v in history if v.timestamp > cutoff)

    def get_penalty_level(self, user_id: str) -> int:
        """Current level from violations in the trailing 24h, 0 when clean."""
        violations = self.get_user_violations(user_id)
        return min(self.MAX_LEVEL, self._recent_count(violations.history, self._now_ms()))

    def record_violation(
        self,
        user_id: str,
        action: str,
        kind: ViolationKind = ViolationKind.RATE_LIMIT
    ) -> Optional[UserPenalty]:
        """
        Append a violation and escalate.
        Returns the penalty applied, or None when the level is still 0.
        """
        now = self._now_ms()
        record = ViolationRecord(action=action, timestamp=now, type=kind, user_id=user_id)

        def append(current):
            violations = UserViolations.model_validate(current) if current else UserViolations(user_id=user_id)
            violations.total_violations += 1
            violations.history.append(record)
            violations.history = violations.history[-self.VIOLATION_HISTORY_LIMIT:]
            return violations.model_dump(mode="json")

        updated = UserViolations.model_validate(
            self.store.atomic_update(Keys.violations(user_id), append, self.VIOLATION_TTL)
        )
        level = min(self.MAX_LEVEL, self._recent_count(updated.history, now))
        logger.info(f"Violation recorded for {user_id} on {action}: level {level}")

        if level == 0:
            return None
        count = self._recent_count(updated.history, now)
        return self.apply_penalty(
            user_id, level,
            f"Rate limit violation on {action} ({count} violations in 24h)"
        )

    def apply_penalty(self, user_id: str, level: int, reason: str) -> UserPenalty:
        level = max(1, min(self.MAX_LEVEL, level))
        duration, multiplier = self.PENALTY_LEVELS[level]
        now = self._now_ms()
        penalty = UserPenalty(
            user_id=user_id,
            level=level,
            reason=reason,
            applied_at=now,
            expires_at=now + duration * 1000,
            multiplier=multiplier,
        )
        self.store.set(Keys.penalty(user_id), penalty.model_dump(mode="json"), duration)
        MetricsExporter.record_penalty(level)
        expires = datetime.fromtimestamp(penalty.expires_at / 1000, tz=timezone.utc).isoformat()
        logger.info(f"Penalty level {level} applied to {user_id} until {expires}: {reason}")
        return penalty

    def clear_penalty(self, user_id: str) -> bool:
        return self.store.delete(Keys.penalty(user_id))

    def clear_violations(self, user_id: str) -> bool:
        return self.store.delete(Keys.violations(user_id))

    def record_ip_violation(self, ip_address: str, action: str) -> int:
        """Append an IP violation; returns the IP's violation count in the trailing 24h."""
        now = self._now_ms()
        record = ViolationRecord(action=action, timestamp=now)

        def append(current):
            violations = IPViolations.model_validate(current) if current else IPViolations(ip_address=ip_address)
            violations.total_violations += 1
            violations.history.append(record)
            violations.history = violations.history[-self.VIOLATION_HISTORY_LIMIT:]
            return violations.model_dump(mode="json")

        updated = IPViolations.model_validate(
            self.store.atomic_update(Keys.ip_violations(ip_address), append, self.VIOLATION_TTL)
        )
        count = self._recent_count(updated.history, now)
        logger.info(f"IP violation recorded for {ip_address} on {action}: {count} in 24h")
        return count

    def get_ip_violation_count(self, ip_address: str) -> int:
        raw = self.store.get(Keys.ip_violations(ip_address))
        if not raw:
            return 0
        return self._recent_count(IPViolations.model_validate(raw).history, self._now_ms())
