"""
Plausibility Validation Service.
Bounds-checks single reaction times against physiological limits,
device timing capability and session/game duration.
"""

import time
import logging
from decimal import Decimal
from typing import Callable, List, Optional, Set, Tuple

from reaction_shield.models.validation import (
    ValidationResult, SessionData, DeviceCapabilities, OutlierAnalysis,
    BehaviorProfile, ValidationLogEntry, ValidationLogMetadata, BrowserInfo,
    ValidationMetrics, AutoFlaggedUser, UserValidationStats,
    PlausibilityValidationResult
)
from reaction_shield.models.security import SecurityEvent
from reaction_shield.models.enums import (
    ValidationAction, ValidationFlag, AUTO_REJECT_FLAGS, Severity, SecurityEventType
)
from reaction_shield.lib.store import KVStore, Keys, StoreError
from reaction_shield.lib.metrics import MetricsExporter
from reaction_shield.services.statistics_service import is_finite_number
from reaction_shield.services.security_service import SecurityMonitor

logger = logging.getLogger(__name__)

Check = Tuple[Set[ValidationFlag], float]


class PlausibilityValidator:
    """
    Single-submission validation.
    validate() is pure apart from reading the clock; validate_submission()
    additionally persists a forensic log entry and hourly counters.
    """

    # Magnitude ladder (ms)
    PHYSICALLY_IMPOSSIBLE_MS = 50
    MIN_HUMAN_REACTION_MS = 80
    SUPERHUMAN_MS = 100
    SUSPICIOUS_MS = 120
    VERY_FAST_MS = 150
    MAX_HUMAN_REACTION_MS = 1000

    BAND_CONFIDENCE = {
        ValidationFlag.PHYSICALLY_IMPOSSIBLE: 0.0,
        ValidationFlag.IMPOSSIBLY_FAST: 0.0,
        ValidationFlag.SUPERHUMAN_SPEED: 0.1,
        ValidationFlag.SUSPICIOUSLY_FAST: 0.2,
        ValidationFlag.VERY_FAST: 0.6,
        ValidationFlag.UNUSUALLY_SLOW: 0.8,
    }

    # Precision
    ROUND_NUMBER_CEILING_MS = 300
    NO_DECIMAL_CEILING_MS = 200
    MAX_DECIMAL_PLACES = 3
    ROUND_NUMBER_CONFIDENCE = 0.8
    NO_DECIMAL_CONFIDENCE = 0.85
    EXCESSIVE_PRECISION_CONFIDENCE = 0.6

    # Session / game duration (ms)
    INSTANT_SUBMISSION_MS = 500
    MIN_SESSION_DURATION_MS = 2000
    MIN_GAME_DURATION_MS = 1500
    FULL_LIGHT_SEQUENCE_MS = 5000
    LIGHT_SEQUENCE_MIN_GAMES = 5
    MAX_SUBMISSIONS_PER_SESSION = 50

    ACCEPT_CONFIDENCE = 0.8
    VALID_CONFIDENCE = 0.5

    # Logging
    LOG_HISTORY_LIMIT = 100
    LOG_TTL = 30 * 24 * 3600
    METRICS_TTL = 3600
    FLAGGED_TTL = 30 * 24 * 3600
    STATS_WINDOW_MS = 24 * 3600 * 1000

    FLAG_RISK = {
        ValidationFlag.PHYSICALLY_IMPOSSIBLE: 100,
        ValidationFlag.IMPOSSIBLY_FAST: 90,
        ValidationFlag.INSTANT_SUBMISSION: 80,
        ValidationFlag.SUPERHUMAN_SPEED: 70,
        ValidationFlag.BOT_LIKE_CONSISTENCY: 60,
        ValidationFlag.SUSPICIOUS_BEHAVIOR: 50,
        ValidationFlag.SUSPICIOUSLY_FAST: 40,
        ValidationFlag.DEVICE_PRECISION_MISMATCH: 30,
        ValidationFlag.VERY_FAST: 20,
    }
    DEFAULT_FLAG_RISK = 10

    def __init__(
        self,
        store: Optional[KVStore] = None,
        monitor: Optional[SecurityMonitor] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.monitor = monitor
        self.clock = clock or time.time

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @MetricsExporter.track_duration("plausibility")
    def validate(
        self,
        reaction_time: float,
        session_data: Optional[SessionData] = None,
        device_capabilities: Optional[DeviceCapabilities] = None,
        game_start_time: Optional[int] = None
    ) -> ValidationResult:
        """
        Validate one reaction time (ms).
        Malformed input is a normal reject, never an exception.
        """
        if not is_finite_number(reaction_time):
            return ValidationResult(
                is_valid=False, confidence=0.0,
                flags={ValidationFlag.INVALID_NUMBER},
                action=ValidationAction.REJECT
            )

        session_data = session_data or SessionData()
        flags: Set[ValidationFlag] = set()
        confidence = 1.0

        checks = [
            self._check_magnitude(reaction_time),
            self._check_precision(reaction_time),
            self._check_session_duration(session_data, game_start_time),
        ]
        if device_capabilities is not None:
            checks.append(self._check_device(reaction_time, device_capabilities))

        for check_flags, check_confidence in checks:
            flags |= check_flags
            confidence = min(confidence, check_confidence)

        stats = session_data.session_stats
        if stats is not None and stats.games_played > self.MAX_SUBMISSIONS_PER_SESSION:
            flags.add(ValidationFlag.EXCESSIVE_SUBMISSIONS)
            confidence = min(confidence, 0.3)

        return self.decide(flags, confidence)

    def decide(self, flags: Set[ValidationFlag], confidence: float) -> ValidationResult:
        """Map flags and confidence onto accept/flag/reject."""
        confidence = min(1.0, max(0.0, confidence))
        auto_reject = bool(flags & AUTO_REJECT_FLAGS)

        if auto_reject or confidence == 0:
            action = ValidationAction.REJECT
        elif confidence >= self.ACCEPT_CONFIDENCE:
            action = ValidationAction.ACCEPT
        else:
            action = ValidationAction.FLAG

        return ValidationResult(
            is_valid=confidence > self.VALID_CONFIDENCE and not auto_reject,
            confidence=confidence,
            flags=set(flags),
            action=action
        )

    def _check_magnitude(self, reaction_time: float) -> Check:
        band = None
        if reaction_time < self.PHYSICALLY_IMPOSSIBLE_MS:
            band = ValidationFlag.PHYSICALLY_IMPOSSIBLE
        elif reaction_time < self.MIN_HUMAN_REACTION_MS:
            band = ValidationFlag.IMPOSSIBLY_FAST
        elif reaction_time < self.SUPERHUMAN_MS:
            band = ValidationFlag.SUPERHUMAN_SPEED
        elif reaction_time < self.SUSPICIOUS_MS:
            band = ValidationFlag.SUSPICIOUSLY_FAST
        elif reaction_time < self.VERY_FAST_MS:
            band = ValidationFlag.VERY_FAST
        elif reaction_time > self.MAX_HUMAN_REACTION_MS:
            band = ValidationFlag.UNUSUALLY_SLOW

        if band is None:
            return set(), 1.0
        return {band}, self.BAND_CONFIDENCE[band]

    def _check_precision(self, reaction_time: float) -> Check:
        flags = set()
        confidence = 1.0

        if reaction_time % 10 == 0 and reaction_time < self.ROUND_NUMBER_CEILING_MS:
            flags.add(ValidationFlag.SUSPICIOUS_ROUND_NUMBER)
            confidence = min(confidence, self.ROUND_NUMBER_CONFIDENCE)

        if reaction_time % 1 == 0 and reaction_time < self.NO_DECIMAL_CEILING_MS:
            flags.add(ValidationFlag.NO_DECIMAL_PRECISION)
            confidence = min(confidence, self.NO_DECIMAL_CONFIDENCE)

        if self.decimal_places(reaction_time) > self.MAX_DECIMAL_PLACES:
            flags.add(ValidationFlag.EXCESSIVE_PRECISION)
            confidence = min(confidence, self.EXCESSIVE_PRECISION_CONFIDENCE)

        return flags, confidence

    @staticmethod
    def decimal_places(value: float) -> int:
        # repr gives the shortest round-tripping form, e.g. 245.1234 not 245.12339999...
        exponent = Decimal(repr(float(value))).normalize().as_tuple().exponent
        return max(0, -exponent)

    def _check_session_duration(self, session_data: SessionData, game_start_time: Optional[int]) -> Check:
        flags = set()
        confidence = 1.0
        now = self._now_ms()

        if session_data.session_start is not None:
            session_duration = now - session_data.session_start
            if session_duration < self.INSTANT_SUBMISSION_MS:
                flags.add(ValidationFlag.INSTANT_SUBMISSION)
                confidence = 0.0
            elif session_duration < self.MIN_SESSION_DURATION_MS:
                flags.add(ValidationFlag.VERY_QUICK_SUBMISSION)
                confidence = 0.2

        if game_start_time is not None:
            game_duration = now - game_start_time
            if game_duration < self.MIN_GAME_DURATION_MS:
                flags.add(ValidationFlag.GAME_TOO_SHORT)
                confidence = min(confidence, 0.1)

            stats = session_data.session_stats
            if (stats is not None and stats.games_played > self.LIGHT_SEQUENCE_MIN_GAMES
                    and game_duration < self.FULL_LIGHT_SEQUENCE_MS):
                flags.add(ValidationFlag.SKIPPED_LIGHT_SEQUENCE)
                confidence = min(confidence, 0.3)

        return flags, confidence

    def _check_device(self, reaction_time: float, caps: DeviceCapabilities) -> Check:
        flags = set()
        confidence = 1.0

        def lower(flag: ValidationFlag, cap: float):
            nonlocal confidence
            flags.add(flag)
            confidence = min(confidence, cap)

        if not caps.high_resolution_time and reaction_time < 150:
            lower(ValidationFlag.DEVICE_PRECISION_MISMATCH, 0.4)
        if not caps.performance_api and reaction_time < 100:
            lower(ValidationFlag.TIMING_API_UNAVAILABLE, 0.3)

        # Touch input adds latency, so mobile gets a stricter floor
        if caps.is_mobile:
            if reaction_time < 100:
                lower(ValidationFlag.MOBILE_IMPOSSIBLE_PRECISION, 0.2)
            elif reaction_time < 120:
                lower(ValidationFlag.MOBILE_TIMING_SUSPICIOUS, 0.6)
            if caps.screen_refresh_rate and caps.screen_refresh_rate < 60 and reaction_time < 120:
                lower(ValidationFlag.LOW_REFRESH_RATE_MISMATCH, 0.5)

        if caps.timing_precision:
            if caps.timing_precision > 5 and reaction_time < 100:
                lower(ValidationFlag.LOW_PRECISION_DEVICE, 0.5)
            elif caps.timing_precision > 1 and reaction_time < 80:
                lower(ValidationFlag.PRECISION_CAPABILITY_MISMATCH, 0.3)

        if caps.user_agent:
            ua = caps.user_agent.lower()
            if 'safari' in ua and 'chrome' not in ua and reaction_time < 100:
                lower(ValidationFlag.SAFARI_TIMING_LIMITATION, 0.6)
            if 'firefox' in ua and reaction_time < 90:
                lower(ValidationFlag.FIREFOX_TIMING_SUSPICIOUS, 0.7)
            if 'msie' in ua or 'trident' in ua:
                lower(ValidationFlag.LEGACY_BROWSER_TIMING, 0.7)

        return flags, confidence

    def validate_submission(
        self,
        user_id: str,
        reaction_time: float,
        session_data: Optional[SessionData] = None,
        device_capabilities: Optional[DeviceCapabilities] = None,
        game_start_time: Optional[int] = None,
        outlier_analysis: Optional[OutlierAnalysis] = None,
        behavior_profile: Optional[BehaviorProfile] = None,
        validation: Optional[ValidationResult] = None
    ) -> PlausibilityValidationResult:
        """
        Validate and record a submission.
        Pass a precomputed validation to log a combined decision instead of re-validating.
        """
        started = time.perf_counter()
        session_data = session_data or SessionData(user_id=user_id)

        if validation is None:
            validation = self.validate(reaction_time, session_data, device_capabilities, game_start_time)
        MetricsExporter.record_validation(validation.action.value, validation.flags)

        entry = self.create_log_entry(
            user_id, reaction_time, validation, session_data,
            outlier_analysis, behavior_profile, device_capabilities
        )
        self._store_log_entry(entry)
        self._update_hourly_metrics(entry)

        auto_flagged = entry.severity == Severity.CRITICAL
        if auto_flagged:
            self._auto_flag(entry)

        return PlausibilityValidationResult(
            validation=validation,
            log_entry=entry,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            auto_flagged=auto_flagged
        )

    def create_log_entry(
        self,
        user_id: str,
        reaction_time: float,
        validation: ValidationResult,
        session_data: Optional[SessionData] = None,
        outlier_analysis: Optional[OutlierAnalysis] = None,
        behavior_profile: Optional[BehaviorProfile] = None,
        device_capabilities: Optional[DeviceCapabilities] = None
    ) -> ValidationLogEntry:
        now = self._now_ms()
        session_data = session_data or SessionData()
        severity = self.calculate_severity(validation, outlier_analysis, behavior_profile)

        session_duration = 0
        if session_data.session_start is not None:
            session_duration = max(0, now - session_data.session_start)
        game_count = session_data.session_stats.games_played if session_data.session_stats else 0
        caps = device_capabilities

        metadata = ValidationLogMetadata(
            flag_count=len(validation.flags),
            primary_flag=self._primary_flag(validation.flags),
            device_type='mobile' if caps and caps.is_mobile else 'desktop',
            timing_precision=(caps.timing_precision or 0.0) if caps else 0.0,
            session_duration=session_duration,
            game_count=game_count,
            browser=self.extract_browser_info(caps.user_agent if caps else None),
            risk_score=self.calculate_risk_score(validation),
        )

        critical = severity == Severity.CRITICAL
        finite_time = reaction_time if is_finite_number(reaction_time) else None
        return ValidationLogEntry(
            user_id=user_id,
            timestamp=now,
            reaction_time=finite_time,
            validation=validation,
            outlier_analysis=outlier_analysis,
            behavior_profile=behavior_profile,
            device_capabilities=device_capabilities,
            severity=severity,
            metadata=metadata,
            requires_review=critical,
            escalation_reason=self.escalation_reason(validation) if critical else None,
        )

    @staticmethod
    def calculate_severity(
        validation: ValidationResult,
        outlier: Optional[OutlierAnalysis] = None,
        behavior: Optional[BehaviorProfile] = None
    ) -> Severity:
        if validation.action == ValidationAction.REJECT or ValidationFlag.IMPOSSIBLY_FAST in validation.flags:
            return Severity.CRITICAL
        if outlier is not None and outlier.is_outlier and outlier.confidence > 0.8:
            return Severity.HIGH
        if behavior is not None and len(behavior.risk_flags) > 2:
            return Severity.HIGH
        if validation.action == ValidationAction.FLAG or validation.confidence < 0.6:
            return Severity.MEDIUM
        return Severity.LOW

    def calculate_risk_score(self, validation: ValidationResult) -> float:
        risk = (1 - validation.confidence) * 50
        for flag in validation.flags:
            risk += self.FLAG_RISK.get(flag, self.DEFAULT_FLAG_RISK)
        return min(100.0, max(0.0, risk))

    def _primary_flag(self, flags: Set[ValidationFlag]) -> str:
        if not flags:
            return 'NONE'
        ranked = sorted(flags, key=lambda f: (-self.FLAG_RISK.get(f, self.DEFAULT_FLAG_RISK), f.value))
        return ranked[0].value

    @staticmethod
    def escalation_reason(validation: ValidationResult) -> str:
        if ValidationFlag.PHYSICALLY_IMPOSSIBLE in validation.flags:
            return 'Physically impossible reaction time detected'
        if ValidationFlag.IMPOSSIBLY_FAST in validation.flags:
            return 'Impossibly fast reaction time for human'
        if ValidationFlag.INSTANT_SUBMISSION in validation.flags:
            return 'Instant submission without proper game duration'
        if ValidationFlag.INVALID_NUMBER in validation.flags:
            return 'Reaction time is not a finite number'
        if validation.confidence == 0:
            return 'Zero confidence validation result'
        return 'Multiple high-risk validation flags detected'

    @staticmethod
    def extract_browser_info(user_agent: Optional[str]) -> BrowserInfo:
        if not user_agent:
            return BrowserInfo()
        ua = user_agent.lower()
        if 'edg' in ua:
            return BrowserInfo(name='edge', engine='blink')
        if 'chrome' in ua:
            return BrowserInfo(name='chrome', engine='blink')
        if 'firefox' in ua:
            return BrowserInfo(name='firefox', engine='gecko')
        if 'safari' in ua:
            return BrowserInfo(name='safari', engine='webkit')
        if 'msie' in ua or 'trident' in ua:
            return BrowserInfo(name='internet_explorer', engine='trident')
        return BrowserInfo()

    def _store_log_entry(self, entry: ValidationLogEntry):
        if self.store is None:
            return
        record = entry.model_dump(mode="json")

        def append(current):
            entries = list(current or [])
            entries.append(record)
            return entries[-self.LOG_HISTORY_LIMIT:]

        key = Keys.validation_log(entry.user_id)
        try:
            self.store.atomic_update(key, append, self.LOG_TTL)
        except StoreError as e:
            logger.error(f"Failed to store validation log for {entry.user_id}: {e}")
            MetricsExporter.record_store_error("validation_log")

    def _update_hourly_metrics(self, entry: ValidationLogEntry):
        if self.store is None:
            return
        validation = entry.validation

        def update(current):
            metrics = ValidationMetrics.model_validate(current) if current else ValidationMetrics()
            total = metrics.total_validations + 1
            metrics.average_confidence = (
                metrics.average_confidence * metrics.total_validations + validation.confidence
            ) / total
            metrics.total_validations = total
            if validation.action == ValidationAction.REJECT:
                metrics.rejected_validations += 1
            elif validation.action == ValidationAction.FLAG:
                metrics.flagged_validations += 1
            else:
                metrics.accepted_validations += 1
            for flag in validation.flags:
                metrics.flag_counts[flag.value] = metrics.flag_counts.get(flag.value, 0) + 1
            severity = entry.severity.value
            metrics.severity_distribution[severity] = metrics.severity_distribution.get(severity, 0) + 1
            return metrics.model_dump(mode="json")

        hour = entry.timestamp // 3_600_000
        try:
            self.store.atomic_update(Keys.validation_metrics(hour), update, self.METRICS_TTL)
        except StoreError as e:
            logger.error(f"Failed to update hourly validation metrics: {e}")
            MetricsExporter.record_store_error("validation_metrics")

    def _auto_flag(self, entry: ValidationLogEntry):
        """Record critical results and report them to the security monitor."""
        flags = sorted(f.value for f in entry.validation.flags)
        logger.warning(
            f"Auto-flagged user {entry.user_id}: {entry.escalation_reason} "
            f"(reaction_time={entry.reaction_time}, flags={flags})"
        )

        if self.store is not None:
            def update(current):
                record = AutoFlaggedUser.model_validate(current) if current else AutoFlaggedUser(
                    user_id=entry.user_id,
                    first_flagged=entry.timestamp,
                    last_flagged=entry.timestamp,
                )
                record.last_flagged = entry.timestamp
                record.flag_count += 1
                record.flags = sorted(set(record.flags) | set(flags))
                record.severity = entry.severity
                return record.model_dump(mode="json")

            try:
                self.store.atomic_update(Keys.flagged_user(entry.user_id), update, self.FLAGGED_TTL)
            except StoreError as e:
                logger.error(f"Failed to record auto-flag for {entry.user_id}: {e}")
                MetricsExporter.record_store_error("auto_flag")

        if self.monitor is not None:
            self.monitor.log_event(SecurityEvent(
                type=SecurityEventType.IMPOSSIBLE_TIME,
                user_id=entry.user_id,
                data={
                    'reaction_time': entry.reaction_time,
                    'flags': flags,
                    'confidence': entry.validation.confidence,
                    'escalation_reason': entry.escalation_reason,
                }
            ))

    def get_validation_log(self, user_id: str) -> List[ValidationLogEntry]:
        if self.store is None:
            return []
        try:
            raw = self.store.get(Keys.validation_log(user_id)) or []
        except StoreError as e:
            logger.error(f"Failed to read validation log for {user_id}: {e}")
            MetricsExporter.record_store_error("validation_log")
            return []
        return [ValidationLogEntry.model_validate(item) for item in raw]

    def get_user_validation_stats(self, user_id: str) -> Optional[UserValidationStats]:
        """Summary of a user's logged validations with a 24h risk level."""
        entries = self.get_validation_log(user_id)
        if not entries:
            return None

        flag_frequency = {}
        for entry in entries:
            for flag in entry.validation.flags:
                flag_frequency[flag.value] = flag_frequency.get(flag.value, 0) + 1

        def count(action: ValidationAction) -> int:
            return sum(1 for e in entries if e.validation.action == action)

        return UserValidationStats(
            user_id=user_id,
            total_validations=len(entries),
            rejected_count=count(ValidationAction.REJECT),
            flagged_count=count(ValidationAction.FLAG),
            accepted_count=count(ValidationAction.ACCEPT),
            average_confidence=sum(e.validation.confidence for e in entries) / len(entries),
            flag_frequency=flag_frequency,
            last_validation=max(e.timestamp for e in entries),
            risk_level=self._risk_level(entries),
        )

    def _risk_level(self, entries: List[ValidationLogEntry]) -> Severity:
        cutoff = self._now_ms() - self.STATS_WINDOW_MS
        recent = [e for e in entries if e.timestamp >= cutoff]
        if not recent:
            return Severity.LOW

        rejection_rate = sum(1 for e in recent if e.validation.action == ValidationAction.REJECT) / len(recent)
        avg_confidence = sum(e.validation.confidence for e in recent) / len(recent)

        if rejection_rate > 0.5 or any(e.severity == Severity.CRITICAL for e in recent):
            return Severity.CRITICAL
        if rejection_rate > 0.2 or avg_confidence < 0.5:
            return Severity.HIGH
        if rejection_rate > 0.1 or avg_confidence < 0.7:
            return Severity.MEDIUM
        return Severity.LOW
