"""
Statistical analysis of reaction-time histories.
Outlier detection against a user's own history and behaviour profiling
from accumulated session counters.
"""

import math
import time
from typing import Callable, List, Optional, Sequence

from reaction_shield.models.validation import (
    OutlierAnalysis, BehaviorProfile, ContextualFactors, SessionStatistics,
    BasicStatistics, ImprovementMetrics, PerformanceProfile, FalseStartAnalysis
)
from reaction_shield.models.enums import (
    OutlierReason, BehaviorFlag, PerformanceTrend, TimeOfDay, SessionLength
)
from reaction_shield.lib.metrics import MetricsExporter


def is_finite_number(value) -> bool:
    """True for a real int/float that converts to a finite float (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(float(value))
    except OverflowError:
        # ints too large for a float
        return False


def finite_values(values: Sequence[float]) -> List[float]:
    return [float(v) for v in values if is_finite_number(v)]


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def variance(values: Sequence[float]) -> float:
    """Population variance."""
    if not values:
        return 0.0
    m = mean(values)
    return sum((v - m) ** 2 for v in values) / len(values)


def standard_deviation(values: Sequence[float]) -> float:
    return math.sqrt(variance(values))


def coefficient_of_variation(values: Sequence[float]) -> float:
    m = mean(values)
    return standard_deviation(values) / m if m > 0 else 0.0


def calculate_basic_statistics(values: Sequence[float]) -> BasicStatistics:
    values = finite_values(values)
    if not values:
        return BasicStatistics()

    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        median = ordered[mid]
    else:
        median = (ordered[mid - 1] + ordered[mid]) / 2

    var = variance(values)
    return BasicStatistics(
        mean=mean(values),
        median=median,
        standard_deviation=math.sqrt(var),
        variance=var,
        min=ordered[0],
        max=ordered[-1],
    )


def calculate_trend(values: Sequence[float], min_samples: int = 5, slope_threshold: float = 5.0) -> PerformanceTrend:
    """
    Least-squares slope over the sample index.
    A negative slope means times are getting faster.
    """
    values = finite_values(values)
    n = len(values)
    if n < min_samples:
        return PerformanceTrend.INSUFFICIENT_DATA

    x_mean = (n - 1) / 2
    y_mean = mean(values)
    numerator = sum((i - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    slope = numerator / denominator if denominator else 0.0

    if slope < -slope_threshold:
        return PerformanceTrend.IMPROVING
    if slope > slope_threshold:
        return PerformanceTrend.DECLINING
    return PerformanceTrend.STABLE


def half_improvement(values: Sequence[float]) -> float:
    """Relative speed-up of the second half of a history over the first half."""
    half = len(values) // 2
    if half == 0:
        return 0.0
    first = mean(values[:half])
    second = mean(values[half:])
    return (first - second) / first if first > 0 else 0.0


class OutlierDetector:
    """
    Z-score comparison of a new reaction time against the user's recent history.
    Improvements are suspicious, slow-downs much less so.
    """

    MIN_SAMPLES = 5
    ANALYSIS_WINDOW = 20
    MAX_HISTORY = 100
    Z_THRESHOLD = 2.5

    # Percent improvement over the mean -> (reason, confidence)
    DRAMATIC_IMPROVEMENT = 0.30
    SIGNIFICANT_IMPROVEMENT = 0.15
    IMPROVEMENT_CONFIDENCE = {
        OutlierReason.DRAMATIC_IMPROVEMENT: 0.9,
        OutlierReason.SIGNIFICANT_IMPROVEMENT: 0.75,
        OutlierReason.MODERATE_IMPROVEMENT: 0.6,
    }
    DEGRADATION_CONFIDENCE = 0.5

    # Faster than the last-5 mean by this fraction
    SUDDEN_IMPROVEMENT = 0.40
    SUDDEN_WINDOW = 5

    # Bot-like consistency: (minimum samples, CoV ceiling)
    BOT_COV_RULES = ((10, 0.10), (5, 0.05))
    BOT_CONFIDENCE = 0.95

    ZERO_VARIANCE_CONFIDENCE = 0.95
    INSUFFICIENT_DATA_CONFIDENCE = 0.3

    # Contextual increments, clipped to [0.1, 0.99]
    UNUSUAL_TIME_BONUS = 0.1
    SHORT_SESSION_BONUS = 0.15
    DEVICE_CHANGE_BONUS = 0.2
    HIGH_LATENCY_BONUS = 0.1
    HIGH_LATENCY_MS = 100

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self.clock = clock or time.time

    @MetricsExporter.track_duration("outlier")
    def analyze(
        self,
        new_time: float,
        history: Sequence[float],
        contextual_factors: Optional[ContextualFactors] = None
    ) -> OutlierAnalysis:
        """Classify new_time against the most recent ANALYSIS_WINDOW points of history."""
        if not is_finite_number(new_time):
            return OutlierAnalysis(
                is_outlier=False, z_score=0.0, confidence=0.0,
                reason=OutlierReason.INCONCLUSIVE
            )

        samples = finite_values(history)
        if len(samples) < self.MIN_SAMPLES:
            return OutlierAnalysis(
                is_outlier=False, z_score=0.0,
                confidence=self.INSUFFICIENT_DATA_CONFIDENCE,
                reason=OutlierReason.INSUFFICIENT_DATA
            )

        recent = samples[-self.ANALYSIS_WINDOW:]
        avg = mean(recent)
        std = standard_deviation(recent)

        # Step 1: real humans are never perfectly consistent
        if std == 0:
            return OutlierAnalysis(
                is_outlier=True, z_score=math.inf,
                confidence=self.ZERO_VARIANCE_CONFIDENCE,
                reason=OutlierReason.ZERO_VARIANCE_SUSPICIOUS
            )

        # Step 2: z-score
        z_score = abs(new_time - avg) / std
        is_outlier = z_score > self.Z_THRESHOLD
        confidence = min(0.95, max(0.1, z_score / 5))
        reason = OutlierReason.NORMAL_VARIATION

        # Step 3: classify the outlier
        if is_outlier:
            if new_time < avg:
                improvement = (avg - new_time) / avg
                if improvement > self.DRAMATIC_IMPROVEMENT:
                    reason = OutlierReason.DRAMATIC_IMPROVEMENT
                elif improvement > self.SIGNIFICANT_IMPROVEMENT:
                    reason = OutlierReason.SIGNIFICANT_IMPROVEMENT
                else:
                    reason = OutlierReason.MODERATE_IMPROVEMENT
                confidence = self.IMPROVEMENT_CONFIDENCE[reason]
            else:
                reason = OutlierReason.PERFORMANCE_DEGRADATION
                confidence = self.DEGRADATION_CONFIDENCE

        # Step 4: sudden jump against the very latest games
        latest_mean = mean(recent[-self.SUDDEN_WINDOW:])
        if latest_mean > 0:
            sudden = (latest_mean - new_time) / latest_mean
            if sudden > self.SUDDEN_IMPROVEMENT:
                reason = OutlierReason.SUDDEN_DRAMATIC_IMPROVEMENT
                confidence = max(confidence, min(0.9, sudden * 2))

        # Step 5: timings clustered too tightly, whatever the z-score
        cov = std / avg if avg > 0 else 0.0
        if any(len(recent) >= n and cov < ceiling for n, ceiling in self.BOT_COV_RULES):
            reason = OutlierReason.BOT_LIKE_CONSISTENCY
            confidence = max(confidence, self.BOT_CONFIDENCE)

        if contextual_factors is not None:
            confidence = self.apply_contextual_factors(confidence, contextual_factors)

        return OutlierAnalysis(
            is_outlier=is_outlier,
            z_score=z_score,
            confidence=confidence,
            reason=reason
        )

    def apply_contextual_factors(self, confidence: float, factors: ContextualFactors) -> float:
        if factors.time_of_day == TimeOfDay.UNUSUAL:
            confidence += self.UNUSUAL_TIME_BONUS
        if factors.session_length == SessionLength.SHORT:
            confidence += self.SHORT_SESSION_BONUS
        if factors.device_change:
            confidence += self.DEVICE_CHANGE_BONUS
        if factors.network_latency > self.HIGH_LATENCY_MS:
            confidence += self.HIGH_LATENCY_BONUS
        return min(0.99, max(0.1, confidence))

    def track_user_performance(
        self,
        user_id: str,
        new_time: float,
        history: Sequence[float]
    ) -> PerformanceProfile:
        """Append new_time to history (capped) and summarize the result."""
        updated = finite_values(list(history) + [new_time])[-self.MAX_HISTORY:]
        recent = updated[-10:]

        return PerformanceProfile(
            user_id=user_id,
            history=updated,
            statistics=calculate_basic_statistics(updated),
            trend=calculate_trend(updated),
            volatility=coefficient_of_variation(recent),
            improvement=self._improvement_metrics(updated),
            last_updated=int(self.clock() * 1000),
        )

    def _improvement_metrics(self, values: List[float]) -> ImprovementMetrics:
        if len(values) < 2:
            return ImprovementMetrics()

        steps = [
            (prev - cur) / prev
            for prev, cur in zip(values, values[1:])
            if prev > 0
        ]
        recent = 0.0
        if len(values) >= 20:
            previous = mean(values[-20:-10])
            latest = mean(values[-10:])
            recent = (previous - latest) / previous if previous > 0 else 0.0

        return ImprovementMetrics(
            rate=half_improvement(values),
            consistency=1 / (1 + variance(steps)),
            recent=recent,
        )


class BehaviorProfiler:
    """
    Suspicion profile built from session counters and history.
    Pure function of its inputs, safe to recompute.
    """

    MIN_GAMES_FOR_FALSE_START_RATE = 20
    LOW_FALSE_START_RATE = 0.05
    EXCESSIVE_FALSE_START_RATE = 0.5

    MIN_CONSISTENCY_SAMPLES = 5
    NEUTRAL_CONSISTENCY = 0.5
    MACHINE_PRECISION_COV = 0.05
    MACHINE_PRECISION_SAMPLES = 10

    MIN_IMPROVEMENT_SAMPLES = 10
    UNREALISTIC_IMPROVEMENT = 0.3

    ROBOTIC_RHYTHM_VARIANCE = 5.0
    ROBOTIC_RHYTHM_INTERVALS = 10

    # False-start analysis thresholds: (minimum games, rate ceiling, weight)
    IMPOSSIBLY_LOW_RULE = (50, 0.01, 0.8)
    UNUSUALLY_LOW_RULE = (20, 0.03, 0.6)
    EXCESSIVE_RULE = (0.7, 0.4)
    INCONSISTENCY_GAP = 0.3
    INCONSISTENCY_MIN_RECENT = 10
    INCONSISTENCY_WEIGHT = 0.5
    PERFECT_STREAK = 20
    PERFECT_STREAK_WEIGHT = 0.7
    NORMAL_SCORE_CEILING = 0.3

    def profile(self, stats: Optional[SessionStatistics], history: Sequence[float]) -> BehaviorProfile:
        stats = stats or SessionStatistics()
        samples = finite_values(history)
        flags = set()

        # Step 1: false-start rate
        false_start_rate = 0.0
        if stats.games_played > 0:
            false_start_rate = min(1.0, stats.false_starts / stats.games_played)
            if (stats.games_played > self.MIN_GAMES_FOR_FALSE_START_RATE
                    and false_start_rate < self.LOW_FALSE_START_RATE):
                flags.add(BehaviorFlag.UNUSUALLY_LOW_FALSE_START_RATE)
            if false_start_rate > self.EXCESSIVE_FALSE_START_RATE:
                flags.add(BehaviorFlag.EXCESSIVE_FALSE_STARTS)

        # Step 2: consistency
        consistency_score = self.NEUTRAL_CONSISTENCY
        if len(samples) >= self.MIN_CONSISTENCY_SAMPLES:
            cov = coefficient_of_variation(samples)
            consistency_score = 1 - min(1.0, cov * 5)
            if len(samples) > self.MACHINE_PRECISION_SAMPLES and cov < self.MACHINE_PRECISION_COV:
                flags.add(BehaviorFlag.MACHINE_LIKE_PRECISION)
        else:
            flags.add(BehaviorFlag.INSUFFICIENT_DATA)

        # Step 3: learning curve
        improvement_pattern = 0.0
        if len(samples) > self.MIN_IMPROVEMENT_SAMPLES:
            improvement_pattern = half_improvement(samples)
            if improvement_pattern > self.UNREALISTIC_IMPROVEMENT:
                flags.add(BehaviorFlag.UNREALISTIC_IMPROVEMENT_RATE)

        # Step 4: rhythm of successive differences
        intervals = [b - a for a, b in zip(samples, samples[1:])]
        if len(intervals) > self.ROBOTIC_RHYTHM_INTERVALS and variance(intervals) < self.ROBOTIC_RHYTHM_VARIANCE:
            flags.add(BehaviorFlag.ROBOTIC_TIMING_RHYTHM)

        return BehaviorProfile(
            consistency_score=max(0.0, consistency_score),
            false_start_rate=false_start_rate,
            improvement_pattern=improvement_pattern,
            suspicious_flags=flags
        )

    def analyze_false_start_behavior(
        self,
        stats: Optional[SessionStatistics],
        recent_false_starts: Sequence[bool] = ()
    ) -> FalseStartAnalysis:
        """
        Deeper look at false starts.
        recent_false_starts is the per-game sequence of the latest games, True for a false start.
        """
        stats = stats or SessionStatistics()
        if stats.games_played == 0:
            return FalseStartAnalysis(
                false_start_rate=0.0, recent_rate=0.0,
                flags=[BehaviorFlag.INSUFFICIENT_DATA],
                suspicious_score=0.0, is_normal=True
            )

        rate = min(1.0, stats.false_starts / stats.games_played)
        recent = list(recent_false_starts)
        recent_rate = sum(1 for x in recent if x) / len(recent) if recent else rate
        flags: List[BehaviorFlag] = []
        score = 0.0

        min_games, ceiling, weight = self.IMPOSSIBLY_LOW_RULE
        low_games, low_ceiling, low_weight = self.UNUSUALLY_LOW_RULE
        if stats.games_played > min_games and rate < ceiling:
            flags.append(BehaviorFlag.IMPOSSIBLY_LOW_FALSE_START_RATE)
            score += weight
        elif stats.games_played > low_games and rate < low_ceiling:
            flags.append(BehaviorFlag.UNUSUALLY_LOW_FALSE_START_RATE)
            score += low_weight

        excessive_rate, excessive_weight = self.EXCESSIVE_RULE
        if rate > excessive_rate:
            flags.append(BehaviorFlag.EXCESSIVE_FALSE_STARTS)
            score += excessive_weight

        if len(recent) >= self.INCONSISTENCY_MIN_RECENT and abs(recent_rate - rate) > self.INCONSISTENCY_GAP:
            flags.append(BehaviorFlag.INCONSISTENT_FALSE_START_PATTERN)
            score += self.INCONSISTENCY_WEIGHT

        if self._longest_clean_streak(recent) >= self.PERFECT_STREAK:
            flags.append(BehaviorFlag.PERFECT_STREAK_SUSPICIOUS)
            score += self.PERFECT_STREAK_WEIGHT

        score = min(1.0, score)
        return FalseStartAnalysis(
            false_start_rate=rate,
            recent_rate=recent_rate,
            flags=flags,
            suspicious_score=score,
            is_normal=score < self.NORMAL_SCORE_CEILING
        )

    @staticmethod
    def _longest_clean_streak(sequence: Sequence[bool]) -> int:
        longest = current = 0
        for false_start in sequence:
            current = 0 if false_start else current + 1
            longest = max(longest, current)
        return longest
