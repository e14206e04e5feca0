"""
Intervention burden (fatigue) estimation.

Burden is derived purely from the intervention results of the last
30 days. It throttles the orchestrator through a cooldown multiplier and
can block an intervention outright when fatigue is critical or escalating.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from .clock import DAY_MS, MINUTE_MS, Clock
from .config import BurdenConfig
from .data_models import InterventionRecord, UserChoice, UserFeedback
from .errors import StoreError
from .state import VersionedState
from .store import INTERVENTION_RESULTS, Store

logger = logging.getLogger(__name__)

HISTORY_KEY = "burden_history"


class BurdenLevel(Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def cooldown_multiplier(self) -> float:
        return {
            BurdenLevel.LOW: 1.0,
            BurdenLevel.MODERATE: 1.5,
            BurdenLevel.HIGH: 2.5,
            BurdenLevel.CRITICAL: 4.0,
        }[self]

    @classmethod
    def from_score(cls, score: int) -> "BurdenLevel":
        if score >= 15:
            return cls.CRITICAL
        if score >= 10:
            return cls.HIGH
        if score >= 5:
            return cls.MODERATE
        return cls.LOW


class Trend(Enum):
    INCREASING = "INCREASING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


@dataclass
class BurdenMetrics:
    """
    Rolling-window fatigue indicators.
    """

    avg_response_time_ms: float = 5000.0
    dismiss_rate: float = 0.0
    timeout_rate: float = 0.0
    snooze_count: int = 0
    interventions_last_24h: int = 0
    interventions_last_7d: int = 0
    engagement_trend: Trend = Trend.STABLE
    effectiveness_last_7d: float = 0.5
    effectiveness_trend: Trend = Trend.STABLE
    effectiveness_slope: float = 0.0
    recent_go_back_rate: float = 0.5
    helpful_count: int = 0
    disruptive_count: int = 0
    avg_spacing_minutes: float = 30.0
    min_spacing_minutes: float = 30.0
    sample_size: int = 0

    @property
    def feedback_count(self) -> int:
        return self.helpful_count + self.disruptive_count

    @property
    def helpfulness_ratio(self) -> float:
        if self.feedback_count == 0:
            return 0.5
        return self.helpful_count / self.feedback_count

    @property
    def daily_average_7d(self) -> float:
        return self.interventions_last_7d / 7.0

    def is_reliable(self, min_sample: int = 10) -> bool:
        return self.sample_size >= min_sample

    def burden_score(self) -> int:
        score = 0
        if self.dismiss_rate > 0.4:
            score += 3
        if self.timeout_rate > 0.3:
            score += 3
        if self.engagement_trend == Trend.DECLINING:
            score += 4
        if self.effectiveness_trend == Trend.DECLINING:
            score += 4
        if self.interventions_last_24h > 15:
            score += 2
        if self.avg_spacing_minutes < 10:
            score += 2
        if self.min_spacing_minutes < 3:
            score += 3
        if self.effectiveness_last_7d < 0.35:
            score += 3
        if self.helpfulness_ratio < 0.3 and self.feedback_count >= 5:
            score += 5
        if self.snooze_count > 5:
            score += 2
        return score

    def burden_factors(self) -> List[str]:
        factors = []
        if self.dismiss_rate > 0.4:
            factors.append(f"High dismiss rate ({self.dismiss_rate:.0%})")
        if self.timeout_rate > 0.3:
            factors.append(f"High timeout rate ({self.timeout_rate:.0%})")
        if self.engagement_trend == Trend.DECLINING:
            factors.append("Declining engagement")
        if self.effectiveness_trend == Trend.DECLINING:
            factors.append("Declining effectiveness")
        if self.interventions_last_24h > 15:
            factors.append(f"Too many interventions today ({self.interventions_last_24h})")
        if self.avg_spacing_minutes < 10:
            factors.append(f"Interventions too close together ({self.avg_spacing_minutes:.1f} min apart)")
        if self.min_spacing_minutes < 3:
            factors.append("Back-to-back interventions")
        if self.effectiveness_last_7d < 0.35:
            factors.append(f"Low effectiveness this week ({self.effectiveness_last_7d:.0%})")
        if self.helpfulness_ratio < 0.3 and self.feedback_count >= 5:
            factors.append("Mostly negative feedback")
        if self.snooze_count > 5:
            factors.append(f"Frequent snoozing ({self.snooze_count})")
        return factors


def _go_back_rate(records: List[InterventionRecord], default: float = 0.5) -> float:
    if not records:
        return default
    return sum(1 for r in records if r.is_go_back) / len(records)


def compute_metrics(records: List[InterventionRecord], now_ms: int) -> BurdenMetrics:
    """
    Build metrics from records ordered oldest first.
    """
    metrics = BurdenMetrics(sample_size=len(records))
    if not records:
        return metrics

    n = len(records)
    metrics.avg_response_time_ms = float(np.mean([r.response_time_ms for r in records]))
    metrics.dismiss_rate = sum(1 for r in records if r.user_choice == UserChoice.DISMISS.value) / n
    metrics.timeout_rate = sum(1 for r in records if r.user_choice == UserChoice.TIMEOUT.value) / n
    metrics.snooze_count = sum(1 for r in records if r.user_choice == UserChoice.SNOOZE.value)
    metrics.interventions_last_24h = sum(1 for r in records if r.timestamp >= now_ms - DAY_MS)
    last_week = [r for r in records if r.timestamp >= now_ms - 7 * DAY_MS]
    metrics.interventions_last_7d = len(last_week)
    metrics.effectiveness_last_7d = _go_back_rate(last_week)
    metrics.recent_go_back_rate = _go_back_rate(records[-20:])
    metrics.helpful_count = sum(1 for r in records if r.feedback == UserFeedback.HELPFUL.value)
    metrics.disruptive_count = sum(1 for r in records if r.feedback == UserFeedback.DISRUPTIVE.value)

    if n >= 20:
        half = n // 2
        change = _go_back_rate(records[half:]) - _go_back_rate(records[:half])
        if change > 0.10:
            metrics.engagement_trend = Trend.INCREASING
        elif change < -0.10:
            metrics.engagement_trend = Trend.DECLINING

    if n >= 10:
        outcomes = np.array([1.0 if r.is_go_back else 0.0 for r in records[-30:]])
        slope = float(np.polyfit(np.arange(len(outcomes)), outcomes, 1)[0])
        metrics.effectiveness_slope = slope
        if slope > 0.02:
            metrics.effectiveness_trend = Trend.INCREASING
        elif slope < -0.02:
            metrics.effectiveness_trend = Trend.DECLINING

    if n >= 2:
        gaps = np.diff([r.timestamp for r in records]) / MINUTE_MS
        metrics.avg_spacing_minutes = float(gaps.mean())
        metrics.min_spacing_minutes = float(gaps.min())

    return metrics


class FatigueRecoveryTracker:
    """
    Credits users whose intervention load has dropped well below normal and
    grants relief when recent interventions are consistently accepted.
    """

    def __init__(self, config: Optional[BurdenConfig] = None) -> None:
        self.config = config or BurdenConfig()

    @staticmethod
    def recovery_credit(metrics: BurdenMetrics) -> float:
        daily_avg = metrics.daily_average_7d
        recent = metrics.interventions_last_24h
        if recent < 3 and daily_avg >= 10:
            return 0.3
        if recent < 5 and daily_avg >= 8:
            return 0.2
        if recent < daily_avg * 0.5:
            return 0.1
        return 0.0

    @staticmethod
    def apply_recovery(score: int, credit: float) -> int:
        return max(0, score - int(score * credit))

    def is_eligible_for_relief(self, records: List[InterventionRecord]) -> bool:
        window = self.config.relief_window
        recent = records[-window:]
        if len(recent) < window:
            return False
        return _go_back_rate(recent) >= self.config.relief_go_back_rate


@dataclass
class BurdenTrendAnalysis:
    current_score: int
    previous_score: Optional[int]
    trend: Trend
    change: int
    change_percent: float
    escalating: bool
    warning: bool


class BurdenTrendMonitor:
    """
    Keeps the last few burden scores and flags escalation.
    """

    def __init__(self, store: Store, config: Optional[BurdenConfig] = None) -> None:
        self.config = config or BurdenConfig()
        self._state = VersionedState(store, HISTORY_KEY, "burden_history")
        self._lock = threading.Lock()

    def history(self) -> List[int]:
        document = self._state.load()
        if document is None:
            return []
        scores = document.get("scores")
        if not isinstance(scores, list):
            return []
        return [int(s) for s in scores if isinstance(s, (int, float))]

    def record(self, score: int) -> None:
        with self._lock:
            self._append(score)

    def _append(self, score: int) -> None:
        scores = (self.history() + [int(score)])[-self.config.history_size :]
        self._state.save({"scores": scores})

    @staticmethod
    def evaluate(history: List[int], current: int) -> BurdenTrendAnalysis:
        """
        Compare ``current`` against previously recorded scores.

        Escalation needs the last three recorded scores to be strictly
        increasing and the current score to be at least 10.
        """
        previous = history[-1] if history else None
        change = current - previous if previous is not None else 0
        if change > 2:
            trend = Trend.INCREASING
        elif change < -2:
            trend = Trend.DECLINING
        else:
            trend = Trend.STABLE
        change_percent = (change / previous * 100.0) if previous else 0.0

        last_three = history[-3:]
        rising = len(last_three) == 3 and last_three[0] < last_three[1] < last_three[2]
        escalating = rising and current >= 10
        warning = escalating or (change_percent > 50.0 and current >= 8)
        return BurdenTrendAnalysis(
            current_score=current,
            previous_score=previous,
            trend=trend,
            change=change,
            change_percent=change_percent,
            escalating=escalating,
            warning=warning,
        )

    def analyze(self, current: int, record: bool = False) -> BurdenTrendAnalysis:
        """
        Evaluate ``current`` against the stored history, then optionally
        append it to that history in the same critical section.
        """
        with self._lock:
            analysis = self.evaluate(self.history(), current)
            if record:
                self._append(current)
        return analysis

    def reset(self) -> None:
        with self._lock:
            self._state.clear()


@dataclass
class BurdenAssessment:
    metrics: BurdenMetrics
    raw_score: int
    recovery_credit: float
    score: int
    level: BurdenLevel
    cooldown_multiplier: float
    trend: BurdenTrendAnalysis
    relief_eligible: bool
    reliable: bool
    computed_at_ms: int
    factors: List[str] = field(default_factory=list)

    @property
    def mitigation_needed(self) -> bool:
        return self.reliable and not self.relief_eligible and self.cooldown_multiplier > 1.0

    def summary(self) -> str:
        if not self.reliable:
            return (
                f"Burden: insufficient data ({self.metrics.sample_size} interventions), "
                "no mitigation"
            )
        parts = [f"Burden: {self.level.value} (score {self.score}"]
        if self.recovery_credit > 0:
            parts.append(f", raw {self.raw_score}, recovery credit {self.recovery_credit:.0%}")
        parts.append(f"), cooldown x{self.cooldown_multiplier}")
        if self.trend.warning:
            parts.append(f", escalating {self.trend.trend.value.lower()}")
        if self.relief_eligible:
            parts.append(", relief granted")
        if self.factors:
            parts.append(". Factors: " + "; ".join(self.factors))
        return "".join(parts)


class BurdenEstimator:
    """
    Computes and caches the current burden assessment.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        config: Optional[BurdenConfig] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.config = config or BurdenConfig()
        self.recovery = FatigueRecoveryTracker(self.config)
        self.trend_monitor = BurdenTrendMonitor(store, self.config)
        self._cache: Optional[BurdenAssessment] = None
        self._lock = threading.Lock()

    def _load_records(self, now_ms: int) -> List[InterventionRecord]:
        start = now_ms - self.config.lookback_days * DAY_MS
        try:
            rows = self.store.query(INTERVENTION_RESULTS, start_ms=start, end_ms=now_ms + 1)
        except StoreError as exc:
            logger.warning(f"Failed to load intervention history for burden: {exc}")
            return []
        return [InterventionRecord.from_dict(row) for row in rows]

    def calculate_metrics(self) -> BurdenMetrics:
        now_ms = self.clock.now_ms()
        return compute_metrics(self._load_records(now_ms), now_ms)

    def assess(self, force_refresh: bool = False) -> BurdenAssessment:
        now_ms = self.clock.now_ms()
        with self._lock:
            cached = self._cache
            if (
                not force_refresh
                and cached is not None
                and now_ms - cached.computed_at_ms < self.config.cache_ttl_ms
            ):
                return cached

        records = self._load_records(now_ms)
        metrics = compute_metrics(records, now_ms)
        raw_score = metrics.burden_score()
        credit = self.recovery.recovery_credit(metrics)
        score = self.recovery.apply_recovery(raw_score, credit)
        reliable = metrics.is_reliable(self.config.min_reliable_sample)
        level = BurdenLevel.from_score(score) if reliable else BurdenLevel.LOW
        relief = self.recovery.is_eligible_for_relief(records)

        trend = self.trend_monitor.analyze(score, record=reliable)

        assessment = BurdenAssessment(
            metrics=metrics,
            raw_score=raw_score,
            recovery_credit=credit,
            score=score,
            level=level,
            cooldown_multiplier=level.cooldown_multiplier if reliable else 1.0,
            trend=trend,
            relief_eligible=relief,
            reliable=reliable,
            computed_at_ms=now_ms,
            factors=metrics.burden_factors(),
        )
        logger.debug(
            f"Burden assessed: score={score} raw={raw_score} level={level.value} "
            f"n={metrics.sample_size} relief={relief}"
        )
        with self._lock:
            self._cache = assessment
        return assessment

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None

    def should_reduce_interventions(self) -> bool:
        assessment = self.assess()
        if not assessment.reliable:
            return False
        metrics = assessment.metrics
        return (
            assessment.level in (BurdenLevel.HIGH, BurdenLevel.CRITICAL)
            or metrics.dismiss_rate > 0.5
            or (metrics.helpfulness_ratio < 0.3 and metrics.feedback_count >= 5)
        )

    def identify_burden_factors(self) -> List[str]:
        return self.assess().factors

    def burden_summary(self) -> Dict[str, object]:
        assessment = self.assess()
        metrics = assessment.metrics
        return {
            "level": assessment.level.value,
            "score": assessment.score,
            "raw_score": assessment.raw_score,
            "recovery_credit": assessment.recovery_credit,
            "cooldown_multiplier": assessment.cooldown_multiplier,
            "reliable": assessment.reliable,
            "relief_eligible": assessment.relief_eligible,
            "trend": assessment.trend.trend.value,
            "escalation_warning": assessment.trend.warning,
            "sample_size": metrics.sample_size,
            "dismiss_rate": metrics.dismiss_rate,
            "timeout_rate": metrics.timeout_rate,
            "interventions_last_24h": metrics.interventions_last_24h,
            "effectiveness_last_7d": metrics.effectiveness_last_7d,
            "helpfulness_ratio": metrics.helpfulness_ratio,
            "factors": assessment.factors,
            "should_reduce": self.should_reduce_interventions(),
            "summary": assessment.summary(),
        }
