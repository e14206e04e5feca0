"""
Learning *when* interventions work.

`TimingLearner` keeps exponentially weighted success rates per hour,
per (app, hour) and per (day type, hour). `ContextualTimingOptimizer`
analyses raw intervention history per app to recommend intervening now or
waiting for a better hour.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .clock import DAY_MS, HOUR_MS, Clock
from .config import TimingConfig
from .errors import StoreError
from .state import VersionedState
from .store import INTERVENTION_RESULTS, Store

logger = logging.getLogger(__name__)

STATE_KEY = "timing_patterns"


@dataclass
class TimingPattern:
    success_rate: float = 0.5
    observations: int = 0
    last_updated: int = 0

    def is_reliable(self, min_observations: int) -> bool:
        return self.observations >= min_observations


def hour_key(hour: int) -> str:
    return f"hour_{hour}"


def app_hour_key(app: str, hour: int) -> str:
    return f"{app}_hour_{hour}"


def day_type_key(is_weekend: bool, hour: int) -> str:
    return f"{'weekend' if is_weekend else 'weekday'}_hour_{hour}"


def effectiveness_label(rate: float) -> str:
    if rate >= 0.6:
        return "High"
    if rate >= 0.4:
        return "Moderate"
    return "Low"


class TimingLearner:
    """
    Three parallel EMA tables over intervention success.
    """

    def __init__(self, store: Store, clock: Clock, config: Optional[TimingConfig] = None) -> None:
        self.clock = clock
        self.config = config or TimingConfig()
        self._state = VersionedState(store, STATE_KEY, "timing")
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, TimingPattern]:
        document = self._state.load()
        if document is None:
            return {}
        patterns: Dict[str, TimingPattern] = {}
        for key, value in (document.get("patterns") or {}).items():
            try:
                patterns[key] = TimingPattern(
                    success_rate=min(1.0, max(0.0, float(value["rate"]))),
                    observations=int(value["observations"]),
                    last_updated=int(value.get("last_updated", 0)),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed timing pattern {key!r}")
        return patterns

    def _save(self, patterns: Dict[str, TimingPattern]) -> None:
        self._state.save(
            {
                "patterns": {
                    key: {
                        "rate": p.success_rate,
                        "observations": p.observations,
                        "last_updated": p.last_updated,
                    }
                    for key, p in patterns.items()
                }
            }
        )

    def _update_pattern(self, patterns: Dict[str, TimingPattern], key: str, success: bool, now_ms: int) -> None:
        observed = 1.0 if success else 0.0
        pattern = patterns.get(key)
        if pattern is None or pattern.observations == 0:
            patterns[key] = TimingPattern(observed, 1, now_ms)
            return
        lr = self.config.learning_rate
        pattern.success_rate = (1.0 - lr) * pattern.success_rate + lr * observed
        pattern.observations += 1
        pattern.last_updated = now_ms

    def record_timing_outcome(self, hour: int, target_app: str, is_weekend: bool, success: bool) -> None:
        now_ms = self.clock.now_ms()
        with self._lock:
            patterns = self._load()
            self._update_pattern(patterns, hour_key(hour), success, now_ms)
            self._update_pattern(patterns, app_hour_key(target_app, hour), success, now_ms)
            self._update_pattern(patterns, day_type_key(is_weekend, hour), success, now_ms)
            self._save(patterns)

    def get_pattern(self, key: str) -> Optional[TimingPattern]:
        return self._load().get(key)

    def get_success_rate(self, hour: int, target_app: str, is_weekend: bool) -> Optional[float]:
        """
        Most specific reliable rate for this moment, or None.
        """
        patterns = self._load()
        minimum = self.config.min_observations
        for key in (
            app_hour_key(target_app, hour),
            day_type_key(is_weekend, hour),
            hour_key(hour),
        ):
            pattern = patterns.get(key)
            if pattern is not None and pattern.is_reliable(minimum):
                return pattern.success_rate
        return None

    def hourly_summary(self) -> Dict[int, Dict[str, object]]:
        patterns = self._load()
        summary = {}
        for hour in range(24):
            pattern = patterns.get(hour_key(hour))
            if pattern is None:
                continue
            summary[hour] = {
                "success_rate": pattern.success_rate,
                "observations": pattern.observations,
                "reliable": pattern.is_reliable(self.config.min_observations),
                "effectiveness": effectiveness_label(pattern.success_rate),
            }
        return summary

    def has_reliable_data(self) -> bool:
        reliable = sum(1 for info in self.hourly_summary().values() if info["reliable"])
        return reliable >= self.config.reliable_hours_required

    def reset(self) -> None:
        with self._lock:
            self._state.clear()


class Confidence:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


TIME_WINDOWS = {
    "Night": [22, 23, 0, 1, 2, 3, 4, 5],
    "Morning": list(range(6, 12)),
    "Afternoon": list(range(12, 18)),
    "Evening": list(range(18, 22)),
}


@dataclass
class TimingAnalysis:
    target_app: str
    has_sufficient_data: bool
    total_records: int = 0
    hourly: Dict[int, Dict[str, float]] = field(default_factory=dict)
    hourly_by_day_type: Dict[str, Dict[int, Dict[str, float]]] = field(default_factory=dict)
    best_hours: List[int] = field(default_factory=list)
    worst_hours: List[int] = field(default_factory=list)
    windows: Dict[str, Dict[str, float]] = field(default_factory=dict)
    weekend_rate: Optional[float] = None
    weekday_rate: Optional[float] = None
    overall_rate: Optional[float] = None


@dataclass
class TimingRecommendation:
    should_intervene_now: bool
    should_delay: bool
    confidence: str
    reason: str
    recommended_hour: Optional[int] = None
    recommended_delay_ms: int = 0
    alternative_hours: List[int] = field(default_factory=list)
    current_hour_rate: Optional[float] = None


def hours_until(current_hour: int, target_hour: int) -> int:
    return (target_hour - current_hour) % 24


class ContextualTimingOptimizer:
    """
    Per-app hour-of-day analysis over raw intervention history.
    """

    def __init__(self, store: Store, clock: Clock, config: Optional[TimingConfig] = None) -> None:
        self.store = store
        self.clock = clock
        self.config = config or TimingConfig()
        self._cache: Dict[Tuple[str, int, bool], tuple] = {}
        self._lock = threading.Lock()

    def _history(self, target_app: str) -> pd.DataFrame:
        now_ms = self.clock.now_ms()
        try:
            rows = self.store.query(
                INTERVENTION_RESULTS,
                start_ms=now_ms - self.config.analysis_days * DAY_MS,
                target_app=target_app,
            )
        except StoreError as exc:
            logger.warning(f"Timing history unavailable for {target_app}: {exc}")
            rows = []
        if not rows:
            return pd.DataFrame(columns=["hour_of_day", "is_weekend", "success"])
        df = pd.DataFrame(rows)
        df["success"] = (df["user_choice"] == "GO_BACK").astype(float)
        return df[["hour_of_day", "is_weekend", "success"]]

    def analyze(self, target_app: str) -> TimingAnalysis:
        df = self._history(target_app)
        cfg = self.config
        if len(df) < cfg.min_data_points:
            return TimingAnalysis(target_app, has_sufficient_data=False, total_records=len(df))

        hourly = df.groupby("hour_of_day")["success"].agg(["mean", "count"])
        reliable = hourly[hourly["count"] >= cfg.min_hour_samples]
        best = reliable[reliable["mean"] >= cfg.excellent_rate].sort_values("mean", ascending=False)
        worst = reliable[reliable["mean"] <= cfg.poor_rate].sort_values("mean")

        windows = {}
        for name, hours in TIME_WINDOWS.items():
            subset = df[df["hour_of_day"].isin(hours)]
            if len(subset):
                windows[name] = {
                    "success_rate": float(subset["success"].mean()),
                    "count": int(len(subset)),
                    "reliable": len(subset) >= cfg.min_window_samples,
                }

        weekend = df[df["is_weekend"].astype(bool)]
        weekday = df[~df["is_weekend"].astype(bool)]
        by_day_type = {}
        for day_type, subset in (("weekend", weekend), ("weekday", weekday)):
            grouped = subset.groupby("hour_of_day")["success"].agg(["mean", "count"])
            by_day_type[day_type] = {
                int(hour): {"success_rate": float(row["mean"]), "count": int(row["count"])}
                for hour, row in grouped.iterrows()
            }
        return TimingAnalysis(
            target_app=target_app,
            has_sufficient_data=True,
            total_records=len(df),
            hourly={
                int(hour): {"success_rate": float(row["mean"]), "count": int(row["count"])}
                for hour, row in hourly.iterrows()
            },
            hourly_by_day_type=by_day_type,
            best_hours=[int(h) for h in best.index[:3]],
            worst_hours=[int(h) for h in worst.index[:3]],
            windows=windows,
            weekend_rate=float(weekend["success"].mean()) if len(weekend) else None,
            weekday_rate=float(weekday["success"].mean()) if len(weekday) else None,
            overall_rate=float(df["success"].mean()),
        )

    @staticmethod
    def next_best_hour(current_hour: int, best_hours: List[int]) -> int:
        if not best_hours:
            return (current_hour + 2) % 24
        ordered = sorted(best_hours)
        for hour in ordered:
            if hour > current_hour:
                return hour
        return ordered[0]

    def _current_stats(
        self, analysis: TimingAnalysis, current_hour: int, is_weekend: bool
    ) -> Tuple[Optional[Dict[str, float]], bool, bool]:
        """
        Stats for ``current_hour`` plus whether it counts as a best or worst hour.

        When the hour's history mixes weekdays and weekends and the current
        day type alone has enough samples, the hour is judged on that day
        type's own success rate against the same thresholds.
        """
        stats = analysis.hourly.get(current_hour)
        is_best = current_hour in analysis.best_hours
        is_worst = current_hour in analysis.worst_hours
        day_type = "weekend" if is_weekend else "weekday"
        day_stats = analysis.hourly_by_day_type.get(day_type, {}).get(current_hour)
        if (
            stats is not None
            and day_stats is not None
            and self.config.min_hour_samples <= day_stats["count"] < stats["count"]
        ):
            stats = day_stats
            is_best = stats["success_rate"] >= self.config.excellent_rate
            is_worst = stats["success_rate"] <= self.config.poor_rate
        return stats, is_best, is_worst

    def _recommend(self, analysis: TimingAnalysis, current_hour: int, is_weekend: bool) -> TimingRecommendation:
        if not analysis.has_sufficient_data:
            return TimingRecommendation(
                should_intervene_now=True,
                should_delay=False,
                confidence=Confidence.LOW,
                reason=f"Insufficient data ({analysis.total_records} records)",
            )

        stats, is_best, is_worst = self._current_stats(analysis, current_hour, is_weekend)
        rate = stats["success_rate"] if stats else None
        reliable_now = bool(stats) and stats["count"] >= self.config.min_hour_samples

        if is_best and reliable_now:
            return TimingRecommendation(
                should_intervene_now=True,
                should_delay=False,
                confidence=Confidence.HIGH,
                reason=f"{current_hour}:00 is a best hour ({rate:.0%} success)",
                current_hour_rate=rate,
            )

        if is_worst and reliable_now:
            target = self.next_best_hour(current_hour, analysis.best_hours)
            return TimingRecommendation(
                should_intervene_now=False,
                should_delay=True,
                confidence=Confidence.HIGH,
                reason=f"{current_hour}:00 is a poor hour ({rate:.0%} success), wait for {target}:00",
                recommended_hour=target,
                recommended_delay_ms=hours_until(current_hour, target) * HOUR_MS,
                alternative_hours=list(analysis.best_hours),
                current_hour_rate=rate,
            )

        if rate is not None and rate >= self.config.acceptable_rate:
            return TimingRecommendation(
                should_intervene_now=True,
                should_delay=False,
                confidence=Confidence.MEDIUM,
                reason=f"Acceptable timing ({rate:.0%} success)",
                alternative_hours=list(analysis.best_hours[:2]),
                current_hour_rate=rate,
            )

        target = self.next_best_hour(current_hour, analysis.best_hours)
        return TimingRecommendation(
            should_intervene_now=True,
            should_delay=False,
            confidence=Confidence.MEDIUM,
            reason="Timing is not optimal but not poor either",
            recommended_hour=target,
            recommended_delay_ms=hours_until(current_hour, target) * HOUR_MS,
            alternative_hours=list(analysis.best_hours[:2]),
            current_hour_rate=rate,
        )

    def get_optimal_timing(
        self,
        target_app: str,
        current_hour: int,
        is_weekend: bool,
        force_refresh: bool = False,
    ) -> TimingRecommendation:
        key = (target_app, current_hour, is_weekend)
        now_ms = self.clock.now_ms()
        with self._lock:
            cached = self._cache.get(key)
        if not force_refresh and cached is not None and now_ms - cached[1] < self.config.cache_ttl_ms:
            return cached[0]

        recommendation = self._recommend(self.analyze(target_app), current_hour, is_weekend)
        with self._lock:
            self._cache[key] = (recommendation, now_ms)
        return recommendation

    def invalidate(self, target_app: Optional[str] = None) -> None:
        with self._lock:
            if target_app is None:
                self._cache.clear()
            else:
                for key in [k for k in self._cache if k[0] == target_app]:
                    del self._cache[key]
