"""
Opportunity scoring: is this a good moment to intervene?

The score is the sum of six independently bounded factors:

=====================  ======
factor                 points
=====================  ======
time receptiveness     0-25
session pattern        0-20
cognitive load         0-15
historical success     0-20
user state             0-20
behavioral cues        0-15
=====================  ======
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .clock import Clock
from .config import OpportunityConfig
from .data_models import InterventionContext, InterventionRecord
from .errors import StoreError
from .store import INTERVENTION_RESULTS, Store
from .timing import TimingLearner

logger = logging.getLogger(__name__)

FACTOR_BOUNDS: Dict[str, Tuple[int, int]] = {
    "time_receptiveness": (0, 25),
    "session_pattern": (0, 20),
    "cognitive_load": (0, 15),
    "historical_success": (0, 20),
    "user_state": (0, 20),
    "behavioral_cues": (0, 15),
}
MIN_SCORE = sum(low for low, _ in FACTOR_BOUNDS.values())
MAX_SCORE = sum(high for _, high in FACTOR_BOUNDS.values())


class OpportunityLevel(Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    MODERATE = "MODERATE"
    POOR = "POOR"

    @property
    def rank(self) -> int:
        return {"POOR": 0, "MODERATE": 1, "GOOD": 2, "EXCELLENT": 3}[self.value]


class InterventionAction(Enum):
    INTERVENE_NOW = "INTERVENE_NOW"
    INTERVENE_WITH_CONSIDERATION = "INTERVENE_WITH_CONSIDERATION"
    WAIT_FOR_BETTER_OPPORTUNITY = "WAIT_FOR_BETTER_OPPORTUNITY"
    SKIP_INTERVENTION = "SKIP_INTERVENTION"


LEVEL_ACTIONS = {
    OpportunityLevel.EXCELLENT: InterventionAction.INTERVENE_NOW,
    OpportunityLevel.GOOD: InterventionAction.INTERVENE_WITH_CONSIDERATION,
    OpportunityLevel.MODERATE: InterventionAction.WAIT_FOR_BETTER_OPPORTUNITY,
    OpportunityLevel.POOR: InterventionAction.SKIP_INTERVENTION,
}


@dataclass
class OpportunityDetection:
    score: int
    level: OpportunityLevel
    action: InterventionAction
    breakdown: Dict[str, int] = field(default_factory=dict)
    reasons: Dict[str, str] = field(default_factory=dict)
    target_app: str = ""
    timestamp: int = 0

    def top_factors(self, n: int = 3) -> List[str]:
        ranked = sorted(self.breakdown.items(), key=lambda item: item[1], reverse=True)
        return [name for name, _ in ranked[:n]]


def _clamp(value: int, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


class OpportunityScorer:
    """
    Scores an `InterventionContext`, caching the result per target app.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        timing_learner: Optional[TimingLearner] = None,
        config: Optional[OpportunityConfig] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.timing_learner = timing_learner
        self.config = config or OpportunityConfig()
        self._cache: Dict[str, OpportunityDetection] = {}
        self._lock = threading.Lock()

    def level_for(self, score: int) -> OpportunityLevel:
        if score >= self.config.excellent_threshold:
            return OpportunityLevel.EXCELLENT
        if score >= self.config.good_threshold:
            return OpportunityLevel.GOOD
        if score >= self.config.moderate_threshold:
            return OpportunityLevel.MODERATE
        return OpportunityLevel.POOR

    def detect(self, context: InterventionContext, force_refresh: bool = False) -> OpportunityDetection:
        now_ms = self.clock.now_ms()
        app = context.target_app
        with self._lock:
            cached = self._cache.get(app)
        if (
            not force_refresh
            and cached is not None
            and now_ms - cached.timestamp < self.config.cache_ttl_ms
        ):
            logger.debug(f"Opportunity cache hit for {app}")
            return cached

        history = self._recent_history(app)
        factors = {
            "time_receptiveness": self.time_factor(context),
            "session_pattern": self.session_factor(context),
            "cognitive_load": self.cognitive_factor(context),
            "historical_success": self.historical_factor(context, history),
            "user_state": self.user_state_factor(context),
            "behavioral_cues": self.behavioral_factor(context),
        }
        breakdown = {name: _clamp(points, FACTOR_BOUNDS[name]) for name, (points, _) in factors.items()}
        reasons = {name: reason for name, (_, reason) in factors.items()}
        score = sum(breakdown.values())
        level = self.level_for(score)
        detection = OpportunityDetection(
            score=score,
            level=level,
            action=LEVEL_ACTIONS[level],
            breakdown=breakdown,
            reasons=reasons,
            target_app=app,
            timestamp=now_ms,
        )
        logger.debug(f"Opportunity for {app}: {score} ({level.value}) {breakdown}")
        with self._lock:
            self._cache[app] = detection
        return detection

    def invalidate(self, target_app: Optional[str] = None) -> None:
        with self._lock:
            if target_app is None:
                self._cache.clear()
            else:
                self._cache.pop(target_app, None)

    def clear_cache(self) -> None:
        self.invalidate()

    # -- factors ---------------------------------------------------------

    def time_factor(self, ctx: InterventionContext) -> Tuple[int, str]:
        if self.timing_learner is not None:
            rate = self.timing_learner.get_success_rate(ctx.time_of_day, ctx.target_app, ctx.is_weekend)
            if rate is not None:
                if rate >= 0.70:
                    points = 25
                elif rate >= 0.55:
                    points = 20
                elif rate >= 0.40:
                    points = 15
                elif rate >= 0.25:
                    points = 10
                else:
                    points = 5
                return points, f"Learned timing ({rate:.0%} success at {ctx.time_of_day}:00)"
        return self._population_time_factor(ctx)

    @staticmethod
    def _population_time_factor(ctx: InterventionContext) -> Tuple[int, str]:
        hour = ctx.time_of_day
        if hour >= 22 or hour <= 2:
            if ctx.is_over_goal:
                return 25, "Late night, over goal"
            return 20, "Late night"
        if 3 <= hour <= 5:
            return 5, "Early morning"
        if 6 <= hour <= 9:
            if ctx.is_weekend and ctx.is_first_session_of_day:
                return 25, "Weekend morning, first session"
            if ctx.is_weekend:
                return 22, "Weekend morning"
            if ctx.is_first_session_of_day:
                return 23, "Morning, first session"
            return 20, "Morning"
        if 10 <= hour <= 16:
            if ctx.is_over_goal:
                return 18, "Midday, over goal"
            if ctx.is_extended_session:
                return 15, "Midday, extended session"
            return 12, "Midday"
        if 17 <= hour <= 21:
            if ctx.is_weekend and ctx.is_over_goal:
                return 23, "Weekend evening, over goal"
            if ctx.is_over_goal:
                return 20, "Evening, over goal"
            return 15, "Evening"
        return 10, "Neutral time"

    @staticmethod
    def session_factor(ctx: InterventionContext) -> Tuple[int, str]:
        if ctx.quick_reopen_attempt:
            return 20, "Quick Reopen"
        if ctx.is_first_session_of_day:
            return 15, "First Session Today"
        minutes = ctx.current_session_minutes
        if minutes >= 30:
            return 18, f"Very long session ({minutes} min)"
        if minutes >= 15:
            return 12, f"Extended session ({minutes} min)"
        if minutes >= 5:
            return 8, f"Moderate session ({minutes} min)"
        return 5, "Short session"

    @staticmethod
    def cognitive_factor(ctx: InterventionContext) -> Tuple[int, str]:
        points = 15
        notes = []
        if not ctx.quick_reopen_attempt:
            points -= 3
        minutes = ctx.current_session_minutes
        if minutes >= 20:
            points -= 5
            notes.append("deeply engaged")
        elif minutes >= 10:
            points -= 2
            notes.append("engaged")
        if ctx.time_of_day >= 22 or ctx.time_of_day <= 5:
            points += 2
            notes.append("low-demand hour")
        return _clamp(points, FACTOR_BOUNDS["cognitive_load"]), "Cognitive load: " + (", ".join(notes) or "light")

    def _recent_history(self, target_app: str) -> Optional[List[InterventionRecord]]:
        try:
            rows = self.store.query(
                INTERVENTION_RESULTS,
                target_app=target_app,
                newest_first=True,
                limit=self.config.history_limit,
            )
        except StoreError as exc:
            logger.warning(f"Intervention history unavailable for {target_app}: {exc}")
            return None
        return [InterventionRecord.from_dict(row) for row in rows]

    def historical_factor(
        self, ctx: InterventionContext, history: Optional[List[InterventionRecord]]
    ) -> Tuple[int, str]:
        if history is None:
            return 10, "History unavailable"
        if len(history) < self.config.min_history:
            return 12, f"Limited history ({len(history)} interventions)"

        window = self.config.similar_hour_window
        similar = [
            r for r in history
            if min(abs(r.hour_of_day - ctx.time_of_day), 24 - abs(r.hour_of_day - ctx.time_of_day)) <= window
        ]
        sample = similar if len(similar) >= self.config.min_similar_time else history
        rate = sum(1 for r in sample if r.is_go_back) / len(sample)
        if rate >= 0.60:
            points = 20
        elif rate >= 0.50:
            points = 17
        elif rate >= 0.40:
            points = 14
        elif rate >= 0.30:
            points = 10
        else:
            points = 5
        scope = "similar times" if sample is similar else "all times"
        return points, f"{rate:.0%} go-back rate at {scope}"

    @staticmethod
    def user_state_factor(ctx: InterventionContext) -> Tuple[int, str]:
        points = 10
        notes = []
        if ctx.streak_days >= 7:
            points += 5
            notes.append(f"{ctx.streak_days}-day streak")
        elif ctx.streak_days >= 3:
            points += 3
            notes.append(f"{ctx.streak_days}-day streak")
        if ctx.total_usage_yesterday > 0 and ctx.total_usage_today < ctx.total_usage_yesterday:
            points += 3
            notes.append("below yesterday")
        if ctx.weekly_average > 0 and ctx.total_usage_today < ctx.weekly_average:
            points += 2
            notes.append("below weekly average")
        if ctx.is_over_goal:
            points += 3
            notes.append("over goal")
        if ctx.streak_days >= 14:
            points += 2
        return _clamp(points, FACTOR_BOUNDS["user_state"]), "User state: " + (", ".join(notes) or "neutral")

    @staticmethod
    def behavioral_factor(ctx: InterventionContext) -> Tuple[int, str]:
        points = 0
        cues = []
        if ctx.compulsive_behavior_detected:
            points += 15
            cues.append("compulsive pattern")
        if ctx.rapid_app_switching:
            points += 10
            cues.append("rapid switching")
        if ctx.unusual_usage_time:
            points += 8
            cues.append("unusual time")
        if ctx.is_long_screen_session:
            points += 6
            cues.append("long screen time")
        if ctx.is_excessive_unlocking:
            points += 5
            cues.append("frequent unlocking")
        return _clamp(points, FACTOR_BOUNDS["behavioral_cues"]), "Behavioral cues: " + (", ".join(cues) or "none")
