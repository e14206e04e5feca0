"""
Multi-horizon outcome collection.

Every shown intervention gets one outcome row. The proximal part is written
when the user responds; three scheduled passes then fill in what happened
over the next minutes, the rest of the day, and the following week. Each
pass only touches rows whose previous horizon is complete and whose own
flag is still unset, so reruns never change collected data.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Callable, Dict, List, Optional

from .bandit import BetaBandit
from .clock import DAY_MS, MINUTE_MS, Clock
from .config import OutcomeConfig
from .data_models import (
    ContentType,
    InteractionDepth,
    InterventionRecord,
    SessionRecord,
    UserChoice,
    UserFeedback,
    Variant,
)
from .errors import StoreError
from .reward import RewardCalculator, calculate_outcome_reward
from .rollout import RolloutController
from .store import DECISION_EXPLANATIONS, INTERVENTION_RESULTS, OUTCOMES, SESSIONS, Store
from .timing import TimingLearner

logger = logging.getLogger(__name__)

SESSION_CLOSE_GRACE_MS = 60_000
QUICK_REOPEN_MS = 5 * MINUTE_MS
REOPEN_WINDOW_MS = 30 * MINUTE_MS
WEEK_MS = 7 * DAY_MS


@dataclass
class ShownIntervention:
    """
    What was known when an intervention was shown; carried from the
    decision to the outcome.
    """

    intervention_id: str
    timestamp: int
    target_app: str
    content_type: str
    variant: str
    hour_of_day: int
    day_of_week: int
    is_weekend: bool
    session_count: int = 0
    quick_reopen: bool = False
    current_session_minutes: int = 0
    goal_minutes: Optional[int] = None
    persona: Optional[str] = None
    opportunity_score: Optional[int] = None
    opportunity_level: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class Outcome:
    intervention_id: str
    timestamp: int
    target_app: str
    content_type: str
    variant: str = Variant.CONTROL.value
    session_id: Optional[str] = None
    goal_minutes: Optional[int] = None

    # proximal
    user_choice: Optional[str] = None
    response_time_ms: Optional[int] = None
    interaction_depth: Optional[str] = None
    feedback: Optional[str] = None

    # short term
    session_continued: Optional[bool] = None
    session_duration_after_ms: Optional[int] = None
    quick_reopen_5min: Optional[bool] = None
    reopen_count_30min: Optional[int] = None
    switched_to_productive_app: Optional[bool] = None

    # medium term
    additional_sessions_today: Optional[int] = None
    total_screen_time_today_min: Optional[float] = None
    usage_reduction_min: Optional[float] = None
    goal_met_today: Optional[bool] = None

    # long term
    avg_daily_usage_next_7d: Optional[float] = None
    weekly_usage_change: Optional[str] = None
    streak_maintained: Optional[bool] = None
    app_uninstalled: Optional[bool] = None
    user_retention: Optional[bool] = None

    immediate_reward: Optional[float] = None
    reward: Optional[float] = None
    proximal_collected: bool = False
    short_term_collected: bool = False
    medium_term_collected: bool = False
    long_term_collected: bool = False
    collection_failures: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("id")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Outcome":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _session_minutes(sessions: List[SessionRecord], start_ms: int, end_ms: int) -> float:
    """
    Minutes of usage inside [start_ms, end_ms); open sessions count up to end_ms.
    """
    total = 0
    for s in sessions:
        begin = max(s.start_ms, start_ms)
        finish = min(s.end_ms if s.end_ms is not None else end_ms, end_ms)
        if finish > begin:
            total += finish - begin
    return total / MINUTE_MS


class OutcomeCollector:
    def __init__(
        self,
        store: Store,
        clock: Clock,
        bandit: Optional[BetaBandit] = None,
        timing_learner: Optional[TimingLearner] = None,
        rollout: Optional[RolloutController] = None,
        config: Optional[OutcomeConfig] = None,
        is_app_installed: Optional[Callable[[str], Optional[bool]]] = None,
        streak_days: Optional[Callable[[str], Optional[int]]] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.bandit = bandit
        self.timing_learner = timing_learner
        self.rollout = rollout
        self.config = config or OutcomeConfig()
        self.is_app_installed = is_app_installed
        self.streak_days = streak_days

    # -- proximal ----------------------------------------------------------

    def record_proximal(
        self,
        shown: ShownIntervention,
        user_choice: UserChoice,
        feedback: Optional[UserFeedback] = None,
        response_time_ms: int = 0,
        interaction_depth: Optional[InteractionDepth] = None,
        session_ended: Optional[bool] = None,
        session_duration_after_ms: Optional[int] = None,
        quick_reopen: Optional[bool] = None,
    ) -> Outcome:
        """
        Store the immediate result and apply the learning update for it.

        This is the only place arm, timing and rollout statistics are
        updated, so each intervention is learned from exactly once. The
        outcome row is written before learning; if that write fails the
        `StoreError` propagates and nothing is learned.
        """
        depth = interaction_depth or InteractionDepth.from_response_time(response_time_ms)
        reward = RewardCalculator.calculate(
            user_choice,
            feedback,
            session_ended=session_ended,
            session_duration_after_ms=session_duration_after_ms,
            quick_reopen=quick_reopen,
        )
        success = RewardCalculator.is_successful(user_choice, feedback)
        feedback_value = (feedback or UserFeedback.NONE).value

        record = InterventionRecord(
            intervention_id=shown.intervention_id,
            timestamp=shown.timestamp,
            target_app=shown.target_app,
            content_type=shown.content_type,
            user_choice=user_choice.value,
            variant=shown.variant,
            hour_of_day=shown.hour_of_day,
            day_of_week=shown.day_of_week,
            is_weekend=shown.is_weekend,
            session_count=shown.session_count,
            quick_reopen=shown.quick_reopen,
            current_session_minutes=shown.current_session_minutes,
            response_time_ms=response_time_ms,
            feedback=feedback_value,
            persona=shown.persona,
            opportunity_score=shown.opportunity_score,
            opportunity_level=shown.opportunity_level,
            reward=reward,
        )
        outcome = Outcome(
            intervention_id=shown.intervention_id,
            timestamp=shown.timestamp,
            target_app=shown.target_app,
            content_type=shown.content_type,
            variant=shown.variant,
            session_id=shown.session_id,
            goal_minutes=shown.goal_minutes,
            user_choice=user_choice.value,
            response_time_ms=response_time_ms,
            interaction_depth=depth.value,
            feedback=feedback_value,
            immediate_reward=reward,
            proximal_collected=True,
        )
        if session_ended is not None:
            outcome.session_continued = not session_ended
        if session_duration_after_ms is not None:
            outcome.session_duration_after_ms = session_duration_after_ms
        outcome.reward = calculate_outcome_reward(outcome.to_dict())

        outcome.id = self.store.append(OUTCOMES, outcome.to_dict())
        try:
            self.store.append(INTERVENTION_RESULTS, record.to_dict())
        except StoreError as exc:
            logger.warning(f"Failed to store intervention result for {shown.intervention_id}: {exc}")

        self._learn(shown, reward, success)
        return outcome

    def _learn(self, shown: ShownIntervention, reward: float, success: bool) -> None:
        try:
            content = ContentType(shown.content_type)
        except ValueError:
            logger.warning(f"Unknown content type {shown.content_type!r}, skipping bandit update")
            content = None
        if self.bandit is not None and content is not None:
            self.bandit.update(content, reward)
        if self.timing_learner is not None:
            self.timing_learner.record_timing_outcome(
                shown.hour_of_day, shown.target_app, shown.is_weekend, success
            )
        if self.rollout is not None:
            self.rollout.record_effectiveness(Variant(shown.variant), success)

    # -- scheduled passes --------------------------------------------------

    def _pending(self, flag_done: str, flag_todo: str, delay_ms: int, limit: Optional[int]) -> List[Outcome]:
        cutoff = self.clock.now_ms() - delay_ms
        rows = self.store.query(
            OUTCOMES,
            end_ms=cutoff + 1,
            where={flag_done: True, flag_todo: False},
            limit=limit if limit is not None else self.config.batch_limit,
        )
        return [Outcome.from_dict(row) for row in rows]

    def _run_pass(self, name: str, flag_done: str, flag_todo: str, delay_ms: int, limit: Optional[int], collect) -> int:
        try:
            pending = self._pending(flag_done, flag_todo, delay_ms, limit)
        except StoreError as exc:
            logger.warning(f"{name} collection skipped, store unavailable: {exc}")
            return 0
        collected = 0
        for outcome in pending:
            try:
                updates = collect(outcome)
                if updates is None:
                    continue
                updates[flag_todo] = True
                updates["collection_failures"] = 0
                merged = {**outcome.to_dict(), **updates}
                updates["reward"] = calculate_outcome_reward(merged)
                self.store.update(OUTCOMES, outcome.id, updates)
                collected += 1
            except Exception:
                logger.warning(f"{name} collection failed for outcome {outcome.id}", exc_info=True)
                self._record_failure(name, outcome, flag_todo)
        if pending:
            logger.info(f"{name} collection: {collected}/{len(pending)} outcomes updated")
        return collected

    def _record_failure(self, name: str, outcome: Outcome, flag_todo: str) -> None:
        failures = outcome.collection_failures + 1
        updates: Dict[str, Any] = {"collection_failures": failures}
        if failures >= self.config.max_collection_attempts:
            # leave this horizon's fields unset so later horizons can proceed
            updates[flag_todo] = True
            updates["collection_failures"] = 0
            logger.warning(f"{name} collection gave up on outcome {outcome.id} after {failures} attempts")
        try:
            self.store.update(OUTCOMES, outcome.id, updates)
        except StoreError as exc:
            logger.warning(f"Could not record collection failure for outcome {outcome.id}: {exc}")

    def collect_short_term(self, limit: Optional[int] = None) -> int:
        return self._run_pass(
            "Short-term", "proximal_collected", "short_term_collected",
            self.config.short_term_delay_ms, limit, self.collect_short_term_for,
        )

    def collect_medium_term(self, limit: Optional[int] = None) -> int:
        return self._run_pass(
            "Medium-term", "short_term_collected", "medium_term_collected",
            self.config.medium_term_delay_ms, limit, self.collect_medium_term_for,
        )

    def collect_long_term(self, limit: Optional[int] = None) -> int:
        return self._run_pass(
            "Long-term", "medium_term_collected", "long_term_collected",
            self.config.long_term_delay_ms, limit, self.collect_long_term_for,
        )

    # -- per-record collection ---------------------------------------------

    def _sessions(self, start_ms: int, end_ms: int, target_app: Optional[str] = None) -> List[SessionRecord]:
        rows = self.store.query(SESSIONS, start_ms=start_ms, end_ms=end_ms, target_app=target_app)
        return [SessionRecord.from_dict(row) for row in rows]

    def _own_session(self, outcome: Outcome) -> Optional[SessionRecord]:
        if outcome.session_id:
            rows = self.store.query(SESSIONS, where={"session_id": outcome.session_id}, limit=1)
            if rows:
                return SessionRecord.from_dict(rows[0])
        candidates = self._sessions(outcome.timestamp - DAY_MS, outcome.timestamp + 1, outcome.target_app)
        for session in reversed(candidates):
            if session.end_ms is None or session.end_ms >= outcome.timestamp:
                return session
        return None

    def collect_short_term_for(self, outcome: Outcome) -> Dict[str, Any]:
        if outcome.short_term_collected:
            return {}
        t = outcome.timestamp
        now = self.clock.now_ms()
        own = self._own_session(outcome)
        own_id = own.session_id if own else None
        updates: Dict[str, Any] = {}

        if own is not None:
            updates["session_continued"] = own.end_ms is None or own.end_ms - t > SESSION_CLOSE_GRACE_MS
            updates["session_duration_after_ms"] = max(0, (own.end_ms if own.end_ms is not None else now) - t)

        later = [
            s for s in self._sessions(t + 1, t + REOPEN_WINDOW_MS + 1, outcome.target_app)
            if s.session_id != own_id
        ]
        updates["quick_reopen_5min"] = any(s.start_ms <= t + QUICK_REOPEN_MS for s in later)
        updates["reopen_count_30min"] = len(later)

        productive = set(self.config.productive_apps)
        if productive:
            updates["switched_to_productive_app"] = any(
                s.target_app in productive for s in self._sessions(t + 1, t + QUICK_REOPEN_MS + 1)
            )
        return updates

    def collect_medium_term_for(self, outcome: Outcome) -> Optional[Dict[str, Any]]:
        """
        Same-day usage signals for the day the intervention was shown.

        Returns None until that day has ended, so the day's totals are never
        compared against full-day baselines while still partial.
        """
        if outcome.medium_term_collected:
            return {}
        t = outcome.timestamp
        day_start = self.clock.start_of_day_ms(t)
        day_end = day_start + DAY_MS
        if self.clock.now_ms() < day_end:
            return None
        own = self._own_session(outcome)
        own_id = own.session_id if own else None

        today = self._sessions(day_start, day_end, outcome.target_app)
        additional = [s for s in today if s.start_ms > t and s.session_id != own_id]
        screen_time = _session_minutes(today, day_start, day_end)
        updates: Dict[str, Any] = {
            "additional_sessions_today": len(additional),
            "total_screen_time_today_min": round(screen_time, 2),
        }

        baseline_sessions = self._sessions(day_start - WEEK_MS, day_start, outcome.target_app)
        if baseline_sessions:
            baseline = _session_minutes(baseline_sessions, day_start - WEEK_MS, day_start) / 7.0
            updates["usage_reduction_min"] = round(baseline - screen_time, 2)

        if outcome.goal_minutes is not None:
            updates["goal_met_today"] = screen_time <= outcome.goal_minutes
        return updates

    def collect_long_term_for(self, outcome: Outcome) -> Dict[str, Any]:
        if outcome.long_term_collected:
            return {}
        t = outcome.timestamp
        app = outcome.target_app
        next_week = _session_minutes(self._sessions(t, t + WEEK_MS, app), t, t + WEEK_MS) / 7.0
        updates: Dict[str, Any] = {"avg_daily_usage_next_7d": round(next_week, 2)}

        previous_sessions = self._sessions(t - WEEK_MS, t, app)
        if previous_sessions:
            previous = _session_minutes(previous_sessions, t - WEEK_MS, t) / 7.0
            if next_week < previous * 0.8:
                updates["weekly_usage_change"] = "DECREASED"
            elif next_week > previous * 1.2:
                updates["weekly_usage_change"] = "INCREASED"
            else:
                updates["weekly_usage_change"] = "STABLE"

        still_active = bool(self.store.query(SESSIONS, start_ms=t + WEEK_MS, limit=1)) or bool(
            self.store.query(DECISION_EXPLANATIONS, start_ms=t + WEEK_MS, limit=1)
        )
        updates["user_retention"] = still_active

        if self.is_app_installed is not None:
            installed = self.is_app_installed(app)
            if installed is not None:
                updates["app_uninstalled"] = not installed
        if self.streak_days is not None:
            streak = self.streak_days(app)
            if streak is not None:
                updates["streak_maintained"] = streak >= 7
        return updates

    # -- queries -----------------------------------------------------------

    def get_outcome(self, intervention_id: str) -> Optional[Outcome]:
        try:
            rows = self.store.query(OUTCOMES, where={"intervention_id": intervention_id}, limit=1)
        except StoreError as exc:
            logger.warning(f"Outcome lookup failed: {exc}")
            return None
        return Outcome.from_dict(rows[0]) if rows else None

    def prune(self, retention_days: int) -> int:
        cutoff = self.clock.now_ms() - retention_days * DAY_MS
        removed = 0
        for table in (OUTCOMES, INTERVENTION_RESULTS):
            try:
                removed += self.store.delete_before(table, cutoff)
            except StoreError as exc:
                logger.warning(f"Failed to prune {table}: {exc}")
        return removed
