"""
Decision orchestration.

`DecisionOrchestrator.evaluate` walks a fixed sequence of stages for every
app open and stops at the first one that blocks. Every run, shown or
skipped, leaves exactly one `DecisionExplanation` in the decision log.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from .bandit import ArmStats, BetaBandit
from .burden import BurdenAssessment, BurdenEstimator, BurdenLevel
from .clock import Clock
from .config import EngineConfig
from .content_policy import ContentSelectionPolicy
from .data_models import (
    ContentType,
    InteractionDepth,
    InterventionContext,
    SessionRecord,
    UserChoice,
    UserFeedback,
    Variant,
)
from .decision_logger import DecisionLogger, DecisionSummary
from .errors import StoreError
from .explanation import BlockingReason, DecisionExplanation, DecisionOutcome
from .monitoring import intervention_kpis, kpis_by
from .opportunity import InterventionAction, OpportunityDetection, OpportunityLevel, OpportunityScorer
from .outcomes import OutcomeCollector, ShownIntervention
from .persona import PersonaAssessment, PersonaClassifier
from .rate_limiter import RateLimiter, frequency_block_reason, frequency_rule_allows
from .rollout import RolloutController
from .store import INTERVENTION_RESULTS, SESSIONS, Store
from .timing import ContextualTimingOptimizer, TimingLearner

logger = logging.getLogger(__name__)


class DecisionStage(Enum):
    GATHER_CONTEXT = auto()
    RATE_LIMIT_CHECK = auto()
    OPPORTUNITY_SCORE = auto()
    BURDEN_CHECK = auto()
    CONTENT_SELECT = auto()
    EMIT = auto()


@dataclass
class Decision:
    decision: DecisionOutcome
    content_type: Optional[ContentType] = None
    intervention_id: Optional[str] = None
    blocking_reason: Optional[BlockingReason] = None
    explanation: Optional[DecisionExplanation] = None

    @property
    def should_show(self) -> bool:
        return self.decision == DecisionOutcome.SHOW

    @property
    def rationale(self) -> str:
        return self.explanation.explanation if self.explanation is not None else ""


class _Blocked(Exception):
    """
    Raised by a stage to end the evaluation with a SKIP.
    """

    def __init__(self, reason: BlockingReason, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


@dataclass
class _Evaluation:
    context: InterventionContext
    now_ms: int
    explanation: DecisionExplanation
    stage: DecisionStage = DecisionStage.GATHER_CONTEXT
    persona: Optional[PersonaAssessment] = None
    variant: Variant = Variant.CONTROL
    opportunity: Optional[OpportunityDetection] = None
    burden: Optional[BurdenAssessment] = None
    notes: List[str] = field(default_factory=list)


def _is_daytime(hour: int) -> bool:
    return 6 <= hour <= 23


class DecisionOrchestrator:
    """
    Entry point for the host: wires persona, rollout, rate limiting,
    opportunity, burden, timing, content selection, logging and outcome
    collection around one store and one clock.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        persona_classifier: PersonaClassifier,
        user_id: str,
        config: Optional[EngineConfig] = None,
        rng: Optional[np.random.Generator] = None,
        is_app_installed: Optional[Callable[[str], Optional[bool]]] = None,
        streak_days: Optional[Callable[[str], Optional[int]]] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.persona_classifier = persona_classifier
        self.user_id = user_id
        self.config = config or EngineConfig()
        rng = rng if rng is not None else np.random.default_rng()

        cfg = self.config
        self.timing_learner = TimingLearner(store, clock, cfg.timing)
        self.timing_optimizer = ContextualTimingOptimizer(store, clock, cfg.timing)
        self.opportunity_scorer = OpportunityScorer(store, clock, self.timing_learner, cfg.opportunity)
        self.bandit = BetaBandit(store, cfg.bandit, rng=rng)
        self.content_policy = ContentSelectionPolicy(
            store, self.bandit, rng=rng, frequency_min_pulls=cfg.bandit.frequency_min_pulls
        )
        self.burden_estimator = BurdenEstimator(store, clock, cfg.burden)
        self.rollout = RolloutController(store, clock, cfg.rollout)
        self.rate_limiter = RateLimiter(store, cfg.rate_limit)
        self.decision_logger = DecisionLogger(store, clock)
        self.outcome_collector = OutcomeCollector(
            store,
            clock,
            bandit=self.bandit,
            timing_learner=self.timing_learner,
            rollout=self.rollout,
            config=cfg.outcomes,
            is_app_installed=is_app_installed,
            streak_days=streak_days,
        )

        self._pending: Dict[str, ShownIntervention] = {}
        self._pending_lock = threading.Lock()
        self._outcome_lock = threading.Lock()

    # -- evaluation ------------------------------------------------------

    def evaluate(self, context: InterventionContext) -> Decision:
        """
        Decide whether to show an intervention for this app open.
        Never raises; unexpected failures produce a SKIP with reason OTHER.
        """
        now_ms = self.clock.now_ms()
        explanation = DecisionExplanation(
            timestamp=now_ms,
            target_app=context.target_app,
            decision=DecisionOutcome.SKIP.value,
            context=context.to_dict(),
        )
        run = _Evaluation(context=context, now_ms=now_ms, explanation=explanation)
        try:
            decision = self._run_stages(run)
        except _Blocked as blocked:
            decision = self._skip(run, blocked.reason, blocked.detail)
        except Exception as exc:
            logger.exception(f"Evaluation failed at {run.stage.name} for {context.target_app}")
            decision = self._skip(run, BlockingReason.OTHER, f"Error: {exc}")

        explanation.stage_reached = run.stage.name
        explanation.finalize()
        self.decision_logger.log_decision(explanation)
        decision.explanation = explanation
        logger.debug(explanation.explanation)
        return decision

    def _skip(self, run: _Evaluation, reason: BlockingReason, detail: str) -> Decision:
        run.explanation.decision = DecisionOutcome.SKIP.value
        run.explanation.blocking_reason = reason.value
        run.explanation.block_detail = detail
        return Decision(DecisionOutcome.SKIP, blocking_reason=reason)

    def _run_stages(self, run: _Evaluation) -> Decision:
        self._gather_context(run)
        run.stage = DecisionStage.RATE_LIMIT_CHECK
        self._check_rate_limits(run)
        run.stage = DecisionStage.OPPORTUNITY_SCORE
        self._check_opportunity(run)
        run.stage = DecisionStage.BURDEN_CHECK
        self._check_burden(run)
        run.stage = DecisionStage.CONTENT_SELECT
        selection = self.content_policy.select(
            run.context, run.persona.persona, run.opportunity, run.variant
        )
        exp = run.explanation
        exp.content_type = selection.content_type.value
        exp.content_weights = selection.weights
        exp.content_reason = selection.reason
        run.stage = DecisionStage.EMIT
        return self._emit(run, selection.content_type)

    def _gather_context(self, run: _Evaluation) -> None:
        ctx = run.context
        if not ctx.interventions_enabled:
            raise _Blocked(BlockingReason.FEATURE_DISABLED, "Interventions disabled")
        if not ctx.overlay_permission_granted:
            raise _Blocked(BlockingReason.PERMISSION_DENIED, "Overlay permission missing")
        if ctx.snooze_active:
            raise _Blocked(BlockingReason.SNOOZE_ACTIVE, "Snooze active")

        exp = run.explanation
        run.persona = self.persona_classifier.classify()
        exp.persona = run.persona.persona.value
        exp.persona_confidence = run.persona.confidence.value
        exp.persona_frequency_rule = run.persona.profile.frequency_rule.value

        run.variant = self.rollout.get_user_variant(self.user_id)
        exp.variant = run.variant.value

        run.opportunity = self.opportunity_scorer.detect(ctx)
        exp.opportunity_score = run.opportunity.score
        exp.opportunity_level = run.opportunity.level.value
        exp.opportunity_breakdown = dict(run.opportunity.breakdown)
        exp.jitai_action = run.opportunity.action.value

    def _check_rate_limits(self, run: _Evaluation) -> None:
        exp = run.explanation
        multiplier = run.persona.profile.cooldown_multiplier * self.content_policy.frequency_multiplier()
        result = self.rate_limiter.check(run.context, run.now_ms, extra_multiplier=multiplier)
        if result.time_since_last_ms is not None:
            exp.time_since_last_intervention_s = result.time_since_last_ms // 1000
        if not result.allowed:
            raise _Blocked(BlockingReason.BASIC_RATE_LIMIT, result.reason)
        exp.passed_basic_rate_limit = True

    def _check_opportunity(self, run: _Evaluation) -> None:
        exp = run.explanation
        opportunity = run.opportunity
        rule = run.persona.profile.frequency_rule
        if not frequency_rule_allows(rule, opportunity, _is_daytime(run.context.time_of_day)):
            raise _Blocked(BlockingReason.PERSONA_FREQUENCY_LIMIT, frequency_block_reason(rule, opportunity))
        exp.passed_persona_frequency = True

        if opportunity.action == InterventionAction.SKIP_INTERVENTION:
            raise _Blocked(
                BlockingReason.JITAI_POOR_OPPORTUNITY,
                f"Opportunity {opportunity.level.value} (score {opportunity.score})",
            )
        timing = self.timing_optimizer.get_optimal_timing(
            run.context.target_app, run.context.time_of_day, run.context.is_weekend
        )
        if timing.should_delay:
            raise _Blocked(BlockingReason.JITAI_POOR_OPPORTUNITY, f"Timing: {timing.reason}")
        exp.passed_jitai_filter = True

    def _check_burden(self, run: _Evaluation) -> None:
        exp = run.explanation
        burden = self.burden_estimator.assess()
        run.burden = burden
        exp.burden_level = burden.level.value
        exp.burden_score = burden.score
        if not burden.reliable or burden.relief_eligible:
            return

        multiplier = burden.cooldown_multiplier
        exp.burden_cooldown_multiplier = multiplier
        exp.burden_mitigation_applied = multiplier > 1.0
        excellent = run.opportunity.level == OpportunityLevel.EXCELLENT

        since_last = self.rate_limiter.time_since_last_ms(run.now_ms)
        required = int(self.rate_limiter.config.global_cooldown_ms * multiplier)
        if since_last is not None and since_last < required:
            raise _Blocked(
                BlockingReason.BURDEN_MITIGATION,
                f"{burden.level.value} burden: {since_last // 1000}s since last, "
                f"{required // 1000}s required",
            )
        if burden.level == BurdenLevel.CRITICAL and not excellent:
            raise _Blocked(BlockingReason.BURDEN_MITIGATION, "Critical burden, only excellent moments allowed")
        if burden.trend.warning and not excellent:
            raise _Blocked(BlockingReason.BURDEN_MITIGATION, "Burden escalating, only excellent moments allowed")

    def _emit(self, run: _Evaluation, content_type: ContentType) -> Decision:
        ctx = run.context
        exp = run.explanation
        self.rate_limiter.record_intervention(ctx.intervention_type, run.now_ms)
        intervention_id = uuid.uuid4().hex
        exp.decision = DecisionOutcome.SHOW.value
        exp.intervention_id = intervention_id

        shown = ShownIntervention(
            intervention_id=intervention_id,
            timestamp=run.now_ms,
            target_app=ctx.target_app,
            content_type=content_type.value,
            variant=run.variant.value,
            hour_of_day=ctx.time_of_day,
            day_of_week=ctx.day_of_week,
            is_weekend=ctx.is_weekend,
            session_count=ctx.session_count,
            quick_reopen=ctx.quick_reopen_attempt,
            current_session_minutes=ctx.current_session_minutes,
            goal_minutes=ctx.goal_minutes,
            persona=run.persona.persona.value,
            opportunity_score=run.opportunity.score,
            opportunity_level=run.opportunity.level.value,
        )
        with self._pending_lock:
            self._pending[intervention_id] = shown
        self.prune_pending()
        return Decision(DecisionOutcome.SHOW, content_type=content_type, intervention_id=intervention_id)

    # -- outcomes --------------------------------------------------------

    def _take_pending(self, intervention_id: str) -> Optional[ShownIntervention]:
        with self._pending_lock:
            shown = self._pending.pop(intervention_id, None)
        if shown is not None:
            return shown

        # another process instance may have shown it; rebuild from the log
        if self.outcome_collector.get_outcome(intervention_id) is not None:
            return None
        logged = self.decision_logger.find_by_intervention_id(intervention_id)
        if logged is None or not logged.is_show or not logged.content_type:
            return None
        ctx = logged.context or {}
        return ShownIntervention(
            intervention_id=intervention_id,
            timestamp=logged.timestamp,
            target_app=logged.target_app,
            content_type=logged.content_type,
            variant=logged.variant or Variant.CONTROL.value,
            hour_of_day=int(ctx.get("time_of_day", 0)),
            day_of_week=int(ctx.get("day_of_week", 0)),
            is_weekend=bool(ctx.get("is_weekend", False)),
            session_count=int(ctx.get("session_count", 0)),
            quick_reopen=bool(ctx.get("quick_reopen_attempt", False)),
            current_session_minutes=int(ctx.get("current_session_minutes", 0)),
            goal_minutes=ctx.get("goal_minutes"),
            persona=logged.persona,
            opportunity_score=logged.opportunity_score,
            opportunity_level=logged.opportunity_level,
        )

    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def prune_pending(self) -> int:
        """
        Drop shown interventions nobody answered within the pending TTL.
        A late answer is still accepted through the decision log.
        """
        cutoff = self.clock.now_ms() - self.config.outcomes.pending_ttl_ms
        with self._pending_lock:
            expired = [key for key, shown in self._pending.items() if shown.timestamp < cutoff]
            for key in expired:
                del self._pending[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} unanswered interventions from memory")
        return len(expired)

    def record_outcome(
        self,
        intervention_id: str,
        user_choice: UserChoice,
        feedback: Optional[UserFeedback] = None,
        response_time_ms: int = 0,
        interaction_depth: Optional[InteractionDepth] = None,
        session_id: Optional[str] = None,
        session_continued: Optional[bool] = None,
        session_duration_after_ms: Optional[int] = None,
        quick_reopen: Optional[bool] = None,
    ) -> Optional[float]:
        """
        Record the user's response to a shown intervention and learn from it.

        Returns the immediate reward, or None when the intervention is
        unknown or already recorded.
        """
        try:
            with self._outcome_lock:
                shown = self._take_pending(intervention_id)
                if shown is None:
                    logger.warning(f"No pending intervention {intervention_id}, outcome ignored")
                    return None
                if session_id is not None:
                    shown.session_id = session_id

                try:
                    outcome = self.outcome_collector.record_proximal(
                        shown,
                        user_choice,
                        feedback=feedback,
                        response_time_ms=response_time_ms,
                        interaction_depth=interaction_depth,
                        session_ended=None if session_continued is None else not session_continued,
                        session_duration_after_ms=session_duration_after_ms,
                        quick_reopen=quick_reopen,
                    )
                except StoreError as exc:
                    with self._pending_lock:
                        self._pending.setdefault(intervention_id, shown)
                    logger.warning(f"Outcome for {intervention_id} not stored, kept pending: {exc}")
                    return None
            self.rate_limiter.adjust_for_feedback(feedback)

            self.opportunity_scorer.invalidate(shown.target_app)
            self.timing_optimizer.invalidate(shown.target_app)
            self.burden_estimator.invalidate()
            logger.debug(
                f"Outcome {user_choice.value} for {shown.content_type} on {shown.target_app}: "
                f"reward={outcome.immediate_reward:.2f}"
            )
            return outcome.immediate_reward
        except Exception:
            logger.exception(f"Failed to record outcome for {intervention_id}")
            return None

    def record_session(self, session: SessionRecord) -> None:
        """
        Insert a session, or close an existing one with the same id.
        """
        try:
            rows = self.store.query(SESSIONS, where={"session_id": session.session_id}, limit=1)
            if rows:
                self.store.update(SESSIONS, rows[0]["id"], {"end_ms": session.end_ms})
            else:
                self.store.append(SESSIONS, session.to_dict())
        except StoreError as exc:
            logger.warning(f"Failed to record session {session.session_id}: {exc}")

    def collect_short_term(self, limit: Optional[int] = None) -> int:
        return self.outcome_collector.collect_short_term(limit)

    def collect_medium_term(self, limit: Optional[int] = None) -> int:
        return self.outcome_collector.collect_medium_term(limit)

    def collect_long_term(self, limit: Optional[int] = None) -> int:
        return self.outcome_collector.collect_long_term(limit)

    def run_maintenance(self) -> Dict[str, int]:
        days = self.config.retention.retention_days
        removed = {
            "decisions": self.decision_logger.prune(days),
            "outcomes": self.outcome_collector.prune(days),
            "pending": self.prune_pending(),
        }
        logger.info(f"Retention pruning ({days} days): {removed}")
        return removed

    # -- analytics -------------------------------------------------------

    def get_content_effectiveness(self) -> List[ArmStats]:
        return self.content_policy.get_content_effectiveness()

    def get_burden_summary(self) -> Dict[str, object]:
        return self.burden_estimator.burden_summary()

    def get_decision_summary(self, days_back: int = 7) -> DecisionSummary:
        return self.decision_logger.get_decision_summary(days_back)

    def _results_frame(self) -> pd.DataFrame:
        try:
            rows = self.store.query(INTERVENTION_RESULTS)
        except StoreError as exc:
            logger.warning(f"Intervention results unavailable: {exc}")
            rows = []
        if not rows:
            return pd.DataFrame(columns=["user_choice", "response_time_ms", "feedback", "content_type", "variant"])
        return pd.DataFrame(rows)

    def get_effectiveness_metrics(self) -> Dict[str, Any]:
        results = self._results_frame()
        metrics = self.rollout.get_metrics()
        return {
            "overall": intervention_kpis(results),
            "by_content": kpis_by(results, "content_type"),
            "by_variant": kpis_by(results, "variant"),
            "rollout": metrics,
            "bandit_pulls": self.bandit.total_pulls(),
        }

    def get_timing_summary(self, target_app: str) -> Dict[str, Any]:
        analysis = self.timing_optimizer.analyze(target_app)
        return {
            "target_app": target_app,
            "has_sufficient_data": analysis.has_sufficient_data,
            "total_records": analysis.total_records,
            "best_hours": analysis.best_hours,
            "worst_hours": analysis.worst_hours,
            "windows": analysis.windows,
            "weekend_rate": analysis.weekend_rate,
            "weekday_rate": analysis.weekday_rate,
            "learned_hours": self.timing_learner.hourly_summary(),
        }
