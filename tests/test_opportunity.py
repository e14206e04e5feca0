"""Tests for opportunity scoring."""

import itertools

from jitai_engine.clock import DAY_MS
from jitai_engine.opportunity import (
    MAX_SCORE,
    MIN_SCORE,
    InterventionAction,
    OpportunityLevel,
    OpportunityScorer,
)
from jitai_engine.store import InMemoryStore
from jitai_engine.timing import TimingLearner


class TestOpportunityScorer:
    def test_morning_quick_reopen_is_excellent(self, store, clock, make_context):
        ctx = make_context(time_of_day=8, session_count=1, quick_reopen_attempt=True, current_session_minutes=3)
        detection = OpportunityScorer(store, clock).detect(ctx)
        assert detection.breakdown == {
            "time_receptiveness": 23,
            "session_pattern": 20,
            "cognitive_load": 15,
            "historical_success": 12,
            "user_state": 10,
            "behavioral_cues": 0,
        }
        assert detection.score == 80
        assert detection.level == OpportunityLevel.EXCELLENT
        assert detection.action == InterventionAction.INTERVENE_NOW

    def test_score_bounds(self, store, clock, make_context):
        ctx = make_context(
            time_of_day=23,
            is_over_goal=True,
            quick_reopen_attempt=True,
            streak_days=30,
            total_usage_yesterday=100,
            weekly_average=100,
            compulsive_behavior_detected=True,
            rapid_app_switching=True,
            unusual_usage_time=True,
        )
        detection = OpportunityScorer(store, clock).detect(ctx)
        assert MIN_SCORE <= detection.score <= MAX_SCORE
        assert detection.breakdown["behavioral_cues"] == 15
        assert detection.breakdown["user_state"] == 20

    def test_score_bounds_across_contexts(self, store, clock, make_context, add_results):
        assert (MIN_SCORE, MAX_SCORE) == (0, 115)
        add_results(["GO_BACK", "DISMISS", "GO_BACK"] * 10, hour_of_day=22)
        learner = TimingLearner(store, clock)
        for success in (True, True, False):
            learner.record_timing_outcome(22, "video", False, success)
        scorers = [
            OpportunityScorer(InMemoryStore(), clock),
            OpportunityScorer(store, clock, timing_learner=learner),
        ]

        for scorer, hour, weekend, minutes, since_last, quick, cues in itertools.product(
            scorers, range(24), (False, True), (0, 1, 45, 600), (None, 0, 10 * DAY_MS), (False, True), (False, True)
        ):
            ctx = make_context(
                time_of_day=hour,
                is_weekend=weekend,
                day_of_week=6 if weekend else 2,
                current_session_minutes=minutes,
                time_since_last_session_ms=since_last,
                quick_reopen_attempt=quick,
                is_over_goal=cues,
                streak_days=30 if cues else 0,
                compulsive_behavior_detected=cues,
                rapid_app_switching=cues,
                unusual_usage_time=cues,
            )
            detection = scorer.detect(ctx, force_refresh=True)
            assert 0 <= detection.score <= 115
            if detection.score >= 70:
                assert detection.level == OpportunityLevel.EXCELLENT
            elif detection.score >= 50:
                assert detection.level == OpportunityLevel.GOOD
            elif detection.score >= 30:
                assert detection.level == OpportunityLevel.MODERATE
            else:
                assert detection.level == OpportunityLevel.POOR

    def test_levels(self, store, clock):
        scorer = OpportunityScorer(store, clock)
        assert scorer.level_for(70) == OpportunityLevel.EXCELLENT
        assert scorer.level_for(69) == OpportunityLevel.GOOD
        assert scorer.level_for(30) == OpportunityLevel.MODERATE
        assert scorer.level_for(29) == OpportunityLevel.POOR

    def test_learned_timing_overrides_population_prior(self, store, clock, make_context):
        learner = TimingLearner(store, clock)
        for _ in range(3):
            learner.record_timing_outcome(14, "video", False, False)
        points, _ = OpportunityScorer(store, clock, timing_learner=learner).time_factor(make_context())
        assert points == 5

    def test_historical_factor_uses_similar_hours(self, store, clock, make_context, add_results):
        add_results(["GO_BACK"] * 6, hour_of_day=14)
        add_results(["DISMISS"] * 6, start_ms=10_000_000, hour_of_day=3)
        scorer = OpportunityScorer(store, clock)
        history = scorer._recent_history("video")
        points, reason = scorer.historical_factor(make_context(time_of_day=15), history)
        assert points == 20
        assert "similar times" in reason

    def test_detection_cached_per_app(self, store, clock, make_context, add_results):
        scorer = OpportunityScorer(store, clock)
        first = scorer.detect(make_context())
        add_results(["GO_BACK"] * 12)
        assert scorer.detect(make_context()) is first
        scorer.invalidate("video")
        assert scorer.detect(make_context()).breakdown["historical_success"] == 20

    def test_cache_expires(self, store, clock, make_context):
        scorer = OpportunityScorer(store, clock)
        first = scorer.detect(make_context())
        clock.advance(minutes=6)
        assert scorer.detect(make_context()) is not first

    def test_top_factors(self, store, clock, make_context):
        detection = OpportunityScorer(store, clock).detect(make_context(quick_reopen_attempt=True))
        assert detection.top_factors(1) == ["session_pattern"]
