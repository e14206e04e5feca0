"""Tests for staged rollout and rate limiting."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from jitai_engine.clock import MINUTE_MS
from jitai_engine.config import RolloutConfig
from jitai_engine.data_models import InterventionType, UserFeedback, Variant
from jitai_engine.opportunity import InterventionAction, OpportunityDetection, OpportunityLevel
from jitai_engine.persona import FrequencyRule
from jitai_engine.rate_limiter import RateLimiter, frequency_rule_allows
from jitai_engine.rollout import RolloutController, user_bucket


def _detection(score, level):
    return OpportunityDetection(score=score, level=level, action=InterventionAction.INTERVENE_NOW)


class TestRolloutController:
    def test_zero_percent_is_control(self, store, clock):
        rollout = RolloutController(store, clock)
        rollout.set_rollout_percentage(0)
        assert all(rollout.get_user_variant(f"user-{i}") == Variant.CONTROL for i in range(50))

    def test_full_rollout_is_treatment(self, store, clock):
        rollout = RolloutController(store, clock)
        rollout.set_rollout_percentage(100)
        assert all(rollout.get_user_variant(f"user-{i}") == Variant.TREATMENT for i in range(50))

    def test_assignment_follows_bucket(self, store, clock):
        rollout = RolloutController(store, clock, RolloutConfig(default_percentage=50))
        for i in range(20):
            user = f"user-{i}"
            expected = Variant.TREATMENT if user_bucket(user) < 50 else Variant.CONTROL
            assert rollout.get_user_variant(user) == expected

    def test_bucket_is_stable(self):
        assert user_bucket("abc") == user_bucket("abc")
        assert 0 <= user_bucket("abc") < 100

    def test_invalid_percentage(self, store, clock):
        with pytest.raises(ValueError):
            RolloutController(store, clock).set_rollout_percentage(101)

    def test_disabled_rollout_serves_control(self, store, clock):
        rollout = RolloutController(store, clock)
        rollout.set_rollout_percentage(100)
        rollout.disable("manual check")
        assert rollout.get_user_variant("u") == Variant.CONTROL
        assert rollout.get_metrics().disabled_reason == "manual check"
        rollout.enable()
        assert rollout.get_user_variant("u") == Variant.TREATMENT

    def test_forced_variant(self, store, clock):
        rollout = RolloutController(store, clock)
        rollout.set_rollout_percentage(0)
        rollout.force_variant("u", Variant.TREATMENT)
        assert rollout.get_user_variant("u") == Variant.TREATMENT
        rollout.force_variant("u", None)
        assert rollout.get_user_variant("u") == Variant.CONTROL

    def test_automatic_rollback_after_check_interval(self, store, clock):
        rollout = RolloutController(store, clock)
        for _ in range(10):
            rollout.record_effectiveness(Variant.CONTROL, True)
            rollout.record_effectiveness(Variant.TREATMENT, False)
        assert rollout.is_enabled()
        assert rollout.get_metrics().should_rollback

        clock.advance(hours=25)
        rollout.record_effectiveness(Variant.TREATMENT, False)
        assert not rollout.is_enabled()
        assert rollout.get_user_variant("u") == Variant.CONTROL

    def test_metrics(self, store, clock):
        rollout = RolloutController(store, clock)
        rollout.record_effectiveness(Variant.TREATMENT, True)
        rollout.record_effectiveness(Variant.CONTROL, True)
        metrics = rollout.get_metrics()
        assert metrics.treatment_effectiveness == pytest.approx(0.55)
        assert metrics.treatment_trials == 1
        assert metrics.performance == "Similar performance"
        assert 0.0 <= metrics.prob_treatment_worse <= 1.0
        rollout.reset_metrics()
        assert rollout.get_metrics().treatment_trials == 0


class TestRateLimiter:
    def test_short_session_blocked(self, store, clock, make_context):
        result = RateLimiter(store).check(make_context(current_session_minutes=1), clock.now_ms())
        assert not result.allowed
        assert result.reason.startswith("Session too short")

    def test_global_cooldown(self, store, clock, make_context):
        limiter = RateLimiter(store)
        now = clock.now_ms()
        limiter.record_intervention(InterventionType.REMINDER, now)
        result = limiter.check(make_context(), now + 2 * MINUTE_MS)
        assert not result.allowed
        assert result.reason.startswith("Cooldown period active (120s since last intervention")
        assert result.time_since_last_ms == 2 * MINUTE_MS

    def test_extra_multiplier_lengthens_cooldown(self, store, clock, make_context):
        limiter = RateLimiter(store)
        now = clock.now_ms()
        limiter.record_intervention(InterventionType.TIMER, now)
        later = now + 11 * MINUTE_MS
        assert not limiter.check(make_context(), later, extra_multiplier=3.0).allowed
        assert limiter.check(make_context(), later).allowed

    def test_hourly_cap(self, store, clock, make_context):
        limiter = RateLimiter(store)
        now = clock.now_ms()
        for i in range(4):
            limiter.record_intervention(InterventionType.REMINDER, now - (50 - i * 11) * MINUTE_MS)
        result = limiter.check(make_context(), now)
        assert not result.allowed
        assert result.reason.startswith("Hourly limit reached")

    def test_feedback_adjusts_multiplier(self, store):
        limiter = RateLimiter(store)
        assert limiter.adjust_for_feedback(UserFeedback.DISRUPTIVE) == pytest.approx(1.2)
        assert limiter.adjust_for_feedback(UserFeedback.HELPFUL) == pytest.approx(1.08)
        limiter.reset_cooldown()
        assert limiter.cooldown_multiplier() == 1.0

    def test_concurrent_feedback_compounds(self, slow_store):
        limiter = RateLimiter(slow_store)
        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(limiter.adjust_for_feedback, [UserFeedback.DISRUPTIVE] * 5))
        assert limiter.cooldown_multiplier() == pytest.approx(1.2**5)


class TestFrequencyRules:
    def test_minimal_only_excellent(self):
        assert frequency_rule_allows(FrequencyRule.MINIMAL, _detection(75, OpportunityLevel.EXCELLENT), True)
        assert not frequency_rule_allows(FrequencyRule.MINIMAL, _detection(60, OpportunityLevel.GOOD), True)

    def test_onboarding_daytime_only(self):
        good = _detection(55, OpportunityLevel.GOOD)
        assert frequency_rule_allows(FrequencyRule.ONBOARDING, good, True)
        assert not frequency_rule_allows(FrequencyRule.ONBOARDING, good, False)

    def test_adaptive(self):
        assert frequency_rule_allows(FrequencyRule.ADAPTIVE, _detection(45, OpportunityLevel.MODERATE), False)
        assert not frequency_rule_allows(FrequencyRule.ADAPTIVE, _detection(35, OpportunityLevel.MODERATE), True)

    def test_moderate_threshold(self):
        assert frequency_rule_allows(FrequencyRule.MODERATE, _detection(25, OpportunityLevel.POOR), True)
        assert not frequency_rule_allows(FrequencyRule.MODERATE, _detection(24, OpportunityLevel.POOR), True)
