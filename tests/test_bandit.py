"""Tests for the Thompson-sampling bandit and reward functions."""

import numpy as np
import pytest

from jitai_engine.bandit import BetaBandit
from jitai_engine.data_models import ContentType, UserChoice, UserFeedback
from jitai_engine.reward import RewardCalculator, calculate_outcome_reward, normalized_reward


class TestBetaBandit:
    def test_learned_arm_is_preferred(self, store, rng):
        bandit = BetaBandit(store, rng=rng, arms=(ContentType.REFLECTION, ContentType.QUOTE))
        for _ in range(10):
            bandit.update(ContentType.REFLECTION, 1.0)

        picks = sum(
            1 for _ in range(1000) if bandit.select().arm == ContentType.REFLECTION
        )
        assert picks > 500

    @pytest.mark.parametrize("alpha,beta", [(0.5, 0.5), (0.3, 2.0), (2.0, 5.0), (1.0, 1.0), (200.0, 100.0)])
    def test_beta_draws_match_posterior_mean(self, store, alpha, beta):
        bandit = BetaBandit(store, rng=np.random.default_rng(123))
        draws = np.array([bandit.sample_beta(alpha, beta) for _ in range(20_000)])
        assert draws.min() >= 0.0
        assert draws.max() <= 1.0
        assert draws.mean() == pytest.approx(alpha / (alpha + beta), abs=0.01)

    def test_update_is_conjugate(self, store, rng):
        bandit = BetaBandit(store, rng=rng)
        state = bandit.update(ContentType.BREATHING, 0.25)
        assert state.alpha == pytest.approx(1.25)
        assert state.beta == pytest.approx(1.75)
        assert bandit.total_pulls() == pytest.approx(1.0)

    def test_state_survives_new_instance(self, store, rng):
        BetaBandit(store, rng=rng).update(ContentType.QUOTE, 1.0)
        reloaded = BetaBandit(store, rng=rng)
        assert reloaded.arm_state(ContentType.QUOTE).alpha == pytest.approx(2.0)

    def test_rejects_invalid_reward(self, store, rng):
        bandit = BetaBandit(store, rng=rng)
        with pytest.raises(ValueError):
            bandit.update(ContentType.QUOTE, 1.5)

    def test_rejects_unknown_arm(self, store, rng):
        bandit = BetaBandit(store, rng=rng, arms=(ContentType.REFLECTION,))
        with pytest.raises(ValueError):
            bandit.update(ContentType.QUOTE, 1.0)

    def test_excluded_arms_never_selected(self, store, rng):
        bandit = BetaBandit(store, rng=rng)
        excluded = set(ContentType) - {ContentType.BREATHING}
        for _ in range(50):
            assert bandit.select(excluded).arm == ContentType.BREATHING

    def test_all_excluded_falls_back(self, store, rng):
        selection = BetaBandit(store, rng=rng).select(set(ContentType))
        assert selection.arm == ContentType.REFLECTION
        assert selection.strategy == "fallback"
        assert selection.confidence == 0.5

    def test_samples_within_unit_interval(self, store, rng):
        bandit = BetaBandit(store, rng=rng)
        for a, b in [(1.0, 1.0), (0.5, 3.0), (40.0, 2.0)]:
            for _ in range(100):
                assert 0.0 <= bandit.sample_beta(a, b) <= 1.0

    def test_corrupt_state_resets_to_priors(self, store, rng):
        store.set("bandit_state", "{broken")
        bandit = BetaBandit(store, rng=rng)
        assert bandit.arm_state(ContentType.REFLECTION).alpha == 1.0
        assert bandit.total_pulls() == 0

    def test_arm_stats_sorted_by_mean(self, store, rng):
        bandit = BetaBandit(store, rng=rng)
        for _ in range(5):
            bandit.update(ContentType.ACTIVITY_SUGGESTION, 1.0)
        stats = bandit.arm_stats()
        assert stats[0].arm == ContentType.ACTIVITY_SUGGESTION
        assert stats[0].credible_lower < stats[0].mean < stats[0].credible_upper

    def test_overall_effectiveness(self, store, rng):
        bandit = BetaBandit(store, rng=rng)
        assert bandit.overall_effectiveness() == 0.5
        bandit.update(ContentType.QUOTE, 1.0)
        bandit.update(ContentType.QUOTE, 0.0)
        assert bandit.overall_effectiveness() == pytest.approx(0.5)


class TestRewardCalculator:
    def test_base_rewards(self):
        assert RewardCalculator.calculate(UserChoice.GO_BACK) == 1.0
        assert RewardCalculator.calculate(UserChoice.CONTINUE) == pytest.approx(0.3)
        assert RewardCalculator.calculate(UserChoice.DISMISS) == 0.0

    def test_clamped_to_unit_interval(self):
        high = RewardCalculator.calculate(
            UserChoice.GO_BACK, UserFeedback.HELPFUL, session_ended=True, session_duration_after_ms=60_000
        )
        low = RewardCalculator.calculate(UserChoice.DISMISS, UserFeedback.DISRUPTIVE, quick_reopen=True)
        assert high == 1.0
        assert low == 0.0

    def test_feedback_adjusts_reward(self):
        assert RewardCalculator.calculate(UserChoice.CONTINUE, UserFeedback.HELPFUL) == pytest.approx(0.5)

    def test_success_definition(self):
        assert RewardCalculator.is_successful(UserChoice.GO_BACK)
        assert RewardCalculator.is_successful(UserChoice.CONTINUE, UserFeedback.HELPFUL)
        assert not RewardCalculator.is_successful(UserChoice.CONTINUE)
        assert RewardCalculator.binary_reward(UserChoice.SNOOZE) == 0.0


class TestOutcomeReward:
    def test_proximal_only(self):
        assert calculate_outcome_reward({"user_choice": "GO_BACK", "interaction_depth": "ENGAGED"}) == 11.5

    def test_multi_horizon_signals(self):
        outcome = {
            "user_choice": "GO_BACK",
            "session_continued": False,
            "reopen_count_30min": 0,
            "usage_reduction_min": 10.0,
            "weekly_usage_change": "DECREASED",
            "user_retention": True,
        }
        assert calculate_outcome_reward(outcome) == pytest.approx(10 + 15 + 8 + 5 + 5)

    def test_retention_lost_penalised(self):
        assert calculate_outcome_reward({"user_retention": False}) == -20.0

    def test_normalized_reward(self):
        assert normalized_reward(0.0) == pytest.approx(0.5)
        assert 0.5 < normalized_reward(25.0) < 1.0
