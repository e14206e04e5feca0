"""Tests for content selection."""

from jitai_engine.bandit import BetaBandit
from jitai_engine.content_policy import (
    ContentSelectionPolicy,
    build_exclusions,
    effectiveness_multiplier,
    persona_weights,
)
from jitai_engine.data_models import ContentType, InterventionType, Variant
from jitai_engine.persona import Persona


def _policy(store, rng):
    return ContentSelectionPolicy(store, BetaBandit(store, rng=rng), rng=rng)


class TestExclusions:
    def test_late_night_excludes_breathing_and_gamification(self, make_context):
        excluded = build_exclusions(make_context(time_of_day=23), Persona.MODERATE_BALANCED_USER)
        assert {ContentType.BREATHING, ContentType.GAMIFICATION} <= excluded

    def test_new_user_first_session(self, make_context):
        ctx = make_context(time_of_day=8, session_count=1, quick_reopen_attempt=True)
        excluded = build_exclusions(ctx, Persona.NEW_USER)
        assert excluded == {
            ContentType.EMOTIONAL_APPEAL,
            ContentType.USAGE_STATS,
            ContentType.QUOTE,
            ContentType.GAMIFICATION,
        }

    def test_problematic_pattern(self, make_context):
        excluded = build_exclusions(make_context(), Persona.PROBLEMATIC_PATTERN_USER)
        assert {ContentType.QUOTE, ContentType.GAMIFICATION} <= excluded


class TestPersonaWeights:
    def test_problematic_quick_reopen_boosts_reflection(self, make_context):
        weights = persona_weights(make_context(quick_reopen_attempt=True), Persona.PROBLEMATIC_PATTERN_USER)
        assert weights[ContentType.REFLECTION] == 110
        assert ContentType.ACTIVITY_SUGGESTION not in weights

    def test_timer_boosts_time_alternative(self, make_context):
        base = persona_weights(make_context(), Persona.CASUAL_USER)
        timer = persona_weights(make_context(intervention_type=InterventionType.TIMER), Persona.CASUAL_USER)
        assert timer[ContentType.TIME_ALTERNATIVE] == base[ContentType.TIME_ALTERNATIVE] + 20

    def test_effectiveness_multiplier(self):
        assert effectiveness_multiplier(0.7, 0.5) == 1.25
        assert effectiveness_multiplier(0.5, 0.5) == 1.05
        assert effectiveness_multiplier(0.3, 0.5) == 0.8


class TestContentSelectionPolicy:
    def test_exclusions_hold_for_both_variants(self, store, rng, make_context):
        policy = _policy(store, rng)
        ctx = make_context(time_of_day=8, session_count=1, quick_reopen_attempt=True)
        forbidden = {ContentType.EMOTIONAL_APPEAL, ContentType.USAGE_STATS}
        for variant in (Variant.CONTROL, Variant.TREATMENT):
            for _ in range(30):
                selection = policy.select(ctx, Persona.NEW_USER, None, variant)
                assert selection.content_type not in forbidden
                assert selection.variant == variant

    def test_treatment_uses_bandit(self, store, rng, make_context):
        policy = _policy(store, rng)
        selection = policy.select(make_context(), Persona.CASUAL_USER, None, Variant.TREATMENT)
        assert selection.strategy == "thompson_sampling"
        assert selection.reason.startswith("TS selected")
        assert policy.recent_history == []

    def test_control_avoids_recent_repeats(self, store, rng, make_context):
        policy = _policy(store, rng)
        ctx = make_context()
        picks = [policy.select(ctx, Persona.CASUAL_USER, None, Variant.CONTROL).content_type for _ in range(4)]
        # four eligible types once emotional appeal is excluded for casual users
        assert len(set(picks)) == 4
        assert policy.recent_history == picks

    def test_history_resets_when_exhausted(self, store, rng, make_context):
        policy = _policy(store, rng)
        ctx = make_context()
        for _ in range(5):
            policy.select(ctx, Persona.CASUAL_USER, None, Variant.CONTROL)
        assert len(policy.recent_history) == 1
        policy.clear_history()
        assert policy.recent_history == []

    def test_frequency_multiplier_needs_data(self, store, rng):
        policy = _policy(store, rng)
        assert policy.frequency_multiplier() == 1.0
        for _ in range(20):
            policy.record_outcome(ContentType.REFLECTION, 1.0)
        assert policy.frequency_multiplier() == 0.8

    def test_effectiveness_rates_need_thirty_records(self, store, rng, add_results):
        policy = _policy(store, rng)
        add_results(["GO_BACK"] * 29)
        assert policy.content_effectiveness_rates() == {}
        add_results(["DISMISS"], start_ms=10_000_000)
        assert policy.content_effectiveness_rates()[ContentType.REFLECTION] == 29 / 30
