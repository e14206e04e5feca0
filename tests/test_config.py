"""Tests for configuration, personas, clock and context models."""

from datetime import datetime

import pytest

from jitai_engine.clock import Clock, FixedClock
from jitai_engine.config import EngineConfig, load_config
from jitai_engine.data_models import FrictionLevel, InteractionDepth, InterventionContext
from jitai_engine.persona import (
    Persona,
    PersonaClassifier,
    PersonaConfidence,
    UsagePersonaClassifier,
    UsageProfile,
    UsageTrend,
)


class TestConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.rate_limit.global_cooldown_ms == 5 * 60_000
        assert config.burden.min_reliable_sample == 10
        assert config.retention.retention_days == 90

    def test_from_dict_overrides_subset(self):
        config = EngineConfig.from_dict({"rollout": {"default_percentage": 25}})
        assert config.rollout.default_percentage == 25
        assert config.rollout.ema_alpha == 0.1

    def test_unknown_section_rejected(self):
        with pytest.raises(ValueError):
            EngineConfig.from_dict({"nope": {}})

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError):
            EngineConfig.from_dict({"burden": {"nope": 1}})

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("burden:\n  cache_ttl_ms: 300000\noutcomes:\n  productive_apps: [notes]\n")
        config = load_config(path)
        assert config.burden.cache_ttl_ms == 300000
        assert config.outcomes.productive_apps == ["notes"]

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "missing.yaml") == EngineConfig()


class TestPersonaClassifier:
    @pytest.mark.parametrize(
        "profile,persona",
        [
            (UsageProfile(5, 20, 3, 0.5), Persona.NEW_USER),
            (UsageProfile(30, 20, 3, 0.5, UsageTrend.ESCALATING), Persona.PROBLEMATIC_PATTERN_USER),
            (UsageProfile(30, 20, 3, 0.4), Persona.HEAVY_COMPULSIVE_USER),
            (UsageProfile(30, 7, 25, 0.1), Persona.HEAVY_BINGE_USER),
            (UsageProfile(30, 10, 10, 0.1), Persona.MODERATE_BALANCED_USER),
            (UsageProfile(30, 4, 10, 0.1), Persona.CASUAL_USER),
        ],
    )
    def test_detect(self, profile, persona):
        assert UsagePersonaClassifier.detect(profile) == persona

    def test_confidence_grows_with_data(self):
        classifier = UsagePersonaClassifier(lambda: UsageProfile(30, 4, 10, 0.1, days_of_data=14))
        assessment = classifier.classify()
        assert assessment.confidence == PersonaConfidence.HIGH
        assert assessment.profile.display_name == "Casual User"

    def test_base_classifier_is_abstract(self):
        with pytest.raises(TypeError):
            PersonaClassifier()


class TestContext:
    def test_create_derives_fields(self):
        clock = FixedClock.at(datetime(2025, 3, 8, 7, 30))
        ctx = InterventionContext.create(
            clock,
            target_app="video",
            current_session_minutes=4,
            session_count=1,
            last_session_end_ms=clock.now_ms() - 60_000,
            total_usage_today=130,
            goal_minutes=120,
            days_since_install=20,
        )
        assert ctx.time_of_day == 7
        assert ctx.is_weekend
        assert ctx.is_weekend_morning
        assert ctx.quick_reopen_attempt
        assert ctx.is_over_goal
        assert ctx.friction_level == FrictionLevel.MODERATE
        assert ctx.to_dict()["friction_level"] == "MODERATE"

    def test_interaction_depth(self):
        assert InteractionDepth.from_response_time(1500) == InteractionDepth.DISMISSED
        assert InteractionDepth.from_response_time(4000) == InteractionDepth.VIEWED
        assert InteractionDepth.from_response_time(6000) == InteractionDepth.ENGAGED

    def test_clock_advance(self):
        clock = FixedClock.at(datetime(2025, 3, 5, 23, 30))
        clock.advance(hours=1)
        assert clock.hour() == 0
        assert clock.weekday() == 3

    def test_base_clock_is_abstract(self):
        with pytest.raises(TypeError):
            Clock()

        class HalfClock(Clock):
            pass

        with pytest.raises(TypeError):
            HalfClock()
