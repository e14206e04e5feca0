"""
Engine configuration.

Each component reads its constants from one dataclass section; the
defaults are the production values. A YAML file can override any subset:

    burden:
      cache_ttl_ms: 300000
    rollout:
      default_percentage: 25
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


@dataclass
class OpportunityConfig:
    cache_ttl_ms: int = 5 * 60_000
    history_limit: int = 50
    min_history: int = 10
    min_similar_time: int = 5
    similar_hour_window: int = 2
    excellent_threshold: int = 70
    good_threshold: int = 50
    moderate_threshold: int = 30


@dataclass
class BanditConfig:
    prior_alpha: float = 1.0
    prior_beta: float = 1.0
    sufficient_data_pulls: int = 30
    frequency_min_pulls: int = 20


@dataclass
class BurdenConfig:
    lookback_days: int = 30
    cache_ttl_ms: int = 10 * 60_000
    min_reliable_sample: int = 10
    history_size: int = 7
    relief_window: int = 10
    relief_go_back_rate: float = 0.7


@dataclass
class TimingConfig:
    learning_rate: float = 0.15
    min_observations: int = 3
    reliable_hours_required: int = 12
    analysis_days: int = 30
    min_data_points: int = 20
    min_hour_samples: int = 5
    min_window_samples: int = 10
    excellent_rate: float = 0.6
    poor_rate: float = 0.3
    acceptable_rate: float = 0.4
    cache_ttl_ms: int = 15 * 60_000


@dataclass
class RolloutConfig:
    default_percentage: int = 50
    ema_alpha: float = 0.1
    rollback_margin: float = 0.9
    check_interval_ms: int = 24 * 60 * 60_000
    performance_band: float = 0.05


@dataclass
class RateLimitConfig:
    min_session_ms: int = 2 * 60_000
    global_cooldown_ms: int = 5 * 60_000
    reminder_cooldown_ms: int = 10 * 60_000
    timer_cooldown_ms: int = 15 * 60_000
    max_per_hour: int = 4
    max_per_day: int = 20
    max_multiplier: float = 3.0
    min_multiplier: float = 0.5


@dataclass
class OutcomeConfig:
    short_term_delay_ms: int = 5 * 60_000
    medium_term_delay_ms: int = 60 * 60_000
    long_term_delay_ms: int = 7 * 24 * 60 * 60_000
    batch_limit: int = 50
    max_collection_attempts: int = 3
    pending_ttl_ms: int = 60 * 60_000
    productive_apps: List[str] = field(default_factory=list)


@dataclass
class RetentionConfig:
    retention_days: int = 90


@dataclass
class EngineConfig:
    opportunity: OpportunityConfig = field(default_factory=OpportunityConfig)
    bandit: BanditConfig = field(default_factory=BanditConfig)
    burden: BurdenConfig = field(default_factory=BurdenConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    outcomes: OutcomeConfig = field(default_factory=OutcomeConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        config = cls()
        if not data:
            return config
        section_names = {f.name for f in fields(cls)}
        for section, overrides in data.items():
            if section not in section_names:
                raise ValueError(f"Unknown config section: {section}")
            current = getattr(config, section)
            known = {f.name for f in fields(current)}
            unknown = set(overrides or {}) - known
            if unknown:
                raise ValueError(f"Unknown keys in {section}: {sorted(unknown)}")
            setattr(config, section, replace(current, **(overrides or {})))
        return config


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Load configuration from a YAML file, falling back to defaults.
    """
    if path is None or not Path(path).exists():
        return EngineConfig()
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return EngineConfig.from_dict(data)
