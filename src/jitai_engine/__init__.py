"""
jitai_engine
============

A just-in-time adaptive intervention engine for digital-wellbeing apps.

When a monitored app is opened the engine decides whether to show an
intervention and which content to show. Content comes from a
persona-weighted table or a Thompson-sampling bandit depending on the
experiment variant. Every decision is logged with its rationale, and the
outcomes collected afterwards feed the bandit and the timing model.
"""

from . import (
    bandit,
    burden,
    clock,
    config,
    content_policy,
    data_models,
    decision_logger,
    errors,
    explanation,
    monitoring,
    opportunity,
    orchestrator,
    outcomes,
    persona,
    rate_limiter,
    reward,
    rollout,
    state,
    store,
    timing,
)

__all__ = [
    "bandit",
    "burden",
    "clock",
    "config",
    "content_policy",
    "data_models",
    "decision_logger",
    "errors",
    "explanation",
    "monitoring",
    "opportunity",
    "orchestrator",
    "outcomes",
    "persona",
    "rate_limiter",
    "reward",
    "rollout",
    "state",
    "store",
    "timing",
]
