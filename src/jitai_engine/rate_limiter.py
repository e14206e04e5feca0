"""
Frequency limits on interventions.

`RateLimiter` enforces the basic spacing rules (session length, global and
per-type cooldowns, hourly and daily caps). `frequency_rule_allows` applies
the persona-specific rule on top of the opportunity assessment.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .clock import DAY_MS, HOUR_MS
from .config import RateLimitConfig
from .data_models import InterventionContext, InterventionType, UserFeedback
from .opportunity import OpportunityDetection, OpportunityLevel
from .persona import FrequencyRule
from .state import VersionedState
from .store import Store

logger = logging.getLogger(__name__)

STATE_KEY = "rate_limit_state"


@dataclass
class RateLimitResult:
    allowed: bool
    reason: str
    cooldown_remaining_ms: int = 0
    time_since_last_ms: Optional[int] = None
    effective_cooldown_ms: int = 0


@dataclass
class RateLimitState:
    last_shown_ms: int = 0
    last_by_type: Dict[str, int] = field(default_factory=dict)
    recent_shows: List[int] = field(default_factory=list)
    cooldown_multiplier: float = 1.0


class RateLimiter:
    def __init__(self, store: Store, config: Optional[RateLimitConfig] = None) -> None:
        self.config = config or RateLimitConfig()
        self._state = VersionedState(store, STATE_KEY, "rate_limit")
        self._lock = threading.Lock()

    def _load(self) -> RateLimitState:
        document = self._state.load()
        if document is None:
            return RateLimitState()
        try:
            return RateLimitState(
                last_shown_ms=int(document.get("last_shown_ms", 0)),
                last_by_type={k: int(v) for k, v in (document.get("last_by_type") or {}).items()},
                recent_shows=[int(ts) for ts in document.get("recent_shows") or []],
                cooldown_multiplier=float(document.get("cooldown_multiplier", 1.0)),
            )
        except (TypeError, ValueError) as exc:
            logger.warning(f"Malformed rate limit state, using defaults: {exc}")
            return RateLimitState()

    def _save(self, state: RateLimitState) -> None:
        self._state.save(
            {
                "last_shown_ms": state.last_shown_ms,
                "last_by_type": state.last_by_type,
                "recent_shows": state.recent_shows,
                "cooldown_multiplier": state.cooldown_multiplier,
            }
        )

    def _type_cooldown(self, intervention_type: InterventionType) -> int:
        if intervention_type == InterventionType.TIMER:
            return self.config.timer_cooldown_ms
        return self.config.reminder_cooldown_ms

    def time_since_last_ms(self, now_ms: int) -> Optional[int]:
        last = self._load().last_shown_ms
        return now_ms - last if last else None

    def check(
        self,
        context: InterventionContext,
        now_ms: int,
        extra_multiplier: float = 1.0,
    ) -> RateLimitResult:
        cfg = self.config
        state = self._load()
        since_last = now_ms - state.last_shown_ms if state.last_shown_ms else None

        session_ms = context.session_duration_ms
        if session_ms < cfg.min_session_ms:
            return RateLimitResult(
                False,
                f"Session too short ({session_ms // 1000}s < {cfg.min_session_ms // 60_000}min)",
                cfg.min_session_ms - session_ms,
                since_last,
            )

        multiplier = state.cooldown_multiplier * extra_multiplier
        global_cooldown = int(cfg.global_cooldown_ms * multiplier)
        if since_last is not None and since_last < global_cooldown:
            remaining = global_cooldown - since_last
            return RateLimitResult(
                False,
                f"Cooldown period active ({since_last // 1000}s since last intervention, "
                f"{remaining // 1000}s remaining, {multiplier:.2f}x multiplier)",
                remaining,
                since_last,
                global_cooldown,
            )

        type_name = context.intervention_type.value
        last_type = state.last_by_type.get(type_name)
        type_cooldown = self._type_cooldown(context.intervention_type)
        if last_type and now_ms - last_type < type_cooldown:
            remaining = type_cooldown - (now_ms - last_type)
            return RateLimitResult(
                False,
                f"{type_name} cooldown active ({remaining // 1000}s remaining)",
                remaining,
                since_last,
                global_cooldown,
            )

        last_hour = [ts for ts in state.recent_shows if ts > now_ms - HOUR_MS]
        if len(last_hour) >= cfg.max_per_hour:
            return RateLimitResult(
                False,
                f"Hourly limit reached ({len(last_hour)}/{cfg.max_per_hour})",
                min(last_hour) + HOUR_MS - now_ms,
                since_last,
                global_cooldown,
            )

        last_day = [ts for ts in state.recent_shows if ts > now_ms - DAY_MS]
        if len(last_day) >= cfg.max_per_day:
            return RateLimitResult(
                False,
                f"Daily limit reached ({len(last_day)}/{cfg.max_per_day})",
                min(last_day) + DAY_MS - now_ms,
                since_last,
                global_cooldown,
            )

        return RateLimitResult(True, "All rate limit checks passed", 0, since_last, global_cooldown)

    def record_intervention(self, intervention_type: InterventionType, now_ms: int) -> None:
        with self._lock:
            state = self._load()
            state.last_shown_ms = now_ms
            state.last_by_type[intervention_type.value] = now_ms
            state.recent_shows = [ts for ts in state.recent_shows if ts > now_ms - DAY_MS] + [now_ms]
            self._save(state)

    def cooldown_multiplier(self) -> float:
        return self._load().cooldown_multiplier

    def _update_multiplier(self, update: Callable[[float], float]) -> float:
        with self._lock:
            state = self._load()
            state.cooldown_multiplier = update(state.cooldown_multiplier)
            self._save(state)
        return state.cooldown_multiplier

    def adjust_for_feedback(self, feedback: Optional[UserFeedback]) -> float:
        cfg = self.config
        if feedback == UserFeedback.HELPFUL:
            return self._update_multiplier(lambda current: max(cfg.min_multiplier, current * 0.9))
        if feedback == UserFeedback.DISRUPTIVE:
            return self._update_multiplier(lambda current: min(cfg.max_multiplier, current * 1.2))
        return self.cooldown_multiplier()

    def escalate_cooldown(self) -> float:
        value = self._update_multiplier(lambda current: min(self.config.max_multiplier, current * 1.5))
        logger.info(f"Cooldown multiplier escalated to {value:.2f}")
        return value

    def reset_cooldown(self) -> None:
        self._update_multiplier(lambda current: 1.0)


def frequency_rule_allows(
    rule: FrequencyRule, opportunity: OpportunityDetection, is_daytime: bool
) -> bool:
    level = opportunity.level
    score = opportunity.score
    if rule == FrequencyRule.MINIMAL:
        return level == OpportunityLevel.EXCELLENT
    if rule == FrequencyRule.CONSERVATIVE:
        return level in (OpportunityLevel.EXCELLENT, OpportunityLevel.GOOD)
    if rule == FrequencyRule.BALANCED:
        return level != OpportunityLevel.POOR
    if rule == FrequencyRule.MODERATE:
        return score >= 25
    if rule == FrequencyRule.ADAPTIVE:
        return (
            level == OpportunityLevel.EXCELLENT
            or (level == OpportunityLevel.GOOD and is_daytime)
            or score >= 40
        )
    if rule == FrequencyRule.ONBOARDING:
        return is_daytime and score >= 30
    return True


def frequency_block_reason(rule: FrequencyRule, opportunity: OpportunityDetection) -> str:
    score = opportunity.score
    level = opportunity.level.value
    return {
        FrequencyRule.MINIMAL: f"Problematic pattern: only EXCELLENT opportunities allowed (score: {score}, level: {level})",
        FrequencyRule.CONSERVATIVE: f"Heavy compulsive: only GOOD or EXCELLENT opportunities (score: {score}, level: {level})",
        FrequencyRule.BALANCED: f"Opportunity level too low: {level} (score: {score})",
        FrequencyRule.MODERATE: f"Score below threshold: {score} < 25",
        FrequencyRule.ADAPTIVE: f"Adaptive filtering: current context not optimal (score: {score})",
        FrequencyRule.ONBOARDING: "New user onboarding: daytime, moderate+ opportunities only",
    }[rule]
