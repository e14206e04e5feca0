"""
Staged rollout of the bandit policy with automatic rollback.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from .clock import Clock
from .config import RolloutConfig
from .data_models import Variant
from .monitoring import BayesianGuardrail
from .state import VersionedState
from .store import Store

logger = logging.getLogger(__name__)

STATE_KEY = "rollout_state"


def user_bucket(user_id: str) -> int:
    """
    Stable bucket in [0, 100) for an anonymous user id.
    """
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return int(digest, 16) % 100


@dataclass
class RolloutState:
    percentage: int = 50
    enabled: bool = True
    assignments: Dict[str, Dict[str, object]] = field(default_factory=dict)
    forced: Dict[str, str] = field(default_factory=dict)
    treatment_ema: float = 0.5
    control_ema: float = 0.5
    treatment_successes: int = 0
    treatment_trials: int = 0
    control_successes: int = 0
    control_trials: int = 0
    last_check_ms: int = 0
    disabled_reason: Optional[str] = None


@dataclass
class RolloutMetrics:
    enabled: bool
    percentage: int
    treatment_effectiveness: float
    control_effectiveness: float
    difference: float
    performance: str
    should_rollback: bool
    treatment_trials: int
    control_trials: int
    prob_treatment_worse: Optional[float] = None
    disabled_reason: Optional[str] = None


class RolloutController:
    """
    Assigns users to CONTROL or TREATMENT and watches the treatment.

    Assignment is ``bucket(user_id) < percentage``; it is cached together
    with the percentage it was derived from and recomputed only when the
    percentage changes.
    """

    def __init__(self, store: Store, clock: Clock, config: Optional[RolloutConfig] = None) -> None:
        self.clock = clock
        self.config = config or RolloutConfig()
        self.guardrail = BayesianGuardrail()
        self._state = VersionedState(store, STATE_KEY, "rollout")
        self._lock = threading.Lock()

    def _load(self) -> RolloutState:
        state = RolloutState(percentage=self.config.default_percentage)
        document = self._state.load()
        if document is None:
            return state
        try:
            state.percentage = int(document.get("percentage", state.percentage))
            state.enabled = bool(document.get("enabled", True))
            state.assignments = dict(document.get("assignments") or {})
            state.forced = dict(document.get("forced") or {})
            state.treatment_ema = float(document.get("treatment_ema", 0.5))
            state.control_ema = float(document.get("control_ema", 0.5))
            state.treatment_successes = int(document.get("treatment_successes", 0))
            state.treatment_trials = int(document.get("treatment_trials", 0))
            state.control_successes = int(document.get("control_successes", 0))
            state.control_trials = int(document.get("control_trials", 0))
            state.last_check_ms = int(document.get("last_check_ms", 0))
            state.disabled_reason = document.get("disabled_reason")
        except (TypeError, ValueError) as exc:
            logger.warning(f"Malformed rollout state, using defaults: {exc}")
            return RolloutState(percentage=self.config.default_percentage)
        return state

    def _save(self, state: RolloutState) -> None:
        self._state.save(
            {
                "percentage": state.percentage,
                "enabled": state.enabled,
                "assignments": state.assignments,
                "forced": state.forced,
                "treatment_ema": state.treatment_ema,
                "control_ema": state.control_ema,
                "treatment_successes": state.treatment_successes,
                "treatment_trials": state.treatment_trials,
                "control_successes": state.control_successes,
                "control_trials": state.control_trials,
                "last_check_ms": state.last_check_ms,
                "disabled_reason": state.disabled_reason,
            }
        )

    # -- assignment ------------------------------------------------------

    def get_user_variant(self, user_id: str) -> Variant:
        with self._lock:
            state = self._load()
            if not state.enabled:
                return Variant.CONTROL
            if user_id in state.forced:
                return Variant(state.forced[user_id])

            cached = state.assignments.get(user_id)
            if cached is not None and cached.get("percentage") == state.percentage:
                return Variant(cached["variant"])

            variant = (
                Variant.TREATMENT if user_bucket(user_id) < state.percentage else Variant.CONTROL
            )
            state.assignments[user_id] = {"variant": variant.value, "percentage": state.percentage}
            self._save(state)
            return variant

    def get_rollout_percentage(self) -> int:
        return self._load().percentage

    def set_rollout_percentage(self, percentage: int) -> None:
        if not 0 <= percentage <= 100:
            raise ValueError(f"rollout percentage must be within 0..100, got {percentage}")
        with self._lock:
            state = self._load()
            state.percentage = int(percentage)
            state.assignments = {}
            self._save(state)
        logger.info(f"Rollout percentage set to {percentage}%")

    def is_enabled(self) -> bool:
        return self._load().enabled

    def enable(self) -> None:
        with self._lock:
            state = self._load()
            state.enabled = True
            state.disabled_reason = None
            self._save(state)
        logger.info("Rollout enabled")

    def disable(self, reason: str = "manual") -> None:
        with self._lock:
            state = self._load()
            state.enabled = False
            state.disabled_reason = reason
            self._save(state)
        logger.info(f"Rollout disabled: {reason}")

    def force_variant(self, user_id: str, variant: Optional[Variant]) -> None:
        """
        Pin a user to a variant; ``None`` removes the pin.
        """
        with self._lock:
            state = self._load()
            if variant is None:
                state.forced.pop(user_id, None)
            else:
                state.forced[user_id] = variant.value
            self._save(state)

    # -- effectiveness ---------------------------------------------------

    def record_effectiveness(self, variant: Variant, success: bool) -> None:
        alpha = self.config.ema_alpha
        observed = 1.0 if success else 0.0
        with self._lock:
            state = self._load()
            if variant == Variant.TREATMENT:
                state.treatment_ema = (1 - alpha) * state.treatment_ema + alpha * observed
                state.treatment_trials += 1
                state.treatment_successes += int(success)
            else:
                state.control_ema = (1 - alpha) * state.control_ema + alpha * observed
                state.control_trials += 1
                state.control_successes += int(success)
            now_ms = self.clock.now_ms()
            # the first observation starts the 24h comparison window
            if state.last_check_ms == 0:
                state.last_check_ms = now_ms
            self._save(state)

        if now_ms - state.last_check_ms >= self.config.check_interval_ms:
            self.check_for_rollback()

    def check_for_rollback(self) -> bool:
        """
        Disable the rollout when treatment trails control by the margin.
        Returns True when a rollback happened.
        """
        with self._lock:
            state = self._load()
            state.last_check_ms = self.clock.now_ms()
            rollback = (
                state.enabled
                and state.control_ema > 0
                and state.treatment_ema < state.control_ema * self.config.rollback_margin
            )
            if rollback:
                state.enabled = False
                state.disabled_reason = (
                    f"treatment {state.treatment_ema:.3f} trailed control {state.control_ema:.3f}"
                )
            self._save(state)
        if rollback:
            logger.info(f"Automatic rollback: {state.disabled_reason}")
        return rollback

    def get_metrics(self) -> RolloutMetrics:
        state = self._load()
        diff = state.treatment_ema - state.control_ema
        band = self.config.performance_band
        if diff > band:
            performance = "Treatment outperforming"
        elif diff < -band:
            performance = "Treatment underperforming"
        else:
            performance = "Similar performance"
        prob = None
        if state.treatment_trials:
            prob = self.guardrail.posterior_probability(
                state.treatment_successes, state.treatment_trials, state.control_ema
            )
        return RolloutMetrics(
            enabled=state.enabled,
            percentage=state.percentage,
            treatment_effectiveness=state.treatment_ema,
            control_effectiveness=state.control_ema,
            difference=diff,
            performance=performance,
            should_rollback=state.control_ema > 0
            and state.treatment_ema < state.control_ema * self.config.rollback_margin,
            treatment_trials=state.treatment_trials,
            control_trials=state.control_trials,
            prob_treatment_worse=prob,
            disabled_reason=state.disabled_reason,
        )

    def reset_metrics(self) -> None:
        with self._lock:
            state = self._load()
            state.treatment_ema = 0.5
            state.control_ema = 0.5
            state.treatment_successes = state.treatment_trials = 0
            state.control_successes = state.control_trials = 0
            state.last_check_ms = 0
            self._save(state)
