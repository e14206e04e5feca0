"""
Thompson-sampling bandit over intervention content types.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import scipy.stats

from .config import BanditConfig
from .data_models import ContentType
from .state import VersionedState
from .store import Store

logger = logging.getLogger(__name__)

STATE_KEY = "bandit_state"
FALLBACK_ARM = ContentType.REFLECTION


@dataclass
class BanditArmState:
    """
    Tracks posterior parameters for an arm under Beta distribution.
    """

    alpha: float = 1.0
    beta: float = 1.0

    @property
    def pulls(self) -> float:
        return self.alpha + self.beta - 2.0

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def uncertainty(self) -> float:
        n = self.alpha + self.beta
        return math.sqrt(self.alpha * self.beta / (n * n * (n + 1)))


@dataclass
class ArmStats:
    arm: ContentType
    alpha: float
    beta: float
    mean: float
    pulls: int
    uncertainty: float
    ci_lower: float
    ci_upper: float
    credible_lower: float
    credible_upper: float
    confidence_label: str


@dataclass
class ArmSelection:
    arm: ContentType
    sampled_value: float
    samples: Dict[ContentType, float] = field(default_factory=dict)
    confidence: float = 0.5
    confidence_label: str = "VERY_LOW"
    strategy: str = "thompson_sampling"


def confidence_for_pulls(pulls: float) -> Tuple[float, str]:
    if pulls >= 50:
        return 0.95, "HIGH"
    if pulls >= 20:
        return 0.75, "MEDIUM"
    if pulls >= 10:
        return 0.50, "LOW"
    return 0.25, "VERY_LOW"


class BetaBandit:
    """
    One Beta(alpha, beta) posterior per content type.

    State is read from the store before and written after every update so
    concurrent engine instances over the same store converge.
    """

    def __init__(
        self,
        store: Store,
        config: Optional[BanditConfig] = None,
        rng: Optional[np.random.Generator] = None,
        arms: Sequence[ContentType] = tuple(ContentType),
    ) -> None:
        self.config = config or BanditConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.arms: List[ContentType] = list(arms)
        self._state = VersionedState(store, STATE_KEY, "bandit")
        self._lock = threading.Lock()

    # -- sampling --------------------------------------------------------

    def sample_gamma(self, shape: float) -> float:
        """
        Draw from Gamma(shape, 1) with the Marsaglia-Tsang method.
        """
        if shape <= 0:
            raise ValueError(f"shape must be positive, got {shape}")
        if shape < 1.0:
            u = self.rng.random()
            return self.sample_gamma(1.0 + shape) * u ** (1.0 / shape)

        d = shape - 1.0 / 3.0
        c = 1.0 / math.sqrt(9.0 * d)
        while True:
            while True:
                x = self.rng.standard_normal()
                v = 1.0 + c * x
                if v > 0:
                    break
            v = v * v * v
            u = self.rng.random()
            if u < 1.0 - 0.0331 * x ** 4:
                return d * v
            if u > 0 and math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
                return d * v

    def sample_beta(self, alpha: float, beta: float) -> float:
        x = self.sample_gamma(alpha)
        y = self.sample_gamma(beta)
        if x + y == 0:
            return 0.5
        return x / (x + y)

    # -- state -----------------------------------------------------------

    def _default_states(self) -> Dict[ContentType, BanditArmState]:
        return {
            arm: BanditArmState(self.config.prior_alpha, self.config.prior_beta)
            for arm in self.arms
        }

    def _load(self) -> Dict[ContentType, BanditArmState]:
        states = self._default_states()
        document = self._state.load()
        if document is None:
            return states
        arms = document.get("arms")
        if not isinstance(arms, dict):
            logger.warning("Bandit state has no arms table, using priors")
            return states
        for name, params in arms.items():
            try:
                arm = ContentType(name)
                alpha = float(params["alpha"])
                beta = float(params["beta"])
            except (ValueError, KeyError, TypeError):
                logger.warning(f"Skipping malformed bandit arm entry {name!r}")
                continue
            if arm in states and alpha > 0 and beta > 0:
                states[arm] = BanditArmState(alpha, beta)
        return states

    def _save(self, states: Dict[ContentType, BanditArmState]) -> None:
        self._state.save(
            {
                "arms": {
                    arm.value: {"alpha": s.alpha, "beta": s.beta}
                    for arm, s in states.items()
                }
            }
        )

    def arm_state(self, arm: ContentType) -> BanditArmState:
        return self._load()[arm]

    def arm_states(self) -> Dict[ContentType, BanditArmState]:
        return self._load()

    # -- policy ----------------------------------------------------------

    def select(self, excluded: Iterable[ContentType] = ()) -> ArmSelection:
        """
        Sample every eligible arm and return the one with the largest draw.
        """
        excluded_set = set(excluded)
        states = self._load()
        eligible = [arm for arm in self.arms if arm not in excluded_set]
        if not eligible:
            logger.debug("All arms excluded, falling back to REFLECTION")
            return ArmSelection(
                arm=FALLBACK_ARM,
                sampled_value=0.5,
                confidence=0.5,
                confidence_label="VERY_LOW",
                strategy="fallback",
            )

        samples = {
            arm: self.sample_beta(states[arm].alpha, states[arm].beta) for arm in eligible
        }
        best_arm = max(eligible, key=lambda arm: samples[arm])
        confidence, label = confidence_for_pulls(states[best_arm].pulls)
        logger.debug(f"Thompson sampling picked {best_arm.value} (theta={samples[best_arm]:.3f})")
        return ArmSelection(
            arm=best_arm,
            sampled_value=samples[best_arm],
            samples=samples,
            confidence=confidence,
            confidence_label=label,
        )

    def update(self, arm: ContentType, reward: float) -> BanditArmState:
        """
        Conjugate update: alpha += reward, beta += 1 - reward.
        """
        if not 0.0 <= reward <= 1.0:
            raise ValueError(f"reward must be in [0, 1], got {reward}")
        if arm not in self.arms:
            raise ValueError(f"unknown arm {arm}")
        with self._lock:
            states = self._load()
            state = states[arm]
            state.alpha += reward
            state.beta += 1.0 - reward
            self._save(states)
        return state

    def total_pulls(self) -> float:
        return sum(state.pulls for state in self._load().values())

    def has_sufficient_data(self) -> bool:
        return self.total_pulls() >= self.config.sufficient_data_pulls

    def overall_effectiveness(self) -> float:
        """
        Pull-weighted success rate across arms; 0.5 before any data.
        """
        states = self._load().values()
        pulls = sum(s.pulls for s in states)
        if pulls <= 0:
            return 0.5
        successes = sum(s.alpha - self.config.prior_alpha for s in states)
        return successes / pulls

    def arm_stats(self) -> List[ArmStats]:
        stats = []
        for arm, state in self._load().items():
            mean = state.mean
            sd = state.uncertainty
            lower, upper = scipy.stats.beta.interval(0.95, state.alpha, state.beta)
            stats.append(
                ArmStats(
                    arm=arm,
                    alpha=state.alpha,
                    beta=state.beta,
                    mean=mean,
                    pulls=int(round(state.pulls)),
                    uncertainty=sd,
                    ci_lower=max(0.0, mean - 1.96 * sd),
                    ci_upper=min(1.0, mean + 1.96 * sd),
                    credible_lower=float(lower),
                    credible_upper=float(upper),
                    confidence_label=confidence_for_pulls(state.pulls)[1],
                )
            )
        return sorted(stats, key=lambda s: s.mean, reverse=True)

    def reset(self) -> None:
        with self._lock:
            self._save(self._default_states())
        logger.info("Bandit state reset to priors")
