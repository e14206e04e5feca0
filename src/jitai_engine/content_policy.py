"""
Content selection: which intervention content to show.

Context, persona and opportunity first produce an exclusion set shared by
both experiment variants. CONTROL users then draw from a persona-weighted
table; TREATMENT users are served by the Thompson-sampling bandit.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set

import numpy as np

from .bandit import ArmStats, BetaBandit
from .data_models import ContentType, InterventionContext, InterventionRecord, InterventionType, Variant
from .errors import StoreError
from .opportunity import OpportunityDetection, OpportunityLevel
from .persona import PERSONA_PROFILES, Persona
from .store import INTERVENTION_RESULTS, Store

logger = logging.getLogger(__name__)

HISTORY_SIZE = 10
MIN_EFFECTIVENESS_RECORDS = 30

R = ContentType.REFLECTION
TA = ContentType.TIME_ALTERNATIVE
B = ContentType.BREATHING
E = ContentType.EMOTIONAL_APPEAL
A = ContentType.ACTIVITY_SUGGESTION


@dataclass
class ContentSelection:
    content_type: ContentType
    variant: Variant
    strategy: str
    reason: str
    weights: Dict[str, float] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)
    confidence: Optional[float] = None


def build_exclusions(
    context: InterventionContext,
    persona: Persona,
    opportunity: Optional[OpportunityDetection] = None,
) -> Set[ContentType]:
    """
    Content types that must not be shown in this situation.
    """
    excluded: Set[ContentType] = set()
    if context.is_late_night:
        excluded |= {ContentType.BREATHING, ContentType.GAMIFICATION}
    if 3 <= context.time_of_day <= 5:
        excluded |= {ContentType.USAGE_STATS, ContentType.EMOTIONAL_APPEAL}

    if persona == Persona.PROBLEMATIC_PATTERN_USER:
        excluded |= {ContentType.QUOTE, ContentType.GAMIFICATION}
    elif persona == Persona.CASUAL_USER:
        excluded.add(ContentType.EMOTIONAL_APPEAL)
    elif persona == Persona.NEW_USER:
        excluded |= {ContentType.EMOTIONAL_APPEAL, ContentType.USAGE_STATS}

    if context.is_first_session_of_day:
        excluded.add(ContentType.USAGE_STATS)
    if context.quick_reopen_attempt:
        excluded |= {ContentType.QUOTE, ContentType.GAMIFICATION}

    if opportunity is not None and opportunity.level == OpportunityLevel.POOR:
        excluded.add(ContentType.EMOTIONAL_APPEAL)
    return excluded


def persona_weights(context: InterventionContext, persona: Persona) -> Dict[ContentType, float]:
    """
    Persona base weights with context adjustments applied.
    """
    weights: Dict[ContentType, float] = {
        ct: float(w) for ct, w in PERSONA_PROFILES[persona].base_weights.items()
    }

    def bump(ct: ContentType, amount: float) -> None:
        weights[ct] = weights.get(ct, 0.0) + amount

    if persona == Persona.HEAVY_COMPULSIVE_USER:
        if context.is_late_night:
            bump(R, 15)
            bump(E, 10)
        if context.quick_reopen_attempt:
            weights[R] = weights.get(R, 0.0) * 2
            bump(E, 15)
    elif persona == Persona.HEAVY_BINGE_USER:
        if context.is_late_night:
            bump(A, 20)
            bump(B, 15)
        if context.is_extended_session:
            weights[TA] = weights.get(TA, 0.0) * 1.5
    elif persona in (Persona.MODERATE_BALANCED_USER, Persona.UNKNOWN):
        if context.quick_reopen_attempt:
            bump(R, 20)
        if context.is_extended_session:
            bump(TA, 15)
    elif persona == Persona.CASUAL_USER:
        if context.is_late_night:
            bump(B, 15)
            bump(A, 10)
        if context.quick_reopen_attempt:
            bump(R, 10)
            bump(B, 10)
    elif persona == Persona.PROBLEMATIC_PATTERN_USER:
        bump(R, 20)
        if context.quick_reopen_attempt:
            bump(R, 30)
            bump(E, 20)
            weights[A] = 0.0
    elif persona == Persona.NEW_USER:
        if context.is_late_night:
            bump(B, 15)
            bump(A, 10)
        weights[E] = weights.get(E, 0.0) * 0.5

    if context.is_weekend_morning:
        bump(A, 10)
    if context.intervention_type == InterventionType.TIMER:
        bump(TA, 20)

    return {ct: max(0.0, w) for ct, w in weights.items() if w > 0}


def effectiveness_multiplier(rate: float, average: float) -> float:
    if rate >= average + 0.15:
        return 1.25
    if rate >= average + 0.05:
        return 1.15
    if rate >= average:
        return 1.05
    if rate < average - 0.15:
        return 0.8
    return 1.0


class ContentSelectionPolicy:
    """
    Chooses intervention content for both experiment variants.
    """

    def __init__(
        self,
        store: Store,
        bandit: BetaBandit,
        rng: Optional[np.random.Generator] = None,
        frequency_min_pulls: int = 20,
    ) -> None:
        self.store = store
        self.bandit = bandit
        self.rng = rng if rng is not None else np.random.default_rng()
        self.frequency_min_pulls = frequency_min_pulls
        self._recent: Deque[ContentType] = deque(maxlen=HISTORY_SIZE)
        self._lock = threading.Lock()

    @property
    def recent_history(self) -> List[ContentType]:
        with self._lock:
            return list(self._recent)

    def select(
        self,
        context: InterventionContext,
        persona: Persona,
        opportunity: Optional[OpportunityDetection],
        variant: Variant,
    ) -> ContentSelection:
        excluded = build_exclusions(context, persona, opportunity)
        if variant == Variant.TREATMENT:
            return self._select_bandit(excluded)
        return self._select_weighted(context, persona, excluded)

    # -- treatment -------------------------------------------------------

    def _select_bandit(self, excluded: Set[ContentType]) -> ContentSelection:
        choice = self.bandit.select(excluded)
        if choice.strategy == "fallback":
            reason = "All content filtered by context, using REFLECTION"
        else:
            if choice.confidence >= 0.75:
                certainty = "high confidence"
            elif choice.confidence >= 0.5:
                certainty = "medium confidence"
            else:
                certainty = "exploring"
            reason = f"TS selected {choice.arm.value}, {certainty}"
            if excluded:
                reason += f", {len(excluded)} filtered by context"
        return ContentSelection(
            content_type=choice.arm,
            variant=Variant.TREATMENT,
            strategy=choice.strategy,
            reason=reason,
            weights={arm.value: round(theta, 4) for arm, theta in choice.samples.items()},
            excluded=sorted(ct.value for ct in excluded),
            confidence=choice.confidence,
        )

    # -- control ---------------------------------------------------------

    def content_effectiveness_rates(self) -> Dict[ContentType, float]:
        """
        Go-back rate per content type, empty until enough history exists.
        """
        try:
            rows = self.store.query(INTERVENTION_RESULTS)
        except StoreError as exc:
            logger.warning(f"Content history unavailable: {exc}")
            return {}
        if len(rows) < MIN_EFFECTIVENESS_RECORDS:
            return {}
        totals: Dict[ContentType, List[int]] = {}
        for row in rows:
            record = InterventionRecord.from_dict(row)
            try:
                ct = ContentType(record.content_type)
            except ValueError:
                continue
            counts = totals.setdefault(ct, [0, 0])
            counts[0] += 1 if record.is_go_back else 0
            counts[1] += 1
        return {ct: wins / n for ct, (wins, n) in totals.items() if n}

    def _apply_effectiveness(self, weights: Dict[ContentType, float]) -> Dict[ContentType, float]:
        rates = self.content_effectiveness_rates()
        if not rates:
            return weights
        average = sum(rates.values()) / len(rates)
        return {
            ct: w * effectiveness_multiplier(rates[ct], average) if ct in rates else w
            for ct, w in weights.items()
        }

    def _weighted_draw(self, weights: Dict[ContentType, int]) -> ContentType:
        total = sum(weights.values())
        draw = int(self.rng.integers(total))
        for ct, weight in weights.items():
            draw -= weight
            if draw < 0:
                return ct
        return next(iter(weights))

    def _select_weighted(
        self,
        context: InterventionContext,
        persona: Persona,
        excluded: Set[ContentType],
    ) -> ContentSelection:
        weights = self._apply_effectiveness(persona_weights(context, persona))
        eligible = {
            ct: int(round(w)) for ct, w in weights.items() if ct not in excluded and int(round(w)) > 0
        }

        with self._lock:
            fresh = {ct: w for ct, w in eligible.items() if ct not in self._recent}
            if eligible and not fresh:
                self._recent.clear()
                fresh = eligible

            if fresh:
                chosen = self._weighted_draw(fresh)
                strategy = "persona_weighted"
            else:
                allowed = [ct for ct in ContentType if ct not in excluded]
                if allowed:
                    chosen = allowed[int(self.rng.integers(len(allowed)))]
                    strategy = "uniform_fallback"
                else:
                    chosen = ContentType.REFLECTION
                    strategy = "fallback"
            self._recent.append(chosen)

        label = PERSONA_PROFILES[persona].display_name
        reason = f"Persona-weighted selection for {label}"
        if context.quick_reopen_attempt:
            reason += ", quick reopen"
        if context.is_late_night:
            reason += ", late night"
        if excluded:
            reason += f", {len(excluded)} filtered by context"
        logger.debug(f"Control policy picked {chosen.value} from {fresh}")
        return ContentSelection(
            content_type=chosen,
            variant=Variant.CONTROL,
            strategy=strategy,
            reason=reason,
            weights={ct.value: float(w) for ct, w in (fresh or {}).items()},
            excluded=sorted(ct.value for ct in excluded),
        )

    # -- learning and analytics -----------------------------------------

    def record_outcome(self, content_type: ContentType, reward: float) -> None:
        self.bandit.update(content_type, reward)

    def frequency_multiplier(self) -> float:
        """
        Scale applied to cooldowns based on how well interventions work overall.
        """
        if self.bandit.total_pulls() < self.frequency_min_pulls:
            return 1.0
        effectiveness = self.bandit.overall_effectiveness()
        if effectiveness >= 0.60:
            return 0.8
        if effectiveness >= 0.45:
            return 1.0
        if effectiveness >= 0.30:
            return 1.3
        return 1.5

    def get_content_effectiveness(self) -> List[ArmStats]:
        return self.bandit.arm_stats()

    def clear_history(self) -> None:
        with self._lock:
            self._recent.clear()
