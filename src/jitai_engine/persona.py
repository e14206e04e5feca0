"""
User personas and the classifiers that assign them.

The decision engine treats the persona as an opaque label with a
confidence; `PERSONA_PROFILES` holds what each label means for frequency
and content weighting.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

from .data_models import ContentType


class Persona(Enum):
    NEW_USER = "NEW_USER"
    PROBLEMATIC_PATTERN_USER = "PROBLEMATIC_PATTERN_USER"
    HEAVY_COMPULSIVE_USER = "HEAVY_COMPULSIVE_USER"
    HEAVY_BINGE_USER = "HEAVY_BINGE_USER"
    MODERATE_BALANCED_USER = "MODERATE_BALANCED_USER"
    CASUAL_USER = "CASUAL_USER"
    UNKNOWN = "UNKNOWN"


class PersonaConfidence(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class FrequencyRule(Enum):
    ONBOARDING = "ONBOARDING"
    MINIMAL = "MINIMAL"
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    BALANCED = "BALANCED"
    ADAPTIVE = "ADAPTIVE"


class UsageTrend(Enum):
    ESCALATING = "ESCALATING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


@dataclass(frozen=True)
class PersonaProfile:
    display_name: str
    frequency_rule: FrequencyRule
    cooldown_multiplier: float
    base_weights: Dict[ContentType, int] = field(default_factory=dict)


R = ContentType.REFLECTION
TA = ContentType.TIME_ALTERNATIVE
B = ContentType.BREATHING
E = ContentType.EMOTIONAL_APPEAL
A = ContentType.ACTIVITY_SUGGESTION

PERSONA_PROFILES: Dict[Persona, PersonaProfile] = {
    Persona.NEW_USER: PersonaProfile(
        "New User", FrequencyRule.ONBOARDING, 0.5, {R: 25, B: 25, TA: 20, A: 15, E: 15}
    ),
    Persona.PROBLEMATIC_PATTERN_USER: PersonaProfile(
        "Problematic Pattern User", FrequencyRule.MINIMAL, 2.0, {R: 60, TA: 20, E: 15, B: 5, A: 0}
    ),
    Persona.HEAVY_COMPULSIVE_USER: PersonaProfile(
        "Heavy Compulsive User", FrequencyRule.CONSERVATIVE, 1.5, {R: 50, TA: 20, B: 15, E: 10, A: 5}
    ),
    Persona.HEAVY_BINGE_USER: PersonaProfile(
        "Heavy Binge User", FrequencyRule.MODERATE, 1.0, {TA: 40, R: 30, A: 15, E: 10, B: 5}
    ),
    Persona.MODERATE_BALANCED_USER: PersonaProfile(
        "Moderate Balanced User", FrequencyRule.BALANCED, 1.0, {R: 35, TA: 30, B: 15, A: 10, E: 10}
    ),
    Persona.CASUAL_USER: PersonaProfile(
        "Casual User", FrequencyRule.ADAPTIVE, 0.7, {R: 25, B: 20, TA: 20, A: 20, E: 15}
    ),
}
PERSONA_PROFILES[Persona.UNKNOWN] = PERSONA_PROFILES[Persona.MODERATE_BALANCED_USER]


@dataclass(frozen=True)
class PersonaAssessment:
    persona: Persona
    confidence: PersonaConfidence = PersonaConfidence.LOW

    @property
    def profile(self) -> PersonaProfile:
        return PERSONA_PROFILES[self.persona]


class PersonaClassifier(ABC):
    """
    Source of the current persona label.
    """

    @abstractmethod
    def classify(self, force_refresh: bool = False) -> PersonaAssessment:
        ...


class StaticPersonaClassifier(PersonaClassifier):
    def __init__(
        self,
        persona: Persona = Persona.UNKNOWN,
        confidence: PersonaConfidence = PersonaConfidence.LOW,
    ) -> None:
        self.assessment = PersonaAssessment(persona, confidence)

    def classify(self, force_refresh: bool = False) -> PersonaAssessment:
        return self.assessment


@dataclass
class UsageProfile:
    """
    Aggregate usage behaviour the rule-based classifier works from.
    """

    days_since_install: int
    avg_daily_sessions: float
    avg_session_minutes: float
    quick_reopen_rate: float
    trend: UsageTrend = UsageTrend.STABLE
    days_of_data: int = 0


class UsagePersonaClassifier(PersonaClassifier):
    """
    Rule-based classifier over a `UsageProfile`.

    The profile provider is called on every classification so the label
    follows the user's behaviour as it changes.
    """

    def __init__(self, profile_provider) -> None:
        self.profile_provider = profile_provider

    @staticmethod
    def detect(profile: UsageProfile) -> Persona:
        if profile.days_since_install < 14:
            return Persona.NEW_USER
        if profile.trend == UsageTrend.ESCALATING and profile.quick_reopen_rate > 0.40:
            return Persona.PROBLEMATIC_PATTERN_USER
        if (
            profile.avg_daily_sessions >= 15
            and profile.quick_reopen_rate >= 0.35
            and profile.avg_session_minutes < 5
        ):
            return Persona.HEAVY_COMPULSIVE_USER
        if profile.avg_daily_sessions >= 6 and profile.avg_session_minutes >= 20:
            return Persona.HEAVY_BINGE_USER
        if 8 <= profile.avg_daily_sessions <= 13:
            return Persona.MODERATE_BALANCED_USER
        if profile.avg_daily_sessions < 8:
            return Persona.CASUAL_USER
        return Persona.MODERATE_BALANCED_USER

    @staticmethod
    def confidence_for(days_of_data: int) -> PersonaConfidence:
        if days_of_data >= 14:
            return PersonaConfidence.HIGH
        if days_of_data >= 7:
            return PersonaConfidence.MEDIUM
        return PersonaConfidence.LOW

    def classify(self, force_refresh: bool = False) -> PersonaAssessment:
        profile = self.profile_provider()
        return PersonaAssessment(self.detect(profile), self.confidence_for(profile.days_of_data))
