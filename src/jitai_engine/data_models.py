"""
Core data models used across the jitai_engine package.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional

from .clock import MINUTE_MS, Clock


class ContentType(Enum):
    """
    One selectable intervention content family (a bandit arm).
    """

    REFLECTION = "REFLECTION"
    TIME_ALTERNATIVE = "TIME_ALTERNATIVE"
    BREATHING = "BREATHING"
    USAGE_STATS = "USAGE_STATS"
    EMOTIONAL_APPEAL = "EMOTIONAL_APPEAL"
    QUOTE = "QUOTE"
    GAMIFICATION = "GAMIFICATION"
    ACTIVITY_SUGGESTION = "ACTIVITY_SUGGESTION"


class Variant(Enum):
    CONTROL = "CONTROL"
    TREATMENT = "TREATMENT"


class InterventionType(Enum):
    REMINDER = "REMINDER"
    TIMER = "TIMER"


class FrictionLevel(Enum):
    GENTLE = "GENTLE"
    MODERATE = "MODERATE"
    FIRM = "FIRM"
    LOCKED = "LOCKED"

    @property
    def delay_ms(self) -> int:
        return {
            FrictionLevel.GENTLE: 0,
            FrictionLevel.MODERATE: 3000,
            FrictionLevel.FIRM: 5000,
            FrictionLevel.LOCKED: 10000,
        }[self]

    @classmethod
    def from_days_since_install(cls, days: int) -> "FrictionLevel":
        if days < 14:
            return cls.GENTLE
        if days < 28:
            return cls.MODERATE
        return cls.FIRM


class UserChoice(Enum):
    GO_BACK = "GO_BACK"
    CONTINUE = "CONTINUE"
    SNOOZE = "SNOOZE"
    DISMISS = "DISMISS"
    TIMEOUT = "TIMEOUT"


class UserFeedback(Enum):
    HELPFUL = "HELPFUL"
    DISRUPTIVE = "DISRUPTIVE"
    NONE = "NONE"


class InteractionDepth(Enum):
    DISMISSED = "DISMISSED"
    VIEWED = "VIEWED"
    ENGAGED = "ENGAGED"
    INTERACTED = "INTERACTED"

    @classmethod
    def from_response_time(cls, response_time_ms: int) -> "InteractionDepth":
        if response_time_ms < 2000:
            return cls.DISMISSED
        if response_time_ms < 5000:
            return cls.VIEWED
        return cls.ENGAGED


QUICK_REOPEN_THRESHOLD_MS = 2 * MINUTE_MS


@dataclass(frozen=True)
class InterventionContext:
    """
    Immutable snapshot of everything known at the moment an app is opened.

    A fresh context is built for each evaluation and never mutated; together
    with persisted learner state it fully determines the decision.
    """

    time_of_day: int
    day_of_week: int
    is_weekend: bool
    target_app: str
    current_session_minutes: int = 0
    session_count: int = 1
    time_since_last_session_ms: Optional[int] = None
    quick_reopen_attempt: bool = False

    total_usage_today: int = 0
    total_usage_yesterday: int = 0
    weekly_average: int = 0

    goal_minutes: Optional[int] = None
    is_over_goal: bool = False
    streak_days: int = 0
    friction_level: FrictionLevel = FrictionLevel.GENTLE
    days_since_install: int = 0
    best_session_minutes: int = 0

    compulsive_behavior_detected: bool = False
    rapid_app_switching: bool = False
    unusual_usage_time: bool = False
    is_long_screen_session: bool = False
    is_excessive_unlocking: bool = False

    intervention_type: InterventionType = InterventionType.REMINDER

    interventions_enabled: bool = True
    overlay_permission_granted: bool = True
    snooze_active: bool = False

    @property
    def is_late_night(self) -> bool:
        return self.time_of_day >= 22 or self.time_of_day <= 5

    @property
    def is_weekend_morning(self) -> bool:
        return self.is_weekend and 6 <= self.time_of_day <= 11

    @property
    def is_extended_session(self) -> bool:
        return self.current_session_minutes >= 15

    @property
    def is_first_session_of_day(self) -> bool:
        return self.session_count == 1

    @property
    def is_high_frequency_day(self) -> bool:
        return self.session_count >= 10

    @property
    def session_duration_ms(self) -> int:
        return self.current_session_minutes * MINUTE_MS

    @property
    def usage_vs_yesterday(self) -> float:
        if self.total_usage_yesterday <= 0:
            return 0.0
        return self.total_usage_today / self.total_usage_yesterday

    @property
    def usage_vs_average(self) -> float:
        if self.weekly_average <= 0:
            return 0.0
        return self.total_usage_today / self.weekly_average

    @classmethod
    def create(
        cls,
        clock: Clock,
        target_app: str,
        current_session_minutes: int,
        session_count: int,
        last_session_end_ms: Optional[int] = None,
        total_usage_today: int = 0,
        total_usage_yesterday: int = 0,
        weekly_average: int = 0,
        goal_minutes: Optional[int] = None,
        streak_days: int = 0,
        days_since_install: int = 0,
        best_session_minutes: int = 0,
        **cues: Any,
    ) -> "InterventionContext":
        """
        Build a context from raw usage figures, deriving the time fields,
        quick-reopen flag, goal state and friction level.
        """
        now_ms = clock.now_ms()
        since_last = now_ms - last_session_end_ms if last_session_end_ms else None
        return cls(
            time_of_day=clock.hour(),
            day_of_week=clock.weekday(),
            is_weekend=clock.is_weekend(),
            target_app=target_app,
            current_session_minutes=current_session_minutes,
            session_count=session_count,
            time_since_last_session_ms=since_last,
            quick_reopen_attempt=since_last is not None and since_last < QUICK_REOPEN_THRESHOLD_MS,
            total_usage_today=total_usage_today,
            total_usage_yesterday=total_usage_yesterday,
            weekly_average=weekly_average,
            goal_minutes=goal_minutes,
            is_over_goal=goal_minutes is not None and total_usage_today > goal_minutes,
            streak_days=streak_days,
            friction_level=FrictionLevel.from_days_since_install(days_since_install),
            days_since_install=days_since_install,
            best_session_minutes=best_session_minutes,
            **cues,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["friction_level"] = self.friction_level.value
        data["intervention_type"] = self.intervention_type.value
        return data


@dataclass
class InterventionRecord:
    """
    Result of one shown intervention, as stored in the results table.
    """

    intervention_id: str
    timestamp: int
    target_app: str
    content_type: str
    user_choice: str
    variant: str = Variant.CONTROL.value
    hour_of_day: int = 0
    day_of_week: int = 0
    is_weekend: bool = False
    session_count: int = 0
    quick_reopen: bool = False
    current_session_minutes: int = 0
    response_time_ms: int = 0
    feedback: str = UserFeedback.NONE.value
    persona: Optional[str] = None
    opportunity_score: Optional[int] = None
    opportunity_level: Optional[str] = None
    reward: Optional[float] = None
    id: Optional[int] = None

    @property
    def is_go_back(self) -> bool:
        return self.user_choice == UserChoice.GO_BACK.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("id")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterventionRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SessionRecord:
    """
    One usage session of a monitored app. ``end_ms`` stays None while open.
    """

    session_id: str
    target_app: str
    start_ms: int
    end_ms: Optional[int] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_ms is None:
            return None
        return self.end_ms - self.start_ms

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.start_ms
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=str(data["session_id"]),
            target_app=data["target_app"],
            start_ms=int(data["start_ms"]),
            end_ms=data.get("end_ms"),
        )
