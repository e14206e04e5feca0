"""
Reward functions turning intervention outcomes into learning signals.

`RewardCalculator` produces the bounded [0, 1] reward used for the single
Bayesian update made when an outcome is recorded. `calculate_outcome_reward`
is the unbounded multi-horizon score kept on each outcome row.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from .data_models import UserChoice, UserFeedback

BASE_REWARDS: Dict[UserChoice, float] = {
    UserChoice.GO_BACK: 1.0,
    UserChoice.CONTINUE: 0.3,
    UserChoice.SNOOZE: 0.2,
    UserChoice.DISMISS: 0.0,
    UserChoice.TIMEOUT: 0.1,
}

QUICK_REOPEN_WINDOW_MS = 2 * 60_000


class RewardCalculator:
    """
    Immediate reward from the user's choice plus whatever session signals
    are already known.
    """

    @staticmethod
    def calculate(
        user_choice: UserChoice,
        feedback: Optional[UserFeedback] = None,
        session_ended: Optional[bool] = None,
        session_duration_after_ms: Optional[int] = None,
        quick_reopen: Optional[bool] = None,
        reopen_delay_ms: Optional[int] = None,
    ) -> float:
        reward = BASE_REWARDS.get(user_choice, 0.5)

        if feedback == UserFeedback.HELPFUL:
            reward += 0.2
        elif feedback == UserFeedback.DISRUPTIVE:
            reward -= 0.3

        if session_ended:
            reward += 0.1

        if session_duration_after_ms is not None:
            minutes = session_duration_after_ms / 60_000
            if minutes > 15:
                reward -= 0.1
            elif minutes <= 5:
                reward += 0.1

        if quick_reopen:
            reward -= 0.2

        if reopen_delay_ms is not None:
            if reopen_delay_ms < QUICK_REOPEN_WINDOW_MS:
                reward -= 0.2
            elif reopen_delay_ms > 5 * 60_000:
                reward += 0.1

        return min(1.0, max(0.0, reward))

    @staticmethod
    def is_successful(user_choice: UserChoice, feedback: Optional[UserFeedback] = None) -> bool:
        if user_choice == UserChoice.GO_BACK:
            return True
        return user_choice == UserChoice.CONTINUE and feedback == UserFeedback.HELPFUL

    @classmethod
    def binary_reward(
        cls, user_choice: UserChoice, feedback: Optional[UserFeedback] = None
    ) -> float:
        return 1.0 if cls.is_successful(user_choice, feedback) else 0.0


CHOICE_POINTS = {
    "GO_BACK": 10.0,
    "CONTINUE": -5.0,
    "SNOOZE": 0.0,
    "DISMISS": -3.0,
    "TIMEOUT": -8.0,
}

DEPTH_POINTS = {
    "INTERACTED": 3.0,
    "ENGAGED": 1.5,
    "VIEWED": 0.0,
    "DISMISSED": -2.0,
}


def calculate_outcome_reward(outcome: Dict[str, Any]) -> float:
    """
    Weighted sum over every signal collected so far. Missing signals
    contribute nothing.
    """
    reward = CHOICE_POINTS.get(outcome.get("user_choice") or "", 0.0)
    reward += DEPTH_POINTS.get(outcome.get("interaction_depth") or "", 0.0)

    # short term
    if outcome.get("session_continued") is False:
        reward += 15.0
    duration_after = outcome.get("session_duration_after_ms")
    if duration_after is not None:
        minutes = duration_after / 60_000
        if minutes < 5:
            reward += 10.0
        elif minutes < 15:
            reward += 5.0
    if outcome.get("switched_to_productive_app"):
        reward += 8.0
    if outcome.get("quick_reopen_5min"):
        reward -= 12.0
    reopens = outcome.get("reopen_count_30min")
    if reopens is not None:
        if reopens == 0:
            reward += 8.0
        elif reopens >= 3:
            reward -= 6.0

    # medium term
    if outcome.get("goal_met_today"):
        reward += 6.0
    reduction = outcome.get("usage_reduction_min")
    if reduction is not None and reduction > 0:
        reward += 0.5 * reduction
    additional = outcome.get("additional_sessions_today")
    if additional is not None:
        if additional == 0:
            reward += 5.0
        elif additional >= 3:
            reward -= 3.0

    # long term
    change = outcome.get("weekly_usage_change")
    if change == "DECREASED":
        reward += 5.0
    elif change == "INCREASED":
        reward -= 3.0
    if outcome.get("streak_maintained"):
        reward += 3.0
    if outcome.get("app_uninstalled"):
        reward += 10.0
    if outcome.get("user_retention") is False:
        reward -= 20.0
    avg_next = outcome.get("avg_daily_usage_next_7d")
    if avg_next is not None:
        if avg_next < 30:
            reward += 5.0
        elif avg_next < 60:
            reward += 2.0

    return reward


def normalized_reward(raw: float, scale: float = 10.0) -> float:
    """
    Logistic squash of a raw outcome reward into (0, 1).
    """
    return 1.0 / (1.0 + math.exp(-raw / scale))
