"""
End-to-end demo: two simulated weeks of app opens driven through the
decision orchestrator, followed by outcome collection and reporting.

Run with ``python -m jitai_engine.demo``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List

import numpy as np

from .clock import FixedClock
from .data_models import ContentType, InterventionContext, SessionRecord, UserChoice, UserFeedback
from .orchestrator import DecisionOrchestrator
from .persona import UsagePersonaClassifier, UsageProfile, UsageTrend
from .store import InMemoryStore

# Simulated go-back probability per content type; the bandit should find
# the strong ones.
TRUE_GO_BACK_RATE: Dict[ContentType, float] = {
    ContentType.REFLECTION: 0.55,
    ContentType.TIME_ALTERNATIVE: 0.45,
    ContentType.BREATHING: 0.35,
    ContentType.USAGE_STATS: 0.30,
    ContentType.EMOTIONAL_APPEAL: 0.25,
    ContentType.QUOTE: 0.15,
    ContentType.GAMIFICATION: 0.20,
    ContentType.ACTIVITY_SUGGESTION: 0.40,
}

APPS = ["video", "social", "news"]


class SimulatedUser:
    """
    A synthetic user whose usage profile evolves as the days go by.
    """

    def __init__(self, rng: np.random.Generator, start: datetime) -> None:
        self.rng = rng
        self.start = start
        self.day = 0
        self.sessions_today = 0
        self.usage_today = 0
        self.usage_yesterday = 0
        self.last_session_end_ms = None

    def profile(self) -> UsageProfile:
        return UsageProfile(
            days_since_install=20 + self.day,
            avg_daily_sessions=10.0,
            avg_session_minutes=12.0,
            quick_reopen_rate=0.2,
            trend=UsageTrend.STABLE,
            days_of_data=self.day,
        )

    def new_day(self) -> None:
        self.day += 1
        self.usage_yesterday = self.usage_today
        self.usage_today = 0
        self.sessions_today = 0

    def open_hours(self) -> List[int]:
        count = int(self.rng.integers(6, 12))
        return sorted(int(h) for h in self.rng.choice(np.arange(7, 24), size=count, replace=False))

    def respond(self, content: ContentType) -> UserChoice:
        roll = self.rng.random()
        p = TRUE_GO_BACK_RATE[content]
        if roll < p:
            return UserChoice.GO_BACK
        if roll < p + 0.25:
            return UserChoice.CONTINUE
        if roll < p + 0.35:
            return UserChoice.DISMISS
        return UserChoice.TIMEOUT


def simulate(days: int = 14, seed: int = 42) -> DecisionOrchestrator:
    rng = np.random.default_rng(seed=seed)
    start = datetime(2025, 3, 3, 0, 0)
    clock = FixedClock.at(start)
    store = InMemoryStore()
    user = SimulatedUser(rng, start)
    orchestrator = DecisionOrchestrator(
        store,
        clock,
        UsagePersonaClassifier(user.profile),
        user_id="demo-user",
        rng=rng,
    )

    session_seq = 0
    for day in range(days):
        day_start = clock.start_of_day_ms()
        for hour in user.open_hours():
            planned = datetime.fromtimestamp(day_start / 1000.0).replace(hour=hour, minute=int(rng.integers(0, 50)))
            if planned.timestamp() * 1000 > clock.now_ms():
                clock.set(planned)
            else:
                clock.advance(minutes=5)
            app = APPS[int(rng.integers(len(APPS)))]
            minutes = int(rng.integers(1, 30))
            session_seq += 1
            session_id = f"s{session_seq}"
            opened_ms = clock.now_ms()
            orchestrator.record_session(SessionRecord(session_id, app, opened_ms))

            user.sessions_today += 1
            context = InterventionContext.create(
                clock,
                target_app=app,
                current_session_minutes=minutes,
                session_count=user.sessions_today,
                last_session_end_ms=user.last_session_end_ms,
                total_usage_today=user.usage_today,
                total_usage_yesterday=user.usage_yesterday,
                weekly_average=90,
                goal_minutes=120,
                days_since_install=20 + day,
            )
            decision = orchestrator.evaluate(context)

            stay_minutes = minutes
            if decision.should_show:
                choice = user.respond(decision.content_type)
                feedback = UserFeedback.HELPFUL if choice == UserChoice.GO_BACK and rng.random() < 0.3 else None
                orchestrator.record_outcome(
                    decision.intervention_id,
                    choice,
                    feedback=feedback,
                    response_time_ms=int(rng.integers(1000, 9000)),
                    session_id=session_id,
                )
                if choice == UserChoice.GO_BACK:
                    stay_minutes = 1

            clock.advance(minutes=stay_minutes)
            end_ms = clock.now_ms()
            orchestrator.record_session(SessionRecord(session_id, app, opened_ms, end_ms))
            user.last_session_end_ms = end_ms
            user.usage_today += stay_minutes

            clock.advance(minutes=10)
            orchestrator.collect_short_term()

        day_end = datetime.fromtimestamp(day_start / 1000.0).replace(hour=23, minute=59)
        if day_end.timestamp() * 1000 > clock.now_ms():
            clock.set(day_end)
        orchestrator.collect_medium_term()
        orchestrator.collect_long_term()
        clock.advance(minutes=2)
        user.new_day()

    orchestrator.run_maintenance()
    return orchestrator


def report(orchestrator: DecisionOrchestrator) -> None:
    print(orchestrator.get_decision_summary(days_back=14))

    print("[report] Content effectiveness (bandit posterior):")
    for stats in orchestrator.get_content_effectiveness():
        print(
            f"  {stats.arm.value:<20} mean={stats.mean:.2f} "
            f"pulls={stats.pulls} ci=({stats.credible_lower:.2f}, {stats.credible_upper:.2f})"
        )

    metrics = orchestrator.get_effectiveness_metrics()
    print("[report] Overall KPIs:", {k: round(v, 3) for k, v in metrics["overall"].items()})
    print("[report] By variant:")
    print(metrics["by_variant"])
    rollout = metrics["rollout"]
    print(
        f"[report] Rollout {rollout.percentage}% enabled={rollout.enabled}: "
        f"{rollout.performance} ({rollout.difference:+.3f})"
    )
    print("[report] Burden:", orchestrator.get_burden_summary()["summary"])


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    orchestrator = simulate()
    report(orchestrator)


if __name__ == "__main__":
    main()
