"""Tests for multi-horizon outcome collection."""

import pytest

from jitai_engine.bandit import BetaBandit
from jitai_engine.clock import DAY_MS, HOUR_MS, MINUTE_MS
from jitai_engine.config import OutcomeConfig
from jitai_engine.data_models import ContentType, SessionRecord, UserChoice, Variant
from jitai_engine.errors import StoreError
from jitai_engine.outcomes import OutcomeCollector, ShownIntervention
from jitai_engine.rollout import RolloutController
from jitai_engine.store import INTERVENTION_RESULTS, OUTCOMES, SESSIONS, InMemoryStore
from jitai_engine.timing import TimingLearner, hour_key


def _shown(ts, intervention_id="i1", **fields):
    values = dict(
        intervention_id=intervention_id,
        timestamp=ts,
        target_app="video",
        content_type=ContentType.REFLECTION.value,
        variant=Variant.TREATMENT.value,
        hour_of_day=8,
        day_of_week=2,
        is_weekend=False,
        session_id="own",
    )
    values.update(fields)
    return ShownIntervention(**values)


def _session(store, session_id, start_ms, end_ms=None, app="video"):
    store.append(SESSIONS, SessionRecord(session_id, app, start_ms, end_ms).to_dict())


@pytest.fixture
def collector(store, clock, rng):
    return OutcomeCollector(
        store,
        clock,
        bandit=BetaBandit(store, rng=rng),
        timing_learner=TimingLearner(store, clock),
        rollout=RolloutController(store, clock),
    )


class TestProximal:
    def test_single_learning_update(self, store, clock, collector):
        outcome = collector.record_proximal(_shown(clock.now_ms()), UserChoice.GO_BACK, response_time_ms=3000)

        assert outcome.immediate_reward == 1.0
        assert outcome.interaction_depth == "VIEWED"
        assert outcome.proximal_collected
        assert collector.bandit.arm_state(ContentType.REFLECTION).alpha == pytest.approx(2.0)
        assert collector.timing_learner.get_pattern(hour_key(8)).observations == 1
        assert collector.rollout.get_metrics().treatment_trials == 1
        assert len(store.query(INTERVENTION_RESULTS)) == 1
        assert collector.get_outcome("i1").user_choice == "GO_BACK"

    def test_failed_choice_is_not_success(self, clock, collector):
        collector.record_proximal(_shown(clock.now_ms()), UserChoice.DISMISS)
        metrics = collector.rollout.get_metrics()
        assert metrics.treatment_effectiveness == pytest.approx(0.45)


class TestShortTerm:
    def test_collects_session_signals(self, store, clock, collector):
        t = clock.now_ms()
        _session(store, "own", t - 3 * MINUTE_MS, t + 30_000)
        _session(store, "reopen", t + 3 * MINUTE_MS, t + 4 * MINUTE_MS)
        collector.record_proximal(_shown(t), UserChoice.GO_BACK, response_time_ms=3000)

        clock.advance(minutes=4)
        assert collector.collect_short_term() == 0

        clock.advance(minutes=2)
        assert collector.collect_short_term() == 1
        outcome = collector.get_outcome("i1")
        assert outcome.short_term_collected
        assert outcome.session_continued is False
        assert outcome.session_duration_after_ms == 30_000
        assert outcome.quick_reopen_5min is True
        assert outcome.reopen_count_30min == 1
        assert outcome.switched_to_productive_app is None
        # go back 10, closed 15, short remainder 10, quick reopen -12
        assert outcome.reward == pytest.approx(23.0)

    def test_rerun_is_idempotent(self, store, clock, collector):
        t = clock.now_ms()
        _session(store, "own", t - MINUTE_MS)
        collector.record_proximal(_shown(t), UserChoice.CONTINUE)
        clock.advance(minutes=10)
        assert collector.collect_short_term() == 1
        before = collector.get_outcome("i1")
        assert before.session_continued is True
        assert collector.collect_short_term() == 0
        assert collector.get_outcome("i1") == before

    def test_productive_switch(self, store, clock, rng):
        collector = OutcomeCollector(store, clock, config=OutcomeConfig(productive_apps=["notes"]))
        t = clock.now_ms()
        _session(store, "n1", t + MINUTE_MS, t + 2 * MINUTE_MS, app="notes")
        collector.record_proximal(_shown(t), UserChoice.GO_BACK)
        clock.advance(minutes=6)
        collector.collect_short_term()
        assert collector.get_outcome("i1").switched_to_productive_app is True

    def test_failures_are_isolated(self, store, clock):
        class FlakyCollector(OutcomeCollector):
            def collect_short_term_for(self, outcome):
                if outcome.intervention_id == "bad":
                    raise RuntimeError("boom")
                return super().collect_short_term_for(outcome)

        collector = FlakyCollector(store, clock)
        t = clock.now_ms()
        collector.record_proximal(_shown(t, "bad"), UserChoice.GO_BACK)
        collector.record_proximal(_shown(t + 1, "good"), UserChoice.GO_BACK)
        clock.advance(minutes=10)
        assert collector.collect_short_term() == 1
        assert collector.get_outcome("good").short_term_collected
        assert not collector.get_outcome("bad").short_term_collected

    def test_failing_record_is_given_up(self, store, clock):
        class FlakyCollector(OutcomeCollector):
            def collect_short_term_for(self, outcome):
                if outcome.intervention_id == "bad":
                    raise RuntimeError("boom")
                return super().collect_short_term_for(outcome)

        collector = FlakyCollector(store, clock, config=OutcomeConfig(max_collection_attempts=3))
        t = clock.now_ms()
        collector.record_proximal(_shown(t, "bad"), UserChoice.GO_BACK)
        collector.record_proximal(_shown(t + 1, "good"), UserChoice.GO_BACK)
        clock.advance(minutes=10)

        assert [collector.collect_short_term(limit=1) for _ in range(3)] == [0, 0, 0]
        bad = collector.get_outcome("bad")
        assert bad.short_term_collected
        assert bad.session_continued is None

        assert collector.collect_short_term(limit=1) == 1
        assert collector.get_outcome("good").short_term_collected

    def test_failed_write_learns_nothing(self, clock, rng):
        class ReadOnlyStore(InMemoryStore):
            def append(self, table, record):
                raise StoreError("read-only")

        store = ReadOnlyStore()
        bandit = BetaBandit(store, rng=rng)
        collector = OutcomeCollector(store, clock, bandit=bandit)
        with pytest.raises(StoreError):
            collector.record_proximal(_shown(clock.now_ms()), UserChoice.GO_BACK)
        assert bandit.total_pulls() == 0


class TestLaterHorizons:
    def test_medium_term(self, store, clock, collector):
        t = clock.now_ms()
        day_start = clock.start_of_day_ms()
        for day in range(1, 8):
            start = day_start - day * DAY_MS + 12 * HOUR_MS
            _session(store, f"b{day}", start, start + HOUR_MS)
        _session(store, "own", t - 3 * MINUTE_MS, t + 30_000)
        _session(store, "later", t + HOUR_MS, t + HOUR_MS + 10 * MINUTE_MS)
        collector.record_proximal(_shown(t, goal_minutes=30), UserChoice.GO_BACK)

        clock.advance(minutes=30)
        collector.collect_short_term()
        assert collector.collect_medium_term() == 0

        clock.advance(minutes=60)
        assert collector.collect_medium_term() == 0

        clock.advance(hours=15)
        assert collector.collect_medium_term() == 1
        outcome = collector.get_outcome("i1")
        assert outcome.additional_sessions_today == 1
        assert outcome.total_screen_time_today_min == pytest.approx(13.5)
        assert outcome.usage_reduction_min == pytest.approx(46.5)
        assert outcome.goal_met_today is True

    def test_medium_term_without_baseline_or_goal(self, store, clock, collector):
        collector.record_proximal(_shown(clock.now_ms()), UserChoice.GO_BACK)
        clock.advance(days=1)
        collector.collect_short_term()
        collector.collect_medium_term()
        outcome = collector.get_outcome("i1")
        assert outcome.medium_term_collected
        assert outcome.usage_reduction_min is None
        assert outcome.goal_met_today is None

    def test_partial_day_earns_no_reduction_credit(self, store, clock, collector):
        t = clock.now_ms()
        day_start = clock.start_of_day_ms()
        for day in range(1, 8):
            start = day_start - day * DAY_MS + 12 * HOUR_MS
            _session(store, f"b{day}", start, start + HOUR_MS)
        _session(store, "own", t - 10 * MINUTE_MS, t)
        collector.record_proximal(_shown(t, goal_minutes=30), UserChoice.GO_BACK)

        clock.advance(minutes=61)
        collector.collect_short_term()
        after_short = collector.get_outcome("i1").reward

        # 10 minutes used so far against a 60 minute daily baseline
        assert collector.collect_medium_term() == 0
        outcome = collector.get_outcome("i1")
        assert outcome.usage_reduction_min is None
        assert outcome.goal_met_today is None
        assert outcome.reward == after_short

        evening = day_start + 19 * HOUR_MS
        _session(store, "evening", evening, evening + 70 * MINUTE_MS)
        clock.advance(hours=16)
        assert collector.collect_medium_term() == 1
        outcome = collector.get_outcome("i1")
        assert outcome.total_screen_time_today_min == pytest.approx(80.0)
        assert outcome.usage_reduction_min == pytest.approx(-20.0)
        assert outcome.goal_met_today is False
        assert outcome.reward == after_short

    def test_long_term(self, store, clock, rng):
        collector = OutcomeCollector(
            store, clock, is_app_installed=lambda app: True, streak_days=lambda app: 10
        )
        t = clock.now_ms()
        for day in range(7):
            _session(store, f"prev{day}", t - (7 - day) * DAY_MS, t - (7 - day) * DAY_MS + HOUR_MS)
            _session(store, f"next{day}", t + day * DAY_MS + HOUR_MS, t + day * DAY_MS + HOUR_MS + 20 * MINUTE_MS)
        _session(store, "after", t + 7 * DAY_MS + HOUR_MS, t + 7 * DAY_MS + 2 * HOUR_MS, app="news")
        collector.record_proximal(_shown(t), UserChoice.GO_BACK)

        clock.advance(days=8)
        collector.collect_short_term()
        collector.collect_medium_term()
        assert collector.collect_long_term() == 1
        outcome = collector.get_outcome("i1")
        assert outcome.avg_daily_usage_next_7d == pytest.approx(20.0)
        assert outcome.weekly_usage_change == "DECREASED"
        assert outcome.user_retention is True
        assert outcome.app_uninstalled is False
        assert outcome.streak_maintained is True
        assert outcome.long_term_collected

    def test_long_term_requires_medium(self, store, clock, collector):
        collector.record_proximal(_shown(clock.now_ms()), UserChoice.GO_BACK)
        clock.advance(days=8)
        assert collector.collect_long_term() == 0

    def test_prune(self, store, clock, collector):
        collector.record_proximal(_shown(clock.now_ms() - 100 * DAY_MS), UserChoice.GO_BACK)
        collector.record_proximal(_shown(clock.now_ms(), "fresh"), UserChoice.GO_BACK)
        assert collector.prune(90) == 2
        assert len(store.query(OUTCOMES)) == 1
