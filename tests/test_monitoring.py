"""Tests for KPI helpers and the Bayesian guardrail."""

import pandas as pd
import pytest

from jitai_engine.monitoring import BayesianGuardrail, intervention_kpis, kpis_by


def _results():
    return pd.DataFrame(
        {
            "content_type": ["REFLECTION", "REFLECTION", "BREATHING", "BREATHING"],
            "user_choice": ["GO_BACK", "DISMISS", "GO_BACK", "TIMEOUT"],
            "response_time_ms": [3000, 1000, 5000, 10000],
            "feedback": ["HELPFUL", None, "DISRUPTIVE", None],
        }
    )


class TestKpis:
    def test_intervention_kpis(self):
        kpis = intervention_kpis(_results())
        assert kpis["exposures"] == 4.0
        assert kpis["go_back_rate"] == 0.5
        assert kpis["dismiss_rate"] == 0.25
        assert kpis["timeout_rate"] == 0.25
        assert kpis["avg_response_time_ms"] == 4750.0
        assert kpis["helpful_rate"] == 0.5

    def test_empty_frame(self):
        assert intervention_kpis(pd.DataFrame())["go_back_rate"] == 0.0

    def test_kpis_by_content(self):
        table = kpis_by(_results(), "content_type").set_index("content_type")
        assert table.loc["REFLECTION", "go_back_rate"] == 0.5
        assert table.loc["BREATHING", "exposures"] == 2

    def test_kpis_by_missing_column(self):
        assert kpis_by(_results(), "variant").empty


class TestGuardrail:
    def test_failures_push_probability_up(self):
        guardrail = BayesianGuardrail()
        assert guardrail.posterior_probability(0, 10, 0.5) == pytest.approx(1 - 0.5 ** 11)
        assert guardrail.posterior_probability(10, 10, 0.5) < 0.01
