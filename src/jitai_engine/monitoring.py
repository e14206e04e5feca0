"""
Monitoring utilities for intervention performance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import numpy as np
import pandas as pd


def intervention_kpis(results: pd.DataFrame) -> Dict[str, float]:
    """
    Compute basic KPIs from intervention result rows.
    """

    exposures = len(results)
    if exposures == 0:
        return {
            "exposures": 0.0,
            "go_back_rate": 0.0,
            "dismiss_rate": 0.0,
            "timeout_rate": 0.0,
            "avg_response_time_ms": 0.0,
            "helpful_rate": 0.0,
        }

    choices = results["user_choice"]
    avg_response = results["response_time_ms"].mean()
    feedback = results["feedback"] if "feedback" in results else pd.Series(dtype=object)
    rated = feedback[feedback.isin(["HELPFUL", "DISRUPTIVE"])]
    helpful_rate = (rated == "HELPFUL").mean() if len(rated) else np.nan

    return {
        "exposures": float(exposures),
        "go_back_rate": float((choices == "GO_BACK").mean()),
        "dismiss_rate": float((choices == "DISMISS").mean()),
        "timeout_rate": float((choices == "TIMEOUT").mean()),
        "avg_response_time_ms": float(avg_response if not np.isnan(avg_response) else 0.0),
        "helpful_rate": float(helpful_rate if not np.isnan(helpful_rate) else 0.0),
    }


def kpis_by(results: pd.DataFrame, column: str) -> pd.DataFrame:
    """
    KPIs per value of ``column`` (content type, variant, hour, ...).
    """
    if results.empty or column not in results:
        return pd.DataFrame(columns=[column, "exposures", "go_back_rate", "dismiss_rate"])
    grouped = results.groupby(column)["user_choice"]
    return pd.DataFrame(
        {
            "exposures": grouped.size(),
            "go_back_rate": grouped.apply(lambda s: float((s == "GO_BACK").mean())),
            "dismiss_rate": grouped.apply(lambda s: float((s == "DISMISS").mean())),
        }
    ).reset_index()


@dataclass
class BayesianGuardrail:
    """
    Monitors a success rate vs baseline using Beta posterior.
    """

    alpha_prior: float = 1.0
    beta_prior: float = 1.0

    def posterior_probability(
        self, successes: int, trials: int, baseline_rate: float
    ) -> float:
        """
        Probability that the true rate is below ``baseline_rate``.
        """
        import scipy.stats

        alpha_post = self.alpha_prior + successes
        beta_post = self.beta_prior + trials - successes
        posterior = scipy.stats.beta(alpha_post, beta_post)
        prob = posterior.cdf(baseline_rate)
        return float(prob)
