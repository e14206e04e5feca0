"""
Decision logging and aggregate analytics over decision explanations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from .clock import DAY_MS, Clock
from .errors import StoreError
from .explanation import BlockingReason, DecisionExplanation, DecisionOutcome
from .store import DECISION_EXPLANATIONS, Store

logger = logging.getLogger(__name__)

DECISION_COLUMNS = [
    "timestamp",
    "target_app",
    "decision",
    "blocking_reason",
    "opportunity_score",
    "opportunity_level",
    "persona",
    "burden_level",
    "burden_mitigation_applied",
    "content_type",
    "variant",
]


@dataclass
class DecisionSummary:
    days_back: int
    total_decisions: int = 0
    shown: int = 0
    skipped: int = 0
    show_rate: float = 0.0
    skip_rate: float = 0.0
    burden_mitigation_rate: float = 0.0
    avg_opportunity_score: float = 0.0
    top_blocking_reason: Optional[str] = None
    skip_reasons: Dict[str, int] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [
            f"Decision summary (last {self.days_back} days)",
            f"  Total decisions: {self.total_decisions}",
            f"  Shown: {self.shown} ({self.show_rate:.0%})",
            f"  Skipped: {self.skipped} ({self.skip_rate:.0%})",
            f"  Burden mitigation: {self.burden_mitigation_rate:.0%} of decisions",
            f"  Avg opportunity score: {self.avg_opportunity_score:.1f}",
        ]
        if self.top_blocking_reason:
            lines.append(f"  Top blocking reason: {self.top_blocking_reason}")
        return "\n".join(lines)


class DecisionLogger:
    """
    Persists one `DecisionExplanation` per evaluation.

    Writes never raise: a failed write is logged and dropped so the
    user-facing decision is not affected.
    """

    def __init__(self, store: Store, clock: Clock) -> None:
        self.store = store
        self.clock = clock

    def log_decision(self, explanation: DecisionExplanation) -> Optional[int]:
        if not explanation.explanation:
            explanation.finalize()
        try:
            record_id = self.store.append(DECISION_EXPLANATIONS, explanation.to_dict())
        except StoreError as exc:
            logger.warning(f"Failed to log decision for {explanation.target_app}: {exc}")
            return None
        explanation.id = record_id
        logger.debug(explanation.explanation)
        return record_id

    def _query(self, days_back: Optional[int] = None, **kwargs: Any) -> List[Dict[str, Any]]:
        start = self.clock.now_ms() - days_back * DAY_MS if days_back is not None else None
        try:
            return self.store.query(DECISION_EXPLANATIONS, start_ms=start, **kwargs)
        except StoreError as exc:
            logger.warning(f"Decision log unavailable: {exc}")
            return []

    def get_recent_decisions(self, limit: int = 20) -> List[DecisionExplanation]:
        rows = self._query(newest_first=True, limit=limit)
        return [DecisionExplanation.from_dict(row) for row in rows]

    def find_by_intervention_id(self, intervention_id: str) -> Optional[DecisionExplanation]:
        rows = self._query(where={"intervention_id": intervention_id}, newest_first=True, limit=1)
        return DecisionExplanation.from_dict(rows[0]) if rows else None

    def to_dataframe(self, days_back: int = 7) -> pd.DataFrame:
        """
        Decisions of the last ``days_back`` days as a DataFrame.
        """
        rows = self._query(days_back)
        if not rows:
            return pd.DataFrame(columns=DECISION_COLUMNS)
        df = pd.DataFrame(rows)
        for column in DECISION_COLUMNS:
            if column not in df:
                df[column] = None
        return df[DECISION_COLUMNS]

    def get_skip_statistics(self, days_back: int = 7) -> Dict[str, int]:
        df = self.to_dataframe(days_back)
        skips = df[df["decision"] == DecisionOutcome.SKIP.value]
        if skips.empty:
            return {}
        counts = skips["blocking_reason"].fillna(BlockingReason.OTHER.value).value_counts()
        return {str(reason): int(count) for reason, count in counts.items()}

    def get_decisions_by_opportunity_level(self, days_back: int = 7) -> Dict[str, Dict[str, int]]:
        df = self.to_dataframe(days_back)
        if df.empty:
            return {}
        table = pd.crosstab(df["opportunity_level"].fillna("UNKNOWN"), df["decision"])
        return {
            str(level): {str(decision): int(count) for decision, count in row.items()}
            for level, row in table.iterrows()
        }

    def is_burden_mitigation_active(self, days_back: int = 1) -> bool:
        df = self.to_dataframe(days_back)
        if df.empty:
            return False
        burden_skips = (df["blocking_reason"] == BlockingReason.BURDEN_MITIGATION.value).sum()
        return burden_skips / len(df) > 0.20

    def get_decision_summary(self, days_back: int = 7) -> DecisionSummary:
        df = self.to_dataframe(days_back)
        summary = DecisionSummary(days_back=days_back)
        if df.empty:
            return summary

        total = len(df)
        shown = int((df["decision"] == DecisionOutcome.SHOW.value).sum())
        skip_reasons = self.get_skip_statistics(days_back)
        scores = pd.to_numeric(df["opportunity_score"], errors="coerce").dropna()

        summary.total_decisions = total
        summary.shown = shown
        summary.skipped = total - shown
        summary.show_rate = shown / total
        summary.skip_rate = (total - shown) / total
        summary.burden_mitigation_rate = skip_reasons.get(BlockingReason.BURDEN_MITIGATION.value, 0) / total
        summary.avg_opportunity_score = float(scores.mean()) if len(scores) else 0.0
        summary.skip_reasons = skip_reasons
        if skip_reasons:
            summary.top_blocking_reason = max(skip_reasons, key=skip_reasons.get)
        return summary

    def prune(self, retention_days: int) -> int:
        cutoff = self.clock.now_ms() - retention_days * DAY_MS
        try:
            return self.store.delete_before(DECISION_EXPLANATIONS, cutoff)
        except StoreError as exc:
            logger.warning(f"Failed to prune decision log: {exc}")
            return 0
