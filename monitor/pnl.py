"""
Reporting aggregates over ledger records. The ledger itself stays append-only
and does no aggregation; everything here is derived on read.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from scanner.models import PerformanceRecord

logger = logging.getLogger(__name__)


@dataclass
class PnLSummary:
    """Totals, win rate and cumulative PnL for a set of settled records."""

    total_pnl: float = 0.0
    total_fees: float = 0.0
    total_entry_cost: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    # (window_close_time, running total) in window order
    cumulative: list[tuple[float, float]] = field(default_factory=list)
    by_set: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: list[PerformanceRecord]) -> PnLSummary:
        summary = cls()
        per_window: dict[float, float] = defaultdict(float)
        by_set: dict[str, float] = defaultdict(float)
        for r in records:
            if not r.outcome_settled:
                continue
            summary.total_trades += 1
            summary.total_pnl += r.realized_pnl
            summary.total_fees += r.fees_paid
            summary.total_entry_cost += r.entry_cost
            if r.realized_pnl > 0:
                summary.winning_trades += 1
            elif r.realized_pnl < 0:
                summary.losing_trades += 1
            per_window[r.window_close_time] += r.realized_pnl
            if r.linked_set_id:
                by_set[r.linked_set_id] += r.realized_pnl

        running = 0.0
        for close in sorted(per_window):
            running += per_window[close]
            summary.cumulative.append((close, running))
        summary.by_set = dict(by_set)
        return summary

    @property
    def win_rate(self) -> float:
        """Percent of settled trades with positive PnL."""
        if self.total_trades == 0:
            return 0.0
        return self.winning_trades / self.total_trades * 100.0

    @property
    def avg_pnl(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.total_pnl / self.total_trades

    @property
    def roi_pct(self) -> float:
        if self.total_entry_cost <= 0:
            return 0.0
        return self.total_pnl / self.total_entry_cost * 100.0

    def to_dict(self) -> dict:
        return {
            "total_pnl": round(self.total_pnl, 4),
            "total_fees": round(self.total_fees, 4),
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate_pct": round(self.win_rate, 1),
            "avg_pnl": round(self.avg_pnl, 4),
            "roi_pct": round(self.roi_pct, 2),
            "cumulative": [[close, round(total, 4)] for close, total in self.cumulative],
            "by_set": {k: round(v, 4) for k, v in self.by_set.items()},
        }
