"""
Rolling markdown status file. Overwrites status.md each tick with:
  - Current state: mode, uptime, window, bankroll, session totals
  - Open positions and halted linked sets
  - Most recent alerts (exposure inconsistencies, reconcile problems)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from executor.bankroll import BankrollSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    timestamp: float
    subject: str
    message: str


@dataclass
class StatusWriter:
    """Writes status.md. add_alert() doubles as the engine's on_alert callback."""

    file_path: str = "status.md"
    max_alerts: int = 20

    _session_start: float = field(default_factory=time.time)
    _alerts: list[Alert] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add_alert(self, subject: str, message: str) -> None:
        with self._lock:
            self._alerts.append(Alert(time.time(), subject, message))
            if len(self._alerts) > self.max_alerts:
                self._alerts = self._alerts[-self.max_alerts:]

    def alerts(self) -> list[Alert]:
        with self._lock:
            return list(self._alerts)

    def write(
        self,
        *,
        tick: int,
        mode: str,
        window_close_time: float | None,
        bankroll: BankrollSnapshot,
        positions: list[dict],
        halted: dict[str, str],
        opportunities_found: int,
        records_written: int,
        total_pnl: float,
    ) -> None:
        lines = self._render(
            tick=tick, mode=mode, window_close_time=window_close_time, bankroll=bankroll,
            positions=positions, halted=halted, opportunities_found=opportunities_found,
            records_written=records_written, total_pnl=total_pnl,
        )
        with open(self.file_path, "w") as f:
            f.write("\n".join(lines) + "\n")

    def _render(
        self,
        *,
        tick: int,
        mode: str,
        window_close_time: float | None,
        bankroll: BankrollSnapshot,
        positions: list[dict],
        halted: dict[str, str],
        opportunities_found: int,
        records_written: int,
        total_pnl: float,
    ) -> list[str]:
        now = time.time()
        lines: list[str] = [
            "# Up/Down Arbitrage -- Status",
            "",
            f"*Updated {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(now))}*",
            "",
            "## Current State",
            "",
        ]
        if window_close_time is not None:
            window = f"closes {time.strftime('%H:%M:%S', time.localtime(window_close_time))} ({window_close_time - now:.0f}s)"
        else:
            window = "--"
        lines.extend(_padded_table(["Field", "Value"], [
            ["Mode", mode],
            ["Uptime", _format_duration(now - self._session_start)],
            ["Tick", str(tick)],
            ["Window", window],
            ["Cash", f"${bankroll.cash:.2f}"],
            ["Reserved", f"${bankroll.reserved:.2f}"],
            ["Open exposure", f"${bankroll.open_exposure:.2f}"],
            ["Available", f"${bankroll.available:.2f}"],
            ["Opportunities (session)", str(opportunities_found)],
            ["Settled records (session)", str(records_written)],
            ["Realized P&L (session)", f"${total_pnl:.2f}"],
        ]))
        lines.append("")

        lines.append("## Open Positions")
        lines.append("")
        if positions:
            rows = []
            for p in positions:
                orders = p.get("orders", [])
                live = sum(1 for o in orders if o.get("state") in ("pending", "open", "partially_filled"))
                rows.append([
                    _truncate(p["opportunity_id"], 48),
                    p["direction"],
                    f"${p['entry_cost']:.2f}",
                    f"${p['fees_paid']:.2f}",
                    str(live),
                    "yes" if p.get("halted") else "",
                ])
            lines.extend(_padded_table(["Opportunity", "Dir", "Cost", "Fees", "Live", "Halted"], rows))
        else:
            lines.append("*No open positions.*")
        lines.append("")

        lines.append("## Halted Sets")
        lines.append("")
        if halted:
            lines.extend(_padded_table(
                ["Set", "Reason"], [[k, _truncate(v, 80)] for k, v in sorted(halted.items())],
            ))
        else:
            lines.append("*None.*")
        lines.append("")

        lines.append("## Recent Alerts")
        lines.append("")
        alerts = self.alerts()
        if alerts:
            lines.extend(_padded_table(["Time", "Subject", "Message"], [
                [time.strftime("%H:%M:%S", time.localtime(a.timestamp)), a.subject, _truncate(a.message, 80)]
                for a in reversed(alerts)
            ]))
        else:
            lines.append("*No alerts.*")
        lines.append("")
        return lines


def _padded_table(headers: list[str], rows: list[list[str]]) -> list[str]:
    """Markdown table with evenly padded columns."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _fmt(cells: list[str]) -> str:
        return "|" + "|".join(f" {c:<{widths[i]}} " for i, c in enumerate(cells)) + "|"

    lines = [_fmt(headers), "|" + "|".join("-" * (w + 2) for w in widths) + "|"]
    lines.extend(_fmt(row) for row in rows)
    return lines


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds) // 60
    if minutes < 60:
        return f"{minutes}m {seconds - minutes * 60:.0f}s"
    return f"{minutes // 60}h {minutes % 60}m"


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
