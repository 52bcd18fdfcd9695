"""
flip_stats.py -- Session profit summary over completed flips.

Pure computation, no side effects.  Feeds the status summary printed by
the assistant and the webhook embeds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Iterable

import numpy as np

from flip_ledger import Flip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlipSummary:
    completed: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_profit: int = 0
    mean_profit: float = 0.0
    median_profit: float = 0.0
    best_profit: int = 0
    worst_profit: int = 0
    total_spent: int = 0
    total_tax: int = 0
    roi_pct: float = 0.0
    mean_hold_sec: float = 0.0
    gp_per_hour: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _hold_seconds(flip: Flip) -> float | None:
    start = flip.bought_at if flip.bought_at is not None else flip.created_at
    if flip.sold_at is None or start is None:
        return None
    return max(0.0, float(flip.sold_at) - float(start))


def summarize(flips: Iterable[Flip]) -> FlipSummary:
    """
    Summarize completed flips.  Anything not COMPLETED is ignored.

    gp_per_hour is total profit over the wall-clock span from the first
    buy to the last sale, so overlapping flips are not double counted.
    """
    done = [f for f in flips if f.status == "completed" and f.realized_profit is not None]
    if not done:
        return FlipSummary()

    profits = np.asarray([f.realized_profit for f in done], dtype=float)
    spent = int(sum(f.gross_spent for f in done))
    total = int(profits.sum())

    holds = [h for h in (_hold_seconds(f) for f in done) if h is not None]
    mean_hold = float(np.mean(holds)) if holds else 0.0

    starts = [f.bought_at if f.bought_at is not None else f.created_at for f in done]
    ends = [f.sold_at for f in done if f.sold_at is not None]
    span = (max(ends) - min(starts)) if ends else 0.0
    gp_hour = total / (span / 3600.0) if span > 0 else 0.0

    wins = int(np.count_nonzero(profits > 0))
    losses = int(np.count_nonzero(profits < 0))

    return FlipSummary(
        completed=len(done),
        wins=wins,
        losses=losses,
        win_rate=wins / len(done),
        total_profit=total,
        mean_profit=float(np.mean(profits)),
        median_profit=float(np.median(profits)),
        best_profit=int(profits.max()),
        worst_profit=int(profits.min()),
        total_spent=spent,
        total_tax=int(sum(f.tax_paid for f in done)),
        roi_pct=(total / spent * 100.0) if spent > 0 else 0.0,
        mean_hold_sec=mean_hold,
        gp_per_hour=float(gp_hour),
    )


def per_item_profit(flips: Iterable[Flip]) -> dict[int, int]:
    """Realized profit by item id, best first."""
    totals: dict[int, int] = {}
    for f in flips:
        if f.status != "completed" or f.realized_profit is None:
            continue
        totals[f.item_id] = totals.get(f.item_id, 0) + int(f.realized_profit)
    return dict(sorted(totals.items(), key=lambda kv: kv[1], reverse=True))


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_gp(amount: int) -> str:
    """1500000 -> "1.5M", 500000 -> "500.0K", 100 -> "100"."""
    amount = int(amount)
    if amount >= 1_000_000:
        return f"{amount / 1_000_000:.1f}M"
    if amount >= 1_000:
        return f"{amount / 1_000:.1f}K"
    return str(amount)


def format_gp_signed(amount: int) -> str:
    amount = int(amount)
    if amount < 0:
        return "-" + format_gp(-amount)
    return format_gp(amount)


def format_roi(roi_pct: float) -> str:
    return f"{roi_pct:.1f}%"


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
