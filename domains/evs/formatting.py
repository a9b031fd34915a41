"""Reply text helpers shared by chat commands and the daily job."""

import math
from typing import Optional

from .types import DailyUsage, UsageRank

WARNING = "⚠️"


def format_money(amount: Optional[float]) -> str:
    if amount is None:
        return "n/a"
    return f"${amount:.2f}"


def days_left(balance: Optional[float], avg_per_day: float) -> Optional[float]:
    """Days until the balance runs out at the current average, or None."""
    if balance is None or not avg_per_day > 0:
        return None
    left = balance / avg_per_day
    return left if math.isfinite(left) else None


def prediction_line(balance: Optional[float], avg_per_day: float) -> str:
    if not avg_per_day > 0:
        return "no usage data yet"
    left = days_left(balance, avg_per_day)
    if left is None:
        return "can't estimate run-out"
    if left < 1:
        return f"{WARNING} running out soon (~{max(0.0, left):.1f} days left)"
    if left < 2:
        return f"heads up: ~{left:.1f} days left"
    return f"~{left:.1f} days left"


def rank_line(rank: UsageRank) -> str:
    """e.g. 'you use more than 75% of neighbors'"""
    comparison = "more than" if rank.uses_more else "less than"
    return f"you use {comparison} {rank.percentile:.0f}% of neighbors"


def daily_lines(daily: list[DailyUsage], limit: int) -> list[str]:
    """Most recent ``limit`` days, oldest first."""
    shown = daily[-limit:] if limit > 0 else []
    return [f"{d.date}: {format_money(d.usage)}" for d in shown]
