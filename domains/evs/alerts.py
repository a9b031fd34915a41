"""Low-balance alert evaluation for the daily refresh job.

At most one alert per user per run: the most severe matching level wins.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import CRITICAL_BALANCE, DAYS_LEFT_FLOOR, LOW_BALANCE, PORTAL_URL
from .formatting import WARNING, days_left, format_money, prediction_line


class AlertLevel(Enum):
    CRITICAL = "critical"
    LOW = "low"
    RUNNING_OUT = "running_out"


@dataclass
class Alert:
    level: AlertLevel
    balance: float
    avg_per_day: float
    days_left: Optional[float] = None

    def message(self) -> str:
        if self.level is AlertLevel.CRITICAL:
            headline = f"{WARNING} balance critical: {format_money(self.balance)}"
        elif self.level is AlertLevel.LOW:
            headline = f"{WARNING} balance low: {format_money(self.balance)}"
        else:
            headline = prediction_line(self.balance, self.avg_per_day)

        lines = [headline]
        if self.avg_per_day > 0:
            lines.append(f"avg/day: {format_money(self.avg_per_day)}")
            if self.level is not AlertLevel.RUNNING_OUT:
                lines.append(prediction_line(self.balance, self.avg_per_day))
        lines.append(f"top up: {PORTAL_URL}")
        return "\n".join(lines)


def evaluate_alert(
    balance: Optional[float],
    avg_per_day: float,
    critical: float = CRITICAL_BALANCE,
    low: float = LOW_BALANCE,
    days_floor: float = DAYS_LEFT_FLOOR,
) -> Optional[Alert]:
    """Return the alert to send, or None.

    A balance of None ("no data") never alerts.
    """
    if balance is None:
        return None

    left = days_left(balance, avg_per_day)
    if balance < critical:
        return Alert(AlertLevel.CRITICAL, balance, avg_per_day, left)
    if balance < low:
        return Alert(AlertLevel.LOW, balance, avg_per_day, left)
    if left is not None and left < days_floor:
        return Alert(AlertLevel.RUNNING_OUT, balance, avg_per_day, left)
    return None
