"""Normalized EVS data types.

Raw backend JSON is validated at the adapter boundary and converted into
these records; nothing above the adapters handles untyped responses.

A balance of ``None`` means the backend explicitly reported "no data". It is
not the same as ``0.0`` and must never be collapsed into it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ClientMode(Enum):
    """Which backend serves an account."""
    MODERN = "modern"
    LEGACY = "legacy"


@dataclass(frozen=True)
class SessionState:
    """Authenticated session on the modern API."""
    token: str
    user_id: int
    username: str


@dataclass(frozen=True)
class LegacySession:
    """Cookie session on the legacy portal."""
    username: str
    cookies: tuple[str, ...] = ()

    @property
    def cookie_header(self) -> str:
        return "; ".join(self.cookies)


@dataclass
class CreditResult:
    """Meter credit balance (get_credit_bal)."""
    meter_credit_balance: Optional[float]
    endpoint_used: str
    last_updated: Optional[str] = None


@dataclass
class MoneyResult:
    """Money balance (tcm/get_credit_balance)."""
    money_balance: Optional[float]
    endpoint_used: str
    last_updated: Optional[str] = None


@dataclass
class Balances:
    """Both balance readings for one meter."""
    meter_credit: CreditResult
    money: MoneyResult

    @property
    def last_updated(self) -> Optional[str]:
        return self.money.last_updated or self.meter_credit.last_updated


@dataclass
class DailyUsage:
    """Amount spent on one ISO date."""
    date: str
    usage: float


@dataclass
class DailyUsageResult:
    """Daily spend over a look-back window.

    ``daily`` holds only the dates the backend reported, oldest first.
    ``avg_per_day`` divides by that count, not by the window length.
    """
    daily: list[DailyUsage]
    avg_per_day: float
    endpoint_used: str

    @property
    def total(self) -> float:
        return sum(d.usage for d in self.daily)


@dataclass
class MonthToDateUsage:
    usage: float
    endpoint_used: str


@dataclass
class UsageRank:
    """Usage compared with the rest of the building.

    ``rank_val`` is 0..1. Below 0.5 the user consumes MORE than
    ``1 - rank_val`` of neighbours; from 0.5 up they consume LESS than
    ``rank_val`` of neighbours.
    """
    rank_val: float
    usage_last_7_days: float
    endpoint_used: str
    usage_unit: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def uses_more(self) -> bool:
        return self.rank_val < 0.5

    @property
    def percentile(self) -> float:
        """Share of neighbours (in percent) the comparison refers to."""
        return 100 * (1 - self.rank_val) if self.uses_more else 100 * self.rank_val


@dataclass
class MeterInfo:
    """Meter metadata as returned by get_meter_info."""
    fields: dict[str, Any]
    endpoint_used: str

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclass
class LegacyBalanceResult:
    """Balance scraped from the legacy portal."""
    meter_id: str
    balance: float
    last_updated: Optional[str] = None
    package_id: Optional[str] = None


# --- Orchestrator results (tagged with the backend that served them) ---

@dataclass
class LoginResult:
    mode: ClientMode
    username: str


@dataclass
class BalanceResult:
    """Single effective balance after reconciliation."""
    mode: ClientMode
    balance: Optional[float]
    last_updated: Optional[str] = None


@dataclass
class BalancesResult:
    mode: ClientMode
    balances: Balances


@dataclass
class UsageResult:
    mode: ClientMode
    daily: list[DailyUsage] = field(default_factory=list)
    avg_per_day: float = 0.0


@dataclass
class RankResult:
    mode: ClientMode
    rank: UsageRank


@dataclass
class SpendSummary:
    """Stored spend over the last N calendar days."""
    total: float
    days_tracked: int
    days_requested: int

    @property
    def average(self) -> Optional[float]:
        if self.days_tracked == 0:
            return None
        return self.total / self.days_tracked
