"""Balance reconciliation policy.

The modern API reports two balances (money and meter credit). One of them is
occasionally a stale value an order of magnitude too large. This is a
best-effort correction, not a guaranteed-correct value, and it assumes real
balances sit below SUSPECT_BALANCE_THRESHOLD.
"""

from typing import Callable, Optional

from .config import SUSPECT_BALANCE_THRESHOLD

BalancePolicy = Callable[[Optional[float], Optional[float]], Optional[float]]


def effective_balance(
    money: Optional[float],
    meter: Optional[float],
    threshold: float = SUSPECT_BALANCE_THRESHOLD,
) -> Optional[float]:
    """Pick one balance to show.

    - only one present: that one (None stays None, never 0)
    - both at or above threshold: the smaller
    - exactly one at or above threshold: the other
    - otherwise: money
    """
    if money is None:
        return meter
    if meter is None or money == meter:
        return money

    money_high = money >= threshold
    meter_high = meter >= threshold
    if money_high and meter_high:
        return min(money, meter)
    if money_high:
        return meter
    if meter_high:
        return money
    return money
