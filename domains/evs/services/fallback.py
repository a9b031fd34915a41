"""EVS client with legacy fallback.

Tries the modern API first and falls back to the legacy portal only for a
narrow set of failures (see ``classify_failure``). The backend that worked is
remembered per username until logout.

Per-username state machine:
    unknown -> modern | legacy    (sticky; logout resets to unknown)
"""

from typing import Awaitable, Callable, Optional, TypeVar

from logger import logger
from ..errors import (
    AuthError,
    BackendsExhaustedError,
    EvsError,
    FailureClass,
    UnsupportedInLegacyMode,
    classify_failure,
)
from ..policy import BalancePolicy, effective_balance
from ..types import (
    Balances,
    BalanceResult,
    BalancesResult,
    ClientMode,
    CreditResult,
    LegacyBalanceResult,
    LoginResult,
    MeterInfo,
    MoneyResult,
    MonthToDateUsage,
    RankResult,
    UsageResult,
)
from ..config import LEGACY_ENDPOINT_LABEL
from .legacy_client import LegacyEvsClient
from .modern_client import ModernEvsClient

T = TypeVar("T")


def legacy_to_balances(result: LegacyBalanceResult) -> Balances:
    """Present a scraped legacy balance in the modern two-balance shape."""
    return Balances(
        meter_credit=CreditResult(
            meter_credit_balance=result.balance,
            endpoint_used=LEGACY_ENDPOINT_LABEL,
            last_updated=result.last_updated,
        ),
        money=MoneyResult(money_balance=None, endpoint_used=LEGACY_ENDPOINT_LABEL),
    )


class FallbackEvsClient:
    """One interface over the modern and legacy EVS backends."""

    def __init__(
        self,
        modern: Optional[ModernEvsClient] = None,
        legacy: Optional[LegacyEvsClient] = None,
        balance_policy: BalancePolicy = effective_balance,
        meter_displayname_override: Optional[str] = None,
        debug: bool = False,
    ):
        self.modern = modern or ModernEvsClient(meter_displayname_override, debug=debug)
        self.legacy = legacy or LegacyEvsClient(debug=debug)
        self.balance_policy = balance_policy
        self._modes: dict[str, ClientMode] = {}

    # ------------------------------------------------------------------
    # Backend affinity
    # ------------------------------------------------------------------

    def mode_for(self, username: str) -> Optional[ClientMode]:
        """Backend that last served this username, if known."""
        return self._modes.get(username)

    def _set_mode(self, username: str, mode: ClientMode) -> None:
        previous = self._modes.get(username)
        self._modes[username] = mode
        if previous != mode:
            before = previous.value if previous else "unknown"
            logger.info(f"[evs] backend for {username}: {before} -> {mode.value}")

    async def logout(self, username: Optional[str] = None) -> None:
        """Drop both sessions and forget the username's backend."""
        self.modern.logout()
        await self.legacy.logout()
        if username:
            self._modes.pop(username, None)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> LoginResult:
        async def via_modern() -> LoginResult:
            await self.modern.login(username, password)
            return LoginResult(mode=ClientMode.MODERN, username=username)

        async def via_legacy() -> LoginResult:
            await self.legacy.login(username, password)
            return LoginResult(mode=ClientMode.LEGACY, username=username)

        return await self._with_fallback(username, "Login", via_modern, via_legacy)

    async def get_balances(self, username: str, password: str) -> BalancesResult:
        async def via_modern() -> BalancesResult:
            balances = await self.modern.get_balances(username, password)
            return BalancesResult(mode=ClientMode.MODERN, balances=balances)

        async def via_legacy() -> BalancesResult:
            result = await self.legacy.get_balance(username, password)
            return BalancesResult(mode=ClientMode.LEGACY, balances=legacy_to_balances(result))

        return await self._with_fallback(username, "Balance fetch", via_modern, via_legacy)

    async def get_balance(self, username: str, password: str) -> BalanceResult:
        """Single reconciled balance (see ``policy.effective_balance``)."""
        result = await self.get_balances(username, password)
        balances = result.balances
        balance = self.balance_policy(balances.money.money_balance, balances.meter_credit.meter_credit_balance)
        return BalanceResult(mode=result.mode, balance=balance, last_updated=balances.last_updated)

    async def get_daily_usage(self, username: str, password: str, days: int) -> UsageResult:
        async def call() -> UsageResult:
            usage = await self.modern.get_daily_usage(username, password, days)
            return UsageResult(mode=ClientMode.MODERN, daily=usage.daily, avg_per_day=usage.avg_per_day)

        return await self._modern_only(username, password, "Daily usage", call)

    async def get_usage_rank(self, username: str, password: str) -> RankResult:
        async def call() -> RankResult:
            rank = await self.modern.get_usage_rank(username, password)
            return RankResult(mode=ClientMode.MODERN, rank=rank)

        return await self._modern_only(username, password, "Usage rank", call)

    async def get_meter_info(self, username: str, password: str) -> MeterInfo:
        return await self._modern_only(
            username, password, "Meter info",
            lambda: self.modern.get_meter_info(username, password),
        )

    async def get_month_to_date_usage(self, username: str, password: str) -> MonthToDateUsage:
        return await self._modern_only(
            username, password, "Month-to-date usage",
            lambda: self.modern.get_month_to_date_usage(username, password),
        )

    # ------------------------------------------------------------------
    # Fallback plumbing
    # ------------------------------------------------------------------

    async def _with_fallback(
        self,
        username: str,
        what: str,
        via_modern: Callable[[], Awaitable[T]],
        via_legacy: Callable[[], Awaitable[T]],
    ) -> T:
        if self.mode_for(username) is ClientMode.LEGACY:
            return await via_legacy()

        try:
            result = await via_modern()
        except EvsError as modern_error:
            if classify_failure(modern_error) is not FailureClass.RETRYABLE_AS_LEGACY:
                raise
            logger.info(f"[evs] modern backend refused {username} ({modern_error}), trying legacy")
            try:
                result = await via_legacy()
            except EvsError as legacy_error:
                logger.warning(f"[evs] legacy backend also failed for {username}: {legacy_error}")
                raise BackendsExhaustedError(what, modern_error, legacy_error) from legacy_error
            self._set_mode(username, ClientMode.LEGACY)
            return result

        self._set_mode(username, ClientMode.MODERN)
        return result

    async def _modern_only(
        self,
        username: str,
        password: str,
        what: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run an operation the legacy portal can't serve.

        A login-time rejection that is fallback-eligible pins the account to
        legacy (after confirming legacy login works) and reports the operation
        as unavailable. A 403 on the data call itself is a permission ceiling
        of the account and propagates as NotAuthorized.
        """
        if self.mode_for(username) is ClientMode.LEGACY:
            raise UnsupportedInLegacyMode(f"{what} not available (legacy mode - only balance supported)")

        try:
            result = await call()
        except AuthError as modern_error:
            if classify_failure(modern_error) is not FailureClass.RETRYABLE_AS_LEGACY:
                raise
            try:
                await self.legacy.login(username, password)
            except EvsError as legacy_error:
                raise BackendsExhaustedError("Login", modern_error, legacy_error) from legacy_error
            self._set_mode(username, ClientMode.LEGACY)
            raise UnsupportedInLegacyMode(
                f"{what} not available (account only supports the legacy portal)"
            ) from modern_error

        self._set_mode(username, ClientMode.MODERN)
        return result
