"""Chat command handlers for the EVS balance bot.

Provides:
- /login <user> <pass> - store portal credentials (DM only)
- /logout - forget credentials
- /balance - effective balance
- /usage [days] - daily spend with run-out estimate
- /avg [days] - average spend per day
- /predict - days until the balance runs out
- /rank - usage compared with neighbours
- /meter - meter details and month-to-date usage
- /topup - portal link
- /remind - toggle low-balance reminders

Handlers return the reply text; the Discord wiring lives in bot.py.
"""

import asyncio
from typing import Optional, Sequence

from logger import logger
from utils.log_sanitizer import mask_secret
from .config import (
    AVERAGE_WINDOW_DAYS,
    DEFAULT_USAGE_DAYS,
    MAX_LISTED_DAYS,
    MAX_USAGE_DAYS,
    PORTAL_URL,
)
from .errors import EvsError, StorageError, UnsupportedInLegacyMode
from .formatting import daily_lines, format_money, prediction_line, rank_line
from .services import EvsClientPool
from .storage import EncryptedStorage, UserCreds, UserReminder
from .types import ClientMode

NOT_AUTHORIZED = "not authorized"
NOT_LOGGED_IN = "not logged in. dm me /login <user> <pass>"

START_TEXT = "\n".join([
    "hey! i check your aircon credit.",
    "",
    "/login <user> <pass> - log in (dm only)",
    "/balance - check balance",
    "/usage [days] - daily usage (default: 7d)",
    "/avg [days] - avg usage per day (default: 7d)",
    "/predict - will you run out soon?",
    "/rank - how you compare to neighbors",
    "/meter - meter details",
    "/topup - top up link",
    "/remind - toggle low-balance reminders",
    "/logout - forget credentials",
    "/help - show commands",
])

HELP_TEXT = "\n".join([
    "dm me /login <user> <pass> to get started.",
    "then use /balance to check balance.",
    "/usage shows daily usage.",
    "/predict estimates when you'll run out.",
    "/rank compares you to neighbors.",
    "/meter shows meter details.",
    "/topup for the portal link.",
    "/remind turns the daily low-balance reminder on or off.",
    "/logout clears your login.",
])


def clamp_days(days: Optional[int], default: int = DEFAULT_USAGE_DAYS, maximum: int = MAX_USAGE_DAYS) -> int:
    if days is None:
        return default
    return min(maximum, max(1, int(days)))


class EvsCommands:
    """Command handlers bound to a client pool and the encrypted store."""

    def __init__(
        self,
        pool: EvsClientPool,
        storage: EncryptedStorage,
        allowed_user_ids: Sequence[int] = (),
    ):
        self.pool = pool
        self.storage = storage
        self.allowed_user_ids = set(allowed_user_ids)

    def is_allowed(self, user_id: int) -> bool:
        """Empty allow-list means anyone may use the bot."""
        return not self.allowed_user_ids or user_id in self.allowed_user_ids

    def _authed(self, user_id: int, channel_id: Optional[int]) -> Optional[UserCreds]:
        """Stored creds for the user, remembering ``channel_id`` as the reminder target."""
        creds = self.storage.get_creds(user_id)
        if creds is None or channel_id is None:
            return creds

        existing = self.storage.get_reminder(user_id)
        enabled = existing.enabled if existing else True
        if existing is None or existing.chat_id != channel_id:
            try:
                self.storage.set_reminder(user_id, UserReminder(chat_id=channel_id, enabled=enabled))
            except StorageError as e:
                logger.warning(f"[cmd] could not remember reminder channel for {user_id}: {e}")
        return creds

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------

    def handle_start(self) -> str:
        return START_TEXT

    def handle_help(self) -> str:
        return HELP_TEXT

    async def handle_login(self, user_id: int, is_dm: bool, username: str, password: str) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        if not is_dm:
            return "dm me for safety"

        username = (username or "").strip()
        password = (password or "").strip()
        if not username or not password:
            return "usage: /login <user> <pass>"

        previous = self.storage.get_creds(user_id)
        # A cached session for this username must not vouch for an unchecked password
        await self.pool.discard(username)
        try:
            result = await self.pool.for_user(username).login(username, password)
        except EvsError as e:
            logger.error(f"[login] failed for user {user_id} ({username}): {e}")
            return f"login failed: {e.user_message}"

        try:
            self.storage.set_creds(user_id, UserCreds(username=username, password=password))
        except StorageError as e:
            logger.error(f"[login] could not store credentials for {user_id}: {e}")
            return e.user_message

        if previous and previous.username != username:
            await self.pool.discard(previous.username)

        logger.info(f"[login] user {user_id} logged in as {username} ({result.mode.value})")
        if result.mode is ClientMode.LEGACY:
            return "logged in (old portal, balance only). try /balance"
        return "logged in! try /balance"

    async def handle_logout(self, user_id: int) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED

        creds = self.storage.get_creds(user_id)
        if creds:
            await self.pool.discard(creds.username)
            try:
                self.storage.delete_creds(user_id)
            except StorageError as e:
                logger.error(f"[logout] could not delete credentials for {user_id}: {e}")
                return e.user_message
            logger.info(f"[logout] user {user_id} logged out")
        return "logged out. use /login to sign in again"

    # ------------------------------------------------------------------
    # Data commands
    # ------------------------------------------------------------------

    async def handle_balance(self, user_id: int, channel_id: Optional[int] = None) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        creds = self._authed(user_id, channel_id)
        if creds is None:
            return NOT_LOGGED_IN

        client = self.pool.for_user(creds.username)
        try:
            result = await client.get_balance(creds.username, creds.password)
        except EvsError as e:
            logger.error(f"[balance] failed for user {user_id}: {e}")
            return f"couldn't fetch balance: {e.user_message}"

        lines = [f"💰 {format_money(result.balance)}"]
        if result.last_updated:
            lines.append(f"updated: {result.last_updated}")
        if result.mode is ClientMode.LEGACY:
            lines.append("(via old portal)")
        return "\n".join(lines)

    async def handle_avg(self, user_id: int, channel_id: Optional[int] = None, days: Optional[int] = None) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        creds = self._authed(user_id, channel_id)
        if creds is None:
            return NOT_LOGGED_IN

        days = clamp_days(days)
        client = self.pool.for_user(creds.username)
        try:
            usage = await client.get_daily_usage(creds.username, creds.password, days)
        except EvsError as e:
            logger.error(f"[avg] failed for user {user_id}: {e}")
            return f"couldn't calculate avg spend: {e.user_message}"
        return f"avg/day ({days}d): {format_money(usage.avg_per_day)}"

    async def handle_usage(self, user_id: int, channel_id: Optional[int] = None, days: Optional[int] = None) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        creds = self._authed(user_id, channel_id)
        if creds is None:
            return NOT_LOGGED_IN

        days = clamp_days(days)
        client = self.pool.for_user(creds.username)
        try:
            balance, usage = await asyncio.gather(
                client.get_balance(creds.username, creds.password),
                client.get_daily_usage(creds.username, creds.password, days),
            )
        except EvsError as e:
            logger.error(f"[usage] failed for user {user_id} ({days}d): {e}")
            return f"couldn't fetch usage: {e.user_message}"

        lines = [
            f"💰 {format_money(balance.balance)}",
            f"avg/day ({days}d): {format_money(usage.avg_per_day)}",
            prediction_line(balance.balance, usage.avg_per_day),
            "",
            f"last {days} days:",
        ]
        lines.extend(daily_lines(usage.daily, min(MAX_LISTED_DAYS, len(usage.daily))))
        return "\n".join(lines)

    async def handle_predict(self, user_id: int, channel_id: Optional[int] = None) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        creds = self._authed(user_id, channel_id)
        if creds is None:
            return NOT_LOGGED_IN

        client = self.pool.for_user(creds.username)
        try:
            balance, usage = await asyncio.gather(
                client.get_balance(creds.username, creds.password),
                client.get_daily_usage(creds.username, creds.password, AVERAGE_WINDOW_DAYS),
            )
        except UnsupportedInLegacyMode:
            # No history on the old portal: fall back to what the daily job has stored.
            return await self._predict_from_store(user_id, creds)
        except EvsError as e:
            logger.error(f"[predict] failed for user {user_id}: {e}")
            return f"couldn't predict run-out: {e.user_message}"

        return "\n".join([
            f"💰 {format_money(balance.balance)}",
            f"avg/day ({AVERAGE_WINDOW_DAYS}d): {format_money(usage.avg_per_day)}",
            prediction_line(balance.balance, usage.avg_per_day),
        ])

    async def _predict_from_store(self, user_id: int, creds: UserCreds) -> str:
        client = self.pool.for_user(creds.username)
        try:
            balance = await client.get_balance(creds.username, creds.password)
        except EvsError as e:
            logger.error(f"[predict] failed for user {user_id}: {e}")
            return f"couldn't predict run-out: {e.user_message}"

        spent = self.storage.get_total_spent(user_id, AVERAGE_WINDOW_DAYS)
        avg = spent.average or 0.0
        return "\n".join([
            f"💰 {format_money(balance.balance)}",
            f"avg/day ({spent.days_tracked}d tracked): {format_money(avg)}",
            prediction_line(balance.balance, avg),
        ])

    async def handle_rank(self, user_id: int, channel_id: Optional[int] = None) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        creds = self._authed(user_id, channel_id)
        if creds is None:
            return NOT_LOGGED_IN

        client = self.pool.for_user(creds.username)
        try:
            result = await client.get_usage_rank(creds.username, creds.password)
        except EvsError as e:
            logger.error(f"[rank] failed for user {user_id}: {e}")
            return f"couldn't fetch rank: {e.user_message}"

        rank = result.rank
        lines = [
            f"spent (7d): {format_money(rank.usage_last_7_days)}",
            rank_line(rank),
        ]
        if rank.updated_at:
            lines.append(f"updated: {rank.updated_at}")
        return "\n".join(lines)

    async def handle_meter(self, user_id: int, channel_id: Optional[int] = None) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        creds = self._authed(user_id, channel_id)
        if creds is None:
            return NOT_LOGGED_IN

        client = self.pool.for_user(creds.username)
        try:
            info, month = await asyncio.gather(
                client.get_meter_info(creds.username, creds.password),
                client.get_month_to_date_usage(creds.username, creds.password),
            )
        except EvsError as e:
            logger.error(f"[meter] failed for user {user_id}: {e}")
            return f"couldn't fetch meter info: {e.user_message}"

        lines = [f"**Meter {creds.username}**"]
        for key in ("meter_displayname", "address", "premise_name", "meter_sn", "tariff_price"):
            value = info.get(key)
            if value not in (None, ""):
                lines.append(f"{key.replace('_', ' ')}: {value}")
        lines.append(f"this month: {format_money(month.usage)}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def handle_topup(self, user_id: int) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED

        lines = [f"link to top up: {PORTAL_URL}", ""]
        creds = self.storage.get_creds(user_id)
        if creds:
            lines.append("your login:")
            lines.append(f"`{creds.username}`")
            lines.append(f"password: `{mask_secret(creds.password)}`")
            lines.append("")
        lines.append("note: balance may take a while to update")
        return "\n".join(lines)

    def handle_remind(self, user_id: int, channel_id: Optional[int]) -> str:
        if not self.is_allowed(user_id):
            return NOT_AUTHORIZED
        if channel_id is None:
            return "can't configure reminders here"

        existing = self.storage.get_reminder(user_id)
        enabled = not (existing.enabled if existing else True)
        try:
            self.storage.set_reminder(user_id, UserReminder(chat_id=channel_id, enabled=enabled))
        except StorageError as e:
            logger.error(f"[remind] could not save reminder for {user_id}: {e}")
            return e.user_message

        logger.info(f"[remind] user {user_id} reminders {'on' if enabled else 'off'}")
        return "reminders on" if enabled else "reminders off"
