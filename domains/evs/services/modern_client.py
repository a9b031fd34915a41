"""Modern EVS client - JSON login plus claim-based RPC.

Login returns a bearer token. Every data call declares a claim
(username, scope, target resource, operation) next to its request payload,
and the backend authorizes per claim.

Concurrency: one adapter holds at most one session. Logins are serialized by
``_login_mutex`` and data calls by ``_request_mutex``, so a burst of commands
for the same account can't race two logins or interleave a logout with an
in-flight request. Independent adapter instances run fully in parallel.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar
from urllib.parse import urlsplit

from logger import logger
from utils.log_sanitizer import sanitize_for_log
from .. import config
from ..errors import (
    AuthError,
    BackendError,
    NotAuthorized,
    ParseError,
    is_auth_failure,
)
from ..mutex import Mutex
from ..types import (
    Balances,
    CreditResult,
    DailyUsage,
    DailyUsageResult,
    MeterInfo,
    MoneyResult,
    MonthToDateUsage,
    SessionState,
    UsageRank,
)
from .transport import is_ok, json_body, timed_request

T = TypeVar("T")

JSON_HEADERS = {"Content-Type": "application/json; charset=UTF-8"}


def parse_number(value: Any) -> Optional[float]:
    """Accept a finite number or a numeric string; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def is_safe_info_message(info: Any) -> bool:
    """True if an ``info`` field just means "no data found"."""
    if not isinstance(info, str):
        return False
    lower = info.strip().lower()
    return lower in config.SAFE_INFO_MESSAGES or lower.startswith("no ")


def to_evs_datetime(moment: datetime) -> str:
    """Format as the portal does: 'YYYY-MM-DD HH:MM:SS.mmmZ' in UTC."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _first_string(data: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str):
            return value
    return None


def _balance_field(data: dict, key: str) -> Optional[float]:
    """Read a balance field, keeping "absent" distinct from zero.

    Absent or null -> None. Present but not numeric -> ParseError.
    """
    raw = data.get(key)
    if raw is None:
        return None
    number = parse_number(raw)
    if number is None:
        raise ParseError(f"{key} is not numeric: {sanitize_for_log(raw, 40)}")
    return number


class ModernEvsClient:
    """Client for the evs2u / ore JSON API."""

    def __init__(self, meter_displayname_override: Optional[str] = None, debug: bool = False):
        """
        Args:
            meter_displayname_override: Meter id for RPC payloads (default: login username)
            debug: Log every request, not only slow or failed ones
        """
        self.meter_displayname_override = meter_displayname_override
        self.debug = debug
        self._session: Optional[SessionState] = None
        self._login_mutex = Mutex()
        self._request_mutex = Mutex()

    @property
    def logged_in_as(self) -> Optional[str]:
        return self._session.username if self._session else None

    def logout(self) -> None:
        """Discard the session. The next call logs in again."""
        self._session = None

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> SessionState:
        """Log in, or return the cached session for the same username.

        Raises:
            AuthError: Backend rejected the login or the response was incomplete
        """
        return await self._login_mutex.run(self._login_locked, username, password)

    async def _login_locked(self, username: str, password: str) -> SessionState:
        if self._session is not None and self._session.username == username:
            return self._session

        response = await timed_request(
            "POST",
            config.LOGIN_URL,
            op="login",
            debug=self.debug,
            headers=JSON_HEADERS,
            json={
                "username": username,
                "password": password,
                "email": "",
                "destPortal": config.LOGIN_DEST_PORTAL,
                "platform": config.LOGIN_PLATFORM,
            },
        )
        data = json_body(response) or {}

        if not is_ok(response):
            message = data.get("err") or data.get("error") or f"Login failed ({response.status_code})"
            raise AuthError(str(message))

        token = data.get("token")
        user_info = data.get("userInfo") if isinstance(data.get("userInfo"), dict) else {}
        user_id = user_info.get("id")
        backend_username = user_info.get("username")

        if not isinstance(token, str) or not token:
            raise AuthError("Login response missing token")
        if not isinstance(backend_username, str) or not backend_username:
            raise AuthError("Login response missing username")
        if isinstance(user_id, bool) or not isinstance(user_id, (int, float)) or user_id != user_id:
            raise AuthError("Login response missing user id")

        self._session = SessionState(token=token, user_id=int(user_id), username=backend_username)
        logger.info(f"[evs] modern login ok for {backend_username}")
        return self._session

    # ------------------------------------------------------------------
    # Public data operations
    # ------------------------------------------------------------------

    async def get_credit_balance(self, username: str, password: str) -> CreditResult:
        """Meter credit balance only."""
        async def attempt() -> CreditResult:
            session = await self.login(username, password)
            return await self._fetch_meter_credit(session, self._meter_for(session))

        return await self._serialized(attempt)

    async def get_balances(self, username: str, password: str) -> Balances:
        """Meter credit and money balance, fetched concurrently."""
        async def attempt() -> Balances:
            session = await self.login(username, password)
            meter = self._meter_for(session)
            meter_credit, money = await asyncio.gather(
                self._fetch_meter_credit(session, meter),
                self._fetch_money_balance(session, meter),
            )
            return Balances(meter_credit=meter_credit, money=money)

        return await self._serialized(attempt)

    async def get_meter_info(self, username: str, password: str) -> MeterInfo:
        async def attempt() -> MeterInfo:
            session = await self.login(username, password)
            return await self._fetch_meter_info(session, self._meter_for(session))

        return await self._serialized(attempt)

    async def get_month_to_date_usage(self, username: str, password: str) -> MonthToDateUsage:
        async def attempt() -> MonthToDateUsage:
            session = await self.login(username, password)
            return await self._fetch_month_to_date(session, self._meter_for(session))

        return await self._serialized(attempt)

    async def get_usage_rank(self, username: str, password: str) -> UsageRank:
        """7-day usage and its rank in the building. Needs list scope."""
        async def attempt() -> UsageRank:
            session = await self.login(username, password)
            return await self._fetch_recent_usage_stat(session, self._meter_for(session))

        return await self._serialized(attempt)

    async def get_daily_usage(self, username: str, password: str, lookback_days: int) -> DailyUsageResult:
        """Daily spend over the last ``lookback_days`` days. Needs list scope.

        Raises:
            NotAuthorized: Account lacks list permission on readings
        """
        async def attempt() -> DailyUsageResult:
            session = await self.login(username, password)
            end = datetime.now(timezone.utc)
            start = end - timedelta(days=max(1, lookback_days))
            max_records = min(config.HISTORY_MAX_RECORDS, max(7, lookback_days + 3))
            points, endpoint = await self._fetch_history_daily(
                session, self._meter_for(session), start, end, max_records
            )
            return self._aggregate_daily(points, start, end, endpoint)

        return await self._serialized(attempt)

    # ------------------------------------------------------------------
    # Retry / serialization
    # ------------------------------------------------------------------

    async def _serialized(self, attempt: Callable[[], Awaitable[T]]) -> T:
        return await self._request_mutex.run(self.with_auth_retry, attempt)

    async def with_auth_retry(self, attempt: Callable[[], Awaitable[T]]) -> T:
        """Run ``attempt``; on a 403 drop the session and run it exactly once more.

        The attempt is expected to log in itself, so the retry forces a fresh
        login. A second authorization failure propagates.
        """
        try:
            return await attempt()
        except (NotAuthorized, BackendError) as e:
            if not is_auth_failure(e):
                raise
            logger.warning(f"[evs] authorization failed ({e}), re-authenticating once")
            self.logout()
            return await attempt()

    def _meter_for(self, session: SessionState) -> str:
        return self.meter_displayname_override or session.username

    # ------------------------------------------------------------------
    # RPC plumbing
    # ------------------------------------------------------------------

    async def _claim_call(
        self,
        session: SessionState,
        endpoint: str,
        *,
        op: str,
        target: str,
        operation: str,
        request: dict[str, Any],
        list_scope: bool = False,
    ) -> dict[str, Any]:
        """POST a claim + request and return the validated JSON body.

        List-scope calls identify themselves the way the customer portal does:
        relative endpoint path, null user id, portal origin headers.
        """
        headers = dict(JSON_HEADERS)
        headers["Authorization"] = f"Bearer {session.token}"
        claim_endpoint = endpoint
        claim_user_id: Optional[int] = session.user_id
        if list_scope:
            headers.update({"accept": "*/*", "origin": config.PORTAL_ORIGIN, "referer": config.PORTAL_URL})
            claim_endpoint = urlsplit(endpoint).path
            claim_user_id = None

        response = await timed_request(
            "POST",
            endpoint,
            op=op,
            debug=self.debug,
            headers=headers,
            json={
                "svcClaimDto": {
                    "username": session.username,
                    "user_id": claim_user_id,
                    "svcName": config.CLAIM_SVC_NAME,
                    "endpoint": claim_endpoint,
                    "scope": config.CLAIM_SCOPE,
                    "target": target,
                    "operation": operation,
                },
                "request": request,
            },
        )
        data = json_body(response)

        if response.status_code == 403:
            raise NotAuthorized(f"{op}: Not authorized (403)")
        if not is_ok(response):
            detail = (data or {}).get("error") or (data or {}).get("err") or f"HTTP {response.status_code}"
            self._raise_backend_error(op, str(detail), response.status_code)
        if data is None:
            raise ParseError(f"{op}: response was not a JSON object")

        if data.get("error"):
            self._raise_backend_error(op, str(data["error"]), response.status_code)
        info = data.get("info")
        if info and not is_safe_info_message(info):
            self._raise_backend_error(op, str(info), response.status_code)

        if self.debug:
            logger.debug(f"[evs] {op} response: {sanitize_for_log(data, 500)}")
        return data

    @staticmethod
    def _raise_backend_error(op: str, detail: str, status_code: int) -> None:
        detail = sanitize_for_log(detail, 200)
        if "not authorized" in detail.lower():
            raise NotAuthorized(f"{op}: {detail}")
        raise BackendError(f"{op}: {detail}", status_code=status_code)

    # ------------------------------------------------------------------
    # Individual endpoints
    # ------------------------------------------------------------------

    async def _fetch_meter_credit(self, session: SessionState, meter: str) -> CreditResult:
        endpoint = config.METER_CREDIT_ENDPOINT
        data = await self._claim_call(
            session, endpoint,
            op="get_credit_bal",
            target=config.TARGET_CREDIT_BALANCE,
            operation=config.OPERATION_READ,
            request={"meter_displayname": meter},
        )
        return CreditResult(
            meter_credit_balance=_balance_field(data, "credit_bal"),
            endpoint_used=endpoint,
            last_updated=_first_string(data, "tariff_timestamp", "last_updated"),
        )

    async def _fetch_money_balance(self, session: SessionState, meter: str) -> MoneyResult:
        endpoint = config.MONEY_BALANCE_ENDPOINT
        data = await self._claim_call(
            session, endpoint,
            op="get_credit_balance",
            target=config.TARGET_CREDIT_BALANCE,
            operation=config.OPERATION_READ,
            request={"meter_displayname": meter},
        )
        return MoneyResult(
            money_balance=_balance_field(data, "ref_bal"),
            endpoint_used=endpoint,
            last_updated=_first_string(data, "tariff_timestamp", "last_updated"),
        )

    async def _fetch_meter_info(self, session: SessionState, meter: str) -> MeterInfo:
        endpoint = config.METER_INFO_ENDPOINT
        data = await self._claim_call(
            session, endpoint,
            op="get_meter_info",
            target=config.TARGET_METER_INFO,
            operation=config.OPERATION_READ,
            request={"meter_displayname": meter},
        )
        fields = data.get("meter_info")
        if not isinstance(fields, dict):
            fields = {k: v for k, v in data.items() if k != "info"}
        return MeterInfo(fields=fields, endpoint_used=endpoint)

    async def _fetch_month_to_date(self, session: SessionState, meter: str) -> MonthToDateUsage:
        endpoint = config.MONTH_TO_DATE_USAGE_ENDPOINT
        data = await self._claim_call(
            session, endpoint,
            op="get_month_to_date_usage",
            target=config.TARGET_METER_READING,
            operation=config.OPERATION_READ,
            request={"meter_displayname": meter},
        )
        usage = parse_number(data.get("month_to_date_usage"))
        return MonthToDateUsage(usage=abs(usage) if usage is not None else 0.0, endpoint_used=endpoint)

    async def _fetch_recent_usage_stat(self, session: SessionState, meter: str) -> UsageRank:
        endpoint = config.RECENT_USAGE_STAT_ENDPOINT
        data = await self._claim_call(
            session, endpoint,
            op="get_recent_usage_stat",
            target=config.TARGET_READING_LIST,
            operation=config.OPERATION_LIST,
            request={
                "meter_displayname": meter,
                "look_back_hours": config.USAGE_LOOK_BACK_HOURS,
                "convert_to_money": True,
            },
            list_scope=True,
        )
        usage_stat = data.get("usage_stat") if isinstance(data.get("usage_stat"), dict) else {}
        rank = usage_stat.get("kwh_rank_in_building")
        if not isinstance(rank, dict):
            rank = {}

        rank_val = parse_number(rank.get("rank_val"))
        usage = parse_number(rank.get("ref_val"))
        return UsageRank(
            rank_val=rank_val if rank_val is not None else config.DEFAULT_RANK_VAL,
            usage_last_7_days=abs(usage) if usage is not None else 0.0,
            endpoint_used=endpoint,
            usage_unit=_first_string(rank, "ref_val_unit"),
            updated_at=_first_string(rank, "updated_timestamp"),
        )

    async def _fetch_history_daily(
        self,
        session: SessionState,
        meter: str,
        start: datetime,
        end: datetime,
        max_records: int,
    ) -> tuple[list[tuple[str, Optional[float], Optional[float]]], str]:
        """Daily reading history as (timestamp, diff, total) points."""
        endpoint = config.HISTORY_ENDPOINT
        data = await self._claim_call(
            session, endpoint,
            op="get_history",
            target=config.TARGET_READING_LIST,
            operation=config.OPERATION_LIST,
            request={
                "meter_displayname": meter,
                "history_type": "meter_reading_daily",
                "start_datetime": to_evs_datetime(start),
                "end_datetime": to_evs_datetime(end),
                "normalization": "meter_reading_daily",
                "max_number_of_records": str(max(1, int(max_records))),
                "convert_to_money": "true",
                "check_bypass": "true",
            },
            list_scope=True,
        )
        root = data.get("meter_reading_daily")
        history = root.get("history") if isinstance(root, dict) else None
        if not isinstance(history, list):
            history = []

        points = []
        for raw in history:
            if not isinstance(raw, dict):
                continue
            timestamp = raw.get("reading_timestamp") if isinstance(raw.get("reading_timestamp"), str) else ""
            diff = parse_number(raw.get("reading_diff"))
            total = parse_number(raw.get("reading_total"))
            if not timestamp and diff is None and total is None:
                continue
            points.append((timestamp, diff, total))
        return points, endpoint

    @staticmethod
    def _aggregate_daily(
        points: list[tuple[str, Optional[float], Optional[float]]],
        start: datetime,
        end: datetime,
        endpoint: str,
    ) -> DailyUsageResult:
        """Bucket history points by ISO date within [start, end]."""
        first_day = start.date().isoformat()
        last_day = end.date().isoformat()
        by_date: dict[str, float] = {}
        for timestamp, diff, total in points:
            value = diff if diff is not None else total
            if value is None or len(timestamp) < 10:
                continue
            day = timestamp[:10]
            if not first_day <= day <= last_day:
                continue
            by_date[day] = by_date.get(day, 0.0) + abs(value)

        daily = [DailyUsage(date=day, usage=by_date[day]) for day in sorted(by_date)]
        avg = sum(by_date.values()) / len(daily) if daily else 0.0
        return DailyUsageResult(daily=daily, avg_per_day=avg, endpoint_used=endpoint)
