"""Tests for the modern EVS API client."""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

import httpx
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import json_response, login_ok
from domains.evs import config
from domains.evs.errors import AuthError, BackendError, NotAuthorized, ParseError, TransportError
from domains.evs.services.modern_client import (
    ModernEvsClient,
    is_safe_info_message,
    parse_number,
    to_evs_datetime,
)


class Router:
    """side_effect for client.post that answers by URL (AsyncMock awaits the result)."""

    def __init__(self, routes):
        self.routes = {url: list(r) if isinstance(r, list) else r for url, r in routes.items()}
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        route = self.routes[url]
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    def count(self, url):
        return sum(1 for called, _ in self.calls if called == url)

    def body(self, url):
        return next(kwargs["json"] for called, kwargs in self.calls if called == url)


class TestHelpers:

    def test_parse_number(self):
        assert parse_number("0") == 0.0
        assert parse_number(" 12.5 ") == 12.5
        assert parse_number(3) == 3.0
        assert parse_number(None) is None
        assert parse_number("abc") is None
        assert parse_number(True) is None
        assert parse_number(float("nan")) is None

    def test_safe_info_messages(self):
        assert is_safe_info_message("Empty tariff") is True
        assert is_safe_info_message("no data for meter") is True
        assert is_safe_info_message("meter locked") is False
        assert is_safe_info_message(None) is False

    def test_evs_datetime_format(self):
        moment = datetime(2024, 3, 5, 7, 8, 9, 123456, tzinfo=timezone.utc)
        assert to_evs_datetime(moment) == "2024-03-05 07:08:09.123Z"


class TestLogin:

    @pytest.mark.asyncio
    async def test_login_builds_session(self, mock_httpx_client):
        mock_httpx_client.post.return_value = login_ok("10001234", token="abc", user_id=7)

        client = ModernEvsClient()
        session = await client.login("10001234", "pw")

        assert session.token == "abc"
        assert session.user_id == 7
        assert client.logged_in_as == "10001234"
        body = mock_httpx_client.post.call_args.kwargs["json"]
        assert body["destPortal"] == "evs2cp"
        assert body["platform"] == "web"

    @pytest.mark.asyncio
    async def test_concurrent_logins_make_one_network_call(self, mock_httpx_client):
        mock_httpx_client.post.return_value = login_ok("10001234")

        client = ModernEvsClient()
        first, second = await asyncio.gather(
            client.login("10001234", "pw"),
            client.login("10001234", "pw"),
        )

        assert first is second
        assert mock_httpx_client.post.await_count == 1

    @pytest.mark.asyncio
    async def test_rejected_login_carries_backend_message(self, mock_httpx_client):
        mock_httpx_client.post.return_value = json_response(401, {"err": "user is disabled"})

        client = ModernEvsClient()
        with pytest.raises(AuthError, match="user is disabled"):
            await client.login("10001234", "secret-pw")

        assert client.logged_in_as is None

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, mock_httpx_client):
        mock_httpx_client.post.return_value = json_response(200, {"userInfo": {"id": 1, "username": "u"}})

        with pytest.raises(AuthError, match="missing token"):
            await ModernEvsClient().login("u", "pw")

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(TransportError):
            await ModernEvsClient().login("u", "pw")


class TestBalances:

    @pytest.mark.asyncio
    async def test_zero_and_no_data_stay_distinct(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: json_response(200, {"credit_bal": "0"}),
            config.MONEY_BALANCE_ENDPOINT: json_response(200, {"info": "Empty tariff"}),
        })

        balances = await ModernEvsClient().get_balances("10001234", "pw")

        assert balances.meter_credit.meter_credit_balance == 0.0
        assert balances.money.money_balance is None

    @pytest.mark.asyncio
    async def test_reads_both_balance_fields(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: json_response(200, {"credit_bal": 8.5, "tariff_timestamp": "2024-05-01 10:00"}),
            config.MONEY_BALANCE_ENDPOINT: json_response(200, {"ref_bal": "9.35"}),
        })

        balances = await ModernEvsClient().get_balances("10001234", "pw")

        assert balances.meter_credit.meter_credit_balance == 8.5
        assert balances.money.money_balance == 9.35
        assert balances.last_updated == "2024-05-01 10:00"

    @pytest.mark.asyncio
    async def test_non_numeric_balance_is_parse_error(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: json_response(200, {"credit_bal": "n/a"}),
        })

        with pytest.raises(ParseError):
            await ModernEvsClient().get_credit_balance("10001234", "pw")

    @pytest.mark.asyncio
    async def test_unknown_info_is_backend_error(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: json_response(200, {"info": "meter locked by admin"}),
        })

        with pytest.raises(BackendError, match="meter locked"):
            await ModernEvsClient().get_credit_balance("10001234", "pw")

    @pytest.mark.asyncio
    async def test_meter_displayname_override_used_in_request(self, mock_httpx_client):
        router = Router({
            config.LOGIN_URL: login_ok("10001234"),
            config.METER_CREDIT_ENDPOINT: json_response(200, {"credit_bal": 1}),
        })
        mock_httpx_client.post.side_effect = router

        await ModernEvsClient(meter_displayname_override="M-99").get_credit_balance("10001234", "pw")

        body = router.body(config.METER_CREDIT_ENDPOINT)
        assert body["request"]["meter_displayname"] == "M-99"
        assert body["svcClaimDto"]["user_id"] == 42
        assert body["svcClaimDto"]["target"] == config.TARGET_CREDIT_BALANCE


class TestAuthRetry:

    @pytest.mark.asyncio
    async def test_403_then_success_relogs_in_exactly_once(self, mock_httpx_client):
        router = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: [
                json_response(403, {}),
                json_response(200, {"credit_bal": "4.20"}),
            ],
        })
        mock_httpx_client.post.side_effect = router

        result = await ModernEvsClient().get_credit_balance("10001234", "pw")

        assert result.meter_credit_balance == 4.2
        assert router.count(config.LOGIN_URL) == 2
        assert router.count(config.METER_CREDIT_ENDPOINT) == 2

    @pytest.mark.asyncio
    async def test_second_403_propagates(self, mock_httpx_client):
        router = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: json_response(403, {}),
        })
        mock_httpx_client.post.side_effect = router

        with pytest.raises(NotAuthorized):
            await ModernEvsClient().get_credit_balance("10001234", "pw")

        assert router.count(config.LOGIN_URL) == 2
        assert router.count(config.METER_CREDIT_ENDPOINT) == 2

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self, mock_httpx_client):
        router = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_CREDIT_ENDPOINT: json_response(500, {"error": "internal"}),
        })
        mock_httpx_client.post.side_effect = router

        with pytest.raises(BackendError) as exc_info:
            await ModernEvsClient().get_credit_balance("10001234", "pw")

        assert exc_info.value.status_code == 500
        assert router.count(config.LOGIN_URL) == 1
        assert router.count(config.METER_CREDIT_ENDPOINT) == 1


class TestUsage:

    @pytest.mark.asyncio
    async def test_rank_uses_list_scope_claim(self, mock_httpx_client):
        router = Router({
            config.LOGIN_URL: login_ok(),
            config.RECENT_USAGE_STAT_ENDPOINT: json_response(200, {
                "usage_stat": {"kwh_rank_in_building": {
                    "rank_val": 0.25,
                    "ref_val": -12.5,
                    "ref_val_unit": "SGD",
                    "updated_timestamp": "2024-05-01T00:00:00",
                }},
            }),
        })
        mock_httpx_client.post.side_effect = router

        rank = await ModernEvsClient().get_usage_rank("10001234", "pw")

        assert rank.rank_val == 0.25
        assert rank.usage_last_7_days == 12.5
        assert rank.uses_more is True
        assert rank.percentile == 75

        claim = router.body(config.RECENT_USAGE_STAT_ENDPOINT)["svcClaimDto"]
        assert claim["user_id"] is None
        assert claim["endpoint"] == "/cp/get_recent_usage_stat"
        assert claim["operation"] == config.OPERATION_LIST
        headers = next(kw["headers"] for url, kw in router.calls if url == config.RECENT_USAGE_STAT_ENDPOINT)
        assert headers["origin"] == config.PORTAL_ORIGIN

    @pytest.mark.asyncio
    async def test_rank_defaults_to_middle(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.RECENT_USAGE_STAT_ENDPOINT: json_response(200, {"usage_stat": {}}),
        })

        rank = await ModernEvsClient().get_usage_rank("10001234", "pw")

        assert rank.rank_val == 0.5
        assert rank.usage_last_7_days == 0.0

    @pytest.mark.asyncio
    async def test_daily_usage_buckets_reported_days(self, mock_httpx_client):
        today = datetime.now(timezone.utc).date()
        yesterday = today - timedelta(days=1)
        long_ago = today - timedelta(days=30)
        router = Router({
            config.LOGIN_URL: login_ok(),
            config.HISTORY_ENDPOINT: json_response(200, {"meter_reading_daily": {"history": [
                {"reading_timestamp": f"{yesterday.isoformat()}T00:00:00", "reading_diff": "-1.5"},
                {"reading_timestamp": f"{today.isoformat()}T00:00:00", "reading_total": 2.5},
                {"reading_timestamp": f"{long_ago.isoformat()}T00:00:00", "reading_diff": 9},
                "garbage",
            ]}}),
        })
        mock_httpx_client.post.side_effect = router

        result = await ModernEvsClient().get_daily_usage("10001234", "pw", 7)

        assert [d.date for d in result.daily] == [yesterday.isoformat(), today.isoformat()]
        assert [d.usage for d in result.daily] == [1.5, 2.5]
        assert result.avg_per_day == pytest.approx(2.0)

        request = router.body(config.HISTORY_ENDPOINT)["request"]
        assert request["max_number_of_records"] == "10"
        assert request["history_type"] == "meter_reading_daily"

    @pytest.mark.asyncio
    async def test_daily_usage_without_history_averages_zero(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.HISTORY_ENDPOINT: json_response(200, {"info": "no history"}),
        })

        result = await ModernEvsClient().get_daily_usage("10001234", "pw", 7)

        assert result.daily == []
        assert result.avg_per_day == 0.0

    @pytest.mark.asyncio
    async def test_meter_info_promotes_nested_fields(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.METER_INFO_ENDPOINT: json_response(200, {"meter_info": {"meter_sn": "SN1", "address": "Blk 1"}}),
        })

        info = await ModernEvsClient().get_meter_info("10001234", "pw")

        assert info.get("meter_sn") == "SN1"
        assert info.get("missing", "-") == "-"

    @pytest.mark.asyncio
    async def test_month_to_date_is_absolute(self, mock_httpx_client):
        mock_httpx_client.post.side_effect = Router({
            config.LOGIN_URL: login_ok(),
            config.MONTH_TO_DATE_USAGE_ENDPOINT: json_response(200, {"month_to_date_usage": "-31.2"}),
        })

        month = await ModernEvsClient().get_month_to_date_usage("10001234", "pw")

        assert month.usage == pytest.approx(31.2)
