"""Legacy EVS client for the nus-utown HTML portal.

Fallback for accounts the modern API rejects. Only the balance is available
here; usage history, rank and meter metadata don't exist on this portal.

Login is a form POST; the session lives in the returned cookies. Success is
judged from the markup: if the login form comes back, the login failed.
"""

import re
from typing import Optional

from logger import logger
from .. import config
from ..errors import AuthError, BackendError, ParseError, TransportError
from ..mutex import Mutex
from ..types import LegacyBalanceResult, LegacySession
from .transport import is_ok, timed_request

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Referer": config.LEGACY_BASE,
}

# First match wins
BALANCE_PATTERNS = [
    re.compile(r"Total Balance:\s*S?\$?\s*([\d.]+)", re.IGNORECASE),
    re.compile(r"Last Recorded Credit:\s*S?\$?\s*([\d.]+)", re.IGNORECASE),
    re.compile(r"credit_bal[\"\s:]+(\d+\.?\d*)", re.IGNORECASE),
]


def is_login_form(html: str) -> bool:
    return "txtLoginId" in html and "txtPassword" in html


def extract_value(html: str, label: str) -> Optional[str]:
    """Value of a labelled table cell, e.g. ``<td>Meter ID:</td><td>123</td>``."""
    label = re.escape(label)
    cell = re.search(rf"{label}[:\s]*</td>\s*<td[^>]*>(?:<font[^>]*>)?([^<]+)", html, re.IGNORECASE)
    if cell and cell.group(1).strip():
        return cell.group(1).strip()

    # "Label: VALUE" inside a single cell
    inline = re.search(rf"{label}[:\s]+([^<\n]+)", html, re.IGNORECASE)
    if inline and inline.group(1).strip():
        return inline.group(1).strip()
    return None


def extract_balance(html: str) -> Optional[float]:
    for pattern in BALANCE_PATTERNS:
        match = pattern.search(html)
        if not match:
            continue
        try:
            return float(match.group(1))
        except ValueError:
            continue
    return None


class LegacyEvsClient:
    """Client for the legacy servlet portal."""

    def __init__(self, debug: bool = False):
        self.debug = debug
        self._session: Optional[LegacySession] = None
        self._mutex = Mutex()

    @property
    def logged_in_as(self) -> Optional[str]:
        return self._session.username if self._session else None

    async def login(self, username: str, password: str) -> LegacySession:
        """Log in with the HTML form.

        Raises:
            AuthError: "Invalid credentials" when the portal says so, otherwise
                a generic failure (typically a disabled account)
        """
        return await self._mutex.run(self._login_locked, username, password)

    async def get_balance(self, username: str, password: str) -> LegacyBalanceResult:
        """Log in, open the meter credit page and scrape the balance.

        Raises:
            AuthError: Login rejected, or the session expired twice in a row
            ParseError: No balance pattern matched the page
        """
        return await self._mutex.run(self._get_balance_locked, username, password)

    async def logout(self) -> None:
        """Best-effort logout; the local session is dropped either way."""
        await self._mutex.run(self._logout_locked)

    async def _login_locked(self, username: str, password: str) -> LegacySession:
        self._session = None

        response = await timed_request(
            "POST",
            config.LEGACY_LOGIN_URL,
            op="legacy_login",
            debug=self.debug,
            headers=FORM_HEADERS,
            data={"txtLoginId": username, "txtPassword": password},
        )

        cookies = []
        for header in response.headers.get_list("set-cookie"):
            pair = header.split(";", 1)[0].strip()
            if pair:
                cookies.append(pair)

        html = response.text
        if is_login_form(html):
            if "Invalid" in html or "incorrect" in html:
                raise AuthError("Invalid credentials")
            raise AuthError("Login failed - account may be disabled")

        self._session = LegacySession(username=username, cookies=tuple(cookies))
        logger.info(f"[evs] legacy login ok for {username}")
        return self._session

    async def _get_balance_locked(self, username: str, password: str) -> LegacyBalanceResult:
        session = await self._login_locked(username, password)
        html = await self._fetch_credit_page(session)

        if is_login_form(html):
            logger.info(f"[evs] legacy session for {username} expired, logging in again")
            session = await self._login_locked(username, password)
            html = await self._fetch_credit_page(session)
            if is_login_form(html):
                raise AuthError("Session expired")

        balance = extract_balance(html)
        if balance is None:
            raise ParseError("Could not parse balance from legacy portal page")

        return LegacyBalanceResult(
            meter_id=extract_value(html, "Meter ID") or username,
            balance=balance,
            last_updated=extract_value(html, "Last Recorded Timestamp"),
            package_id=extract_value(html, "Package ID"),
        )

    async def _fetch_credit_page(self, session: LegacySession) -> str:
        response = await timed_request(
            "GET",
            config.LEGACY_METER_CREDIT_URL,
            op="legacy_meter_credit",
            debug=self.debug,
            headers={"Cookie": session.cookie_header, "Referer": config.LEGACY_BASE},
        )
        if not is_ok(response):
            raise BackendError(
                f"legacy_meter_credit: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.text

    async def _logout_locked(self) -> None:
        session, self._session = self._session, None
        if session is None or not session.cookies:
            return
        try:
            await timed_request(
                "GET",
                config.LEGACY_LOGOUT_URL,
                op="legacy_logout",
                debug=self.debug,
                headers={"Cookie": session.cookie_header},
            )
        except TransportError as e:
            logger.warning(f"[evs] legacy logout for {session.username} failed: {e}")
