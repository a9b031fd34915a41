"""Timed HTTP calls against the EVS backends.

Every request gets a sequential id, a hard timeout, and a log line when it is
slow, fails, or debug is on. Network failures surface as TransportError.
URLs and bodies are never logged, only the operation name.
"""

import asyncio
import itertools
import time
from typing import Any, Optional

import httpx

from logger import logger
from ..config import REQUEST_TIMEOUT, SLOW_REQUEST_MS
from ..errors import TransportError

_request_ids = itertools.count(1)


def is_ok(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def json_body(response: httpx.Response) -> Optional[dict[str, Any]]:
    """Parse a JSON object body, or None if the body isn't one."""
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def timed_request(
    method: str,
    url: str,
    *,
    op: str,
    debug: bool = False,
    timeout: float = REQUEST_TIMEOUT,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one HTTP request with timeout and structured logging.

    Args:
        method: "GET" or "POST"
        url: Full request URL
        op: Operation name for the log line (never the URL)
        debug: Log start/finish of every call, not only slow/failed ones
        timeout: Total seconds before the call is cancelled
        **kwargs: Passed through to httpx (json=, data=, headers=)

    Raises:
        TransportError: Network failure or timeout
    """
    req_id = next(_request_ids)
    started = time.monotonic()

    if debug:
        logger.info(f"[evs][{req_id}] start op={op}")

    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
            call = client.post if method.upper() == "POST" else client.get
            response = await asyncio.wait_for(call(url, **kwargs), timeout)
    except (httpx.HTTPError, asyncio.TimeoutError) as e:
        ms = int((time.monotonic() - started) * 1000)
        reason = "timeout" if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError)) else type(e).__name__
        logger.error(f"[evs][{req_id}] fail op={op} {ms}ms err={reason}")
        raise TransportError(f"{op} failed: {reason}") from e

    ms = int((time.monotonic() - started) * 1000)
    line = f"[evs][{req_id}] done op={op} status={response.status_code} {ms}ms"
    if not is_ok(response):
        logger.warning(line)
    elif debug or ms > SLOW_REQUEST_MS:
        logger.info(line)
    return response
