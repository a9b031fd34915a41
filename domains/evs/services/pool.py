"""One fallback client per portal username.

A client holds a single session, so sharing one between users serializes
them and forces a re-login on every switch. The pool gives each username its
own client: calls for the same account queue on that client's mutexes,
calls for different accounts run in parallel.
"""

from typing import Optional

from logger import logger
from ..types import ClientMode
from .fallback import FallbackEvsClient


class EvsClientPool:
    """Lazily created FallbackEvsClient per username."""

    def __init__(self, meter_displayname_override: Optional[str] = None, debug: bool = False):
        self.meter_displayname_override = meter_displayname_override
        self.debug = debug
        self._clients: dict[str, FallbackEvsClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def for_user(self, username: str) -> FallbackEvsClient:
        client = self._clients.get(username)
        if client is None:
            client = FallbackEvsClient(
                meter_displayname_override=self.meter_displayname_override,
                debug=self.debug,
            )
            self._clients[username] = client
            logger.debug(f"[evs] created client for {username} ({len(self._clients)} active)")
        return client

    def mode_for(self, username: str) -> Optional[ClientMode]:
        client = self._clients.get(username)
        return client.mode_for(username) if client else None

    async def discard(self, username: str) -> None:
        """Log the username out and drop its client."""
        client = self._clients.pop(username, None)
        if client is not None:
            await client.logout(username)
