"""
Connectivity Monitor

Two-state (online/offline) tracker fed by the host environment's network
signal through ``set_online``. When no host signal is wired in, an optional
HTTP reachability probe polls ``probe_url`` and acts as that signal.
Listeners are only called on transitions.
"""

import asyncio
import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Tracks online/offline state and notifies on transitions."""

    def __init__(
        self,
        initial_online: Optional[bool] = None,
        probe_url: Optional[str] = None,
        probe_interval: float = 30.0,
        probe_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.probe_url = probe_url
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout
        self._initial_online = initial_online
        self._online = True if initial_online is None else initial_online
        self._listeners: list[ConnectivityListener] = []
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def on_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a callback fired on online/offline transitions."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_online(self, online: bool) -> bool:
        """Feed a network-change signal.

        Returns:
            True if the state actually changed.
        """
        was_online = self._online
        self._online = online
        if was_online == online:
            return False

        logger.info(f"Network status changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Error in connectivity listener")
        return True

    # === Probing ===

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.probe_timeout),
                transport=self._transport,
            )
        return self._http_client

    async def probe(self) -> bool:
        """Check whether the probe endpoint is reachable.

        Any HTTP response counts as reachable; only transport failures mean
        offline. Without a probe URL the current state is returned.
        """
        if not self.probe_url:
            return self._online

        client = await self._get_http_client()
        try:
            await client.head(self.probe_url)
            return True
        except httpx.RequestError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False

    async def start(self) -> None:
        """Take the initial snapshot and start background probing if configured."""
        if self._initial_online is None and self.probe_url:
            # Initial snapshot is not a transition; listeners stay quiet
            self._online = await self.probe()
        logger.info(f"Connectivity monitor started: {'online' if self._online else 'offline'}")

        if self.probe_url and self._probe_task is None:
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        if self._probe_task:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None

        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _probe_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.probe_interval)
                self.set_online(await self.probe())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in connectivity probe loop: {e}")
