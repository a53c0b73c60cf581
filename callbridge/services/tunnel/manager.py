"""Public ngrok tunnel with health monitoring and reconnect."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx
from pyngrok import conf, ngrok
from pyngrok.exception import PyngrokError

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL_SECONDS = 30.0
HEALTH_CHECK_TIMEOUT_SECONDS = 10.0
BASE_RECONNECT_DELAY_SECONDS = 2.0
MAX_RECONNECT_ATTEMPTS = 10

UrlChangeCallback = Callable[[str], Awaitable[None]]


class NgrokConnector:
    """Thin blocking wrapper over pyngrok; run from a worker thread."""

    def __init__(self, authtoken: str, domain: Optional[str] = None):
        self.authtoken = authtoken
        self.domain = domain

    def open(self, port: int) -> str:
        conf.get_default().auth_token = self.authtoken
        options = {"domain": self.domain} if self.domain else {}
        tunnel = ngrok.connect(str(port), "http", **options)
        url = tunnel.public_url
        if url.startswith("http://"):
            url = "https://" + url[len("http://"):]
        return url

    def close(self, public_url: str) -> None:
        ngrok.disconnect(public_url)

    def is_alive(self, public_url: str) -> bool:
        return any(t.public_url.replace("http://", "https://", 1) == public_url for t in ngrok.get_tunnels())

    def kill(self) -> None:
        ngrok.kill()


class TunnelManager:
    """Keeps the public URL reachable.

    A monitor task probes ``<url>/health`` every interval; a failed probe or a
    vanished tunnel triggers reconnection with exponential backoff. Stopping
    the manager abandons any reconnect in progress.
    """

    def __init__(
        self,
        port: int,
        connector: NgrokConnector,
        on_url_change: Optional[UrlChangeCallback] = None,
        health_check_interval: float = HEALTH_CHECK_INTERVAL_SECONDS,
        base_reconnect_delay: float = BASE_RECONNECT_DELAY_SECONDS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ):
        self.port = port
        self.connector = connector
        self.on_url_change = on_url_change
        self.health_check_interval = health_check_interval
        self.base_reconnect_delay = base_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.public_url: Optional[str] = None
        self.reconnect_attempts = 0
        self._stopped = True
        self._monitor_task: Optional[asyncio.Task] = None

    async def start(self) -> str:
        """Open the tunnel and start monitoring. Returns the public URL."""
        self._stopped = False
        self.reconnect_attempts = 0
        self.public_url = await asyncio.to_thread(self.connector.open, self.port)
        logger.info(f"[TUNNEL] Connected: {self.public_url}")
        self._monitor_task = asyncio.create_task(self._monitor())
        return self.public_url

    async def stop(self) -> None:
        self._stopped = True
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None
        if self.public_url:
            try:
                await asyncio.to_thread(self.connector.close, self.public_url)
            except PyngrokError as e:
                logger.warning(f"[TUNNEL] Error closing tunnel: {e}")
            self.public_url = None
        await asyncio.to_thread(self.connector.kill)
        logger.info("[TUNNEL] Stopped")

    @property
    def is_running(self) -> bool:
        return not self._stopped

    async def check_health(self) -> bool:
        """Probe the service through the tunnel."""
        if not self.public_url:
            return False
        try:
            async with httpx.AsyncClient(timeout=HEALTH_CHECK_TIMEOUT_SECONDS) as client:
                response = await client.get(f"{self.public_url}/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"[TUNNEL] Health probe failed: {type(e).__name__}: {e}")
            return False

    async def _monitor(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.health_check_interval)
            if self._stopped:
                return
            try:
                await self._check_once()
            except Exception as e:
                logger.error(f"[TUNNEL] Monitor cycle failed: {type(e).__name__}: {e}", exc_info=True)

    async def _check_once(self) -> None:
        try:
            alive = bool(self.public_url) and await asyncio.to_thread(
                self.connector.is_alive, self.public_url
            )
        except PyngrokError as e:
            logger.warning(f"[TUNNEL] Could not list tunnels: {e}")
            alive = False

        if not alive:
            logger.warning("[TUNNEL] Tunnel handle lost")
            await self.reconnect()
        elif not await self.check_health():
            logger.warning("[TUNNEL] Health check failed")
            await self.reconnect()

    async def reconnect(self) -> bool:
        """
        Re-open the tunnel with exponential backoff.

        Returns:
            True once reconnected, False if stopped or attempts are exhausted
        """
        while self.reconnect_attempts < self.max_reconnect_attempts:
            self.reconnect_attempts += 1
            delay = self.base_reconnect_delay * 2 ** (self.reconnect_attempts - 1)
            logger.info(
                f"[TUNNEL] Reconnect attempt {self.reconnect_attempts}/"
                f"{self.max_reconnect_attempts} in {delay:.0f}s"
            )
            await asyncio.sleep(delay)
            if self._stopped:
                logger.info("[TUNNEL] Reconnect abandoned, manager stopped")
                return False

            previous_url = self.public_url
            try:
                if previous_url:
                    try:
                        await asyncio.to_thread(self.connector.close, previous_url)
                    except PyngrokError as e:
                        logger.debug(f"[TUNNEL] Ignoring close error during reconnect: {e}")
                new_url = await asyncio.to_thread(self.connector.open, self.port)
            except PyngrokError as e:
                logger.error(f"[TUNNEL] Reconnect attempt {self.reconnect_attempts} failed: {e}")
                continue

            self.public_url = new_url
            self.reconnect_attempts = 0
            logger.info(f"[TUNNEL] Reconnected: {new_url}")
            if previous_url and new_url != previous_url:
                logger.warning(
                    f"[TUNNEL] Public URL changed from {previous_url} to {new_url}; "
                    "calls in progress may lose their callbacks"
                )
                if self.on_url_change is not None:
                    await self.on_url_change(new_url)
            return True

        logger.error(f"[TUNNEL] Giving up after {self.max_reconnect_attempts} reconnect attempts")
        return False
