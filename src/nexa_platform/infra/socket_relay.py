"""HTTP push to the Socket.IO relay that fans chat events out to browsers."""

import logging

import httpx

from nexa_platform.app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SocketRelay:
    """Best-effort ``POST {url}/emit``; never raises."""

    def __init__(self, url: str = "", timeout: float = 5.0):
        self.url = url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SocketRelay":
        settings = settings or get_settings()
        return cls(settings.socket_relay_url, settings.socket_relay_timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def emit(self, event: str, data: dict) -> bool:
        if not self.enabled:
            logger.debug("Socket relay not configured; dropping %s event", event)
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.url}/emit", json={"event": event, "data": data})
            if 200 <= resp.status_code < 300:
                return True
            logger.warning("Socket relay returned %d for %s event", resp.status_code, event)
        except httpx.HTTPError as exc:
            logger.warning("Socket relay push failed for %s event: %s", event, exc)
        return False
