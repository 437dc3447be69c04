"""Connectivity probes used before every remote call."""

import logging
import threading
import time
from typing import Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


@runtime_checkable
class ConnectivityProbe(Protocol):
    """Answers whether the remote store is currently reachable."""

    def is_connected(self) -> bool: ...


class StaticConnectivity:
    """Connectivity that is whatever it was last set to.

    Used in tests and by hosts that learn about network changes from the
    platform rather than by probing.
    """

    def __init__(self, online: bool = True):
        self._online = online

    def set_online(self, online: bool) -> None:
        self._online = online

    def is_connected(self) -> bool:
        return self._online


class HttpConnectivityProbe:
    """Probe a health URL over HTTP, caching the answer briefly.

    Any response below 500 counts as reachable: an auth error still proves
    the network path works.

    Args:
        url: URL to probe.
        timeout: Request timeout in seconds.
        ttl: How long a probe result is reused, in seconds.
        client: Optional preconfigured ``httpx.Client``.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        ttl: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.ttl = ttl
        self._client = client or httpx.Client(timeout=timeout)
        self._lock = threading.Lock()
        self._cached: Optional[bool] = None
        self._checked_at = 0.0

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def is_connected(self) -> bool:
        with self._lock:
            now = time.monotonic()
            if self._cached is not None and now - self._checked_at < self.ttl:
                return self._cached

            try:
                response = self._client.get(self.url, timeout=self.timeout)
                self._cached = response.status_code < 500
                if not self._cached:
                    logger.debug(f"Connectivity probe got HTTP {response.status_code}")
            except httpx.HTTPError as e:
                logger.debug(f"Connectivity check failed: {e}")
                self._cached = False

            self._checked_at = now
            return self._cached

    def close(self) -> None:
        self._client.close()
