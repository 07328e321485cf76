from __future__ import annotations

import logging
import random
import time
from typing import Callable, Iterable, Optional

from cookie_pool.core.config import settings
from cookie_pool.core.errors import NoProxyAvailable

logger = logging.getLogger(__name__)

DEFAULT_FRESH_TRIES = 10


class ProxyRotator:
    """Hands out proxies while steering around recent failures.

    A failed proxy is benched for ``failure_ttl`` seconds and then
    rehabilitated automatically (expiry is checked on every access).  If
    every proxy is benched, the bench is cleared rather than blocking.

    All mutations are single synchronous steps, so the rotator is safe to
    share between sessions on one event loop without locking.
    """

    def __init__(
        self,
        proxies: Iterable[str],
        *,
        failure_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._proxies = list(dict.fromkeys(p for p in proxies if p))
        self._failure_ttl = settings.proxy_failure_ttl if failure_ttl is None else failure_ttl
        self._clock = clock
        self._rng = rng or random.Random()
        self._failed: dict[str, float] = {}

    @property
    def proxies(self) -> list[str]:
        return list(self._proxies)

    @property
    def failed(self) -> frozenset[str]:
        self._rehabilitate()
        return frozenset(self._failed)

    def pick(self, avoid_failed: bool = True) -> str:
        """Uniform random proxy, preferring ones not currently benched.

        Raises:
            NoProxyAvailable: no proxies are configured at all.
        """
        if not self._proxies:
            raise NoProxyAvailable("No proxies configured")
        if not avoid_failed:
            return self._rng.choice(self._proxies)

        self._rehabilitate()
        candidates = [p for p in self._proxies if p not in self._failed]
        if not candidates:
            logger.warning(
                "All %d proxies are marked failed; clearing the failed set.",
                len(self._proxies),
            )
            self._failed.clear()
            candidates = list(self._proxies)
        return self._rng.choice(candidates)

    def pick_fresh(self, current: Optional[str], max_tries: int = DEFAULT_FRESH_TRIES) -> str:
        """Pick a proxy different from *current*, giving up after *max_tries*."""
        proxy = self.pick()
        for _ in range(max_tries - 1):
            if proxy != current:
                return proxy
            proxy = self.pick()
        return proxy

    def mark_failed(self, proxy: Optional[str]) -> None:
        if not proxy:
            return
        self._failed[proxy] = self._clock() + self._failure_ttl
        logger.info(
            "Proxy %s marked failed for %.0fs (%d/%d benched).",
            proxy,
            self._failure_ttl,
            len(self._failed),
            len(self._proxies),
        )

    def _rehabilitate(self) -> None:
        now = self._clock()
        for proxy in [p for p, until in self._failed.items() if until <= now]:
            del self._failed[proxy]
            logger.debug("Proxy %s rehabilitated.", proxy)
