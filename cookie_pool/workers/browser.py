"""Browser capability used by acquisition sessions.

``BrowserSession`` is the seam: open a browsing context behind a proxy,
visit a URL, collect the resulting cookies, close the context.  How the
browser is launched and how it handles a target's challenge page is the
capability's business, not the pool's.

``RemoteBrowserSession`` talks to a browser-worker service over HTTP using
a shared ``httpx.AsyncClient``; see ``get_http_client`` and
``close_http_client`` for lifecycle hooks.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import BaseModel, Field, ValidationError
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    wait_exponential,
)

from cookie_pool.core.config import settings
from cookie_pool.core.errors import CapabilityError
from cookie_pool.models.artifact.document import PayloadEntry

logger = logging.getLogger(__name__)

# Module-level shared client
_http_client: Optional[httpx.AsyncClient] = None


class VisitOutcome(BaseModel):
    """Result of one navigation.  ``ok=False`` carries a structured failure."""

    ok: bool
    payload: list[PayloadEntry] = Field(default_factory=list)
    final_url: Optional[str] = None
    error: Optional[str] = None
    network_error: bool = False


class BrowserSession(ABC):
    """Capability contract; must tolerate ``max_concurrent`` parallel callers."""

    name: str = "browser"

    @abstractmethod
    async def open(self, proxy: Optional[str]) -> str:
        """Acquire a browsing context behind *proxy* and return its handle."""

    @abstractmethod
    async def visit(self, handle: str, url: str) -> VisitOutcome:
        """Navigate and collect cookies; failures come back as ``ok=False``."""

    @abstractmethod
    async def close(self, handle: str) -> None:
        """Release the browsing context behind *handle*."""


def get_http_client() -> httpx.AsyncClient:
    """Return the shared AsyncClient.  Creates one if missing."""
    global _http_client  # noqa: PLW0603
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            base_url=settings.browser_endpoint,
            timeout=httpx.Timeout(settings.browser_http_timeout),
            headers={"User-Agent": "CookiePool/1.0"},
        )
    return _http_client


async def close_http_client() -> None:
    """Close the shared AsyncClient gracefully."""
    global _http_client  # noqa: PLW0603
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None
        logger.info("Browser worker client closed.")


@retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
    stop=lambda rs: rs.attempt_number >= settings.browser_max_retries + 1,
    wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=False,
)
async def _open_with_retry(proxy: Optional[str]) -> httpx.Response:
    """Single open request; tenacity retries on transient transport errors."""
    return await get_http_client().post("/sessions", json={"proxy": proxy})


class RemoteBrowserSession(BrowserSession):
    """Client for a browser-worker service.

    Endpoints::

        POST   /sessions              {"proxy": ...}  -> {"session_id": ...}
        POST   /sessions/{id}/visit   {"url": ...}    -> VisitOutcome
        DELETE /sessions/{id}
    """

    name = "remote"

    async def open(self, proxy: Optional[str]) -> str:
        try:
            response = await _open_with_retry(proxy)
        except RetryError as exc:
            raise CapabilityError(
                f"Browser worker unreachable after {settings.browser_max_retries + 1} "
                f"attempts: {exc.last_attempt.exception()}",
                network=True,
            ) from exc
        except httpx.RequestError as exc:
            raise CapabilityError(f"Browser worker request failed: {exc}") from exc

        if response.status_code >= 400:
            raise CapabilityError(
                f"Browser worker refused session ({response.status_code}): {response.text[:200]}",
                network=response.status_code in (407, 502, 503, 504),
            )
        try:
            return str(response.json()["session_id"])
        except (ValueError, KeyError) as exc:
            raise CapabilityError("Browser worker returned no session id") from exc

    async def visit(self, handle: str, url: str) -> VisitOutcome:
        try:
            response = await get_http_client().post(
                f"/sessions/{handle}/visit", json={"url": url}
            )
        except httpx.TimeoutException as exc:
            return VisitOutcome(ok=False, error=f"Visit timed out: {exc}", network_error=True)
        except httpx.RequestError as exc:
            return VisitOutcome(ok=False, error=f"Visit request failed: {exc}", network_error=True)

        if response.status_code >= 400:
            return VisitOutcome(
                ok=False,
                error=f"Browser worker error ({response.status_code}): {response.text[:200]}",
            )
        try:
            body = response.json()
            return VisitOutcome(
                ok=bool(body.get("ok", True)),
                payload=body.get("cookies") or [],
                final_url=body.get("final_url"),
                error=body.get("error"),
                network_error=bool(body.get("network_error", False)),
            )
        except (ValueError, ValidationError) as exc:
            return VisitOutcome(ok=False, error=f"Malformed visit response: {exc}")

    async def close(self, handle: str) -> None:
        response = await get_http_client().delete(f"/sessions/{handle}")
        if response.status_code >= 400 and response.status_code != 404:
            logger.warning(
                "Browser worker failed to close session %s (%d).",
                handle,
                response.status_code,
            )


_BACKENDS: dict[str, type[BrowserSession]] = {
    RemoteBrowserSession.name: RemoteBrowserSession,
}


def build_browser_session(backend: Optional[str] = None) -> BrowserSession:
    """Instantiate the capability named by *backend* (default from settings)."""
    name = backend or settings.browser_backend
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown browser backend {name!r}; expected one of {sorted(_BACKENDS)}"
        ) from None
