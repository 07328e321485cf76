"""Plausibility checks on a collected payload.

A payload that is empty, has too few cookies for the target's own domain,
or serializes to something tiny almost always means the real page never
loaded (challenge wall, proxy error page, blank tab).
"""

from __future__ import annotations

import json
import re
from typing import Optional, Sequence

from cookie_pool.core.config import settings
from cookie_pool.core.errors import AcquisitionError, ValidationFailed
from cookie_pool.models.artifact.document import PayloadEntry

_NETWORK_MARKERS = re.compile(
    r"ERR_PROXY|ERR_TUNNEL|ERR_CONNECTION|ERR_TIMED_OUT|ECONNREFUSED|ECONNRESET|"
    r"ETIMEDOUT|EHOSTUNREACH|ENETUNREACH|ERR_SOCKS_CONNECTION_FAILED",
    re.IGNORECASE,
)


def domain_matches(entry_domain: str, domain: str) -> bool:
    entry_domain = entry_domain.lower().lstrip(".")
    domain = domain.lower().lstrip(".")
    return entry_domain == domain or entry_domain.endswith("." + domain)


def validate_payload(
    payload: Sequence[PayloadEntry],
    domain: Optional[str],
    *,
    min_domain_entries: Optional[int] = None,
    min_bytes: Optional[int] = None,
) -> None:
    """Raise ``ValidationFailed`` unless *payload* looks like a real page load."""
    if not payload:
        raise ValidationFailed("No cookies collected")

    threshold = settings.min_domain_entries if min_domain_entries is None else min_domain_entries
    if domain:
        own = [entry for entry in payload if domain_matches(entry.domain, domain)]
        if len(own) < threshold:
            raise ValidationFailed(
                f"Only {len(own)} cookies for {domain} (need {threshold})"
            )

    size_floor = settings.min_payload_bytes if min_bytes is None else min_bytes
    size = len(json.dumps([entry.model_dump(by_alias=True) for entry in payload], default=str))
    if size < size_floor:
        raise ValidationFailed(f"Payload too small ({size} bytes, need {size_floor})")


def is_proxy_failure(error: Exception) -> bool:
    """True when *error* points at the proxy or network path, not the page."""
    if isinstance(error, ValidationFailed):
        return False
    if isinstance(error, AcquisitionError) and error.network:
        return True
    return bool(_NETWORK_MARKERS.search(str(error)))
