"""Client IP extraction for proxied and direct requests.

Forwarding headers are only as trustworthy as the proxy that wrote them.
``X-Forwarded-For`` is read only when ``TRUSTED_PROXY_COUNT`` says how
many proxies sit in front of the app, and then only the hop appended by
the outermost trusted proxy is used: anything to its left was supplied
by the client.  ``CF-Connecting-IP`` is read only when
``TRUST_CF_CONNECTING_IP`` is enabled.  Otherwise ``REMOTE_ADDR`` wins.
"""

from __future__ import annotations

import ipaddress
from typing import Mapping, Optional

from django.conf import settings


def get_client_ip(
    request_meta: Mapping[str, str],
    trusted_proxies: Optional[int] = None,
    trust_cf: Optional[bool] = None,
) -> str:
    """Return the originating client IP from ``request.META``.

    Returns an empty string when no valid address can be determined.
    """
    if trusted_proxies is None:
        trusted_proxies = settings.TRUSTED_PROXY_COUNT
    if trust_cf is None:
        trust_cf = settings.TRUST_CF_CONNECTING_IP

    candidates = []
    if trust_cf:
        candidates.append(request_meta.get("HTTP_CF_CONNECTING_IP", ""))

    forwarded_for = request_meta.get("HTTP_X_FORWARDED_FOR")
    if trusted_proxies > 0 and forwarded_for:
        hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
        if len(hops) >= trusted_proxies:
            candidates.append(hops[-trusted_proxies])

    candidates.append(request_meta.get("REMOTE_ADDR", ""))

    for candidate in candidates:
        candidate = (candidate or "").strip()
        if candidate and is_valid_ip(candidate):
            return candidate
    return ""


def is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True
