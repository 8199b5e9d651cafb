"""Shared HTTP client — connection pooling for outbound LLM requests.

Per-request timeout overrides via http.post(url, timeout=60).

Usage:
    from scholar.http_client import http
    resp = await http.post(url, json=payload, timeout=60)
"""

import httpx

_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=30,
    limits=_LIMITS,
    follow_redirects=False,
)


async def close_clients():
    """Shut down the shared client. Call from worker shutdown."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
