from __future__ import annotations

import httpx

from targetgraph.config import settings

_HEADERS = {"Accept": "application/json", "User-Agent": "targetgraph/0.1"}


async def fetch_json(
    url: str,
    *,
    method: str = "GET",
    params: dict | None = None,
    json_body: dict | None = None,
    timeout: float | None = None,
) -> dict | list:
    """Single direct API call; raises on transport errors and non-2xx replies."""
    limit = settings.FALLBACK_TIMEOUT_SECONDS if timeout is None else timeout
    async with httpx.AsyncClient(timeout=httpx.Timeout(limit, connect=min(4.0, limit))) as client:
        response = await client.request(method, url, params=params, json=json_body, headers=_HEADERS)
        response.raise_for_status()
        return response.json()
