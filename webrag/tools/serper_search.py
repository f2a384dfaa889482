from __future__ import annotations

from typing import Any

import httpx

from webrag.config import settings
from webrag.models.errors import ConfigurationError, SearchError


async def search(
    query: str,
    *,
    result_count: int | None = None,
    autocorrect: bool = True,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Run one Google search through serper.dev and return the raw JSON payload.

    API: POST https://google.serper.dev/search
    Headers:
        - X-API-KEY: <api_key>
    Body:
        {"q": <query>, "num": <count>, "autocorrect": true}
    """
    api_key = settings.serper_api_key.strip()
    if not api_key:
        raise ConfigurationError("SERPER_API_KEY not configured")

    request_body = {
        "q": query,
        "num": result_count or settings.search_result_count,
        "autocorrect": autocorrect,
    }

    async def _do_request(client: httpx.AsyncClient) -> Any:
        response = await client.post(
            settings.serper_base_url,
            json=request_body,
            headers={
                "X-API-KEY": api_key,
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()

    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
                payload = await _do_request(client)
        else:
            payload = await _do_request(http_client)
    except httpx.HTTPStatusError as exc:
        raise SearchError(
            f"Search for {query!r} failed with HTTP {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        raise SearchError(f"Search for {query!r} failed: {exc}") from exc
    except ValueError as exc:
        raise SearchError(f"Search for {query!r} returned invalid JSON") from exc

    if not isinstance(payload, dict):
        raise SearchError(f"Search for {query!r} returned an unexpected body")
    return payload
