from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx

from webrag.config import settings
from webrag.models.errors import ReaderError


@dataclass
class ReaderResult:
    """Page content returned by the remote reader."""
    url: str
    title: str | None
    markdown: str


def _from_object(body: dict[str, Any]) -> tuple[str | None, str] | None:
    content = body.get("content") or body.get("markdown") or body.get("text")
    if not isinstance(content, str) or not content.strip():
        return None
    title = body.get("title")
    return (title.strip() or None) if isinstance(title, str) else None, content


def decode_reader_body(raw: str) -> tuple[str | None, str]:
    """Return (title, markdown) from any of the reader's response shapes.

    Accepted shapes, in order:
        - direct object: {"url", "title", "content"}
        - envelope: {"code", "status", "data": {"url", "title", "content"}}
        - raw text/markdown body
    """
    text = raw.strip()
    if not text:
        raise ReaderError("Reader returned an empty body")

    try:
        payload = json.loads(text)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict):
            decoded = _from_object(data)
            if decoded is not None:
                return decoded
        decoded = _from_object(payload)
        if decoded is not None:
            return decoded
        raise ReaderError("Reader response has no content")
    if payload is not None and not isinstance(payload, str):
        raise ReaderError("Reader returned an unexpected JSON body")

    return None, payload if isinstance(payload, str) and payload.strip() else text


async def read(url: str, *, http_client: httpx.AsyncClient | None = None) -> ReaderResult:
    """Fetch a page through the Jina reader.

    API: POST https://r.jina.ai/
    Headers:
        - Accept: application/json
        - Authorization: Bearer <api_key> (optional)
    Body:
        {"url": <url>}
    """
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    api_key = settings.jina_api_key.strip()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    async def _do_request(client: httpx.AsyncClient) -> str:
        response = await client.post(settings.jina_reader_url, json={"url": url}, headers=headers)
        response.raise_for_status()
        return response.text

    try:
        if http_client is None:
            async with httpx.AsyncClient(
                timeout=settings.reader_timeout_seconds,
                follow_redirects=True,
            ) as client:
                raw = await _do_request(client)
        else:
            raw = await _do_request(http_client)
    except httpx.HTTPStatusError as exc:
        raise ReaderError(f"Reader failed for {url} with HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise ReaderError(f"Reader failed for {url}: {exc}") from exc

    title, markdown = decode_reader_body(raw)
    return ReaderResult(url=url, title=title, markdown=markdown)
