"""Resolve file and audio references in outbound messages.

User messages may carry content parts that point at remote resources:

- ``{"type": "file_url", "url": ..., "name": ...}`` becomes a ``text``
  part holding the document's contents.
- ``{"type": "input_audio", "input_audio": {"data": <url>, ...}}``
  has its URL replaced by the base64-encoded audio.

Every reference resolves concurrently.  A reference that cannot be
resolved degrades on its own and never fails the request.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

import httpx

from tributary.documents import fetch_document, format_document_prompt

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30.0

_REFERENCE_TYPES = {"file_url", "input_audio"}


def _has_references(message: dict) -> bool:
    content = message.get("content")
    return (
        message.get("role") == "user"
        and isinstance(content, list)
        and any(
            isinstance(part, dict) and part.get("type") in _REFERENCE_TYPES
            for part in content
        )
    )


async def file_url_to_text(part: dict, client: httpx.AsyncClient) -> dict:
    ref = part.get("file_url") or part
    url = ref.get("url", "")
    name = ref.get("name") or url.rsplit("/", 1)[-1]
    try:
        text = await fetch_document(client, url, name)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.error(f"Document parsing failed [{name}]: {e}")
        return {"type": "text", "text": f"[Document parsing failed: {name}]"}
    return {"type": "text", "text": format_document_prompt(name, text)}


async def audio_url_to_base64(part: dict, client: httpx.AsyncClient) -> dict:
    """Inline remote audio as base64.

    Data that is already base64 is returned as-is.  If the download
    fails the part is returned unchanged so the model can try the URL.
    """
    audio = part.get("input_audio") or {}
    data = audio.get("data") or ""
    if not data.startswith(("http://", "https://")):
        return part

    try:
        response = await client.get(data)
        response.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.error(f"Audio download failed [{data}]: {e}")
        return part

    return {
        "type": "input_audio",
        "input_audio": {
            "data": base64.b64encode(response.content).decode("ascii"),
            "format": audio.get("format"),
        },
    }


async def _transform_part(part: Any, client: httpx.AsyncClient) -> Any:
    if not isinstance(part, dict):
        return part
    if part.get("type") == "file_url":
        return await file_url_to_text(part, client)
    if part.get("type") == "input_audio":
        return await audio_url_to_base64(part, client)
    return part


async def _transform_message(message: dict, client: httpx.AsyncClient) -> dict:
    if not _has_references(message):
        return message
    content = await asyncio.gather(
        *(_transform_part(p, client) for p in message["content"])
    )
    return {**message, "content": list(content)}


async def transform_messages(
    messages: list[dict], client: httpx.AsyncClient | None = None,
) -> list[dict]:
    """Return a copy of *messages* with every remote reference resolved.

    Args:
        messages: Wire-format message dicts.
        client: HTTP client for downloads.  When omitted, one is opened
            for this call only, and only if a message needs it.
    """
    if not any(_has_references(m) for m in messages):
        return list(messages)

    if client is None:
        async with httpx.AsyncClient(
            timeout=FETCH_TIMEOUT, follow_redirects=True,
        ) as owned:
            return await transform_messages(messages, owned)

    resolved = await asyncio.gather(
        *(_transform_message(m, client) for m in messages)
    )
    return list(resolved)
