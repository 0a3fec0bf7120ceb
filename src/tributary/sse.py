"""Server-Sent Events adapter for chat-completion streams."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel

from tributary.streaming import ChatCompletionStream


def _dump(chunk: Any) -> str:
    if isinstance(chunk, BaseModel):
        return chunk.model_dump_json(exclude_unset=True)
    return json.dumps(chunk)


async def sse_generator(
    stream: ChatCompletionStream,
    include_completion: bool = False,
) -> AsyncIterator[str]:
    """Convert a chat-completion stream into SSE-formatted strings.

    Each chunk becomes a ``data:`` record.  With *include_completion*,
    the aggregated completion follows as an ``event: completion``
    record.  The stream always ends with ``data: [DONE]``.
    """
    async for chunk in stream:
        yield f"data: {_dump(chunk)}\n\n"
    if include_completion:
        completion = await stream.final_chat_completion()
        yield f"event: completion\ndata: {completion.model_dump_json()}\n\n"
    yield "data: [DONE]\n\n"
