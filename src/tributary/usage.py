"""Local token counting for streams whose provider never reports usage.

The numbers are an estimate: every model is counted with one tiktoken
encoding and chat-format overhead tokens are ignored.  Providers that
send a usage block always take precedence.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any

import tiktoken
from pydantic import BaseModel

from tributary.completion import CompletionChoice, Usage

logger = logging.getLogger(__name__)

DEFAULT_TOKENIZER_MODEL = os.environ.get(
    "TRIBUTARY_TOKENIZER_MODEL", "gpt-3.5-turbo"
)
FALLBACK_ENCODING = "cl100k_base"


def _load_encoding(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.debug(
            f"No tiktoken encoding registered for {model}, "
            f"using {FALLBACK_ENCODING}"
        )
        return tiktoken.get_encoding(FALLBACK_ENCODING)


@contextmanager
def tokenizer(model: str = DEFAULT_TOKENIZER_MODEL) -> Iterator[tiktoken.Encoding]:
    """Hold an encoding for the duration of a ``with`` block.

    tiktoken caches encodings per process, so leaving the block only
    drops this reference; the encoding itself stays loaded.
    """
    encoding = _load_encoding(model)
    logger.debug(f"Acquired tokenizer for {model}")
    try:
        yield encoding
    finally:
        logger.debug(f"Released tokenizer for {model}")


def _prompt_text(message: Any) -> str:
    if isinstance(message, BaseModel):
        message = message.model_dump()
    role = message.get("role") or ""
    content = message.get("content") or ""
    if isinstance(content, list):
        content = "".join(
            part.get("text") or ""
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return f"{role}: {content}"


def _count(encoding: tiktoken.Encoding, text: str) -> int:
    # User text may legitimately contain strings like "<|endoftext|>".
    return len(encoding.encode(text, disallowed_special=()))


def estimate_usage(
    messages: Iterable[Any],
    choices: Iterable[CompletionChoice],
    model: str | None = None,
) -> Usage:
    """Count prompt and completion tokens locally.

    Args:
        messages: The outbound prompt messages (dicts or ``Message``).
        choices: The assembled completion choices.
        model: Model whose encoding to use; defaults to
            ``DEFAULT_TOKENIZER_MODEL``.

    Returns:
        A ``Usage`` with ``total_tokens == prompt_tokens + completion_tokens``.
    """
    with tokenizer(model or DEFAULT_TOKENIZER_MODEL) as encoding:
        prompt_tokens = sum(
            _count(encoding, _prompt_text(m)) for m in messages
        )

        completion_tokens = 0
        for choice in choices:
            if choice.message.content:
                completion_tokens += _count(encoding, choice.message.content)
            for tc in choice.message.tool_calls:
                if tc.function.name:
                    completion_tokens += _count(encoding, tc.function.name)
                if tc.function.arguments:
                    completion_tokens += _count(encoding, tc.function.arguments)

    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )
