"""The public generation facade.

:class:`TextGenerator` checks that its adapter supports an operation,
resolves file and audio references in the prompt, and delegates::

    generator = TextGenerator(OpenAIAdapter())
    completion = await generator.chat.create(model="gpt-4o", messages=msgs)
    stream = await generator.chat.stream(model="gpt-4o", messages=msgs)
    vectors = await generator.embedding.create(input=["hello"])
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tributary import instrumentation as inst
from tributary.completion import RerankResponse
from tributary.errors import CapabilityError
from tributary.message import to_wire
from tributary.preprocess import transform_messages
from tributary.streaming import ChatCompletionStream

logger = logging.getLogger(__name__)


class Chat:
    """``generator.chat``: complete and streamed chat completions."""

    def __init__(self, generator: TextGenerator):
        self._generator = generator

    async def create(self, **params: Any):
        """Request a complete chat completion.

        Raises:
            CapabilityError: The adapter cannot generate text.
        """
        gen = self._generator
        generate_text = gen.require("generate_text", "text generation")
        prepared = await gen.prepare(params)
        model = prepared.get("model") or "unknown"
        logger.debug(f"chat.create via {gen.adapter_name} for {model}")

        async with inst.completion_span(gen.adapter_name, model) as span:
            try:
                response = await generate_text(**prepared)
            except Exception as e:
                inst.record_error(span, e)
                raise
            inst.record_usage(
                span,
                getattr(response, "usage", None),
                getattr(response, "model", None),
            )
        return response

    async def stream(self, **params: Any) -> ChatCompletionStream:
        """Start a streamed chat completion.

        The returned stream yields the provider's chunks unchanged and
        aggregates them; see :class:`ChatCompletionStream`.

        Raises:
            CapabilityError: The adapter cannot stream text.
        """
        gen = self._generator
        stream_text = gen.require("stream_text", "streaming text generation")
        prepared = await gen.prepare(params)
        logger.debug(
            f"chat.stream via {gen.adapter_name} for "
            f"{prepared.get('model') or 'unknown'}"
        )
        source = await stream_text(**prepared)
        return ChatCompletionStream(
            source,
            messages=prepared["messages"],
            model=prepared.get("model"),
            system=gen.adapter_name,
            tokenizer_model=gen.tokenizer_model,
        )


class Embedding:
    """``generator.embedding``: a pass-through to the adapter."""

    def __init__(self, generator: TextGenerator):
        self._generator = generator

    async def create(self, **params: Any):
        gen = self._generator
        generate_embedding = gen.require("generate_embedding", "embedding")
        model = params.get("model") or "default"
        async with inst.embedding_span(gen.adapter_name, model) as span:
            try:
                return await generate_embedding(**params)
            except Exception as e:
                inst.record_error(span, e)
                raise


class Rerank:
    """``generator.rerank``: a pass-through to the adapter."""

    def __init__(self, generator: TextGenerator):
        self._generator = generator

    async def create(self, **params: Any) -> RerankResponse:
        rerank_documents = self._generator.require("rerank_documents", "rerank")
        return await rerank_documents(**params)


class TextGenerator:
    """Entry point for generation against a single adapter.

    The adapter's ``validate()``, if it has one, runs here, so a
    misconfigured adapter fails before any request is made.

    Args:
        adapter: Provider adapter; see :class:`~tributary.adapter.Adapter`.
        http_client: Client used to download file and audio references
            found in messages.  One is opened per request when omitted.
        tokenizer_model: Model whose encoding is used when a stream's
            usage has to be estimated locally.
    """

    def __init__(
        self,
        adapter: Any,
        *,
        http_client: httpx.AsyncClient | None = None,
        tokenizer_model: str | None = None,
    ):
        self.adapter = adapter
        self.http_client = http_client
        self.tokenizer_model = tokenizer_model
        self.chat = Chat(self)
        self.embedding = Embedding(self)
        self.rerank = Rerank(self)
        self.validate()

    @property
    def adapter_name(self) -> str:
        return getattr(self.adapter, "name", type(self.adapter).__name__)

    def validate(self) -> None:
        validator = getattr(self.adapter, "validate", None)
        if validator is not None:
            validator()

    def supports(self, operation: str) -> bool:
        return callable(getattr(self.adapter, operation, None))

    def require(self, operation: str, description: str):
        if not self.supports(operation):
            raise CapabilityError(self.adapter_name, description)
        return getattr(self.adapter, operation)

    async def prepare(self, params: dict) -> dict:
        """Dump messages to wire dicts and resolve remote references."""
        messages = to_wire(params.get("messages") or [])
        messages = await transform_messages(messages, self.http_client)
        return {**params, "messages": messages}


def text_generator(adapter: Any, **kwargs: Any) -> TextGenerator:
    return TextGenerator(adapter, **kwargs)
