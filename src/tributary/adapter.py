import asyncio
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any
import logging
import os

import httpx
from openai import AsyncOpenAI

from tributary.completion import RerankResponse, RerankResult
from tributary.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ProviderStream:
    """A provider's chunk stream with a cancel switch.

    Iterating yields chunks from *source* until it is exhausted or
    :meth:`cancel` is called.  *close*, when given, releases the
    underlying response; it runs exactly once, either as soon as the
    stream is cancelled or when iteration ends, whichever comes first.

    Args:
        source: Async iterable of chat-completion chunks.
        close: Coroutine function that releases the transport.
    """

    def __init__(
        self,
        source: AsyncIterable[Any],
        close: Callable[[], Awaitable[None]] | None = None,
    ):
        self._source = source
        self._close = close
        self._release: asyncio.Future | None = None
        self.cancelled = False

    def _start_release(self) -> asyncio.Future | None:
        if self._release is None and self._close is not None:
            self._release = asyncio.ensure_future(self._close())
        return self._release

    def cancel(self) -> None:
        """Stop yielding and release the transport without waiting for
        the next chunk.  A consumer blocked on a read is woken up."""
        if self.cancelled:
            return
        self.cancelled = True
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop to close on; aclose() or the end of iteration will.
            return
        self._start_release()

    async def aclose(self) -> None:
        """Release the transport.  Safe to call any number of times."""
        release = self._start_release()
        if release is not None:
            await release

    async def __aiter__(self):
        try:
            async for chunk in self._source:
                if self.cancelled:
                    break
                yield chunk
        except Exception as e:
            # Reads fail once cancel() has closed the response under them.
            if not self.cancelled:
                raise
            logger.debug(f"Provider stream ended after cancel: {e}")
        finally:
            await self.aclose()


class Adapter:
    """Base class for provider adapters.

    An adapter supports an operation by defining an ``async`` method of
    that name; the generator checks for it before every call.

    - ``generate_text(**params)``: a complete chat completion.
    - ``stream_text(**params)``: a :class:`ProviderStream` of chunks.
    - ``generate_embedding(**params)``: an embedding response.
    - ``rerank_documents(**params)``: a :class:`RerankResponse`.

    A synchronous ``validate()`` may also be defined; it runs once when
    the adapter is handed to a generator and should raise
    :class:`~tributary.errors.ConfigurationError` if the adapter
    cannot work.
    """

    name: str = "base"


class OpenAIAdapter(Adapter):
    """Adapter for the OpenAI API and services that mirror it.

    Args:
        api_key: API key.  Read from ``OPENAI_API_KEY`` when omitted.
        base_url: API root.  Defaults to the public OpenAI endpoint.
        max_retries: Retries performed by the ``openai`` client.
        timeout: Request timeout in seconds.
        http_client: Client used for endpoints the ``openai`` SDK does
            not cover (rerank).  One is opened per call when omitted.
    """

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    api_key_env = "OPENAI_API_KEY"
    default_embedding_model = "text-embedding-3-small"
    default_rerank_model = "rerank-1"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_retries: int = 5,
        timeout: float = 600.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            api_key = os.getenv(self.api_key_env)
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self.http_client = http_client
        # Missing keys are reported by validate(), not by the client.
        self.client = AsyncOpenAI(
            api_key=api_key or "",
            base_url=self.base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    def validate(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                f"{self.name}: API key is required "
                f"(pass api_key or set {self.api_key_env})"
            )
        if not self.base_url:
            raise ConfigurationError(f"{self.name}: base URL is required")

    async def generate_text(self, **params):
        return await self.client.chat.completions.create(
            **{**params, "stream": False}
        )

    async def stream_text(self, **params) -> ProviderStream:
        stream = await self.client.chat.completions.create(
            **{
                **params,
                "stream": True,
                "stream_options": {"include_usage": True},
            }
        )
        return ProviderStream(stream, close=stream.close)

    async def generate_embedding(self, **params):
        model = params.get("model") or self.default_embedding_model
        return await self.client.embeddings.create(
            **{**params, "model": model}
        )

    async def rerank_documents(
        self,
        query: str,
        documents: list[str],
        model: str | None = None,
        top_n: int | None = None,
    ) -> RerankResponse:
        """Rank *documents* against *query* via the ``/rerank`` endpoint."""
        body = {
            "model": model or self.default_rerank_model,
            "query": query,
            "documents": documents,
            "top_n": top_n or len(documents),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/rerank"

        if self.http_client is not None:
            response = await self.http_client.post(url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                response = await http.post(url, json=body, headers=headers)
        response.raise_for_status()

        data = response.json()
        items = data.get("results") or data.get("rankings") or []
        results = [
            RerankResult(
                index=item.get("index", i),
                relevance_score=item.get("relevance_score", item.get("score", 0.0)),
            )
            for i, item in enumerate(items)
        ]
        return RerankResponse(results=results, model=data.get("model") or body["model"])

    async def list_models(self) -> list:
        page = await self.client.models.list()
        return page.data


class OpenRouter(OpenAIAdapter):

    name = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    api_key_env = "OPENROUTER_API_KEY"

    def __init__(self, api_key: str | None = None, **kwargs):
        kwargs.setdefault("timeout", 180.0)
        super().__init__(api_key=api_key, **kwargs)


class OpenAICompatibleAdapter(OpenAIAdapter):
    """Adapter for self-hosted OpenAI-compatible servers (vLLM, Ollama).

    Such servers usually ignore the API key, so it defaults to a dummy
    value rather than being read from the environment.
    """

    name = "openai-compatible"

    def __init__(self, base_url: str, api_key: str | None = None, **kwargs):
        super().__init__(api_key=api_key or "DUMMY", base_url=base_url, **kwargs)
