import pytest

from tributary.adapter import Adapter, ProviderStream


# ---------------------------------------------------------------------------
# Chunk builders (mirror the OpenAI chat-completion chunk wire shape)
# ---------------------------------------------------------------------------

def make_chunk(
    content: str | None = None,
    role: str | None = None,
    index: int = 0,
    tool_calls: list[dict] | None = None,
    reasoning: str | None = None,
    finish_reason: str | None = None,
    usage: dict | None = None,
    with_choice: bool = True,
) -> dict:
    """A single streamed chunk as a dict, carrying one choice delta."""
    delta = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls

    chunk = {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "mock-model",
        "choices": [],
    }
    if with_choice:
        chunk["choices"].append({
            "index": index,
            "delta": delta,
            "finish_reason": finish_reason,
        })
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def tool_delta(
    index: int = 0,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
    type: str | None = None,
) -> dict:
    """One tool-call delta as it appears inside ``delta.tool_calls``."""
    delta = {"index": index}
    if call_id is not None:
        delta["id"] = call_id
    if type is not None:
        delta["type"] = type
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    if function:
        delta["function"] = function
    return delta


def text_chunks(*deltas: str, role: str = "assistant") -> list[dict]:
    """Role chunk, one chunk per content delta, then a stop chunk."""
    return [
        make_chunk(role=role),
        *[make_chunk(content=d) for d in deltas],
        make_chunk(finish_reason="stop"),
    ]


USAGE = {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}


# ---------------------------------------------------------------------------
# Fake fragment sources
# ---------------------------------------------------------------------------

class MockSource:
    """Async iterable over pre-built chunks that records how it is used.

    ``error`` is raised after the chunks run out; ``endless`` repeats
    the last chunk forever, for cancellation tests.
    """

    def __init__(
        self,
        chunks: list,
        error: Exception | None = None,
        endless: bool = False,
    ):
        self.chunks = list(chunks)
        self.error = error
        self.endless = endless
        self.pulled = 0
        self.cancel_calls = 0
        self.closed = False

    def cancel(self) -> None:
        self.cancel_calls += 1

    async def _generate(self):
        try:
            for chunk in self.chunks:
                self.pulled += 1
                yield chunk
            if self.error is not None:
                raise self.error
            while self.endless:
                self.pulled += 1
                yield self.chunks[-1]
        finally:
            self.closed = True

    def __aiter__(self):
        return self._generate()


class FakeAsyncStream:
    """Mimics openai.AsyncStream: async iterable with an async close()."""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def close(self):
        self.closed = True


class MockAdapter(Adapter):
    """Adapter that serves pre-queued responses. No network calls."""

    name = "mock"

    def __init__(self):
        self.responses: list = []
        self.streams: list[list] = []
        self.embeddings: list = []
        self.call_log: list[tuple[str, dict]] = []
        self.validate_calls = 0

    def validate(self) -> None:
        self.validate_calls += 1

    async def generate_text(self, **params):
        self.call_log.append(("generate_text", params))
        return self.responses.pop(0)

    async def stream_text(self, **params):
        self.call_log.append(("stream_text", params))
        return ProviderStream(MockSource(self.streams.pop(0)))

    async def generate_embedding(self, **params):
        self.call_log.append(("generate_embedding", params))
        return self.embeddings.pop(0)


class TextOnlyAdapter(Adapter):
    """Adapter with direct text generation and nothing else."""

    name = "text-only"

    async def generate_text(self, **params):
        return {"params": params}


# ---------------------------------------------------------------------------
# Tokenizer double
# ---------------------------------------------------------------------------

class WhitespaceEncoding:
    """Stands in for a tiktoken encoding: one token per word."""

    def __init__(self):
        self.calls: list[str] = []

    def encode(self, text: str, disallowed_special=()):
        self.calls.append(text)
        return text.split()


@pytest.fixture(autouse=True)
def whitespace_tokenizer(monkeypatch):
    """Replace tiktoken so no test downloads BPE files."""
    encoding = WhitespaceEncoding()
    monkeypatch.setattr(
        "tributary.usage._load_encoding", lambda model: encoding,
    )
    return encoding


@pytest.fixture
def mock_adapter():
    return MockAdapter()


@pytest.fixture
def make_stream():
    """Factory fixture wrapping chunks in a ChatCompletionStream."""
    from tributary.streaming import ChatCompletionStream

    def _make(chunks, messages=None, model="mock-model", **source_kwargs):
        source = MockSource(chunks, **source_kwargs)
        stream = ChatCompletionStream(
            source,
            messages=messages or [{"role": "user", "content": "hi there"}],
            model=model,
            system="mock",
        )
        return stream, source
    return _make
