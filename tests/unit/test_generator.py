import pytest

from tributary.adapter import Adapter
from tributary.completion import RerankResponse, RerankResult
from tributary.errors import CapabilityError, ConfigurationError
from tributary.generator import TextGenerator, text_generator
from tributary.message import Message, MessageRole
from tributary.streaming import ChatCompletionStream

from tests.conftest import TextOnlyAdapter, text_chunks


class MisconfiguredAdapter(Adapter):
    name = "broken"

    def validate(self):
        raise ConfigurationError("broken: API key is required")

    async def generate_text(self, **params):
        raise AssertionError("never reached")


class RerankOnlyAdapter(Adapter):
    name = "reranker"

    def __init__(self):
        self.calls = []

    async def rerank_documents(self, **params):
        self.calls.append(params)
        return RerankResponse(
            results=[RerankResult(index=1, relevance_score=0.9)],
            model="rerank-1",
        )


# ---------------------------------------------------------------------------
# Construction and capabilities
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_validate_runs_once(self, mock_adapter):
        TextGenerator(mock_adapter)
        assert mock_adapter.validate_calls == 1

    def test_validate_failure_propagates(self):
        with pytest.raises(ConfigurationError, match="API key"):
            TextGenerator(MisconfiguredAdapter())

    def test_adapter_without_validate(self):
        generator = TextGenerator(TextOnlyAdapter())
        assert generator.adapter_name == "text-only"

    def test_adapter_name_falls_back_to_class_name(self):
        class Bare:
            pass

        assert TextGenerator(Bare()).adapter_name == "Bare"

    def test_text_generator_factory(self, mock_adapter):
        generator = text_generator(mock_adapter, tokenizer_model="gpt-4o")
        assert isinstance(generator, TextGenerator)
        assert generator.tokenizer_model == "gpt-4o"

    def test_supports(self):
        generator = TextGenerator(TextOnlyAdapter())
        assert generator.supports("generate_text")
        assert not generator.supports("stream_text")
        assert not generator.supports("generate_embedding")


class TestCapabilityErrors:
    @pytest.mark.asyncio
    async def test_stream_without_stream_text(self):
        generator = TextGenerator(TextOnlyAdapter())

        with pytest.raises(CapabilityError) as excinfo:
            await generator.chat.stream(model="m", messages=[])

        assert excinfo.value.adapter_name == "text-only"
        assert "streaming text generation" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_embedding_without_generate_embedding(self):
        generator = TextGenerator(TextOnlyAdapter())

        with pytest.raises(CapabilityError, match="embedding"):
            await generator.embedding.create(input=["x"])

    @pytest.mark.asyncio
    async def test_rerank_without_rerank_documents(self, mock_adapter):
        generator = TextGenerator(mock_adapter)

        with pytest.raises(CapabilityError, match="rerank"):
            await generator.rerank.create(query="q", documents=["a"])

    @pytest.mark.asyncio
    async def test_create_without_generate_text(self):
        generator = TextGenerator(RerankOnlyAdapter())

        with pytest.raises(CapabilityError, match="text generation"):
            await generator.chat.create(model="m", messages=[])

    @pytest.mark.asyncio
    async def test_capability_checked_before_preparing(self, monkeypatch):
        generator = TextGenerator(TextOnlyAdapter())

        async def fail(params):
            raise AssertionError("prepare must not run")

        monkeypatch.setattr(generator, "prepare", fail)
        with pytest.raises(CapabilityError):
            await generator.chat.stream(model="m", messages=[])

    def test_require_follows_supports(self, mock_adapter, monkeypatch):
        generator = TextGenerator(mock_adapter)
        assert generator.require("generate_text", "text generation")

        monkeypatch.setattr(generator, "supports", lambda operation: False)
        with pytest.raises(CapabilityError, match="text generation"):
            generator.require("generate_text", "text generation")

    def test_non_callable_attribute_is_not_a_capability(self):
        adapter = TextOnlyAdapter()
        adapter.generate_embedding = None
        generator = TextGenerator(adapter)

        assert not generator.supports("generate_embedding")
        with pytest.raises(CapabilityError, match="embedding"):
            generator.require("generate_embedding", "embedding")


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------

class TestChatCreate:
    @pytest.mark.asyncio
    async def test_forwards_params(self, mock_adapter):
        mock_adapter.responses.append("completion")
        generator = TextGenerator(mock_adapter)
        messages = [{"role": "user", "content": "hi"}]

        result = await generator.chat.create(
            model="gpt-4o", messages=messages, temperature=0.2,
        )

        assert result == "completion"
        op, params = mock_adapter.call_log[0]
        assert op == "generate_text"
        assert params == {
            "model": "gpt-4o", "messages": messages, "temperature": 0.2,
        }

    @pytest.mark.asyncio
    async def test_message_models_dumped_to_dicts(self, mock_adapter):
        mock_adapter.responses.append("ok")
        generator = TextGenerator(mock_adapter)

        await generator.chat.create(
            model="m",
            messages=[
                Message(role=MessageRole.SYSTEM, content="be terse"),
                {"role": "user", "content": "hi"},
            ],
        )

        _, params = mock_adapter.call_log[0]
        assert params["messages"] == [
            {"role": "system", "content": "be terse"},
            {"role": "user", "content": "hi"},
        ]

    @pytest.mark.asyncio
    async def test_adapter_error_propagates(self, mock_adapter):
        generator = TextGenerator(mock_adapter)

        # No queued response: the adapter raises IndexError.
        with pytest.raises(IndexError):
            await generator.chat.create(model="m", messages=[])


class TestChatStream:
    @pytest.mark.asyncio
    async def test_returns_aggregating_stream(self, mock_adapter):
        mock_adapter.streams.append(text_chunks("Hel", "lo"))
        generator = TextGenerator(mock_adapter)

        stream = await generator.chat.stream(
            model="gpt-4o", messages=[{"role": "user", "content": "hi"}],
        )

        assert isinstance(stream, ChatCompletionStream)
        assert stream.model == "gpt-4o"
        chunks = [c async for c in stream]
        assert len(chunks) == 4
        completion = await stream.final_chat_completion()
        assert completion.choices[0].message.content == "Hello"

    @pytest.mark.asyncio
    async def test_stream_params_forwarded(self, mock_adapter):
        mock_adapter.streams.append(text_chunks("x"))
        generator = TextGenerator(mock_adapter)

        await generator.chat.stream(
            model="m", messages=[{"role": "user", "content": "hi"}], top_p=0.5,
        )

        op, params = mock_adapter.call_log[0]
        assert op == "stream_text"
        assert params["top_p"] == 0.5

    @pytest.mark.asyncio
    async def test_tokenizer_model_used_for_estimate(
        self, mock_adapter, monkeypatch, whitespace_tokenizer,
    ):
        requested = []

        def load(model):
            requested.append(model)
            return whitespace_tokenizer

        monkeypatch.setattr("tributary.usage._load_encoding", load)
        mock_adapter.streams.append(text_chunks("x"))
        generator = TextGenerator(mock_adapter, tokenizer_model="gpt-4o-mini")

        stream = await generator.chat.stream(model="m", messages=[])
        await stream.final_chat_completion()

        assert requested == ["gpt-4o-mini"]

    @pytest.mark.asyncio
    async def test_cancel_reaches_provider_stream(self, mock_adapter):
        mock_adapter.streams.append(text_chunks("a", "b", "c"))
        generator = TextGenerator(mock_adapter)
        stream = await generator.chat.stream(model="m", messages=[])

        seen = []
        async for chunk in stream:
            seen.append(chunk)
            stream.cancel()

        assert len(seen) == 1
        completion = await stream.final_chat_completion()
        assert completion.choices[0].message.role == "assistant"


class TestEmbeddingAndRerank:
    @pytest.mark.asyncio
    async def test_embedding_passthrough(self, mock_adapter):
        mock_adapter.embeddings.append({"data": [[0.1, 0.2]]})
        generator = TextGenerator(mock_adapter)

        result = await generator.embedding.create(
            model="text-embedding-3-small", input=["hello"],
        )

        assert result == {"data": [[0.1, 0.2]]}
        assert mock_adapter.call_log[0] == (
            "generate_embedding",
            {"model": "text-embedding-3-small", "input": ["hello"]},
        )

    @pytest.mark.asyncio
    async def test_rerank_passthrough(self):
        adapter = RerankOnlyAdapter()
        generator = TextGenerator(adapter)

        result = await generator.rerank.create(
            query="q", documents=["a", "b"], top_n=1,
        )

        assert result.results[0].index == 1
        assert adapter.calls == [{"query": "q", "documents": ["a", "b"], "top_n": 1}]
