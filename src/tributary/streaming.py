"""Streaming aggregation for chat completions.

Providers yield chat-completion chunks, either SDK objects or plain
dicts in the same wire shape.  :class:`ChatCompletionStream` passes
every chunk through to the caller unchanged while a
:class:`ResponseAccumulator` folds them into one
:class:`~tributary.completion.ChatCompletionResult`.

A stream is single-use.  Iterating it and asking for the final
completion both go through the same drive, which runs at most once::

    stream = await generator.chat.stream(model="gpt-4o", messages=msgs)
    async for chunk in stream:
        ...
    completion = await stream.final_chat_completion()
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from tributary import instrumentation as inst
from tributary.completion import (
    ChatCompletionResult,
    CompletionChoice,
    CompletionMessage,
    FunctionCall,
    ToolCall,
    Usage,
)
from tributary.errors import FinalizationError, StreamStateError
from tributary.usage import estimate_usage

logger = logging.getLogger(__name__)


def _get(obj: Any, name: str) -> Any:
    """Read a wire field from a dict or an SDK object."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _to_usage(usage: Any) -> Usage:
    if isinstance(usage, BaseModel):
        usage = usage.model_dump(exclude_none=True)
    return Usage.model_validate(usage)


@dataclass
class ToolCallSlot:
    """One tool call under construction."""

    id: str = ""
    type: str = "function"
    name: str = ""
    arguments: str = ""

    def is_complete(self) -> bool:
        return bool(self.id and self.name)


class ToolCallAccumulator:
    """Assembles tool calls whose arguments arrive across many fragments.

    Slots are addressed by tool-call index.  A delta for index ``n``
    pads the slot list with empty placeholders up to ``n``, so indices
    may arrive in any order without disturbing slots already built.
    Placeholders that never receive an id and a name are dropped by
    :meth:`finalize`.
    """

    def __init__(self) -> None:
        self.slots: list[ToolCallSlot] = []

    def feed(self, delta: Any) -> None:
        index = _get(delta, "index") or 0
        while len(self.slots) <= index:
            self.slots.append(ToolCallSlot())
        tc = self.slots[index]

        if call_id := _get(delta, "id"):
            tc.id = call_id
        if call_type := _get(delta, "type"):
            tc.type = call_type
        function = _get(delta, "function")
        if name := _get(function, "name"):
            tc.name = name
        if arguments := _get(function, "arguments"):
            tc.arguments += arguments

    def finalize(self, complete_only: bool = True) -> list[ToolCall]:
        """Return tool calls in index order."""
        return [
            ToolCall(
                id=tc.id,
                type=tc.type,
                function=FunctionCall(name=tc.name, arguments=tc.arguments),
            )
            for tc in self.slots
            if tc.is_complete() or not complete_only
        ]


@dataclass
class ChoiceSlot:
    """One completion choice under construction."""

    role: str = ""
    content: str = ""
    reasoning_content: str = ""
    finish_reason: str | None = None
    tool_calls: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)


class ResponseAccumulator:
    """Folds chat-completion chunks into per-choice state.

    Chunks must be applied in arrival order.  Role, tool-call id, type
    and name are last-write-wins; content, reasoning text and tool-call
    arguments only ever grow.
    """

    def __init__(self) -> None:
        self._choices: dict[int, ChoiceSlot] = {}
        self.usage: Usage | None = None
        self.fragment_count = 0

    def apply(self, chunk: Any) -> None:
        self.fragment_count += 1
        for choice in _get(chunk, "choices") or []:
            self._apply_choice(choice)
        if usage := _get(chunk, "usage"):
            self.usage = _to_usage(usage)

    def _apply_choice(self, choice: Any) -> None:
        index = _get(choice, "index") or 0
        slot = self._choices.get(index)
        if slot is None:
            slot = self._choices[index] = ChoiceSlot()

        delta = _get(choice, "delta")
        if role := _get(delta, "role"):
            slot.role = role
        if content := _get(delta, "content"):
            slot.content += content
        if reasoning := _get(delta, "reasoning_content"):
            slot.reasoning_content += reasoning
        for tc_delta in _get(delta, "tool_calls") or []:
            slot.tool_calls.feed(tc_delta)

        if finish_reason := _get(choice, "finish_reason"):
            slot.finish_reason = finish_reason

    def choices(self, complete_only: bool = True) -> list[CompletionChoice]:
        """Materialize the choices built so far, in index order.

        Args:
            complete_only: Drop tool calls that never received both an
                id and a function name.
        """
        return [
            CompletionChoice(
                index=index,
                message=CompletionMessage(
                    role=slot.role,
                    content=slot.content,
                    tool_calls=slot.tool_calls.finalize(complete_only),
                    reasoning_content=slot.reasoning_content,
                ),
                finish_reason=slot.finish_reason,
            )
            for index, slot in sorted(self._choices.items())
        ]


class StreamState(Enum):
    IDLE = "idle"
    DRAINING = "draining"
    FINALIZED = "finalized"


async def _close(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


class ChatCompletionStream:
    """A provider fragment stream plus the completion it adds up to.

    Iterate it to receive each chunk as the provider sent it, then call
    :meth:`final_chat_completion` for the aggregated result.  Calling
    :meth:`final_chat_completion` first drains the stream internally.

    Args:
        source: The provider's async iterable of chunks.  If it has a
            ``cancel()`` method, :meth:`cancel` forwards to it.
        messages: The prompt messages that were sent, used to estimate
            usage when the provider reports none.
        model: Requested model name, echoed into the final completion.
        system: Provider name, used for tracing.
        tokenizer_model: Model whose encoding the usage estimate uses.
    """

    def __init__(
        self,
        source: AsyncIterable[Any],
        *,
        messages: list | None = None,
        model: str | None = None,
        system: str = "unknown",
        tokenizer_model: str | None = None,
    ):
        self._source = source
        self._messages = messages or []
        self.model = model or "unknown"
        self._system = system
        self._tokenizer_model = tokenizer_model

        self._accumulator = ResponseAccumulator()
        self._state = StreamState.IDLE
        self._final: ChatCompletionResult | None = None
        self._cancelled = False
        self._error: BaseException | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> AsyncIterator[Any]:
        if self._state is not StreamState.IDLE:
            raise StreamStateError(
                f"Stream is {self._state.value} and cannot be iterated again"
            )
        self._state = StreamState.DRAINING
        return self._drive()

    async def _drive(self) -> AsyncIterator[Any]:
        span = inst.start_stream_span(self._system, self.model)
        iterator = aiter(self._source)
        try:
            if not self._cancelled:
                async for chunk in iterator:
                    if self._cancelled:
                        break
                    self._accumulator.apply(chunk)
                    yield chunk
            final = self._materialize()
            inst.record_usage(span, final.usage, final.model)
        except Exception as e:
            self._error = e
            logger.warning(
                f"Stream for {self.model} failed after "
                f"{self._accumulator.fragment_count} fragments: {e}"
            )
            inst.record_error(span, e)
            raise
        finally:
            await _close(iterator)
            # An iterator that never started skips its own cleanup.
            if iterator is not self._source:
                await _close(self._source)
            inst.end_span(span)

    def cancel(self) -> None:
        """Stop the stream.  No chunk is yielded after this returns.

        The source's own ``cancel()`` runs immediately; for a
        :class:`~tributary.adapter.ProviderStream` that also releases
        the HTTP response.

        Partial state is kept as-is; a completion requested afterwards
        is best-effort and may be missing content or tool calls.
        """
        if self._cancelled:
            return
        self._cancelled = True
        cancel = getattr(self._source, "cancel", None)
        if cancel is not None:
            cancel()
        logger.debug(
            f"Stream for {self.model} cancelled after "
            f"{self._accumulator.fragment_count} fragments"
        )

    async def final_chat_completion(self) -> ChatCompletionResult:
        """Return the aggregated completion, draining the stream if needed.

        Raises:
            StreamStateError: Another consumer is still iterating.
            FinalizationError: The stream failed upstream, or draining
                ended without producing a completion.
        """
        if self._state is StreamState.FINALIZED:
            return self._final

        if self._state is StreamState.IDLE:
            async for _ in self:
                pass
            if self._final is None:
                raise FinalizationError(
                    "Stream drained without producing a final completion"
                )
            return self._final

        if self._error is not None:
            raise FinalizationError(
                "Stream failed before it completed"
            ) from self._error
        if self._cancelled:
            await _close(self._source)
            return self._materialize()
        raise StreamStateError(
            "Stream is still being consumed; finish iterating it or "
            "cancel() before requesting the final completion"
        )

    def snapshot(self) -> ChatCompletionResult:
        """Build a completion from what has arrived so far.

        Does not finalize the stream and never estimates usage, so
        ``usage`` is ``None`` until the provider sends it.
        """
        if self._final is not None:
            return self._final
        return self._build(self._accumulator.choices(), self._accumulator.usage)

    def _materialize(self) -> ChatCompletionResult:
        if self._final is not None:
            return self._final

        usage = self._accumulator.usage
        if usage is None:
            logger.debug(
                f"No usage reported for {self.model}, estimating locally"
            )
            usage = estimate_usage(
                self._messages,
                self._accumulator.choices(complete_only=False),
                model=self._tokenizer_model,
            )

        if self._cancelled:
            logger.warning(
                f"Finalizing cancelled stream for {self.model}; "
                "the completion may be incomplete"
            )
        self._final = self._build(self._accumulator.choices(), usage)
        self._state = StreamState.FINALIZED
        logger.info(
            f"Stream for {self.model} finalized: "
            f"{self._accumulator.fragment_count} fragments, "
            f"{usage.total_tokens} tokens"
        )
        return self._final

    def _build(
        self, choices: list[CompletionChoice], usage: Usage | None,
    ) -> ChatCompletionResult:
        return ChatCompletionResult(
            id=str(uuid.uuid4()),
            created=int(time.time()),
            model=self.model,
            choices=choices,
            usage=usage,
        )
