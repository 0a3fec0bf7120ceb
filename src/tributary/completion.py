"""Result records produced by the generation facade.

These mirror the OpenAI chat-completion response so that a completion
assembled from a stream can be used anywhere a non-streaming one can.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class FunctionCall(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    id: str = ""
    type: str = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class CompletionMessage(BaseModel):
    role: str = ""
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    reasoning_content: str = ""


class CompletionChoice(BaseModel):
    index: int
    message: CompletionMessage
    finish_reason: str | None = None


class Usage(BaseModel):
    """Token accounting for one completion.

    Provider usage blocks often carry detail fields beyond the three
    counts (cached tokens, reasoning tokens); those are kept as extras.
    """

    model_config = {"extra": "allow"}

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResult(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[CompletionChoice] = Field(default_factory=list)
    usage: Usage | None = None


class RerankResult(BaseModel):
    index: int
    relevance_score: float = 0.0


class RerankResponse(BaseModel):
    results: list[RerankResult] = Field(default_factory=list)
    model: str
