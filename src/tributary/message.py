from enum import Enum
from typing import Any

from pydantic import BaseModel, field_serializer

from tributary.completion import CompletionMessage, ToolCall


class MessageRole(Enum):
    SYSTEM = "system"
    DEVELOPER = "developer"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str | list[dict[str, Any]] = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class ToolCallRequestMessage(Message):
    """An assistant turn that asked for tools, replayed into the history."""

    role: MessageRole = MessageRole.ASSISTANT
    tool_calls: list[ToolCall]

    @classmethod
    def from_completion(cls, message: CompletionMessage) -> "ToolCallRequestMessage":
        return cls(content=message.content, tool_calls=message.tool_calls)


class ToolCallResultMessage(Message):
    """The output of one tool call, answering ``tool_call_id``."""

    role: MessageRole = MessageRole.TOOL
    tool_call_id: str


def to_wire(messages: list) -> list[dict]:
    """Dump ``Message`` objects to request dicts; dicts pass through."""
    return [
        m.model_dump() if isinstance(m, BaseModel) else m
        for m in messages
    ]
