"""Wire types shared by the window, the decoder, the pipeline and the loop.

Everything here mirrors the chat-completion JSON contract. ``to_dict`` emits
exactly what goes on the wire (unset optional fields are omitted) and
``from_dict`` accepts what the endpoint sends back.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def _arguments_text(value: Any) -> str | None:
    """Some providers send arguments as a JSON object instead of a string."""
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class FunctionCall:
    name: str
    # Raw JSON text, echoed back unchanged.
    arguments: str

    def to_dict(self) -> dict:
        return {"name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict) -> "FunctionCall":
        return cls(
            name=data.get("name", ""),
            arguments=_arguments_text(data.get("arguments")) or "",
        )


@dataclass(frozen=True)
class ToolCall:
    id: str
    function: FunctionCall
    type: str = "function"

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "function": self.function.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            id=data.get("id", ""),
            type=data.get("type") or "function",
            function=FunctionCall.from_dict(data.get("function") or {}),
        )


@dataclass(frozen=True)
class Message:
    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None

    def __post_init__(self):
        if self.role == Role.TOOL and not self.tool_call_id:
            raise ValueError("tool messages must carry a tool_call_id")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str | None, tool_calls: list[ToolCall] | None = None
    ) -> "Message":
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"role": self.role.value}
        if self.content is not None:
            out["content"] = self.content
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        raw_calls = data.get("tool_calls") or None
        return cls(
            role=Role(data.get("role") or "assistant"),
            content=data.get("content"),
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in raw_calls)
            if raw_calls
            else None,
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict
    type: str = "function"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ChatCompletionRequest:
    model: str
    messages: list[Message]
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool | None = None
    tools: list[ToolDefinition] | None = None
    # "none", "auto", or {"type": "function", "function": {"name": ...}}
    tool_choice: str | dict | None = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.temperature is not None:
            out["temperature"] = self.temperature
        if self.max_tokens is not None:
            out["max_tokens"] = self.max_tokens
        if self.stream is not None:
            out["stream"] = self.stream
        if self.tools:
            out["tools"] = [t.to_dict() for t in self.tools]
        if self.tool_choice is not None:
            out["tool_choice"] = self.tool_choice
        return out


@dataclass
class Choice:
    message: Message
    finish_reason: str | None = None


@dataclass
class ChatCompletionResponse:
    choices: list[Choice] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ChatCompletionResponse":
        choices = [
            Choice(
                message=Message.from_dict(c.get("message") or {}),
                finish_reason=c.get("finish_reason"),
            )
            for c in data.get("choices") or []
        ]
        return cls(choices=choices)

    @property
    def first(self) -> Choice | None:
        return self.choices[0] if self.choices else None


# --- Streaming ---


@dataclass
class ToolCallDelta:
    """One fragment of a tool call; fragments sharing ``index`` belong together."""

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCallDelta":
        fn = data.get("function") or {}
        return cls(
            index=data.get("index", 0),
            id=data.get("id"),
            name=fn.get("name"),
            arguments=_arguments_text(fn.get("arguments")),
        )


@dataclass
class Delta:
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None
    role: Role | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Delta":
        raw_calls = data.get("tool_calls")
        role = data.get("role")
        return cls(
            content=data.get("content"),
            tool_calls=[ToolCallDelta.from_dict(tc) for tc in raw_calls]
            if raw_calls
            else None,
            role=Role(role) if role else None,
        )


@dataclass
class ChunkChoice:
    delta: Delta
    finish_reason: str | None = None


@dataclass
class StreamChunk:
    choices: list[ChunkChoice] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "StreamChunk":
        if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
            raise ValueError("missing field `choices`")
        return cls(
            choices=[
                ChunkChoice(
                    delta=Delta.from_dict(c.get("delta") or {}),
                    finish_reason=c.get("finish_reason"),
                )
                for c in data["choices"]
            ]
        )


@dataclass(frozen=True)
class ValidatedToolCall:
    id: str
    name: str
    arguments: Any
