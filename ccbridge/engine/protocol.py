"""Wire models for the Claude CLI ``--output-format stream-json`` protocol.

Every line the CLI writes is one JSON object with a ``type``
discriminant. Models accept unknown extra fields so a newer CLI that
adds keys keeps working; only the fields the engine reads are typed.

Recognized shapes:
  system       ``subtype=init`` carries the agent session id and tools
  assistant    ``message.content`` array of text / tool_use items
  user         ``message.content`` array of tool_result items
  result       terminal stats (status, cost, duration, turns)
  tool_use     legacy flat tool call
  tool_result  legacy flat tool result
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class WireModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class McpServerInfo(WireModel):
    name: str = ""
    status: str = ""


class ContentItem(WireModel):
    """One entry of a message content array.

    Kept as a single loose shape rather than a union: the CLI also emits
    kinds the engine does not care about (``thinking``, images), and
    those must not invalidate the whole message.
    """
    type: str
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    content: Any = None
    is_error: bool | None = None


class MessageBody(WireModel):
    id: str | None = None
    role: str | None = None
    model: str | None = None
    content: list[ContentItem] | str = Field(default_factory=list)

    def items(self) -> list[ContentItem]:
        if isinstance(self.content, str):
            return [ContentItem(type="text", text=self.content)]
        return list(self.content)


class SystemMessage(WireModel):
    type: Literal["system"]
    subtype: str | None = None
    session_id: str | None = None
    tools: list[str] = Field(default_factory=list)
    mcp_servers: list[McpServerInfo] | None = None
    model: str | None = None
    cwd: str | None = None


class AssistantMessage(WireModel):
    type: Literal["assistant"]
    message: MessageBody
    session_id: str | None = None


class UserMessage(WireModel):
    type: Literal["user"]
    message: MessageBody
    session_id: str | None = None


class ResultMessage(WireModel):
    type: Literal["result"]
    # Plain str: newer CLIs report extra subtypes such as
    # "error_during_execution". Missing and unknown ones map to error.
    subtype: str | None = None
    session_id: str | None = None
    result: str | None = None
    is_error: bool | None = None
    cost_usd: float | None = None
    total_cost_usd: float | None = None
    # Numeric rather than int: some CLI builds report fractional timings.
    duration_ms: float | None = None
    duration_api_ms: float | None = None
    num_turns: float | None = None


class LegacyToolUseMessage(WireModel):
    type: Literal["tool_use"]
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None
    session_id: str | None = None


class LegacyToolResultMessage(WireModel):
    type: Literal["tool_result"]
    tool_name: str | None = None
    tool_result: Any = ""
    tool_use_id: str | None = None
    is_error: bool = False
    session_id: str | None = None


AgentMessage = Annotated[
    Union[
        SystemMessage,
        AssistantMessage,
        UserMessage,
        ResultMessage,
        LegacyToolUseMessage,
        LegacyToolResultMessage,
    ],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[AgentMessage] = TypeAdapter(AgentMessage)


def parse_message(data: Any) -> AgentMessage:
    """Validate a decoded JSON value against the known message shapes.

    Raises pydantic.ValidationError for non-objects, a missing or
    unknown ``type``, or fields of the wrong type.
    """
    return _MESSAGE_ADAPTER.validate_python(data)


def flatten_tool_output(content: Any) -> str:
    """Render a tool_result payload as text.

    The CLI sends either a plain string or a list of content blocks
    (``{"type": "text", "text": ...}``); anything else is JSON-encoded.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
            else:
                parts.append(json.dumps(block, default=str))
        return "\n".join(parts)
    return json.dumps(content, default=str)
