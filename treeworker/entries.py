"""Conversation tree entries, messages and tree metadata."""

from __future__ import annotations

import dataclasses
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SessionStatus(str, Enum):
    CONTINUING = "continuing"
    ABORTED = "aborted"
    COMPLETED = "completed"


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Any = None


@dataclass
class TextBlock:
    text: str


@dataclass
class ToolCallBlock:
    id: str
    name: str
    arguments: Any = None


ContentBlock = Union[TextBlock, ToolCallBlock]

_OPTIONAL_MESSAGE_FIELDS = (
    "tool_call_id",
    "tool_name",
    "usage",
    "stop_reason",
    "is_error",
    "thinking",
)


def _tool_call_from_dict(data: dict) -> ToolCall:
    try:
        return ToolCall(id=data["id"], name=data["name"], arguments=data.get("arguments"))
    except (KeyError, TypeError) as exc:
        raise ValueError(f"invalid tool call: {data!r}") from exc


def _block_to_dict(block: ContentBlock) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    return {
        "type": "tool_call",
        "id": block.id,
        "name": block.name,
        "arguments": block.arguments,
    }


def _block_from_dict(data: dict) -> ContentBlock:
    kind = data.get("type") if isinstance(data, dict) else None
    try:
        if kind == "text":
            return TextBlock(text=data["text"])
        if kind == "tool_call":
            return ToolCallBlock(
                id=data["id"], name=data["name"], arguments=data.get("arguments")
            )
    except KeyError as exc:
        raise ValueError(f"invalid content block: {data!r}") from exc
    raise ValueError(f"unknown content block type: {kind!r}")


@dataclass
class Message:
    """A single message in an LLM conversation."""

    role: MessageRole
    content: Union[str, list[ContentBlock]] = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    usage: dict | None = None
    stop_reason: str | None = None
    is_error: bool | None = None
    thinking: str | None = None

    def to_dict(self) -> dict:
        """Serialise to a JSON-compatible dict, omitting unset optional fields."""
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [_block_to_dict(b) for b in self.content]
        data: dict[str, Any] = {"role": self.role.value, "content": content}
        if self.tool_calls is not None:
            data["tool_calls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments}
                for c in self.tool_calls
            ]
        for name in _OPTIONAL_MESSAGE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Build a message from its dict form; raises ValueError when malformed."""
        if not isinstance(data, dict) or "role" not in data:
            raise ValueError(f"invalid message: {data!r}")
        role = MessageRole(data["role"])
        raw_content = data.get("content", "")
        if isinstance(raw_content, str):
            content: Union[str, list[ContentBlock]] = raw_content
        elif isinstance(raw_content, list):
            content = [_block_from_dict(b) for b in raw_content]
        else:
            raise ValueError(f"invalid message content: {raw_content!r}")
        raw_calls = data.get("tool_calls")
        tool_calls = (
            None if raw_calls is None else [_tool_call_from_dict(c) for c in raw_calls]
        )
        return cls(
            role=role,
            content=content,
            tool_calls=tool_calls,
            **{name: data.get(name) for name in _OPTIONAL_MESSAGE_FIELDS},
        )


@dataclass(kw_only=True)
class _EntryBase:
    TYPE: ClassVar[str] = ""

    id: str
    parent_id: str | None
    timestamp: str


@dataclass(kw_only=True)
class SessionStartEntry(_EntryBase):
    TYPE: ClassVar[str] = "session_start"


@dataclass(kw_only=True)
class SessionEndEntry(_EntryBase):
    TYPE: ClassVar[str] = "session_end"

    summary: str | None = None
    status: SessionStatus = SessionStatus.CONTINUING
    continuation_brief: str | None = None


@dataclass(kw_only=True)
class MessageEntry(_EntryBase):
    TYPE: ClassVar[str] = "message"

    message: Message


@dataclass(kw_only=True)
class GoalSetEntry(_EntryBase):
    TYPE: ClassVar[str] = "goal_set"

    goal: str


@dataclass(kw_only=True)
class ModelSetEntry(_EntryBase):
    TYPE: ClassVar[str] = "model_set"

    model: str


@dataclass(kw_only=True)
class LabelEntry(_EntryBase):
    TYPE: ClassVar[str] = "label"

    label: str


@dataclass(kw_only=True)
class BashExecEntry(_EntryBase):
    TYPE: ClassVar[str] = "bash_exec"

    command: str
    output: str
    exit_code: int
    truncated: bool = False
    duration_ms: int | None = None


Entry = Union[
    SessionStartEntry,
    SessionEndEntry,
    MessageEntry,
    GoalSetEntry,
    ModelSetEntry,
    LabelEntry,
    BashExecEntry,
]

_ENTRY_TYPES: dict[str, type] = {
    cls.TYPE: cls
    for cls in (
        SessionStartEntry,
        SessionEndEntry,
        MessageEntry,
        GoalSetEntry,
        ModelSetEntry,
        LabelEntry,
        BashExecEntry,
    )
}


def entry_to_dict(entry: Entry) -> dict:
    """Serialise an entry to its tagged dict form."""
    data: dict[str, Any] = {"type": entry.TYPE}
    for f in dataclasses.fields(entry):
        value = getattr(entry, f.name)
        if isinstance(value, Message):
            value = value.to_dict()
        elif isinstance(value, Enum):
            value = value.value
        data[f.name] = value
    return data


def entry_from_dict(data: dict) -> Entry:
    """Parse a tagged dict into an entry; raises ValueError when malformed."""
    if not isinstance(data, dict):
        raise ValueError(f"entry must be an object, got {type(data).__name__}")
    kind = data.get("type")
    cls = _ENTRY_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"unknown entry type: {kind!r}")
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        required = f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        if f.name not in data:
            if required and f.name != "parent_id":
                raise ValueError(f"{kind} entry is missing field {f.name!r}")
            if f.name == "parent_id":
                kwargs[f.name] = None
            continue
        value = data[f.name]
        if f.name == "message":
            value = Message.from_dict(value)
        elif f.name == "status":
            value = SessionStatus(value)
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass
class TreeMeta:
    """Metadata stored alongside a conversation tree."""

    id: str
    parent_id: str | None = None
    repo_path: str | None = None
    title: str | None = None
    created_at: int = 0
    updated_at: int = 0
    leaf_id: str | None = None
    sandbox: dict = field(
        default_factory=lambda: {"writable": [], "network": None, "hide": [], "unhide": []}
    )

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TreeMeta":
        if not isinstance(data, dict) or "id" not in data:
            raise ValueError(f"invalid tree metadata: {data!r}")
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if kwargs.get("sandbox") is None:
            kwargs.pop("sandbox", None)
        return cls(**kwargs)


def generate_entry_id() -> str:
    """Return a fresh random entry id of eight hex digits."""
    return secrets.token_hex(4)