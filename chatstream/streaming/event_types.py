"""Typed values for the streaming response assembler.

These types define the contract between the event normalizer, the
correlator/assembler pipeline and the rendering boundary: the protocol event
variants, the content segments a message is built from, and the message
itself.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

# Upper bound on a segment index taken from the wire.
MAX_SEGMENT_INDEX = 1024


class StepKind(str, Enum):
    """Kind of a generation run step."""

    TOOL_CALLS = "tool_calls"
    MESSAGE_CREATION = "message_creation"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "StepKind":
        try:
            return cls(str(value))
        except ValueError:
            return cls.OTHER


class Panel(str, Enum):
    """UI slot driving a run. The secondary panel only exists in comparison mode."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


class SegmentKind(str, Enum):
    TEXT = "text"
    THINK = "think"
    TOOL_CALL = "tool_call"
    IMAGE_URL = "image_url"
    AGENT_UPDATE = "agent_update"
    ERROR = "error"


# -----------------------------------------------------------------------------
# Content segments
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TextSegment:
    """Answer text; accumulates by concatenation."""

    kind: ClassVar[SegmentKind] = SegmentKind.TEXT

    text: str = ""
    tool_call_ids: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.kind.value, "text": self.text}
        if self.tool_call_ids is not None:
            result["tool_call_ids"] = list(self.tool_call_ids)
        return result


@dataclass(frozen=True)
class ReasoningSegment:
    """Model reasoning; accumulates by concatenation, separate from text."""

    kind: ClassVar[SegmentKind] = SegmentKind.THINK

    think: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "think": self.think}


@dataclass(frozen=True)
class ToolCallSegment:
    """A tool invocation.

    ``args`` is a string while it is still streaming in fragments, or a
    structured value once complete. ``progress`` is set to 1 and ``output``
    attached by the terminal tool-call event.
    """

    kind: ClassVar[SegmentKind] = SegmentKind.TOOL_CALL

    id: str = ""
    name: str = ""
    args: Any = ""
    output: Optional[Any] = None
    progress: Optional[float] = None
    auth: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.progress == 1

    def to_dict(self) -> Dict[str, Any]:
        tool_call: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "args": _safe_json_value(self.args),
            "type": self.kind.value,
        }
        if self.output is not None:
            tool_call["output"] = _safe_json_value(self.output)
        if self.progress is not None:
            tool_call["progress"] = self.progress
        if self.auth is not None:
            tool_call["auth"] = self.auth
            tool_call["expires_at"] = self.expires_at
        return {"type": self.kind.value, "tool_call": tool_call}


@dataclass(frozen=True)
class ImageSegment:
    kind: ClassVar[SegmentKind] = SegmentKind.IMAGE_URL

    url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "image_url": {"url": self.url}}


@dataclass(frozen=True)
class AgentUpdateSegment:
    kind: ClassVar[SegmentKind] = SegmentKind.AGENT_UPDATE

    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "agent_update": _safe_metadata(self.payload)}


@dataclass(frozen=True)
class ErrorSegment:
    """Terminal error marker shown in place of (or after) partial output."""

    kind: ClassVar[SegmentKind] = SegmentKind.ERROR

    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "error": self.message}


ContentSegment = Union[
    TextSegment,
    ReasoningSegment,
    ToolCallSegment,
    ImageSegment,
    AgentUpdateSegment,
    ErrorSegment,
]


def segment_from_dict(part: Mapping[str, Any]) -> ContentSegment:
    """Build a segment from its wire shape (``{"type": ..., <type>: ...}``).

    Raises:
        ValueError: if the part has no recognised type or a wrongly typed value.
    """
    content_type = str(part.get("type") or "")

    if content_type.startswith(SegmentKind.TEXT.value):
        text = part.get("text")
        if isinstance(text, dict):
            text = text.get("value")
        if not isinstance(text, str):
            raise ValueError("text content part without a string 'text'")
        ids = part.get("tool_call_ids")
        return TextSegment(text=text, tool_call_ids=tuple(ids) if ids is not None else None)

    if content_type.startswith(SegmentKind.THINK.value):
        think = part.get("think")
        if not isinstance(think, str):
            raise ValueError("think content part without a string 'think'")
        return ReasoningSegment(think=think)

    if content_type == SegmentKind.IMAGE_URL.value:
        image = part.get("image_url")
        url = image.get("url") if isinstance(image, dict) else image
        if not isinstance(url, str):
            raise ValueError("image_url content part without a url")
        return ImageSegment(url=url)

    if content_type == SegmentKind.TOOL_CALL.value:
        tool_call = part.get("tool_call")
        if not isinstance(tool_call, dict):
            raise ValueError("tool_call content part without a 'tool_call' object")
        return ToolCallSegment(
            id=str(tool_call.get("id") or ""),
            name=str(tool_call.get("name") or ""),
            args=tool_call.get("args", ""),
            output=tool_call.get("output"),
            progress=tool_call.get("progress"),
            auth=tool_call.get("auth"),
            expires_at=tool_call.get("expires_at"),
        )

    if content_type == SegmentKind.AGENT_UPDATE.value:
        update = part.get("agent_update")
        if not isinstance(update, dict):
            raise ValueError("agent_update content part without an object payload")
        return AgentUpdateSegment(payload=dict(update))

    if content_type == SegmentKind.ERROR.value:
        return ErrorSegment(message=str(part.get("error") or ""))

    raise ValueError(f"unsupported content type '{content_type}'")


# -----------------------------------------------------------------------------
# Run steps and messages
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallDelta:
    """A tool call as announced by a step or one of its deltas."""

    id: str = ""
    name: str = ""
    args: Any = ""


@dataclass(frozen=True)
class RunStep:
    step_id: str
    run_id: str
    index: int
    kind: StepKind
    tool_calls: Tuple[ToolCallDelta, ...] = ()


@dataclass(frozen=True)
class Message:
    """The response message under construction for one run on one panel.

    ``content`` is indexed by the originating step's index and may hold
    ``None`` for indices no event has filled yet. ``text`` mirrors the first
    text segment.
    """

    message_id: str
    run_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    content: Tuple[Optional[ContentSegment], ...] = ()
    text: str = ""
    sender: Optional[str] = None
    error: bool = False
    unfinished: bool = False

    def segment_at(self, index: int) -> Optional[ContentSegment]:
        if 0 <= index < len(self.content):
            return self.content[index]
        return None

    def segments(self) -> List[ContentSegment]:
        return [segment for segment in self.content if segment is not None]

    def all_text(self) -> str:
        """Concatenate every text segment in index order."""
        return "".join(
            segment.text for segment in self.content if isinstance(segment, TextSegment)
        )

    def is_empty(self) -> bool:
        return not self.text and not self.segments()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-safe dictionary with camelCase keys."""
        result: Dict[str, Any] = {
            "messageId": self.message_id,
            "runId": self.run_id,
            "parentMessageId": self.parent_message_id,
            "conversationId": self.conversation_id,
            "text": self.text,
            "content": [
                segment.to_dict() if segment is not None else None
                for segment in self.content
            ],
        }
        if self.sender is not None:
            result["sender"] = self.sender
        if self.error:
            result["error"] = True
        if self.unfinished:
            result["unfinished"] = True
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Build a message from the wire shape used by final/created frames.

        Content parts that cannot be parsed are skipped.
        """
        content: List[Optional[ContentSegment]] = []
        for part in data.get("content") or []:
            if not isinstance(part, dict):
                content.append(None)
                continue
            try:
                content.append(segment_from_dict(part))
            except ValueError:
                content.append(None)
        return cls(
            message_id=str(data.get("messageId") or ""),
            run_id=data.get("runId"),
            parent_message_id=data.get("parentMessageId"),
            conversation_id=data.get("conversationId"),
            content=tuple(content),
            text=str(data.get("text") or ""),
            sender=data.get("sender"),
            error=bool(data.get("error", False)),
            unfinished=bool(data.get("unfinished", False)),
        )


@dataclass(frozen=True)
class Submission:
    """What the route layer supplies when a panel starts a turn.

    ``run_id`` keys the panel's registry entry. Protocol run ids arrive
    later with the events and key the messages themselves.
    """

    conversation_id: Optional[str]
    parent_message_id: str
    panel: Panel = Panel.PRIMARY
    sender: Optional[str] = None
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    placeholder: Optional[Message] = None

    def initial_message(self) -> Message:
        if self.placeholder is not None:
            return self.placeholder
        return Message(
            message_id=f"{self.parent_message_id}_",
            parent_message_id=self.parent_message_id,
            conversation_id=self.conversation_id,
            sender=self.sender,
        )


# -----------------------------------------------------------------------------
# Normalized protocol events
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class RunStepCreated:
    name: ClassVar[str] = "run-step-created"

    step: RunStep


@dataclass(frozen=True)
class RunStepDelta:
    name: ClassVar[str] = "run-step-delta"

    step_id: str
    delta_type: StepKind
    tool_calls: Tuple[ToolCallDelta, ...] = ()
    auth: Optional[str] = None
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class RunStepCompleted:
    """Terminal tool-call event: carries the finished call and its output."""

    name: ClassVar[str] = "run-step-completed"

    step_id: str
    tool_call: ToolCallSegment


@dataclass(frozen=True)
class MessageDelta:
    name: ClassVar[str] = "message-delta"

    step_id: str
    content: ContentSegment


@dataclass(frozen=True)
class ReasoningDelta:
    name: ClassVar[str] = "reasoning-delta"

    step_id: str
    content: ReasoningSegment


@dataclass(frozen=True)
class AgentUpdate:
    name: ClassVar[str] = "agent-update"

    run_id: str
    index: int
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorEvent:
    name: ClassVar[str] = "error"

    message: str
    run_id: Optional[str] = None


StreamEvent = Union[
    RunStepCreated,
    RunStepDelta,
    RunStepCompleted,
    MessageDelta,
    ReasoningDelta,
    AgentUpdate,
    ErrorEvent,
]


# Utility functions

def _safe_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Ensure all metadata values are JSON-serializable."""
    safe: Dict[str, Any] = {}
    for key, value in metadata.items():
        try:
            json.dumps(value)
            safe[key] = value
        except TypeError:
            safe[key] = str(value)
    return safe


def _safe_json_value(value: Any) -> Any:
    """Convert a value to be JSON-serializable."""
    try:
        json.dumps(value, ensure_ascii=False)
        return value
    except TypeError:
        return str(value)
