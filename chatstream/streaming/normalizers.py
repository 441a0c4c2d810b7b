"""Event normalizer: validates raw protocol events into typed variants.

Raw events arrive as ``{"event": name, "data": {...}}`` pairs. Both the
hyphenated protocol names and the legacy ``on_*`` names emitted by older
agent servers are accepted.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MalformedEvent
from .event_types import (
    MAX_SEGMENT_INDEX,
    AgentUpdate,
    ErrorEvent,
    MessageDelta,
    ReasoningDelta,
    ReasoningSegment,
    RunStep,
    RunStepCompleted,
    RunStepCreated,
    RunStepDelta,
    StepKind,
    StreamEvent,
    ToolCallDelta,
    ToolCallSegment,
    segment_from_dict,
)

EVENT_ALIASES: Dict[str, str] = {
    "on_run_step": "run-step-created",
    "on_run_step_delta": "run-step-delta",
    "on_run_step_completed": "run-step-completed",
    "on_message_delta": "message-delta",
    "on_reasoning_delta": "reasoning-delta",
    "on_agent_update": "agent-update",
    "on_error": "error",
}


# -----------------------------------------------------------------------------
# Wire payload models
# -----------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class _ToolCallData(_Payload):
    id: Optional[str] = None
    name: Optional[str] = None
    args: Any = None


class _StepDetails(_Payload):
    type: str
    tool_calls: List[_ToolCallData] = Field(default_factory=list)


class _RunStepData(_Payload):
    id: str = Field(min_length=1)
    run_id: str = Field(min_length=1, alias="runId")
    index: int = Field(ge=0, le=MAX_SEGMENT_INDEX)
    step_details: _StepDetails = Field(alias="stepDetails")


class _StepDeltaBody(_Payload):
    type: str
    tool_calls: Optional[List[_ToolCallData]] = None
    auth: Optional[str] = None
    expires_at: Optional[int] = None


class _RunStepDeltaData(_Payload):
    id: str = Field(min_length=1)
    delta: _StepDeltaBody


class _ToolEndCall(_Payload):
    id: Optional[str] = None
    name: Optional[str] = None
    args: Any = None
    output: Any = None


class _ToolEndResult(_Payload):
    id: str = Field(min_length=1)
    tool_call: _ToolEndCall


class _RunStepCompletedData(_Payload):
    result: _ToolEndResult


class _ContentDeltaBody(_Payload):
    content: Any


class _ContentDeltaData(_Payload):
    id: str = Field(min_length=1)
    delta: _ContentDeltaBody


class _AgentUpdateBody(_Payload):
    run_id: str = Field(min_length=1, alias="runId")
    index: int = Field(ge=0, le=MAX_SEGMENT_INDEX)


class _AgentUpdateData(_Payload):
    agent_update: _AgentUpdateBody


class _ErrorData(_Payload):
    message: Optional[str] = None
    error: Optional[str] = None
    text: Optional[str] = None
    run_id: Optional[str] = Field(default=None, alias="runId")


# -----------------------------------------------------------------------------
# Variant builders
# -----------------------------------------------------------------------------


def _tool_call_deltas(calls: Optional[List[_ToolCallData]]) -> tuple:
    return tuple(
        ToolCallDelta(
            id=call.id or "",
            name=call.name or "",
            args=call.args if call.args is not None else "",
        )
        for call in calls or []
    )


def _first_content_part(name: str, content: Any) -> Mapping[str, Any]:
    part = content[0] if isinstance(content, list) and content else content
    if not isinstance(part, dict):
        raise MalformedEvent(name, "delta.content is missing or not an object")
    return part


def _build_run_step_created(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _RunStepData.model_validate(data)
    step = RunStep(
        step_id=payload.id,
        run_id=payload.run_id,
        index=payload.index,
        kind=StepKind.parse(payload.step_details.type),
        tool_calls=_tool_call_deltas(payload.step_details.tool_calls),
    )
    return RunStepCreated(step=step)


def _build_run_step_delta(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _RunStepDeltaData.model_validate(data)
    return RunStepDelta(
        step_id=payload.id,
        delta_type=StepKind.parse(payload.delta.type),
        tool_calls=_tool_call_deltas(payload.delta.tool_calls),
        auth=payload.delta.auth,
        expires_at=payload.delta.expires_at,
    )


def _build_run_step_completed(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _RunStepCompletedData.model_validate(data)
    call = payload.result.tool_call
    return RunStepCompleted(
        step_id=payload.result.id,
        tool_call=ToolCallSegment(
            id=call.id or "",
            name=call.name or "",
            args=call.args if call.args is not None else "",
            output=call.output,
        ),
    )


def _build_message_delta(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _ContentDeltaData.model_validate(data)
    part = _first_content_part(name, payload.delta.content)
    try:
        segment = segment_from_dict(part)
    except ValueError as exc:
        raise MalformedEvent(name, str(exc)) from exc
    return MessageDelta(step_id=payload.id, content=segment)


def _build_reasoning_delta(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _ContentDeltaData.model_validate(data)
    part = _first_content_part(name, payload.delta.content)
    try:
        segment = segment_from_dict(part)
    except ValueError as exc:
        raise MalformedEvent(name, str(exc)) from exc
    if not isinstance(segment, ReasoningSegment):
        raise MalformedEvent(name, f"expected think content, got '{segment.kind.value}'")
    return ReasoningDelta(step_id=payload.id, content=segment)


def _build_agent_update(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _AgentUpdateData.model_validate(data)
    raw_update = data.get("agent_update") or {}
    return AgentUpdate(
        run_id=payload.agent_update.run_id,
        index=payload.agent_update.index,
        payload=dict(raw_update),
    )


def _build_error(name: str, data: Mapping[str, Any]) -> StreamEvent:
    payload = _ErrorData.model_validate(data)
    message = payload.message or payload.error or payload.text or "Unknown stream error"
    return ErrorEvent(message=message, run_id=payload.run_id)


_BUILDERS: Dict[str, Callable[[str, Mapping[str, Any]], StreamEvent]] = {
    "run-step-created": _build_run_step_created,
    "run-step-delta": _build_run_step_delta,
    "run-step-completed": _build_run_step_completed,
    "message-delta": _build_message_delta,
    "reasoning-delta": _build_reasoning_delta,
    "agent-update": _build_agent_update,
    "error": _build_error,
}


def canonical_event_name(name: Any) -> Optional[str]:
    """Map a raw event name (hyphenated or legacy ``on_*``) to its canonical form."""
    if not isinstance(name, str):
        return None
    name = EVENT_ALIASES.get(name, name)
    return name if name in _BUILDERS else None


def normalize_event(raw: Mapping[str, Any]) -> StreamEvent:
    """Classify a raw ``{event, data}`` pair into a typed event.

    Pure: no state is touched.

    Raises:
        MalformedEvent: unknown event name, non-object data, or missing fields.
    """
    if not isinstance(raw, Mapping):
        raise MalformedEvent("<unknown>", "event is not an object")

    raw_name = raw.get("event")
    name = canonical_event_name(raw_name)
    if name is None:
        raise MalformedEvent(str(raw_name or "<missing>"), "unrecognized event name")

    data = raw.get("data")
    if not isinstance(data, Mapping):
        raise MalformedEvent(name, "data is missing or not an object")

    try:
        return _BUILDERS[name](name, data)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(loc) for loc in err["loc"]) for err in exc.errors()
        )
        raise MalformedEvent(name, f"invalid or missing fields: {fields}") from exc


def try_normalize_event(raw: Mapping[str, Any]) -> Optional[StreamEvent]:
    """Like :func:`normalize_event` but logs and drops malformed events."""
    try:
        return normalize_event(raw)
    except MalformedEvent as exc:
        logger.warning(f"stream_event_dropped reason=malformed event={exc.event_name} detail='{exc.reason}'")
        return None
