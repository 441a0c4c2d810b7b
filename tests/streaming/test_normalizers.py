from __future__ import annotations

import pytest

from chatstream.streaming.errors import MalformedEvent
from chatstream.streaming.event_types import (
    AgentUpdate,
    ErrorEvent,
    ImageSegment,
    MessageDelta,
    ReasoningDelta,
    RunStepCompleted,
    RunStepCreated,
    RunStepDelta,
    StepKind,
    TextSegment,
)
from chatstream.streaming.normalizers import (
    canonical_event_name,
    normalize_event,
    try_normalize_event,
)


def _run_step(**overrides):
    data = {
        "id": "step-1",
        "runId": "run-1",
        "index": 0,
        "stepDetails": {"type": "message_creation"},
    }
    data.update(overrides)
    return {"event": "run-step-created", "data": data}


def test_run_step_created_is_normalized() -> None:
    event = normalize_event(_run_step())

    assert isinstance(event, RunStepCreated)
    assert event.step.step_id == "step-1"
    assert event.step.run_id == "run-1"
    assert event.step.index == 0
    assert event.step.kind is StepKind.MESSAGE_CREATION


def test_run_step_with_tool_calls_keeps_call_ids() -> None:
    event = normalize_event(
        _run_step(
            stepDetails={
                "type": "tool_calls",
                "tool_calls": [{"id": "call-1", "name": "search", "args": ""}],
            }
        )
    )

    assert event.step.kind is StepKind.TOOL_CALLS
    assert [call.id for call in event.step.tool_calls] == ["call-1"]
    assert event.step.tool_calls[0].name == "search"


def test_unknown_step_type_maps_to_other() -> None:
    event = normalize_event(_run_step(stepDetails={"type": "retrieval"}))
    assert event.step.kind is StepKind.OTHER


@pytest.mark.parametrize(
    "legacy, canonical",
    [
        ("on_run_step", "run-step-created"),
        ("on_run_step_delta", "run-step-delta"),
        ("on_run_step_completed", "run-step-completed"),
        ("on_message_delta", "message-delta"),
        ("on_reasoning_delta", "reasoning-delta"),
        ("on_agent_update", "agent-update"),
    ],
)
def test_legacy_event_names_are_accepted(legacy: str, canonical: str) -> None:
    assert canonical_event_name(legacy) == canonical
    assert canonical_event_name(canonical) == canonical


def test_message_delta_accepts_object_or_list_content() -> None:
    as_object = normalize_event(
        {"event": "message-delta", "data": {"id": "s", "delta": {"content": {"type": "text", "text": "Hi"}}}}
    )
    as_list = normalize_event(
        {"event": "on_message_delta", "data": {"id": "s", "delta": {"content": [{"type": "text", "text": "Hi"}]}}}
    )

    assert isinstance(as_object, MessageDelta)
    assert as_object.content == TextSegment(text="Hi")
    assert as_list == as_object


def test_message_delta_image_content() -> None:
    event = normalize_event(
        {
            "event": "message-delta",
            "data": {"id": "s", "delta": {"content": {"type": "image_url", "image_url": {"url": "https://x/y.png"}}}},
        }
    )
    assert event.content == ImageSegment(url="https://x/y.png")


def test_reasoning_delta_requires_think_content() -> None:
    event = normalize_event(
        {"event": "reasoning-delta", "data": {"id": "s", "delta": {"content": [{"type": "think", "think": "hmm"}]}}}
    )
    assert isinstance(event, ReasoningDelta)
    assert event.content.think == "hmm"

    with pytest.raises(MalformedEvent):
        normalize_event(
            {"event": "reasoning-delta", "data": {"id": "s", "delta": {"content": {"type": "text", "text": "x"}}}}
        )


def test_run_step_delta_with_auth() -> None:
    event = normalize_event(
        {
            "event": "run-step-delta",
            "data": {
                "id": "step-1",
                "delta": {
                    "type": "tool_calls",
                    "tool_calls": [{"args": "{\"q\":"}],
                    "auth": "https://auth.example",
                    "expires_at": 1700000000,
                },
            },
        }
    )

    assert isinstance(event, RunStepDelta)
    assert event.delta_type is StepKind.TOOL_CALLS
    assert event.tool_calls[0].args == "{\"q\":"
    assert event.auth == "https://auth.example"
    assert event.expires_at == 1700000000


def test_run_step_completed_carries_output() -> None:
    event = normalize_event(
        {
            "event": "run-step-completed",
            "data": {"result": {"id": "step-1", "tool_call": {"id": "call-1", "name": "search", "args": "{}", "output": "found"}}},
        }
    )

    assert isinstance(event, RunStepCompleted)
    assert event.step_id == "step-1"
    assert event.tool_call.output == "found"


def test_agent_update_and_error() -> None:
    update = normalize_event(
        {"event": "agent-update", "data": {"agent_update": {"runId": "run-1", "index": 2, "agentId": "a"}}}
    )
    assert isinstance(update, AgentUpdate)
    assert update.index == 2
    assert update.payload["agentId"] == "a"

    error = normalize_event({"event": "error", "data": {"message": "boom"}})
    assert isinstance(error, ErrorEvent)
    assert error.message == "boom"


@pytest.mark.parametrize(
    "raw",
    [
        {"event": "mystery", "data": {}},
        {"event": "message-delta", "data": {"delta": {"content": {"type": "text", "text": "x"}}}},
        {"event": "message-delta", "data": {"id": "s", "delta": {}}},
        {"event": "message-delta", "data": "not-an-object"},
        {"event": "run-step-created", "data": {"id": "s", "index": 0, "stepDetails": {"type": "tool_calls"}}},
        {"event": "run-step-created", "data": {"id": "s", "runId": "r", "index": -1, "stepDetails": {"type": "x"}}},
        {"event": "agent-update", "data": {"agent_update": {"index": 0}}},
        {"event": "run-step-created", "data": {"id": "s", "runId": "r", "index": 2**62, "stepDetails": {"type": "x"}}},
        {"event": "agent-update", "data": {"agent_update": {"runId": "r", "index": 2**62}}},
        {"event": "message-delta", "data": {"id": "s", "delta": {"content": {"type": "video", "url": "x"}}}},
    ],
)
def test_malformed_events_raise(raw) -> None:
    with pytest.raises(MalformedEvent):
        normalize_event(raw)


def test_try_normalize_drops_instead_of_raising() -> None:
    assert try_normalize_event({"event": "mystery", "data": {}}) is None
    assert try_normalize_event(["not", "a", "mapping"]) is None  # type: ignore[arg-type]
