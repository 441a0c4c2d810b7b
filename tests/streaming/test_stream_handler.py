from __future__ import annotations

from typing import Any

import pytest

from chatstream.streaming.errors import TransportFailure
from chatstream.streaming.event_types import (
    ErrorSegment,
    Message,
    Panel,
    Submission,
    TextSegment,
    ToolCallSegment,
)
from chatstream.streaming.handler import StreamEventHandler
from chatstream.streaming.recovery import RunState
from chatstream.streaming.registry import RunActivityRegistry


class _Renderer:
    def __init__(self) -> None:
        self.calls: list[tuple[Message, bool]] = []

    def __call__(self, message: Message, final: bool) -> None:
        self.calls.append((message, final))

    @property
    def finals(self) -> list[Message]:
        return [message for message, final in self.calls if final]


class _Store:
    def __init__(self, fail: bool = False) -> None:
        self.saved: list[Message] = []
        self.fail = fail

    async def save_message(self, message: Message) -> None:
        self.saved.append(message)
        if self.fail:
            raise RuntimeError("database unavailable")


def _run_step(step_id: str, run_id: str, index: int, kind: str = "message_creation", tool_calls=None) -> dict[str, Any]:
    details: dict[str, Any] = {"type": kind}
    if tool_calls is not None:
        details["tool_calls"] = tool_calls
    return {"event": "run-step-created", "data": {"id": step_id, "runId": run_id, "index": index, "stepDetails": details}}


def _text(step_id: str, text: str) -> dict[str, Any]:
    return {"event": "message-delta", "data": {"id": step_id, "delta": {"content": {"type": "text", "text": text}}}}


def _tool_delta(step_id: str, args: str) -> dict[str, Any]:
    return {
        "event": "run-step-delta",
        "data": {"id": step_id, "delta": {"type": "tool_calls", "tool_calls": [{"args": args}]}},
    }


def _tool_done(step_id: str, args: str, output: Any) -> dict[str, Any]:
    return {
        "event": "run-step-completed",
        "data": {"result": {"id": step_id, "tool_call": {"id": "call-1", "name": "search", "args": args, "output": output}}},
    }


def _handler(**kwargs) -> tuple[StreamEventHandler, RunActivityRegistry]:
    registry = RunActivityRegistry()
    submission = Submission(
        conversation_id="convo-1",
        parent_message_id="user-1",
        panel=kwargs.pop("panel", Panel.PRIMARY),
        sender="Assistant",
        run_id="sub-1",
    )
    handler = StreamEventHandler(submission, registry, throttle_interval=0.01, **kwargs)
    handler.start()
    return handler, registry


@pytest.mark.asyncio
async def test_hello_scenario() -> None:
    renderer = _Renderer()
    store = _Store()
    handler, registry = _handler(renderer=renderer, store=store)

    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "Hel"))
    await handler.handle(_text("A", "lo"))
    final = await handler.complete()

    assert final.text == "Hello"
    assert final.message_id == "R1-primary"
    assert final.run_id == "R1"
    assert final.parent_message_id == "user-1"
    assert final.conversation_id == "convo-1"
    assert handler.state is RunState.COMPLETED
    assert not registry.is_busy()
    assert renderer.finals == [final]
    assert store.saved == [final]


@pytest.mark.asyncio
async def test_final_text_is_concatenation_of_fragments() -> None:
    fragments = ["The ", "quick ", "brown ", "", "fox", " ✓"]
    handler, _ = _handler()
    await handler.handle(_run_step("A", "R1", 0))
    for fragment in fragments:
        await handler.handle(_text("A", fragment))

    final = await handler.complete()

    assert final.text == "".join(fragments)


@pytest.mark.asyncio
async def test_tool_call_args_accumulate_until_completed() -> None:
    handler, _ = _handler()
    await handler.handle(
        _run_step("T", "R1", 1, kind="tool_calls", tool_calls=[{"id": "call-1", "name": "search", "args": ""}])
    )
    await handler.handle(_tool_delta("T", "{\"q\":"))
    message = await handler.handle(_tool_delta("T", "1}"))

    tool = message.segment_at(1)
    assert isinstance(tool, ToolCallSegment)
    assert tool.args == "{\"q\":1}"
    assert tool.id == "call-1"
    assert tool.progress is None

    message = await handler.handle(_tool_done("T", "{\"q\":1}", "3 results"))
    tool = message.segment_at(1)
    assert tool.progress == 1
    assert tool.output == "3 results"


@pytest.mark.asyncio
async def test_duplicate_completion_event_is_idempotent() -> None:
    handler, _ = _handler()
    await handler.handle(
        _run_step("T", "R1", 0, kind="tool_calls", tool_calls=[{"id": "call-1", "name": "search"}])
    )
    once = await handler.handle(_tool_done("T", "{}", "ok"))
    twice = await handler.handle(_tool_done("T", "{}", "ok"))

    assert twice == once

    final = await handler.complete()
    assert await handler.complete() is final


@pytest.mark.asyncio
async def test_delta_for_unknown_step_is_dropped() -> None:
    handler, _ = _handler()
    await handler.handle(_run_step("A", "R1", 0))
    before = await handler.handle(_text("A", "kept"))

    result = await handler.handle(_text("ghost", "lost"))

    assert result is None
    assert handler.message == before
    assert handler.message.text == "kept"


@pytest.mark.asyncio
async def test_malformed_and_mismatched_events_are_dropped() -> None:
    handler, _ = _handler()
    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "text"))
    await handler.handle(
        _run_step("B", "R1", 0, kind="tool_calls", tool_calls=[{"id": "c", "name": "x"}])
    )

    assert await handler.handle({"event": "mystery", "data": {}}) is None
    assert await handler.handle({"event": "message-delta", "data": {"id": "A"}}) is None
    assert handler.message.content == (TextSegment(text="text"),)
    assert handler.state is RunState.ACTIVE


@pytest.mark.asyncio
async def test_abort_mid_stream_returns_partial_text() -> None:
    renderer = _Renderer()
    progress: list[str] = []
    handler, registry = _handler(renderer=renderer, on_progress=lambda m: progress.append(m.all_text()))
    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "Partial "))
    await handler.handle(_text("A", "answer"))

    payload = handler.abort("user")

    assert payload.partial_text == "Partial answer"
    assert payload.message_id == "R1-primary"
    assert payload.conversation_id == "convo-1"
    assert payload.sender == "Assistant"
    assert progress[-1] == "Partial answer"
    assert not registry.is_busy()

    frozen = renderer.finals[-1]
    assert frozen.unfinished
    assert isinstance(frozen.content[-1], ErrorSegment)
    assert not frozen.error

    assert await handler.handle(_text("A", " more")) is None
    assert handler.message == frozen


@pytest.mark.asyncio
async def test_error_event_fails_the_run() -> None:
    renderer = _Renderer()
    handler, registry = _handler(renderer=renderer)
    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "so far"))

    message = await handler.handle({"event": "error", "data": {"message": "model overloaded"}})

    assert handler.state is RunState.FAILED
    assert message.error
    assert message.content[-1] == ErrorSegment(message="model overloaded")
    assert handler.recovery.partial_text == "so far"
    assert handler.recovery.error == "model overloaded"
    assert not registry.is_busy()


@pytest.mark.asyncio
async def test_error_event_for_another_run_keeps_partial_output() -> None:
    renderer = _Renderer()
    handler, registry = _handler(renderer=renderer)
    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "partial answer"))

    await handler.handle({"event": "error", "data": {"message": "boom", "runId": "R-other"}})

    assert handler.state is RunState.FAILED
    assert handler.recovery.partial_text == "partial answer"
    assert handler.recovery.message_id == "R1-primary"
    frozen = renderer.finals[-1]
    assert frozen.text == "partial answer"
    assert frozen.content[-1] == ErrorSegment(message="boom")
    assert not registry.is_busy()


@pytest.mark.asyncio
async def test_out_of_range_segment_index_is_dropped() -> None:
    handler, _ = _handler()
    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "kept"))

    assert await handler.handle(_run_step("B", "R1", 2**62)) is None
    assert await handler.handle(_text("B", "lost")) is None
    assert await handler.handle(
        {"event": "agent-update", "data": {"agent_update": {"runId": "R1", "index": 2**62}}}
    ) is None

    assert handler.message.content == (TextSegment(text="kept"),)
    assert handler.state is RunState.ACTIVE


@pytest.mark.asyncio
async def test_empty_completion_gets_error_segment() -> None:
    handler, _ = _handler()

    final = await handler.complete()

    assert final.error
    assert final.content == (ErrorSegment(message="No response received from Assistant"),)
    assert final.message_id == "user-1_"


@pytest.mark.asyncio
async def test_complete_adopts_server_response_when_nothing_streamed() -> None:
    handler, _ = _handler()

    final = await handler.handle_payload(
        {
            "final": True,
            "responseMessage": {
                "messageId": "srv-1",
                "text": "From server",
                "content": [{"type": "text", "text": "From server"}],
            },
        }
    )

    assert final.message_id == "srv-1"
    assert final.text == "From server"
    assert final.parent_message_id == "user-1"
    assert not final.error


@pytest.mark.asyncio
async def test_persistence_failure_is_logged_not_retried() -> None:
    store = _Store(fail=True)
    handler, _ = _handler(store=store)
    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "hi"))

    final = await handler.complete()

    assert final.text == "hi"
    assert len(store.saved) == 1
    assert handler.state is RunState.COMPLETED


@pytest.mark.asyncio
async def test_created_payload_updates_placeholder_identity() -> None:
    handler, _ = _handler()

    await handler.handle_payload({"created": True, "message": {"messageId": "user-42", "conversationId": "convo-9"}})
    await handler.handle_payload(_run_step("A", "R1", 0))
    message = await handler.handle_payload(_text("A", "x"))

    assert message.parent_message_id == "user-42"
    assert message.conversation_id == "convo-9"
    assert message.message_id == "R1-primary"


@pytest.mark.asyncio
async def test_error_payload_fails_run() -> None:
    handler, _ = _handler()
    await handler.handle_payload({"error": "Upstream rejected the request"})

    assert handler.state is RunState.FAILED
    assert handler.recovery.error == "Upstream rejected the request"


@pytest.mark.asyncio
async def test_tool_marker_waits_for_pending_text() -> None:
    order: list[str] = []

    async def _marker(segment: ToolCallSegment) -> None:
        order.append(f"tool:{segment.id}")

    handler, _ = _handler(
        on_progress=lambda m: order.append(f"progress:{m.all_text()}"),
        on_tool_start=_marker,
    )

    await handler.handle(_run_step("A", "R1", 0))
    await handler.handle(_text("A", "a"))
    await handler.handle(_text("A", "b"))  # inside the interval, queued
    await handler.handle(
        _run_step("T", "R1", 1, kind="tool_calls", tool_calls=[{"id": "call-1", "name": "search"}])
    )

    assert order.index("progress:ab") < order.index("tool:call-1")


@pytest.mark.asyncio
async def test_transport_failure_keeps_message_identity() -> None:
    handler, _ = _handler(panel=Panel.SECONDARY)
    await handler.handle(_run_step("A", "R7", 0))
    await handler.handle(_text("A", "half"))

    payload = handler.fail(TransportFailure())

    assert payload.message_id == "R7-secondary"
    assert payload.panel == "secondary"
    assert payload.reason == "transport_failure"
    assert handler.message.error
    assert handler.message.unfinished
