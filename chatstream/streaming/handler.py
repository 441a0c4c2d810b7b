"""Stream event handler for one panel's run.

Drives the pipeline raw event -> normalizer -> correlator -> assembler ->
renderer, feeds the progress throttle and routes terminal transitions
through the run controller.
"""

from __future__ import annotations

import dataclasses
import inspect
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Tuple, Union, runtime_checkable

from loguru import logger

from .assembler import append_segment, assemble
from .correlator import RunCorrelator
from .errors import (
    MalformedEvent,
    RunAborted,
    SegmentKindMismatch,
    StreamProcessingError,
    TransportFailure,
    UnknownStep,
)
from .event_types import (
    AgentUpdate,
    AgentUpdateSegment,
    ErrorEvent,
    ErrorSegment,
    Message,
    MessageDelta,
    ReasoningDelta,
    RunStepCompleted,
    RunStepCreated,
    RunStepDelta,
    StepKind,
    StreamEvent,
    Submission,
    ToolCallSegment,
)
from .normalizers import try_normalize_event
from .recovery import RecoveryPayload, RunController, RunState
from .registry import RunActivityRegistry
from .throttle import DEFAULT_THROTTLE_INTERVAL, ProgressThrottle

Renderer = Callable[[Message, bool], None]
ProgressListener = Callable[[Message], None]
ToolStartMarker = Callable[[ToolCallSegment], Union[Awaitable[None], None]]


@runtime_checkable
class MessageStore(Protocol):
    """Persistence boundary for completed messages."""

    async def save_message(self, message: Message) -> Any: ...


class StreamEventHandler:
    """
    Processes the event stream of one panel for one turn.

    Event-level problems (malformed events, unknown steps, segment
    collisions) are logged and dropped; ``handle`` never raises for them.
    """

    def __init__(
        self,
        submission: Submission,
        registry: RunActivityRegistry,
        correlator: Optional[RunCorrelator] = None,
        *,
        renderer: Optional[Renderer] = None,
        on_progress: Optional[ProgressListener] = None,
        on_tool_start: Optional[ToolStartMarker] = None,
        store: Optional[MessageStore] = None,
        throttle_interval: float = DEFAULT_THROTTLE_INTERVAL,
        on_terminal: Optional[Callable[["StreamEventHandler"], None]] = None,
    ):
        self.submission = submission
        self.panel = submission.panel
        self.correlator = correlator or RunCorrelator(scope=submission.panel.value)
        self._renderer = renderer
        self._on_progress = on_progress
        self._on_tool_start = on_tool_start
        self._store = store
        self._on_terminal = on_terminal

        self._placeholder = submission.initial_message()
        self._current_run_id: Optional[str] = None
        self._run_ids: List[str] = []
        self._final_message: Optional[Message] = None

        self.throttle = ProgressThrottle(
            on_flush=self._emit_progress,
            interval=throttle_interval,
            get_partial_text=self.partial_text,
        )
        self.controller = RunController(submission, registry, self.throttle)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self.controller.state

    @property
    def is_terminal(self) -> bool:
        return self.controller.is_terminal

    @property
    def recovery(self) -> Optional[RecoveryPayload]:
        return self.controller.recovery

    @property
    def run_ids(self) -> Tuple[str, ...]:
        """Protocol runs this handler has assembled, in order of appearance."""
        return tuple(self._run_ids)

    @property
    def message(self) -> Message:
        """The latest message for this panel (the placeholder until a run starts)."""
        if self._final_message is not None:
            return self._final_message
        if self._current_run_id is not None:
            message = self.correlator.message_for(self._current_run_id)
            if message is not None:
                return message
        return self._placeholder

    def partial_text(self) -> str:
        """Text assembled so far; read by the throttle and recovery payloads."""
        return self.message.all_text()

    def start(self) -> bool:
        return self.controller.start()

    # -------------------------------------------------------------------------
    # Event processing
    # -------------------------------------------------------------------------

    async def handle(self, raw: Mapping[str, Any]) -> Optional[Message]:
        """Process one ``{event, data}`` pair. Returns the updated message or None if dropped."""
        if not self.controller.accepts_updates:
            logger.debug(
                f"stream_event_ignored reason=state_{self.state.value} panel={self.panel.value} "
                f"event={raw.get('event') if isinstance(raw, Mapping) else None}"
            )
            return None

        event = try_normalize_event(raw)
        if event is None:
            return None

        try:
            return await self._dispatch(event)
        except UnknownStep as exc:
            logger.warning(
                f"stream_event_dropped reason=unknown_step event={event.name} "
                f"step_id={exc.step_id} panel={self.panel.value}"
            )
        except SegmentKindMismatch as exc:
            logger.warning(
                f"stream_event_dropped reason=segment_kind_mismatch event={event.name} "
                f"index={exc.index} existing={exc.existing} incoming={exc.incoming} "
                f"message_id={exc.message_id} panel={self.panel.value}"
            )
        except MalformedEvent as exc:
            logger.warning(f"stream_event_dropped reason=malformed event={event.name} detail='{exc.reason}'")
        return None

    async def handle_payload(self, payload: Mapping[str, Any]) -> Optional[Message]:
        """Classify a decoded SSE ``message`` frame and process it."""
        if not isinstance(payload, Mapping):
            logger.warning(f"stream_payload_ignored reason=not_an_object panel={self.panel.value}")
            return None

        if payload.get("final"):
            return await self.complete(payload)

        if payload.get("created"):
            self._adopt_created(payload.get("message"))
            return self.message

        if "event" in payload:
            return await self.handle(payload)

        if payload.get("error"):
            error = payload.get("error")
            text = error if isinstance(error, str) else str(payload.get("text") or "Stream error")
            self.fail(TransportFailure(text))
            return self.message

        logger.debug(f"stream_payload_ignored keys={sorted(payload.keys())} panel={self.panel.value}")
        return None

    async def _dispatch(self, event: StreamEvent) -> Optional[Message]:
        if isinstance(event, RunStepCreated):
            return await self._on_run_step(event)

        if isinstance(event, RunStepDelta):
            step = self.correlator.step_for(event.step_id)
            if event.delta_type is not StepKind.TOOL_CALLS or not event.tool_calls:
                logger.debug(f"run_step_delta_skipped step_id={event.step_id} type={event.delta_type.value}")
                return None
            message = self._message_for_run(step.run_id)
            tool_call_id = self.correlator.tool_call_id_for(step.step_id)
            for call in event.tool_calls:
                patch = ToolCallSegment(
                    id=tool_call_id or call.id,
                    name=call.name,
                    args=call.args,
                    auth=event.auth,
                    expires_at=event.expires_at if event.auth is not None else None,
                )
                message = assemble(message, step.index, patch)
            return self._commit(message)

        if isinstance(event, RunStepCompleted):
            step = self.correlator.step_for(event.step_id)
            message = self._message_for_run(step.run_id)
            message = assemble(message, step.index, event.tool_call, is_final=True)
            return self._commit(message)

        if isinstance(event, (MessageDelta, ReasoningDelta)):
            step = self.correlator.step_for(event.step_id)
            message = self._message_for_run(step.run_id)
            message = assemble(message, step.index, event.content)
            return self._commit(message)

        if isinstance(event, AgentUpdate):
            message = self._message_for_run(event.run_id)
            message = assemble(message, event.index, AgentUpdateSegment(payload=event.payload))
            return self._commit(message)

        if isinstance(event, ErrorEvent):
            # A foreign runId must not hide the output assembled so far.
            if event.run_id and self.correlator.message_for(event.run_id) is not None:
                self._current_run_id = event.run_id
            self.fail(TransportFailure(event.message))
            return self.message

        return None

    async def _on_run_step(self, event: RunStepCreated) -> Optional[Message]:
        step = self.correlator.register(event.step)
        message = self._message_for_run(step.run_id)
        if step.kind is not StepKind.TOOL_CALLS or not step.tool_calls:
            return self._commit(message, render=False, progress=False)

        started = []
        for call in step.tool_calls:
            segment = ToolCallSegment(id=call.id, name=call.name, args=call.args)
            message = assemble(message, step.index, segment)
            started.append(segment)
        self._commit(message, render=False, progress=False)

        # Pending text must land before the tool marker.
        await self.throttle.wait_pending()
        for segment in started:
            await self._mark_tool_start(segment)

        if not self.controller.accepts_updates:
            return None
        self.throttle.on_delta()
        self._render(self.message, final=False)
        return self.message

    def _message_for_run(self, run_id: str) -> Message:
        message = self.correlator.message_for(run_id)
        if message is None:
            message = dataclasses.replace(
                self._placeholder,
                message_id=f"{run_id}-{self.panel.value}",
                run_id=run_id,
                content=(),
                text="",
            )
            self.correlator.set_message(message)
            self._run_ids.append(run_id)
            logger.debug(
                f"stream_message_created run_id={run_id} message_id={message.message_id} "
                f"panel={self.panel.value}"
            )
        self._current_run_id = run_id
        return message

    def _commit(self, message: Message, render: bool = True, progress: bool = True) -> Message:
        self.correlator.set_message(message)
        if progress:
            self.throttle.on_delta()
        if render:
            self._render(message, final=False)
        return message

    def _adopt_created(self, created: Any) -> None:
        if not isinstance(created, Mapping):
            return
        parent_id = created.get("messageId") or self._placeholder.parent_message_id
        self._placeholder = dataclasses.replace(
            self._placeholder,
            message_id=f"{parent_id}_",
            parent_message_id=parent_id,
            conversation_id=created.get("conversationId") or self._placeholder.conversation_id,
        )
        logger.debug(
            f"stream_created parent_message_id={parent_id} "
            f"conversation_id={self._placeholder.conversation_id} panel={self.panel.value}"
        )

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    async def complete(self, final_payload: Optional[Mapping[str, Any]] = None) -> Optional[Message]:
        """Finish the run, emit the final message and hand it to persistence."""
        if self.is_terminal:
            logger.debug(f"stream_complete_ignored state={self.state.value} panel={self.panel.value}")
            return self._final_message

        message = self.message
        response = final_payload.get("responseMessage") if final_payload else None
        if isinstance(response, Mapping) and self._current_run_id is None:
            adopted = Message.from_dict(response)
            message = dataclasses.replace(
                adopted,
                message_id=adopted.message_id or message.message_id,
                parent_message_id=adopted.parent_message_id or message.parent_message_id,
                conversation_id=adopted.conversation_id or message.conversation_id,
                sender=adopted.sender or message.sender,
            )

        if message.is_empty():
            sender = message.sender or self.submission.sender or "the model"
            message = append_segment(message, ErrorSegment(f"No response received from {sender}"))
            message = dataclasses.replace(message, error=True)

        message = dataclasses.replace(message, unfinished=False)
        self._final_message = message
        if message.run_id:
            self.correlator.set_message(message)
        self.controller.complete(message)
        self._render(message, final=True)
        self._notify_terminal()

        if self._store is not None:
            try:
                await self._store.save_message(message)
            except Exception as exc:
                logger.error(f"stream_persist_failed message_id={message.message_id} error={exc}")
        return message

    def abort(self, reason: str = "cancelled") -> Optional[RecoveryPayload]:
        """Cancel the run and freeze its partial output."""
        return self._terminate(RunAborted(reason))

    def fail(self, error: BaseException) -> Optional[RecoveryPayload]:
        """Fail the run (transport error, server error event or stall)."""
        return self._terminate(error)

    def _terminate(self, error: BaseException) -> Optional[RecoveryPayload]:
        if self.is_terminal:
            return self.recovery

        message = self.message
        if isinstance(error, RunAborted):
            payload = self.controller.abort(error.reason, message)
        else:
            payload = self.controller.fail(error, message)

        text = error.message if isinstance(error, StreamProcessingError) else str(error)
        frozen = append_segment(message, ErrorSegment(text))
        frozen = dataclasses.replace(
            frozen,
            unfinished=True,
            error=frozen.error or not isinstance(error, RunAborted),
        )
        self._final_message = frozen
        if frozen.run_id:
            self.correlator.set_message(frozen)
        self._render(frozen, final=True)
        self._notify_terminal()
        return payload

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    def _render(self, message: Message, final: bool) -> None:
        if self._renderer is None:
            return
        try:
            self._renderer(message, final)
        except Exception as exc:
            logger.exception(f"stream_render_error message_id={message.message_id} error={exc}")

    def _emit_progress(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.message)

    async def _mark_tool_start(self, segment: ToolCallSegment) -> None:
        if self._on_tool_start is None:
            return
        try:
            result = self._on_tool_start(segment)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.exception(f"stream_tool_marker_error tool_call_id={segment.id} error={exc}")

    def _notify_terminal(self) -> None:
        if self._on_terminal is not None:
            self._on_terminal(self)
