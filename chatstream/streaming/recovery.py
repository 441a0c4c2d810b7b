"""
Abort and partial-recovery controller.

Each panel's run moves ``idle -> active -> completed | aborted | failed``.
On abort or failure the controller performs a final throttle flush, reads the
partial text through the throttle accessor and returns a ``RecoveryPayload``.
The registry entry is released on every exit path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from .errors import StreamProcessingError
from .event_types import Message, Submission
from .registry import RunActivityRegistry
from .throttle import ProgressThrottle


class RunState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.ABORTED, RunState.FAILED)


class AbortSignal:
    """External cancel primitive shared between the caller and a run."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    def signal(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def is_aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "cancelled"


@dataclass(frozen=True)
class RecoveryPayload:
    """Best-known partial output of an aborted or failed run."""

    partial_text: str
    conversation_id: Optional[str]
    sender: Optional[str]
    run_id: str
    message_id: str
    parent_message_id: Optional[str]
    panel: str
    reason: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partialText": self.partial_text,
            "conversationId": self.conversation_id,
            "sender": self.sender,
            "runId": self.run_id,
            "messageId": self.message_id,
            "parentMessageId": self.parent_message_id,
            "panel": self.panel,
            "reason": self.reason,
            "error": self.error,
        }


class RunController:
    """Lifecycle of one panel's run within a turn."""

    def __init__(
        self,
        submission: Submission,
        registry: RunActivityRegistry,
        throttle: ProgressThrottle,
    ):
        self.submission = submission
        self.registry = registry
        self.throttle = throttle
        self.state = RunState.IDLE
        self.recovery: Optional[RecoveryPayload] = None

    @property
    def panel(self):
        return self.submission.panel

    @property
    def accepts_updates(self) -> bool:
        return self.state is RunState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def start(self) -> bool:
        if self.state is not RunState.IDLE:
            logger.debug(
                f"run_start_ignored run_id={self.submission.run_id} panel={self.panel.value} "
                f"state={self.state.value}"
            )
            return False
        self.state = RunState.ACTIVE
        self.registry.begin(self.submission.run_id, self.panel)
        return True

    def complete(self, message: Message) -> bool:
        """Mark the run completed. Returns False if it had already concluded."""
        if self.is_terminal:
            logger.debug(
                f"run_complete_ignored run_id={self.submission.run_id} panel={self.panel.value} "
                f"state={self.state.value}"
            )
            return False
        try:
            self.throttle.finish()
            self.state = RunState.COMPLETED
            logger.info(
                f"run_completed run_id={self.submission.run_id} panel={self.panel.value} "
                f"message_id={message.message_id}"
            )
        finally:
            self.registry.end(self.submission.run_id, self.panel)
        return True

    def abort(self, reason: str = "cancelled", message: Optional[Message] = None) -> Optional[RecoveryPayload]:
        return self._terminate(RunState.ABORTED, reason, None, message)

    def fail(self, error: BaseException, message: Optional[Message] = None) -> Optional[RecoveryPayload]:
        reason = error.code if isinstance(error, StreamProcessingError) else "error"
        return self._terminate(RunState.FAILED, reason, str(error), message)

    def _terminate(
        self,
        state: RunState,
        reason: str,
        error: Optional[str],
        message: Optional[Message],
    ) -> Optional[RecoveryPayload]:
        # A second terminal call reports the first outcome.
        if self.is_terminal:
            return self.recovery

        message = message or self.submission.initial_message()
        try:
            self.throttle.finish()
            self.state = state
            self.recovery = RecoveryPayload(
                partial_text=self.throttle.get_partial_text(),
                conversation_id=message.conversation_id or self.submission.conversation_id,
                sender=message.sender or self.submission.sender,
                run_id=message.run_id or self.submission.run_id,
                message_id=message.message_id,
                parent_message_id=message.parent_message_id or self.submission.parent_message_id,
                panel=self.panel.value,
                reason=reason,
                error=error,
            )
            log = logger.warning if state is RunState.FAILED else logger.info
            log(
                f"run_{state.value} run_id={self.submission.run_id} panel={self.panel.value} "
                f"reason={reason} partial_chars={len(self.recovery.partial_text)}"
            )
        finally:
            self.registry.end(self.submission.run_id, self.panel)
        return self.recovery
