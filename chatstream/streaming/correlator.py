"""Run correlator: maps step identifiers to the run and message they belong to.

One correlator serves one panel for one turn. Its maps are cleared by the
owning session when the turn concludes, so they never grow across turns.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from loguru import logger

from .errors import UnknownStep
from .event_types import Message, RunStep, StepKind, ToolCallDelta


class RunCorrelator:
    """Step → run → message bookkeeping for a single panel."""

    def __init__(self, scope: str = "primary"):
        self.scope = scope
        self._steps: Dict[str, RunStep] = {}
        self._messages: Dict[str, Message] = {}
        self._tool_call_ids: Dict[str, str] = {}

    def register_step(
        self,
        step_id: str,
        run_id: str,
        index: int,
        kind: StepKind,
        tool_calls: Optional[Iterable[ToolCallDelta]] = None,
    ) -> RunStep:
        """Record a step; tool-call steps also remember their tool call id."""
        step = RunStep(
            step_id=step_id,
            run_id=run_id,
            index=index,
            kind=kind,
            tool_calls=tuple(tool_calls or ()),
        )
        return self.register(step)

    def register(self, step: RunStep) -> RunStep:
        if step.step_id in self._steps:
            logger.debug(f"correlator_step_reregistered scope={self.scope} step_id={step.step_id}")
        self._steps[step.step_id] = step
        if step.kind is StepKind.TOOL_CALLS:
            for tool_call in step.tool_calls:
                if tool_call.id:
                    self._tool_call_ids[step.step_id] = tool_call.id
        return step

    def step_for(self, step_id: str) -> RunStep:
        try:
            return self._steps[step_id]
        except KeyError:
            raise UnknownStep(step_id) from None

    def resolve_run(self, step_id: str) -> str:
        """Return the run owning ``step_id``.

        Raises:
            UnknownStep: the step was never registered. Callers drop the event.
        """
        return self.step_for(step_id).run_id

    def tool_call_id_for(self, step_id: str) -> str:
        return self._tool_call_ids.get(step_id, "")

    def message_for(self, run_id: str) -> Optional[Message]:
        return self._messages.get(run_id)

    def set_message(self, message: Message) -> None:
        if not message.run_id:
            raise ValueError("message has no run_id to be owned by")
        self._messages[message.run_id] = message

    def messages(self) -> List[Message]:
        return list(self._messages.values())

    def release_run(self, run_id: str) -> None:
        """Drop every entry belonging to ``run_id``."""
        step_ids = [step_id for step_id, step in self._steps.items() if step.run_id == run_id]
        for step_id in step_ids:
            del self._steps[step_id]
            self._tool_call_ids.pop(step_id, None)
        self._messages.pop(run_id, None)

    def clear(self) -> None:
        stats = self.stats()
        self._steps.clear()
        self._messages.clear()
        self._tool_call_ids.clear()
        logger.debug(
            f"correlator_cleared scope={self.scope} steps={stats['steps']} "
            f"messages={stats['messages']} tool_calls={stats['tool_calls']}"
        )

    def stats(self) -> Dict[str, int]:
        return {
            "steps": len(self._steps),
            "messages": len(self._messages),
            "tool_calls": len(self._tool_call_ids),
        }

    def __len__(self) -> int:
        return len(self._steps)
