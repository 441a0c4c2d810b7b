"""
Per-turn stream session.

A session owns everything that is shared between the panels of one turn:
the run activity registry and one correlator per panel. It is created by
whoever starts the turn and torn down deterministically when the turn ends.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from loguru import logger

from chatstream.core.settings import Settings, get_settings

from .correlator import RunCorrelator
from .errors import StalledRun
from .event_types import Panel, Submission
from .handler import MessageStore, ProgressListener, Renderer, StreamEventHandler, ToolStartMarker
from .registry import BusyListener, RunActivityRegistry


class StreamSession:
    """Coordinates one or two panels streaming concurrently on one loop."""

    def __init__(
        self,
        *,
        comparison: bool = False,
        settings: Optional[Settings] = None,
        watchdog_timeout: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        stale_after: Optional[float] = None,
        throttle_interval: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        settings = settings or get_settings()
        self.comparison = comparison
        self.throttle_interval = (
            throttle_interval if throttle_interval is not None else settings.stream_throttle_interval
        )

        registry_kwargs = {
            "watchdog_timeout": (
                watchdog_timeout if watchdog_timeout is not None else settings.effective_watchdog_timeout()
            ),
            "sweep_interval": sweep_interval if sweep_interval is not None else settings.stream_sweep_interval,
            "stale_after": stale_after if stale_after is not None else settings.stream_registry_stale_after,
            "on_stall": self._on_stall,
        }
        if clock is not None:
            registry_kwargs["clock"] = clock
        self.registry = RunActivityRegistry(**registry_kwargs)

        self._correlators: Dict[Panel, RunCorrelator] = {
            panel: RunCorrelator(scope=panel.value) for panel in Panel
        }
        self._handlers: Dict[Panel, StreamEventHandler] = {}
        self._closed = False

    async def __aenter__(self) -> "StreamSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        await self.registry.start()

    def open_panel(
        self,
        submission: Submission,
        *,
        renderer: Optional[Renderer] = None,
        on_progress: Optional[ProgressListener] = None,
        on_tool_start: Optional[ToolStartMarker] = None,
        store: Optional[MessageStore] = None,
    ) -> StreamEventHandler:
        """Create and start the handler for ``submission.panel``."""
        if self._closed:
            raise RuntimeError("Stream session is closed")
        panel = submission.panel
        if panel is Panel.SECONDARY and not self.comparison:
            raise ValueError("Secondary panel requires a comparison session")
        if panel in self._handlers:
            raise ValueError(f"Panel '{panel.value}' already has a run in this turn")

        handler = StreamEventHandler(
            submission,
            self.registry,
            self._correlators[panel],
            renderer=renderer,
            on_progress=on_progress,
            on_tool_start=on_tool_start,
            store=store,
            throttle_interval=self.throttle_interval,
            on_terminal=self._on_handler_terminal,
        )
        self._handlers[panel] = handler
        handler.start()
        logger.info(
            f"stream_panel_opened panel={panel.value} run_id={submission.run_id} "
            f"conversation_id={submission.conversation_id}"
        )
        return handler

    def handler(self, panel: Panel) -> Optional[StreamEventHandler]:
        return self._handlers.get(panel)

    def handlers(self) -> List[StreamEventHandler]:
        return list(self._handlers.values())

    def correlator(self, panel: Panel) -> RunCorrelator:
        return self._correlators[panel]

    def is_busy(self) -> bool:
        return self.registry.is_busy()

    def subscribe_busy(self, listener: BusyListener) -> Callable[[], None]:
        return self.registry.subscribe(listener)

    async def close(self) -> None:
        """Abort unfinished runs, stop timers and release all per-turn state."""
        if self._closed:
            return
        self._closed = True
        for handler in self._handlers.values():
            if not handler.is_terminal:
                handler.abort("session_closed")
        await self.registry.stop()
        self.registry.force_clear()
        self._clear_correlators()
        logger.debug(f"stream_session_closed panels={[p.value for p in self._handlers]}")

    def _on_stall(self, stalled: StalledRun) -> None:
        for handler in self._handlers.values():
            if handler.submission.run_id == stalled.run_id and handler.panel.value == stalled.panel:
                handler.fail(stalled)
                return
        logger.warning(f"stream_stall_unmatched run_id={stalled.run_id} panel={stalled.panel}")

    def _on_handler_terminal(self, handler: StreamEventHandler) -> None:
        if all(h.is_terminal for h in self._handlers.values()):
            self._clear_correlators()
            return
        # Other panels are still streaming; only this panel's runs are done.
        for run_id in handler.run_ids:
            handler.correlator.release_run(run_id)

    def _clear_correlators(self) -> None:
        for correlator in self._correlators.values():
            correlator.clear()
