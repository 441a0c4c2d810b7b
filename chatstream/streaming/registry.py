"""
Run activity registry: which runs are open across the one or two panels.

The shared busy signal is derived from occupancy alone: true iff at least one
entry is registered. Each entry carries a watchdog that force-removes it if
``end`` never comes; a periodic sweep force-clears the whole registry when it
has been continuously busy past a staleness threshold.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .errors import StalledRun
from .event_types import Panel

DEFAULT_WATCHDOG_TIMEOUT = 60.0
STRICT_WATCHDOG_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 1.0
DEFAULT_STALE_AFTER = 120.0

EntryKey = Tuple[str, Panel]
BusyListener = Callable[[bool], None]
StallListener = Callable[[StalledRun], None]


class WatchdogPolicy(str, Enum):
    DEFAULT = "default"
    STRICT = "strict"

    @property
    def timeout(self) -> float:
        if self is WatchdogPolicy.STRICT:
            return STRICT_WATCHDOG_TIMEOUT
        return DEFAULT_WATCHDOG_TIMEOUT


@dataclass(frozen=True)
class RunActivityEntry:
    run_id: str
    panel: Panel
    created_at: float


class RunActivityRegistry:
    """
    Keyed collection of open runs with per-entry watchdogs.

    All operations must run on the event loop that owns the registry; the
    watchdog timers are ``loop.call_later`` handles and are cancelled on
    ``end``, ``force_clear`` and ``stop``.
    """

    def __init__(
        self,
        watchdog_timeout: Optional[float] = None,
        policy: WatchdogPolicy = WatchdogPolicy.DEFAULT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], float] = time.monotonic,
        on_stall: Optional[StallListener] = None,
    ):
        """
        Initialize the registry.

        Args:
            watchdog_timeout: Per-entry threshold in seconds (overrides ``policy``)
            policy: Default (60s) or strict (30s) watchdog policy
            sweep_interval: Seconds between failsafe sweeps
            stale_after: Seconds of continuous occupancy before the sweep force-clears
            clock: Monotonic time source
            on_stall: Called with a ``StalledRun`` when a watchdog fires
        """
        timeout = watchdog_timeout if watchdog_timeout is not None else policy.timeout
        if timeout <= 0:
            raise ValueError("Watchdog timeout must be positive")
        if sweep_interval <= 0:
            raise ValueError("Sweep interval must be positive")
        if stale_after <= 0:
            raise ValueError("Staleness threshold must be positive")

        self.watchdog_timeout = timeout
        self.sweep_interval = sweep_interval
        self.stale_after = stale_after
        self._clock = clock
        self._on_stall = on_stall

        self._entries: Dict[EntryKey, RunActivityEntry] = {}
        self._watchdogs: Dict[EntryKey, asyncio.TimerHandle] = {}
        self._busy_listeners: List[BusyListener] = []
        self._busy_since: Optional[float] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._stats = {
            "begun": 0,
            "ended": 0,
            "watchdog_expired": 0,
            "force_cleared": 0,
            "stale_sweeps": 0,
        }

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def begin(self, run_id: str, panel: Panel) -> bool:
        """Register ``run_id`` for ``panel``. Returns False if already registered."""
        key = (run_id, panel)
        if key in self._entries:
            logger.debug(f"registry_begin_duplicate run_id={run_id} panel={panel.value}")
            return False

        was_busy = self.is_busy()
        now = self._clock()
        self._entries[key] = RunActivityEntry(run_id=run_id, panel=panel, created_at=now)
        self._arm_watchdog(key)
        self._stats["begun"] += 1
        if not was_busy:
            self._busy_since = now

        logger.info(
            f"registry_begin run_id={run_id} panel={panel.value} active={len(self._entries)}"
        )
        self._notify_if_changed(was_busy)
        return True

    def end(self, run_id: str, panel: Panel) -> bool:
        """Remove the entry and cancel its watchdog. Returns False if absent."""
        key = (run_id, panel)
        if key not in self._entries:
            logger.debug(f"registry_end_absent run_id={run_id} panel={panel.value}")
            return False

        was_busy = self.is_busy()
        self._remove(key)
        self._stats["ended"] += 1
        logger.info(
            f"registry_end run_id={run_id} panel={panel.value} active={len(self._entries)}"
        )
        self._notify_if_changed(was_busy)
        return True

    def is_busy(self) -> bool:
        return bool(self._entries)

    def force_clear(self) -> int:
        """Remove every entry and cancel every watchdog. Returns the number removed."""
        was_busy = self.is_busy()
        removed = len(self._entries)
        for key in list(self._entries):
            self._remove(key)
        if removed:
            self._stats["force_cleared"] += removed
            logger.warning(f"registry_force_cleared removed={removed}")
        self._notify_if_changed(was_busy)
        return removed

    def contains(self, run_id: str, panel: Panel) -> bool:
        return (run_id, panel) in self._entries

    def entries(self, panel: Optional[Panel] = None) -> List[RunActivityEntry]:
        return [
            entry for entry in self._entries.values()
            if panel is None or entry.panel is panel
        ]

    def subscribe(self, listener: BusyListener) -> Callable[[], None]:
        """Register a busy-transition listener; returns an unsubscribe callable."""
        self._busy_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._busy_listeners:
                self._busy_listeners.remove(listener)

        return _unsubscribe

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "active": len(self._entries), "watchdogs": len(self._watchdogs)}

    # -------------------------------------------------------------------------
    # Failsafe sweep
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background staleness sweep."""
        if not self._sweep_task:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.debug("registry_sweep_started")

    async def stop(self) -> None:
        """Stop the sweep and cancel all outstanding watchdogs."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.debug("registry_sweep_stopped")
        for handle in self._watchdogs.values():
            handle.cancel()
        self._watchdogs.clear()

    def sweep(self) -> bool:
        """Force-clear if the registry has been busy longer than ``stale_after``."""
        if not self.is_busy() or self._busy_since is None:
            return False
        busy_for = self._clock() - self._busy_since
        if busy_for <= self.stale_after:
            return False
        self._stats["stale_sweeps"] += 1
        logger.warning(
            f"registry_stale busy_for={busy_for:.1f}s threshold={self.stale_after:.1f}s "
            f"entries={[f'{e.panel.value}:{e.run_id}' for e in self._entries.values()]}"
        )
        stalled = list(self._entries.values())
        self.force_clear()
        for entry in stalled:
            self._report_stall(entry, busy_for)
        return True

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as exc:
                logger.exception(f"registry_sweep_error error={exc}")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _arm_watchdog(self, key: EntryKey) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"registry_watchdog_unarmed run_id={key[0]} panel={key[1].value} reason=no_running_loop"
            )
            return
        self._watchdogs[key] = loop.call_later(self.watchdog_timeout, self._on_watchdog, key)

    def _on_watchdog(self, key: EntryKey) -> None:
        self._watchdogs.pop(key, None)
        entry = self._entries.get(key)
        if entry is None:
            return
        elapsed = self._clock() - entry.created_at
        logger.warning(
            f"registry_watchdog_fired run_id={entry.run_id} panel={entry.panel.value} "
            f"elapsed={elapsed:.1f}s threshold={self.watchdog_timeout:.1f}s"
        )
        was_busy = self.is_busy()
        self._remove(key)
        self._stats["watchdog_expired"] += 1
        self._notify_if_changed(was_busy)
        self._report_stall(entry, elapsed)

    def _report_stall(self, entry: RunActivityEntry, elapsed: float) -> None:
        if self._on_stall is None:
            return
        try:
            self._on_stall(StalledRun(entry.run_id, entry.panel.value, elapsed))
        except Exception as exc:
            logger.exception(f"registry_stall_listener_error run_id={entry.run_id} error={exc}")

    def _remove(self, key: EntryKey) -> None:
        self._entries.pop(key, None)
        handle = self._watchdogs.pop(key, None)
        if handle is not None:
            handle.cancel()
        if not self._entries:
            self._busy_since = None

    def _notify_if_changed(self, was_busy: bool) -> None:
        busy = self.is_busy()
        if busy == was_busy:
            return
        logger.debug(f"registry_busy_changed busy={busy}")
        for listener in list(self._busy_listeners):
            try:
                listener(busy)
            except Exception as exc:
                logger.exception(f"registry_busy_listener_error error={exc}")
