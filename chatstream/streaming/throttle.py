"""
Progress throttle.

Coalesces bursts of content deltas into a progress signal that fires at most
once per interval. The first delta after a quiet period fires immediately;
later deltas inside the interval schedule a single trailing firing. A run's
terminal transition calls ``finish()``, which always fires once more so the
last delta is never swallowed.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from loguru import logger

DEFAULT_THROTTLE_INTERVAL = 0.25


class ProgressThrottle:
    """Rate-limited progress signal with a guaranteed final firing."""

    def __init__(
        self,
        on_flush: Optional[Callable[[], None]] = None,
        interval: float = DEFAULT_THROTTLE_INTERVAL,
        get_partial_text: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("Throttle interval must be positive")
        self.interval = interval
        self._on_flush = on_flush
        self._partial_text = get_partial_text
        self._clock = clock

        self._dirty = False
        self._closed = False
        self._last_fired: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: Optional[asyncio.Future] = None
        self.flush_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> Optional[asyncio.Future]:
        """Future resolved by the next scheduled firing, or None when nothing is queued."""
        if self._pending is not None and not self._pending.done():
            return self._pending
        return None

    def on_delta(self) -> None:
        """Record a content-affecting event."""
        if self._closed:
            return
        self._dirty = True
        if self._timer is not None:
            return

        now = self._clock()
        if self._last_fired is None or now - self._last_fired >= self.interval:
            self._fire()
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Left dirty; flush() or finish() will surface it.
            return
        self._pending = loop.create_future()
        self._timer = loop.call_later(self.interval - (now - self._last_fired), self._on_timer)

    async def wait_pending(self) -> None:
        """Wait for a scheduled trailing firing, if any."""
        pending = self.pending
        if pending is not None:
            await asyncio.shield(pending)

    def flush(self) -> bool:
        """Fire now if deltas are outstanding. Returns True if it fired."""
        if self._closed or not self._dirty:
            return False
        self._fire()
        return True

    def finish(self) -> None:
        """Final firing for a terminal run; later deltas are ignored."""
        if self._closed:
            return
        self._fire()
        self._closed = True

    def cancel(self) -> None:
        """Drop any scheduled firing without invoking the callback."""
        self._cancel_timer()
        self._resolve_pending()
        self._dirty = False
        self._closed = True

    def get_partial_text(self) -> str:
        if self._partial_text is None:
            return ""
        return self._partial_text()

    def _on_timer(self) -> None:
        self._timer = None
        if self._dirty and not self._closed:
            self._fire()
        else:
            self._resolve_pending()

    def _fire(self) -> None:
        self._cancel_timer()
        self._dirty = False
        self._last_fired = self._clock()
        self.flush_count += 1
        if self._on_flush is not None:
            try:
                self._on_flush()
            except Exception as exc:
                logger.exception(f"throttle_flush_error error={exc}")
        self._resolve_pending()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _resolve_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(None)
        self._pending = None
