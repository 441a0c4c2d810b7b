from __future__ import annotations

import asyncio

import pytest

from chatstream.streaming.throttle import ProgressThrottle


class _Counter:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


@pytest.mark.asyncio
async def test_burst_is_coalesced_into_leading_and_trailing_firing() -> None:
    counter = _Counter()
    throttle = ProgressThrottle(on_flush=counter, interval=0.05)

    for _ in range(20):
        throttle.on_delta()

    assert counter.calls == 1
    assert throttle.pending is not None

    await throttle.wait_pending()

    assert counter.calls == 2
    assert throttle.pending is None


@pytest.mark.asyncio
async def test_at_most_one_firing_per_interval() -> None:
    counter = _Counter()
    throttle = ProgressThrottle(on_flush=counter, interval=0.1)

    throttle.on_delta()
    await asyncio.sleep(0.02)
    throttle.on_delta()
    await asyncio.sleep(0.02)
    throttle.on_delta()

    assert counter.calls == 1
    await asyncio.sleep(0.12)
    assert counter.calls == 2


@pytest.mark.asyncio
async def test_finish_guarantees_a_final_firing() -> None:
    counter = _Counter()
    throttle = ProgressThrottle(on_flush=counter, interval=10.0)

    throttle.on_delta()
    throttle.on_delta()  # trailing firing scheduled far in the future
    throttle.finish()

    assert counter.calls == 2
    assert throttle.closed
    assert throttle.pending is None

    throttle.on_delta()
    throttle.finish()
    assert counter.calls == 2


@pytest.mark.asyncio
async def test_flush_only_fires_when_dirty() -> None:
    counter = _Counter()
    throttle = ProgressThrottle(on_flush=counter, interval=10.0)

    assert throttle.flush() is False
    throttle.on_delta()
    throttle.on_delta()
    assert throttle.flush() is True
    assert throttle.flush() is False
    assert counter.calls == 2


@pytest.mark.asyncio
async def test_cancel_resolves_waiters_without_firing() -> None:
    counter = _Counter()
    throttle = ProgressThrottle(on_flush=counter, interval=10.0)
    throttle.on_delta()
    throttle.on_delta()

    waiter = asyncio.create_task(throttle.wait_pending())
    await asyncio.sleep(0)
    throttle.cancel()
    await asyncio.wait_for(waiter, timeout=1.0)

    assert counter.calls == 1
    assert throttle.closed


@pytest.mark.asyncio
async def test_callback_errors_are_contained() -> None:
    def _boom() -> None:
        raise RuntimeError("render failed")

    throttle = ProgressThrottle(on_flush=_boom, interval=0.05)
    throttle.on_delta()
    throttle.finish()

    assert throttle.flush_count == 2


def test_without_a_loop_deltas_wait_for_flush() -> None:
    now = [0.0]
    counter = _Counter()
    throttle = ProgressThrottle(on_flush=counter, interval=1.0, clock=lambda: now[0])

    throttle.on_delta()
    now[0] = 0.5
    throttle.on_delta()

    assert counter.calls == 1
    assert throttle.pending is None
    assert throttle.flush() is True
    assert counter.calls == 2


def test_partial_text_accessor() -> None:
    assert ProgressThrottle().get_partial_text() == ""
    assert ProgressThrottle(get_partial_text=lambda: "Hel").get_partial_text() == "Hel"


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ProgressThrottle(interval=0)
