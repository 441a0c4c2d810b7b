"""
Streaming transport client.

Posts a submission to an agent server and feeds the resulting
``text/event-stream`` into a panel's ``StreamEventHandler``. The connection
is retried with exponential backoff, but only until the first frame arrives;
once data has been received a broken stream fails the run instead of
replaying it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from loguru import logger

from chatstream.core.settings import Settings, get_settings
from chatstream.core.transport.sse import ServerSentEvent, SSEDecoder
from chatstream.streaming.errors import TransportFailure
from chatstream.streaming.handler import StreamEventHandler
from chatstream.streaming.recovery import AbortSignal, RecoveryPayload

DEFAULT_RETRYABLE_STATUSES: Tuple[int, ...] = (0, 408, 429, 500, 502, 503, 504)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for connection retries."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    retryable_statuses: Tuple[int, ...] = DEFAULT_RETRYABLE_STATUSES

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfig":
        return cls(
            max_retries=settings.sse_max_retries,
            base_delay=settings.sse_retry_base_delay,
            max_delay=settings.sse_retry_max_delay,
            backoff_factor=settings.sse_retry_backoff,
        )

    def is_retryable(self, status_code: Optional[int]) -> bool:
        return status_code is None or status_code in self.retryable_statuses


def calculate_retry_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt + 1``.

    delay = min(max_delay, base_delay * backoff_factor ^ attempt)

    Args:
        attempt: Retries already made (0-indexed)
        config: Retry configuration
    """
    return min(config.base_delay * (config.backoff_factor ** attempt), config.max_delay)


class _StreamState:
    __slots__ = ("received",)

    def __init__(self):
        self.received = False


class SSEStreamClient:
    """httpx-based SSE client bound to one handler per ``stream`` call."""

    def __init__(
        self,
        *,
        retry: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.retry = retry or RetryConfig.from_settings(settings)
        self.timeout = timeout if timeout is not None else settings.sse_connect_timeout
        self._headers: Dict[str, str] = {
            "Accept": "text/event-stream",
            "Content-Type": "application/json",
            **dict(headers or {}),
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SSEStreamClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def stream(
        self,
        url: str,
        payload: Mapping[str, Any],
        handler: StreamEventHandler,
        abort_signal: Optional[AbortSignal] = None,
    ) -> Optional[RecoveryPayload]:
        """Run one submission to a terminal state.

        Returns the recovery payload when the run was aborted or failed, or
        None when it completed. The handler is always left terminal, also
        when the calling task is cancelled.
        """
        try:
            return await self._run(url, payload, handler, abort_signal)
        except asyncio.CancelledError:
            if not handler.is_terminal:
                handler.abort("cancelled")
            raise
        except Exception as exc:
            if handler.is_terminal:
                raise
            logger.exception(f"sse_stream_error panel={handler.panel.value} error={exc}")
            return handler.fail(TransportFailure(f"Stream error: {exc}", retryable=False))

    async def _run(
        self,
        url: str,
        payload: Mapping[str, Any],
        handler: StreamEventHandler,
        abort_signal: Optional[AbortSignal],
    ) -> Optional[RecoveryPayload]:
        attempt = 0
        while True:
            if abort_signal is not None and abort_signal.is_aborted():
                return handler.abort(abort_signal.reason or "cancelled")

            state = _StreamState()
            try:
                await self._attempt(url, payload, handler, abort_signal, state)
            except TransportFailure as exc:
                if abort_signal is not None and abort_signal.is_aborted():
                    return handler.abort(abort_signal.reason or "cancelled")
                if exc.retryable and not state.received and attempt < self.retry.max_retries:
                    delay = calculate_retry_delay(attempt, self.retry)
                    attempt += 1
                    logger.warning(
                        f"sse_retry attempt={attempt} max_retries={self.retry.max_retries} "
                        f"delay={delay:.2f}s status={exc.status_code} error='{exc.message}'"
                    )
                    if await self._backoff(delay, abort_signal):
                        return handler.abort(abort_signal.reason or "cancelled")
                    continue

                exc.attempts = attempt + 1
                if exc.retryable and not state.received:
                    logger.error(f"sse_retry_exhausted attempts={exc.attempts} error='{exc.message}'")
                    exc = TransportFailure(
                        status_code=exc.status_code,
                        retryable=False,
                        attempts=exc.attempts,
                    )
                else:
                    logger.error(f"sse_stream_failed status={exc.status_code} error='{exc.message}'")
                return handler.fail(exc)

            if handler.is_terminal:
                return handler.recovery
            if abort_signal is not None and abort_signal.is_aborted():
                return handler.abort(abort_signal.reason or "cancelled")
            logger.warning(f"sse_stream_ended_early panel={handler.panel.value} received={state.received}")
            return handler.fail(TransportFailure("Stream ended before the response completed"))

    async def _attempt(
        self,
        url: str,
        payload: Mapping[str, Any],
        handler: StreamEventHandler,
        abort_signal: Optional[AbortSignal],
        state: _StreamState,
    ) -> None:
        """One connection, raced against the abort signal so a quiet stream can still be cancelled."""
        if abort_signal is None:
            await self._stream_once(url, payload, handler, abort_signal, state)
            return

        read = asyncio.ensure_future(self._stream_once(url, payload, handler, abort_signal, state))
        aborted = asyncio.ensure_future(abort_signal.wait())
        try:
            done, _ = await asyncio.wait({read, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (read, aborted):
                if not task.done():
                    task.cancel()
        if read in done:
            read.result()
            return

        # Let the response context unwind before the run is aborted.
        await asyncio.gather(read, return_exceptions=True)
        logger.info(f"sse_stream_aborted panel={handler.panel.value} reason={abort_signal.reason}")
        handler.abort(abort_signal.reason or "cancelled")

    async def _stream_once(
        self,
        url: str,
        payload: Mapping[str, Any],
        handler: StreamEventHandler,
        abort_signal: Optional[AbortSignal],
        state: _StreamState,
    ) -> None:
        client = await self._get_client()
        try:
            async with client.stream("POST", url, json=dict(payload)) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportFailure(
                        f"HTTP {response.status_code}: {body[:200]}",
                        status_code=response.status_code,
                        retryable=self.retry.is_retryable(response.status_code),
                    )

                decoder = SSEDecoder()
                async for chunk in response.aiter_text():
                    for frame in decoder.feed(chunk):
                        state.received = True
                        if await self._dispatch(frame, handler, abort_signal):
                            return
                for frame in decoder.flush():
                    state.received = True
                    if await self._dispatch(frame, handler, abort_signal):
                        return
        except httpx.TimeoutException as exc:
            raise TransportFailure(f"Connection timed out: {exc}", status_code=408, retryable=True) from exc
        except httpx.RequestError as exc:
            raise TransportFailure(f"Connection error: {exc}", status_code=0, retryable=True) from exc

    async def _dispatch(
        self,
        frame: ServerSentEvent,
        handler: StreamEventHandler,
        abort_signal: Optional[AbortSignal],
    ) -> bool:
        """Route one frame; returns True once the run is terminal."""
        if abort_signal is not None and abort_signal.is_aborted():
            handler.abort(abort_signal.reason or "cancelled")
            return True

        if frame.event == "message":
            try:
                data = frame.json()
            except ValueError:
                logger.warning(f"sse_frame_dropped reason=invalid_json data='{frame.data[:100]}'")
                return False
            await handler.handle_payload(data)
            return handler.is_terminal

        if frame.event == "error":
            handler.fail(TransportFailure(_error_text(frame)))
            return True

        if frame.event == "cancel":
            handler.abort("cancelled")
            return True

        logger.debug(f"sse_frame_ignored event={frame.event}")
        return False

    async def _backoff(self, delay: float, abort_signal: Optional[AbortSignal]) -> bool:
        """Sleep ``delay`` seconds; returns True if aborted meanwhile."""
        if abort_signal is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(abort_signal.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False


def _error_text(frame: ServerSentEvent) -> str:
    try:
        data = frame.json()
    except ValueError:
        return frame.data or "Stream error"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data.get("text") or "Stream error")
    return str(data)
