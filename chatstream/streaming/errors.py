"""
Error taxonomy for the streaming response assembler.

Event-level errors (malformed events, unknown steps, segment collisions) are
recovered locally by the handler. Run-level errors (stalls, transport
failures, aborts) always end in a recovery payload.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StreamProcessingError(Exception):
    """Base exception for streaming assembly errors."""

    code = "stream_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logs and API responses."""
        return {"error": self.code, "message": self.message}


class MalformedEvent(StreamProcessingError):
    """Raised when an event name is unknown or its data lacks required fields."""

    code = "malformed_event"

    def __init__(self, event_name: str, reason: str):
        super().__init__(f"Malformed '{event_name}' event: {reason}")
        self.event_name = event_name
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "event": self.event_name, "reason": self.reason}


class UnknownStep(StreamProcessingError):
    """Raised when a delta references a step the correlator never registered."""

    code = "unknown_step"

    def __init__(self, step_id: str):
        super().__init__(f"No run step registered for id '{step_id}'")
        self.step_id = step_id

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "step_id": self.step_id}


class SegmentKindMismatch(StreamProcessingError):
    """Raised when a patch's kind disagrees with the segment already at its index."""

    code = "segment_kind_mismatch"

    def __init__(self, index: int, existing: str, incoming: str, message_id: Optional[str] = None):
        super().__init__(
            f"Segment at index {index} is '{existing}', refusing '{incoming}' patch"
        )
        self.index = index
        self.existing = existing
        self.incoming = incoming
        self.message_id = message_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "index": self.index,
            "existing": self.existing,
            "incoming": self.incoming,
            "message_id": self.message_id,
        }


class StalledRun(StreamProcessingError):
    """A registry entry outlived its watchdog threshold."""

    code = "stalled_run"

    def __init__(self, run_id: str, panel: str, elapsed: float):
        super().__init__(f"Run '{run_id}' on {panel} panel stalled after {elapsed:.1f}s")
        self.run_id = run_id
        self.panel = panel
        self.elapsed = elapsed

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "run_id": self.run_id,
            "panel": self.panel,
            "elapsed": round(self.elapsed, 3),
        }


class TransportFailure(StreamProcessingError):
    """The event stream could not be opened or broke mid-run."""

    code = "transport_failure"

    def __init__(
        self,
        message: str = "Connection failed after multiple attempts. Please try again.",
        status_code: Optional[int] = None,
        retryable: bool = False,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "status_code": self.status_code,
            "retryable": self.retryable,
            "attempts": self.attempts,
        }


class RunAborted(StreamProcessingError):
    """The run was cancelled by the user or an operator."""

    code = "aborted"

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Run aborted: {reason}")
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason}
