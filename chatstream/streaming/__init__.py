"""Streaming response assembly for single and dual-panel chat runs.

Modules:
- event_types: segments, messages and normalized protocol events
- normalizers: raw ``{event, data}`` validation
- correlator: step -> run -> message bookkeeping
- assembler: segment merge rules
- registry: open runs, busy signal and watchdogs
- throttle: rate-limited progress signal
- recovery: run lifecycle and partial-output recovery
- handler: per-panel pipeline
- session: per-turn owner of shared state
"""

from .assembler import assemble, append_segment, merge_segment
from .correlator import RunCorrelator
from .errors import (
    MalformedEvent,
    RunAborted,
    SegmentKindMismatch,
    StalledRun,
    StreamProcessingError,
    TransportFailure,
    UnknownStep,
)
from .event_types import (
    ContentSegment,
    ErrorSegment,
    ImageSegment,
    Message,
    Panel,
    ReasoningSegment,
    RunStep,
    SegmentKind,
    StepKind,
    StreamEvent,
    Submission,
    TextSegment,
    ToolCallSegment,
)
from .handler import MessageStore, StreamEventHandler
from .normalizers import normalize_event, try_normalize_event
from .recovery import AbortSignal, RecoveryPayload, RunController, RunState
from .registry import RunActivityEntry, RunActivityRegistry, WatchdogPolicy
from .session import StreamSession
from .throttle import ProgressThrottle

__all__ = [
    "AbortSignal",
    "ContentSegment",
    "ErrorSegment",
    "ImageSegment",
    "MalformedEvent",
    "Message",
    "MessageStore",
    "Panel",
    "ProgressThrottle",
    "ReasoningSegment",
    "RecoveryPayload",
    "RunAborted",
    "RunActivityEntry",
    "RunActivityRegistry",
    "RunController",
    "RunCorrelator",
    "RunState",
    "RunStep",
    "SegmentKind",
    "SegmentKindMismatch",
    "StalledRun",
    "StepKind",
    "StreamEvent",
    "StreamEventHandler",
    "StreamProcessingError",
    "StreamSession",
    "Submission",
    "TextSegment",
    "ToolCallSegment",
    "TransportFailure",
    "UnknownStep",
    "WatchdogPolicy",
    "append_segment",
    "assemble",
    "merge_segment",
    "normalize_event",
    "try_normalize_event",
]
