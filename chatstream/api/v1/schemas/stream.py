"""Pydantic models describing the stream assembly SSE contract."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatstream.streaming.event_types import Panel


class ProtocolEvent(BaseModel):
    """One raw ``{event, data}`` pair as emitted by an agent server."""

    event: str
    data: Any = None

    model_config = ConfigDict(extra="allow")


class AssembleRequest(BaseModel):
    conversation_id: Optional[str] = None
    parent_message_id: str = Field(min_length=1)
    sender: Optional[str] = None
    panel: Panel = Panel.PRIMARY
    events: List[ProtocolEvent] = Field(default_factory=list)
    final: bool = True

    model_config = ConfigDict(populate_by_name=True)


class MessageFrame(BaseModel):
    """Assembled message snapshot; the last one for a run has ``final=True``."""

    type: Literal["message"] = "message"
    final: bool = False
    message: Dict[str, Any]


class RecoveryFrame(BaseModel):
    """Partial output of a run that was aborted or failed."""

    type: Literal["recovery"] = "recovery"
    recovery: Dict[str, Any]


class HealthResponse(BaseModel):
    status: str = "ok"
