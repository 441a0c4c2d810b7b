from __future__ import annotations

import logging
from typing import AsyncIterable, List

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from chatstream.api.v1.schemas.stream import (
    AssembleRequest,
    HealthResponse,
    MessageFrame,
    RecoveryFrame,
)
from chatstream.core.settings import get_settings
from chatstream.core.transport.sse import build_sse_prelude, format_sse_data
from chatstream.streaming.event_types import Message, Panel, Submission
from chatstream.streaming.session import StreamSession

logger = logging.getLogger(__name__)

router = APIRouter()


async def assemble_stream_generator(request: AssembleRequest) -> AsyncIterable[str]:
    """Replay ``request.events`` through a fresh session and stream every rendered message."""
    settings = get_settings()
    frames: List[str] = []

    def render(message: Message, final: bool) -> None:
        frames.append(format_sse_data(MessageFrame(final=final, message=message.to_dict()).model_dump()))

    prelude = build_sse_prelude(settings.sse_prelude_size)
    if prelude:
        yield prelude

    session = StreamSession(comparison=request.panel is Panel.SECONDARY, settings=settings)
    await session.start()
    try:
        submission = Submission(
            conversation_id=request.conversation_id,
            parent_message_id=request.parent_message_id,
            panel=request.panel,
            sender=request.sender,
        )
        handler = session.open_panel(submission, renderer=render)

        for raw in request.events:
            await handler.handle(raw.model_dump())
            while frames:
                yield frames.pop(0)
            if handler.is_terminal:
                break

        if request.final and not handler.is_terminal:
            await handler.complete()
    except Exception as exc:
        logger.error(f"stream_assemble_error conversation_id={request.conversation_id} error={exc}", exc_info=True)
        raise
    finally:
        # Unfinished runs are aborted here and surface as a recovery frame.
        await session.close()

    while frames:
        yield frames.pop(0)
    if handler.recovery is not None:
        yield format_sse_data(RecoveryFrame(recovery=handler.recovery.to_dict()).model_dump())


@router.post("/stream/assemble")
async def assemble_stream(request: AssembleRequest):
    logger.info(
        "stream_assemble_request panel=%s events=%d conversation_id=%s",
        request.panel.value,
        len(request.events),
        request.conversation_id,
    )
    return StreamingResponse(
        assemble_stream_generator(request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/stream/health", response_model=HealthResponse)
async def stream_health() -> HealthResponse:
    return HealthResponse(status="ok")
