"""Content assembler: merges segment patches into a message.

Merge rules per segment kind:

- text / think: concatenate onto the existing value
- tool_call: concatenate string ``args`` fragments while partial; a
  structured value on either side replaces outright; a final patch sets
  ``output`` and ``progress = 1``
- image_url / agent_update / error: replace

The caller's message is never mutated; a new ``Message`` is returned so
consumers can diff on identity.
"""

from __future__ import annotations

import dataclasses
from typing import List, Optional, Sequence

from .errors import SegmentKindMismatch
from .event_types import (
    MAX_SEGMENT_INDEX,
    ContentSegment,
    Message,
    ReasoningSegment,
    TextSegment,
    ToolCallSegment,
)


def first_text(content: Sequence[Optional[ContentSegment]]) -> str:
    """Text of the first text segment in index order, or empty string."""
    for segment in content:
        if isinstance(segment, TextSegment):
            return segment.text
    return ""


def _first_non_empty(*values: Optional[str]) -> str:
    for value in values:
        if value:
            return value
    return ""


def _merge_tool_call(
    existing: Optional[ToolCallSegment],
    patch: ToolCallSegment,
    is_final: bool,
) -> ToolCallSegment:
    previous_args = existing.args if existing is not None else None
    # Anything that is not a string is a complete, structured value.
    if (
        is_final
        or not isinstance(patch.args, str)
        or (previous_args is not None and not isinstance(previous_args, str))
    ):
        args = patch.args
    else:
        args = (previous_args or "") + patch.args

    merged = ToolCallSegment(
        id=_first_non_empty(patch.id, existing.id if existing else None),
        name=_first_non_empty(patch.name, existing.name if existing else None),
        args=args,
        output=existing.output if existing else None,
        progress=existing.progress if existing else None,
        auth=patch.auth if patch.auth is not None else (existing.auth if existing else None),
        expires_at=(
            patch.expires_at
            if patch.auth is not None
            else (existing.expires_at if existing else None)
        ),
    )
    if is_final:
        merged = dataclasses.replace(merged, output=patch.output, progress=1)
    return merged


def merge_segment(
    existing: Optional[ContentSegment],
    patch: ContentSegment,
    is_final: bool = False,
) -> ContentSegment:
    """Merge ``patch`` onto ``existing`` (which must be of the same kind, or None)."""
    if isinstance(patch, TextSegment):
        previous = existing.text if isinstance(existing, TextSegment) else ""
        tool_call_ids = patch.tool_call_ids
        if tool_call_ids is None and isinstance(existing, TextSegment):
            tool_call_ids = existing.tool_call_ids
        return TextSegment(text=previous + patch.text, tool_call_ids=tool_call_ids)

    if isinstance(patch, ReasoningSegment):
        previous = existing.think if isinstance(existing, ReasoningSegment) else ""
        return ReasoningSegment(think=previous + patch.think)

    if isinstance(patch, ToolCallSegment):
        current = existing if isinstance(existing, ToolCallSegment) else None
        return _merge_tool_call(current, patch, is_final)

    # image_url, agent_update, error
    return patch


def assemble(
    message: Message,
    index: int,
    patch: ContentSegment,
    is_final: bool = False,
) -> Message:
    """Apply ``patch`` at ``index`` and return the updated message.

    Creates the segment if the index is empty, merges it otherwise, then
    recomputes ``text`` from the first text segment.

    Raises:
        SegmentKindMismatch: a different kind of segment already occupies ``index``.
        ValueError: ``index`` is negative or above ``MAX_SEGMENT_INDEX``.
    """
    if not 0 <= index <= MAX_SEGMENT_INDEX:
        raise ValueError(f"segment index must be between 0 and {MAX_SEGMENT_INDEX}, got {index}")

    content: List[Optional[ContentSegment]] = list(message.content)
    if index >= len(content):
        content.extend([None] * (index + 1 - len(content)))

    existing = content[index]
    if existing is not None and existing.kind is not patch.kind:
        raise SegmentKindMismatch(
            index=index,
            existing=existing.kind.value,
            incoming=patch.kind.value,
            message_id=message.message_id,
        )

    content[index] = merge_segment(existing, patch, is_final)
    return dataclasses.replace(message, content=tuple(content), text=first_text(content))


def append_segment(message: Message, segment: ContentSegment) -> Message:
    """Add ``segment`` after the last occupied index."""
    content = message.content + (segment,)
    return dataclasses.replace(message, content=content, text=first_text(content))
