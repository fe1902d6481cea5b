"""Splitting streamed model output into thinking and answer text."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

_OPEN_TAG = "<think>"
_CLOSE_TAG = "</think>"


class SegmentKind(Enum):
    """Whether a segment belongs to the model's reasoning or its answer."""

    THINKING = "thinking"
    TEXT = "text"


@dataclass(frozen=True)
class ThinkingSegment:
    """A run of text of a single kind."""

    kind: SegmentKind
    text: str


def split_thinking_chunks(
    text: str, in_thinking: bool
) -> tuple[list[ThinkingSegment], bool]:
    """Split a chunk on ``<think>``/``</think>`` markers.

    ``in_thinking`` says whether the stream is inside a thinking block when the
    chunk begins. Returns the segments and the state after the chunk.

    An opening tag preceded by non-whitespace text is treated as literal text,
    and so is everything after it in the chunk.
    """
    segments: list[ThinkingSegment] = []
    rest = text
    while True:
        if in_thinking:
            pos = rest.find(_CLOSE_TAG)
            if pos < 0:
                if rest:
                    segments.append(ThinkingSegment(SegmentKind.THINKING, rest))
                break
            if pos > 0:
                segments.append(ThinkingSegment(SegmentKind.THINKING, rest[:pos]))
            in_thinking = False
            rest = rest[pos + len(_CLOSE_TAG):]
        else:
            pos = rest.find(_OPEN_TAG)
            if pos < 0:
                if rest:
                    segments.append(ThinkingSegment(SegmentKind.TEXT, rest))
                break
            before = rest[:pos]
            if before.strip():
                segments.append(ThinkingSegment(SegmentKind.TEXT, rest))
                break
            if pos > 0:
                segments.append(ThinkingSegment(SegmentKind.TEXT, before))
            in_thinking = True
            rest = rest[pos + len(_OPEN_TAG):]
    return segments, in_thinking