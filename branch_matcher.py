"""Locate the parent text that each branch child was created from.

A branch child stores the excerpt (``highlighted_text``) of its parent that
prompted it. When the parent is rendered, each excerpt is marked as an
anchor so the reader can see where a side conversation starts and toggle it.

Matching works on a list of segments. The whole text starts as one plain
segment; every match splits a plain segment into before / anchor / after.
Longer excerpts are matched first so that a short phrase contained in a
longer one does not fragment it. Excerpts that no longer occur in the text
(the parent kept streaming, or was edited) are silently left unanchored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import regex

from node_models import ConversationState, MessageNode


@dataclass(frozen=True)
class Segment:
    text: str
    start: int
    end: int
    branch_id: Optional[str] = None

    @property
    def is_anchor(self) -> bool:
        return self.branch_id is not None


def _find_case_insensitive(haystack: str, needle: str) -> Optional[tuple[int, int]]:
    pattern = regex.compile(regex.escape(needle), regex.IGNORECASE | regex.FULLCASE | regex.V1)
    match = pattern.search(haystack)
    if match is None:
        return None
    return match.span()


def contains_excerpt(text: str, excerpt: str) -> bool:
    return bool(excerpt) and _find_case_insensitive(text, excerpt) is not None


def match_anchors(text: str, branch_children: Iterable[MessageNode]) -> list[Segment]:
    """Split ``text`` into plain and anchor segments for ``branch_children``.

    Segments are returned in text order and cover ``text`` exactly. Empty
    plain segments are dropped.
    """
    segments: list[Segment] = [Segment(text, 0, len(text))] if text else []
    # sorted() is stable, so equal-length excerpts keep display order.
    ordered = sorted(
        (child for child in branch_children if child.highlighted_text),
        key=lambda child: len(child.highlighted_text or ""),
        reverse=True,
    )
    for child in ordered:
        needle = child.highlighted_text or ""
        for index, segment in enumerate(segments):
            if segment.is_anchor:
                continue
            span = _find_case_insensitive(segment.text, needle)
            if span is None:
                continue
            lo, hi = span
            pieces = [
                Segment(segment.text[:lo], segment.start, segment.start + lo),
                Segment(segment.text[lo:hi], segment.start + lo, segment.start + hi, child.id),
                Segment(segment.text[hi:], segment.start + hi, segment.end),
            ]
            segments[index : index + 1] = [piece for piece in pieces if piece.text]
            break
    return segments


def anchors(segments: Iterable[Segment]) -> list[Segment]:
    return [segment for segment in segments if segment.is_anchor]


def segments_for(state: ConversationState, node_id: str) -> list[Segment]:
    """Run the matcher over a node's content and its direct branch children."""
    node = state.require(node_id)
    return match_anchors(node.content, state.branch_children(node_id))
