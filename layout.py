"""
Pillar layout for the conversation canvas.

Computes deterministic x/y positions for every visible node:
- Non-branch children continue downwards in the parent's pillar (column)
- Branch children open a new pillar one column to the right, starting at
  the parent's own row
- Collapsed nodes are placed but their subtree is skipped
- A manual position override replaces the computed position and becomes
  the anchor for the node's subtree

The layout is a pure function of a ConversationState snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from node_models import ConversationState, MessageNode, Position


@dataclass(frozen=True)
class LayoutConfig:
    # Horizontal offset between a pillar and the branch pillars it spawns.
    column_width: float = 650

    # Gap between consecutive nodes of the same pillar.
    node_spacing: float = 40

    # Gap between sibling branch pillars stacked to the right of a parent.
    branch_spacing: float = 80

    # Height assumed for nodes that have not reported a measured height,
    # and the minimum extent any subtree consumes.
    node_height_estimate: float = 200

    origin_x: float = 0
    origin_y: float = 0


@dataclass(frozen=True)
class Connector:
    parent_id: str
    child_id: str
    branch: bool


def _split_children(
    node: MessageNode, state: ConversationState
) -> Tuple[List[str], List[str]]:
    vertical: List[str] = []
    horizontal: List[str] = []
    for child_id in node.children_ids:
        child = state.get(child_id)
        if child is None:
            continue
        (horizontal if child.is_branch else vertical).append(child_id)
    return vertical, horizontal


def compute_layout(
    state: ConversationState, config: Optional[LayoutConfig] = None
) -> Dict[str, Position]:
    """
    Compute a position for every node reachable from the root.

    Returns:
      node_id -> Position (top-left corner). Nodes hidden under a collapsed
      ancestor are absent.
    """
    cfg = config or LayoutConfig()
    positions: Dict[str, Position] = {}

    def place(node_id: str, x: float, y: float) -> float:
        node = state.get(node_id)
        if node is None:
            return 0

        if node.position is not None:
            x, y = node.position.x, node.position.y
        positions[node_id] = Position(x, y)

        own_height = node.height if node.height is not None else cfg.node_height_estimate
        cursor_y = y + own_height + cfg.node_spacing
        max_child_y = cursor_y

        if not node.is_collapsed:
            vertical, horizontal = _split_children(node, state)

            for child_id in vertical:
                used = place(child_id, x, cursor_y)
                cursor_y += used + cfg.node_spacing
                max_child_y = max(max_child_y, cursor_y)

            branch_y = y
            for child_id in horizontal:
                used = place(child_id, x + cfg.column_width, branch_y)
                branch_y += used + cfg.branch_spacing
                max_child_y = max(max_child_y, branch_y)

        return max(max_child_y - y, cfg.node_height_estimate)

    if state.root_id is not None:
        place(state.root_id, cfg.origin_x, cfg.origin_y)
    return positions


def connectors(state: ConversationState, positions: Dict[str, Position]) -> List[Connector]:
    # Only links whose two ends are both laid out are drawn.
    links: List[Connector] = []
    for node_id in positions:
        node = state.get(node_id)
        if node is None or node.parent_id is None or node.parent_id not in positions:
            continue
        links.append(Connector(node.parent_id, node_id, node.is_branch))
    return links


def bounds(
    positions: Dict[str, Position], config: Optional[LayoutConfig] = None
) -> Tuple[float, float, float, float]:
    """Return (min_x, min_y, max_x, max_y) of the laid-out node boxes."""
    cfg = config or LayoutConfig()
    if not positions:
        return (cfg.origin_x, cfg.origin_y, cfg.origin_x, cfg.origin_y)
    xs = [pos.x for pos in positions.values()]
    ys = [pos.y for pos in positions.values()]
    return (
        min(xs),
        min(ys),
        max(xs) + cfg.column_width,
        max(ys) + cfg.node_height_estimate,
    )
