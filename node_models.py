from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterator, Literal, Mapping, Optional

Role = Literal["user", "assistant"]


class ConversationError(Exception):
    """Base class for structural errors raised by the conversation controller."""


class ParentNotFound(ConversationError):
    def __init__(self, parent_id: str) -> None:
        super().__init__(f"parent node {parent_id!r} not found")
        self.parent_id = parent_id


class InvalidRootReassignment(ConversationError):
    def __init__(self, root_id: str) -> None:
        super().__init__(f"conversation already has root {root_id!r}")
        self.root_id = root_id


class NodeNotFound(ConversationError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"node {node_id!r} not found")
        self.node_id = node_id


class InvalidHighlight(ConversationError):
    pass


def estimate_tokens(text: str) -> int:
    """Rough token estimate: about four characters per token."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class MessageNode:
    id: str
    role: Role
    content: str = ""
    parent_id: Optional[str] = None
    children_ids: tuple[str, ...] = ()
    # Branch nodes open a new pillar and carry the excerpt of the parent
    # they were asked about.
    is_branch: bool = False
    highlighted_text: Optional[str] = None
    is_collapsed: bool = False
    height: Optional[float] = None
    position: Optional[Position] = None


@dataclass(frozen=True)
class TokenStats:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def add_input(self, amount: int) -> "TokenStats":
        if amount < 0:
            raise ValueError("token counts never decrease")
        return replace(self, input=self.input + amount)

    def add_output(self, amount: int) -> "TokenStats":
        if amount < 0:
            raise ValueError("token counts never decrease")
        return replace(self, output=self.output + amount)


def _freeze(nodes: Mapping[str, MessageNode]) -> Mapping[str, MessageNode]:
    return MappingProxyType(dict(nodes))


@dataclass(frozen=True)
class ConversationState:
    """One immutable snapshot of the conversation tree and its accounting."""

    nodes: Mapping[str, MessageNode] = field(default_factory=lambda: MappingProxyType({}))
    root_id: Optional[str] = None
    tokens: TokenStats = field(default_factory=TokenStats)
    version: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.nodes, MappingProxyType):
            object.__setattr__(self, "nodes", _freeze(self.nodes))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> Optional[MessageNode]:
        return self.nodes.get(node_id)

    def require(self, node_id: str) -> MessageNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise NodeNotFound(node_id)
        return node

    def children(self, node_id: str) -> list[MessageNode]:
        node = self.require(node_id)
        return [self.nodes[cid] for cid in node.children_ids if cid in self.nodes]

    def branch_children(self, node_id: str) -> list[MessageNode]:
        return [child for child in self.children(node_id) if child.is_branch]

    def ancestors(self, node_id: str) -> list[MessageNode]:
        """Return the chain from the root down to ``node_id`` (inclusive)."""
        chain: list[MessageNode] = []
        current: Optional[MessageNode] = self.require(node_id)
        while current is not None:
            chain.append(current)
            current = self.nodes.get(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    def descendants(self, node_id: str) -> Iterator[MessageNode]:
        stack = list(reversed(self.children(node_id)))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(self.children(node.id)))

    def with_nodes(
        self,
        updates: Mapping[str, MessageNode],
        *,
        root_id: Optional[str] = None,
        tokens: Optional[TokenStats] = None,
    ) -> "ConversationState":
        merged = dict(self.nodes)
        merged.update(updates)
        return ConversationState(
            nodes=merged,
            root_id=root_id if root_id is not None else self.root_id,
            tokens=tokens if tokens is not None else self.tokens,
            version=self.version + 1,
        )
