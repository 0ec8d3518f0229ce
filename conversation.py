from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Literal, Optional

import ai
from branch_matcher import Segment, contains_excerpt, segments_for
from layout import LayoutConfig, compute_layout
from node_models import (
    ChatMessage,
    ConversationError,
    ConversationState,
    InvalidHighlight,
    InvalidRootReassignment,
    MessageNode,
    NodeNotFound,
    ParentNotFound,
    Position,
    estimate_tokens,
)
from streaming import StreamingCoordinator, StreamResult, Transport

ChangeKind = Literal["structure", "content", "collapse", "position", "height"]


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    node_id: Optional[str] = None


@dataclass(frozen=True)
class SubmittedPrompt:
    user_id: str
    assistant_id: str


Listener = Callable[[ConversationState, ChangeEvent], None]


def _new_id() -> str:
    return uuid.uuid4().hex


def _check_snapshot(state: ConversationState) -> None:
    """Raise ConversationError unless parent and child links agree and one root exists."""
    roots = [node.id for node in state.nodes.values() if node.parent_id is None]
    if not state.nodes:
        if state.root_id is not None:
            raise ConversationError(f"root {state.root_id!r} is not in the snapshot")
        return
    if roots != [state.root_id]:
        raise ConversationError(f"snapshot must have exactly one root {state.root_id!r}, found {roots}")
    for node in state.nodes.values():
        if node.parent_id is not None:
            parent = state.get(node.parent_id)
            if parent is None or node.id not in parent.children_ids:
                raise ConversationError(f"node {node.id!r} is not listed by its parent {node.parent_id!r}")
        if len(set(node.children_ids)) != len(node.children_ids):
            raise ConversationError(f"node {node.id!r} lists a child twice")
        for child_id in node.children_ids:
            child = state.get(child_id)
            if child is None or child.parent_id != node.id:
                raise ConversationError(f"child {child_id!r} of {node.id!r} does not point back to it")
        if node.is_branch and not node.highlighted_text:
            raise ConversationError(f"branch {node.id!r} has no highlighted text")


class ConversationController:
    """Sole owner of the conversation state.

    Every mutation validates first, then swaps in a new immutable snapshot
    and notifies listeners. Mutations are serialised by a lock so that
    stream callbacks arriving from worker threads never interleave.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        id_factory: Callable[[], str] | None = None,
        layout_config: LayoutConfig | None = None,
    ) -> None:
        self._state = ConversationState()
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._new_id = id_factory or _new_id
        self._layout_config = layout_config or LayoutConfig()
        self._coordinator = StreamingCoordinator(self, transport or ai.stream_chat)

    @property
    def state(self) -> ConversationState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, state: ConversationState, event: ChangeEvent) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state, event)

    def load_state(self, state: ConversationState) -> None:
        with self._lock:
            if self._state.root_id is not None:
                raise InvalidRootReassignment(self._state.root_id)
            _check_snapshot(state)
            self._commit(replace(state, version=self._state.version + 1), ChangeEvent("structure"))

    # -- mutation surface -------------------------------------------------

    def submit_prompt(
        self,
        parent_id: Optional[str],
        prompt_text: str,
        highlighted_text: Optional[str] = None,
    ) -> SubmittedPrompt:
        with self._lock:
            state = self._state
            highlight = highlighted_text or None
            if parent_id is None:
                if state.root_id is not None:
                    raise InvalidRootReassignment(state.root_id)
                if highlight is not None:
                    raise InvalidHighlight("a root prompt cannot branch from highlighted text")
                parent = None
            else:
                parent = state.get(parent_id)
                if parent is None:
                    raise ParentNotFound(parent_id)
                if highlight is not None and not contains_excerpt(parent.content, highlight):
                    raise InvalidHighlight(
                        f"highlighted text {highlight!r} does not occur in node {parent_id!r}"
                    )

            user_id = self._new_id()
            assistant_id = self._new_id()
            assistant = MessageNode(id=assistant_id, role="assistant", parent_id=user_id)
            user = MessageNode(
                id=user_id,
                role="user",
                content=prompt_text,
                parent_id=parent_id,
                children_ids=(assistant_id,),
                is_branch=highlight is not None,
                highlighted_text=highlight,
            )
            updates = {user_id: user, assistant_id: assistant}
            if parent is not None:
                updates[parent.id] = replace(parent, children_ids=parent.children_ids + (user_id,))

            tokens = state.tokens.add_input(estimate_tokens((highlight or "") + prompt_text))
            new_state = state.with_nodes(
                updates,
                root_id=user_id if parent is None else None,
                tokens=tokens,
            )
            self._commit(new_state, ChangeEvent("structure", user_id))
            return SubmittedPrompt(user_id, assistant_id)

    def _update_node(self, node_id: str, kind: ChangeKind, **changes: object) -> MessageNode:
        with self._lock:
            node = self._state.get(node_id)
            if node is None:
                raise NodeNotFound(node_id)
            updated = replace(node, **changes)
            self._commit(self._state.with_nodes({node_id: updated}), ChangeEvent(kind, node_id))
            return updated

    def toggle_collapse(self, node_id: str) -> bool:
        with self._lock:
            node = self._state.require(node_id)
            return self._update_node(node_id, "collapse", is_collapsed=not node.is_collapsed).is_collapsed

    def move_node(self, node_id: str, x: float, y: float) -> None:
        self._update_node(node_id, "position", position=Position(x, y))

    def clear_position(self, node_id: str) -> None:
        self._update_node(node_id, "position", position=None)

    def update_height(self, node_id: str, height: float) -> bool:
        with self._lock:
            node = self._state.require(node_id)
            # Unchanged heights emit no event.
            if node.height == height:
                return False
            self._update_node(node_id, "height", height=height)
            return True

    def append_content(self, node_id: str, fragment: str, output_tokens: int = 0) -> None:
        with self._lock:
            state = self._state
            node = state.require(node_id)
            updated = replace(node, content=node.content + fragment)
            new_state = state.with_nodes(
                {node_id: updated}, tokens=state.tokens.add_output(output_tokens)
            )
            self._commit(new_state, ChangeEvent("content", node_id))

    # -- read surface -----------------------------------------------------

    def layout(self) -> dict[str, Position]:
        return compute_layout(self._state, self._layout_config)

    def anchors(self, node_id: str) -> list[Segment]:
        return segments_for(self._state, node_id)

    def history(self, node_id: str) -> list[ChatMessage]:
        return [ChatMessage(node.role, node.content) for node in self._state.ancestors(node_id)]

    # -- generation -------------------------------------------------------

    def start_prompt(
        self,
        parent_id: Optional[str],
        prompt_text: str,
        highlighted_text: Optional[str] = None,
    ) -> tuple[SubmittedPrompt, "asyncio.Task[StreamResult]"]:
        submitted = self.submit_prompt(parent_id, prompt_text, highlighted_text)
        user = self._state.require(submitted.user_id)
        task = asyncio.create_task(
            self._coordinator.stream(
                submitted.assistant_id,
                self.history(submitted.user_id),
                user.highlighted_text,
            )
        )
        return submitted, task

    async def ask(
        self,
        parent_id: Optional[str],
        prompt_text: str,
        highlighted_text: Optional[str] = None,
    ) -> tuple[SubmittedPrompt, StreamResult]:
        submitted, task = self.start_prompt(parent_id, prompt_text, highlighted_text)
        return submitted, await task

    def reply(self, parent_id: str, prompt_text: str):
        return self.start_prompt(parent_id, prompt_text)

    def branch(self, parent_id: str, highlighted_text: str, prompt_text: str):
        return self.start_prompt(parent_id, prompt_text, highlighted_text)
