from __future__ import annotations

import asyncio
import math
import sys
from pathlib import Path
from typing import Optional

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.message import Message
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Input, OptionList, Static, TextArea, Tree
from textual.widgets.option_list import Option, OptionDoesNotExist
from textual.widgets._tree import TextType, TreeNode
from rich.style import Style
from rich.text import Text

import ai
from branch_matcher import match_anchors
from conversation import ChangeEvent, ConversationController
from demo_conversations import build_demo_state
from layout import bounds, connectors
from md_io import node_title, path_to_markdown, split_thinking
from node_models import ConversationError, ConversationState, MessageNode, Position
from streaming import StreamResult

# Rendered-size heuristics fed back into the layout through update_height.
TEXT_COLUMNS = 64
LINE_HEIGHT_PX = 20
NODE_PADDING_PX = 60
NUDGE_PX = 40

# Canvas scale: pixels per terminal cell.
CANVAS_COLUMN_PX = 25
CANVAS_ROW_PX = 40
CANVAS_BOX_WIDTH = 22

_ANCHOR_STYLE = Style(bold=True, color="bright_blue", underline=True)
_COLLAPSED_ANCHOR_STYLE = Style(bold=True, color="grey50", strike=True)


def _key_name_and_modifiers(key_value: str) -> tuple[str, set[str]]:
    parts = key_value.split("+")
    key_name = parts[-1].lower()
    modifiers = {part.lower() for part in parts[:-1] if part}
    return key_name, modifiers


def measured_height(node: MessageNode) -> float:
    lines = 0
    for raw_line in node.content.splitlines() or [""]:
        lines += max(1, math.ceil(len(raw_line) / TEXT_COLUMNS))
    return NODE_PADDING_PX + lines * LINE_HEIGHT_PX


def render_canvas(
    state: ConversationState,
    positions: dict[str, Position],
    selected_id: Optional[str] = None,
) -> Text:
    """Draw the layout map as boxes on a character grid."""
    if not positions:
        return Text("No conversation yet. Press n to start.", style="dim italic")

    min_x, min_y, _, _ = bounds(positions)
    cells = {
        node_id: (int((pos.x - min_x) // CANVAS_COLUMN_PX), int((pos.y - min_y) // CANVAS_ROW_PX))
        for node_id, pos in positions.items()
    }
    width = max(col for col, _ in cells.values()) + CANVAS_BOX_WIDTH + 1
    height = max(row for _, row in cells.values()) + 4
    grid = [[" "] * width for _ in range(height)]
    spans: dict[int, list[tuple[int, int, str]]] = {}

    def put(col: int, row: int, char: str) -> None:
        if 0 <= row < height and 0 <= col < width:
            grid[row][col] = char

    for link in connectors(state, positions):
        parent_col, parent_row = cells[link.parent_id]
        child_col, child_row = cells[link.child_id]
        if link.branch:
            for col in range(parent_col + CANVAS_BOX_WIDTH, child_col):
                put(col, child_row + 1, "╌")
        else:
            for row in range(parent_row + 3, child_row):
                put(parent_col + 2, row, "│")

    for node_id, (col, row) in cells.items():
        node = state.nodes[node_id]
        inner = CANVAS_BOX_WIDTH - 2
        marker = "+" if node.is_collapsed and node.children_ids else " "
        label = f"{'U' if node.role == 'user' else 'A'}{marker}{node_title(node, inner - 2)}"
        label = label[:inner].ljust(inner)
        for offset, line in enumerate(
            (f"┌{'─' * inner}┐", f"│{label}│", f"└{'─' * inner}┘")
        ):
            for index, char in enumerate(line):
                put(col + index, row + offset, char)
        if node_id == selected_id:
            style = "reverse"
        elif node.is_branch:
            style = "bright_blue"
        else:
            style = "green" if node.role == "user" else ""
        if style:
            for offset in range(3):
                spans.setdefault(row + offset, []).append((col, col + CANVAS_BOX_WIDTH, style))

    lines: list[Text] = []
    for row_index, row in enumerate(grid):
        line = Text("".join(row).rstrip())
        for start, end, style in spans.get(row_index, []):
            line.stylize(style, start, end)
        lines.append(line)
    return Text("\n").join(lines)


class ConversationTree(Tree[str]):
    """Outline of the conversation; node data is the message id."""

    def process_label(self, label: TextType) -> Text:
        if isinstance(label, str):
            return Text(label)
        return label


class ModelSelectorScreen(ModalScreen[str | None]):
    """Modal dialog that lets the user pick a chat-completions model."""

    DEFAULT_CSS = """
    ModelSelectorScreen {
        align: center middle;
    }

    #model-selector-panel {
        min-width: 50;
        max-width: 80;
        height: auto;
        background: $panel;
        border: round $secondary;
        padding: 1 2 2 2;
    }

    #model-selector-title {
        content-align: center middle;
        text-style: bold;
        padding-bottom: 1;
    }

    #model-selector-list {
        border: none;
        background: $surface;
    }
    """

    def __init__(self, models: list[str], current_model: str) -> None:
        super().__init__()
        self._models = models
        self._current_model = current_model

    def compose(self) -> ComposeResult:
        with Vertical(id="model-selector-panel"):
            yield Static("Select model", id="model-selector-title")
            yield OptionList(
                *[Option(model, id=model) for model in self._models],
                id="model-selector-list",
            )

    def on_mount(self) -> None:
        option_list = self.query_one("#model-selector-list", OptionList)
        option_list.focus()
        try:
            option_list.highlighted = option_list.get_option_index(self._current_model)
        except OptionDoesNotExist:
            option_list.highlighted = 0 if option_list.option_count else None

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        event.stop()
        self.dismiss(event.option_id or str(event.option.prompt))

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)


class PromptTextArea(TextArea):
    """TextArea that posts a submit message on Enter (Shift+Enter for newline)."""

    class Submitted(Message):
        def __init__(self, textarea: "PromptTextArea") -> None:
            super().__init__()
            self.textarea = textarea
            self.text = textarea.text

    async def on_event(self, event: events.Event) -> None:  # noqa: D401
        if isinstance(event, events.Key):
            key_name, modifiers = _key_name_and_modifiers(event.key)
            if key_name == "enter" and "shift" not in modifiers:
                event.stop()
                self.post_message(self.Submitted(self))
                return
        await super().on_event(event)


class PromptScreen(ModalScreen[dict[str, str] | None]):
    """Ask for a prompt, and for the highlighted excerpt when branching."""

    DEFAULT_CSS = """
    PromptScreen {
        align: center middle;
    }

    #prompt-panel {
        width: 90;
        height: auto;
        background: $panel;
        border: round $secondary;
        padding: 1 2;
    }

    #prompt-title {
        text-style: bold;
        padding-bottom: 1;
    }

    #prompt-text {
        height: 8;
        border: round $secondary;
    }
    """

    def __init__(self, title: str, *, ask_excerpt: bool = False) -> None:
        super().__init__()
        self._title = title
        self._ask_excerpt = ask_excerpt

    def compose(self) -> ComposeResult:
        with Vertical(id="prompt-panel"):
            yield Static(self._title, id="prompt-title")
            if self._ask_excerpt:
                yield Input(placeholder="Excerpt of the answer to branch from…", id="prompt-excerpt")
            yield PromptTextArea(id="prompt-text", soft_wrap=True)

    def on_mount(self) -> None:
        if self._ask_excerpt:
            self.query_one("#prompt-excerpt", Input).focus()
        else:
            self.query_one("#prompt-text", PromptTextArea).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        event.stop()
        self.query_one("#prompt-text", PromptTextArea).focus()

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)

    def on_prompt_text_area_submitted(self, message: PromptTextArea.Submitted) -> None:
        message.stop()
        excerpt = ""
        if self._ask_excerpt:
            excerpt = self.query_one("#prompt-excerpt", Input).value.strip()
        self.dismiss({"action": "submit", "text": message.text.strip(), "excerpt": excerpt})


class BranchCanvasApp(App[None]):
    """Textual user interface for a branching conversation canvas."""

    TITLE = "branchcanvas"

    CSS = """
    #outline {
        width: 40;
    }
    #outline .tree--cursor,
    #outline:focus .tree--cursor {
        text-style: bold;
    }
    #detail {
        width: 1fr;
    }
    #node-scroll {
        height: 1fr;
        border: round $secondary;
        padding: 0 1;
    }
    #canvas-scroll {
        height: 1fr;
        border: round $secondary;
    }
    #canvas {
        width: auto;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", show=False),
        Binding("n", "new_prompt", "Prompt"),
        Binding("r", "reply", "Reply"),
        Binding("b", "branch", "Branch"),
        Binding("c", "toggle_collapse", "Collapse"),
        Binding("t", "toggle_thinking", "Thinking"),
        Binding("m", "choose_model", "Model"),
        Binding("d", "load_demo", "Demo"),
        Binding("e", "export_transcript", "Export"),
        Binding("0", "clear_position", "Reset pos", show=False),
        Binding("shift+left", "nudge(-1, 0)", "Move", show=False, priority=True),
        Binding("shift+right", "nudge(1, 0)", "Move", show=False, priority=True),
        Binding("shift+up", "nudge(0, -1)", "Move", show=False, priority=True),
        Binding("shift+down", "nudge(0, 1)", "Move", show=False, priority=True),
    ]

    def __init__(
        self,
        *,
        demo: bool = False,
        controller: ConversationController | None = None,
        transcript_path: Path | None = None,
    ) -> None:
        super().__init__()
        self._transcript_path = transcript_path or Path("transcript.md")
        self.controller = controller or ConversationController()
        self.model_choices = list(ai.AVAILABLE_MODELS)
        self.selected_model = ai.get_active_model()
        if self.selected_model not in self.model_choices:
            self.model_choices.append(self.selected_model)
        self._selected_id: Optional[str] = None
        self._show_thinking = False
        self._streams: set[asyncio.Task[StreamResult]] = set()
        self._tree_nodes: dict[str, TreeNode[str]] = {}
        self._pending_events: list[ChangeEvent] = []
        self._refresh_scheduled = False
        self._status = "Ready."
        self._start_with_demo = demo
        self._tree_widget: Optional[ConversationTree] = None
        self._node_widget: Optional[Static] = None
        self._canvas_widget: Optional[Static] = None
        self._unsubscribe = self.controller.subscribe(self._on_state_changed)

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Horizontal():
            tree = ConversationTree("Conversation", id="outline")
            tree.show_root = False
            tree.auto_expand = False
            self._tree_widget = tree
            yield tree
            with Vertical(id="detail"):
                with VerticalScroll(id="node-scroll"):
                    self._node_widget = Static(id="node-view")
                    yield self._node_widget
                with VerticalScroll(id="canvas-scroll"):
                    self._canvas_widget = Static(id="canvas")
                    yield self._canvas_widget
        yield Footer()

    def on_mount(self) -> None:
        ai.reset_prompt_log()
        ai.reset_connection_log()
        if self._start_with_demo:
            self.action_load_demo()
        self._rebuild_outline()
        self._refresh_views()
        self.show_status()

    def on_unmount(self) -> None:
        self._unsubscribe()
        for task in list(self._streams):
            task.cancel()

    # -- state observation --------------------------------------------------

    def _on_state_changed(self, state: ConversationState, event: ChangeEvent) -> None:
        if not self.is_running:
            return
        self._pending_events.append(event)
        if self._refresh_scheduled:
            return
        self._refresh_scheduled = True
        self.call_later(self._flush_changes)

    def _flush_changes(self) -> None:
        self._refresh_scheduled = False
        events_ = self._pending_events
        self._pending_events = []
        if any(event.kind in ("structure", "collapse") for event in events_):
            self._rebuild_outline()
        else:
            for event in events_:
                if event.kind == "content" and event.node_id:
                    self._relabel(event.node_id)
        for node_id in {event.node_id for event in events_ if event.kind == "content" and event.node_id}:
            node = self.controller.state.get(node_id)
            if node is not None:
                self.controller.update_height(node_id, measured_height(node))
        self._refresh_views()
        self.show_status()

    def _refresh_views(self) -> None:
        state = self.controller.state
        positions = self.controller.layout()
        if self._canvas_widget is None or self._node_widget is None:
            return
        self._canvas_widget.update(render_canvas(state, positions, self._selected_id))
        self._node_widget.update(self._render_node(state))

    # -- outline ------------------------------------------------------------

    def require_tree(self) -> ConversationTree:
        if self._tree_widget is None:
            raise RuntimeError("Tree widget not initialised")
        return self._tree_widget

    def _label_for(self, node: MessageNode) -> Text:
        label = Text()
        if node.is_branch:
            label.append("↳ ", style="bright_blue")
        label.append("you: " if node.role == "user" else "ai: ", style="bold green" if node.role == "user" else "bold")
        label.append(node_title(node, 30))
        return label

    def _relabel(self, node_id: str) -> None:
        tree_node = self._tree_nodes.get(node_id)
        node = self.controller.state.get(node_id)
        if tree_node is not None and node is not None:
            tree_node.set_label(self._label_for(node))

    def _rebuild_outline(self) -> None:
        tree = self.require_tree()
        state = self.controller.state
        tree.clear()
        self._tree_nodes = {}
        if state.root_id is None:
            return

        def populate(parent: TreeNode[str], node_id: str) -> None:
            node = state.get(node_id)
            if node is None:
                return
            tree_node = parent.add(self._label_for(node), data=node_id, expand=not node.is_collapsed)
            self._tree_nodes[node_id] = tree_node
            for child_id in node.children_ids:
                populate(tree_node, child_id)
            tree_node.allow_expand = bool(node.children_ids)

        populate(tree.root, state.root_id)
        tree.root.expand()
        target = self._tree_nodes.get(self._selected_id or "") or self._tree_nodes.get(state.root_id)
        if target is not None:
            tree.call_after_refresh(tree.move_cursor, target)

    def on_tree_node_highlighted(self, event: Tree.NodeHighlighted[str]) -> None:
        if event.node.data is None:
            return
        self._selected_id = event.node.data
        self._refresh_views()

    def on_tree_node_collapsed(self, event: Tree.NodeCollapsed[str]) -> None:
        self._sync_collapse(event.node.data, collapsed=True)

    def on_tree_node_expanded(self, event: Tree.NodeExpanded[str]) -> None:
        self._sync_collapse(event.node.data, collapsed=False)

    def _sync_collapse(self, node_id: Optional[str], *, collapsed: bool) -> None:
        node = self.controller.state.get(node_id) if node_id else None
        if node is not None and node.is_collapsed != collapsed:
            self.controller.toggle_collapse(node.id)

    # -- node view ----------------------------------------------------------

    def _render_node(self, state: ConversationState) -> Text:
        node = state.get(self._selected_id) if self._selected_id else None
        if node is None:
            return Text("Select a message to read it.", style="dim italic")
        text = Text()
        title = "You" if node.role == "user" else "Assistant"
        text.append(f"{title}\n", style="bold")
        if node.highlighted_text:
            text.append(f"❝{node.highlighted_text}❞\n", style="bright_blue italic")
        thought, answer, done = split_thinking(node.content)
        if thought and (self._show_thinking or not done):
            text.append("Thought process\n" if done else "Thinking…\n", style="dim bold")
            text.append(f"{thought}\n\n", style="dim italic")
        elif thought:
            text.append("(thought process hidden, press t)\n\n", style="dim")
        children = {child.id: child for child in state.branch_children(node.id)}
        for segment in match_anchors(answer, children.values()):
            if segment.branch_id is None:
                text.append(segment.text)
                continue
            branch = children[segment.branch_id]
            base = _COLLAPSED_ANCHOR_STYLE if branch.is_collapsed else _ANCHOR_STYLE
            action = Style.from_meta({"@click": f"app.toggle_branch({segment.branch_id!r})"})
            text.append(segment.text, style=base + action)
        if not answer and node.role == "assistant" and not thought:
            text.append("…", style="dim")
        return text

    # -- actions ------------------------------------------------------------

    def action_toggle_branch(self, node_id: str) -> None:
        try:
            collapsed = self.controller.toggle_collapse(node_id)
        except ConversationError as exc:
            self._report_error(exc)
            return
        self._status = "Branch collapsed." if collapsed else "Branch expanded."

    def action_toggle_collapse(self) -> None:
        if self._selected_id is None:
            self.bell()
            self.show_status("No message selected.")
            return
        self.action_toggle_branch(self._selected_id)

    def action_toggle_thinking(self) -> None:
        self._show_thinking = not self._show_thinking
        self._refresh_views()

    def check_action(self, action: str, parameters: tuple[object, ...]) -> bool | None:
        # Shift+arrows belong to the text widgets while a dialog is open.
        if action == "nudge" and isinstance(self.screen, ModalScreen):
            return False
        return True

    def action_nudge(self, dx: int, dy: int) -> None:
        if self._selected_id is None:
            self.bell()
            return
        current = self.controller.layout().get(self._selected_id)
        if current is None:
            self.bell()
            self.show_status("Message is hidden under a collapsed branch.")
            return
        self.controller.move_node(self._selected_id, current.x + dx * NUDGE_PX, current.y + dy * NUDGE_PX)

    def action_clear_position(self) -> None:
        if self._selected_id is None:
            self.bell()
            return
        self.controller.clear_position(self._selected_id)
        self._status = "Position reset."

    def action_export_transcript(self) -> None:
        if self._selected_id is None or self._selected_id not in self.controller.state:
            self.bell()
            self.show_status("Select a message to export its thread.")
            return
        path = self._transcript_path.expanduser()
        markdown = path_to_markdown(
            self.controller.state, self._selected_id, include_thinking=self._show_thinking
        )
        try:
            path.write_text(markdown, encoding="utf-8")
        except OSError as exc:
            self._report_error(exc)
            return
        self.show_status(f"Exported thread to {path}")

    def action_load_demo(self) -> None:
        try:
            self.controller.load_state(build_demo_state())
        except ConversationError as exc:
            self._report_error(exc)
            return
        self._selected_id = self.controller.state.root_id
        self._status = "Demo conversation loaded."

    def action_new_prompt(self) -> None:
        if self.controller.state.root_id is not None:
            self.action_reply()
            return
        self._ask_prompt(None, "Start a conversation")

    def action_reply(self) -> None:
        if self.controller.state.root_id is None:
            self._ask_prompt(None, "Start a conversation")
            return
        if self._selected_id is None:
            self.bell()
            self.show_status("Select a message to reply to.")
            return
        self._ask_prompt(self._selected_id, "Reply")

    def action_branch(self) -> None:
        if self._selected_id is None:
            self.bell()
            self.show_status("Select a message to branch from.")
            return
        self._ask_prompt(self._selected_id, "Branch from an excerpt", ask_excerpt=True)

    def _ask_prompt(self, parent_id: Optional[str], title: str, *, ask_excerpt: bool = False) -> None:
        def submit(result: dict[str, str] | None) -> None:
            if not isinstance(result, dict) or result.get("action") != "submit":
                self.show_status("Prompt cancelled.")
                return
            text = result.get("text", "")
            if not text:
                self.bell()
                self.show_status("Empty prompt ignored.")
                return
            excerpt = result.get("excerpt") or None
            if ask_excerpt and not excerpt:
                self.bell()
                self.show_status("Branching needs an excerpt.")
                return
            self._start_stream(parent_id, text, excerpt)

        self.push_screen(PromptScreen(title, ask_excerpt=ask_excerpt), submit)

    def _start_stream(self, parent_id: Optional[str], text: str, excerpt: Optional[str]) -> None:
        try:
            submitted, task = self.controller.start_prompt(parent_id, text, excerpt)
        except ConversationError as exc:
            self._report_error(exc)
            return
        self._selected_id = submitted.assistant_id
        self._streams.add(task)

        def _on_done(completed: asyncio.Task[StreamResult]) -> None:
            self._streams.discard(completed)
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                self.bell()
                self.show_status(f"Reply error: {exc}")
                return
            result = completed.result()
            if result.error:
                self.bell()
                self.show_status(f"Reply failed: {result.error}")
            else:
                self.show_status(f"Reply complete ({result.output_tokens} tokens).")

        task.add_done_callback(_on_done)
        self.show_status("Generating…")

    def action_choose_model(self) -> None:
        def apply_selection(selection: str | None) -> None:
            if not selection or selection == self.selected_model:
                self.show_status(f"Model unchanged ({self.selected_model}).")
                return
            self.selected_model = selection
            ai.set_active_model(selection)
            self.show_status(f"Model set to {selection}.")

        self.push_screen(ModelSelectorScreen(self.model_choices, self.selected_model), apply_selection)

    # -- status -------------------------------------------------------------

    def _report_error(self, exc: Exception) -> None:
        self.bell()
        self.show_status(str(exc))

    def show_status(self, message: str | None = None) -> None:
        if message:
            self._status = message
        tokens = self.controller.state.tokens
        streaming = f" · {len(self._streams)} streaming" if self._streams else ""
        self.sub_title = (
            f"{self._status}{streaming} | Model: {self.selected_model} | "
            f"Tokens in {tokens.input} · out {tokens.output} · total {tokens.total}"
        )


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    BranchCanvasApp(demo="--demo" in args).run()


if __name__ == "__main__":
    main()
