from typing import List, Optional, Tuple

from node_models import ConversationState, MessageNode

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"


def split_thinking(content: str) -> Tuple[str, str, bool]:
    """Separate a reasoning block from the visible answer.

    Returns ``(thought, answer, thinking_done)``. While the closing tag has
    not streamed in yet everything after ``<think>`` counts as thought and
    the answer is empty. Content without a ``<think>`` tag is all answer.
    """
    if _THINK_OPEN not in content:
        return "", content, True
    head, _, rest = content.partition(_THINK_OPEN)
    if _THINK_CLOSE not in rest:
        return rest.strip(), head.strip(), False
    thought, _, answer = rest.partition(_THINK_CLOSE)
    return thought.strip(), (head + answer).strip(), True


def _quote(text: str) -> List[str]:
    return [f"> {line}" if line.strip() else ">" for line in text.splitlines()]


def path_to_markdown(state: ConversationState, node_id: str, *, include_thinking: bool = False) -> str:
    """Render the conversation from the root down to ``node_id`` as Markdown.

    Pure, read-only view:
    - One ``##`` heading per message, labelled by role
    - Branch prompts quote the excerpt they were asked about
    - Reasoning blocks are dropped unless ``include_thinking`` is set
    """
    lines: List[str] = []

    def append_block(block: List[str]) -> None:
        while lines and lines[-1] == "":
            lines.pop()
        if lines:
            lines.append("")
        lines.extend(block)

    def write_node(node: MessageNode) -> None:
        label = "User" if node.role == "user" else "Assistant"
        if node.is_branch:
            label = f"{label} (branch)"
        block = [f"## {label}", ""]
        if node.highlighted_text:
            block.extend(_quote(node.highlighted_text))
            block.append("")
        thought, answer, _ = split_thinking(node.content)
        if include_thinking and thought:
            block.extend(["<details><summary>Thought process</summary>", "", thought, "", "</details>", ""])
        block.append(answer or "_(no content yet)_")
        append_block(block)

    for node in state.ancestors(node_id):
        write_node(node)

    text = "\n".join(lines).strip()
    return f"{text}\n" if text else ""


def node_title(node: MessageNode, width: int = 40) -> str:
    """One-line label for outlines: the first answer line, shortened."""
    _, answer, done = split_thinking(node.content)
    first: Optional[str] = next((line.strip() for line in answer.splitlines() if line.strip()), None)
    if first is None:
        first = "Thinking…" if not done else "…"
    first = first.lstrip("#").strip()
    if len(first) > width:
        first = first[: width - 1].rstrip() + "…"
    return first
