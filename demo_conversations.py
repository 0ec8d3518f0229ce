"""Prepared conversation used to explore the canvas without an API key."""

from __future__ import annotations

from node_models import ConversationState, MessageNode, TokenStats, estimate_tokens

_ROOT_PROMPT = "What are the best practices for optimizing React applications?"

_ROOT_ANSWER = """<think>
The user wants an overview of React optimization. Cover memoization, code splitting and state placement.
</think>

### React Application Optimization

1. **Component memoization** with `React.memo` avoids re-rendering pure components.
2. **Code splitting** with `React.lazy` keeps the initial bundle small.
3. **State placement**: keep state close to where it is used; reach for the Context API only for truly global data.
4. **Profiling** with the React DevTools profiler shows where time is spent."""

_FOLLOW_UP = "How do I measure whether a change actually helped?"

_FOLLOW_UP_ANSWER = """Record a profile before and after the change with the same interaction.
Compare commit durations and the number of components that rendered.
Keep an eye on memoization cost: comparing props is not free."""

_BRANCH_SPLIT_PROMPT = "Show a route-level example."

_BRANCH_SPLIT_ANSWER = """```javascript
const Settings = React.lazy(() => import("./Settings"));
```
Wrap the route in `<Suspense>` and show a fallback while the chunk loads."""

_BRANCH_SPLIT_REPLY = "Does this work with server rendering?"

_BRANCH_SPLIT_REPLY_ANSWER = "Not directly: `React.lazy` is client-only, use your framework's dynamic import instead."

_BRANCH_CONTEXT_PROMPT = "When is the Context API the wrong tool?"

_BRANCH_CONTEXT_ANSWER = """Every consumer re-renders when the context value changes.
Frequently changing values (mouse position, form input) belong in local state or a store with selectors."""

_BRANCH_MEMO_PROMPT = "What does memoization cost?"

_BRANCH_MEMO_ANSWER = """Memoization trades memory for time: $T_{render} > T_{compare}$ must hold for it to pay off."""


def _pair(
    user_id: str,
    assistant_id: str,
    prompt: str,
    answer: str,
    parent_id: str | None,
    *,
    highlighted_text: str | None = None,
    assistant_children: tuple[str, ...] = (),
) -> list[MessageNode]:
    return [
        MessageNode(
            id=user_id,
            role="user",
            content=prompt,
            parent_id=parent_id,
            children_ids=(assistant_id,),
            is_branch=highlighted_text is not None,
            highlighted_text=highlighted_text,
        ),
        MessageNode(
            id=assistant_id,
            role="assistant",
            content=answer,
            parent_id=user_id,
            children_ids=assistant_children,
        ),
    ]


def build_demo_state() -> ConversationState:
    nodes: list[MessageNode] = []
    nodes += _pair(
        "demo-user-1",
        "demo-asst-1",
        _ROOT_PROMPT,
        _ROOT_ANSWER,
        None,
        assistant_children=("demo-user-2", "demo-user-branch-1", "demo-user-branch-2", "demo-user-branch-3"),
    )
    nodes += _pair("demo-user-2", "demo-asst-2", _FOLLOW_UP, _FOLLOW_UP_ANSWER, "demo-asst-1")
    nodes += _pair(
        "demo-user-branch-1",
        "demo-asst-branch-1",
        _BRANCH_SPLIT_PROMPT,
        _BRANCH_SPLIT_ANSWER,
        "demo-asst-1",
        highlighted_text="Code splitting",
        assistant_children=("demo-user-branch-1-reply",),
    )
    nodes += _pair(
        "demo-user-branch-1-reply",
        "demo-asst-branch-1-reply",
        _BRANCH_SPLIT_REPLY,
        _BRANCH_SPLIT_REPLY_ANSWER,
        "demo-asst-branch-1",
    )
    nodes += _pair(
        "demo-user-branch-2",
        "demo-asst-branch-2",
        _BRANCH_CONTEXT_PROMPT,
        _BRANCH_CONTEXT_ANSWER,
        "demo-asst-1",
        highlighted_text="Context API",
    )
    nodes += _pair(
        "demo-user-branch-3",
        "demo-asst-branch-3",
        _BRANCH_MEMO_PROMPT,
        _BRANCH_MEMO_ANSWER,
        "demo-asst-1",
        highlighted_text="memoization",
    )

    tokens = TokenStats()
    for node in nodes:
        if node.role == "user":
            tokens = tokens.add_input(estimate_tokens((node.highlighted_text or "") + node.content))
        else:
            tokens = tokens.add_output(estimate_tokens(node.content))

    return ConversationState(
        nodes={node.id: node for node in nodes},
        root_id="demo-user-1",
        tokens=tokens,
    )
