import pytest

from conftest import assert_referential_integrity, make_transport
from conversation import ConversationController
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
)


def test_submit_root_prompt_creates_linked_pair(controller):
    submitted = controller.submit_prompt(None, "Explain gravity")
    state = controller.state

    user = state.require(submitted.user_id)
    assistant = state.require(submitted.assistant_id)
    assert state.root_id == user.id
    assert user.role == "user" and user.content == "Explain gravity"
    assert user.children_ids == (assistant.id,)
    assert assistant.parent_id == user.id
    assert assistant.content == "" and assistant.is_branch is False
    assert_referential_integrity(state)


def test_second_root_is_rejected_without_mutation(controller):
    controller.submit_prompt(None, "first")
    before = controller.state

    with pytest.raises(InvalidRootReassignment):
        controller.submit_prompt(None, "second")
    assert controller.state is before


def test_unknown_parent_is_rejected_without_mutation(controller):
    controller.submit_prompt(None, "first")
    before = controller.state

    with pytest.raises(ParentNotFound):
        controller.submit_prompt("nope", "reply")
    assert controller.state is before


def test_branch_prompt_records_highlight(controller):
    root = controller.submit_prompt(None, "Why is the sky blue?")
    controller.append_content(root.assistant_id, "The sky is blue because of scattering.")

    branch = controller.submit_prompt(root.assistant_id, "What is scattering?", "Scattering")
    user = controller.state.require(branch.user_id)
    assistant = controller.state.require(branch.assistant_id)
    assert user.is_branch is True
    assert user.highlighted_text == "Scattering"
    assert assistant.is_branch is False
    assert controller.state.require(root.assistant_id).children_ids == (branch.user_id,)


def test_highlight_must_occur_in_parent(controller):
    root = controller.submit_prompt(None, "q")
    controller.append_content(root.assistant_id, "some answer")
    before = controller.state

    with pytest.raises(InvalidHighlight):
        controller.submit_prompt(root.assistant_id, "why?", "missing words")
    with pytest.raises(InvalidHighlight):
        ConversationController(make_transport([])).submit_prompt(None, "q", "anything")
    assert controller.state is before


def test_empty_highlight_means_plain_reply(controller):
    root = controller.submit_prompt(None, "q")
    reply = controller.submit_prompt(root.assistant_id, "more", "")
    assert controller.state.require(reply.user_id).is_branch is False


def test_referential_integrity_over_many_prompts(controller):
    root = controller.submit_prompt(None, "root")
    controller.append_content(root.assistant_id, "alpha beta gamma")
    parents = [root.assistant_id]
    for index in range(6):
        parent = parents[index % len(parents)]
        if index % 2:
            submitted = controller.submit_prompt(parent, f"reply {index}")
        else:
            controller.append_content(parent, " alpha")
            submitted = controller.submit_prompt(parent, f"branch {index}", "alpha")
        parents.append(submitted.assistant_id)
        assert_referential_integrity(controller.state)
    assert len(controller.state) == 14


def test_toggle_collapse_flips_and_keeps_data(controller):
    root = controller.submit_prompt(None, "q")
    assert controller.toggle_collapse(root.user_id) is True
    assert controller.state.require(root.assistant_id).content == ""
    assert controller.toggle_collapse(root.user_id) is False


@pytest.mark.parametrize(
    "operation",
    [
        lambda c: c.toggle_collapse("missing"),
        lambda c: c.move_node("missing", 1, 2),
        lambda c: c.update_height("missing", 10),
        lambda c: c.append_content("missing", "x"),
    ],
)
def test_unknown_ids_raise_node_not_found(controller, operation):
    with pytest.raises(NodeNotFound):
        operation(controller)


def test_move_node_round_trip(controller):
    root = controller.submit_prompt(None, "q")
    controller.move_node(root.assistant_id, 10, 20)
    assert controller.layout()[root.assistant_id] == Position(10, 20)

    controller.clear_position(root.assistant_id)
    assert controller.layout()[root.assistant_id] == Position(0, 240)


def test_update_height_is_noop_when_unchanged(controller):
    root = controller.submit_prompt(None, "q")
    events = []
    controller.subscribe(lambda state, event: events.append(event.kind))

    assert controller.update_height(root.user_id, 120) is True
    version = controller.state.version
    assert controller.update_height(root.user_id, 120) is False
    assert controller.state.version == version
    assert events == ["height"]


def test_every_mutation_is_a_new_snapshot(controller):
    root = controller.submit_prompt(None, "q")
    first = controller.state
    controller.append_content(root.assistant_id, "a")
    second = controller.state
    assert first is not second
    assert first.require(root.assistant_id).content == ""
    assert second.require(root.assistant_id).content == "a"
    assert second.version == first.version + 1


def test_listeners_observe_events_and_can_unsubscribe(controller):
    seen = []
    unsubscribe = controller.subscribe(lambda state, event: seen.append((event.kind, event.node_id)))
    root = controller.submit_prompt(None, "q")
    controller.toggle_collapse(root.user_id)
    unsubscribe()
    controller.move_node(root.user_id, 1, 1)
    assert seen == [("structure", root.user_id), ("collapse", root.user_id)]


def test_input_tokens_cover_highlight_and_prompt(controller):
    root = controller.submit_prompt(None, "hi")
    assert controller.state.tokens.input == 1
    controller.append_content(root.assistant_id, "The sky is blue")
    controller.submit_prompt(root.assistant_id, "why", "sky is blue")
    # "sky is blue" + "why" is 14 characters
    assert controller.state.tokens.input == 1 + 4


def test_history_follows_ancestor_chain_only(controller):
    root = controller.submit_prompt(None, "q1")
    controller.append_content(root.assistant_id, "The sky is blue")
    sibling = controller.submit_prompt(root.assistant_id, "sibling reply")
    branch = controller.submit_prompt(root.assistant_id, "why?", "sky")

    assert controller.history(branch.user_id) == [
        ChatMessage("user", "q1"),
        ChatMessage("assistant", "The sky is blue"),
        ChatMessage("user", "why?"),
    ]
    assert ChatMessage("user", "sibling reply") not in controller.history(branch.user_id)
    assert controller.history(sibling.user_id)[-1] == ChatMessage("user", "sibling reply")


def test_anchors_read_surface(controller):
    root = controller.submit_prompt(None, "q")
    controller.append_content(root.assistant_id, "The sky is blue")
    branch = controller.submit_prompt(root.assistant_id, "why?", "blue")
    anchors = [s for s in controller.anchors(root.assistant_id) if s.is_anchor]
    assert [(s.text, s.branch_id) for s in anchors] == [("blue", branch.user_id)]


def test_load_state_only_before_first_prompt(controller):
    from demo_conversations import build_demo_state

    controller.load_state(build_demo_state())
    assert controller.state.root_id == "demo-user-1"
    with pytest.raises(InvalidRootReassignment):
        controller.load_state(build_demo_state())
    with pytest.raises(InvalidRootReassignment):
        controller.submit_prompt(None, "another root")


@pytest.mark.parametrize(
    "nodes, root_id",
    [
        # child does not list back to the parent
        (
            [MessageNode("a", "user", children_ids=()), MessageNode("b", "assistant", parent_id="a")],
            "a",
        ),
        # child listed but points elsewhere
        (
            [
                MessageNode("a", "user", children_ids=("b",)),
                MessageNode("b", "assistant", parent_id="c"),
                MessageNode("c", "user", parent_id="a"),
            ],
            "a",
        ),
        # two roots
        ([MessageNode("a", "user"), MessageNode("b", "user")], "a"),
        # root id missing
        ([MessageNode("a", "user")], "zzz"),
        # branch without excerpt
        (
            [MessageNode("a", "user", children_ids=("b",)), MessageNode("b", "user", parent_id="a", is_branch=True)],
            "a",
        ),
    ],
)
def test_load_state_rejects_inconsistent_snapshots(controller, nodes, root_id):
    broken = ConversationState(nodes={node.id: node for node in nodes}, root_id=root_id)
    before = controller.state

    with pytest.raises(ConversationError):
        controller.load_state(broken)
    assert controller.state is before


def test_load_state_accepts_empty_snapshot(controller):
    controller.load_state(ConversationState())
    assert len(controller.state) == 0
