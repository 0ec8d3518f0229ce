from conftest import assert_referential_integrity
from layout import LayoutConfig, bounds, compute_layout, connectors
from node_models import ConversationState, MessageNode, Position


def _grow(controller, node_id, text):
    controller.append_content(node_id, text)


def _branching_tree(controller):
    """n1 (user) -> n2 (assistant); reply n3 -> n4; branch n5 -> n6."""
    root = controller.submit_prompt(None, "Why is the sky blue?")
    _grow(controller, root.assistant_id, "The sky is blue because of Rayleigh scattering.")
    reply = controller.submit_prompt(root.assistant_id, "And sunsets?")
    branch = controller.submit_prompt(root.assistant_id, "Explain this", "Rayleigh scattering")
    return root, reply, branch


def test_single_pair_stacks_in_one_pillar(controller):
    root = controller.submit_prompt(None, "hi")
    positions = compute_layout(controller.state)
    assert positions == {root.user_id: Position(0, 0), root.assistant_id: Position(0, 240)}


def test_branch_opens_pillar_at_parent_row(controller):
    root, reply, branch = _branching_tree(controller)
    positions = compute_layout(controller.state)

    assert positions[reply.user_id] == Position(0, 480)
    assert positions[reply.assistant_id] == Position(0, 720)
    assert positions[branch.user_id] == Position(650, 240)
    assert positions[branch.assistant_id] == Position(650, 480)


def test_sibling_branches_stack_with_branch_spacing(controller):
    root, _, first = _branching_tree(controller)
    second = controller.submit_prompt(root.assistant_id, "And this?", "blue")
    positions = compute_layout(controller.state)

    # first branch pair consumes 520 (240 + 240 + 40), then 80 of branch spacing
    assert positions[first.user_id] == Position(650, 240)
    assert positions[second.user_id] == Position(650, 840)


def test_collapse_hides_descendants_and_expand_restores(controller):
    root, reply, branch = _branching_tree(controller)
    before = compute_layout(controller.state)

    controller.toggle_collapse(root.assistant_id)
    collapsed = compute_layout(controller.state)
    hidden = {node.id for node in controller.state.descendants(root.assistant_id)}
    assert set(collapsed) == set(before) - hidden
    assert set(collapsed) == {root.user_id, root.assistant_id}

    controller.toggle_collapse(root.assistant_id)
    assert set(compute_layout(controller.state)) == set(before)
    assert_referential_integrity(controller.state)


def test_layout_is_deterministic(controller):
    _branching_tree(controller)
    state = controller.state
    assert compute_layout(state) == compute_layout(state)


def test_manual_position_wins_and_anchors_subtree(controller):
    root, reply, branch = _branching_tree(controller)
    controller.move_node(root.assistant_id, 10, 20)
    positions = compute_layout(controller.state)

    assert positions[root.assistant_id] == Position(10, 20)
    assert positions[reply.user_id] == Position(10, 260)
    assert positions[branch.user_id] == Position(660, 20)
    # the root itself keeps its computed position
    assert positions[root.user_id] == Position(0, 0)


def test_measured_height_pushes_next_node_down(controller):
    root = controller.submit_prompt(None, "hi")
    controller.update_height(root.user_id, 100)
    positions = compute_layout(controller.state)
    assert positions[root.assistant_id] == Position(0, 140)


def test_dangling_child_ids_are_skipped():
    nodes = [
        MessageNode("u", "user", "q", children_ids=("ghost", "a")),
        MessageNode("a", "assistant", "answer", parent_id="u"),
    ]
    state = ConversationState(nodes={node.id: node for node in nodes}, root_id="u")
    positions = compute_layout(state)
    assert positions == {"u": Position(0, 0), "a": Position(0, 240)}


def test_empty_state_has_no_positions():
    assert compute_layout(ConversationState()) == {}


def test_custom_config():
    nodes = [
        MessageNode("u", "user", "q", children_ids=("a",)),
        MessageNode("a", "assistant", "answer", parent_id="u"),
    ]
    state = ConversationState(nodes={node.id: node for node in nodes}, root_id="u")
    config = LayoutConfig(node_spacing=10, node_height_estimate=50, origin_x=5, origin_y=5)
    assert compute_layout(state, config)["a"] == Position(5, 65)


def test_connectors_only_link_visible_nodes(controller):
    root, reply, branch = _branching_tree(controller)
    links = connectors(controller.state, compute_layout(controller.state))
    by_child = {link.child_id: link for link in links}
    assert by_child[branch.user_id].branch is True
    assert by_child[reply.user_id].branch is False
    assert root.user_id not in by_child

    controller.toggle_collapse(root.assistant_id)
    links = connectors(controller.state, compute_layout(controller.state))
    assert [(link.parent_id, link.child_id) for link in links] == [(root.user_id, root.assistant_id)]


def test_bounds_cover_boxes():
    positions = {"a": Position(0, 0), "b": Position(650, 240)}
    assert bounds(positions) == (0, 0, 1300, 440)
    assert bounds({}) == (0, 0, 0, 0)


def test_layout_does_not_mutate_state(controller):
    _branching_tree(controller)
    state = controller.state
    snapshot = dict(state.nodes)
    compute_layout(state)
    assert dict(state.nodes) == snapshot
