from branch_matcher import anchors, contains_excerpt, segments_for
from conftest import assert_referential_integrity
from demo_conversations import build_demo_state
from layout import compute_layout


def test_demo_state_is_consistent():
    state = build_demo_state()
    assert_referential_integrity(state)
    assert state.tokens.total == state.tokens.input + state.tokens.output
    assert state.tokens.output > 0


def test_every_demo_branch_is_anchored_in_its_parent():
    state = build_demo_state()
    for node in state.nodes.values():
        if not node.is_branch:
            continue
        parent = state.require(node.parent_id)
        assert contains_excerpt(parent.content, node.highlighted_text)
    found = {segment.branch_id for segment in anchors(segments_for(state, "demo-asst-1"))}
    assert found == {"demo-user-branch-1", "demo-user-branch-2", "demo-user-branch-3"}


def test_demo_layout_places_every_node():
    state = build_demo_state()
    assert set(compute_layout(state)) == set(state.nodes)
