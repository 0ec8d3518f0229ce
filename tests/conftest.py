import itertools

import pytest

import ai
from ai import TransportFailure
from conversation import ConversationController


@pytest.fixture(autouse=True)
def isolated_ai(tmp_path, monkeypatch):
    """Keep log files in a temp dir and force the offline model."""
    monkeypatch.setattr(ai, "_PROMPT_LOG_PATH", tmp_path / "prompt.log")
    monkeypatch.setattr(ai, "_CONNECTION_LOG_PATH", tmp_path / "connection.log")
    monkeypatch.setattr(ai, "OFFLINE_FRAGMENT_DELAY", (0, 0))
    monkeypatch.delenv("BRANCHCANVAS_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("BRANCHCANVAS_API_URL", raising=False)
    monkeypatch.setenv("BRANCHCANVAS_MODEL", ai.OFFLINE_MODEL)
    return tmp_path


def make_transport(fragments, *, fail_with=None, pause=False):
    import asyncio

    calls = []

    async def transport(history, highlighted_text=None):
        calls.append((list(history), highlighted_text))
        for fragment in fragments:
            if pause:
                await asyncio.sleep(0)
            yield fragment
        if fail_with is not None:
            raise TransportFailure(fail_with)

    transport.calls = calls
    return transport


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"n{next(counter)}"


@pytest.fixture
def controller(id_factory):
    return ConversationController(make_transport([]), id_factory=id_factory)


def assert_referential_integrity(state):
    roots = [node for node in state.nodes.values() if node.parent_id is None]
    if state.nodes:
        assert [node.id for node in roots] == [state.root_id]
    for node in state.nodes.values():
        if node.parent_id is not None:
            assert node.parent_id in state.nodes
        expected = {child.id for child in state.nodes.values() if child.parent_id == node.id}
        assert set(node.children_ids) == expected
        assert len(node.children_ids) == len(expected)
