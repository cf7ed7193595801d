import pytest
from PySide6.QtCore import QCoreApplication

from taskmap_config import LayoutConfig
from taskmap_core import CanvasDatabase, EditorSession
from taskmap_models import Edge, GraphSnapshot, Node, Position


class FakeClock:
    """A monotonic clock that only moves when told to."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=1.0):
        self.now += seconds
        return self.now


@pytest.fixture(scope="session", autouse=True)
def qapp():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    return CanvasDatabase(tmp_path / "canvases.db")


@pytest.fixture
def session(database, clock):
    return EditorSession(database=database, layout_config=LayoutConfig(), clock=clock, seed=7)


CREATED_AT = "2024-05-01T08:00:00.000Z"


def make_node(node_id, x=0.0, y=0.0, **fields):
    fields.setdefault("created_at", CREATED_AT)
    return Node(id=node_id, position=Position(x, y), **fields)


def make_edge(source, target, label="", edge_id=None, **anchors):
    return Edge(id=edge_id or f"{source}->{target}", source=source, target=target, label=label, **anchors)


def make_snapshot(count):
    """A snapshot holding `count` unconnected nodes n0..n{count-1}."""
    return GraphSnapshot(nodes=tuple(make_node(f"n{i}", x=i * 200.0) for i in range(count)))


SAMPLE = {"mindMaps": [{
    "id": "theme-1", "title": "Release", "created_at": "2024-01-01T00:00:00.000Z",
    "children": [{
        "id": "a", "title": "Plan", "created_at": "2024-01-01T00:00:00.000Z",
        "children": [
            {"id": "b", "title": "Build", "created_at": "2024-01-01T00:00:00.000Z", "edgeLabel": "then"},
            {"id": "c", "title": "Test", "created_at": "2024-01-01T00:00:00.000Z"},
        ],
    }],
}]}
