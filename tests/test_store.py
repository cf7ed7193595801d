"""
Graph Store Tests
=================

The store is the only owner of the live graph: no dangling edges, no
duplicate connections, one change notification per completed mutation.
"""

import pytest

from conftest import make_edge, make_node
from taskmap_errors import DanglingReferenceError, DuplicateIdError
from taskmap_models import Anchor, GraphSnapshot, Position, Priority
from taskmap_store import GraphStore


@pytest.fixture
def store():
    return GraphStore()


@pytest.fixture
def changes(store):
    calls = []
    store.graph_changed.connect(lambda: calls.append(1))
    return calls


class TestNodes:

    def test_add_and_read_back(self, store):
        """Added nodes are returned in insertion order."""
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        assert [n.id for n in store.nodes()] == ["A", "B"]
        assert store.node_count() == 2

    def test_duplicate_id_rejected(self, store):
        """A second node with the same id raises and leaves the first intact."""
        store.add_node(make_node("A", title="first"))
        with pytest.raises(DuplicateIdError):
            store.add_node(make_node("A", title="second"))
        assert store.node("A").title == "first"
        assert store.node_count() == 1

    def test_reads_are_copies(self, store):
        """Mutating a returned node never changes the stored one."""
        store.add_node(make_node("A", title="original"))
        copy = store.node("A")
        copy.title = "changed"
        copy.position.x = 999
        assert store.node("A").title == "original"
        assert store.node("A").position.x == 0

    def test_update_merges_fields_and_stamps(self, store):
        store.add_node(make_node("A"))
        store.update_node("A", {"title": "Renamed", "priority": Priority.HIGH})
        node = store.node("A")
        assert node.title == "Renamed"
        assert node.priority is Priority.HIGH
        assert node.updated_at is not None

    def test_update_rejects_immutable_and_unknown_fields(self, store):
        store.add_node(make_node("A"))
        with pytest.raises(ValueError):
            store.update_node("A", {"id": "B"})
        with pytest.raises(ValueError):
            store.update_node("A", {"colour": "red"})

    def test_update_unknown_node(self, store):
        with pytest.raises(KeyError):
            store.update_node("missing", {"title": "x"})

    def test_move_node(self, store):
        store.add_node(make_node("A"))
        store.move_node("A", 10, 20)
        assert store.node("A").position == Position(10.0, 20.0)


class TestEdges:

    def test_dangling_edge_rejected(self, store):
        """An edge to a missing node is never stored."""
        store.add_node(make_node("A"))
        with pytest.raises(DanglingReferenceError):
            store.add_edge(make_edge("A", "ghost"))
        assert store.edge_count() == 0

    def test_duplicate_connection_is_ignored(self, store):
        """Adding the same (source, target, anchors) twice yields exactly one edge."""
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        assert store.add_edge(make_edge("A", "B", edge_id="e1")) is not None
        assert store.add_edge(make_edge("A", "B", edge_id="e2")) is None
        assert store.edge_count() == 1

    def test_same_pair_on_other_anchors_is_allowed(self, store):
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        store.add_edge(make_edge("A", "B", edge_id="e1"))
        store.add_edge(make_edge("A", "B", edge_id="e2",
                                 source_anchor=Anchor.BOTTOM, target_anchor=Anchor.TOP))
        assert store.edge_count() == 2

    def test_duplicate_edge_id_rejected(self, store):
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        store.add_edge(make_edge("A", "B", edge_id="e1"))
        with pytest.raises(DuplicateIdError):
            store.add_edge(make_edge("B", "A", edge_id="e1"))

    def test_update_edge_label(self, store):
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        store.add_edge(make_edge("A", "B", edge_id="e1"))
        store.update_edge_label("e1", "leads to")
        assert store.edge("e1").label == "leads to"

    def test_remove_unknown_edge(self, store):
        with pytest.raises(KeyError):
            store.remove_edge("nope")


class TestRemoval:

    def test_orphan_node_removal(self, store):
        """Removing A from A->B leaves only B and no edges."""
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        store.add_edge(make_edge("A", "B"))
        store.remove_node("A")
        assert [n.id for n in store.nodes()] == ["B"]
        assert store.edges() == []

    def test_no_dangling_edges_after_any_sequence(self, store):
        """Every edge endpoint exists after each mixed mutation."""
        for node_id in "ABCD":
            store.add_node(make_node(node_id))
        operations = [
            lambda: store.add_edge(make_edge("A", "B")),
            lambda: store.add_edge(make_edge("B", "C")),
            lambda: store.add_edge(make_edge("C", "A")),
            lambda: store.add_edge(make_edge("D", "B")),
            lambda: store.remove_node("B"),
            lambda: store.add_node(make_node("B")),
            lambda: store.add_edge(make_edge("A", "B", edge_id="again")),
            lambda: store.remove_edge("C->A"),
            lambda: store.remove_node("A"),
        ]
        for operation in operations:
            operation()
            ids = {n.id for n in store.nodes()}
            for edge in store.edges():
                assert edge.source in ids and edge.target in ids

    def test_remove_items_mixed_selection(self, store, changes):
        """Edges and nodes are removed together with a single notification."""
        for node_id in "ABC":
            store.add_node(make_node(node_id))
        store.add_edge(make_edge("A", "B"))
        store.add_edge(make_edge("B", "C"))
        changes.clear()

        removed = store.remove_items(["A->B", "C", "unknown"])

        assert removed == 2
        assert [n.id for n in store.nodes()] == ["A", "B"]
        assert store.edges() == []
        assert len(changes) == 1

    def test_root_ids(self, store):
        for node_id in "ABC":
            store.add_node(make_node(node_id))
        store.add_edge(make_edge("A", "B"))
        assert store.root_ids() == ["A", "C"]


class TestSnapshots:

    def test_snapshot_is_detached(self, store):
        store.add_node(make_node("A", title="before"))
        snapshot = store.snapshot()
        store.update_node("A", {"title": "after"})
        assert snapshot.nodes[0].title == "before"

    def test_replace_swaps_everything(self, store):
        store.add_node(make_node("old"))
        store.replace(GraphSnapshot(
            nodes=(make_node("A"), make_node("B")),
            edges=(make_edge("A", "B"),),
        ))
        assert [n.id for n in store.nodes()] == ["A", "B"]
        assert store.edge_count() == 1

    def test_replace_validates_before_mutating(self, store):
        """An invalid snapshot leaves the current graph untouched."""
        store.add_node(make_node("keep"))
        with pytest.raises(DanglingReferenceError):
            store.replace(GraphSnapshot(nodes=(make_node("A"),), edges=(make_edge("A", "ghost"),)))
        with pytest.raises(DuplicateIdError):
            store.replace(GraphSnapshot(nodes=(make_node("A"), make_node("A"))))
        assert [n.id for n in store.nodes()] == ["keep"]


class TestNotifications:

    def test_each_mutation_emits_once(self, store, changes):
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        store.add_edge(make_edge("A", "B"))
        store.move_node("A", 5, 5)
        assert len(changes) == 4

    def test_ignored_duplicate_does_not_emit(self, store, changes):
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        store.add_edge(make_edge("A", "B", edge_id="e1"))
        changes.clear()
        store.add_edge(make_edge("A", "B", edge_id="e2"))
        assert changes == []

    def test_batch_emits_once_at_the_end(self, store, changes):
        with store.batch():
            store.add_node(make_node("A"))
            with store.batch():
                store.add_node(make_node("B"))
            store.add_edge(make_edge("A", "B"))
            assert changes == []
        assert len(changes) == 1

    def test_set_positions_emits_once_and_skips_unknown(self, store, changes):
        store.add_node(make_node("A"))
        store.add_node(make_node("B"))
        changes.clear()
        store.set_positions({"A": Position(1, 2), "B": Position(3, 4), "ghost": Position(0, 0)})
        assert len(changes) == 1
        assert store.node("B").position == Position(3.0, 4.0)
