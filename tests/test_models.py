"""
Model Helper Tests
==================
"""

from datetime import date

from conftest import make_node
from taskmap_models import (
    Anchor, Edge, GraphSnapshot, Node, Priority, description_excerpt, due_date_status, html_to_text,
    new_id, now_iso,
)


class TestDueDateStatus:

    TODAY = date(2024, 6, 10)

    def status(self, due):
        return due_date_status(make_node("A", due_date=due), today=self.TODAY)

    def test_classification(self):
        assert self.status("2024-06-09") == "overdue"
        assert self.status("2024-06-10") == "today"
        assert self.status("2024-06-13") == "soon"
        assert self.status("2024-06-14") is None

    def test_missing_or_unparsable(self):
        assert self.status(None) is None
        assert self.status("someday") is None


class TestDescriptions:

    def test_html_to_text(self):
        assert html_to_text("<p>Hello <b>world</b></p>") == "Hello world"
        assert html_to_text("") == ""

    def test_excerpt_truncates_at_fifty(self):
        text = "x" * 60
        assert description_excerpt(f"<p>{text}</p>") == "x" * 50 + "..."
        assert description_excerpt("<p>short</p>") == "short"


class TestRecords:

    def test_ids_and_timestamps(self):
        assert new_id("node").startswith("node-")
        assert new_id("node") != new_id("node")
        assert now_iso().endswith("Z")

    def test_anchor_opposites(self):
        assert Anchor.RIGHT.opposite is Anchor.LEFT
        assert Anchor.TOP.opposite is Anchor.BOTTOM

    def test_snapshot_dict_round_trip(self):
        snapshot = GraphSnapshot(
            nodes=(make_node("A", priority=Priority.LOW, tags=["t"]), make_node("B", 10, 20)),
            edges=(Edge(id="e", source="A", target="B", source_anchor=Anchor.BOTTOM,
                        target_anchor=Anchor.TOP, label="go"),),
        )
        assert GraphSnapshot.from_dict(snapshot.to_dict()) == snapshot

    def test_node_defaults(self):
        node = Node.from_dict({"id": "n"})
        assert node.title == ""
        assert node.priority is None
        assert node.created_at
