"""
Exporter and File Handler Tests
===============================
"""

import json

import pytest

from conftest import make_edge, make_node
import taskmap_exporter
from taskmap_exporter import Exporter, document_to_markdown, format_timestamp
from taskmap_file_handler import FileHandler
from taskmap_models import Document, Priority, Status
from taskmap_serializer import dumps, graph_to_document


@pytest.fixture
def document():
    nodes = [
        make_node("A", title="Launch", priority=Priority.HIGH, status=Status.IN_PROGRESS,
                  start_date="2024-06-01", due_date="2024-06-30", tags=["q2"],
                  description="<p>Ship <b>it</b></p>"),
        make_node("B", title="Docs"),
    ]
    return graph_to_document(nodes, [make_edge("A", "B")], theme_id="t", theme_title="Roadmap")


class TestMarkdown:

    def test_headings_follow_depth(self, document):
        text = document_to_markdown(document)
        assert text.startswith("# Mind Map Export\n\n## Roadmap\n\n")
        assert "### Launch\n" in text
        assert "#### Docs\n" in text

    def test_metadata_and_description(self, document):
        text = document_to_markdown(document)
        assert "- **Priority**: High" in text
        assert "- **Status**: In progress" in text
        assert "- **Start date**: 2024-06-01" in text
        assert "- **Due date**: 2024-06-30" in text
        assert "- **Tags**: q2" in text
        assert "**Description**:\n\nShip\nit" in text
        assert "<p>" not in text

    def test_heading_level_is_capped(self):
        nodes = [make_node(f"n{i}", title=f"Level {i}") for i in range(6)]
        edges = [make_edge(f"n{i}", f"n{i + 1}") for i in range(5)]
        text = document_to_markdown(graph_to_document(nodes, edges))
        assert "### Level 0\n" in text
        assert "###### Level 3\n" in text
        assert "###### Level 5\n" in text
        assert "####### " not in text

    def test_deep_chain(self):
        nodes = [make_node(f"n{i}", title=f"Step {i}") for i in range(1500)]
        edges = [make_edge(f"n{i}", f"n{i + 1}") for i in range(1499)]
        text = document_to_markdown(graph_to_document(nodes, edges))
        assert text.count("\n###### ") == 1497
        assert "###### Step 1499\n" in text

    def test_empty_document(self):
        assert document_to_markdown(Document()).endswith("No content")

    def test_timestamps(self):
        assert format_timestamp("not a date") == "not a date"
        assert len(format_timestamp("2024-01-02T03:04:05.000Z")) == len("2024-01-02 03:04:05")


class TestExporter:

    def test_json_file(self, document, tmp_path):
        target = tmp_path / "roadmap.json"
        ok, error = Exporter().export_to_json(document, target)
        assert (ok, error) == (True, None)
        assert json.loads(target.read_text(encoding="utf-8"))["mindMaps"][0]["title"] == "Roadmap"

    def test_markdown_file(self, document, tmp_path):
        target = tmp_path / "roadmap.md"
        ok, _ = Exporter().export_to_md(document_to_markdown(document), target)
        assert ok
        assert "### Launch" in target.read_text(encoding="utf-8")

    def test_html_file(self, document, tmp_path):
        target = tmp_path / "roadmap.html"
        ok, _ = Exporter().export_to_html(document_to_markdown(document), target, title="Roadmap")
        html = target.read_text(encoding="utf-8")
        assert ok
        assert "<title>Roadmap</title>" in html
        assert "<h3>Launch</h3>" in html

    def test_html_title_is_escaped(self, document, tmp_path):
        target = tmp_path / "roadmap.html"
        Exporter().export_to_html("# R&D", target, title="R&D <beta>")
        assert "<title>R&amp;D &lt;beta&gt;</title>" in target.read_text(encoding="utf-8")

    def test_too_deep_for_json_is_reported(self, document, tmp_path, monkeypatch):
        def overflow(document):
            raise RecursionError("maximum recursion depth exceeded")

        monkeypatch.setattr(taskmap_exporter, "dumps", overflow)
        ok, error = Exporter().export_to_json(document, tmp_path / "roadmap.json")
        assert ok is False
        assert "nested too deeply" in error
        assert not (tmp_path / "roadmap.json").exists()

    def test_write_failure_is_reported(self, tmp_path):
        ok, error = Exporter().export_to_md("text", tmp_path / "missing" / "out.md")
        assert ok is False
        assert error


class TestFileHandler:

    def test_reads_valid_document(self, document, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text(dumps(document), encoding="utf-8")
        loaded, error = FileHandler().read_document(path)
        assert error is None
        assert loaded.mind_maps[0].title == "Roadmap"

    def test_missing_file(self, tmp_path):
        loaded, error = FileHandler().read_document(tmp_path / "nope.json")
        assert loaded is None
        assert "File not found" in error

    def test_wrong_extension(self, tmp_path):
        path = tmp_path / "plan.txt"
        path.write_text("{}", encoding="utf-8")
        assert "Unsupported file type" in FileHandler().read_document(path)[1]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text("{oops", encoding="utf-8")
        assert "not valid JSON" in FileHandler().read_document(path)[1]

    def test_too_deep_to_read(self, tmp_path, monkeypatch):
        def overflow(f):
            raise RecursionError("maximum recursion depth exceeded while decoding a JSON object")

        monkeypatch.setattr("taskmap_file_handler.json.load", overflow)
        path = tmp_path / "plan.json"
        path.write_text("{}", encoding="utf-8")
        loaded, error = FileHandler().read_document(path)
        assert loaded is None
        assert "nested too deeply" in error

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "plan.json"
        path.write_text(json.dumps({"foo": 1}), encoding="utf-8")
        loaded, error = FileHandler().read_document(path)
        assert loaded is None
        assert "mindMaps" in error
