import json
import logging
import random
import re
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from PySide6.QtCore import QObject, Signal

import taskmap_config as config
from taskmap_commands import (
    AddNode, AddTheme, AutoLayout, CommandResult, ConnectEnd, ConnectStart, DeleteSelection,
    EditEdge, EditNode, Load, MoveNode, Redo, Save, Undo,
)
from taskmap_connections import (
    CHILD_PLACEMENT_OFFSETS, FREE_PLACEMENT_OFFSETS, ConnectionResolver, find_free_position,
)
from taskmap_errors import CanvasLockedError, DuplicateIdError, TaskmapError, ValidationError
from taskmap_exporter import Exporter, document_to_markdown
from taskmap_file_handler import FileHandler
from taskmap_history import HistoryManager
from taskmap_layout import LayoutEngine
from taskmap_models import (
    Anchor, Document, Edge, GraphSnapshot, Node, Position, Priority, Status,
    new_id, now_iso, today_iso,
)
from taskmap_serializer import document_to_graph, graph_to_document, parse_document
from taskmap_store import GraphStore

logger = logging.getLogger(__name__)

# Characters that are not allowed in file names on common platforms.
_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')

# Node fields that can be changed through the edit boundary.
_EDITABLE_FIELDS = {'title', 'description', 'priority', 'status', 'start_date', 'due_date', 'tags'}

# Attempts at inserting a node before giving up on fresh ids.
_MAX_ID_ATTEMPTS = 5


def safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub('_', name)


class CanvasDatabase:
    """Manages the SQLite database that stores saved canvases and the autosave slot."""

    def __init__(self, db_path=None):
        """
        Opens (and if needed creates) the canvas library.

        Args:
            db_path (str | Path, optional): Database file. Defaults to
                                            `canvases.db` inside the data directory.
        """
        self.db_path = Path(db_path) if db_path else config.get_data_dir() / 'canvases.db'
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    def init_database(self):
        with sqlite3.connect(self.db_path) as conn:
            # 'data' holds the JSON-encoded graph snapshot of the canvas.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS canvases (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            # A single-row table; slot 0 is the only autosave.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS autosave (
                    slot INTEGER PRIMARY KEY CHECK (slot = 0),
                    saved_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)

    def save_canvas(self, canvas_id, name, canvas_data):
        """
        Inserts a canvas or overwrites the stored copy with the same id.

        Args:
            canvas_id (str): The canvas id.
            name (str): The display name.
            canvas_data (dict): The serialized graph snapshot.
        """
        stamp = now_iso()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO canvases (id, name, created_at, updated_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    updated_at = excluded.updated_at,
                    data = excluded.data
            """, (canvas_id, name, stamp, stamp, json.dumps(canvas_data)))

    def load_canvas(self, canvas_id):
        """
        Loads a stored canvas.

        Returns:
            dict or None: A dictionary with 'id', 'name' and 'data', or None if not found.
        """
        with sqlite3.connect(self.db_path) as conn:
            result = conn.execute(
                "SELECT id, name, data FROM canvases WHERE id = ?", (canvas_id,)
            ).fetchone()
            if result:
                return {'id': result[0], 'name': result[1], 'data': json.loads(result[2])}
            return None

    def list_canvases(self):
        """
        Lists stored canvases, most recently updated first.

        Returns:
            list[dict]: One dict per canvas with 'id', 'name', 'created_at' and 'updated_at'.
        """
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("""
                SELECT id, name, created_at, updated_at
                FROM canvases
                ORDER BY updated_at DESC, rowid DESC
            """).fetchall()
        return [
            {'id': row[0], 'name': row[1], 'created_at': row[2], 'updated_at': row[3]}
            for row in rows
        ]

    def delete_canvas(self, canvas_id):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM canvases WHERE id = ?", (canvas_id,))

    def rename_canvas(self, canvas_id, new_name):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                UPDATE canvases
                SET name = ?, updated_at = ?
                WHERE id = ?
            """, (new_name, now_iso(), canvas_id))

    def save_autosave(self, data):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO autosave (slot, saved_at, data) VALUES (0, ?, ?)",
                (now_iso(), json.dumps(data)),
            )

    def load_autosave(self):
        """Returns the autosaved payload, or None if the slot is empty."""
        with sqlite3.connect(self.db_path) as conn:
            result = conn.execute("SELECT data FROM autosave WHERE slot = 0").fetchone()
            return json.loads(result[0]) if result else None

    def clear_autosave(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM autosave")


@dataclass
class SaveReport:
    """Outcome of writing a canvas as JSON and Markdown. The two writes succeed or fail independently."""
    json_path: Path
    markdown_path: Path
    json_ok: bool = False
    markdown_ok: bool = False
    errors: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.json_ok and self.markdown_ok

    def summary(self) -> str:
        if self.ok:
            return f"Saved {self.json_path.name} and {self.markdown_path.name}."
        saved = [path.name for path, ok in ((self.json_path, self.json_ok), (self.markdown_path, self.markdown_ok)) if ok]
        if saved:
            return f"Saved {saved[0]} only. " + " ".join(self.errors)
        return "Nothing was saved. " + " ".join(self.errors)


class EditorSession(QObject):
    """
    One open canvas and everything needed to edit it.

    The session owns the graph store, its undo history, the layout engine and
    the connection resolver, and is the only object a view layer talks to.
    Every graph mutation reaches the history through `store.graph_changed`;
    applying an undo/redo entry or loading a document runs under
    `history.applying()` so those replacements never record themselves.

    Signals:
        selection_changed(list): Ids of the currently selected items.
        canvas_changed(str, str): The active canvas id and name.
    """
    selection_changed = Signal(list)
    canvas_changed = Signal(str, str)

    def __init__(self, database=None, layout_config=None, clock=time.monotonic, seed=None, parent=None):
        super().__init__(parent)
        self.store = GraphStore(self)
        self.history = HistoryManager(clock=clock, parent=self)
        self.layout_engine = LayoutEngine(layout_config or config.load_layout_config())
        self.resolver = ConnectionResolver(self.store)
        self.exporter = Exporter()
        self.file_handler = FileHandler()
        self.rng = random.Random(seed)
        self._database = database

        self.canvas_id = new_id('canvas')
        self.canvas_name = config.DEFAULT_CANVAS_NAME
        self.selection = []
        self._locked = False

        self.store.graph_changed.connect(self._on_graph_changed)

    # --- State for the view layer ---

    @property
    def database(self) -> CanvasDatabase:
        if self._database is None:
            self._database = CanvasDatabase()
        return self._database

    @property
    def locked(self) -> bool:
        return self._locked

    @locked.setter
    def locked(self, value):
        self._locked = bool(value)
        logger.info("Canvas %s", "locked" if self._locked else "unlocked")

    def nodes(self):
        return self.store.nodes()

    def edges(self):
        return self.store.edges()

    def history_position(self):
        """Returns (index, length) of the undo history."""
        return self.history.index, self.history.length

    def select(self, ids):
        self.selection = list(ids)
        self.selection_changed.emit(list(self.selection))

    def _on_graph_changed(self):
        if self.history.is_applying:
            return
        self.history.capture(self.store.snapshot())

    def _ensure_unlocked(self):
        if self._locked:
            raise CanvasLockedError()

    # --- Node and edge editing ---

    def add_node(self, parent_id=None, position=None, title=None):
        """
        Creates a task node, optionally as a child of `parent_id`.

        A child starts one and a half node widths to the right of its parent
        and is connected to it right -> left. A standalone node starts at
        `position` (the view centre, defaulting to the origin). Either way the
        spot is moved to a free place when it would crowd an existing node.
        The new node becomes the selection.

        Returns:
            Node: A copy of the created node.

        Raises:
            KeyError: If `parent_id` does not exist.
            CanvasLockedError: If the canvas is locked.
        """
        self._ensure_unlocked()
        existing = self.store.nodes()
        if parent_id is not None:
            parent = self.store.node(parent_id)
            if parent is None:
                raise KeyError(parent_id)
            base = Position(parent.position.x + config.HORIZONTAL_OFFSET, parent.position.y)
            spot = find_free_position(existing, base, CHILD_PLACEMENT_OFFSETS, self.rng, ignore_id=parent_id)
        else:
            base = position or Position()
            spot = find_free_position(existing, base, FREE_PLACEMENT_OFFSETS, self.rng)

        node = Node(
            id=new_id('node'),
            title=title or config.DEFAULT_NODE_TITLE,
            created_at=now_iso(),
            start_date=today_iso(),
            due_date=today_iso(),
            position=spot,
        )
        with self.store.batch():
            self._insert_node(node)
            if parent_id is not None:
                self.store.add_edge(Edge(
                    id=new_id('edge'),
                    source=parent_id,
                    target=node.id,
                    source_anchor=Anchor.RIGHT,
                    target_anchor=Anchor.LEFT,
                ))
        self.select([node.id])
        return self.store.node(node.id)

    def add_theme(self, position=None):
        """Creates a standalone root node titled as a new theme."""
        return self.add_node(position=position, title=config.DEFAULT_THEME_TITLE)

    def _insert_node(self, node):
        for _ in range(_MAX_ID_ATTEMPTS):
            try:
                self.store.add_node(node)
                return
            except DuplicateIdError:
                logger.warning("Node id %s already in use; generating a new one", node.id)
                node.id = new_id('node')
        raise DuplicateIdError(node.id)

    def edit_node(self, node_id, **fields):
        """
        Validates and applies an edit to a node's fields.

        Priority and status accept their enum or string values (empty string
        clears them). Dates must be ISO dates, and a due date may not fall
        before the start date.

        Raises:
            ValidationError: If a field is unknown or a value is rejected.
            KeyError: If the node does not exist.
            CanvasLockedError: If the canvas is locked.
        """
        self._ensure_unlocked()
        node = self.store.node(node_id)
        if node is None:
            raise KeyError(node_id)
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}.")

        changes = {}
        for name, value in fields.items():
            if name in ('title', 'description'):
                if not isinstance(value, str):
                    raise ValidationError(f"'{name}' must be text.")
                changes[name] = value
            elif name == 'priority':
                changes[name] = _coerce_enum(Priority, value, name)
            elif name == 'status':
                changes[name] = _coerce_enum(Status, value, name)
            elif name in ('start_date', 'due_date'):
                changes[name] = _coerce_date(value, name)
            elif name == 'tags':
                if not isinstance(value, (list, tuple)) or not all(isinstance(tag, str) for tag in value):
                    raise ValidationError("'tags' must be a list of strings.")
                changes[name] = list(value)

        start = changes.get('start_date', node.start_date)
        due = changes.get('due_date', node.due_date)
        if _parse_date(start) and _parse_date(due) and _parse_date(due) < _parse_date(start):
            raise ValidationError("The due date cannot be earlier than the start date.")

        self.store.update_node(node_id, changes)
        return self.store.node(node_id)

    def move_node(self, node_id, x, y):
        self._ensure_unlocked()
        self.store.move_node(node_id, x, y)

    def edit_edge(self, edge_id, label):
        self._ensure_unlocked()
        self.store.update_edge_label(edge_id, label)

    def delete_selection(self, ids=None):
        """
        Deletes nodes and edges by id (the current selection when `ids` is None).

        Removing a node also removes every edge attached to it. The whole
        deletion is a single change.

        Returns:
            int: The number of ids removed.
        """
        self._ensure_unlocked()
        ids = list(self.selection if ids is None else ids)
        removed = self.store.remove_items(ids)
        remaining = [item_id for item_id in self.selection
                     if self.store.has_node(item_id) or self.store.has_edge(item_id)]
        if remaining != self.selection:
            self.select(remaining)
        return removed

    # --- Connect gestures ---

    def on_connect_start(self, node_id, anchor=None):
        self._ensure_unlocked()
        gesture = self.resolver.begin(node_id, anchor)
        if gesture is None:
            logger.warning("Connect gesture started on unknown node %s", node_id)
        else:
            self.select([node_id])
        return gesture

    def on_connect_end(self, target=None, target_anchor=None):
        """
        Ends the active connect gesture.

        Args:
            target: A node id when the drag was released over a node; otherwise
                    the drop point on the canvas (any non-None value), or None
                    when the gesture was abandoned.
            target_anchor (str, optional): The anchor the drag was released on.

        Returns:
            Edge, Node or None: The edge created between two existing nodes,
                                the node spawned on empty canvas (now selected),
                                or None when nothing changed.
        """
        self._ensure_unlocked()
        if isinstance(target, str):
            edge = self.resolver.complete(target, target_anchor)
            self.resolver.finish()
            return edge
        spawned = self.resolver.finish(target)
        if spawned is None:
            return None
        node, _edge = spawned
        self.select([node.id])
        return node

    # --- History ---

    def undo(self):
        """Steps back one history entry. Returns True if the graph changed."""
        self._ensure_unlocked()
        self.checkpoint()
        snapshot = self.history.undo()
        if snapshot is None:
            return False
        self._apply_snapshot(snapshot)
        return True

    def redo(self):
        self._ensure_unlocked()
        self.checkpoint()
        snapshot = self.history.redo()
        if snapshot is None:
            return False
        self._apply_snapshot(snapshot)
        return True

    def checkpoint(self):
        """Records the current state unless the history already ends with it (end of a drag, etc.)."""
        return self.history.flush(self.store.snapshot())

    def _apply_snapshot(self, snapshot):
        with self.history.applying():
            self.store.replace(snapshot)
        remaining = [item_id for item_id in self.selection
                     if self.store.has_node(item_id) or self.store.has_edge(item_id)]
        if remaining != self.selection:
            self.select(remaining)

    # --- Layout ---

    def auto_layout(self, layout_config=None):
        """
        Repositions every node with the layered layout and records the result.

        Args:
            layout_config (LayoutConfig, optional): Overrides the session's
                                                    direction and spacing for this run.

        Returns:
            dict: node id -> Position that was applied.
        """
        self._ensure_unlocked()
        engine = LayoutEngine(layout_config) if layout_config else self.layout_engine
        positions = engine.apply(self.store)
        self.checkpoint()
        logger.info("Laid out %d nodes (%s)", len(positions), engine.config.direction)
        return positions

    # --- Documents ---

    def export_document(self) -> Document:
        return graph_to_document(
            self.store.nodes(), self.store.edges(),
            theme_id=self.canvas_id, theme_title=self.canvas_name,
        )

    def export_markdown(self) -> str:
        return document_to_markdown(self.export_document())

    def load_document(self, raw):
        """
        Replaces the canvas contents with a persisted document.

        The document is fully validated and converted before anything is
        touched, so a malformed document leaves the graph and its history as
        they were. On success the theme title becomes the canvas name and one
        history entry is recorded for the loaded state.

        Args:
            raw (dict | Document): A decoded JSON document, or an already parsed one.

        Raises:
            MalformedDocumentError: If the document does not have the persisted shape.
            CanvasLockedError: If the canvas is locked.
        """
        self._ensure_unlocked()
        document = raw if isinstance(raw, Document) else parse_document(raw)
        snapshot = document_to_graph(document)
        theme = document.mind_maps[0]

        with self.history.applying():
            self.store.replace(snapshot)
        self.history.push(self.store.snapshot())

        self.canvas_name = theme.title or self.canvas_name
        self.resolver.cancel()
        self.select([])
        self.canvas_changed.emit(self.canvas_id, self.canvas_name)
        logger.info("Loaded '%s' with %d nodes", self.canvas_name, len(snapshot.nodes))
        return snapshot

    def load_file(self, file_path):
        """
        Loads a document from disk.

        Returns:
            tuple[bool, str | None]: A success flag and, on failure, the reason.
                                     The canvas is unchanged on failure.
        """
        document, error = self.file_handler.read_document(file_path)
        if error:
            return False, error
        try:
            self.load_document(document)
        except TaskmapError as e:
            return False, str(e)
        return True, None

    def save_to_directory(self, directory) -> SaveReport:
        """
        Writes `<canvas name>.json` and `<canvas name>.md` into `directory`.

        The two files are written independently; the report says which of
        them succeeded.
        """
        directory = Path(directory)
        base = safe_filename(self.canvas_name)
        report = SaveReport(json_path=directory / f"{base}.json", markdown_path=directory / f"{base}.md")
        document = self.export_document()

        report.json_ok, error = self.exporter.export_to_json(document, report.json_path)
        if error:
            report.errors.append(f"JSON: {error}")
        report.markdown_ok, error = self.exporter.export_to_md(document_to_markdown(document), report.markdown_path)
        if error:
            report.errors.append(f"Markdown: {error}")

        if report.ok:
            logger.info(report.summary())
        else:
            logger.warning(report.summary())
        return report

    # --- Canvas library ---

    def save_canvas(self):
        """Stores the current canvas in the library under its id."""
        self.database.save_canvas(self.canvas_id, self.canvas_name, self.store.snapshot().to_dict())

    def _stash_current(self):
        if self.store.node_count():
            self.save_canvas()

    def _open_canvas(self, canvas_id, name, snapshot):
        with self.history.applying():
            self.store.replace(snapshot)
        self.history.reset(self.store.snapshot())
        self.canvas_id = canvas_id
        self.canvas_name = name
        self.resolver.cancel()
        self.select([])
        self.canvas_changed.emit(self.canvas_id, self.canvas_name)

    def new_canvas(self, name=None):
        """
        Starts an empty canvas. A non-empty current canvas is stored in the library first.

        Returns:
            str: The id of the new canvas.
        """
        self._ensure_unlocked()
        self._stash_current()
        self._open_canvas(new_id('canvas'), name or config.DEFAULT_CANVAS_NAME, GraphSnapshot())
        logger.info("Started canvas %s", self.canvas_id)
        return self.canvas_id

    def switch_canvas(self, canvas_id):
        """
        Opens a canvas from the library, storing the current one first when it has nodes.

        Raises:
            KeyError: If no canvas with that id is stored.
        """
        self._ensure_unlocked()
        record = self.database.load_canvas(canvas_id)
        if record is None:
            raise KeyError(canvas_id)
        snapshot = GraphSnapshot.from_dict(record['data'])
        self._stash_current()
        self._open_canvas(record['id'], record['name'], snapshot)
        logger.info("Switched to canvas %s", canvas_id)

    def list_canvases(self):
        return self.database.list_canvases()

    def rename_canvas(self, canvas_id, name):
        if canvas_id == self.canvas_id:
            self.canvas_name = name
            self.canvas_changed.emit(self.canvas_id, self.canvas_name)
        self.database.rename_canvas(canvas_id, name)

    def delete_canvas(self, canvas_id):
        """Removes a canvas from the library. Deleting the active canvas leaves an empty one in its place."""
        if canvas_id == self.canvas_id:
            self._ensure_unlocked()
            self.database.delete_canvas(canvas_id)
            self._open_canvas(new_id('canvas'), config.DEFAULT_CANVAS_NAME, GraphSnapshot())
        else:
            self.database.delete_canvas(canvas_id)

    # --- Autosave ---

    def autosave(self):
        self.database.save_autosave({
            'canvas_id': self.canvas_id,
            'canvas_name': self.canvas_name,
            'graph': self.store.snapshot().to_dict(),
            'saved_at': now_iso(),
        })
        logger.debug("Autosaved canvas %s", self.canvas_id)

    def restore_autosave(self) -> bool:
        """
        Reopens the autosaved canvas, if there is one.

        Returns:
            bool: True if a saved state was applied. An unreadable slot is
                  logged and left in place.
        """
        self._ensure_unlocked()
        data = self.database.load_autosave()
        if not data:
            return False
        try:
            snapshot = GraphSnapshot.from_dict(data['graph'])
            canvas_id = data['canvas_id']
            name = data.get('canvas_name') or config.DEFAULT_CANVAS_NAME
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable autosave: %s", e)
            return False
        self._open_canvas(canvas_id, name, snapshot)
        logger.info("Restored autosaved canvas %s", canvas_id)
        return True

    def discard_autosave(self):
        self.database.clear_autosave()

    # --- Command interface ---

    def apply(self, command) -> CommandResult:
        """
        Executes a command record from the view layer.

        Failures raised by the engine (including unknown ids) are reported in
        the result instead of propagating.
        """
        handler = self._command_handlers().get(type(command))
        if handler is None:
            return CommandResult(ok=False, error=f"Unknown command: {type(command).__name__}")
        try:
            value = handler(command)
        except TaskmapError as e:
            return CommandResult(ok=False, error=str(e))
        except KeyError as e:
            return CommandResult(ok=False, error=f"Unknown id: {e.args[0]}")
        if isinstance(value, SaveReport) and not value.ok:
            return CommandResult(ok=False, value=value, error=value.summary())
        return CommandResult(ok=True, value=value)

    def _command_handlers(self):
        return {
            AddNode: lambda c: self.add_node(c.parent_id, c.position, c.title),
            AddTheme: lambda c: self.add_theme(c.position),
            EditNode: lambda c: self.edit_node(c.node_id, **c.fields),
            MoveNode: lambda c: self.move_node(c.node_id, c.x, c.y),
            EditEdge: lambda c: self.edit_edge(c.edge_id, c.label),
            ConnectStart: lambda c: self.on_connect_start(c.node_id, c.anchor),
            ConnectEnd: lambda c: self.on_connect_end(c.target, c.target_anchor),
            DeleteSelection: lambda c: self.delete_selection(c.ids),
            Undo: lambda c: self.undo(),
            Redo: lambda c: self.redo(),
            AutoLayout: lambda c: self.auto_layout(c.config),
            Load: lambda c: self.load_document(c.raw),
            Save: lambda c: self.save_to_directory(c.directory),
        }


def _coerce_enum(enum_type, value, name):
    if value is None or value == "":
        return None
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"'{name}' must be one of: {allowed}.") from None


def _coerce_date(value, name):
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise ValidationError(f"'{name}' must be an ISO date.")
    try:
        date.fromisoformat(value[:10])
    except ValueError:
        raise ValidationError(f"'{name}' must be an ISO date, got '{value}'.") from None
    return value


def _parse_date(value):
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None
