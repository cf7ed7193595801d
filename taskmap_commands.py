"""
Command objects accepted by EditorSession.apply.

A view layer translates its own events (drag ends, edits, key presses) into
these plain records and hands them to the session; it never calls the store
directly.
"""
from dataclasses import dataclass, field
from typing import Any, Optional

from taskmap_config import LayoutConfig
from taskmap_models import Position


@dataclass
class CommandResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class AddNode:
    parent_id: Optional[str] = None
    position: Optional[Position] = None
    title: Optional[str] = None


@dataclass
class AddTheme:
    position: Optional[Position] = None


@dataclass
class EditNode:
    node_id: str
    fields: dict = field(default_factory=dict)


@dataclass
class MoveNode:
    node_id: str
    x: float
    y: float


@dataclass
class EditEdge:
    edge_id: str
    label: str = ""


@dataclass
class ConnectStart:
    node_id: str
    anchor: Optional[str] = None


@dataclass
class ConnectEnd:
    """`target` is either a node id or a canvas drop point."""
    target: Any = None
    target_anchor: Optional[str] = None


@dataclass
class DeleteSelection:
    ids: list = field(default_factory=list)


@dataclass
class Undo:
    pass


@dataclass
class Redo:
    pass


@dataclass
class AutoLayout:
    config: Optional[LayoutConfig] = None


@dataclass
class Load:
    """A decoded JSON document, as read from disk."""
    raw: Any = None


@dataclass
class Save:
    directory: str = "."
