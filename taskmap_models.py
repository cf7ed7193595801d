import copy
import uuid
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from bs4 import BeautifulSoup


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Status(Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class Anchor(Enum):
    """The four fixed connection points on a node's boundary."""
    TOP = "top"
    RIGHT = "right"
    BOTTOM = "bottom"
    LEFT = "left"

    @property
    def opposite(self) -> "Anchor":
        return _OPPOSITE_ANCHORS[self]


_OPPOSITE_ANCHORS = {
    Anchor.TOP: Anchor.BOTTOM,
    Anchor.BOTTOM: Anchor.TOP,
    Anchor.LEFT: Anchor.RIGHT,
    Anchor.RIGHT: Anchor.LEFT,
}


# --- Id and timestamp helpers ---

def new_id(prefix: str) -> str:
    """Returns a fresh, collision-resistant id such as 'node-3f2a9c1b7d4e'."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def now_iso() -> str:
    """Returns the current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def today_iso() -> str:
    return date.today().isoformat()


# --- Graph records ---

@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass
class Node:
    """
    A single task/topic on the canvas.

    `position` is the top-left corner of the node's fixed-size box. `description`
    holds rich-text HTML produced by the editor widget.
    """
    id: str
    title: str = ""
    description: str = ""
    priority: Optional[Priority] = None
    status: Optional[Status] = None
    created_at: str = field(default_factory=now_iso)
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    tags: list = field(default_factory=list)
    position: Position = field(default_factory=Position)
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['priority'] = self.priority.value if self.priority else None
        data['status'] = self.status.value if self.status else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Node":
        position = data.get('position') or {}
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            description=data.get('description', ''),
            priority=Priority(data['priority']) if data.get('priority') else None,
            status=Status(data['status']) if data.get('status') else None,
            created_at=data.get('created_at') or now_iso(),
            start_date=data.get('start_date'),
            due_date=data.get('due_date'),
            tags=list(data.get('tags') or []),
            position=Position(float(position.get('x', 0.0)), float(position.get('y', 0.0))),
            updated_at=data.get('updated_at'),
        )


@dataclass
class Edge:
    """A directed, labelled connection between two nodes, anchored on one side of each."""
    id: str
    source: str
    target: str
    source_anchor: Anchor = Anchor.RIGHT
    target_anchor: Anchor = Anchor.LEFT
    label: str = ""

    @property
    def connection_key(self) -> tuple:
        """The (source, target, sourceAnchor, targetAnchor) tuple used for duplicate suppression."""
        return (self.source, self.target, self.source_anchor, self.target_anchor)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'source': self.source,
            'target': self.target,
            'source_anchor': self.source_anchor.value,
            'target_anchor': self.target_anchor.value,
            'label': self.label,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Edge":
        return cls(
            id=data['id'],
            source=data['source'],
            target=data['target'],
            source_anchor=Anchor(data.get('source_anchor', Anchor.RIGHT.value)),
            target_anchor=Anchor(data.get('target_anchor', Anchor.LEFT.value)),
            label=data.get('label') or '',
        )


@dataclass(frozen=True)
class GraphSnapshot:
    """An immutable, deep-copied capture of every node and edge."""
    nodes: tuple = ()
    edges: tuple = ()

    @classmethod
    def capture(cls, nodes, edges) -> "GraphSnapshot":
        return cls(nodes=tuple(copy.deepcopy(list(nodes))), edges=tuple(copy.deepcopy(list(edges))))

    def copy(self) -> "GraphSnapshot":
        return GraphSnapshot.capture(self.nodes, self.edges)

    def to_dict(self) -> dict:
        return {
            'nodes': [node.to_dict() for node in self.nodes],
            'edges': [edge.to_dict() for edge in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GraphSnapshot":
        return cls(
            nodes=tuple(Node.from_dict(item) for item in data.get('nodes', [])),
            edges=tuple(Edge.from_dict(item) for item in data.get('edges', [])),
        )


# --- Persisted document records ---

@dataclass
class TreeNode:
    """A node of the persisted tree. `edge_label` is the label of the edge from its parent."""
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    priority: Optional[Priority] = None
    status: Optional[Status] = None
    created_at: Optional[str] = None
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    tags: list = field(default_factory=list)
    children: list = field(default_factory=list)
    edge_label: Optional[str] = None


@dataclass
class Theme:
    id: str
    title: str
    created_at: str
    updated_at: Optional[str] = None
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    children: list = field(default_factory=list)


@dataclass
class Document:
    mind_maps: list = field(default_factory=list)


# --- Presentation helpers ---

def due_date_status(node: Node, today: Optional[date] = None) -> Optional[str]:
    """
    Classifies a node's due date relative to today.

    Args:
        node (Node): The node to inspect.
        today (date, optional): Reference date. Defaults to the local current date.

    Returns:
        str or None: 'overdue', 'today', 'soon' (within three days) or None when
                     there is no due date, it is unparsable, or it is further out.
    """
    if not node.due_date:
        return None
    try:
        due = date.fromisoformat(node.due_date[:10])
    except ValueError:
        return None
    today = today or date.today()
    if due < today:
        return 'overdue'
    if due == today:
        return 'today'
    if (due - today).days <= 3:
        return 'soon'
    return None


def html_to_text(html: str, separator: str = " ") -> str:
    """Strips markup from a rich-text description."""
    if not html:
        return ""
    return BeautifulSoup(html, 'html.parser').get_text(separator, strip=True)


def description_excerpt(html: str, limit: int = 50) -> str:
    """Returns the plain text of a description, truncated to `limit` characters with an ellipsis."""
    text = html_to_text(html)
    return text[:limit] + '...' if len(text) > limit else text
