import copy
import logging
from contextlib import contextmanager

from PySide6.QtCore import QObject, Signal

from taskmap_errors import DanglingReferenceError, DuplicateIdError
from taskmap_models import Edge, GraphSnapshot, Node, Position, now_iso

logger = logging.getLogger(__name__)

# Fields that may never be changed through update_node.
_IMMUTABLE_FIELDS = {'id', 'created_at'}


class GraphStore(QObject):
    """
    The single source of truth for the nodes and edges of one canvas.

    All structural change passes through this class. Callers only ever receive
    copies of the stored records, so a retained reference can never become the
    live state behind the store's back. Every completed mutation emits
    `graph_changed` exactly once, after the state is consistent again; batch
    operations emit once for the whole batch.
    """
    graph_changed = Signal()

    def __init__(self, parent=None):
        super().__init__(parent)
        # Insertion-ordered maps; iteration order is the canvas order.
        self._nodes = {}
        self._edges = {}
        self._batch_depth = 0
        self._pending_change = False

    # --- Read access ---

    def nodes(self):
        """Returns deep copies of all nodes, in insertion order."""
        return [copy.deepcopy(node) for node in self._nodes.values()]

    def edges(self):
        """Returns deep copies of all edges, in insertion order."""
        return [copy.deepcopy(edge) for edge in self._edges.values()]

    def node(self, node_id):
        """Returns a copy of a node, or None if it does not exist."""
        node = self._nodes.get(node_id)
        return copy.deepcopy(node) if node else None

    def edge(self, edge_id):
        edge = self._edges.get(edge_id)
        return copy.deepcopy(edge) if edge else None

    def has_node(self, node_id) -> bool:
        return node_id in self._nodes

    def has_edge(self, edge_id) -> bool:
        return edge_id in self._edges

    def node_count(self) -> int:
        return len(self._nodes)

    def edge_count(self) -> int:
        return len(self._edges)

    def find_edge(self, source, target, source_anchor, target_anchor):
        """Returns a copy of the edge with the given connection key, or None."""
        key = (source, target, source_anchor, target_anchor)
        for edge in self._edges.values():
            if edge.connection_key == key:
                return copy.deepcopy(edge)
        return None

    def root_ids(self):
        """Ids of nodes that are not the target of any edge."""
        targets = {edge.target for edge in self._edges.values()}
        return [node_id for node_id in self._nodes if node_id not in targets]

    def snapshot(self) -> GraphSnapshot:
        """Deep copy of the current nodes and edges, for history capture."""
        return GraphSnapshot.capture(self._nodes.values(), self._edges.values())

    # --- Mutation primitives ---

    def add_node(self, node: Node):
        """
        Appends a node to the graph.

        Args:
            node (Node): The node to add. The store keeps its own copy.

        Raises:
            DuplicateIdError: If a node with the same id already exists.
        """
        if node.id in self._nodes:
            raise DuplicateIdError(node.id)
        self._nodes[node.id] = copy.deepcopy(node)
        logger.debug("Added node %s", node.id)
        self._changed()

    def remove_node(self, node_id):
        """
        Removes a node together with every edge that starts or ends at it.

        Raises:
            KeyError: If the node does not exist.
        """
        if node_id not in self._nodes:
            raise KeyError(node_id)
        self._drop_node(node_id)
        self._changed()

    def add_edge(self, edge: Edge):
        """
        Appends an edge unless an identical connection already exists.

        Both endpoints are validated before anything is changed, so a dangling
        edge can never be stored.

        Args:
            edge (Edge): The edge to add. The store keeps its own copy.

        Returns:
            Edge or None: A copy of the stored edge, or None if the connection
                          (source, target, anchors) was already present.

        Raises:
            DanglingReferenceError: If the source or target node is missing.
            DuplicateIdError: If another edge already uses the same id.
        """
        for endpoint in (edge.source, edge.target):
            if endpoint not in self._nodes:
                raise DanglingReferenceError(edge.id, endpoint)
        if any(existing.connection_key == edge.connection_key for existing in self._edges.values()):
            logger.warning("Ignoring duplicate connection %s -> %s", edge.source, edge.target)
            return None
        if edge.id in self._edges:
            raise DuplicateIdError(edge.id)
        self._edges[edge.id] = copy.deepcopy(edge)
        logger.debug("Added edge %s (%s -> %s)", edge.id, edge.source, edge.target)
        self._changed()
        return copy.deepcopy(edge)

    def remove_edge(self, edge_id):
        if edge_id not in self._edges:
            raise KeyError(edge_id)
        del self._edges[edge_id]
        self._changed()

    def remove_items(self, ids):
        """
        Removes a mixed selection of node and edge ids as one change.

        Unknown ids are skipped. Edges are removed first, then nodes (with their
        attached edges).

        Returns:
            int: The number of ids that were actually removed.
        """
        ids = list(ids)
        removed = 0
        for item_id in ids:
            if item_id in self._edges:
                del self._edges[item_id]
                removed += 1
        for item_id in ids:
            if item_id in self._nodes:
                self._drop_node(item_id)
                removed += 1
        if removed:
            self._changed()
        return removed

    def update_node(self, node_id, fields: dict):
        """
        Merges `fields` into an existing node and stamps `updated_at`.

        Args:
            node_id (str): The node to update.
            fields (dict): Attribute names of Node mapped to their new values.

        Raises:
            KeyError: If the node does not exist.
            ValueError: If a field is unknown or immutable.
        """
        node = self._nodes.get(node_id)
        if node is None:
            raise KeyError(node_id)
        for name in fields:
            if name in _IMMUTABLE_FIELDS or not hasattr(node, name):
                raise ValueError(f"Field '{name}' cannot be updated.")
        for name, value in fields.items():
            setattr(node, name, copy.deepcopy(value))
        node.updated_at = now_iso()
        self._changed()

    def move_node(self, node_id, x, y):
        """Sets a node's top-left position."""
        node = self._nodes.get(node_id)
        if node is None:
            raise KeyError(node_id)
        node.position = Position(float(x), float(y))
        self._changed()

    def set_positions(self, positions: dict):
        """
        Moves several nodes at once, emitting a single change.

        Args:
            positions (dict): node id -> Position. Ids that are not in the
                              graph are ignored.
        """
        moved = False
        for node_id, position in positions.items():
            node = self._nodes.get(node_id)
            if node is None:
                continue
            node.position = Position(float(position.x), float(position.y))
            moved = True
        if moved:
            self._changed()

    def update_edge_label(self, edge_id, label: str):
        edge = self._edges.get(edge_id)
        if edge is None:
            raise KeyError(edge_id)
        edge.label = label or ""
        self._changed()

    def replace(self, snapshot: GraphSnapshot):
        """
        Atomically replaces the whole live state with a copy of `snapshot`.

        The snapshot is validated first; if it contains duplicate ids or
        dangling edges the store is left untouched.
        """
        nodes = {}
        for node in snapshot.nodes:
            if node.id in nodes:
                raise DuplicateIdError(node.id)
            nodes[node.id] = copy.deepcopy(node)
        edges = {}
        for edge in snapshot.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in nodes:
                    raise DanglingReferenceError(edge.id, endpoint)
            if edge.id in edges:
                raise DuplicateIdError(edge.id)
            edges[edge.id] = copy.deepcopy(edge)
        self._nodes = nodes
        self._edges = edges
        self._changed()

    def clear(self):
        self.replace(GraphSnapshot())

    @contextmanager
    def batch(self):
        """Groups several mutations so `graph_changed` fires once, when the outermost batch ends."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._pending_change:
                self._pending_change = False
                self.graph_changed.emit()

    def _changed(self):
        if self._batch_depth:
            self._pending_change = True
        else:
            self.graph_changed.emit()

    def _drop_node(self, node_id):
        del self._nodes[node_id]
        attached = [
            edge_id for edge_id, edge in self._edges.items()
            if edge.source == node_id or edge.target == node_id
        ]
        for edge_id in attached:
            del self._edges[edge_id]
        logger.debug("Removed node %s and %d attached edge(s)", node_id, len(attached))
