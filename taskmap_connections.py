import logging
import math
import random
from dataclasses import dataclass
from typing import Optional

from PySide6.QtCore import QPointF, QRectF

import taskmap_config as config
from taskmap_models import Anchor, Edge, Node, Position, new_id, now_iso, today_iso

logger = logging.getLogger(__name__)

# Candidate anchor directions, in tie-break order: the first best match wins.
ANCHOR_DIRECTIONS = (
    (Anchor.RIGHT, QPointF(1, 0)),
    (Anchor.LEFT, QPointF(-1, 0)),
    (Anchor.BOTTOM, QPointF(0, 1)),
    (Anchor.TOP, QPointF(0, -1)),
)

# Where a node dragged out of an anchor lands, relative to its source node.
SPAWN_OFFSETS = {
    Anchor.TOP: QPointF(0, -config.VERTICAL_OFFSET),
    Anchor.RIGHT: QPointF(config.HORIZONTAL_OFFSET, 0),
    Anchor.BOTTOM: QPointF(0, config.VERTICAL_OFFSET),
    Anchor.LEFT: QPointF(-config.HORIZONTAL_OFFSET, 0),
}

# Fallback spots around a parent's default child slot, tried in order.
CHILD_PLACEMENT_OFFSETS = (
    (0, config.NODE_HEIGHT * 1.5),
    (0, -config.NODE_HEIGHT * 1.5),
    (config.NODE_WIDTH * 1.5, 0),
    (config.NODE_WIDTH * 1.0, config.NODE_HEIGHT * 1.0),
    (config.NODE_WIDTH * 1.0, -config.NODE_HEIGHT * 1.0),
    (config.NODE_WIDTH * 2.0, config.NODE_HEIGHT * 0.5),
    (config.NODE_WIDTH * 2.0, -config.NODE_HEIGHT * 0.5),
    (config.NODE_WIDTH * 2.5, 0),
)

# Fallback spots around the view centre for a standalone node.
FREE_PLACEMENT_OFFSETS = (
    (config.NODE_WIDTH * 1.5, 0),
    (-config.NODE_WIDTH * 1.5, 0),
    (0, config.NODE_HEIGHT * 1.5),
    (0, -config.NODE_HEIGHT * 1.5),
    (config.NODE_WIDTH, config.NODE_HEIGHT),
    (-config.NODE_WIDTH, config.NODE_HEIGHT),
    (config.NODE_WIDTH, -config.NODE_HEIGHT),
    (-config.NODE_WIDTH, -config.NODE_HEIGHT),
)

RANDOM_PLACEMENT_ATTEMPTS = 20


def parse_anchor(value) -> Optional[Anchor]:
    """Accepts an Anchor, its string value, or None. Unknown strings map to None."""
    if value is None or isinstance(value, Anchor):
        return value
    try:
        return Anchor(str(value).lower())
    except ValueError:
        return None


def node_center(node: Node, width=config.NODE_WIDTH, height=config.NODE_HEIGHT) -> QPointF:
    return QRectF(node.position.x, node.position.y, width, height).center()


def choose_anchors(source_center: QPointF, target_center: QPointF):
    """
    Picks the anchor sides that best face each other.

    The source takes the direction with the largest dot product against the
    unit vector from source to target; the target does the same against the
    negated vector. Ties go to the earlier entry of ANCHOR_DIRECTIONS.
    Coincident centres fall back to right -> left.

    Returns:
        tuple[Anchor, Anchor]: (source_anchor, target_anchor)
    """
    delta = target_center - source_center
    length = math.hypot(delta.x(), delta.y())
    if length == 0:
        return Anchor.RIGHT, Anchor.LEFT
    unit = delta / length

    def best(vector):
        chosen, best_dot = None, -math.inf
        for anchor, direction in ANCHOR_DIRECTIONS:
            dot = QPointF.dotProduct(vector, direction)
            if dot > best_dot:
                chosen, best_dot = anchor, dot
        return chosen

    return best(unit), best(-unit)


def is_overlapping(nodes, position: Position, ignore_id=None,
                   width=config.NODE_WIDTH, height=config.NODE_HEIGHT) -> bool:
    """True if a node placed at `position` would crowd any node (within 1.2x its footprint)."""
    probe = QRectF(position.x, position.y, width * 1.2, height * 1.2)
    for node in nodes:
        if node.id == ignore_id:
            continue
        if probe.intersects(QRectF(node.position.x, node.position.y, width * 1.2, height * 1.2)):
            return True
    return False


def find_free_position(nodes, base: Position, offsets, rng: random.Random, ignore_id=None,
                       width=config.NODE_WIDTH, height=config.NODE_HEIGHT) -> Position:
    """
    Finds a spot for a new node near `base`.

    `base` itself is tried first, then each offset in order, then up to
    RANDOM_PLACEMENT_ATTEMPTS random offsets within three node sizes. If all
    of those are crowded the last random candidate is returned anyway.
    """
    candidate = Position(base.x, base.y)
    if not is_overlapping(nodes, candidate, ignore_id, width, height):
        return candidate
    for dx, dy in offsets:
        probe = Position(base.x + dx, base.y + dy)
        if not is_overlapping(nodes, probe, ignore_id, width, height):
            return probe
    for _ in range(RANDOM_PLACEMENT_ATTEMPTS):
        candidate = Position(
            base.x + rng.uniform(-1, 1) * width * 3,
            base.y + rng.uniform(-1, 1) * height * 3,
        )
        if not is_overlapping(nodes, candidate, ignore_id, width, height):
            break
    return candidate


@dataclass
class ConnectionGesture:
    """A connect drag in progress: where it started and whether it already landed on a node."""
    source_id: str
    anchor: Optional[Anchor]
    completed: bool = False


class ConnectionResolver:
    """
    Turns connect gestures into edges, or into a new node plus edge.

    A gesture starts on a node's anchor (`begin`). If it is released over
    another node, `complete` creates the edge and marks the gesture as done;
    `finish` then only clears it. If it is released over empty canvas,
    `finish` spawns a child node next to the source on the dragged side. The
    two outcomes are mutually exclusive for a single gesture.
    """

    def __init__(self, store, node_width=config.NODE_WIDTH, node_height=config.NODE_HEIGHT):
        self.store = store
        self.node_width = node_width
        self.node_height = node_height
        self.gesture = None

    def connect(self, source_id, target_id, source_anchor=None, target_anchor=None):
        """
        Connects two existing nodes.

        When either anchor is missing both are chosen from the relative node
        positions (see choose_anchors).

        Returns:
            Edge or None: The new edge, or None if a node is missing or the
                          exact connection already exists.
        """
        source = self.store.node(source_id)
        target = self.store.node(target_id)
        if source is None or target is None:
            logger.warning("Cannot connect %s -> %s: unknown node", source_id, target_id)
            return None

        source_anchor = parse_anchor(source_anchor)
        target_anchor = parse_anchor(target_anchor)
        if source_anchor is None or target_anchor is None:
            source_anchor, target_anchor = choose_anchors(
                node_center(source, self.node_width, self.node_height),
                node_center(target, self.node_width, self.node_height),
            )
            logger.debug("Auto-selected anchors %s -> %s", source_anchor.value, target_anchor.value)

        if self.store.find_edge(source_id, target_id, source_anchor, target_anchor):
            logger.info("Connection %s -> %s already exists", source_id, target_id)
            return None
        edge = Edge(
            id=new_id('edge'),
            source=source_id,
            target=target_id,
            source_anchor=source_anchor,
            target_anchor=target_anchor,
        )
        return self.store.add_edge(edge)

    # --- Gesture handling ---

    def begin(self, node_id, anchor=None):
        """Starts a gesture from `node_id`. Returns the gesture, or None for an unknown node."""
        if not self.store.has_node(node_id):
            self.gesture = None
            return None
        self.gesture = ConnectionGesture(source_id=node_id, anchor=parse_anchor(anchor))
        return self.gesture

    def complete(self, target_id, target_anchor=None):
        """Ends the active gesture on an existing node. Returns the new edge or None."""
        gesture = self.gesture
        if gesture is None:
            return None
        gesture.completed = True
        return self.connect(gesture.source_id, target_id, gesture.anchor, target_anchor)

    def finish(self, drop_point=None):
        """
        Releases the active gesture.

        Args:
            drop_point: Where the drag ended on the canvas, or None when it did
                        not end over empty canvas. Only its presence matters;
                        the new node is placed relative to the source.

        Returns:
            tuple[Node, Edge] or None: The spawned node and its edge, or None
                                       when nothing was created.
        """
        gesture, self.gesture = self.gesture, None
        if gesture is None or gesture.completed or drop_point is None:
            return None
        if gesture.anchor is None:
            logger.warning("Connect gesture from %s ended without an anchor; ignoring", gesture.source_id)
            return None
        source = self.store.node(gesture.source_id)
        if source is None:
            return None

        offset = SPAWN_OFFSETS[gesture.anchor]
        node = Node(
            id=new_id('node'),
            title=config.DEFAULT_NODE_TITLE,
            created_at=now_iso(),
            start_date=today_iso(),
            due_date=today_iso(),
            position=Position(source.position.x + offset.x(), source.position.y + offset.y()),
        )
        edge = Edge(
            id=new_id('edge'),
            source=source.id,
            target=node.id,
            source_anchor=gesture.anchor,
            target_anchor=gesture.anchor.opposite,
        )
        with self.store.batch():
            self.store.add_node(node)
            self.store.add_edge(edge)
        logger.debug("Spawned node %s from %s (%s)", node.id, source.id, gesture.anchor.value)
        return node, edge

    def cancel(self):
        self.gesture = None
