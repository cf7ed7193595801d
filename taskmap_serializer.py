"""
Conversion between the live graph and the persisted mind-map document.

The persisted form is a forest of trees hung under a single theme:

    {"mindMaps": [{"id": ..., "title": ..., "created_at": ..., "children": [...]}]}

Exporting flattens the editable graph into that shape. A node with several
incoming edges is copied by value under each of its parents, and a cycle is
cut where the walk would re-enter a node already on the current path.
Importing rebuilds nodes and right->left edges from the first theme and places
them with a simple cascade that is normally replaced by a real layout pass.
"""
import json
import logging

import taskmap_config as config
from taskmap_errors import MalformedDocumentError
from taskmap_models import (
    Anchor, Document, Edge, GraphSnapshot, Node, Position, Priority, Status, Theme, TreeNode,
    new_id, now_iso,
)

logger = logging.getLogger(__name__)


# --- Graph -> document ---

def graph_to_document(nodes, edges, theme_id=None, theme_title=config.DEFAULT_DOCUMENT_TITLE, now=None) -> Document:
    """
    Projects a graph onto a single-theme document.

    Args:
        nodes (Iterable[Node]): The graph's nodes, in canvas order.
        edges (Iterable[Edge]): The graph's edges, in canvas order. Edges that
                                refer to unknown nodes are skipped.
        theme_id (str, optional): Id for the synthesized theme. A fresh id is
                                  generated when omitted.
        theme_title (str): Title for the synthesized theme.
        now (str, optional): Timestamp used for the theme's created/updated
                             fields. Defaults to the current time.

    Returns:
        Document: A document holding exactly one theme.
    """
    nodes = list(nodes)
    by_id = {node.id: node for node in nodes}
    outgoing = {node.id: [] for node in nodes}
    targets = set()
    for edge in edges:
        if edge.source not in by_id or edge.target not in by_id:
            logger.warning("Skipping edge %s with a missing endpoint during export", edge.id)
            continue
        outgoing[edge.source].append(edge)
        targets.add(edge.target)

    roots = [node.id for node in nodes if node.id not in targets]
    visited = set()
    children = [_build_tree(root_id, by_id, outgoing, visited) for root_id in roots]
    # Components made only of cycles have no natural root; promote their first node.
    for node in nodes:
        if node.id not in visited:
            logger.debug("Promoting %s to a root of a cyclic component", node.id)
            children.append(_build_tree(node.id, by_id, outgoing, visited))

    timestamp = now or now_iso()
    theme = Theme(
        id=theme_id or new_id('theme'),
        title=theme_title,
        created_at=timestamp,
        updated_at=timestamp,
        children=children,
    )
    return Document(mind_maps=[theme])


def _build_tree(root_id, by_id, outgoing, visited) -> TreeNode:
    """Depth-first copy of the subtree under `root_id`, skipping edges back into the current path."""
    root = _tree_node_from(by_id[root_id], None)
    visited.add(root_id)
    path = {root_id}
    stack = [(root, root_id, iter(outgoing[root_id]))]
    while stack:
        tree, node_id, pending = stack[-1]
        edge = next(pending, None)
        if edge is None:
            path.discard(node_id)
            stack.pop()
            continue
        if edge.target in path:
            logger.debug("Cutting cycle at edge %s (%s -> %s)", edge.id, edge.source, edge.target)
            continue
        child = _tree_node_from(by_id[edge.target], edge.label)
        tree.children.append(child)
        visited.add(edge.target)
        path.add(edge.target)
        stack.append((child, edge.target, iter(outgoing[edge.target])))
    return root


def _tree_node_from(node: Node, incoming_label) -> TreeNode:
    return TreeNode(
        id=node.id,
        title=node.title,
        description=node.description,
        priority=node.priority,
        status=node.status,
        created_at=node.created_at,
        start_date=node.start_date,
        due_date=node.due_date,
        tags=list(node.tags),
        edge_label=incoming_label or None,
    )


# --- Document -> graph ---

def document_to_graph(document: Document) -> GraphSnapshot:
    """
    Rebuilds a graph from the first theme of a document.

    Ids are reused when present and not already taken within the import;
    otherwise fresh ids are generated. Every parent/child pair becomes a
    right->left edge carrying the child's `edge_label`. A theme without
    children yields a single placeholder node built from the theme itself.

    Raises:
        MalformedDocumentError: If the document has no theme.
    """
    if not document.mind_maps:
        raise MalformedDocumentError("The document does not contain any theme.")
    if len(document.mind_maps) > 1:
        logger.info("Document holds %d themes; only the first is loaded", len(document.mind_maps))
    theme = document.mind_maps[0]

    taken = set()
    nodes = []
    edges = []

    def claim(candidate, prefix):
        if candidate and candidate not in taken:
            taken.add(candidate)
            return candidate
        fresh = new_id(prefix)
        while fresh in taken:
            fresh = new_id(prefix)
        taken.add(fresh)
        return fresh

    if not theme.children:
        placeholder = Node(
            id=claim(theme.id, 'node'),
            title=theme.title or config.DEFAULT_THEME_TITLE,
            created_at=theme.created_at or now_iso(),
            start_date=theme.start_date,
            due_date=theme.due_date,
            position=Position(100.0, 100.0),
            updated_at=theme.updated_at,
        )
        return GraphSnapshot(nodes=(placeholder,))

    # Frames are (tree, position, parent id); children are pushed in reverse so
    # nodes come out in document order.
    stack = [
        (root, Position(100.0, 100.0 + index * config.NODE_HEIGHT * 2), None)
        for index, root in enumerate(theme.children)
    ]
    stack.reverse()
    while stack:
        tree, position, parent_id = stack.pop()
        node_id = claim(tree.id, 'node')
        nodes.append(Node(
            id=node_id,
            title=tree.title,
            description=tree.description,
            priority=tree.priority,
            status=tree.status,
            created_at=tree.created_at or now_iso(),
            start_date=tree.start_date,
            due_date=tree.due_date,
            tags=list(tree.tags),
            position=position,
        ))
        if parent_id is not None:
            edges.append(Edge(
                id=claim(f"edge-{parent_id}-{node_id}", 'edge'),
                source=parent_id,
                target=node_id,
                source_anchor=Anchor.RIGHT,
                target_anchor=Anchor.LEFT,
                label=tree.edge_label or "",
            ))
        count = len(tree.children)
        for index in reversed(range(count)):
            stack.append((tree.children[index], Position(
                position.x + config.NODE_WIDTH * 1.5,
                position.y + (index - count / 2) * config.NODE_HEIGHT * 1.5,
            ), node_id))

    logger.debug("Imported %d nodes and %d edges from theme %s", len(nodes), len(edges), theme.id)
    return GraphSnapshot(nodes=tuple(nodes), edges=tuple(edges))


# --- Dict / JSON codec ---

def parse_document(raw) -> Document:
    """
    Validates a decoded JSON value and turns it into a Document.

    Every theme in `mindMaps` is validated, even though only the first one is
    ever loaded.

    Raises:
        MalformedDocumentError: If the value does not have the persisted shape.
    """
    if not isinstance(raw, dict):
        raise MalformedDocumentError("The document must be a JSON object.")
    themes = raw.get('mindMaps')
    if not isinstance(themes, list):
        raise MalformedDocumentError("The document is missing the 'mindMaps' array.")
    if not themes:
        raise MalformedDocumentError("The 'mindMaps' array is empty.")
    return Document(mind_maps=[_parse_theme(item, f"mindMaps[{i}]") for i, item in enumerate(themes)])


def _parse_theme(raw, where) -> Theme:
    if not isinstance(raw, dict):
        raise MalformedDocumentError(f"{where} must be an object.")
    return Theme(
        id=_optional_str(raw, 'id', where) or new_id('theme'),
        title=_optional_str(raw, 'title', where) or "",
        created_at=_optional_str(raw, 'created_at', where) or now_iso(),
        updated_at=_optional_str(raw, 'updated_at', where),
        start_date=_optional_str(raw, 'start_date', where),
        due_date=_optional_str(raw, 'due_date', where),
        children=_parse_children(raw, where),
    )


def _describe(location) -> str:
    """Spells out a location: either a theme path or a (parent location, child index) pair."""
    steps = []
    while isinstance(location, tuple):
        location, index = location
        steps.append(f"children[{index}]")
    return ".".join([location, *reversed(steps)])


def _parse_children(raw, where):
    """Validates the whole subtree under `raw` and returns its parsed children."""
    children = []
    stack = [(raw, where, children)]
    while stack:
        current, location, into = stack.pop()
        items = current.get('children')
        if items is None:
            continue
        if not isinstance(items, list):
            raise MalformedDocumentError(f"{_describe(location)}.children must be an array.")
        for index, item in enumerate(items):
            child_location = (location, index)
            node = _parse_tree_node(item, child_location)
            into.append(node)
            stack.append((item, child_location, node.children))
    return children


def _parse_tree_node(raw, where) -> TreeNode:
    """Parses one node's own fields; its children are filled in by _parse_children."""
    if not isinstance(raw, dict):
        raise MalformedDocumentError(f"{_describe(where)} must be an object.")
    tags = raw.get('tags')
    if tags is None:
        tags = []
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        raise MalformedDocumentError(f"{_describe(where)}.tags must be a list of strings.")
    return TreeNode(
        id=_optional_str(raw, 'id', where),
        title=_optional_str(raw, 'title', where) or "",
        description=_optional_str(raw, 'description', where) or "",
        priority=_optional_enum(raw, 'priority', Priority, where),
        status=_optional_enum(raw, 'status', Status, where),
        created_at=_optional_str(raw, 'created_at', where),
        start_date=_optional_str(raw, 'start_date', where),
        due_date=_optional_str(raw, 'due_date', where),
        tags=list(tags),
        edge_label=_optional_str(raw, 'edgeLabel', where),
    )


def _optional_str(raw, key, where):
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedDocumentError(f"{_describe(where)}.{key} must be a string.")
    return str(value)


def _optional_enum(raw, key, enum_type, where):
    value = raw.get(key)
    if value in (None, ""):
        return None
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise MalformedDocumentError(f"{_describe(where)}.{key} must be one of: {allowed}.") from None


def document_to_dict(document: Document) -> dict:
    """Encodes a Document with the exact persisted field names. Absent optionals are omitted."""
    return {'mindMaps': [_theme_to_dict(theme) for theme in document.mind_maps]}


def _theme_to_dict(theme: Theme) -> dict:
    data = {'id': theme.id, 'title': theme.title, 'created_at': theme.created_at}
    for key in ('updated_at', 'start_date', 'due_date'):
        value = getattr(theme, key)
        if value is not None:
            data[key] = value
    data['children'] = [_tree_node_to_dict(child) for child in theme.children]
    return data


def _tree_node_to_dict(tree: TreeNode) -> dict:
    root = _tree_node_fields(tree)
    stack = [(tree, root)]
    while stack:
        current, data = stack.pop()
        for child in current.children:
            child_data = _tree_node_fields(child)
            data['children'].append(child_data)
            stack.append((child, child_data))
    return root


def _tree_node_fields(tree: TreeNode) -> dict:
    data = {
        'id': tree.id,
        'title': tree.title,
        'description': tree.description,
    }
    if tree.priority is not None:
        data['priority'] = tree.priority.value
    if tree.status is not None:
        data['status'] = tree.status.value
    data['created_at'] = tree.created_at
    if tree.start_date is not None:
        data['start_date'] = tree.start_date
    if tree.due_date is not None:
        data['due_date'] = tree.due_date
    data['tags'] = list(tree.tags)
    data['children'] = []
    if tree.edge_label:
        data['edgeLabel'] = tree.edge_label
    return data


def dumps(document: Document) -> str:
    return json.dumps(document_to_dict(document), ensure_ascii=False, indent=2)


def loads(text: str) -> Document:
    """Decodes and validates a JSON document, raising MalformedDocumentError on any failure."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedDocumentError(f"The document is not valid JSON: {e}") from e
    return parse_document(raw)
