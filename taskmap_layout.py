import logging
from statistics import median

import networkx as nx
from PySide6.QtCore import QRectF

import taskmap_config as config
from taskmap_config import LayoutConfig
from taskmap_errors import LayoutInputError
from taskmap_models import Position

logger = logging.getLogger(__name__)

# Perpendicular nudges applied to busy endpoints after the layered pass.
FAN_OUT_OFFSET = 15
FAN_BOTH_OFFSET = 20


class LayoutEngine:
    """
    Positions nodes with a layered (Sugiyama-style) graph drawing.

    The pass runs in the classic stages: greedy cycle removal, longest-path
    ranking, dummy-node insertion for long edges, barycenter crossing
    reduction, and median-based coordinate assignment. The result is then
    nudged at busy endpoints and run through a bounded overlap-resolution pass.
    Everything is deterministic: the same nodes, edges and configuration always
    produce the same positions.
    """

    def __init__(self, layout_config=None, node_width=config.NODE_WIDTH, node_height=config.NODE_HEIGHT,
                 margin=config.LAYOUT_MARGIN, overlap_iterations=config.OVERLAP_ITERATIONS,
                 ordering_sweeps=4, alignment_passes=4):
        self.config = layout_config or LayoutConfig()
        self.node_width = node_width
        self.node_height = node_height
        self.margin = margin
        self.overlap_iterations = overlap_iterations
        self.ordering_sweeps = ordering_sweeps
        self.alignment_passes = alignment_passes

    # --- Public API ---

    def layout(self, nodes, edges) -> dict:
        """
        Computes a top-left position for every node.

        Args:
            nodes (list[Node]): The nodes to place. Only their ids are read.
            edges (list[Edge]): The directed edges between them. Self-loops,
                                parallel edges and cycles are all accepted.

        Returns:
            dict: node id -> Position. Empty when there are no nodes.

        Raises:
            LayoutInputError: If two nodes share an id.
        """
        if not nodes:
            return {}
        node_ids = [node.id for node in nodes]
        if len(set(node_ids)) != len(node_ids):
            raise LayoutInputError("Cannot lay out a graph with duplicate node ids.")

        graph = self._build_graph(node_ids, edges)
        dag = self._make_acyclic(graph)
        ranks = self._assign_ranks(dag)
        layered, is_dummy = self._insert_dummies(dag, ranks)
        layers = self._order_layers(layered, ranks)
        layer_coords = self._assign_coordinates(layered, layers, is_dummy)
        centers = self._to_canvas(ranks, layer_coords, node_ids)

        positions = {}
        for node_id in node_ids:
            cx, cy = centers[node_id]
            positions[node_id] = Position(cx - self.node_width / 2, cy - self.node_height / 2)

        self._offset_busy_endpoints(positions, edges)
        self.resolve_overlaps(positions, node_ids)
        logger.debug("Laid out %d node(s) in %d rank(s)", len(node_ids), len(layers))
        return positions

    def apply(self, store) -> dict:
        """Lays out the store's current graph and writes the positions back in one change."""
        positions = self.layout(store.nodes(), store.edges())
        if positions:
            store.set_positions(positions)
        return positions

    # --- Stage 1: graph construction and cycle removal ---

    def _build_graph(self, node_ids, edges):
        known = set(node_ids)
        graph = nx.DiGraph()
        graph.add_nodes_from(node_ids)
        for edge in edges:
            if edge.source not in known or edge.target not in known:
                logger.warning("Skipping edge %s with an endpoint outside the layout", edge.id)
                continue
            if edge.source == edge.target:
                continue
            if graph.has_edge(edge.source, edge.target):
                graph[edge.source][edge.target]['weight'] += 1
            else:
                graph.add_edge(edge.source, edge.target, weight=1, minlen=1)
        return graph

    def _greedy_sequence(self, graph):
        """
        Orders vertices with the Eades-Lin-Smyth greedy heuristic.

        Sinks are peeled to the right, sources to the left, and when neither
        exists the vertex with the largest (out - in) weight goes left. Edges
        pointing backwards in the resulting sequence form the feedback set.
        """
        remaining = graph.copy()
        insertion = {node: i for i, node in enumerate(graph.nodes)}
        left, right = [], []
        while remaining.number_of_nodes():
            changed = True
            while changed:
                changed = False
                sinks = [n for n in remaining.nodes if remaining.out_degree(n) == 0]
                if sinks:
                    remaining.remove_nodes_from(sinks)
                    right[:0] = sinks
                    changed = True
                sources = [n for n in remaining.nodes if remaining.in_degree(n) == 0]
                if sources:
                    remaining.remove_nodes_from(sources)
                    left.extend(sources)
                    changed = True
            if remaining.number_of_nodes():
                pick = max(
                    remaining.nodes,
                    key=lambda n: (
                        remaining.out_degree(n, weight='weight') - remaining.in_degree(n, weight='weight'),
                        -insertion[n],
                    ),
                )
                remaining.remove_node(pick)
                left.append(pick)
        return left + right

    def _make_acyclic(self, graph):
        sequence = self._greedy_sequence(graph)
        order = {node: i for i, node in enumerate(sequence)}
        dag = nx.DiGraph()
        dag.add_nodes_from(graph.nodes)
        for u, v, data in graph.edges(data=True):
            if order[u] > order[v]:
                u, v = v, u
            if dag.has_edge(u, v):
                dag[u][v]['weight'] += data['weight']
            else:
                dag.add_edge(u, v, weight=data['weight'], minlen=data['minlen'])
        return dag

    # --- Stage 2: ranking ---

    def _assign_ranks(self, dag):
        topo = list(nx.topological_sort(dag))
        ranks = {}
        for node in topo:
            preds = list(dag.predecessors(node))
            ranks[node] = max((ranks[p] + dag[p][node]['minlen'] for p in preds), default=0)

        # Pull sources down next to their nearest child so a late-joining
        # branch does not stretch across the whole drawing.
        for node in reversed(topo):
            if dag.in_degree(node) == 0 and dag.out_degree(node) > 0:
                ranks[node] = min(ranks[s] - dag[node][s]['minlen'] for s in dag.successors(node))

        lowest = min(ranks.values())
        return {node: rank - lowest for node, rank in ranks.items()}

    def _insert_dummies(self, dag, ranks):
        """Splits edges spanning several ranks into chains of unit-length edges through dummy vertices."""
        layered = nx.DiGraph()
        layered.add_nodes_from(dag.nodes)
        is_dummy = {node: False for node in dag.nodes}
        counter = 0
        for u, v in dag.edges:
            span = ranks[v] - ranks[u]
            previous = u
            for step in range(1, span):
                dummy = ('__dummy__', counter)
                counter += 1
                ranks[dummy] = ranks[u] + step
                is_dummy[dummy] = True
                layered.add_edge(previous, dummy)
                previous = dummy
            layered.add_edge(previous, v)
        return layered, is_dummy

    # --- Stage 3: crossing reduction ---

    def _order_layers(self, layered, ranks):
        visit = {}
        for start in [n for n in layered.nodes if layered.in_degree(n) == 0]:
            for node in nx.dfs_preorder_nodes(layered, source=start):
                visit.setdefault(node, len(visit))
        for node in layered.nodes:
            visit.setdefault(node, len(visit))

        depth = max(ranks[n] for n in layered.nodes) + 1
        layers = [[] for _ in range(depth)]
        for node in sorted(layered.nodes, key=visit.get):
            layers[ranks[node]].append(node)

        best = [list(layer) for layer in layers]
        best_crossings = self._count_crossings(layered, best)
        for sweep in range(self.ordering_sweeps):
            if best_crossings == 0:
                break
            if sweep % 2 == 0:
                for r in range(1, depth):
                    layers[r] = self._barycenter_sort(layers[r], layers[r - 1], layered.predecessors)
            else:
                for r in range(depth - 2, -1, -1):
                    layers[r] = self._barycenter_sort(layers[r], layers[r + 1], layered.successors)
            crossings = self._count_crossings(layered, layers)
            if crossings < best_crossings:
                best, best_crossings = [list(layer) for layer in layers], crossings
        return best

    def _barycenter_sort(self, layer, fixed, neighbours):
        index = {node: i for i, node in enumerate(fixed)}

        def key(item):
            i, node = item
            linked = [index[n] for n in neighbours(node) if n in index]
            return (sum(linked) / len(linked) if linked else float(i), i)

        return [node for _, node in sorted(enumerate(layer), key=key)]

    def _count_crossings(self, layered, layers):
        total = 0
        for upper, lower in zip(layers, layers[1:]):
            upper_index = {node: i for i, node in enumerate(upper)}
            lower_index = {node: i for i, node in enumerate(lower)}
            segments = [
                (upper_index[u], lower_index[v])
                for u in upper for v in layered.successors(u) if v in lower_index
            ]
            for i, (a1, b1) in enumerate(segments):
                for a2, b2 in segments[i + 1:]:
                    if (a1 - a2) * (b1 - b2) < 0:
                        total += 1
        return total

    # --- Stage 4: coordinate assignment ---

    def _layout_box(self):
        """Padded node footprint used while ranking, so neighbours keep a little air between them."""
        return self.node_width + 20, self.node_height + 10

    def _spacing(self):
        if self.config.is_horizontal:
            return self.config.node_spacing * 1.2, self.config.rank_spacing * 1.0
        return self.config.node_spacing * 0.6, self.config.rank_spacing * 0.7

    def _assign_coordinates(self, layered, layers, is_dummy):
        box_w, box_h = self._layout_box()
        node_sep, _ = self._spacing()
        size = box_h if self.config.is_horizontal else box_w

        def extent(node):
            return 0.0 if is_dummy[node] else size

        def gap(a, b):
            sep = node_sep / 2 if is_dummy[a] or is_dummy[b] else node_sep
            return (extent(a) + extent(b)) / 2 + sep

        coords = {}
        for layer in layers:
            position = 0.0
            for i, node in enumerate(layer):
                if i:
                    position += gap(layer[i - 1], node)
                coords[node] = position
            if layer:
                shift = (coords[layer[0]] + coords[layer[-1]]) / 2
                for node in layer:
                    coords[node] -= shift

        for sweep in range(self.alignment_passes):
            downward = sweep % 2 == 0
            order = layers[1:] if downward else list(reversed(layers[:-1]))
            for layer in order:
                desired = []
                for node in layer:
                    linked = layered.predecessors(node) if downward else layered.successors(node)
                    linked = [coords[n] for n in linked]
                    desired.append(median(linked) if linked else coords[node])
                for node, value in zip(layer, self._place_layer(layer, desired, gap)):
                    coords[node] = value
        return coords

    def _place_layer(self, layer, desired, gap):
        """
        Moves a layer as close to its desired coordinates as its ordering allows.

        A forward pass pushes nodes right until consecutive nodes are at least
        `gap` apart, a backward pass pushes them left, and the two feasible
        placements are averaged.
        """
        count = len(layer)
        if count == 0:
            return []
        forward = list(desired)
        for i in range(1, count):
            forward[i] = max(forward[i], forward[i - 1] + gap(layer[i - 1], layer[i]))
        backward = list(desired)
        for i in range(count - 2, -1, -1):
            backward[i] = min(backward[i], backward[i + 1] - gap(layer[i], layer[i + 1]))
        return [(f + b) / 2 for f, b in zip(forward, backward)]

    def _to_canvas(self, ranks, layer_coords, node_ids):
        box_w, box_h = self._layout_box()
        _, rank_sep = self._spacing()
        direction = self.config.direction
        rank_size = box_w if self.config.is_horizontal else box_h

        centers = {}
        for node_id in node_ids:
            rank_center = ranks[node_id] * (rank_size + rank_sep) + rank_size / 2
            across = layer_coords[node_id]
            if direction == config.DIRECTION_LR:
                centers[node_id] = (rank_center, across)
            elif direction == config.DIRECTION_RL:
                centers[node_id] = (-rank_center, across)
            elif direction == config.DIRECTION_TB:
                centers[node_id] = (across, rank_center)
            else:
                centers[node_id] = (across, -rank_center)

        min_x = min(cx for cx, _ in centers.values()) - box_w / 2
        min_y = min(cy for _, cy in centers.values()) - box_h / 2
        dx = self.margin - min_x
        dy = self.margin - min_y
        return {node_id: (cx + dx, cy + dy) for node_id, (cx, cy) in centers.items()}

    # --- Post-processing ---

    def _offset_busy_endpoints(self, positions, edges):
        """Nudges nodes with many children or parents sideways so shared endpoints fan out."""
        horizontal = self.config.is_horizontal
        outgoing, incoming = {}, {}
        for edge in edges:
            outgoing[edge.source] = outgoing.get(edge.source, 0) + 1
            incoming[edge.target] = incoming.get(edge.target, 0) + 1

        for node_id, position in positions.items():
            out_count = outgoing.get(node_id, 0)
            in_count = incoming.get(node_id, 0)
            offset = 0
            if out_count > 2:
                offset = FAN_OUT_OFFSET
            if in_count > 2:
                offset = -FAN_OUT_OFFSET
            if out_count > 1 and in_count > 1:
                offset = FAN_BOTH_OFFSET if out_count > in_count else -FAN_BOTH_OFFSET
            if not offset:
                continue
            if horizontal:
                position.y += offset
            else:
                position.x += offset

    def _node_rect(self, position):
        # Boxes may touch within a 2.5px inset on each side without counting as overlapping.
        return QRectF(position.x, position.y, self.node_width, self.node_height).adjusted(2.5, 2.5, -2.5, -2.5)

    def resolve_overlaps(self, positions, order=None):
        """
        Pushes overlapping nodes apart, in place.

        Every pair whose boxes overlap on both axes is separated along the axis
        that needs the smaller displacement, each node moving half the distance.
        The pass runs at most `overlap_iterations` times, so pathological inputs
        may keep some overlap.

        Args:
            positions (dict): node id -> Position, modified in place.
            order (list, optional): Node ids in the order pairs are visited.

        Returns:
            int: The number of passes that found at least one overlap.
        """
        ids = list(order or positions)
        width, height = self.node_width, self.node_height
        passes = 0
        for _ in range(self.overlap_iterations):
            found = False
            for i, id_a in enumerate(ids):
                for id_b in ids[i + 1:]:
                    a, b = positions[id_a], positions[id_b]
                    if not self._node_rect(a).intersects(self._node_rect(b)):
                        continue
                    found = True
                    move_x = (width + 10) - abs(a.x - b.x)
                    move_y = (height + 10) - abs(a.y - b.y)
                    if move_x < move_y:
                        direction = -1 if a.x < b.x else 1
                        a.x += direction * move_x / 2
                        b.x -= direction * move_x / 2
                    else:
                        direction = -1 if a.y < b.y else 1
                        a.y += direction * move_y / 2
                        b.y -= direction * move_y / 2
            if not found:
                break
            passes += 1
        return passes
