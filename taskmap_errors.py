"""Exception types raised by the Taskmap engine."""


class TaskmapError(Exception):
    """Base class for every error raised by the engine."""


class DuplicateIdError(TaskmapError):
    """A node or edge id is already present in the graph."""

    def __init__(self, item_id):
        super().__init__(f"Id '{item_id}' already exists in the graph.")
        self.item_id = item_id


class DanglingReferenceError(TaskmapError):
    """An edge refers to a node that does not exist."""

    def __init__(self, edge_id, node_id):
        super().__init__(f"Edge '{edge_id}' refers to missing node '{node_id}'.")
        self.edge_id = edge_id
        self.node_id = node_id


class MalformedDocumentError(TaskmapError):
    """A persisted document does not have the expected shape."""


class LayoutInputError(TaskmapError):
    """The layout engine received input it cannot place."""


class ValidationError(TaskmapError):
    """A field edit was rejected at the edit boundary."""


class CanvasLockedError(TaskmapError):
    """A mutation was attempted while the canvas is locked."""

    def __init__(self):
        super().__init__("The canvas is locked. Unlock it before editing.")
