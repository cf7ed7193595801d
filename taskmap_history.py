import logging
import time
from contextlib import contextmanager

from PySide6.QtCore import QObject, Signal

import taskmap_config as config
from taskmap_models import GraphSnapshot

logger = logging.getLogger(__name__)


class CoalescePolicy:
    """Decides whether a candidate snapshot should be folded into the previous one."""

    def should_coalesce(self, previous: GraphSnapshot, candidate: GraphSnapshot, elapsed: float) -> bool:
        raise NotImplementedError


class ShapeCoalescePolicy(CoalescePolicy):
    """
    Coalesces same-shape edits made in quick succession.

    Two snapshots count as the same shape when their node and edge counts
    match. This is deliberately approximate: a burst of drags or keystrokes
    collapses into one entry, at the cost of also folding a quick
    same-count structural change into the entry before it.
    """

    def __init__(self, window=config.HISTORY_COALESCE_WINDOW):
        self.window = window

    def should_coalesce(self, previous, candidate, elapsed):
        return (
            len(previous.nodes) == len(candidate.nodes)
            and len(previous.edges) == len(candidate.edges)
            and elapsed < self.window
        )


class ExactCoalescePolicy(CoalescePolicy):
    """Only drops a candidate that is identical to the previous snapshot."""

    def should_coalesce(self, previous, candidate, elapsed):
        return previous == candidate


class HistoryManager(QObject):
    """
    Bounded, snapshot-based undo/redo.

    The history is a list of deep-copied snapshots plus a cursor. New captures
    truncate any redo tail, and the oldest entries are evicted once the list
    grows past `max_length`. While a history entry is being applied (see
    `applying`), captures are ignored so the replacement never records itself.

    `position_changed(index, length)` is emitted whenever the cursor or the
    list length changes, so views can enable or disable their undo/redo controls.
    """
    position_changed = Signal(int, int)

    def __init__(self, initial=None, max_length=config.MAX_HISTORY_LENGTH,
                 debounce=config.HISTORY_DEBOUNCE, policy=None, clock=time.monotonic, parent=None):
        super().__init__(parent)
        if max_length < 1:
            raise ValueError("History must hold at least one entry.")
        self.max_length = max_length
        self.debounce = debounce
        self.policy = policy or ShapeCoalescePolicy()
        self._clock = clock
        self._entries = [(initial or GraphSnapshot()).copy()]
        self._index = 0
        self._last_capture_time = None
        self._last_action_time = clock()
        self._applying = False

    # --- State ---

    @property
    def index(self) -> int:
        return self._index

    @property
    def length(self) -> int:
        return len(self._entries)

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._entries) - 1

    @property
    def is_applying(self) -> bool:
        return self._applying

    def current(self) -> GraphSnapshot:
        """Returns a copy of the snapshot under the cursor."""
        return self._entries[self._index].copy()

    # --- Capture ---

    def capture(self, snapshot: GraphSnapshot) -> bool:
        """
        Records a snapshot taken after a graph mutation, subject to filtering.

        A capture is dropped when a history entry is being applied, when it
        arrives within the debounce window of the previous capture attempt, or
        when the coalescing policy folds it into the entry under the cursor.

        Args:
            snapshot (GraphSnapshot): The state after the mutation.

        Returns:
            bool: True if a new entry was recorded.
        """
        if self._applying:
            return False
        now = self._clock()
        if self._last_capture_time is not None and now - self._last_capture_time < self.debounce:
            return False
        self._last_capture_time = now
        previous = self._entries[self._index]
        if self.policy.should_coalesce(previous, snapshot, now - self._last_action_time):
            return False
        self._append(snapshot, now)
        return True

    def push(self, snapshot: GraphSnapshot):
        """Records a snapshot unconditionally (no debounce, no coalescing)."""
        now = self._clock()
        self._last_capture_time = now
        self._append(snapshot, now)

    def flush(self, snapshot: GraphSnapshot) -> bool:
        """
        Records a snapshot unless it is identical to the entry under the cursor.

        Used at the end of a gesture or bulk operation so its final state is
        never lost to debouncing.
        """
        if self._applying or snapshot == self._entries[self._index]:
            return False
        self.push(snapshot)
        return True

    def reset(self, snapshot=None):
        """Discards all entries and starts over from `snapshot` (or an empty graph)."""
        self._entries = [(snapshot or GraphSnapshot()).copy()]
        self._index = 0
        self._last_capture_time = None
        self._last_action_time = self._clock()
        self._emit_position()

    def _append(self, snapshot, now):
        del self._entries[self._index + 1:]
        self._entries.append(snapshot.copy())
        if len(self._entries) > self.max_length:
            self._entries.pop(0)
        self._index = len(self._entries) - 1
        self._last_action_time = now
        logger.debug("History entry %d/%d recorded", self._index + 1, len(self._entries))
        self._emit_position()

    # --- Navigation ---

    def undo(self):
        """
        Moves the cursor one entry back.

        Returns:
            GraphSnapshot or None: A copy of the snapshot to apply, or None when
                                   already at the oldest retained entry.
        """
        if self._index == 0:
            return None
        self._index -= 1
        self._last_action_time = self._clock()
        self._emit_position()
        return self._entries[self._index].copy()

    def redo(self):
        """Moves the cursor one entry forward; returns the snapshot to apply or None."""
        if self._index >= len(self._entries) - 1:
            return None
        self._index += 1
        self._last_action_time = self._clock()
        self._emit_position()
        return self._entries[self._index].copy()

    @contextmanager
    def applying(self):
        """Suppresses captures for the duration of a history replacement."""
        self._applying = True
        try:
            yield
        finally:
            self._applying = False

    def _emit_position(self):
        self.position_changed.emit(self._index, len(self._entries))
