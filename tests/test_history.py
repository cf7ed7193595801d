"""
History Manager Tests
=====================

Bounded undo/redo over graph snapshots, with debouncing, coalescing and a
re-entrancy guard for replacements driven by the history itself.
"""

import pytest

from conftest import FakeClock, make_snapshot
from taskmap_history import ExactCoalescePolicy, HistoryManager, ShapeCoalescePolicy
from taskmap_models import GraphSnapshot


@pytest.fixture
def history(clock):
    return HistoryManager(clock=clock)


class TestCapture:

    def test_accepts_a_real_change(self, history, clock):
        clock.advance()
        assert history.capture(make_snapshot(1)) is True
        assert history.length == 2
        assert history.index == 1

    def test_debounce_drops_close_captures(self, history, clock):
        """A capture within 100ms of the previous attempt is dropped."""
        clock.advance()
        history.capture(make_snapshot(1))
        clock.advance(0.05)
        assert history.capture(make_snapshot(2)) is False
        assert history.length == 2

    def test_same_shape_edits_coalesce(self, history, clock):
        """Same node/edge counts shortly after the last action fold into it."""
        clock.advance()
        history.capture(make_snapshot(1))
        clock.advance(0.3)
        moved = make_snapshot(1)
        moved.nodes[0].title = "edited"
        assert history.capture(moved) is False
        clock.advance(1.0)
        assert history.capture(moved) is True

    def test_shape_change_is_not_coalesced(self, history, clock):
        clock.advance()
        history.capture(make_snapshot(1))
        clock.advance(0.2)
        assert history.capture(make_snapshot(2)) is True

    def test_ignored_while_applying(self, history, clock):
        clock.advance()
        with history.applying():
            assert history.is_applying
            assert history.capture(make_snapshot(3)) is False
        assert not history.is_applying
        assert history.length == 1

    def test_capture_stores_a_copy(self, history, clock):
        snapshot = make_snapshot(1)
        clock.advance()
        history.capture(snapshot)
        snapshot.nodes[0].title = "mutated later"
        assert history.current().nodes[0].title == ""

    def test_new_capture_truncates_redo_tail(self, history, clock):
        for count in (1, 2, 3):
            clock.advance()
            history.capture(make_snapshot(count))
        history.undo()
        history.undo()
        clock.advance()
        history.capture(make_snapshot(5))
        assert history.length == 3
        assert not history.can_redo
        assert len(history.current().nodes) == 5


class TestBounds:

    def test_length_never_exceeds_maximum(self, clock):
        """Sixty distinct captures keep only the newest fifty."""
        history = HistoryManager(clock=clock, max_length=50)
        for count in range(1, 61):
            clock.advance()
            assert history.capture(make_snapshot(count))
            assert history.length <= 50
        assert history.length == 50

    def test_undo_stops_at_oldest_retained(self, clock):
        history = HistoryManager(clock=clock, max_length=50)
        for count in range(1, 61):
            clock.advance()
            history.capture(make_snapshot(count))

        undone = 0
        while history.undo() is not None:
            undone += 1
        assert undone == 49
        assert len(history.current().nodes) == 11
        assert history.undo() is None

    def test_rejects_zero_length(self, clock):
        with pytest.raises(ValueError):
            HistoryManager(clock=clock, max_length=0)


class TestNavigation:

    def test_undo_on_fresh_history_is_noop(self, history):
        assert history.undo() is None
        assert history.redo() is None
        assert history.index == 0

    def test_undo_then_redo_restores_state(self, history, clock):
        for count in (1, 2, 3):
            clock.advance()
            history.capture(make_snapshot(count))
        before = history.current()
        assert history.undo() == make_snapshot(2)
        assert history.redo() == before
        assert not history.can_redo

    def test_position_signal(self, history, clock):
        positions = []
        history.position_changed.connect(lambda index, length: positions.append((index, length)))
        clock.advance()
        history.capture(make_snapshot(1))
        history.undo()
        history.redo()
        assert positions == [(1, 2), (0, 2), (1, 2)]


class TestCheckpoints:

    def test_push_ignores_debounce_and_coalescing(self, history, clock):
        clock.advance()
        history.capture(make_snapshot(1))
        history.push(make_snapshot(1))
        assert history.length == 3

    def test_flush_skips_identical_state(self, history, clock):
        clock.advance()
        history.capture(make_snapshot(1))
        assert history.flush(make_snapshot(1)) is False
        changed = make_snapshot(1)
        changed.nodes[0].title = "final drag position"
        assert history.flush(changed) is True
        assert history.length == 3

    def test_reset(self, history, clock):
        clock.advance()
        history.capture(make_snapshot(1))
        history.reset(make_snapshot(4))
        assert history.length == 1
        assert len(history.current().nodes) == 4


class TestPolicies:

    def test_shape_policy(self):
        policy = ShapeCoalescePolicy(window=0.5)
        assert policy.should_coalesce(make_snapshot(2), make_snapshot(2), 0.1)
        assert not policy.should_coalesce(make_snapshot(2), make_snapshot(2), 0.6)
        assert not policy.should_coalesce(make_snapshot(2), make_snapshot(3), 0.1)

    def test_exact_policy_keeps_same_shape_edits(self):
        """With exact comparison a quick same-count edit is still recorded."""
        clock = FakeClock()
        history = HistoryManager(clock=clock, policy=ExactCoalescePolicy())
        clock.advance()
        history.capture(make_snapshot(1))
        clock.advance(0.2)
        edited = make_snapshot(1)
        edited.nodes[0].title = "renamed"
        assert history.capture(edited) is True
        clock.advance(0.2)
        assert history.capture(edited) is False

    def test_initial_snapshot(self, clock):
        history = HistoryManager(initial=make_snapshot(2), clock=clock)
        assert history.current() == make_snapshot(2)
        assert HistoryManager(clock=clock).current() == GraphSnapshot()
