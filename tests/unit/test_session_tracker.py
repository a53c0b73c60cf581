"""Unit tests for the session tracker."""
import pytest

from callbridge.core.exceptions import TerminalBusyError
from callbridge.services.sessions.tracker import SessionTracker, TerminalTarget, project_label


class TestSessionTracker:
    """Test call to pane mapping."""

    def test_register_and_lookup(self):
        """Test a registered call can be found both ways."""
        tracker = SessionTracker()
        target = TerminalTarget(session="main", window="2", pane="%5")

        mapping = tracker.register_call("call-1-1", target, "evt-1", cwd="/home/dev/work/api")

        assert mapping.project == "work/api"
        assert tracker.get_mapping("call-1-1").target == target
        assert tracker.get_call_id_for_session(target) == "call-1-1"
        assert tracker.has_active_call(target)
        assert tracker.active_call_count == 1

    def test_remove_clears_both_indexes(self):
        """Test removing a call frees the pane."""
        tracker = SessionTracker()
        target = TerminalTarget(session="main", window="2", pane="%5")
        tracker.register_call("call-1-1", target, "evt-1")

        removed = tracker.remove_call("call-1-1")

        assert removed is not None
        assert tracker.get_mapping("call-1-1") is None
        assert not tracker.has_active_call(target)
        assert tracker.get_active_calls() == []

    def test_second_call_for_same_pane_rejected(self):
        """Test only one call per pane."""
        tracker = SessionTracker()
        target = TerminalTarget(session="main", window="2", pane="%5")
        tracker.register_call("call-1-1", target, "evt-1")

        with pytest.raises(TerminalBusyError):
            tracker.register_call("call-2-2", TerminalTarget(session="main", window="2", pane="%5"), "evt-2")
        assert tracker.get_call_id_for_session(target) == "call-1-1"

    def test_different_panes_are_independent(self):
        """Test calls on different panes coexist."""
        tracker = SessionTracker()
        tracker.register_call("call-1-1", TerminalTarget(session="main", window="1"), "evt-1")
        tracker.register_call("call-2-2", TerminalTarget(session="main", window="2"), "evt-2")

        assert tracker.active_call_count == 2

    def test_remove_unknown_call_is_noop(self):
        """Test removing an unknown id does nothing."""
        assert SessionTracker().remove_call("missing") is None

    def test_project_label(self):
        """Test project label uses the last two path components."""
        assert project_label("/home/dev/work/api") == "work/api"
        assert project_label("/api/") == "api"
        assert project_label("") == ""
