"""
Tests for the sync tracker: progress, rate, ETA and disconnection.
"""

from __future__ import annotations

import pytest

from nodestack.adapters.mock import ScriptedNodeRpc
from nodestack.core.errors import ConnectivityError
from nodestack.core.models.sync import Disconnected, SyncProgress, SyncSample
from nodestack.core.models.task import Task, TaskCheck
from nodestack.core.sync.tracker import SyncTracker, format_eta


def _reading(current: int, target: int, synced: bool = False) -> SyncSample:
    return SyncSample(current_height=current, target_height=target, is_synced=synced)


class TestProgress:
    def test_never_sampled(self):
        assert SyncTracker().progress("node") is None

    def test_single_sample_has_unknown_rate(self):
        tracker = SyncTracker()
        tracker.record("node", _reading(250, 1000), at=0)
        progress = tracker.progress("node")
        assert progress.percentage == 25.0
        assert progress.blocks_remaining == 750
        assert progress.rate_blocks_per_sec is None
        assert progress.eta_seconds is None

    def test_rate_and_eta_from_window(self):
        tracker = SyncTracker(clock=lambda: 10.0)
        tracker.record("node", _reading(100, 1000), at=0)
        tracker.record("node", _reading(200, 1000), at=10)
        progress = tracker.progress("node")
        assert progress.rate_blocks_per_sec == pytest.approx(10.0)
        assert progress.eta_seconds == pytest.approx(80.0)
        assert progress.percentage == 20.0
        assert progress.samples == 2

    def test_constant_rate_over_many_samples(self):
        tracker = SyncTracker(window_s=10_000)
        etas = []
        for i in range(50):
            tracker.record("node", _reading(100 + 25 * i, 10_000), at=2.0 * i)
            progress = tracker.progress("node")
            if i > 0:
                assert progress.rate_blocks_per_sec == pytest.approx(12.5, rel=1e-3)
                etas.append(progress.eta_seconds)
        assert all(later < earlier for earlier, later in zip(etas, etas[1:]))
        assert etas[-1] == pytest.approx((10_000 - 1325) / 12.5)

    def test_synced_is_100_percent(self):
        tracker = SyncTracker()
        tracker.record("node", _reading(990, 1000, synced=True), at=0)
        progress = tracker.progress("node")
        assert progress.percentage == 100.0
        assert progress.blocks_remaining == 0
        assert progress.eta_seconds == 0.0

    def test_unknown_target_is_zero_percent(self):
        tracker = SyncTracker()
        tracker.record("node", _reading(0, 0), at=0)
        assert tracker.progress("node").percentage == 0.0

    def test_stalled_node_has_no_eta(self):
        tracker = SyncTracker()
        tracker.record("node", _reading(100, 1000), at=0)
        tracker.record("node", _reading(100, 1000), at=10)
        progress = tracker.progress("node")
        assert progress.rate_blocks_per_sec == 0
        assert progress.eta_seconds is None

    def test_window_drops_old_samples(self):
        tracker = SyncTracker(window_s=60)
        tracker.record("node", _reading(0, 1000), at=0)
        tracker.record("node", _reading(10, 1000), at=30)
        tracker.record("node", _reading(500, 1000), at=100)
        assert tracker.progress("node").samples == 1

    def test_nodes_tracked_separately(self):
        tracker = SyncTracker()
        tracker.record("a", _reading(1, 10), at=0)
        tracker.record("b", _reading(5, 10), at=0)
        assert tracker.progress("a").current_height == 1
        assert tracker.progress("b").current_height == 5

    def test_clear_history(self):
        tracker = SyncTracker()
        tracker.record("a", _reading(1, 10), at=0)
        tracker.record("b", _reading(1, 10), at=0)
        tracker.clear_history("a")
        assert tracker.progress("a") is None
        assert tracker.progress("b") is not None
        tracker.clear_history()
        assert tracker.progress("b") is None


class TestCheck:
    def test_check_samples_source(self):
        tracker = SyncTracker()
        rpc = ScriptedNodeRpc([(400, 800, False)])
        result = tracker.check("node", rpc)
        assert isinstance(result, SyncProgress)
        assert result.percentage == 50.0
        assert rpc.calls == 1

    def test_unreachable_is_disconnected_not_zero(self):
        tracker = SyncTracker()
        rpc = ScriptedNodeRpc([ConnectivityError("connection refused", target="node", timed_out=True)])
        result = tracker.check("node", rpc)
        assert isinstance(result, Disconnected)
        assert result.connected is False
        assert result.timed_out is True
        assert tracker.progress("node") is None

    def test_history_lost_before_read_is_disconnected(self):
        class _Forgetful(SyncTracker):
            def record(self, node_key, reading, at=None):
                pass

        result = _Forgetful().check("node", ScriptedNodeRpc([(400, 800, False)]))
        assert isinstance(result, Disconnected)
        assert result.error == "No reading recorded"


class TestStatusChecker:
    def test_reports_progress(self):
        tracker = SyncTracker()
        check = tracker.status_checker("node", ScriptedNodeRpc([(10, 100, False)]))
        result = check(Task(service="kaspa-node"))
        assert result.connected
        assert not result.completed
        assert result.percentage == 10.0
        assert result.details["blocks_remaining"] == 90
        assert result.details["eta"] == "unknown"

    def test_completed_when_synced(self):
        tracker = SyncTracker()
        check = tracker.status_checker("node", ScriptedNodeRpc([(100, 100, True)]))
        assert check(Task(service="kaspa-node")).completed

    def test_disconnected_keeps_last_percentage(self):
        tracker = SyncTracker()
        check = tracker.status_checker("node", ScriptedNodeRpc([ConnectivityError("down")]))
        task = Task(service="kaspa-node", last_progress=TaskCheck(percentage=42.0))
        result = check(task)
        assert result.connected is False
        assert result.still_trying is True
        assert result.percentage == 42.0
        assert result.error == "down"


class TestFormatEta:
    @pytest.mark.parametrize("seconds, text", [
        (None, "unknown"),
        (42, "42 seconds"),
        (60, "1 minute"),
        (303, "5 minutes 3s"),
        (3600, "1 hour"),
        (3 * 3600 + 12 * 60, "3 hours 12 min"),
    ])
    def test_format(self, seconds, text):
        assert format_eta(seconds) == text
