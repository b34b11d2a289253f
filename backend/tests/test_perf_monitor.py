"""
test_perf_monitor.py — Unit tests for the in-process sync metrics tracker.
"""

import logging

from app.services.perf_monitor import PerformanceTracker, timed


class TestPerformanceTracker:

    def test_empty_snapshot(self):
        metrics = PerformanceTracker().get_metrics()
        assert metrics["records_synced"] == 0
        assert metrics["avg_sync_duration_ms"] == 0.0
        assert metrics["slowest_entity"] is None

    def test_records_syncs_by_status(self):
        tracker = PerformanceTracker()
        tracker.record_sync("assessment", "created", 10.0)
        tracker.record_sync("assessment", "conflict", 30.0)
        tracker.record_sync("photo", "updated", 50.0)

        metrics = tracker.get_metrics()
        assert metrics["records_synced"] == 3
        assert metrics["avg_sync_duration_ms"] == 30.0
        assert metrics["syncs_by_status"] == {"created": 1, "conflict": 1, "updated": 1}
        assert metrics["conflicts_detected"] == 1
        assert metrics["slowest_entity"] == "photo"
        assert metrics["entity_avg_durations_ms"] == {"assessment": 20.0, "photo": 50.0}

    def test_per_entity_averages_keep_constant_state(self):
        tracker = PerformanceTracker()
        for i in range(1000):
            tracker.record_sync("assessment", "created", float(i % 10))

        assert tracker.get_metrics()["entity_avg_durations_ms"] == {"assessment": 4.5}
        assert tracker._entity_counts == {"assessment": 1000}
        assert tracker._entity_duration_totals == {"assessment": 4500.0}

    def test_errors_and_recalculations(self):
        tracker = PerformanceTracker()
        tracker.record_sync_error("photo")
        tracker.record_sync_error("photo")
        tracker.record_sync_error("deficiency")
        tracker.record_recalculation()

        metrics = tracker.get_metrics()
        assert metrics["error_count"] == 3
        assert metrics["error_count_by_entity"] == {"photo": 2, "deficiency": 1}
        assert metrics["recalculations"] == 1

    def test_reset(self):
        tracker = PerformanceTracker()
        tracker.record_sync("assessment", "created", 10.0)
        tracker.record_sync_error("assessment")
        tracker.reset()
        assert tracker.get_metrics() == PerformanceTracker().get_metrics()


class TestTimed:

    def test_returns_result_and_logs_duration(self, caplog):
        @timed
        def work(x):
            return x * 2

        with caplog.at_level(logging.DEBUG, logger="bca-api.perf"):
            assert work(21) == 42
        record = [r for r in caplog.records if r.name == "bca-api.perf"][-1]
        assert record.duration_ms >= 0
        assert record.function.endswith("work")

    def test_preserves_name(self):
        @timed
        def cleanup():
            return None

        assert cleanup.__name__ == "cleanup"
