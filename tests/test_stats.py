"""
Tests for durable build counters.
"""
from unittest.mock import patch

from app.core.stats import StatsStore


class TestStatsStore:
    def test_empty_stats(self, session_factory):
        stats = StatsStore(session_factory).get_stats()
        assert stats["totalBuilds"] == 0
        assert stats["startedAt"] is None

    def test_counters(self, session_factory):
        store = StatsStore(session_factory)
        store.init()
        store.record_submitted()
        store.record_submitted()
        store.record_success()
        store.record_failed()
        store.record_cancelled()

        stats = store.get_stats()
        assert stats["totalBuilds"] == 2
        assert stats["successfulBuilds"] == 1
        assert stats["failedBuilds"] == 1
        assert stats["cancelledBuilds"] == 1
        assert stats["startedAt"] is not None
        assert stats["lastBuildAt"] is not None

    def test_counters_survive_restart(self, session_factory):
        first = StatsStore(session_factory)
        first.init()
        first.record_submitted(when="2026-01-01T00:00:00+00:00")
        first.record_success()

        second = StatsStore(session_factory)
        second.init()
        stats = second.get_stats()
        assert stats["totalBuilds"] == 1
        assert stats["successfulBuilds"] == 1
        assert stats["lastBuildAt"] == "2026-01-01T00:00:00+00:00"

    def test_started_at_kept_across_restarts(self, session_factory):
        """The first boot's start time is not overwritten by later boots."""
        with patch("app.core.stats._now_iso", return_value="2026-01-01T00:00:00+00:00"):
            StatsStore(session_factory).init()

        with patch("app.core.stats._now_iso", return_value="2026-03-01T00:00:00+00:00"):
            second = StatsStore(session_factory)
            second.init()
            second.init()

        assert second.get_stats()["startedAt"] == "2026-01-01T00:00:00+00:00"

    def test_init_stamps_row_created_without_start(self, session_factory):
        store = StatsStore(session_factory)
        store.record_success()
        assert store.get_stats()["startedAt"] is None

        store.init()
        assert store.get_stats()["startedAt"] is not None
