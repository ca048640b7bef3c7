"""
Tests for the fetch history and its summary.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from fetch_log import (
    STATUS_CACHED,
    STATUS_FAILED,
    STATUS_SUCCESS,
    FetchLogEntry,
    SupabaseFetchLog,
    summarize,
)


class TestFetchLogEntry:

    def test_entries_are_immutable(self, fetch_log):
        entry = fetch_log.record("user-1", "linkedin", STATUS_SUCCESS, duration_ms=120)

        with pytest.raises(AttributeError):
            entry.status = STATUS_FAILED

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            FetchLogEntry("user-1", "linkedin", "metrics", "pending")

    def test_record_round_trip(self, fetch_log, clock):
        entry = fetch_log.record("user-1", "linkedin", STATUS_FAILED, error="timeout")

        restored = FetchLogEntry.from_record(entry.to_record())

        assert restored.status == STATUS_FAILED
        assert restored.error == "timeout"
        assert restored.timestamp == clock()


class TestMemoryFetchLog:

    def test_entries_are_scoped_per_user(self, fetch_log):
        fetch_log.record("user-1", "linkedin", STATUS_SUCCESS)
        fetch_log.record("user-2", "linkedin", STATUS_CACHED, cache_hit=True)

        assert len(fetch_log.entries_for_user("user-1")) == 1
        assert len(fetch_log) == 2

    def test_append_failure_does_not_raise(self, clock):
        client = MagicMock()
        client.table.return_value.insert.return_value.execute.side_effect = RuntimeError("offline")
        log = SupabaseFetchLog(client=client, clock=clock)

        entry = log.record("user-1", "linkedin", STATUS_SUCCESS)

        assert entry.status == STATUS_SUCCESS


class TestSupabaseFetchLog:

    def test_append_inserts_record(self, clock):
        client = MagicMock()
        log = SupabaseFetchLog(client=client, clock=clock)

        log.record("user-1", "linkedin", STATUS_CACHED, cache_hit=True)

        client.table.assert_called_with("social_media_fetch_history")
        record = client.table.return_value.insert.call_args[0][0]
        assert record["fetch_status"] == STATUS_CACHED
        assert record["cache_hit"] is True

    def test_entries_for_user_decodes_rows(self, clock):
        client = MagicMock()
        chain = client.table.return_value.select.return_value.eq.return_value.order.return_value.limit.return_value
        chain.execute.return_value = SimpleNamespace(
            data=[{"user_id": "user-1", "platform": "linkedin", "fetch_status": "success",
                   "created_at": clock().isoformat()}]
        )
        log = SupabaseFetchLog(client=client, clock=clock)

        entries = log.entries_for_user("user-1")

        assert [entry.status for entry in entries] == [STATUS_SUCCESS]

    def test_rows_with_unknown_status_are_skipped(self, clock):
        client = MagicMock()
        chain = client.table.return_value.select.return_value.eq.return_value.order.return_value.limit.return_value
        chain.execute.return_value = SimpleNamespace(
            data=[
                {"user_id": "user-1", "platform": "linkedin", "fetch_status": "error",
                 "created_at": clock().isoformat()},
                {"user_id": "user-1", "platform": "linkedin", "fetch_status": "cached", "cache_hit": True,
                 "created_at": clock().isoformat()},
            ]
        )
        log = SupabaseFetchLog(client=client, clock=clock)

        entries = log.entries_for_user("user-1")

        assert [entry.status for entry in entries] == [STATUS_CACHED]
        assert summarize(entries)["attempts"] == 1


class TestSummarize:

    def test_summary_counts_and_rates(self, fetch_log):
        fetch_log.record("user-1", "linkedin", STATUS_SUCCESS, duration_ms=300)
        fetch_log.record("user-1", "linkedin", STATUS_CACHED, duration_ms=2, cache_hit=True)
        fetch_log.record("user-1", "linkedin", STATUS_CACHED, duration_ms=3, cache_hit=True)
        fetch_log.record("user-1", "competitor", STATUS_FAILED, duration_ms=100, error="boom")

        summary = summarize(fetch_log.entries_for_user("user-1"))

        assert summary["attempts"] == 4
        assert summary[STATUS_CACHED] == 2
        assert summary["hitRate"] == 0.5
        assert summary["avgDurationMs"] == 200.0
        assert summary["perPlatform"]["linkedin"]["hitRate"] == round(2 / 3, 4)
        assert summary["perPlatform"]["competitor"][STATUS_FAILED] == 1

    def test_empty_summary(self):
        summary = summarize([])

        assert summary["attempts"] == 0
        assert summary["hitRate"] == 0.0
        assert summary["perPlatform"] == {}
