"""
Unit tests for the aggregation engine.

Tests recompute correctness, order independence, cancellation, retries and
the scheduled recompute pass.
"""

import random
import sqlite3
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from helpers import at, event_payload
from usage_ledger.errors import OperationCancelled
from usage_ledger.storage.models import BucketState


class TestRecompute:
    """Test summaries rebuilt from the event store."""

    def test_duplicate_retry_counted_once(self, t1_bucket):
        summary = t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        assert summary.total_quantity == 5
        assert summary.event_count == 3

    def test_bucket_start_is_aligned(self, t1_bucket):
        summary = t1_bucket.aggregation.recompute("T1", "api_call", at(10, 42))
        assert summary.bucket_start == at(10)
        assert summary.bucket_end == at(11)

    def test_empty_bucket(self, pipeline):
        summary = pipeline.aggregation.recompute("T1", "api_call", at(9))
        assert summary.total_quantity == 0
        assert summary.event_count == 0

    def test_summary_is_persisted(self, t1_bucket):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        stored = t1_bucket.summaries.get("T1", "api_call", at(10))
        assert stored.total_quantity == 5

    def test_other_buckets_and_tenants_excluded(self, t1_bucket, clock):
        clock.set(at(11, 30))
        t1_bucket.ingest(event_payload("next-hour", 7, at(11, 5)))
        t1_bucket.ingest(event_payload("other-tenant", 7, at(10, 5), tenant_id="T9"))

        summary = t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        assert summary.total_quantity == 5

    def test_result_independent_of_arrival_order(self, pipeline, clock):
        clock.set(at(11))
        quantities = [(f"k{i}", i + 1, at(10, i * 5)) for i in range(10)]
        random.Random(7).shuffle(quantities)
        for key, quantity, occurred in quantities:
            pipeline.ingest(event_payload(key, quantity, occurred))
        for key, quantity, occurred in quantities[:3]:
            pipeline.ingest(event_payload(key, quantity, occurred))

        summary = pipeline.aggregation.recompute("T1", "api_call", at(10))
        assert summary.total_quantity == sum(range(1, 11))
        assert summary.event_count == 10

    def test_recompute_is_repeatable(self, t1_bucket, clock):
        first = t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        clock.advance(minutes=1)
        second = t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        assert (first.total_quantity, first.event_count) == (
            second.total_quantity, second.event_count
        )


class TestConcurrency:
    def test_concurrent_recomputes_agree(self, t1_bucket):
        results = []
        lock = threading.Lock()

        def run():
            summary = t1_bucket.aggregation.recompute("T1", "api_call", at(10))
            with lock:
                results.append(summary)

        threads = [threading.Thread(target=run) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert {(s.total_quantity, s.event_count) for s in results} == {(5, 3)}
        assert t1_bucket.summaries.get("T1", "api_call", at(10)).total_quantity == 5


class TestCancellation:
    def test_cancelled_recompute_writes_nothing(self, t1_bucket):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            t1_bucket.aggregation.recompute("T1", "api_call", at(10), cancel=cancel)
        assert t1_bucket.summaries.get("T1", "api_call", at(10)) is None

    def test_cancel_keeps_previous_summary(self, t1_bucket, clock):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        clock.advance(minutes=5)
        t1_bucket.ingest(event_payload("k4", 4, at(10, 30)))

        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            t1_bucket.aggregation.recompute("T1", "api_call", at(10), cancel=cancel)
        assert t1_bucket.summaries.get("T1", "api_call", at(10)).total_quantity == 5


class TestRetry:
    def test_transient_storage_error_is_retried(self, t1_bucket):
        engine = t1_bucket.aggregation
        real = engine.events.events_in_range
        calls = {"count": 0}

        def flaky(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise sqlite3.OperationalError("database is locked")
            return real(*args, **kwargs)

        with patch.object(engine.events, "events_in_range", side_effect=flaky):
            summary = engine.recompute("T1", "api_call", at(10))

        assert calls["count"] == 2
        assert summary.total_quantity == 5

    def test_persistent_error_reraised(self, t1_bucket):
        engine = t1_bucket.aggregation
        error = sqlite3.OperationalError("disk I/O error")
        with patch.object(engine.events, "events_in_range", side_effect=error) as reads:
            with pytest.raises(sqlite3.OperationalError):
                engine.recompute("T1", "api_call", at(10))
        assert reads.call_count == engine.config.retry_attempts


class TestScheduledRecompute:
    """Test recompute_due selection."""

    def test_new_bucket_is_due(self, t1_bucket):
        results = t1_bucket.aggregation.recompute_due(at(10, 31))
        assert [(s.bucket_start, s.total_quantity) for s in results] == [(at(10), 5)]

    def test_fresh_open_bucket_is_skipped(self, t1_bucket, clock):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        clock.advance(minutes=10)
        assert t1_bucket.aggregation.recompute_due(clock()) == []

    def test_new_arrival_makes_bucket_due(self, t1_bucket, clock):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        clock.advance(minutes=10)
        t1_bucket.ingest(event_payload("k4", 4, at(10, 35)))

        results = t1_bucket.aggregation.recompute_due(clock())
        assert results[0].total_quantity == 9

    def test_stale_open_bucket_is_due(self, t1_bucket, clock):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        later = clock() + timedelta(hours=1)
        assert len(t1_bucket.aggregation.recompute_due(later)) == 1

    def test_closed_buckets_are_skipped(self, t1_bucket, clock):
        clock.set(at(11, 48))
        t1_bucket.tick()
        wm = t1_bucket.watermarks.get("T1", "api_call", at(10))
        assert wm.state == BucketState.CLOSED

        clock.advance(hours=5)
        assert t1_bucket.aggregation.recompute_due(clock()) == []

    def test_storage_failure_is_logged_and_skipped(self, t1_bucket):
        engine = t1_bucket.aggregation
        with patch.object(engine, "recompute", side_effect=sqlite3.OperationalError("locked")):
            assert engine.recompute_due(at(10, 31)) == []

    def test_recompute_period(self, t1_bucket, clock):
        clock.set(at(12, 30))
        t1_bucket.ingest(event_payload("k5", 3, at(12, 5)))
        summaries = t1_bucket.aggregation.recompute_period("T1", "2024-01")
        assert sorted(s.total_quantity for s in summaries) == [3, 5]
