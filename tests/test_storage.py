"""
Unit tests for storage layer.

Tests schema creation, idempotent event insertion, restartable range reads,
summary compare-and-swap and ledger immutability.
"""

import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from usage_ledger.storage.billing_repository import FinalizeLockRepository
from usage_ledger.storage.db import (
    from_db_money,
    from_db_time,
    get_connection,
    to_db_money,
    to_db_time,
    transaction,
)
from usage_ledger.storage.models import (
    AcceptOutcome,
    BucketState,
    UsageEvent,
    UsageSummary,
    Watermark,
)
from usage_ledger.storage.repository import (
    EventRepository,
    SummaryRepository,
    WatermarkRepository,
    initialize_schema,
)

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def make_event(key: str, quantity: int = 1, minute: int = 0, **overrides) -> UsageEvent:
    fields = dict(
        tenant_id="T1",
        event_type="api_call",
        quantity=quantity,
        idempotency_key=key,
        occurred_at=T0 + timedelta(minutes=minute),
        received_at=T0 + timedelta(minutes=minute, seconds=5),
    )
    fields.update(overrides)
    return UsageEvent(**fields)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify every table is created."""
        conn = get_connection(db_path)
        try:
            tables = {
                row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )
            }
        finally:
            conn.close()
        assert {
            "usage_event", "usage_summary", "watermark", "invoice", "invoice_line",
            "invoice_adjustment", "ledger_entry", "reconciliation_run", "finalize_lock",
        } <= tables

    def test_schema_is_idempotent(self, db_path):
        initialize_schema(db_path)
        initialize_schema(db_path)

    def test_wal_mode_enabled(self, db_path):
        conn = get_connection(db_path)
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        finally:
            conn.close()


class TestConversions:
    """Test column encodings."""

    def test_time_is_fixed_width_utc(self):
        eastern = timezone(timedelta(hours=-5))
        value = datetime(2024, 1, 15, 5, 0, tzinfo=eastern)
        assert to_db_time(value) == "2024-01-15T10:00:00.000000+00:00"
        assert from_db_time(to_db_time(value)) == value

    def test_naive_time_is_utc(self):
        assert to_db_time(datetime(2024, 1, 15, 10)) == "2024-01-15T10:00:00.000000+00:00"

    def test_money_round_trip_is_exact(self):
        assert from_db_money(to_db_money(Decimal("0.10"))) == Decimal("0.10")


class TestTransactions:
    def test_rollback_on_error(self, db_path):
        conn = get_connection(db_path)
        try:
            with pytest.raises(RuntimeError):
                with transaction(conn):
                    conn.execute(
                        "INSERT INTO finalize_lock VALUES ('k', 'o', 'a', 'b')"
                    )
                    raise RuntimeError("boom")
            assert conn.execute("SELECT COUNT(*) FROM finalize_lock").fetchone()[0] == 0
        finally:
            conn.close()


class TestEventInsertion:
    """Test idempotent event insertion."""

    def test_insert_single_event(self, db_path):
        repo = EventRepository(db_path)
        assert repo.accept(make_event("k1", quantity=3)) == AcceptOutcome.INSERTED

        stored = repo.get_event("T1", "k1")
        assert stored.quantity == 3
        assert stored.occurred_at == T0
        assert repo.count_events() == 1

    def test_duplicate_is_ignored(self, db_path):
        repo = EventRepository(db_path)
        repo.accept(make_event("k1"))
        assert repo.accept(make_event("k1")) == AcceptOutcome.DUPLICATE_IGNORED
        assert repo.count_events() == 1

    def test_duplicate_with_different_payload_keeps_original(self, db_path):
        repo = EventRepository(db_path)
        repo.accept(make_event("k1", quantity=1))
        assert repo.accept(make_event("k1", quantity=50)) == AcceptOutcome.DUPLICATE_IGNORED
        assert repo.get_event("T1", "k1").quantity == 1

    def test_same_key_different_tenants(self, db_path):
        repo = EventRepository(db_path)
        repo.accept(make_event("k1"))
        assert repo.accept(make_event("k1", tenant_id="T2")) == AcceptOutcome.INSERTED

    def test_metadata_round_trip(self, db_path):
        repo = EventRepository(db_path)
        repo.accept(make_event("k1", metadata={"region": "eu"}))
        assert repo.get_event("T1", "k1").metadata == {"region": "eu"}

    def test_concurrent_retries_insert_once(self, db_path):
        """Many threads racing on one key produce exactly one insert."""
        repo = EventRepository(db_path)
        outcomes = []
        lock = threading.Lock()

        def submit():
            outcome = repo.accept(make_event("k1"))
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(AcceptOutcome.INSERTED) == 1
        assert repo.count_events() == 1


class TestRangeReads:
    """Test ordered, restartable range iteration."""

    def test_range_is_half_open_and_ordered(self, db_path):
        repo = EventRepository(db_path)
        for key, minute in [("c", 59), ("a", 0), ("b", 30), ("d", 60)]:
            repo.accept(make_event(key, minute=minute))

        events = list(repo.events_in_range("T1", "api_call", T0, T0 + timedelta(hours=1)))
        assert [e.idempotency_key for e in events] == ["a", "b", "c"]

    def test_resume_from_cursor(self, db_path):
        repo = EventRepository(db_path)
        for i in range(5):
            repo.accept(make_event(f"k{i}", minute=i))
        end = T0 + timedelta(hours=1)

        page, cursor = repo.events_page("T1", "api_call", T0, end, limit=2)
        assert [e.idempotency_key for e in page] == ["k0", "k1"]

        rest = list(repo.events_in_range("T1", "api_call", T0, end, after=cursor, page_size=2))
        assert [e.idempotency_key for e in rest] == ["k2", "k3", "k4"]

    def test_equal_timestamps_are_not_skipped(self, db_path):
        repo = EventRepository(db_path)
        for i in range(3):
            repo.accept(make_event(f"k{i}", minute=5))
        end = T0 + timedelta(hours=1)

        keys = [e.idempotency_key for e in repo.events_in_range("T1", "api_call", T0, end, page_size=1)]
        assert sorted(keys) == ["k0", "k1", "k2"]

    def test_totals_and_bucket_totals(self, db_path):
        repo = EventRepository(db_path)
        repo.accept(make_event("a", quantity=1, minute=5))
        repo.accept(make_event("b", quantity=2, minute=65))
        repo.accept(make_event("c", quantity=4, minute=70, event_type="storage"))
        end = T0 + timedelta(hours=2)

        assert repo.totals_by_key(T0, end) == {
            ("T1", "api_call"): (2, 3),
            ("T1", "storage"): (1, 4),
        }
        epoch = int(T0.timestamp())
        assert repo.bucket_totals("T1", T0, end, 3600) == {
            ("api_call", epoch): (1, 1),
            ("api_call", epoch + 3600): (1, 2),
            ("storage", epoch + 3600): (1, 4),
        }


class TestRetention:
    def test_expire_keeps_unfinalized_buckets(self, db_path):
        events = EventRepository(db_path)
        watermarks = WatermarkRepository(db_path)
        events.accept(make_event("old-open", minute=0))
        events.accept(make_event("old-final", minute=0, event_type="storage"))
        events.accept(make_event("untracked", minute=0, event_type="other"))
        for event_type, state in (("api_call", BucketState.CLOSED), ("storage", BucketState.FINALIZED)):
            watermarks.save(Watermark(
                tenant_id="T1", event_type=event_type, bucket_start=T0,
                bucket_end=T0 + timedelta(hours=1), state=state, last_event_at=T0,
            ))

        deleted = events.expire_events(T0 + timedelta(days=1))

        assert deleted == 2
        assert events.get_event("T1", "old-open") is not None
        assert events.get_event("T1", "old-final") is None


class TestSummaries:
    """Test summary compare-and-swap."""

    def _summary(self, total: int, computed_minute: int) -> UsageSummary:
        return UsageSummary(
            tenant_id="T1",
            event_type="api_call",
            bucket_start=T0,
            bucket_end=T0 + timedelta(hours=1),
            total_quantity=total,
            event_count=total,
            computed_at=T0 + timedelta(minutes=computed_minute),
        )

    def test_newer_summary_replaces(self, db_path):
        repo = SummaryRepository(db_path)
        assert repo.upsert(self._summary(5, 10))
        assert repo.upsert(self._summary(9, 20))
        assert repo.get("T1", "api_call", T0).total_quantity == 9

    def test_stale_summary_never_overwrites_fresher(self, db_path):
        repo = SummaryRepository(db_path)
        repo.upsert(self._summary(9, 20))
        assert not repo.upsert(self._summary(5, 10))
        assert repo.get("T1", "api_call", T0).total_quantity == 9


class TestLedgerImmutability:
    def test_update_and_delete_are_refused(self, db_path):
        conn = get_connection(db_path)
        try:
            conn.execute("""
                INSERT INTO ledger_entry
                (entry_id, transaction_id, tenant_id, account_type, entry_type,
                 amount, reference_type, reference_id, created_at)
                VALUES ('e1', 't1', 'T1', 'receivable', 'debit', '1.00', 'invoice', 'i1', 'x')
            """)
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("UPDATE ledger_entry SET amount = '2.00'")
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("DELETE FROM ledger_entry")
        finally:
            conn.close()


class TestFinalizeLock:
    def test_single_owner(self, db_path):
        locks = FinalizeLockRepository(db_path)
        expires = T0 + timedelta(minutes=5)
        assert locks.try_acquire("T1:2024-01", "a", T0, expires)
        assert not locks.try_acquire("T1:2024-01", "b", T0, expires)

        locks.release("T1:2024-01", "b")
        assert not locks.try_acquire("T1:2024-01", "b", T0, expires)

        locks.release("T1:2024-01", "a")
        assert locks.try_acquire("T1:2024-01", "b", T0, expires)

    def test_expired_lock_can_be_taken(self, db_path):
        locks = FinalizeLockRepository(db_path)
        assert locks.try_acquire("T1:2024-01", "crashed", T0, T0 + timedelta(minutes=5))
        later = T0 + timedelta(minutes=6)
        assert locks.try_acquire("T1:2024-01", "b", later, later + timedelta(minutes=5))
