"""
Unit tests for the ledger and invoice engine.

Tests draft refresh, exactly-once finalization, post-finalization
adjustments, voiding and ledger balance.
"""

import sqlite3
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from helpers import at, event_payload
from usage_ledger.config.loader import AggregationConfig, PipelineConfig
from usage_ledger.core.ledger import assert_balanced
from usage_ledger.errors import FinalizeConflict, InvoiceStateError, UnbalancedTransactionError
from usage_ledger.pipeline import MeteringPipeline
from usage_ledger.storage.db import get_connection, transaction
from usage_ledger.storage.models import (
    AcceptOutcome,
    AccountType,
    BucketState,
    EntryType,
    InvoiceStatus,
    LateArrival,
    LedgerEntry,
)

FEB_2 = datetime(2024, 2, 2, 9, 0, tzinfo=timezone.utc)
MAR_2 = datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def ready_period(t1_bucket, clock):
    """January closed, the month over and a fresh full reconciliation recorded."""
    clock.set(at(11, 48))
    t1_bucket.tick()
    clock.set(FEB_2)
    t1_bucket.reconcile_period("T1", "2024-01")
    return t1_bucket


@pytest.fixture
def finalized(ready_period):
    ready_period.finalize("T1", "2024-01")
    return ready_period


def net_by_account(entries):
    totals = defaultdict(Decimal)
    for entry in entries:
        sign = 1 if entry.entry_type == EntryType.DEBIT else -1
        totals[entry.account_type] += sign * entry.amount
    return totals


class TestDrafts:
    """Draft invoices track summaries and carry no postings."""

    def test_ingestion_opens_draft(self, t1_bucket):
        invoice = t1_bucket.invoices.get("T1", "2024-01")
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.period_start == at(0, day=1)
        assert invoice.period_end == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_refresh_draft_prices_summaries(self, t1_bucket):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        invoice = t1_bucket.ledger.refresh_draft("T1", "2024-01")

        assert invoice.total == Decimal("0.05")
        assert [(l.event_type, l.quantity, l.amount) for l in invoice.lines] == [
            ("api_call", 5, Decimal("0.05"))
        ]
        assert t1_bucket.ledger_entries.list_entries(tenant_id="T1") == []

    def test_refresh_draft_follows_recompute(self, t1_bucket, clock):
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        t1_bucket.ledger.refresh_draft("T1", "2024-01")
        clock.advance(minutes=5)
        t1_bucket.ingest(event_payload("k4", 4, at(10, 30)))
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))

        assert t1_bucket.ledger.refresh_draft("T1", "2024-01").total == Decimal("0.09")

    def test_open_period_is_idempotent(self, t1_bucket):
        first = t1_bucket.ledger.open_period("T1", "2024-01")
        second = t1_bucket.ledger.open_period("T1", "2024-01")
        assert first.invoice_id == second.invoice_id

    def test_drafts_are_not_exported(self, t1_bucket):
        export = t1_bucket.ledger.export_finalized("T1")
        assert export.invoices == []
        assert export.entries == []


class TestFinalize:
    """Exactly-once finalization."""

    def test_finalize_posts_balanced_pair(self, ready_period):
        result = ready_period.finalize("T1", "2024-01")

        assert not result.already_finalized
        assert result.invoice.status == InvoiceStatus.FINALIZED
        assert result.invoice.total == Decimal("0.05")
        assert result.invoice.finalized_at == FEB_2
        assert sorted((e.account_type, e.entry_type, e.amount) for e in result.entries) == sorted([
            (AccountType.RECEIVABLE, EntryType.DEBIT, Decimal("0.05")),
            (AccountType.REVENUE, EntryType.CREDIT, Decimal("0.05")),
        ])
        assert {e.reference_id for e in result.entries} == {result.invoice.invoice_id}

    def test_finalize_freezes_buckets(self, finalized):
        wm = finalized.watermarks.get("T1", "api_call", at(10))
        assert wm.state == BucketState.FINALIZED

    def test_retry_returns_existing_result(self, finalized):
        again = finalized.finalize("T1", "2024-01")

        assert again.already_finalized
        assert len(again.entries) == 2
        assert len(finalized.ledger_entries.list_entries(tenant_id="T1")) == 2

    def test_finalized_invoice_is_exported(self, finalized):
        export = finalized.ledger.export_finalized("T1")
        assert [i.billing_period for i in export.invoices] == ["2024-01"]
        assert len(export.entries) == 2

    def test_period_not_ended_blocks(self, t1_bucket, clock):
        clock.set(at(11, 48))
        t1_bucket.tick()
        t1_bucket.reconcile_period("T1", "2024-01")
        with pytest.raises(FinalizeConflict) as exc_info:
            t1_bucket.finalize("T1", "2024-01")
        assert exc_info.value.reasons == ["period_open"]

    def test_unstable_bucket_blocks(self, t1_bucket, clock):
        clock.set(FEB_2)
        t1_bucket.aggregation.recompute("T1", "api_call", at(10))
        t1_bucket.reconcile_period("T1", "2024-01")

        with pytest.raises(FinalizeConflict) as exc_info:
            t1_bucket.finalize("T1", "2024-01")

        assert "is open" in exc_info.value.reasons[0]
        assert t1_bucket.invoices.get("T1", "2024-01").status == InvoiceStatus.DRAFT

    def test_missing_reconciliation_blocks(self, t1_bucket, clock):
        clock.set(at(11, 48))
        t1_bucket.tick()
        clock.set(FEB_2)
        with pytest.raises(FinalizeConflict, match="No full reconciliation"):
            t1_bucket.finalize("T1", "2024-01")

    def test_drift_blocks_and_writes_nothing(self, ready_period, archive, clock):
        archive.discard("T1", "k3")
        clock.advance(minutes=1)
        ready_period.reconcile_period("T1", "2024-01")

        with pytest.raises(FinalizeConflict) as exc_info:
            ready_period.finalize("T1", "2024-01")

        assert exc_info.value.reasons == ["reconciliation_drift"]
        assert ready_period.invoices.get("T1", "2024-01").status == InvoiceStatus.DRAFT
        assert ready_period.ledger_entries.list_entries() == []

    def test_stale_reconciliation_blocks(self, ready_period, clock):
        """A run older than the last arrival does not count."""
        clock.advance(minutes=1)
        ready_period.ingest(event_payload("k4", 4, at(10, 30)))
        ready_period.tick()
        assert ready_period.watermarks.get("T1", "api_call", at(10)).state == BucketState.CLOSED

        with pytest.raises(FinalizeConflict, match="predates"):
            ready_period.finalize("T1", "2024-01")

        ready_period.reconcile_period("T1", "2024-01")
        assert ready_period.finalize("T1", "2024-01").invoice.total == Decimal("0.09")

    def test_lock_held_blocks(self, ready_period, clock):
        ready_period.locks.try_acquire("T1:2024-01", "other-worker", clock(), clock() + timedelta(minutes=5))
        with pytest.raises(FinalizeConflict) as exc_info:
            ready_period.finalize("T1", "2024-01")
        assert exc_info.value.reasons == ["lock_held"]

    def test_concurrent_finalize_posts_once(self, ready_period):
        outcomes = []
        lock = threading.Lock()

        def run():
            try:
                result = ready_period.finalize("T1", "2024-01")
                outcome = "existing" if result.already_finalized else "finalized"
            except FinalizeConflict:
                outcome = "conflict"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("finalized") == 1
        assert len(ready_period.ledger_entries.list_entries(tenant_id="T1")) == 2


class TestLateAdjustments:
    """Usage arriving after finalization."""

    @pytest.fixture
    def late_event(self, finalized, clock):
        clock.set(FEB_2 + timedelta(days=1))
        return finalized.ingest(event_payload("k4", 4, at(10, 30)))

    def test_late_event_is_deferred(self, finalized, late_event):
        assert late_event.arrival == LateArrival.DEFERRED
        original = finalized.invoices.get("T1", "2024-01")
        assert original.total == Decimal("0.05")

    def test_adjustment_lands_on_next_draft(self, finalized, late_event):
        original = finalized.invoices.get("T1", "2024-01")
        draft = finalized.invoices.get("T1", "2024-02")

        assert draft.status == InvoiceStatus.DRAFT
        assert draft.total == Decimal("0.04")
        assert draft.lines[0].adjusts_invoice_id == original.invoice_id
        assert original.invoice_id in draft.lines[0].description

    def test_adjustment_is_recorded_once(self, finalized, late_event):
        finalized.ledger.record_late_adjustment(late_event.event)
        assert len(finalized.adjustments.pending_for_period("T1", "2024-02")) == 1

    def test_adjustment_posted_when_next_period_finalizes(self, finalized, late_event, clock):
        clock.set(MAR_2)
        finalized.reconcile_period("T1", "2024-02")
        result = finalized.finalize("T1", "2024-02")

        original = finalized.invoices.get("T1", "2024-01")
        assert result.invoice.total == Decimal("0.04")
        assert {e.reference_type for e in result.entries} == {"invoice_adjustment"}
        assert {e.reference_id for e in result.entries} == {original.invoice_id}
        assert finalized.adjustments.pending_for_period("T1", "2024-02") == []
        debits, credits = finalized.ledger.trial_balance("T1")
        assert debits == credits == Decimal("0.09")

    def test_failed_adjustment_rolls_back_the_event(self, finalized, clock):
        clock.set(FEB_2 + timedelta(days=1))
        payload = event_payload("k4", 4, at(10, 30))
        with patch.object(
            finalized.adjustments,
            "insert_if_absent",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            with pytest.raises(sqlite3.OperationalError):
                finalized.ingest(payload)
        assert finalized.events.get_event("T1", "k4") is None

        redelivered = finalized.ingest(payload)

        assert redelivered.outcome == AcceptOutcome.INSERTED
        assert redelivered.arrival == LateArrival.DEFERRED
        assert finalized.adjustments.get_by_source("T1", "k4").target_period == "2024-02"
        assert finalized.invoices.get("T1", "2024-02").total == Decimal("0.04")

    def test_sub_cent_late_usage_is_rounded_per_line(self, db_path, clock):
        config = PipelineConfig.default(
            rates={"api_call": "0.004"},
            aggregation=AggregationConfig(grace_period_seconds=0, retry_backoff_seconds=0),
        )
        pipeline = MeteringPipeline(config, db_path=db_path, clock=clock)
        pipeline.ingest(event_payload("k1", 1, at(10, 5)))
        clock.set(at(11, 48))
        pipeline.tick()
        clock.set(FEB_2)
        pipeline.reconcile_period("T1", "2024-01")
        pipeline.finalize("T1", "2024-01")

        clock.advance(hours=1)
        for i in range(10):
            pipeline.ingest(event_payload(f"late{i}", 1, at(10, 30)))

        draft = pipeline.invoices.get("T1", "2024-02")
        assert [(l.quantity, l.amount) for l in draft.lines] == [(10, Decimal("0.04"))]
        assert draft.total == Decimal("0.04")

        clock.set(MAR_2)
        pipeline.reconcile_period("T1", "2024-02")
        result = pipeline.finalize("T1", "2024-02")
        assert sum(e.amount for e in result.entries if e.entry_type == EntryType.DEBIT) == Decimal("0.04")

    def test_adjustment_waits_for_finalize_of_target(self, finalized, clock):
        clock.set(MAR_2)
        finalized.reconcile_period("T1", "2024-02")
        event = finalized.validator.validate(event_payload("k4", 4, at(10, 30)), now=clock())
        results = []
        worker = threading.Thread(target=lambda: results.append(finalized.finalize("T1", "2024-02")))

        conn = get_connection(finalized.db_path)
        try:
            with transaction(conn, immediate=True):
                adjustment = finalized.ledger.defer_late_usage(event, conn)
                worker.start()
                worker.join(timeout=0.2)
                # finalize cannot start its transaction until this one commits
                assert worker.is_alive()
        finally:
            conn.close()
        worker.join()

        assert adjustment.target_period == "2024-02"
        assert results[0].invoice.total == Decimal("0.04")
        assert finalized.adjustments.pending_for_period("T1", "2024-02") == []

    def test_adjustment_skips_finalized_periods(self, finalized, late_event, clock):
        clock.set(MAR_2)
        finalized.reconcile_period("T1", "2024-02")
        finalized.finalize("T1", "2024-02")

        clock.advance(hours=1)
        finalized.ingest(event_payload("k5", 1, at(10, 31)))

        march = finalized.invoices.get("T1", "2024-03")
        assert march.total == Decimal("0.01")


class TestVoid:
    """Voiding with offsetting entries."""

    def test_void_offsets_every_posting(self, finalized, clock):
        clock.advance(days=1)
        invoice = finalized.void("T1", "2024-01", reason="billing dispute")

        assert invoice.status == InvoiceStatus.VOIDED
        assert invoice.voided_at == FEB_2 + timedelta(days=1)
        entries = finalized.ledger_entries.list_entries(tenant_id="T1")
        assert len(entries) == 4
        assert all(total == 0 for total in net_by_account(entries).values())
        voids = finalized.ledger_entries.list_by_reference("invoice_void", invoice.invoice_id)
        assert len(voids) == 2
        assert {e.transaction_id for e in voids} == {f"void:{invoice.invoice_id}:usage"}

    def test_voided_invoice_cannot_be_finalized(self, finalized):
        finalized.void("T1", "2024-01", reason="duplicate")
        with pytest.raises(InvoiceStateError, match="voided"):
            finalized.finalize("T1", "2024-01")

    def test_draft_cannot_be_voided(self, t1_bucket):
        with pytest.raises(InvoiceStateError, match="Only finalized"):
            t1_bucket.void("T1", "2024-01", reason="oops")

    def test_void_twice_rejected(self, finalized):
        finalized.void("T1", "2024-01", reason="first")
        with pytest.raises(InvoiceStateError):
            finalized.void("T1", "2024-01", reason="second")
        assert len(finalized.ledger_entries.list_entries(tenant_id="T1")) == 4


class TestBalanceAndAlerts:
    def test_ledger_always_balances(self, finalized, clock):
        clock.set(FEB_2 + timedelta(days=1))
        finalized.ingest(event_payload("k4", 4, at(10, 30)))
        finalized.void("T1", "2024-01", reason="reissue")

        debits, credits = finalized.ledger.trial_balance()
        assert debits == credits
        assert_balanced(finalized.ledger_entries.list_entries())

    def test_unbalanced_transaction_rejected(self):
        entry = LedgerEntry(
            entry_id="e1",
            transaction_id="t1",
            tenant_id="T1",
            account_type=AccountType.RECEIVABLE,
            entry_type=EntryType.DEBIT,
            amount=Decimal("1.00"),
            reference_type="invoice",
            reference_id="inv",
            created_at=FEB_2,
        )
        with pytest.raises(UnbalancedTransactionError):
            assert_balanced([entry])

    def test_stuck_draft_alert(self, t1_bucket):
        stuck = t1_bucket.ledger.find_stuck_drafts(datetime(2024, 2, 7, tzinfo=timezone.utc))

        assert [i.billing_period for i in stuck] == ["2024-01"]
        alerts = t1_bucket.alerts.of_kind("invoice_stuck_in_draft")
        assert alerts[0].context["tenant_id"] == "T1"

    def test_draft_within_grace_not_alerted(self, t1_bucket):
        assert t1_bucket.ledger.find_stuck_drafts(datetime(2024, 2, 5, tzinfo=timezone.utc)) == []
