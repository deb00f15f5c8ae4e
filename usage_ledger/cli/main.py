"""
CLI interface for the usage ledger.

Operator and worker entrypoint: schema setup, batch ingestion, the periodic
tick, reconciliation and backfill, and invoice finalization.
"""

import json
import os
import sys
from collections import Counter
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_ledger.config.loader import PipelineConfig, load_pipeline_config
from usage_ledger.errors import FinalizeConflict, MeteringError
from usage_ledger.logging import setup_logging
from usage_ledger.pipeline import MeteringPipeline
from usage_ledger.storage.copies import SqliteCopy
from usage_ledger.storage.db import DEFAULT_DB_PATH
from usage_ledger.storage.models import (
    BucketState,
    EntryType,
    InvoiceStatus,
    ReconciliationKind,
    ReconciliationStatus,
)
from usage_ledger.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_BLOCKED = 2  # drift or finalize conflict


_settings = {
    "config_path": None,
    "db_path": DEFAULT_DB_PATH,
    "archive_path": None,
}


def _format_currency(amount: Decimal, currency: str = "USD") -> str:
    return f"{amount:,.2f} {currency}"


def _build_pipeline() -> MeteringPipeline:
    config_path = _settings["config_path"]
    config = load_pipeline_config(config_path) if config_path else PipelineConfig.default()
    setup_logging(config.logging)
    copies = []
    if _settings["archive_path"]:
        copies.append(SqliteCopy(_settings["archive_path"]))
    return MeteringPipeline(config, db_path=_settings["db_path"], copies=copies)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="USAGE_LEDGER_CONFIG",
        help="Pipeline YAML config (built-in defaults if omitted)",
    ),
    db: str = typer.Option(
        DEFAULT_DB_PATH,
        "--db",
        envvar="USAGE_LEDGER_DB",
        help="SQLite database path",
    ),
    archive: Optional[str] = typer.Option(
        None,
        "--archive",
        envvar="USAGE_LEDGER_ARCHIVE",
        help="SQLite archive copy to publish to and reconcile against",
    ),
):
    """Usage metering and billing ledger."""
    _settings["config_path"] = config
    _settings["db_path"] = db
    _settings["archive_path"] = archive
    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    try:
        initialize_schema(_settings["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ingest(
    path: str = typer.Argument(..., help="File of JSON usage events, one per line"),
):
    """Ingest a file of usage events."""
    if not os.path.exists(path):
        console.print(f"[red]File not found:[/] {path}")
        sys.exit(EXIT_CODE_FAIL)

    pipeline = _build_pipeline()
    outcomes: Counter = Counter()
    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                result = pipeline.ingest(json.loads(line))
            except json.JSONDecodeError as e:
                console.print(f"[red]Line {line_no}:[/] invalid JSON ({e.msg})")
                outcomes["rejected"] += 1
                continue
            except MeteringError as e:
                console.print(f"[yellow]Line {line_no}:[/] {e.message}")
                outcomes["rejected"] += 1
                continue
            outcomes[result.outcome.value] += 1
            if result.arrival is not None:
                outcomes[result.arrival.value] += 1

    table = Table(title="Ingestion")
    table.add_column("Outcome")
    table.add_column("Events", justify="right")
    for outcome, count in sorted(outcomes.items()):
        table.add_row(outcome, str(count))
    console.print(table)
    sys.exit(EXIT_CODE_FAIL if outcomes["rejected"] else EXIT_CODE_OK)


@app.command()
def tick():
    """Run one scheduler pass: recompute, advance watermarks, reconcile, check drafts."""
    try:
        report = _build_pipeline().tick()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Recomputed summaries: {len(report.recomputed)}")
    console.print(f"Watermark transitions: {len(report.transitions)}")
    console.print(f"Reconciliation runs: {len(report.reconciliations)}")
    console.print(f"Stuck drafts: {len(report.stuck_drafts)}")
    console.print(f"Expired events: {report.expired_events}")
    drifted = [r for r in report.reconciliations if r.drifting]
    sys.exit(EXIT_CODE_BLOCKED if drifted else EXIT_CODE_OK)


@app.command()
def recompute(
    tenant: str = typer.Argument(..., help="Tenant id"),
    period: str = typer.Argument(..., help="Billing period, YYYY-MM"),
):
    """Force a recompute of every bucket of a tenant's billing period."""
    try:
        summaries = _build_pipeline().aggregation.recompute_period(tenant, period)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Recomputed {len(summaries)} buckets")
    sys.exit(EXIT_CODE_OK)


@app.command()
def reconcile(
    tenant: str = typer.Argument(..., help="Tenant id"),
    period: str = typer.Argument(..., help="Billing period, YYYY-MM"),
    kind: ReconciliationKind = typer.Option(
        ReconciliationKind.FULL, "--kind", "-k", help="Which checks to run"
    ),
):
    """Reconcile a tenant's billing period."""
    try:
        result = _build_pipeline().reconcile_period(tenant, period, kind)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if result.status == ReconciliationStatus.MATCH:
        console.print(f"[green]✓[/] {kind.value} reconciliation matched ({len(result.details)} checks)")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Drift (delta {result.delta})")
    table.add_column("Check")
    table.add_column("Metric")
    table.add_column("Expected", justify="right")
    table.add_column("Observed", justify="right")
    for comparison in result.details:
        if not comparison.within_tolerance:
            table.add_row(
                comparison.check,
                comparison.metric,
                str(comparison.expected),
                str(comparison.observed),
            )
    console.print(table)
    sys.exit(EXIT_CODE_BLOCKED)


@app.command()
def backfill(
    copy: str = typer.Argument(..., help="Downstream copy name, e.g. archive"),
    tenant: str = typer.Argument(..., help="Tenant id"),
    period: str = typer.Argument(..., help="Billing period, YYYY-MM"),
):
    """Republish a tenant's stored events for a period to a downstream copy."""
    try:
        republished = _build_pipeline().backfill(copy, tenant, period)
    except MeteringError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Republished {republished} events to {copy}")
    console.print("Run a reconciliation to record the corrected state.")
    sys.exit(EXIT_CODE_OK)


@app.command()
def finalize(
    tenant: str = typer.Argument(..., help="Tenant id"),
    period: str = typer.Argument(..., help="Billing period, YYYY-MM"),
    prepare: bool = typer.Option(
        False,
        "--prepare",
        "-p",
        help="Recompute and run a full reconciliation first",
    ),
):
    """Finalize a tenant's invoice for a billing period."""
    pipeline = _build_pipeline()
    try:
        if prepare:
            result = pipeline.close_period(tenant, period)
        else:
            result = pipeline.finalize(tenant, period)
    except FinalizeConflict as e:
        console.print(f"[yellow]Finalize blocked:[/] {e.message}")
        for reason in e.context.get("reasons", []):
            console.print(f"  - {reason}")
        sys.exit(EXIT_CODE_BLOCKED)
    except MeteringError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)

    invoice = result.invoice
    note = " (already finalized)" if result.already_finalized else ""
    console.print(
        f"[green]✓[/] Invoice {invoice.invoice_id} finalized{note}: "
        f"{_format_currency(invoice.total, invoice.currency)}"
    )
    sys.exit(EXIT_CODE_OK)


@app.command()
def void(
    tenant: str = typer.Argument(..., help="Tenant id"),
    period: str = typer.Argument(..., help="Billing period, YYYY-MM"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the invoice is voided"),
):
    """Void a finalized invoice with offsetting ledger entries."""
    try:
        invoice = _build_pipeline().void(tenant, period, reason)
    except FinalizeConflict as e:
        console.print(f"[yellow]Void blocked:[/] {e.message}")
        sys.exit(EXIT_CODE_BLOCKED)
    except MeteringError as e:
        console.print(f"[red]Error:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Invoice {invoice.invoice_id} voided")
    sys.exit(EXIT_CODE_OK)


@app.command()
def status(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Show one tenant's invoices"),
):
    """Show bucket states and invoices."""
    pipeline = _build_pipeline()

    states = Counter(
        w.state for w in pipeline.watermarks.list_by_states(list(BucketState))
    )
    console.print(f"Events stored: {pipeline.events.count_events()}")
    table = Table(title="Buckets")
    table.add_column("State")
    table.add_column("Count", justify="right")
    for state in BucketState:
        table.add_row(state.value, str(states.get(state, 0)))
    console.print(table)

    if tenant:
        invoices = pipeline.invoices.list_for_tenant(tenant)
        table = Table(title=f"Invoices for {tenant}")
        table.add_column("Period")
        table.add_column("Invoice")
        table.add_column("Status")
        table.add_column("Total", justify="right")
        for invoice in invoices:
            color = "green" if invoice.status == InvoiceStatus.FINALIZED else "white"
            table.add_row(
                invoice.billing_period,
                invoice.invoice_id,
                f"[{color}]{invoice.status.value}[/]",
                _format_currency(invoice.total, invoice.currency),
            )
        console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def ledger(
    tenant: str = typer.Argument(..., help="Tenant id"),
):
    """Show a tenant's ledger entries and trial balance."""
    pipeline = _build_pipeline()
    entries = pipeline.ledger_entries.list_entries(tenant_id=tenant)

    table = Table(title=f"Ledger for {tenant}")
    table.add_column("Transaction")
    table.add_column("Account")
    table.add_column("Debit", justify="right")
    table.add_column("Credit", justify="right")
    table.add_column("Reference")
    for entry in entries:
        amount = f"{entry.amount:,.2f}"
        table.add_row(
            entry.transaction_id,
            entry.account_type.value,
            amount if entry.entry_type == EntryType.DEBIT else "",
            amount if entry.entry_type == EntryType.CREDIT else "",
            f"{entry.reference_type}:{entry.reference_id}",
        )
    console.print(table)

    debits, credits = pipeline.ledger.trial_balance(tenant)
    balanced = "[green]balanced[/]" if debits == credits else "[red]UNBALANCED[/]"
    console.print(f"Debits {debits:,.2f} / Credits {credits:,.2f}: {balanced}")
    sys.exit(EXIT_CODE_OK if debits == credits else EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
