#!/usr/bin/env python3
"""
Demo script to showcase the statement reconciliation matcher.

Run this script to see the matcher in action with sample rent collections.
"""
import sys
from pathlib import Path

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent))

from kodi_recon.ledger import InMemoryLedgerProvider
from kodi_recon.logging_config import setup_logging
from kodi_recon.models import ReconciliationStatus, StatementFormat
from kodi_recon.reconciler import ReconciliationService, create_sample_data
from kodi_recon.state_store import SQLiteStateStore

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box


console = Console()

ACCOUNT_ID = "KCB-RENT-001"


def main():
    setup_logging("WARNING")

    console.print(Panel.fit(
        "[bold blue]Statement Reconciliation - Demo[/bold blue]\n"
        "[dim]Rent collections matched against the income ledger[/dim]",
        border_style="blue"
    ))

    # Create sample data
    console.print("\n[cyan]Generating sample data...[/cyan]")
    statement, ledger_entries = create_sample_data(rows=24, seed=7)

    console.print(f"  • Statement lines: {len(statement.splitlines()) - 1}")
    console.print(f"  • Ledger entries: {len(ledger_entries)}")

    service = ReconciliationService(SQLiteStateStore(), InMemoryLedgerProvider(ledger_entries))

    # Import
    console.print("\n[cyan]Importing statement...[/cyan]")
    outcome = service.import_statement(
        ACCOUNT_ID, statement, StatementFormat.GENERIC_CSV, file_name="demo.csv", actor="demo"
    )
    console.print(f"  • Imported {outcome.registered} of {outcome.result.total_rows} rows")

    # Match
    console.print("\n[cyan]Running matching engine...[/cyan]")
    result = service.run_match(ACCOUNT_ID, actor="demo")
    display_run(result)

    # Confirm the first reviewable candidate, dispute the oldest unmatched line
    if result.potential_matches:
        candidate = result.potential_matches[0]
        match = service.confirm_candidate(candidate, actor="demo")
        console.print(f"\n[green]Confirmed {candidate.external.description} -> {match.internal_id}[/green]")

    unmatched = service.unmatched_report(ACCOUNT_ID)
    if not unmatched.empty:
        oldest = unmatched.iloc[0]
        service.set_status(oldest["id"], ReconciliationStatus.DISPUTED, actor="demo", note="tenant query")
        console.print(f"[yellow]Disputed {oldest['description']}[/yellow]")

    display_summary(service.get_summary(ACCOUNT_ID))
    display_unmatched(service.unmatched_report(ACCOUNT_ID))

    service.close()
    console.print("\n[bold green]Demo complete![/bold green]")
    console.print("\nTo run with your own data:")
    console.print("  1. Run: recon import statement.csv --account YOUR-ACCOUNT")
    console.print("  2. Run: recon match --account YOUR-ACCOUNT --ledger-csv ledger.csv")


def display_run(result):
    """Display committed matches."""
    table = Table(title="\nAuto-Matched", box=box.ROUNDED)
    table.add_column("Statement line")
    table.add_column("Ledger entry")
    table.add_column("Confidence")
    table.add_column("Variance", justify="right")

    for match in result.committed[:10]:
        color = "green" if match.confidence >= 0.95 else "yellow"
        table.add_row(
            match.external_id[:12],
            match.internal_id,
            f"[{color}]{match.confidence:.0%}[/{color}]",
            f"{match.variance_amount:,.2f}",
        )

    console.print(table)
    console.print(
        f"  matched={result.matched} review={len(result.potential_matches)} "
        f"unmatched={len(result.unmatched_external_ids)}"
    )


def display_summary(summary):
    """Display reconciliation summary."""
    table = Table(title="\nReconciliation Summary", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Transactions", str(summary.total_transactions))
    table.add_row("Matched", f"[green]{summary.matched_transactions}[/green]")
    table.add_row("Unmatched", f"[red]{summary.unmatched_transactions}[/red]")
    table.add_row("Disputed", f"[yellow]{summary.disputed_transactions}[/yellow]")
    table.add_row("Variance", f"{summary.total_variance_amount:,.2f}")
    table.add_row("", "")
    table.add_row("Match Rate", f"[bold]{summary.matching_rate_percent:.1f}%[/bold]")

    console.print(table)


def display_unmatched(df):
    """Display unmatched aging."""
    if df.empty:
        console.print("\n[green]✓ Nothing left unmatched![/green]")
        return

    table = Table(title="\nUnmatched Aging", box=box.ROUNDED)
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Days", justify="right")
    table.add_column("Hint")

    for row in df.itertuples(index=False):
        table.add_row(
            str(row.transaction_date),
            row.description[:40],
            f"{row.amount:,.2f}",
            str(row.days_unmatched),
            row.potential_match_type,
        )

    console.print(table)


if __name__ == "__main__":
    main()
