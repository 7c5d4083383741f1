"""
Command-line interface for the statement reconciliation matcher.
"""
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich import box

from . import __version__
from .config import load_config
from .exceptions import ReconError
from .ledger import InMemoryLedgerProvider
from .logging_config import setup_logging
from .models import ReconciliationStatus, StatementFormat
from .reconciler import build_service


console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option("--env-file", type=click.Path(exists=True), help="Load settings from this .env file")
@click.option("--db", "database_url", help="Override DATABASE_URL (sqlite:///path.db)")
@click.pass_context
def cli(ctx, env_file, database_url):
    """
    Statement reconciliation matcher.

    Imports bank and mobile-money statements, matches them against the
    income and expense ledger, and tracks the status of every line.
    """
    config = load_config(env_file)
    if database_url:
        config.database_url = database_url
    setup_logging(config.log_level, json_format=config.log_json)
    ctx.obj = config


def _service(config, ledger_csv=None):
    service = build_service(config)
    if ledger_csv:
        service.ledger.close()
        service.ledger = InMemoryLedgerProvider.from_csv(Path(ledger_csv))
    return service


def _fail(error: ReconError):
    console.print(f"[red]Error ({error.code}): {error.message}[/red]")
    sys.exit(1)


@cli.command("import")
@click.argument("statement_file", type=click.Path(exists=True))
@click.option("--account", "-a", required=True, help="Account the statement belongs to")
@click.option(
    "--format", "-f", "statement_format",
    type=click.Choice([f.value for f in StatementFormat], case_sensitive=False),
    default=StatementFormat.GENERIC_CSV.value,
    help="Statement column layout"
)
@click.option("--actor", default="cli", help="Recorded as the importing user")
@click.pass_obj
def import_statement(config, statement_file, account, statement_format, actor):
    """
    Import a statement file.

    Examples:
        recon import statement.csv --account KCB-001
        recon import mpesa.csv --account MPESA-01 --format MOBILE_MONEY
    """
    service = _service(config)
    path = Path(statement_file)
    try:
        outcome = service.import_statement(
            account,
            path.read_text(encoding="utf-8-sig"),
            StatementFormat(statement_format.upper()),
            file_name=path.name,
            actor=actor,
        )
    except ReconError as e:
        _fail(e)
    finally:
        service.close()

    batch = outcome.batch
    table = Table(title=f"Import {batch.id[:8]}", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Rows", str(batch.total_rows))
    table.add_row("Imported", f"[green]{batch.successful_rows}[/green]")
    table.add_row("Invalid", f"[red]{batch.failed_rows}[/red]")
    table.add_row("Duplicates", f"[yellow]{batch.duplicate_rows}[/yellow]")
    if batch.date_from:
        table.add_row("Period", f"{batch.date_from} to {batch.date_to}")
    console.print(table)

    if outcome.result.errors:
        errors = Table(title="Row Errors", box=box.SIMPLE)
        errors.add_column("Row", justify="right")
        errors.add_column("Field", style="cyan")
        errors.add_column("Message")
        for err in outcome.result.errors[:20]:
            errors.add_row(str(err.row), err.field, err.message)
        console.print(errors)


@cli.command()
@click.option("--account", "-a", required=True, help="Account to reconcile")
@click.option("--ledger-csv", type=click.Path(exists=True), help="Ledger export to match against instead of the database")
@click.option("--amount-tolerance", type=float, help="Override amount tolerance")
@click.option("--amount-tolerance-pct", type=float, help="Override proportional amount tolerance (percent of the statement amount)")
@click.option("--date-tolerance", type=int, help="Override date tolerance in days")
@click.option("--similarity", type=float, help="Override description similarity threshold")
@click.option("--min-confidence", type=float, help="Override minimum confidence")
@click.option("--auto-approve", type=float, help="Override auto-approve threshold")
@click.option("--actor", default="system", help="Recorded as the committing user")
@click.pass_obj
def match(config, account, ledger_csv, amount_tolerance, amount_tolerance_pct, date_tolerance, similarity,
          min_confidence, auto_approve, actor):
    """
    Run the matching engine for one account.

    Examples:
        recon match --account KCB-001
        recon match --account KCB-001 --date-tolerance 5 --ledger-csv ledger.csv
    """
    console.print(Panel.fit(
        "[bold blue]Statement Reconciliation[/bold blue]\n"
        f"Account {account}",
        border_style="blue"
    ))

    service = _service(config, ledger_csv)
    try:
        rules = config.matching.replace(
            amount_tolerance=amount_tolerance,
            amount_tolerance_percentage=amount_tolerance_pct,
            date_tolerance_days=date_tolerance,
            description_similarity_threshold=similarity,
            minimum_confidence=min_confidence,
            auto_approve_threshold=auto_approve,
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Running matching engine...", total=None)
            result = service.run_match(account, rules=rules, actor=actor)
            progress.update(task, description="Complete!")
    except ReconError as e:
        _fail(e)
    finally:
        service.close()

    table = Table(title="Match Run", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Auto-matched", f"[green]{result.matched}[/green]")
    table.add_row("For review", f"[yellow]{len(result.potential_matches)}[/yellow]")
    table.add_row("Unmatched", f"[red]{len(result.unmatched_external_ids)}[/red]")
    table.add_row("Conflicts skipped", str(result.skipped_conflicts))
    table.add_row("Processing Time", f"{result.processing_time_seconds:.2f}s")
    console.print(table)

    if result.potential_matches:
        review = Table(title="Candidates for Review", box=box.SIMPLE)
        review.add_column("Statement line", style="cyan")
        review.add_column("Ledger entry")
        review.add_column("Confidence", justify="right")
        review.add_column("Reason")
        for candidate in result.potential_matches:
            review.add_row(
                f"{candidate.external.transaction_date} {candidate.external.description[:40]}",
                f"{candidate.internal.id} {candidate.internal.description[:30]}",
                f"{candidate.confidence:.1%}",
                candidate.reason.value,
            )
        console.print(review)


@cli.command()
@click.option("--account", "-a", help="Limit to one account")
@click.pass_obj
def summary(config, account):
    """Show reconciliation summary."""
    service = _service(config)
    try:
        s = service.get_summary(account)
    finally:
        service.close()

    table = Table(title=f"Reconciliation Summary ({account or 'all accounts'})", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Transactions", str(s.total_transactions))
    table.add_row("Matched", f"[green]{s.matched_transactions}[/green]")
    table.add_row("Unmatched", f"[red]{s.unmatched_transactions}[/red]")
    table.add_row("Disputed", f"[yellow]{s.disputed_transactions}[/yellow]")
    table.add_row("Ignored", str(s.ignored_transactions))
    table.add_row("Partially matched", str(s.partially_matched_transactions))
    table.add_row("", "")
    table.add_row("Credits", f"{float(s.total_credits):,.2f}")
    table.add_row("Debits", f"{float(s.total_debits):,.2f}")
    table.add_row("Variance", f"[yellow]{float(s.total_variance_amount):,.2f}[/yellow]")
    table.add_row("", "")
    table.add_row("Auto / Manual", f"{s.auto_matched_count} / {s.manual_matched_count}")
    table.add_row("Average score", f"{s.average_matching_score:.1%}")
    table.add_row("Average days unmatched", f"{s.average_days_unmatched:.1f}")
    table.add_row("Match Rate", f"[bold]{s.matching_rate_percent:.1f}%[/bold]")

    console.print(table)


@cli.command()
@click.option("--account", "-a", required=True, help="Account to report on")
@click.option("--ledger-csv", type=click.Path(exists=True), help="Ledger export used for match hints")
@click.option("--limit", "-n", default=25, help="Number of lines to show")
@click.pass_obj
def unmatched(config, account, ledger_csv, limit):
    """List unmatched statement lines, oldest first."""
    service = _service(config, ledger_csv)
    try:
        df = service.unmatched_report(account)
    finally:
        service.close()

    if df.empty:
        console.print("[green]✓ No unmatched transactions![/green]")
        return

    table = Table(title=f"Unmatched Transactions ({len(df)})", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Days", justify="right")
    table.add_column("Hint")

    for row in df.head(limit).itertuples(index=False):
        table.add_row(
            row.id[:12],
            str(row.transaction_date),
            row.description[:40],
            f"{float(row.amount):,.2f}",
            str(row.days_unmatched),
            row.potential_match_type,
        )
    console.print(table)


@cli.command("set-status")
@click.argument("external_id")
@click.argument(
    "status",
    type=click.Choice(
        [s.value for s in ReconciliationStatus if not s.is_matched], case_sensitive=False
    )
)
@click.option("--actor", default="cli", help="Recorded in the status history")
@click.option("--note", "-n", default=None, help="Reason for the change")
@click.pass_obj
def set_status(config, external_id, status, actor, note):
    """Dispute, ignore or reopen a statement line."""
    service = _service(config)
    try:
        new_status = service.set_status(external_id, ReconciliationStatus(status.upper()), actor=actor, note=note)
    except ReconError as e:
        _fail(e)
    finally:
        service.close()
    console.print(f"[green]{external_id} is now {new_status.value}.[/green]")


@cli.command()
@click.argument("match_id")
@click.option("--actor", default="cli", help="Recorded in the status history")
@click.pass_obj
def unmatch(config, match_id, actor):
    """Revoke a committed match."""
    service = _service(config)
    try:
        revoked = service.unmatch(match_id, actor=actor)
    except ReconError as e:
        _fail(e)
    finally:
        service.close()
    console.print(f"[green]Match {revoked.id[:8]} revoked; {revoked.external_id} is UNMATCHED.[/green]")


@cli.command()
@click.argument("external_id")
@click.pass_obj
def history(config, external_id):
    """Show the status history of a statement line."""
    service = _service(config)
    try:
        transitions = service.history(external_id)
    except ReconError as e:
        _fail(e)
    finally:
        service.close()

    table = Table(title=f"History of {external_id}", box=box.ROUNDED)
    table.add_column("When", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Actor")
    table.add_column("Note")
    for t in transitions:
        table.add_row(
            t.changed_at.strftime("%Y-%m-%d %H:%M:%S"),
            t.from_status.value if t.from_status else "-",
            t.to_status.value,
            t.actor,
            t.note,
        )
    console.print(table)


@cli.command("config")
@click.pass_obj
def show_config(config):
    """Show configuration status."""
    console.print("\n[bold]Configuration Status[/bold]\n")

    table = Table(show_header=False, box=box.SIMPLE)
    table.add_column("Setting", style="cyan")
    table.add_column("Status")

    rules = config.matching
    table.add_row("Database", config.database_url)
    table.add_row("Amount Tolerance", str(rules.amount_tolerance))
    table.add_row("Amount Tolerance %", str(rules.amount_tolerance_percentage))
    table.add_row("Date Tolerance", f"{rules.date_tolerance_days} days")
    table.add_row("Similarity Threshold", f"{rules.description_similarity_threshold:.0%}")
    table.add_row("Minimum Confidence", f"{rules.minimum_confidence:.0%}")
    table.add_row("Auto-Approve Threshold", f"{rules.auto_approve_threshold:.0%}")
    table.add_row("Ledger Lookback", f"{config.ledger_lookback_days} days")
    table.add_row("Log Level", config.log_level)

    console.print(table)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
