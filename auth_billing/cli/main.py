"""
CLI interface for Auth Billing.

Provides command-line access to billing, reconciliation and statistics views.
"""

import json
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from auth_billing.config.loader import Settings, load_settings
from auth_billing.core.errors import StatementError
from auth_billing.core.service import BillingConfig, StatementService, create_service
from auth_billing.core.statements import BillingStatement, CallStats, ReconciliationPage
from auth_billing.demo.seed_demo_data import seed_demo_data
from auth_billing.storage.repository import EventRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def get_settings(ctx: typer.Context) -> Settings:
    """Load settings from the --config path given to the root command."""
    return load_settings((ctx.obj or {}).get("config"))


def get_service(settings: Settings) -> StatementService:
    """Build the statement service for a CLI invocation."""
    return create_service(settings)


def _fail(error: Exception) -> None:
    if isinstance(error, StatementError):
        console.print(f"[red]Error ({error.category.value}):[/] {error.message}")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Auth Billing CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Auth Billing - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the authentication log database."""
    try:
        settings = get_settings(ctx)
        EventRepository(
            db_path=settings.database.path,
            events_table=settings.database.events_table
        ).initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Insert demo organizations and authentication events."""
    try:
        settings = get_settings(ctx)
        repository = EventRepository(
            db_path=settings.database.path,
            events_table=settings.database.events_table
        )
        inserted = seed_demo_data(repository)
        console.print(f"[green]✓[/] Inserted {inserted} demo events")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(e)


@app.command()
def bill(
    ctx: typer.Context,
    org_id: str = typer.Argument(..., help="Organization to bill"),
    start: str = typer.Option(..., "--start", "-s", help="Period start (YYYY-MM-DD or ISO datetime)"),
    end: str = typer.Option(..., "--end", "-e", help="Period end (YYYY-MM-DD or ISO datetime)"),
    two_factor_price: int = typer.Option(0, "--two-factor-price", help="Two-factor price in cents per call"),
    three_factor_price: int = typer.Option(0, "--three-factor-price", help="Three-factor price in cents per call"),
    as_json: bool = typer.Option(False, "--json", help="Print the statement as JSON")
):
    """Generate a billing statement for an organization."""
    try:
        service = get_service(get_settings(ctx))
        statement = service.billing_statement(BillingConfig(
            org_id=org_id,
            period_start=start,
            period_end=end,
            two_factor_price=two_factor_price,
            three_factor_price=three_factor_price
        ))
    except Exception as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps(statement.to_dict()))
    else:
        _display_billing_statement(statement)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    ctx: typer.Context,
    org_id: str = typer.Argument(..., help="Organization to reconcile"),
    start: str = typer.Option(..., "--start", "-s", help="Period start (YYYY-MM-DD or ISO datetime)"),
    end: str = typer.Option(..., "--end", "-e", help="Period end (YYYY-MM-DD or ISO datetime)"),
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    page_size: Optional[int] = typer.Option(None, "--page-size", help="Rows per page"),
    as_json: bool = typer.Option(False, "--json", help="Print the page as JSON")
):
    """Show a page of the daily reconciliation breakdown."""
    try:
        service = get_service(get_settings(ctx))
        result = service.reconciliation_page(
            BillingConfig(org_id=org_id, period_start=start, period_end=end),
            page=page,
            page_size=page_size
        )
    except Exception as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _display_reconciliation_page(result)
    sys.exit(EXIT_CODE_PASS)


@app.command("org-stats")
def org_stats(
    ctx: typer.Context,
    period: str = typer.Option("day", "--period", help="year, month or day"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Any date within the period (YYYY-MM-DD)")
):
    """Show per-organization call statistics."""
    try:
        stats = get_service(get_settings(ctx)).org_stats(period=period, day=date)
    except Exception as e:
        _fail(e)

    if not stats:
        console.print("\n[bold yellow]No authentication events found for this period[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Organization statistics ({period})")
    for column in ("Organization", "Total", "Valid", "Invalid", "Valid %", "2FA", "3FA"):
        table.add_column(column, justify="left" if column == "Organization" else "right")
    for stat in stats:
        table.add_row(
            stat.org_name,
            f"{stat.total:,}",
            f"{stat.valid_total:,}",
            f"{stat.invalid_total:,}",
            f"{stat.valid_percentage:.1f}",
            f"{stat.two_factor_calls:,}",
            f"{stat.three_factor_calls:,}"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("call-stats")
def call_stats(
    ctx: typer.Context,
    period: str = typer.Option("day", "--period", help="year, month or day"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Any date within the period (YYYY-MM-DD)"),
    org_id: Optional[str] = typer.Option(None, "--org", help="Restrict to one organization"),
    as_json: bool = typer.Option(False, "--json", help="Print the statistics as JSON")
):
    """Show valid/invalid call series and top result codes."""
    try:
        stats = get_service(get_settings(ctx)).call_stats(period=period, day=date, org_id=org_id)
    except Exception as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps(stats.to_dict()))
    else:
        _display_call_stats(stats)
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-cache")
def clear_cache(
    ctx: typer.Context,
    scope: Optional[str] = typer.Option(
        None,
        "--scope",
        help="Only flush one view: billing, reconciliation, org-stats, call-stats or query"
    )
):
    """Flush this process's statement and query cache.

    Each CLI invocation starts with an empty in-process cache, so from the
    command line this reports 0 evicted entries. Services embedding
    StatementService call clear_cache() on their long-lived instance.
    """
    try:
        ack = get_service(get_settings(ctx)).clear_cache(scope)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] {ack.message} at {ack.timestamp} ({ack.evicted} entries)")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount) -> str:
    """Format a major-unit amount with thousands separators."""
    return f"{amount:,.2f}"


def _display_billing_statement(statement: BillingStatement):
    """Display a billing statement as one table per tier."""
    console.print(f"\n[bold]Billing Statement[/bold] - {statement.org_name} ({statement.org_id})")
    console.print(f"Period: {statement.period_start:%Y-%m-%d %H:%M:%S} to {statement.period_end:%Y-%m-%d %H:%M:%S}")
    console.print("-" * 40)

    tiers = (
        ("Two-factor", statement.two_factor_items, statement.two_factor_price,
         statement.two_factor_total, statement.two_factor_valid_total, statement.two_factor_amount),
        ("Three-factor", statement.three_factor_items, statement.three_factor_price,
         statement.three_factor_total, statement.three_factor_valid_total, statement.three_factor_amount),
    )
    for name, items, price, total, valid_total, amount in tiers:
        table = Table(title=f"{name} @ {_format_currency(price)} per valid call")
        table.add_column("Result code")
        table.add_column("Message")
        table.add_column("Count", justify="right")
        table.add_column("Valid", justify="right")
        for item in items:
            table.add_row(item.result_code, item.result_message, f"{item.count:,}", f"{item.valid_count:,}")
        table.add_row("[bold]Total[/]", "", f"{total:,}", f"{valid_total:,}")
        console.print(table)
        console.print(f"{name} amount: {_format_currency(amount)}\n")

    if not statement.two_factor_items and not statement.three_factor_items:
        console.print("[dim]No authentication events in this period.[/]")

    console.print(f"[bold]Total valid calls:[/bold] {statement.total_valid_count:,}")
    console.print(f"[bold]Total amount:[/bold] {_format_currency(statement.total_amount)}")


def _display_reconciliation_page(page: ReconciliationPage):
    """Display reconciliation rows followed by the per-mode summary."""
    console.print(f"\n[bold]Reconciliation[/bold] - {page.org_name} ({page.org_id})")
    console.print(
        f"Page {page.current_page} of {page.total_pages} "
        f"({page.total_count} rows, {page.page_size} per page)"
    )

    if not page.items:
        console.print("\n[dim]No rows on this page.[/]")
    else:
        table = Table()
        for column in ("Date", "Mode", "Result code", "Message"):
            table.add_column(column)
        table.add_column("Count", justify="right")
        for row in page.items:
            table.add_row(row.date.isoformat(), row.auth_mode, row.result_code, row.result_message, f"{row.count:,}")
        console.print(table)

    for summary in page.summary:
        console.print(
            f"[bold]{summary.auth_mode}[/bold]: total {summary.total:,}, "
            f"success {summary.success:,}, fail {summary.fail:,}"
        )


def _display_call_stats(stats: CallStats):
    """Display call totals, the interval series and the top result codes."""
    scope = f"{stats.org_name} ({stats.org_id})" if stats.org_id is not None else "All organizations"
    console.print(f"\n[bold]Call Statistics[/bold] - {scope}")
    console.print(f"Period: {stats.period} from {stats.period_start:%Y-%m-%d} to {stats.period_end:%Y-%m-%d}")
    console.print(
        f"Total {stats.total:,} (valid {stats.valid_total:,}, invalid {stats.invalid_total:,}); "
        f"2FA {stats.two_factor_total:,}, 3FA {stats.three_factor_total:,}"
    )
    console.print(
        f"Change vs previous period: {stats.change:+,} ({stats.change_percentage:+.2f}%)"
    )

    if not stats.series:
        console.print("\n[bold yellow]No authentication events found for this period[/]\n")
        return

    series = Table(title="Calls by interval")
    series.add_column("Interval")
    for column in ("Valid", "Invalid", "2FA", "3FA"):
        series.add_column(column, justify="right")
    for point in stats.series:
        series.add_row(
            point.label,
            f"{point.valid_calls:,}",
            f"{point.invalid_calls:,}",
            f"{point.two_factor_calls:,}",
            f"{point.three_factor_calls:,}"
        )
    console.print(series)

    codes = Table(title="Top result codes")
    codes.add_column("Result code")
    codes.add_column("Message")
    codes.add_column("Count", justify="right")
    codes.add_column("%", justify="right")
    for share in stats.result_codes:
        codes.add_row(share.result_code, share.result_message, f"{share.count:,}", f"{share.percentage:.2f}")
    console.print(codes)


if __name__ == "__main__":
    app()
