"""
BudgetPilot CLI — command-line interface.

Usage:
    budgetpilot demo
    budgetpilot show 42 --config budgetpilot.yaml
    budgetpilot pending --project 3 --mine 17
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from budgetpilot import __version__
from budgetpilot.exceptions import BudgetPilotError, ValidationError
from budgetpilot.ledger.store import LedgerStore
from budgetpilot.models.actors import Actor, PermissionLevel
from budgetpilot.models.ledger import ApprovalStatus, CategoryType, LineItem, PurchaseRequest, Transaction
from budgetpilot.models.money import format_amount

app = typer.Typer(
    name="budgetpilot",
    help="BudgetPilot — budget ledger and purchase approval workflow",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_STATUS_COLORS = {
    ApprovalStatus.PENDING: "yellow",
    ApprovalStatus.APPROVED: "green",
    ApprovalStatus.REJECTED: "red",
}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]BudgetPilot[/bold] v{__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _apply_log_level(ctx: typer.Context, level: str) -> None:
    """Switch to the configured level unless --verbose asked for DEBUG."""
    if not (ctx.obj or {}).get("verbose"):
        _configure_logging(level)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """BudgetPilot — track budgets, approve purchase requests, record spending."""
    ctx.obj = {"verbose": verbose}
    _configure_logging("DEBUG" if verbose else "WARNING")


@app.command()
def demo() -> None:
    """Replay the four worked scenarios against an in-memory ledger."""
    console.print(Panel.fit(
        "[bold blue]BudgetPilot[/bold blue] — worked scenarios (in-memory ledger)",
        subtitle=f"v{__version__}",
    ))
    asyncio.run(_run_demo())


@app.command()
def show(
    ctx: typer.Context,
    line_item_id: int = typer.Argument(..., help="Line item to display"),
    config: str = typer.Option(
        "budgetpilot.yaml",
        "--config",
        "-c",
        help="Path to config file",
    ),
) -> None:
    """Show a line item with its purchase requests and transactions."""
    from budgetpilot.pilot import BudgetPilot

    config_path = config if Path(config).exists() else None
    pilot = BudgetPilot.from_config(config_path)
    _apply_log_level(ctx, pilot.config.log_level)

    async def _load() -> None:
        try:
            await pilot.load_line_item(line_item_id)
        finally:
            await pilot.close()

    try:
        with console.status("[bold green]Loading line item...[/bold green]"):
            asyncio.run(_load())
    except BudgetPilotError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    _display_line_item(pilot.store, line_item_id, pilot.config.currency)


@app.command()
def pending(
    ctx: typer.Context,
    project: int = typer.Option(None, "--project", "-p", help="Only requests in this project"),
    mine: int = typer.Option(None, "--mine", help="Only requests made by this contact id"),
    config: str = typer.Option(
        "budgetpilot.yaml",
        "--config",
        "-c",
        help="Path to config file",
    ),
) -> None:
    """List purchase requests awaiting approval with their budget impact."""
    from budgetpilot.pilot import BudgetPilot

    config_path = config if Path(config).exists() else None
    pilot = BudgetPilot.from_config(config_path)
    _apply_log_level(ctx, pilot.config.log_level)

    async def _list():
        try:
            return await pilot.pending_approvals(project_id=project, requested_by=mine)
        finally:
            await pilot.close()

    try:
        found = asyncio.run(_list())
    except BudgetPilotError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    if not found:
        console.print("[dim]No purchase requests awaiting approval.[/dim]")
        return

    currency = pilot.config.currency
    table = Table(title="Awaiting Approval")
    table.add_column("ID", justify="right")
    table.add_column("Line Item", justify="right")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Remaining on Line", justify="right")
    table.add_column("After Approval", justify="right")
    for request, impact in found:
        if impact is None:
            table.add_row(str(request.id), str(request.line_item_id), request.description,
                          format_amount(request.amount, currency), "-", "-")
            continue
        after = format_amount(impact.projected_spent_after_approval, currency)
        if impact.would_be_over_budget:
            after = f"[red]{after} (over by {format_amount(impact.over_budget_amount, currency)})[/red]"
        table.add_row(
            str(request.id),
            str(request.line_item_id),
            request.description,
            format_amount(request.amount, currency),
            format_amount(impact.line_item_remaining, currency),
            after,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _display_line_item(store: LedgerStore, line_item_id: int, currency: str = "USD") -> None:
    line_item = store.get_line_item(line_item_id)
    summary = store.line_item_summary(line_item_id)
    if line_item is None or summary is None:
        console.print(f"[yellow]Line item {line_item_id} is not loaded.[/yellow]")
        return

    table = Table(title=f"{line_item.name} ({line_item.category_type.value})", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Estimated", format_amount(summary.estimated_amount, currency))
    table.add_row("Actual", format_amount(summary.actual_amount, currency))
    variance = format_amount(summary.variance, currency, signed=True)
    if summary.is_over_budget:
        variance = f"[red]{variance}[/red]"
    table.add_row("Variance", variance)
    table.add_row("Purchase Requests", f"{summary.purchase_request_count} ({summary.pending_request_count} pending)")
    table.add_row("Transactions", str(summary.transaction_count))
    console.print(table)

    requests = store.purchase_requests_for(line_item_id)
    if requests:
        pr_table = Table(title="Purchase Requests")
        pr_table.add_column("ID", justify="right")
        pr_table.add_column("Description")
        pr_table.add_column("Status")
        pr_table.add_column("Amount", justify="right")
        pr_table.add_column("Spent", justify="right")
        pr_table.add_column("Remaining", justify="right")
        for request in requests:
            pr_summary = store.purchase_request_summary(request.id)
            color = _STATUS_COLORS[request.approval_status]
            pr_table.add_row(
                str(request.id),
                request.description,
                f"[{color}]{request.approval_status.value}[/{color}]",
                format_amount(request.amount, currency),
                format_amount(pr_summary.transaction_total, currency),
                format_amount(pr_summary.remaining_amount, currency),
            )
        console.print(pr_table)

    txns = store.transactions_for(line_item_id)
    if txns:
        tx_table = Table(title="Transactions")
        tx_table.add_column("ID", justify="right")
        tx_table.add_column("Date")
        tx_table.add_column("Method")
        tx_table.add_column("Request", justify="right")
        tx_table.add_column("Amount", justify="right")
        for txn in txns:
            tx_table.add_row(
                str(txn.id),
                txn.transaction_date.isoformat(),
                txn.payment_method,
                str(txn.purchase_request_id or "-"),
                format_amount(txn.amount, currency),
            )
        console.print(tx_table)


# ---------------------------------------------------------------------------
# Demo
# ---------------------------------------------------------------------------


async def _run_demo() -> None:
    from budgetpilot.persistence.memory import InMemoryPersistence
    from budgetpilot.pilot import BudgetPilot

    now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    persistence = InMemoryPersistence()
    persistence.seed([
        LineItem(id=1, name="Sound equipment", estimated_amount=100000, category_id=10,
                 category_name="Facilities", project_id=1),
        LineItem(id=2, name="Retreat supplies", estimated_amount=50000, category_id=20,
                 category_name="Youth", project_id=1),
        LineItem(id=3, name="Retreat registrations", estimated_amount=50000, category_type=CategoryType.REVENUE,
                 category_id=20, category_name="Youth", project_id=1),
        PurchaseRequest(id=4, line_item_id=2, amount=60000, description="Cabins and food", requested_date=now,
                        approval_status=ApprovalStatus.APPROVED, approved_date=now),
        Transaction(id=5, line_item_id=2, purchase_request_id=4, amount=35000,
                    transaction_date=date(2024, 3, 2), payment_method="Check"),
        Transaction(id=6, line_item_id=2, purchase_request_id=4, amount=25000,
                    transaction_date=date(2024, 3, 9), payment_method="Card"),
        Transaction(id=7, line_item_id=3, amount=30000, transaction_date=date(2024, 3, 3), payment_method="Online"),
        Transaction(id=8, line_item_id=3, amount=20000, transaction_date=date(2024, 3, 10), payment_method="Cash"),
    ])
    admin = Actor(id=1, name="Budget admin", level=PermissionLevel.ADMIN)
    pilot = BudgetPilot.from_config(persistence=persistence, actor=admin)
    store = pilot.store

    # Scenario 1
    console.rule("[bold]Scenario 1[/bold] — request, approve, spend")
    await pilot.load_line_item(1)
    created = await pilot.create_purchase_request(1, "400.00", description="Wireless microphones")
    request_id = created.entity_id
    await pilot.approve(request_id)
    await pilot.add_transaction("150.00", "Check", purchase_request_id=request_id)
    _display_line_item(store, 1)

    # Scenario 2
    console.rule("[bold]Scenario 2[/bold] — failed write rolls back")
    persistence.hold()
    task = asyncio.create_task(pilot.add_transaction("300.00", "Card", purchase_request_id=request_id))
    await asyncio.sleep(0)
    optimistic = store.purchase_request_summary(request_id)
    console.print(f"Optimistic transaction total: [bold]{format_amount(optimistic.transaction_total)}[/bold]")
    persistence.fail_next()
    persistence.release()
    result = await task
    settled = store.purchase_request_summary(request_id)
    console.print(f"[yellow]{result.message}[/yellow]")
    console.print(
        f"After rollback: total {format_amount(settled.transaction_total)}, "
        f"remaining {format_amount(settled.remaining_amount)}"
    )

    # Scenario 3
    console.rule("[bold]Scenario 3[/bold] — reject an approved request with spending")
    await pilot.reject(request_id, "Vendor changed")
    rejected = store.purchase_request_summary(request_id)
    console.print(
        f"Status {rejected.approval_status.value}, transaction total still "
        f"{format_amount(rejected.transaction_total)}"
    )
    try:
        await pilot.add_transaction("20.00", "Cash", purchase_request_id=request_id)
    except ValidationError as e:
        console.print(f"[red]New transaction refused:[/red] {e}")

    # Scenario 4
    console.rule("[bold]Scenario 4[/bold] — expense and revenue variances")
    await pilot.load_line_item(2)
    await pilot.load_line_item(3)
    table = Table(title="Youth")
    table.add_column("Line Item")
    table.add_column("Type")
    table.add_column("Estimated", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Variance", justify="right")
    for line_item_id in (2, 3):
        line_item = store.get_line_item(line_item_id)
        summary = store.line_item_summary(line_item_id)
        table.add_row(
            line_item.name,
            line_item.category_type.value,
            format_amount(summary.estimated_amount),
            format_amount(summary.actual_amount),
            format_amount(summary.variance, signed=True),
        )
    console.print(table)
    await pilot.close()


if __name__ == "__main__":
    app()
