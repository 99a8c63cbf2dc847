"""
CLI output helpers (rich tables for snapshots and status).
"""

from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from portsync.errors import PortsyncError
from portsync.models import AccountSnapshot, RefreshCategory

console = Console()
error_console = Console(stderr=True)

POSITION_COLUMNS = (
    ("Symbol", "left"),
    ("Type", "left"),
    ("Ccy", "left"),
    ("Qty", "right"),
    ("Last", "right"),
    ("Prev close", "right"),
    ("Mkt value", "right"),
    ("Day chg", "right"),
    ("Day %", "right"),
    ("Industry", "left"),
    ("Country", "left"),
)


def _num(value: Optional[float], digits: int = 2) -> str:
    if value is None:
        return "-"
    return f"{value:,.{digits}f}"


def _signed(value: Optional[float], digits: int = 2, suffix: str = "") -> str:
    if value is None:
        return "-"
    colour = "green" if value >= 0 else "red"
    return f"[{colour}]{value:+,.{digits}f}{suffix}[/{colour}]"


def _when(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip() if value else "never"


def print_snapshot(snapshot: AccountSnapshot) -> None:
    balance = snapshot.balance
    if balance is not None:
        console.print(
            f"[bold]Account {snapshot.account_id}[/bold] "
            f"{balance.account_code or ''} balance: "
            f"[cyan]{_num(balance.amount)} {balance.currency}[/cyan]"
        )
    else:
        console.print(f"[bold]Account {snapshot.account_id}[/bold] balance: [yellow]unknown[/yellow]")

    positions = Table(title=f"Positions (market value {_num(snapshot.total_market_value)})")
    for column, justify in POSITION_COLUMNS:
        positions.add_column(column, justify=justify)
    for p in snapshot.positions:
        positions.add_row(
            p.symbol,
            p.sec_type,
            p.currency,
            _num(p.quantity, 0),
            _num(p.last_price, 4),
            _num(p.previous_close, 4),
            _num(p.market_value),
            _signed(p.day_change),
            _signed(p.day_change_percent, 2, "%"),
            p.industry or "-",
            p.country or "-",
        )
    console.print(positions)

    cash = Table(title="Cash")
    cash.add_column("Currency")
    cash.add_column("Amount", justify="right")
    cash.add_column("HKD", justify="right")
    cash.add_column("USD", justify="right")
    for c in snapshot.cash_balances:
        cash.add_row(c.currency, _num(c.amount), _num(c.value_hkd), _num(c.value_usd))
    console.print(cash)

    refreshed = ", ".join(
        f"{category.value}: {_when(snapshot.last_refreshed.get(category))}"
        for category in RefreshCategory
    )
    console.print(f"[dim]Last refreshed: {refreshed}[/dim]")


def print_refresh_status(account_id: int, status: Dict[str, Dict[str, Any]]) -> None:
    table = Table(title=f"Refresh status for account {account_id}")
    table.add_column("Category")
    table.add_column("Last refreshed")
    table.add_column("Due")
    for category, info in status.items():
        due = "[yellow]yes[/yellow]" if info["needs_refresh"] else "[green]no[/green]"
        table.add_row(category, info["last_refreshed"] or "never", due)
    console.print(table)


def print_error(error: Exception) -> None:
    if isinstance(error, PortsyncError):
        error_console.print(f"[bold red]Error:[/bold red] {error.message}")
        if error.error_code:
            error_console.print(f"[dim]Code: {error.error_code}[/dim]")
        if error.suggestion:
            error_console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")
    else:
        error_console.print(f"[bold red]Error:[/bold red] {error}")
