from __future__ import annotations

import typer
from rich.table import Table

from .. import console
from ..engine import open_engine

app = typer.Typer(help="Managed accounts.")


@app.command("add")
def add_account(
        target: str = typer.Argument(..., help="user@host[:port]"),
        label: str = typer.Option("", "--label", "-l", help="Display label."),
        tags: str = typer.Option("", "--tags", help="Comma-separated tags."),
):
    """Register an existing account that already trusts the system key."""
    username, sep, hostname = target.partition("@")
    if not sep or not username or not hostname:
        console.err("Target must look like user@host.")
        raise typer.Exit(code=2)
    with open_engine() as engine:
        try:
            account = engine.store.add_account(username, hostname, label=label, tags=tags)
        except ValueError as exc:
            console.err(str(exc))
            raise typer.Exit(code=2)
    console.ok(f"Added account {account.id}: {account}")


@app.command("list")
def list_accounts():
    with open_engine() as engine:
        accounts = engine.store.list_accounts()
    if not accounts:
        console.info("No accounts.")
        return
    table = Table(title="Accounts")
    table.add_column("id", style="bold", justify="right")
    table.add_column("account")
    table.add_column("tags")
    table.add_column("serial", justify="right")
    table.add_column("dirty", no_wrap=True)
    for a in accounts:
        table.add_row(
            str(a.id),
            str(a),
            a.tags or "-",
            str(a.serial) if a.deployed else "never deployed",
            "yes" if a.is_dirty else "no",
        )
    console.print(table)
