from __future__ import annotations

import typer
from rich.table import Table

from keymaster_core.keygen import rotate_system_key

from .. import console
from ..engine import open_engine

app = typer.Typer(help="System key used to connect to managed hosts.")


@app.command("rotate")
def rotate():
    """Generate a new system key. Accounts move to it on their next deploy."""
    with open_engine() as engine:
        key = rotate_system_key(engine.store)
        stale = [a for a in engine.store.list_accounts() if a.serial and a.serial != key.serial]
    console.ok(f"Active system key is now serial {key.serial}.")
    if stale:
        console.warn(f"{len(stale)} account(s) still on an older serial; run 'keymaster deploy --all'.")


@app.command("list")
def list_system_keys():
    with open_engine() as engine:
        keys = engine.store.list_system_keys()
    if not keys:
        console.info("No system key yet. Run: keymaster system-key rotate")
        return
    table = Table(title="System keys")
    table.add_column("serial", style="bold", justify="right")
    table.add_column("active", no_wrap=True)
    table.add_column("public_key")
    for k in keys:
        table.add_row(str(k.serial), "yes" if k.is_active else "no", k.public_key)
    console.print(table)
