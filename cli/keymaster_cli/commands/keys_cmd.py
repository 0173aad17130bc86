from __future__ import annotations

from datetime import datetime, timezone

import typer
from rich.table import Table

from keymaster_core.authorized_keys import parse_key_line
from keymaster_core.errors import DatabaseInconsistencyError
from keymaster_core.models import utcnow

from .. import console
from ..engine import open_engine
from ..formatting import format_list_timestamp

app = typer.Typer(help="Authorized public keys.")


def _parse_expiry(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        console.err(f"Invalid --expires value: {raw!r} (use ISO 8601, e.g. 2030-01-31)")
        raise typer.Exit(code=2)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@app.command("add")
def add_key(
        line: str = typer.Argument(..., help="Public key line, e.g. 'ssh-ed25519 AAAA... alice@laptop'."),
        is_global: bool = typer.Option(False, "--global", help="Deploy to every account."),
        expires: str | None = typer.Option(None, "--expires", help="Expiry (ISO 8601)."),
        account: list[int] = typer.Option(None, "--account", "-a", help="Assign to account id (repeatable)."),
):
    try:
        algorithm, key_data, comment = parse_key_line(line)
    except ValueError as exc:
        console.err(f"Invalid public key: {exc}")
        raise typer.Exit(code=2)
    expires_at = _parse_expiry(expires)
    with open_engine() as engine:
        try:
            key = engine.store.add_public_key(algorithm, key_data, comment, is_global=is_global, expires_at=expires_at)
            for account_id in account or []:
                engine.store.assign_key_to_account(key.id, account_id)
        except (ValueError, DatabaseInconsistencyError) as exc:
            console.err(str(exc))
            raise typer.Exit(code=2)
    console.ok(f"Added key {key.id} ({comment or algorithm}). Run 'keymaster deploy' to push it.")


@app.command("assign")
def assign_key(
        key_id: int = typer.Argument(...),
        account: list[int] = typer.Option(..., "--account", "-a", help="Account id (repeatable)."),
):
    with open_engine() as engine:
        try:
            for account_id in account:
                engine.store.assign_key_to_account(key_id, account_id)
        except DatabaseInconsistencyError as exc:
            console.err(str(exc))
            raise typer.Exit(code=2)
    console.ok(f"Assigned key {key_id} to {len(account)} account(s).")


@app.command("unassign")
def unassign_key(
        key_id: int = typer.Argument(...),
        account: list[int] = typer.Option(..., "--account", "-a", help="Account id (repeatable)."),
):
    """Stop deploying a key to the given accounts. Takes effect on the next deploy."""
    with open_engine() as engine:
        try:
            for account_id in account:
                engine.store.unassign_key_from_account(key_id, account_id)
        except DatabaseInconsistencyError as exc:
            console.err(str(exc))
            raise typer.Exit(code=2)
    console.ok(f"Unassigned key {key_id} from {len(account)} account(s).")


@app.command("list")
def list_keys():
    with open_engine() as engine:
        keys = engine.store.get_all_public_keys()
    if not keys:
        console.info("No keys.")
        return
    now = utcnow()
    table = Table(title="Public keys")
    table.add_column("id", style="bold", justify="right")
    table.add_column("algorithm")
    table.add_column("comment")
    table.add_column("global", no_wrap=True)
    table.add_column("expires_at", no_wrap=True)
    for k in sorted(keys, key=lambda k: k.id):
        expires = format_list_timestamp(k.expires_at)
        if k.is_expired(now):
            expires = f"[red]{expires} (expired)[/red]"
        table.add_row(str(k.id), k.algorithm, k.comment or "-", "yes" if k.is_global else "no", expires)
    console.print(table)
