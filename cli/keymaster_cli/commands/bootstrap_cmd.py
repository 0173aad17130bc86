from __future__ import annotations

import signal

import typer
from rich.prompt import Confirm
from rich.table import Table

from keymaster_core.bootstrap import install_signal_handler, recover_from_crash
from keymaster_core.errors import KeymasterError

from .. import console
from ..engine import open_engine
from ..formatting import format_list_timestamp

app = typer.Typer(help="Onboard new hosts with a temporary key.")


@app.command("run")
def run(
        target: str = typer.Argument(..., help="user@host[:port]"),
        label: str = typer.Option("", "--label", "-l"),
        tags: str = typer.Option("", "--tags"),
        key: list[int] = typer.Option(None, "--key", "-k", help="Public key id to assign (repeatable)."),
        host_key: str | None = typer.Option(
            None, "--host-key", help="Expected host key ('type base64'); pins instead of trusting on first use."
        ),
        yes: bool = typer.Option(False, "--yes", "-y", help="Commit without asking."),
):
    """Start a bootstrap session, wait for the temporary key to be installed, then commit."""
    username, sep, hostname = target.partition("@")
    if not sep or not username or not hostname:
        console.err("Target must look like user@host.")
        raise typer.Exit(code=2)

    with open_engine() as engine:
        if engine.store.get_active_system_key() is None:
            console.err("No system key yet. Run: keymaster system-key rotate")
            raise typer.Exit(code=2)

        workflow = engine.bootstrap
        recovered = recover_from_crash(engine.reaper)
        if recovered:
            console.warn(f"Cleaned up {recovered} bootstrap session(s) left by an earlier run.")
        session = workflow.begin(username, hostname, label=label, tags=tags, key_ids=key or [])
        previous = install_signal_handler(
            workflow.registry, lambda s: workflow.cleanup(s, "interrupted by signal")
        )
        engine.reaper.start()
        try:
            console.info(f"Bootstrap session {session.id} for {session.target}")
            console.info("Run this on the new host as the target user:")
            console.print(session.keypair.install_command(), markup=False, soft_wrap=True)
            console.info(f"The temporary key expires at {format_list_timestamp(session.expires_at)}.")

            if not yes and not Confirm.ask("Temporary key installed? Commit now", default=True):
                workflow.cancel(session)
                console.info("Bootstrap cancelled.")
                raise typer.Exit(code=1)
            try:
                account = workflow.commit(session, expected_host_key=host_key)
            except KeymasterError as exc:
                console.err(f"Bootstrap failed: {exc}")
                raise typer.Exit(code=2)
        finally:
            engine.reaper.stop()
            for sig, handler in previous.items():
                signal.signal(sig, handler)
    console.ok(f"Bootstrapped {account} (account {account.id}).")


@app.command("list")
def list_sessions():
    with open_engine() as engine:
        sessions = engine.store.list_bootstrap_sessions()
    if not sessions:
        console.info("No bootstrap sessions.")
        return
    table = Table(title="Bootstrap sessions")
    table.add_column("id", style="bold")
    table.add_column("target")
    table.add_column("status", no_wrap=True)
    table.add_column("created_at", no_wrap=True)
    table.add_column("expires_at", no_wrap=True)
    for s in sessions:
        table.add_row(
            s.id,
            s.target,
            s.status.value,
            format_list_timestamp(s.created_at),
            format_list_timestamp(s.expires_at),
        )
    console.print(table)


@app.command("reap")
def reap():
    """Clean up sessions left behind by an interrupted or crashed run."""
    with open_engine() as engine:
        count = recover_from_crash(engine.reaper)
    console.ok(f"Reaped {count} bootstrap session(s).")
