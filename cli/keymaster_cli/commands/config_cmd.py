from __future__ import annotations

import typer

from .. import console
from ..config import config_path, load_config, save_config
from ..state_store import state_path

app = typer.Typer(help="Local configuration.")


@app.command("show")
def show_config():
    cfg = load_config()
    console.print(f"config={config_path()}")
    console.print(f"state={state_path(cfg)}")
    console.print(
        f"connect_timeout={cfg.connect_timeout_s}s sftp_timeout={cfg.sftp_timeout_s}s "
        f"host_key_timeout={cfg.host_key_timeout_s}s max_workers={cfg.max_workers}"
    )
    console.print(
        f"bootstrap_timeout={cfg.bootstrap_timeout_s}s committing_grace={cfg.committing_grace_s}s "
        f"reaper_interval={cfg.reaper_interval_s}s"
    )


@app.command("set")
def set_config(
        state: str | None = typer.Option(None, "--state-path", help="Where the state file lives."),
        connect_timeout: float | None = typer.Option(None, "--connect-timeout", min=0.1),
        sftp_timeout: float | None = typer.Option(None, "--sftp-timeout", min=0.1),
        max_workers: int | None = typer.Option(None, "--max-workers", min=1),
        bootstrap_timeout: float | None = typer.Option(None, "--bootstrap-timeout", min=1.0),
):
    cfg = load_config(with_env=False)
    if state is not None:
        cfg.state_path = state
    if connect_timeout is not None:
        cfg.connect_timeout_s = connect_timeout
    if sftp_timeout is not None:
        cfg.sftp_timeout_s = sftp_timeout
    if max_workers is not None:
        cfg.max_workers = max_workers
    if bootstrap_timeout is not None:
        cfg.bootstrap_timeout_s = bootstrap_timeout
    path = save_config(cfg)
    console.ok(f"Config updated: {path}")
