from __future__ import annotations

import typer
from rich.prompt import Confirm

from keymaster_core.audit import AuditMode
from keymaster_core.decommission import DecommissionOptions
from keymaster_core.fleet import summarize
from keymaster_core.models import AuditResult, DecommissionResult, DeployResult, OperationResult

from .. import console
from ..engine import open_engine, select_accounts
from ..formatting import results_table, summary_line

ACCOUNT_OPT = typer.Option(None, "--account", "-a", help="Account id (repeatable).")
TAG_OPT = typer.Option(None, "--tag", "-t", help="Only accounts carrying this tag.")
ALL_OPT = typer.Option(False, "--all", help="Every active account.")


def _finish(results: list[OperationResult], title: str) -> None:
    console.print(results_table(results, title))
    summary = summarize(results)
    console.info(summary_line(summary))
    if summary.failed:
        raise typer.Exit(code=1)


def deploy(
        account: list[int] = ACCOUNT_OPT,
        tag: str | None = TAG_OPT,
        all_accounts: bool = ALL_OPT,
):
    """Render and push authorized_keys to the selected accounts."""
    with open_engine() as engine:
        if engine.store.get_active_system_key() is None:
            console.err("No system key yet. Run: keymaster system-key rotate")
            raise typer.Exit(code=2)
        accounts = select_accounts(engine.store, account, tag, all_accounts)
        results = engine.runner.run(accounts, engine.deploy.deploy_account, result_type=DeployResult)
    _finish(results, "Deploy")


def audit(
        account: list[int] = ACCOUNT_OPT,
        tag: str | None = TAG_OPT,
        all_accounts: bool = ALL_OPT,
        mode: AuditMode = typer.Option(AuditMode.STRICT, "--mode", "-m", help="serial or strict."),
):
    """Check the selected accounts for drift without changing anything remotely."""
    with open_engine() as engine:
        accounts = select_accounts(engine.store, account, tag, all_accounts)
        results = engine.runner.run(
            accounts,
            lambda a: engine.audit.audit_result(a, mode),
            result_type=AuditResult,
        )
    _finish(results, f"Audit ({mode.value})")


def remove_keys(
        key: list[int] = typer.Option(..., "--key", "-k", help="Public key id to remove (repeatable)."),
        account: list[int] = ACCOUNT_OPT,
        tag: str | None = TAG_OPT,
        all_accounts: bool = ALL_OPT,
):
    """Remove keys from the managed block, leaving other content alone."""
    with open_engine() as engine:
        accounts = select_accounts(engine.store, account, tag, all_accounts)
        results = engine.runner.run(
            accounts,
            lambda a: engine.deploy.remove_keys(a, key),
            result_type=DeployResult,
        )
    _finish(results, "Remove keys")


def decommission(
        account: list[int] = ACCOUNT_OPT,
        tag: str | None = TAG_OPT,
        all_accounts: bool = ALL_OPT,
        dry_run: bool = typer.Option(False, "--dry-run", help="Show what would happen."),
        force: bool = typer.Option(False, "--force", help="Delete the account even if remote cleanup fails."),
        skip_remote: bool = typer.Option(False, "--skip-remote", help="Do not touch the remote host."),
        keep_other_content: bool = typer.Option(
            False, "--keep-other-content", help="Strip only the managed block instead of the whole file."
        ),
        yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Revoke access on the remote host, then delete the account."""
    options = DecommissionOptions(
        dry_run=dry_run,
        force=force,
        skip_remote_cleanup=skip_remote,
        keep_other_content=keep_other_content,
    )
    with open_engine() as engine:
        accounts = select_accounts(engine.store, account, tag, all_accounts)
        if not accounts:
            console.warn("No accounts selected.")
            return
        if not dry_run and not yes:
            names = ", ".join(str(a) for a in accounts)
            if not Confirm.ask(f"Decommission {len(accounts)} account(s): {names}?", default=False):
                console.info("Aborted.")
                raise typer.Exit(code=0)
        results = engine.decommission.decommission_many(accounts, options, engine.runner)
    if any(isinstance(r, DecommissionResult) and r.remote_cleanup_error and r.error is None for r in results):
        console.warn("Some remote cleanups failed and were ignored (--force).")
    _finish(results, "Decommission" + (" (dry run)" if dry_run else ""))
