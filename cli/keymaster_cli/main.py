from __future__ import annotations

import typer

from .commands import accounts_cmd, bootstrap_cmd, config_cmd, fleet_cmd, keys_cmd, system_key_cmd, trust_cmd
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="keymaster",
        help="Reconcile authorized_keys across a fleet of SSH accounts.",
        no_args_is_help=True,
    )

    app.command("deploy")(fleet_cmd.deploy)
    app.command("audit")(fleet_cmd.audit)
    app.command("remove-keys")(fleet_cmd.remove_keys)
    app.command("decommission")(fleet_cmd.decommission)
    app.command("trust-host")(trust_cmd.trust_host)

    app.add_typer(accounts_cmd.app, name="accounts")
    app.add_typer(keys_cmd.app, name="keys")
    app.add_typer(system_key_cmd.app, name="system-key")
    app.add_typer(bootstrap_cmd.app, name="bootstrap")
    app.add_typer(config_cmd.app, name="config")

    @app.callback()
    def _main(
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        setup_logging(verbose)

    return app


app = _build_app()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
