from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import typer

from keymaster_core.audit import AuditEngine
from keymaster_core.authorized_keys import ContentRenderer
from keymaster_core.bootstrap import BootstrapWorkflow, SessionReaper
from keymaster_core.config_types import EngineConfig
from keymaster_core.decommission import DecommissionWorkflow
from keymaster_core.deploy import DeployService
from keymaster_core.deployer import AtomicFileDeployer
from keymaster_core.fleet import FleetRunner
from keymaster_core.interfaces import TransportFactory
from keymaster_core.memory_store import InMemoryStore
from keymaster_core.models import Account
from keymaster_core.transport import ParamikoTransportFactory

from . import console
from .config import engine_config, load_config
from .state_store import StateLockedError, open_state, state_path


@dataclass
class Engine:
    store: InMemoryStore
    config: EngineConfig
    transport: TransportFactory
    renderer: ContentRenderer
    deploy: DeployService
    audit: AuditEngine
    decommission: DecommissionWorkflow
    bootstrap: BootstrapWorkflow
    reaper: SessionReaper
    runner: FleetRunner


def make_engine(store: InMemoryStore, config: EngineConfig) -> Engine:
    transport = ParamikoTransportFactory(store, config)
    renderer = ContentRenderer(store)
    deployer = AtomicFileDeployer()
    bootstrap = BootstrapWorkflow(
        keys=store,
        accounts=store,
        sessions=store,
        renderer=renderer,
        transport_factory=transport,
        audit_writer=store,
        deployer=deployer,
        config=config,
    )
    return Engine(
        store=store,
        config=config,
        transport=transport,
        renderer=renderer,
        deploy=DeployService(store, store, renderer, transport, deployer, config),
        audit=AuditEngine(store, renderer, transport, store, store, config, deployer),
        decommission=DecommissionWorkflow(store, store, transport, store, deployer, config),
        bootstrap=bootstrap,
        reaper=SessionReaper(bootstrap),
        runner=FleetRunner(config.max_workers, console.ConsoleReporter()),
    )


@contextmanager
def open_engine() -> Iterator[Engine]:
    cfg = load_config()
    try:
        with open_state(state_path(cfg)) as store:
            yield make_engine(store, engine_config(cfg))
    except StateLockedError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)


def select_accounts(
        store: InMemoryStore,
        account_ids: list[int] | None,
        tag: str | None,
        all_accounts: bool,
) -> list[Account]:
    accounts = [a for a in store.list_accounts() if a.is_active]
    if account_ids:
        wanted = set(account_ids)
        selected = [a for a in store.list_accounts() if a.id in wanted]
        missing = wanted - {a.id for a in selected}
        if missing:
            console.err(f"Unknown account id(s): {', '.join(str(i) for i in sorted(missing))}")
            raise typer.Exit(code=2)
        return selected
    if tag:
        return [a for a in accounts if tag in [t.strip() for t in a.tags.split(",") if t.strip()]]
    if all_accounts:
        return accounts
    console.err("Select accounts with --account, --tag or --all.")
    raise typer.Exit(code=2)
