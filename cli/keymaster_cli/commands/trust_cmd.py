from __future__ import annotations

import base64
import hashlib

import typer
from rich.prompt import Confirm

from keymaster_core.errors import TransportError
from keymaster_core.transport import (
    fetch_remote_host_key,
    host_key_algorithm_warning,
    known_host_id,
    split_host_port,
    verify_command_hint,
)

from .. import console
from ..engine import open_engine


def fingerprint(host_key: str) -> str:
    """OpenSSH-style SHA256 fingerprint of ``type base64`` host key text."""
    parts = host_key.split()
    blob = base64.b64decode(parts[1]) if len(parts) > 1 else b""
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
    return f"SHA256:{digest}"


def trust_host(
        host: str = typer.Argument(..., help="host or host:port"),
        yes: bool = typer.Option(False, "--yes", "-y", help="Trust without asking."),
):
    """Fetch a host's key, show its fingerprint and store it as trusted."""
    name, port = split_host_port(host)
    host_id = known_host_id(name, port)
    with open_engine() as engine:
        try:
            key = fetch_remote_host_key(host, timeout=engine.config.host_key_timeout_s)
        except TransportError as exc:
            console.err(str(exc))
            raise typer.Exit(code=2)

        key_type = key.split()[0]
        console.info(f"{host_id} presents a {key_type} key, fingerprint {fingerprint(key)}")
        warning = host_key_algorithm_warning(key_type)
        if warning:
            console.warn(warning)
        console.info(f"Verify out of band: {verify_command_hint(key_type)}")

        known = engine.store.get_known_host_key(host_id)
        if known and known.strip() == key:
            console.ok(f"{host_id} is already trusted with this key.")
            return
        if known:
            console.warn(f"This replaces the stored key for {host_id} ({fingerprint(known)}).")
        if not yes and not Confirm.ask(f"Trust this key for {host_id}?", default=False):
            console.info("Aborted.")
            raise typer.Exit(code=0)
        engine.store.add_known_host_key(host_id, key)
    console.ok(f"Trusted {host_id}.")
