from __future__ import annotations

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import tomllib
import tomli_w

from keymaster_core.errors import KeymasterError
from keymaster_core.memory_store import InMemoryStore

from .config import AppConfig, config_path

STATE_FILENAME = "state.toml"
LOCK_TIMEOUT_S = 10.0
_LOCK_POLL_S = 0.1


class StateLockedError(KeymasterError):
    """Another keymaster process holds the state file."""


def state_path(cfg: AppConfig | None = None) -> Path:
    if cfg is not None and cfg.state_path:
        return Path(cfg.state_path).expanduser()
    return Path(config_path()).expanduser().parent / STATE_FILENAME


def lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def load_state(path: Path) -> InMemoryStore:
    if not path.exists():
        return InMemoryStore()
    with path.open("rb") as f:
        data = tomllib.load(f)
    return InMemoryStore.restore(data if isinstance(data, dict) else {})


def save_state(store: InMemoryStore, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(tomli_w.dumps(store.snapshot()).encode("utf-8"))
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)
    return path


@contextmanager
def state_lock(path: Path, timeout_s: float | None = None) -> Iterator[None]:
    """Exclusive flock on ``<state>.lock``, retried until ``timeout_s``."""
    if timeout_s is None:
        timeout_s = LOCK_TIMEOUT_S
    lock_file = lock_path(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout_s
    with open(lock_file, "a") as lock:
        while True:
            try:
                fcntl.flock(lock.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise StateLockedError(
                        f"{path} is in use by another keymaster process (lock: {lock_file})"
                    ) from None
                time.sleep(_LOCK_POLL_S)
        try:
            yield
        finally:
            fcntl.flock(lock.fileno(), fcntl.LOCK_UN)


@contextmanager
def open_state(path: Path, lock_timeout_s: float | None = None) -> Iterator[InMemoryStore]:
    """Lock the state file, load it, hand out the store, save it back on the way out.

    The lock is held for the whole block, so two commands never both load
    the same snapshot. State is saved even when the command fails, so audit
    entries and partially completed batches are not lost.
    """
    with state_lock(path, lock_timeout_s):
        store = load_state(path)
        try:
            yield store
        finally:
            save_state(store, path)
