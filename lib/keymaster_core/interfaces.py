"""Storage and transport boundaries consumed by the engine.

Implementations live outside the engine (a relational store in production,
``InMemoryStore`` for tests and the local CLI state file).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .models import Account, PublicKey, SystemKey
from .secret import Secret

if TYPE_CHECKING:
    from .bootstrap import BootstrapSession, SessionStatus
    from .transport import TrustPolicy


class KeyReader(Protocol):
    def get_active_system_key(self) -> SystemKey | None: ...

    def get_system_key_by_serial(self, serial: int) -> SystemKey | None: ...

    def get_all_public_keys(self) -> list[PublicKey]: ...


class KeyLister(Protocol):
    def get_global_public_keys(self) -> list[PublicKey]: ...

    def get_keys_for_account(self, account_id: int) -> list[PublicKey]: ...


class KeyStore(KeyReader, KeyLister, Protocol):
    pass


class AccountSerialUpdater(Protocol):
    def update_account_serial(self, account_id: int, serial: int) -> None: ...


class AuditWriter(Protocol):
    def log_action(self, action: str, details: str) -> None: ...


class AccountManager(AccountSerialUpdater, Protocol):
    def get_account(self, account_id: int) -> Account | None: ...

    def list_accounts(self) -> list[Account]: ...

    def add_account(self, username: str, hostname: str, label: str = "", tags: str = "", serial: int = 0) -> Account: ...

    def delete_account(self, account_id: int) -> None: ...

    def assign_key_to_account(self, key_id: int, account_id: int) -> None: ...

    def update_account_is_dirty(self, account_id: int, dirty: bool) -> None: ...

    def update_account_key_hash(self, account_id: int, key_hash: str) -> None: ...


class KnownHostStore(Protocol):
    def get_known_host_key(self, host: str) -> str | None: ...

    def add_known_host_key(self, host: str, key: str) -> None: ...


class BootstrapSessionStore(Protocol):
    def save_bootstrap_session(self, session: "BootstrapSession") -> None: ...

    def update_bootstrap_session_status(self, session_id: str, status: "SessionStatus") -> None: ...

    def delete_bootstrap_session(self, session_id: str) -> None: ...

    def list_bootstrap_sessions(self) -> list["BootstrapSession"]: ...


class Reporter(Protocol):
    def report(self, message: str) -> None: ...


class RemoteSession(Protocol):
    """File operations on one remote account, relative to its home directory."""

    host: str

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes) -> None: ...

    def exists(self, path: str) -> bool: ...

    def mkdir(self, path: str) -> None: ...

    def chmod(self, path: str, mode: int) -> None: ...

    def rename(self, src: str, dst: str) -> None: ...

    def remove(self, path: str) -> None: ...

    def close(self) -> None: ...


class TransportFactory(Protocol):
    def open(
            self,
            hostname: str,
            username: str,
            credential: Secret | None,
            policy: "TrustPolicy",
            *,
            passphrase: Secret | None = None,
            expected_host_key: str | None = None,
            deadline: float | None = None,
    ) -> RemoteSession: ...


class SystemKeyManager(KeyReader, Protocol):
    def create_system_key(self, public_key: str, private_key: str) -> SystemKey: ...

    def rotate_system_key(self, public_key: str, private_key: str) -> SystemKey: ...
