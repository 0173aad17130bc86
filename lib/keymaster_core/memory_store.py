from __future__ import annotations

import threading
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any

from .bootstrap import BootstrapSession, SessionStatus, TemporaryKeyPair
from .errors import DatabaseInconsistencyError
from .models import Account, AuditEntry, PublicKey, SystemKey, utcnow
from .secret import Secret


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


class InMemoryStore:
    """Thread-safe reference store implementing every storage protocol.

    Backs the tests and the CLI's local state file. Reads hand out copies so
    callers cannot mutate stored rows behind the lock.
    """

    def __init__(self, clock=utcnow):
        self._lock = threading.RLock()
        self._clock = clock
        self._accounts: dict[int, Account] = {}
        self._system_keys: dict[int, SystemKey] = {}
        self._public_keys: dict[int, PublicKey] = {}
        self._assignments: dict[int, set[int]] = {}
        self._known_hosts: dict[str, str] = {}
        self._sessions: dict[str, BootstrapSession] = {}
        self._audit: list[AuditEntry] = []
        self._next_id = {"account": 1, "system_key": 1, "public_key": 1}

    def _take_id(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    # audit

    def log_action(self, action: str, details: str) -> None:
        with self._lock:
            self._audit.append(AuditEntry(timestamp=self._clock(), action=action, details=details))

    def audit_log(self, action: str | None = None) -> list[AuditEntry]:
        with self._lock:
            return [e for e in self._audit if action is None or e.action == action]

    # system keys

    def get_active_system_key(self) -> SystemKey | None:
        with self._lock:
            for key in self._system_keys.values():
                if key.is_active:
                    return replace(key)
            return None

    def get_system_key_by_serial(self, serial: int) -> SystemKey | None:
        with self._lock:
            for key in self._system_keys.values():
                if key.serial == serial:
                    return replace(key)
            return None

    def list_system_keys(self) -> list[SystemKey]:
        with self._lock:
            return [replace(k) for k in sorted(self._system_keys.values(), key=lambda k: k.serial)]

    def _add_system_key(self, public_key: str, private_key: str) -> SystemKey:
        serial = max((k.serial for k in self._system_keys.values()), default=0) + 1
        for key in self._system_keys.values():
            key.is_active = False
        key = SystemKey(
            id=self._take_id("system_key"),
            serial=serial,
            public_key=public_key.strip(),
            private_key=private_key,
            is_active=True,
        )
        self._system_keys[key.id] = key
        return replace(key)

    def create_system_key(self, public_key: str, private_key: str) -> SystemKey:
        with self._lock:
            key = self._add_system_key(public_key, private_key)
            self.log_action("CREATE_SYSTEM_KEY", f"serial: {key.serial}")
            return key

    def rotate_system_key(self, public_key: str, private_key: str) -> SystemKey:
        with self._lock:
            key = self._add_system_key(public_key, private_key)
            self.log_action("ROTATE_SYSTEM_KEY", f"new_serial: {key.serial}")
            return key

    # public keys

    def add_public_key(
            self,
            algorithm: str,
            key_data: str,
            comment: str = "",
            is_global: bool = False,
            expires_at: datetime | None = None,
    ) -> PublicKey:
        with self._lock:
            for existing in self._public_keys.values():
                if existing.algorithm == algorithm and existing.key_data == key_data:
                    raise ValueError(f"public key already exists (id {existing.id})")
            key = PublicKey(
                id=self._take_id("public_key"),
                algorithm=algorithm,
                key_data=key_data,
                comment=comment,
                is_global=is_global,
                expires_at=expires_at,
            )
            self._public_keys[key.id] = key
            self.log_action("ADD_PUBLIC_KEY", f"comment: {comment}")
            return replace(key)

    def get_all_public_keys(self) -> list[PublicKey]:
        with self._lock:
            return [replace(k) for k in self._public_keys.values()]

    def get_global_public_keys(self) -> list[PublicKey]:
        with self._lock:
            return [replace(k) for k in self._public_keys.values() if k.is_global]

    def get_keys_for_account(self, account_id: int) -> list[PublicKey]:
        with self._lock:
            ids = self._assignments.get(account_id, set())
            return [replace(self._public_keys[i]) for i in sorted(ids) if i in self._public_keys]

    # accounts

    def get_account(self, account_id: int) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def list_accounts(self) -> list[Account]:
        with self._lock:
            return [replace(a) for a in sorted(self._accounts.values(), key=lambda a: a.id)]

    def add_account(self, username: str, hostname: str, label: str = "", tags: str = "", serial: int = 0) -> Account:
        with self._lock:
            for existing in self._accounts.values():
                if existing.username == username and existing.hostname == hostname:
                    raise ValueError(f"account {username}@{hostname} already exists")
            account = Account(
                id=self._take_id("account"),
                username=username,
                hostname=hostname,
                label=label,
                tags=tags,
                serial=serial,
            )
            self._accounts[account.id] = account
            self.log_action("ADD_ACCOUNT", f"account: {username}@{hostname}")
            return replace(account)

    def delete_account(self, account_id: int) -> None:
        with self._lock:
            account = self._accounts.pop(account_id, None)
            self._assignments.pop(account_id, None)
            if account is not None:
                self.log_action("DELETE_ACCOUNT", f"account: {account.username}@{account.hostname}")

    def _require_account(self, account_id: int) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise DatabaseInconsistencyError(f"account {account_id} does not exist")
        return account

    def assign_key_to_account(self, key_id: int, account_id: int) -> None:
        with self._lock:
            account = self._require_account(account_id)
            if key_id not in self._public_keys:
                raise DatabaseInconsistencyError(f"public key {key_id} does not exist")
            self._assignments.setdefault(account_id, set()).add(key_id)
            self.log_action("ASSIGN_KEY", f"key_id: {key_id}, account: {account.username}@{account.hostname}")

    def unassign_key_from_account(self, key_id: int, account_id: int) -> None:
        with self._lock:
            account = self._require_account(account_id)
            self._assignments.get(account_id, set()).discard(key_id)
            self.log_action("UNASSIGN_KEY", f"key_id: {key_id}, account: {account.username}@{account.hostname}")

    def update_account_serial(self, account_id: int, serial: int) -> None:
        with self._lock:
            self._require_account(account_id).serial = serial

    def update_account_is_dirty(self, account_id: int, dirty: bool) -> None:
        with self._lock:
            self._require_account(account_id).is_dirty = dirty

    def update_account_key_hash(self, account_id: int, key_hash: str) -> None:
        with self._lock:
            self._require_account(account_id).key_hash = key_hash

    # known hosts

    def get_known_host_key(self, host: str) -> str | None:
        with self._lock:
            return self._known_hosts.get(host)

    def add_known_host_key(self, host: str, key: str) -> None:
        with self._lock:
            self._known_hosts[host] = key.strip()
            self.log_action("TRUST_HOST", f"hostname: {host}")

    # bootstrap sessions

    def save_bootstrap_session(self, session: BootstrapSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def update_bootstrap_session_status(self, session_id: str, status: SessionStatus) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise DatabaseInconsistencyError(f"bootstrap session {session_id} does not exist")
            session.status = SessionStatus(status)

    def delete_bootstrap_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def list_bootstrap_sessions(self) -> list[BootstrapSession]:
        with self._lock:
            return list(self._sessions.values())

    # persistence helpers

    def snapshot(self) -> dict[str, Any]:
        """Plain-data copy of the store. Temporary bootstrap private keys are left out."""
        with self._lock:
            return {
                "accounts": [asdict(a) for a in self.list_accounts()],
                "system_keys": [asdict(k) for k in self.list_system_keys()],
                "public_keys": [_drop_none(asdict(k)) for k in self._public_keys.values()],
                "assignments": [
                    {"account_id": account_id, "key_id": key_id}
                    for account_id, key_ids in sorted(self._assignments.items())
                    for key_id in sorted(key_ids)
                ],
                "known_hosts": [{"host": h, "key": k} for h, k in sorted(self._known_hosts.items())],
                "audit_log": [asdict(e) for e in self._audit],
                "bootstrap_sessions": [
                    _drop_none({
                        "id": s.id,
                        "username": s.username,
                        "hostname": s.hostname,
                        "label": s.label,
                        "tags": s.tags,
                        "key_ids": list(s.key_ids),
                        "public_key": s.keypair.public_key,
                        "status": s.status.value,
                        "created_at": s.created_at,
                        "expires_at": s.expires_at,
                        "updated_at": s.updated_at,
                    })
                    for s in self._sessions.values()
                ],
            }

    @classmethod
    def restore(cls, data: dict[str, Any], clock=utcnow) -> "InMemoryStore":
        store = cls(clock=clock)
        for row in data.get("accounts", []):
            account = Account(**row)
            store._accounts[account.id] = account
        for row in data.get("system_keys", []):
            key = SystemKey(**row)
            store._system_keys[key.id] = key
        for row in data.get("public_keys", []):
            key = PublicKey(**row)
            store._public_keys[key.id] = key
        for row in data.get("assignments", []):
            store._assignments.setdefault(int(row["account_id"]), set()).add(int(row["key_id"]))
        for row in data.get("known_hosts", []):
            store._known_hosts[row["host"]] = row["key"]
        for row in data.get("audit_log", []):
            store._audit.append(AuditEntry(**row))
        for row in data.get("bootstrap_sessions", []):
            session = BootstrapSession(
                id=row["id"],
                username=row["username"],
                hostname=row["hostname"],
                label=row.get("label", ""),
                tags=row.get("tags", ""),
                key_ids=[int(i) for i in row.get("key_ids", [])],
                keypair=TemporaryKeyPair(public_key=row["public_key"], private_key=Secret()),
                status=SessionStatus(row.get("status", SessionStatus.ACTIVE.value)),
                created_at=row["created_at"],
                expires_at=row["expires_at"],
                updated_at=row.get("updated_at"),
            )
            store._sessions[session.id] = session

        store._next_id = {
            "account": max(store._accounts, default=0) + 1,
            "system_key": max(store._system_keys, default=0) + 1,
            "public_key": max(store._public_keys, default=0) + 1,
        }
        return store
