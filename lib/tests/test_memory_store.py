from __future__ import annotations

from datetime import timedelta

import pytest

from keymaster_core.bootstrap import BootstrapWorkflow, SessionStatus
from keymaster_core.errors import DatabaseInconsistencyError
from keymaster_core.memory_store import InMemoryStore

from remote_fakes import FIXED_NOW


def test_only_one_active_system_key(store) -> None:
    store.create_system_key("ssh-ed25519 AAAA1 k", "P1")
    store.rotate_system_key("ssh-ed25519 AAAA2 k", "P2")
    store.rotate_system_key("ssh-ed25519 AAAA3 k", "P3")
    assert [k.is_active for k in store.list_system_keys()] == [False, False, True]
    assert store.get_active_system_key().serial == 3


def test_reads_return_copies(store) -> None:
    account = store.add_account("deploy", "web1")
    account.serial = 99
    store.get_account(account.id).hostname = "elsewhere"
    saved = store.get_account(account.id)
    assert saved.serial == 0
    assert saved.hostname == "web1"


def test_duplicates_are_rejected(store) -> None:
    store.add_account("deploy", "web1")
    with pytest.raises(ValueError):
        store.add_account("deploy", "web1")
    store.add_public_key("ssh-ed25519", "AAAA1", "a")
    with pytest.raises(ValueError):
        store.add_public_key("ssh-ed25519", "AAAA1", "b")


def test_assignments(store) -> None:
    account = store.add_account("deploy", "web1")
    key = store.add_public_key("ssh-ed25519", "AAAA1", "a")
    store.assign_key_to_account(key.id, account.id)
    assert [k.id for k in store.get_keys_for_account(account.id)] == [key.id]

    store.unassign_key_from_account(key.id, account.id)
    assert store.get_keys_for_account(account.id) == []
    with pytest.raises(DatabaseInconsistencyError):
        store.assign_key_to_account(99, account.id)
    with pytest.raises(DatabaseInconsistencyError):
        store.update_account_serial(42, 1)


def test_delete_account_is_idempotent(store) -> None:
    account = store.add_account("deploy", "web1")
    store.delete_account(account.id)
    store.delete_account(account.id)
    assert store.get_account(account.id) is None
    assert len(store.audit_log("DELETE_ACCOUNT")) == 1


def test_snapshot_restore_roundtrip_omits_temp_private_keys(store, renderer, transport) -> None:
    store.create_system_key("ssh-ed25519 AAAASYS k", "PRIVATE")
    account = store.add_account("deploy", "web1", label="Web", tags="prod", serial=1)
    key = store.add_public_key("ssh-ed25519", "AAAA1", "a", expires_at=FIXED_NOW + timedelta(days=1))
    store.assign_key_to_account(key.id, account.id)
    store.add_known_host_key("web1", "ssh-ed25519 AAAAHOST")
    workflow = BootstrapWorkflow(store, store, store, renderer, transport, store, clock=lambda: FIXED_NOW)
    session = workflow.begin("deploy", "web2")

    data = store.snapshot()
    restored = InMemoryStore.restore(data, clock=lambda: FIXED_NOW)

    assert "PRIVATE-----" not in repr(data["bootstrap_sessions"])
    assert restored.get_account(account.id) == store.get_account(account.id)
    assert restored.get_active_system_key().private_key == "PRIVATE"
    assert [k.id for k in restored.get_keys_for_account(account.id)] == [key.id]
    assert restored.get_known_host_key("web1") == "ssh-ed25519 AAAAHOST"
    assert len(restored.audit_log()) == len(store.audit_log())

    [restored_session] = restored.list_bootstrap_sessions()
    assert restored_session.id == session.id
    assert restored_session.status == SessionStatus.ACTIVE
    assert restored_session.keypair.public_key == session.keypair.public_key
    assert not restored_session.keypair.private_key

    assert restored.add_account("deploy", "web3").id == account.id + 1
