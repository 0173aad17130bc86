from __future__ import annotations

import pytest

from keymaster_core.authorized_keys import ContentRenderer
from keymaster_core.memory_store import InMemoryStore
from keymaster_core.transport import known_host_id, split_host_port

from remote_fakes import FIXED_NOW, HOST_KEY, FakeTransportFactory


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(clock=lambda: FIXED_NOW)


@pytest.fixture
def transport(store) -> FakeTransportFactory:
    return FakeTransportFactory(store)


@pytest.fixture
def renderer(store) -> ContentRenderer:
    return ContentRenderer(store, clock=lambda: FIXED_NOW)


@pytest.fixture
def system_key(store):
    return store.create_system_key("ssh-ed25519 AAAASYSTEMKEY1 keymaster-system", "PRIVATE-KEY-1")


@pytest.fixture
def make_account(store, transport):
    def _make(hostname: str = "web1", username: str = "deploy", *, serial: int = 0, trusted: bool = True, **kw):
        account = store.add_account(username, hostname, serial=serial, **kw)
        if trusted:
            host, port = split_host_port(hostname)
            store.add_known_host_key(known_host_id(host, port), HOST_KEY)
        transport.host(hostname)
        return account

    return _make
