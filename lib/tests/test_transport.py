from __future__ import annotations

import socket

import paramiko
import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, Encoding, PrivateFormat

from keymaster_core.errors import (
    AuthenticationError,
    ConnectionTimeoutError,
    ConnectRefusedError,
    DatabaseInconsistencyError,
    HostKeyMismatchError,
    HostKeyUnknownError,
    PassphraseRequiredError,
    SftpChannelError,
    TransportError,
)
from keymaster_core.keygen import generate_ed25519
from keymaster_core.models import Account
from keymaster_core.secret import Secret
from keymaster_core.transport import (
    ParamikoTransportFactory,
    PinnedPolicy,
    TofuPolicy,
    TrustPolicy,
    VerifyPolicy,
    classify_connection_error,
    host_key_algorithm_warning,
    known_host_id,
    load_private_key,
    make_policy,
    resolve_connect_key,
    split_host_port,
    verify_command_hint,
)

from remote_fakes import HOST_KEY, FakeHostKey


@pytest.mark.parametrize(
    "hostname, expected",
    [
        ("web1", ("web1", 22)),
        ("web1:2222", ("web1", 2222)),
        ("[fe80::1]:2200", ("fe80::1", 2200)),
        ("[fe80::1]", ("fe80::1", 22)),
        ("fe80::1", ("fe80::1", 22)),
    ],
)
def test_split_host_port(hostname, expected) -> None:
    assert split_host_port(hostname) == expected


def test_known_host_id() -> None:
    assert known_host_id("web1") == "web1"
    assert known_host_id("web1", 2222) == "[web1]:2222"


@pytest.mark.parametrize(
    "exc, expected",
    [
        (socket.timeout("timed out"), ConnectionTimeoutError),
        (ConnectionRefusedError(111, "Connection refused"), ConnectRefusedError),
        (paramiko.AuthenticationException("Authentication failed."), AuthenticationError),
        (paramiko.PasswordRequiredException("private key file is encrypted"), PassphraseRequiredError),
        (paramiko.SSHException("Error reading SSH protocol banner: timed out"), ConnectionTimeoutError),
        (OSError("Permission denied (publickey)"), AuthenticationError),
        (OSError("something odd"), TransportError),
    ],
)
def test_classify_connection_error(exc, expected) -> None:
    err = classify_connection_error("web1", exc)
    assert type(err) is expected
    assert err.host == "web1"


def test_classify_passes_engine_errors_through() -> None:
    original = HostKeyUnknownError("unknown", host="web1")
    assert classify_connection_error("web1", original) is original


def test_verify_policy(store) -> None:
    policy = VerifyPolicy(store, "web1")
    with pytest.raises(HostKeyUnknownError):
        policy.missing_host_key(None, "web1", FakeHostKey())

    store.add_known_host_key("web1", HOST_KEY)
    policy.missing_host_key(None, "web1", FakeHostKey())
    with pytest.raises(HostKeyMismatchError) as exc_info:
        policy.missing_host_key(None, "web1", FakeHostKey("ssh-ed25519 AAAAOTHER"))
    assert exc_info.value.kind == "host-key-mismatch"


def test_tofu_policy_records_key(store) -> None:
    TofuPolicy(store, "web1").missing_host_key(None, "web1", FakeHostKey())
    assert store.get_known_host_key("web1") == HOST_KEY


def test_pinned_policy(store) -> None:
    with pytest.raises(HostKeyMismatchError):
        PinnedPolicy(store, "web1", "ssh-ed25519 AAAAOTHER").missing_host_key(None, "web1", FakeHostKey())
    assert store.get_known_host_key("web1") is None

    PinnedPolicy(store, "web1", HOST_KEY).missing_host_key(None, "web1", FakeHostKey())
    assert store.get_known_host_key("web1") == HOST_KEY


def test_make_policy(store) -> None:
    assert isinstance(make_policy(TrustPolicy.VERIFY, store, "web1"), VerifyPolicy)
    assert isinstance(make_policy(TrustPolicy.TOFU, store, "web1"), TofuPolicy)
    with pytest.raises(ValueError):
        make_policy(TrustPolicy.PINNED, store, "web1")


def test_resolve_connect_key(store, system_key) -> None:
    fresh = Account(id=1, username="deploy", hostname="web1")
    assert resolve_connect_key(fresh, store).serial == system_key.serial

    on_serial = Account(id=2, username="deploy", hostname="web2", serial=system_key.serial)
    assert resolve_connect_key(on_serial, store).private_key == "PRIVATE-KEY-1"

    with pytest.raises(DatabaseInconsistencyError):
        resolve_connect_key(Account(id=3, username="deploy", hostname="web3", serial=8), store)


def test_resolve_connect_key_without_system_key_uses_agent(store) -> None:
    assert resolve_connect_key(Account(id=1, username="deploy", hostname="web1"), store) is None


def test_load_private_key_roundtrips_generated_key() -> None:
    pair = generate_ed25519("test")
    key = load_private_key(pair.private_key)
    assert isinstance(key, paramiko.Ed25519Key)
    assert pair.public_key.split()[1] == key.get_base64()


def test_load_encrypted_key_requires_passphrase() -> None:
    pem = ed25519.Ed25519PrivateKey.generate().private_bytes(
        Encoding.PEM, PrivateFormat.OpenSSH, BestAvailableEncryption(b"hunter2")
    )
    with pytest.raises(PassphraseRequiredError):
        load_private_key(Secret(pem))
    assert isinstance(load_private_key(Secret(pem), Secret(b"hunter2")), paramiko.Ed25519Key)


def test_load_garbage_key() -> None:
    with pytest.raises(AuthenticationError):
        load_private_key(Secret(b"not a key"))


def test_host_key_helpers() -> None:
    assert host_key_algorithm_warning("ssh-rsa") is not None
    assert host_key_algorithm_warning("ssh-ed25519") is None
    assert verify_command_hint("ssh-ed25519").endswith("/etc/ssh/ssh_host_ed25519_key.pub")
    assert verify_command_hint("ecdsa-sha2-nistp256").endswith("/etc/ssh/ssh_host_ecdsa_key.pub")


class FakeChannel:
    def __init__(self):
        self.timeout = None

    def settimeout(self, value):
        self.timeout = value


class FakeSFTP:
    def __init__(self):
        self.channel = FakeChannel()
        self.closed = False

    def get_channel(self):
        return self.channel

    def close(self):
        self.closed = True


class FakeSSHClient:
    connect_error: Exception | None = None
    sftp_error: Exception | None = None

    def __init__(self):
        self.policy = None
        self.connect_kwargs = None
        self.closed = False
        self.sftp = FakeSFTP()

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, host, **kwargs):
        self.connect_kwargs = dict(kwargs, host=host)
        if self.connect_error is not None:
            raise self.connect_error

    def open_sftp(self):
        if self.sftp_error is not None:
            raise self.sftp_error
        return self.sftp

    def close(self):
        self.closed = True


def _factory(store, client_cls=FakeSSHClient):
    clients = []

    def make():
        client = client_cls()
        clients.append(client)
        return client

    return ParamikoTransportFactory(store, client_factory=make), clients


def test_factory_connects_with_system_key_only(store) -> None:
    factory, clients = _factory(store)
    pair = generate_ed25519()

    session = factory.open("web1:2222", "deploy", pair.private_key, TrustPolicy.VERIFY)

    kwargs = clients[0].connect_kwargs
    assert kwargs["host"] == "web1" and kwargs["port"] == 2222
    assert isinstance(kwargs["pkey"], paramiko.Ed25519Key)
    assert kwargs["allow_agent"] is False and kwargs["look_for_keys"] is False
    assert isinstance(clients[0].policy, VerifyPolicy)
    assert clients[0].policy.host_id == "[web1]:2222"
    assert clients[0].sftp.channel.timeout == factory.config.sftp_timeout_s
    assert session.host == "[web1]:2222"

    session.close()
    assert clients[0].sftp.closed and clients[0].closed


def test_factory_without_credential_falls_back_to_agent(store) -> None:
    factory, clients = _factory(store)
    factory.open("web1", "deploy", None, TrustPolicy.TOFU).close()
    assert clients[0].connect_kwargs["pkey"] is None
    assert clients[0].connect_kwargs["allow_agent"] is True


def test_factory_classifies_connect_errors(store) -> None:
    class Refusing(FakeSSHClient):
        connect_error = ConnectionRefusedError(111, "Connection refused")

    factory, clients = _factory(store, Refusing)
    with pytest.raises(ConnectRefusedError):
        factory.open("web1", "deploy", None, TrustPolicy.VERIFY)
    assert clients[0].closed


def test_factory_sftp_failure(store) -> None:
    class NoSftp(FakeSSHClient):
        sftp_error = paramiko.SSHException("subsystem request failed")

    factory, clients = _factory(store, NoSftp)
    with pytest.raises(SftpChannelError):
        factory.open("web1", "deploy", None, TrustPolicy.VERIFY)
    assert clients[0].closed
