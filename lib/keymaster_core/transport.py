from __future__ import annotations

import errno
import io
import logging
import socket
from enum import Enum
from typing import Callable

import paramiko

from .config_types import EngineConfig, bounded_timeout
from .errors import (
    AuthenticationError,
    ConnectionTimeoutError,
    ConnectRefusedError,
    DatabaseInconsistencyError,
    HostKeyError,
    HostKeyMismatchError,
    HostKeyUnknownError,
    KeymasterError,
    PassphraseRequiredError,
    RemoteFileMissingError,
    SftpChannelError,
    TransportError,
)
from .interfaces import KeyReader, KnownHostStore, RemoteSession, TransportFactory
from .models import Account, SystemKey
from .secret import Secret

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)
_WEAK_HOST_KEY_TYPES = {"ssh-dss", "ssh-rsa"}


class TrustPolicy(str, Enum):
    TOFU = "tofu"
    VERIFY = "verify"
    PINNED = "pinned"


def split_host_port(hostname: str) -> tuple[str, int]:
    host = (hostname or "").strip()
    if host.startswith("[") and "]" in host:
        inner, _, rest = host[1:].partition("]")
        if rest.startswith(":") and rest[1:].isdigit():
            return inner, int(rest[1:])
        return inner, DEFAULT_PORT
    if host.count(":") == 1:
        name, port = host.rsplit(":", 1)
        if port.isdigit():
            return name, int(port)
    return host, DEFAULT_PORT


def known_host_id(host: str, port: int = DEFAULT_PORT) -> str:
    if port == DEFAULT_PORT:
        return host
    return f"[{host}]:{port}"


def host_key_line(key: paramiko.PKey) -> str:
    return f"{key.get_name()} {key.get_base64()}"


def trust_hint(host: str) -> str:
    return f"run 'keymaster trust-host {host}' after verifying the key out of band"


class _StoredHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    def __init__(self, store: KnownHostStore, host_id: str):
        self.store = store
        self.host_id = host_id

    def _persist(self, presented: str) -> None:
        try:
            self.store.add_known_host_key(self.host_id, presented)
        except Exception as e:
            logger.warning("could not save host key for %s: %s", self.host_id, e)


class TofuPolicy(_StoredHostKeyPolicy):
    """Accept whatever the host presents and remember it. Bootstrap only."""

    def missing_host_key(self, client, hostname, key):
        presented = host_key_line(key)
        known = self.store.get_known_host_key(self.host_id)
        if known and known.strip() != presented:
            logger.warning("host key for %s changed; trusting the new key on first use", self.host_id)
        self._persist(presented)


class VerifyPolicy(_StoredHostKeyPolicy):
    def missing_host_key(self, client, hostname, key):
        presented = host_key_line(key)
        known = self.store.get_known_host_key(self.host_id)
        if not known:
            raise HostKeyUnknownError(
                f"host key for {self.host_id} is not trusted",
                host=self.host_id,
                hint=trust_hint(self.host_id),
            )
        if known.strip() != presented:
            raise HostKeyMismatchError(
                f"host key mismatch for {self.host_id}: possible man-in-the-middle attack",
                host=self.host_id,
                hint=trust_hint(self.host_id),
            )


class PinnedPolicy(_StoredHostKeyPolicy):
    def __init__(self, store: KnownHostStore, host_id: str, expected: str):
        super().__init__(store, host_id)
        self.expected = (expected or "").strip()

    def missing_host_key(self, client, hostname, key):
        presented = host_key_line(key)
        if presented != self.expected:
            raise HostKeyMismatchError(
                f"host key for {self.host_id} does not match the pinned key",
                host=self.host_id,
                hint="check the expected host key and try again",
            )
        self._persist(presented)


def make_policy(
        policy: TrustPolicy,
        store: KnownHostStore,
        host_id: str,
        expected_host_key: str | None = None,
) -> paramiko.MissingHostKeyPolicy:
    if policy == TrustPolicy.TOFU:
        return TofuPolicy(store, host_id)
    if policy == TrustPolicy.PINNED:
        if not expected_host_key:
            raise ValueError("pinned trust policy requires an expected host key")
        return PinnedPolicy(store, host_id, expected_host_key)
    return VerifyPolicy(store, host_id)


def classify_connection_error(host: str, exc: BaseException) -> KeymasterError:
    """Map a low-level connection failure onto the engine's error types."""
    if isinstance(exc, KeymasterError):
        return exc
    msg = str(exc) or exc.__class__.__name__

    if isinstance(exc, paramiko.PasswordRequiredException):
        return PassphraseRequiredError(
            f"private key for {host} is encrypted", host=host, hint="provide the key passphrase"
        )
    if isinstance(exc, paramiko.BadHostKeyException):
        return HostKeyMismatchError(f"host key mismatch for {host}: {msg}", host=host, hint=trust_hint(host))
    if isinstance(exc, paramiko.AuthenticationException):
        return AuthenticationError(
            f"authentication failed for {host}: {msg}",
            host=host,
            hint="check that the system key is deployed to this account",
        )
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ConnectionTimeoutError(
            f"connection to {host} timed out", host=host, hint="check network connectivity and firewall rules"
        )
    if isinstance(exc, (ConnectionRefusedError, paramiko.ssh_exception.NoValidConnectionsError)):
        return ConnectRefusedError(
            f"connection to {host} refused", host=host, hint="check that sshd is running and the port is correct"
        )

    lowered = msg.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return ConnectionTimeoutError(f"connection to {host} timed out: {msg}", host=host,
                                      hint="check network connectivity and firewall rules")
    if "connection refused" in lowered:
        return ConnectRefusedError(f"connection to {host} refused: {msg}", host=host,
                                   hint="check that sshd is running and the port is correct")
    if "passphrase" in lowered or "password required" in lowered:
        return PassphraseRequiredError(f"private key for {host} is encrypted: {msg}", host=host,
                                       hint="provide the key passphrase")
    if "authentication" in lowered or "permission denied" in lowered:
        return AuthenticationError(f"authentication failed for {host}: {msg}", host=host,
                                   hint="check that the system key is deployed to this account")
    if "host key" in lowered:
        return HostKeyError(f"host key problem for {host}: {msg}", host=host, hint=trust_hint(host))
    return TransportError(f"connection to {host} failed: {msg}", host=host)


def load_private_key(private_key: Secret, passphrase: Secret | None = None) -> paramiko.PKey:
    password = passphrase.reveal() if passphrase else None
    last_error: Exception | None = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(private_key.reveal()), password=password)
        except paramiko.PasswordRequiredException as e:
            raise PassphraseRequiredError("private key is encrypted", hint="provide the key passphrase") from e
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise AuthenticationError(f"unsupported or corrupt private key ({last_error})")


def resolve_connect_key(account: Account, keys: KeyReader) -> SystemKey | None:
    """System key to authenticate with; ``None`` means fall back to the SSH agent."""
    if not account.deployed:
        return keys.get_active_system_key()
    key = keys.get_system_key_by_serial(account.serial)
    if key is None:
        raise DatabaseInconsistencyError(
            f"account {account} is on serial {account.serial} but no system key with that serial exists"
        )
    return key


def connect_account(
        factory: TransportFactory,
        account: Account,
        system_key: SystemKey | None,
        policy: TrustPolicy,
        *,
        deadline: float | None = None,
) -> RemoteSession:
    credential = Secret.from_str(system_key.private_key) if system_key else None
    try:
        return factory.open(account.hostname, account.username, credential, policy, deadline=deadline)
    finally:
        if credential is not None:
            credential.zero()


class TransportSession:
    """One SSH connection plus one SFTP channel, paths relative to the login directory."""

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient, host: str):
        self.client = client
        self.sftp = sftp
        self.host = host

    def read(self, path: str) -> bytes:
        try:
            with self.sftp.open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise RemoteFileMissingError(path) from e
        except IOError as e:
            if e.errno == errno.ENOENT:
                raise RemoteFileMissingError(path) from e
            raise

    def write(self, path: str, data: bytes) -> None:
        with self.sftp.open(path, "wb") as f:
            f.write(data)

    def exists(self, path: str) -> bool:
        try:
            self.sftp.stat(path)
        except FileNotFoundError:
            return False
        return True

    def mkdir(self, path: str) -> None:
        self.sftp.mkdir(path, mode=0o700)

    def chmod(self, path: str, mode: int) -> None:
        self.sftp.chmod(path, mode)

    def rename(self, src: str, dst: str) -> None:
        self.sftp.rename(src, dst)

    def remove(self, path: str) -> None:
        try:
            self.sftp.remove(path)
        except FileNotFoundError as e:
            raise RemoteFileMissingError(path) from e

    def close(self) -> None:
        try:
            self.sftp.close()
        finally:
            self.client.close()

    def __enter__(self) -> "TransportSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ParamikoTransportFactory:
    def __init__(
            self,
            known_hosts: KnownHostStore,
            config: EngineConfig | None = None,
            client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.known_hosts = known_hosts
        self.config = config or EngineConfig()
        self._client_factory = client_factory

    def open(
            self,
            hostname: str,
            username: str,
            credential: Secret | None,
            policy: TrustPolicy,
            *,
            passphrase: Secret | None = None,
            expected_host_key: str | None = None,
            deadline: float | None = None,
    ) -> TransportSession:
        host, port = split_host_port(hostname)
        host_id = known_host_id(host, port)
        pkey = load_private_key(credential, passphrase) if credential else None
        connect_timeout = bounded_timeout(self.config.connect_timeout_s, deadline)

        client = self._client_factory()
        # Nothing loaded from ~/.ssh/known_hosts: every key goes through the policy.
        client.set_missing_host_key_policy(make_policy(policy, self.known_hosts, host_id, expected_host_key))
        logger.debug("connecting to %s@%s (policy=%s)", username, host_id, policy.value)
        try:
            client.connect(
                host,
                port=port,
                username=username,
                pkey=pkey,
                timeout=connect_timeout,
                banner_timeout=connect_timeout,
                auth_timeout=connect_timeout,
                allow_agent=pkey is None,
                look_for_keys=False,
            )
        except Exception as e:
            client.close()
            raise classify_connection_error(host_id, e) from e

        try:
            sftp = client.open_sftp()
            channel = sftp.get_channel()
            if channel is not None:
                channel.settimeout(bounded_timeout(self.config.sftp_timeout_s, deadline))
        except Exception as e:
            client.close()
            raise SftpChannelError(f"could not open SFTP channel on {host_id}: {e}", host=host_id) from e
        return TransportSession(client, sftp, host_id)


def fetch_remote_host_key(hostname: str, timeout: float = 5.0) -> str:
    """Host key presented by ``hostname``, without authenticating."""
    host, port = split_host_port(hostname)
    host_id = known_host_id(host, port)
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise classify_connection_error(host_id, e) from e
    transport = paramiko.Transport(sock)
    try:
        transport.banner_timeout = timeout
        transport.start_client(timeout=timeout)
        key = transport.get_remote_server_key()
        return host_key_line(key)
    except Exception as e:
        raise classify_connection_error(host_id, e) from e
    finally:
        transport.close()


def host_key_algorithm_warning(key_type: str) -> str | None:
    if key_type in _WEAK_HOST_KEY_TYPES:
        return f"host key algorithm {key_type} is deprecated; prefer ssh-ed25519 or ecdsa"
    return None


def verify_command_hint(key_type: str) -> str:
    name = key_type.removeprefix("ssh-").split("-", 1)[0]
    if key_type.startswith("ecdsa-"):
        name = "ecdsa"
    return f"on the host, run: ssh-keygen -lf /etc/ssh/ssh_host_{name}_key.pub"
