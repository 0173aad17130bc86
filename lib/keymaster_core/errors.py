from __future__ import annotations


class KeymasterError(Exception):
    """Base engine error."""


class TransportError(KeymasterError):
    """SSH/SFTP transport layer error."""

    kind = "transport"

    def __init__(self, message: str, *, host: str = "", hint: str | None = None):
        super().__init__(message)
        self.host = host
        self.hint = hint

    def __str__(self) -> str:
        base = super().__str__()
        if self.hint:
            return f"{base} ({self.hint})"
        return base


class ConnectionTimeoutError(TransportError):
    kind = "timeout"


class ConnectRefusedError(TransportError):
    kind = "connection-refused"


class AuthenticationError(TransportError):
    kind = "authentication"


class PassphraseRequiredError(AuthenticationError):
    """Private key is encrypted and no passphrase was supplied."""

    kind = "passphrase-required"


class HostKeyError(TransportError):
    kind = "host-key"


class HostKeyUnknownError(HostKeyError):
    kind = "host-key-unknown"


class HostKeyMismatchError(HostKeyError):
    kind = "host-key-mismatch"


class SftpChannelError(TransportError):
    kind = "sftp-channel"


class RemoteFileMissingError(KeymasterError):
    def __init__(self, path: str):
        super().__init__(f"remote file not found: {path}")
        self.path = path


class DeploymentError(KeymasterError):
    """Writing authorized_keys on the remote host failed."""


class DatabaseInconsistencyError(KeymasterError):
    """Stored state references something that does not exist."""


class StoreBusyError(KeymasterError):
    """Store is temporarily locked; the write may be retried."""


class NoSystemKeyError(KeymasterError):
    """No active system key has been generated yet."""


class NotDeployedError(KeymasterError):
    """Account has never been deployed (serial 0). Not drift."""


class DriftDetectedError(KeymasterError):
    def __init__(self, message: str = "drift detected", *, expected_hash: str = "", actual_hash: str = ""):
        super().__init__(message)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class InvalidTransitionError(KeymasterError):
    """Bootstrap session status change not allowed by the transition table."""


class SessionExpiredError(KeymasterError):
    """Bootstrap session passed its expiry before it was committed."""
