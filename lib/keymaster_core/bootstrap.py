"""Onboarding a new host with a short-lived temporary key.

The operator pastes ``TemporaryKeyPair.install_command()`` on the new host,
then ``BootstrapWorkflow.commit`` connects with the temporary key, installs
the real managed content and creates the account. Sessions that never get
that far are cleaned up by ``SessionReaper``, by ``recover_from_crash`` on
the next start, or by the SIGINT/SIGTERM handler.
"""

from __future__ import annotations

import logging
import secrets
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable

from .authorized_keys import ContentRenderer, content_hash
from .config_types import EngineConfig
from .deployer import AtomicFileDeployer
from .errors import InvalidTransitionError, NoSystemKeyError, SessionExpiredError
from .interfaces import (
    AccountManager,
    AuditWriter,
    BootstrapSessionStore,
    KeyReader,
    RemoteSession,
    TransportFactory,
)
from .keygen import generate_ed25519
from .models import Account, utcnow
from .secret import Secret
from .transport import TrustPolicy

logger = logging.getLogger(__name__)

TEMP_KEY_COMMENT = "keymaster-bootstrap-temp"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMMITTING = "committing"
    ORPHANED = "orphaned"


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMMITTING, SessionStatus.ORPHANED}),
    SessionStatus.COMMITTING: frozenset({SessionStatus.ORPHANED}),
    SessionStatus.ORPHANED: frozenset(),
}


@dataclass
class TemporaryKeyPair:
    public_key: str
    private_key: Secret = field(repr=False)

    @classmethod
    def generate(cls) -> "TemporaryKeyPair":
        pair = generate_ed25519(TEMP_KEY_COMMENT)
        return cls(public_key=pair.public_key, private_key=pair.private_key)

    def install_command(self) -> str:
        return (
            f"mkdir -p ~/.ssh && echo '{self.public_key}' >> ~/.ssh/authorized_keys"
            " && chmod 700 ~/.ssh && chmod 600 ~/.ssh/authorized_keys"
        )

    def zero(self) -> None:
        self.private_key.zero()


@dataclass
class BootstrapSession:
    id: str
    username: str
    hostname: str
    keypair: TemporaryKeyPair
    created_at: datetime
    expires_at: datetime
    label: str = ""
    tags: str = ""
    key_ids: list[int] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    updated_at: datetime | None = None

    def transition(self, new: SessionStatus, now: datetime | None = None) -> None:
        new = SessionStatus(new)
        if new not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"cannot move bootstrap session from {self.status.value} to {new.value}")
        self.status = new
        self.updated_at = now or utcnow()

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def target(self) -> str:
        return f"{self.username}@{self.hostname}"


class SessionRegistry:
    """Sessions in flight in this process, for the signal handler."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, BootstrapSession] = {}

    def register(self, session: BootstrapSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def unregister(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def sessions(self) -> list[BootstrapSession]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


class BootstrapWorkflow:
    def __init__(
            self,
            keys: KeyReader,
            accounts: AccountManager,
            sessions: BootstrapSessionStore,
            renderer: ContentRenderer,
            transport_factory: TransportFactory,
            audit_writer: AuditWriter,
            deployer: AtomicFileDeployer | None = None,
            config: EngineConfig | None = None,
            clock: Callable[[], datetime] = utcnow,
            registry: SessionRegistry | None = None,
    ):
        self.keys = keys
        self.accounts = accounts
        self.sessions = sessions
        self.renderer = renderer
        self.transport_factory = transport_factory
        self.audit_writer = audit_writer
        self.deployer = deployer or AtomicFileDeployer()
        self.config = config or EngineConfig()
        self.clock = clock
        self.registry = registry or SessionRegistry()
        self._cleanup_lock = threading.RLock()

    def begin(
            self,
            username: str,
            hostname: str,
            label: str = "",
            tags: str = "",
            key_ids: Iterable[int] = (),
    ) -> BootstrapSession:
        now = self.clock()
        session = BootstrapSession(
            id=secrets.token_hex(16),
            username=username,
            hostname=hostname,
            label=label,
            tags=tags,
            key_ids=list(key_ids),
            keypair=TemporaryKeyPair.generate(),
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.bootstrap_timeout_s),
        )
        self.sessions.save_bootstrap_session(session)
        self.registry.register(session)
        logger.info("bootstrap session %s started for %s", session.id, session.target)
        return session

    def _connect(self, session: BootstrapSession, policy: TrustPolicy, expected_host_key: str | None = None):
        credential = session.keypair.private_key.copy()
        try:
            return self.transport_factory.open(
                session.hostname,
                session.username,
                credential,
                policy,
                expected_host_key=expected_host_key,
                deadline=self.config.deadline(),
            )
        finally:
            credential.zero()

    def commit(self, session: BootstrapSession, expected_host_key: str | None = None) -> Account:
        if session.is_expired(self.clock()):
            self.cleanup(session, "session expired")
            raise SessionExpiredError(
                f"bootstrap session {session.id} expired at {session.expires_at:%Y-%m-%d %H:%M:%S}; start a new one"
            )
        target = self.keys.get_active_system_key()
        if target is None:
            raise NoSystemKeyError("no active system key found; generate one first")
        policy = TrustPolicy.PINNED if expected_host_key else TrustPolicy.TOFU

        remote: RemoteSession | None = None
        try:
            remote = self._connect(session, policy, expected_host_key)
            content = self.renderer.render_for_keys(session.key_ids, serial=target.serial)
            self.deployer.deploy_full(remote, content)

            session.transition(SessionStatus.COMMITTING, self.clock())
            self.sessions.update_bootstrap_session_status(session.id, SessionStatus.COMMITTING)
            # deploy_full already replaced the operator's line; this only matters if it lingers
            self.deployer.remove_lines(remote, [session.keypair.public_key])

            account = self.accounts.add_account(
                session.username, session.hostname, session.label, session.tags, serial=target.serial
            )
            # committed; a signal from here on must not clean the session up
            self.registry.unregister(session.id)
        except Exception as e:
            self._abort(session, remote, e)
            raise
        finally:
            if remote is not None:
                remote.close()

        for key_id in session.key_ids:
            try:
                self.accounts.assign_key_to_account(key_id, account.id)
            except Exception as e:
                logger.warning("could not assign key %s to %s: %s", key_id, account, e)
        try:
            self.accounts.update_account_key_hash(account.id, content_hash(content))
        except Exception as e:
            logger.warning("could not record key hash for %s: %s", account, e)

        self.audit_writer.log_action(
            "BOOTSTRAP_SUCCESS", f"account={account} serial={target.serial} session={session.id}"
        )
        self._finish(session)
        logger.info("bootstrap of %s committed at serial %d", account, target.serial)
        return account

    def _abort(self, session: BootstrapSession, remote: RemoteSession | None, error: BaseException) -> None:
        cleaned = False
        if remote is not None:
            try:
                self.deployer.remove_lines(remote, [session.keypair.public_key])
                cleaned = True
            except Exception as e:
                logger.warning("could not remove temporary key from %s: %s", session.target, e)

        if cleaned:
            self._record_failed(session, f"commit failed: {error}")
            self._finish(session)
            return

        logger.warning("bootstrap session %s left for the reaper", session.id)
        try:
            if session.status != SessionStatus.ORPHANED:
                session.transition(SessionStatus.ORPHANED, self.clock())
            self.sessions.update_bootstrap_session_status(session.id, SessionStatus.ORPHANED)
        except Exception as e:
            logger.error("could not mark bootstrap session %s orphaned: %s", session.id, e)
        self.registry.unregister(session.id)

    def _record_failed(self, session: BootstrapSession, reason: str) -> None:
        try:
            self.audit_writer.log_action("BOOTSTRAP_FAILED", f"{session.target}, reason: {reason}")
        except Exception as e:
            logger.warning("could not write audit entry for session %s: %s", session.id, e)

    def _finish(self, session: BootstrapSession) -> None:
        try:
            self.sessions.delete_bootstrap_session(session.id)
        finally:
            self.registry.unregister(session.id)
            session.keypair.zero()

    def remove_temp_key(self, session: BootstrapSession) -> bool:
        """Best effort: connect with the temporary key under VERIFY and drop its line."""
        if not session.keypair.private_key:
            logger.warning("no temporary key material for session %s; skipping remote cleanup", session.id)
            return False
        try:
            remote = self._connect(session, TrustPolicy.VERIFY)
        except Exception as e:
            logger.warning("remote cleanup for %s skipped: %s", session.target, e)
            return False
        try:
            self.deployer.remove_lines(remote, [session.keypair.public_key])
            return True
        except Exception as e:
            logger.warning("could not remove temporary key from %s: %s", session.target, e)
            return False
        finally:
            remote.close()

    def _is_pending(self, session: BootstrapSession) -> bool:
        return any(s.id == session.id for s in self.sessions.list_bootstrap_sessions())

    def cleanup(self, session: BootstrapSession, reason: str) -> bool:
        """Remote cleanup, one BOOTSTRAP_FAILED entry, then the row is deleted.

        Returns False if the session was already cleaned up elsewhere (reaper
        thread, signal handler or an earlier call).
        """
        with self._cleanup_lock:
            if not self._is_pending(session):
                return False
            self.remove_temp_key(session)
            self._record_failed(session, reason)
            self._finish(session)
            return True

    def cancel(self, session: BootstrapSession) -> bool:
        return self.cleanup(session, "cancelled")


class SessionReaper:
    def __init__(self, workflow: BootstrapWorkflow, interval_s: float | None = None):
        self.workflow = workflow
        self.interval_s = interval_s if interval_s is not None else workflow.config.reaper_interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _reason(self, session: BootstrapSession, now: datetime) -> str | None:
        if session.status == SessionStatus.ORPHANED:
            return "session orphaned"
        if session.status == SessionStatus.COMMITTING:
            since = session.updated_at or session.created_at
            if now - since > timedelta(seconds=self.workflow.config.committing_grace_s):
                return "stuck while committing"
            return None
        if session.is_expired(now):
            return "session expired"
        return None

    def reap_once(self, now: datetime | None = None) -> int:
        now = now or self.workflow.clock()
        reaped = 0
        for session in self.workflow.sessions.list_bootstrap_sessions():
            reason = self._reason(session, now)
            if reason is None:
                continue
            try:
                if self.workflow.cleanup(session, reason):
                    reaped += 1
            except Exception as e:
                logger.error("failed to reap bootstrap session %s: %s", session.id, e)
        if reaped:
            logger.info("reaped %d bootstrap session(s)", reaped)
        return reaped

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.reap_once()
            except Exception as e:
                logger.error("session reaper pass failed: %s", e)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="keymaster-session-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def recover_from_crash(reaper: SessionReaper) -> int:
    """Orphan rows a previous process left ACTIVE or COMMITTING, then reap."""
    workflow = reaper.workflow
    for session in workflow.sessions.list_bootstrap_sessions():
        if session.id in workflow.registry or session.status == SessionStatus.ORPHANED:
            continue
        session.transition(SessionStatus.ORPHANED, workflow.clock())
        workflow.sessions.update_bootstrap_session_status(session.id, SessionStatus.ORPHANED)
    return reaper.reap_once()


def install_signal_handler(
        registry: SessionRegistry,
        cleanup: Callable[[BootstrapSession], None],
        signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> dict[signal.Signals, object]:
    """Clean up in-flight sessions on SIGINT/SIGTERM, then exit.

    Must be called from the main thread. Returns the previous handlers.
    """

    def _handler(signum, frame):
        for session in registry.sessions():
            try:
                cleanup(session)
            except Exception as e:
                logger.error("cleanup of bootstrap session %s failed: %s", session.id, e)
        raise SystemExit(128 + signum)

    return {sig: signal.signal(sig, _handler) for sig in signals}
