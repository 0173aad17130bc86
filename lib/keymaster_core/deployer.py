from __future__ import annotations

import logging
import time

from .authorized_keys import ManagedBlock, remove_matching_lines, replace_managed_block
from .errors import DeploymentError, RemoteFileMissingError
from .interfaces import RemoteSession

logger = logging.getLogger(__name__)

SSH_DIR = ".ssh"
AUTHORIZED_KEYS = ".ssh/authorized_keys"
BACKUP_PATH = ".ssh/authorized_keys.keymaster-bak"
DECOMMISSIONED_PATH = ".ssh/authorized_keys.keymaster-decommissioned"
TEMP_PREFIX = ".ssh/authorized_keys.keymaster."


def _decode(data: bytes) -> str:
    # surrogateescape keeps undecodable bytes intact across a rewrite
    return data.decode("utf-8", errors="surrogateescape")


def _encode(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


class AtomicFileDeployer:
    """All-or-nothing rewrites of ``~/.ssh/authorized_keys`` over one session.

    SFTP rename refuses to overwrite, so the live file is moved aside to a
    backup first and restored if the final rename fails.
    """

    def __init__(self, clock_ns=time.time_ns):
        self._clock_ns = clock_ns

    def _ensure_ssh_dir(self, session: RemoteSession) -> None:
        if not session.exists(SSH_DIR):
            session.mkdir(SSH_DIR)
        session.chmod(SSH_DIR, 0o700)

    def _discard(self, session: RemoteSession, path: str) -> None:
        try:
            session.remove(path)
        except Exception as e:
            logger.debug("could not remove %s on %s: %s", path, session.host, e)

    def deploy_full(self, session: RemoteSession, content: str | bytes) -> None:
        data = _encode(content) if isinstance(content, str) else content
        temp_path = f"{TEMP_PREFIX}{self._clock_ns()}"
        backed_up = False
        installed = False
        try:
            self._ensure_ssh_dir(session)
            session.write(temp_path, data)
            session.chmod(temp_path, 0o600)

            self._discard(session, BACKUP_PATH)
            try:
                session.rename(AUTHORIZED_KEYS, BACKUP_PATH)
                backed_up = True
            except Exception as e:
                # first deploy: nothing to back up
                logger.debug("no existing authorized_keys to back up on %s: %s", session.host, e)

            session.rename(temp_path, AUTHORIZED_KEYS)
            installed = True
        except Exception as e:
            if backed_up:
                try:
                    session.rename(BACKUP_PATH, AUTHORIZED_KEYS)
                except Exception as restore_err:
                    logger.error(
                        "failed to restore authorized_keys from backup on %s: %s", session.host, restore_err
                    )
            raise DeploymentError(f"failed to deploy authorized_keys on {session.host}: {e}") from e
        finally:
            if not installed:
                self._discard(session, temp_path)

        if backed_up:
            self._discard(session, BACKUP_PATH)
        logger.debug("deployed %d bytes to %s", len(data), session.host)

    def fetch_current(self, session: RemoteSession) -> bytes | None:
        try:
            return session.read(AUTHORIZED_KEYS)
        except RemoteFileMissingError:
            return None

    def _write_or_remove(self, session: RemoteSession, text: str) -> None:
        if text.strip():
            self.deploy_full(session, text)
            return
        try:
            session.remove(AUTHORIZED_KEYS)
        except RemoteFileMissingError:
            pass
        except Exception as e:
            raise DeploymentError(f"failed to remove empty authorized_keys on {session.host}: {e}") from e

    def deploy_selective(self, session: RemoteSession, new_block: str) -> ManagedBlock | None:
        """Replace only the managed block, keeping everything around it untouched.

        Returns the block that was found, or ``None`` if there was none.
        """
        current = self.fetch_current(session)
        text = _decode(current) if current is not None else ""
        updated, block = replace_managed_block(text, new_block)
        if updated == text:
            logger.debug("managed block on %s already up to date", session.host)
            return block
        self._write_or_remove(session, updated)
        return block

    def remove_lines(self, session: RemoteSession, lines: list[str]) -> bool:
        current = self.fetch_current(session)
        if current is None:
            return False
        text = _decode(current)
        updated = remove_matching_lines(text, lines)
        if updated == text:
            return False
        self._write_or_remove(session, updated)
        return True

    def remove_file(self, session: RemoteSession, backup: bool = True) -> str | None:
        if not session.exists(AUTHORIZED_KEYS):
            return None
        try:
            if backup:
                self._discard(session, DECOMMISSIONED_PATH)
                session.rename(AUTHORIZED_KEYS, DECOMMISSIONED_PATH)
                return DECOMMISSIONED_PATH
            session.remove(AUTHORIZED_KEYS)
            return None
        except Exception as e:
            raise DeploymentError(f"failed to remove authorized_keys on {session.host}: {e}") from e
