from __future__ import annotations

import logging
import random
import time
from typing import Callable, Iterable

from .authorized_keys import ContentRenderer, content_hash, find_managed_block
from .config_types import EngineConfig
from .deployer import AtomicFileDeployer
from .errors import DatabaseInconsistencyError, NoSystemKeyError, StoreBusyError
from .interfaces import AccountManager, KeyReader, TransportFactory
from .models import Account, DeployResult
from .transport import TrustPolicy, connect_account, resolve_connect_key

logger = logging.getLogger(__name__)

STORE_BUSY_RETRIES = 5


def retry_store_busy(
        fn: Callable[[], None],
        *,
        attempts: int = STORE_BUSY_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
) -> None:
    for attempt in range(1, attempts + 1):
        try:
            fn()
            return
        except StoreBusyError:
            if attempt == attempts:
                raise
            delay = 0.05 * attempt + random.uniform(0, 0.05)
            logger.debug("store busy, retrying in %.2fs (attempt %d/%d)", delay, attempt, attempts)
            sleep(delay)


class DeployService:
    def __init__(
            self,
            keys: KeyReader,
            accounts: AccountManager,
            renderer: ContentRenderer,
            transport_factory: TransportFactory,
            deployer: AtomicFileDeployer | None = None,
            config: EngineConfig | None = None,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.keys = keys
        self.accounts = accounts
        self.renderer = renderer
        self.transport_factory = transport_factory
        self.deployer = deployer or AtomicFileDeployer()
        self.config = config or EngineConfig()
        self._sleep = sleep

    def deploy_account(self, account: Account) -> DeployResult:
        active = self.keys.get_active_system_key()
        if active is None:
            raise NoSystemKeyError("no active system key found; generate one first")
        connect_key = resolve_connect_key(account, self.keys)
        content = self.renderer.render(account.id)

        session = connect_account(
            self.transport_factory, account, connect_key, TrustPolicy.VERIFY, deadline=self.config.deadline()
        )
        try:
            self.deployer.deploy_full(session, content)
        finally:
            session.close()

        retry_store_busy(lambda: self.accounts.update_account_serial(account.id, active.serial), sleep=self._sleep)
        account.serial = active.serial
        try:
            self.accounts.update_account_key_hash(account.id, content_hash(content))
            self.accounts.update_account_is_dirty(account.id, False)
            account.is_dirty = False
        except Exception as e:
            logger.warning("deployed %s but could not record its key hash: %s", account, e)
        logger.info("deployed %s at serial %d", account, active.serial)
        return DeployResult(account=account, serial=active.serial)

    def remove_keys(self, account: Account, key_ids: Iterable[int]) -> DeployResult:
        """Drop ``key_ids`` from the managed block, leaving other content alone."""
        excluded = list(key_ids)
        connect_key = resolve_connect_key(account, self.keys)
        session = connect_account(
            self.transport_factory, account, connect_key, TrustPolicy.VERIFY, deadline=self.config.deadline()
        )
        try:
            current = self.deployer.fetch_current(session)
            block = find_managed_block(current.decode("utf-8", errors="surrogateescape")) if current else None
            if block is None:
                logger.info("%s has no managed block; nothing to remove", account)
                return DeployResult(account=account, skipped=True, skip_reason="no managed block", serial=account.serial)
            if block.serial is None or self.keys.get_system_key_by_serial(block.serial) is None:
                raise DatabaseInconsistencyError(
                    f"{account}: managed block has serial {block.serial} with no matching system key"
                )
            new_block = self.renderer.render(account.id, excluded_key_ids=excluded, serial=block.serial)
            self.deployer.deploy_selective(session, new_block)
        finally:
            session.close()
        return DeployResult(account=account, serial=block.serial)
