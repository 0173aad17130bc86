from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .config_types import EngineConfig
from .deployer import AtomicFileDeployer
from .interfaces import AccountManager, AuditWriter, KeyReader, TransportFactory
from .models import Account, DecommissionResult
from .transport import TrustPolicy, connect_account, resolve_connect_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecommissionOptions:
    dry_run: bool = False
    force: bool = False
    skip_remote_cleanup: bool = False
    keep_other_content: bool = False


class DecommissionWorkflow:
    """Remote cleanup first, then the account row. Failures end up in the result."""

    def __init__(
            self,
            keys: KeyReader,
            accounts: AccountManager,
            transport_factory: TransportFactory,
            audit_writer: AuditWriter,
            deployer: AtomicFileDeployer | None = None,
            config: EngineConfig | None = None,
    ):
        self.keys = keys
        self.accounts = accounts
        self.transport_factory = transport_factory
        self.audit_writer = audit_writer
        self.deployer = deployer or AtomicFileDeployer()
        self.config = config or EngineConfig()

    def _log(self, action: str, details: str) -> None:
        try:
            self.audit_writer.log_action(action, details)
        except Exception as e:
            logger.warning("could not write %s audit entry: %s", action, e)

    def _cleanup_remote(self, account: Account, options: DecommissionOptions) -> str | None:
        key = resolve_connect_key(account, self.keys)
        session = connect_account(
            self.transport_factory, account, key, TrustPolicy.VERIFY, deadline=self.config.deadline()
        )
        try:
            if options.keep_other_content:
                self.deployer.deploy_selective(session, "")
                return None
            return self.deployer.remove_file(session, backup=True)
        finally:
            session.close()

    def decommission(self, account: Account, options: DecommissionOptions | None = None) -> DecommissionResult:
        options = options or DecommissionOptions()
        result = DecommissionResult(account=account)

        if options.dry_run:
            result.skipped = True
            result.skip_reason = "dry run"
            self._log("DECOMMISSION_DRYRUN", f"account={account}")
            return result

        if options.skip_remote_cleanup:
            logger.info("skipping remote cleanup for %s", account)
        else:
            try:
                result.backup_path = self._cleanup_remote(account, options)
                result.remote_cleanup_done = True
            except Exception as e:
                result.remote_cleanup_error = e
                if not options.force:
                    result.error = e
                    result.skipped = True
                    result.skip_reason = "remote cleanup failed; use force to delete anyway"
                    self._log("DECOMMISSION_FAILED", f"account={account} remote cleanup failed: {e}")
                    return result
                logger.warning("remote cleanup for %s failed, continuing (force): %s", account, e)

        try:
            self.accounts.delete_account(account.id)
            result.database_delete_done = True
        except Exception as e:
            result.error = e
            self._log("DECOMMISSION_FAILED", f"account={account} database delete failed: {e}")
            return result

        details = f"account={account}"
        if result.remote_cleanup_error is not None:
            details += f" (partial: remote cleanup failed: {result.remote_cleanup_error})"
        elif options.skip_remote_cleanup:
            details += " (remote cleanup skipped)"
        self._log("DECOMMISSION_SUCCESS", details)
        return result

    def decommission_many(
            self,
            accounts: Iterable[Account],
            options: DecommissionOptions | None,
            runner,
    ) -> list[DecommissionResult]:
        return runner.run(
            list(accounts),
            lambda account: self.decommission(account, options),
            result_type=DecommissionResult,
        )
