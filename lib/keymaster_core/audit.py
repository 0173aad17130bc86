from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .authorized_keys import ContentRenderer, content_hash, find_managed_block, normalize_content, parse_key_line
from .config_types import EngineConfig
from .deployer import AtomicFileDeployer
from .errors import DatabaseInconsistencyError, DriftDetectedError, NotDeployedError
from .interfaces import AccountManager, AuditWriter, KeyReader, TransportFactory
from .models import Account, AuditResult
from .transport import TrustPolicy, connect_account

logger = logging.getLogger(__name__)


class AuditMode(str, Enum):
    SERIAL = "serial"
    STRICT = "strict"


@dataclass
class DriftAnalysis:
    missing_keys: list[str] = field(default_factory=list)
    extra_keys: list[str] = field(default_factory=list)
    missing_header: bool = False
    serial_mismatch: bool = False
    expected_serial: int = 0
    actual_serial: int | None = None

    @property
    def has_drift(self) -> bool:
        return bool(self.missing_keys or self.extra_keys or self.missing_header or self.serial_mismatch)

    @property
    def classification(self) -> str:
        if self.missing_header or self.serial_mismatch or self.extra_keys:
            return "critical"
        if self.missing_keys:
            return "warning"
        return "info"

    def describe(self) -> str:
        parts = [f"classification={self.classification}"]
        if self.missing_header:
            parts.append("managed header missing")
        if self.serial_mismatch:
            parts.append(f"serial {self.actual_serial} != expected {self.expected_serial}")
        if self.missing_keys:
            parts.append(f"{len(self.missing_keys)} key(s) missing")
        if self.extra_keys:
            parts.append(f"{len(self.extra_keys)} unexpected key(s)")
        return "; ".join(parts)


def _key_identities(text: str) -> set[str]:
    out: set[str] = set()
    for line in normalize_content(text).splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        try:
            algorithm, data, _ = parse_key_line(stripped)
        except ValueError:
            out.add(stripped)
            continue
        out.add(f"{algorithm} {data}")
    return out


def analyze_drift(expected: str, actual: str, expected_serial: int) -> DriftAnalysis:
    """Line-level comparison of expected and actual authorized_keys content."""
    expected_keys = _key_identities(expected)
    actual_keys = _key_identities(actual)
    block = find_managed_block(actual)
    analysis = DriftAnalysis(
        missing_keys=sorted(expected_keys - actual_keys),
        extra_keys=sorted(actual_keys - expected_keys),
        expected_serial=expected_serial,
    )
    if block is None:
        analysis.missing_header = True
    else:
        analysis.actual_serial = block.serial
        analysis.serial_mismatch = block.serial != expected_serial
    return analysis


class AuditEngine:
    """Read-only drift checks. Flagging an account dirty is the only write."""

    def __init__(
            self,
            keys: KeyReader,
            renderer: ContentRenderer,
            transport_factory: TransportFactory,
            accounts: AccountManager,
            audit_writer: AuditWriter,
            config: EngineConfig | None = None,
            deployer: AtomicFileDeployer | None = None,
    ):
        self.keys = keys
        self.renderer = renderer
        self.transport_factory = transport_factory
        self.accounts = accounts
        self.audit_writer = audit_writer
        self.config = config or EngineConfig()
        self.deployer = deployer or AtomicFileDeployer()

    def audit(self, account: Account, mode: AuditMode = AuditMode.STRICT) -> None:
        if not account.deployed:
            raise NotDeployedError(f"{account} has never been deployed")
        if AuditMode(mode) == AuditMode.SERIAL:
            self._audit_serial(account)
        else:
            self._audit_strict(account)

    def audit_result(self, account: Account, mode: AuditMode = AuditMode.STRICT) -> AuditResult:
        """Audit wrapped as a result, for fleet runs."""
        mode = AuditMode(mode)
        try:
            self.audit(account, mode)
        except NotDeployedError as e:
            return AuditResult(account=account, skipped=True, skip_reason=str(e), mode=mode.value)
        return AuditResult(account=account, mode=mode.value)

    def _audit_serial(self, account: Account) -> None:
        # No file read here: logging in under VERIFY with this serial's key is the
        # whole check. A header naming another serial only shows up in strict mode.
        key = self.keys.get_system_key_by_serial(account.serial)
        if key is None:
            raise DriftDetectedError(f"{account}: no system key with serial {account.serial}")
        session = connect_account(
            self.transport_factory, account, key, TrustPolicy.VERIFY, deadline=self.config.deadline()
        )
        session.close()
        logger.debug("serial audit of %s passed (serial %d)", account, account.serial)

    def _audit_strict(self, account: Account) -> None:
        key = self.keys.get_system_key_by_serial(account.serial)
        if key is None:
            raise DatabaseInconsistencyError(
                f"{account} is on serial {account.serial} but no system key with that serial exists"
            )
        session = connect_account(
            self.transport_factory, account, key, TrustPolicy.VERIFY, deadline=self.config.deadline()
        )
        try:
            current = self.deployer.fetch_current(session) or b""
        finally:
            session.close()

        expected = self.renderer.render(account.id, serial=account.serial)
        actual = current.decode("utf-8", errors="replace")
        expected_hash = content_hash(expected)
        actual_hash = content_hash(actual)
        if expected_hash == actual_hash:
            logger.debug("strict audit of %s passed", account)
            return

        analysis = analyze_drift(expected, actual, account.serial)
        self.audit_writer.log_action(
            "AUDIT_DRIFT",
            f"account={account} expected={expected_hash} actual={actual_hash} {analysis.describe()}",
        )
        try:
            self.accounts.update_account_is_dirty(account.id, True)
        except Exception as e:
            logger.warning("could not flag %s as dirty: %s", account, e)
        raise DriftDetectedError(
            f"{account}: authorized_keys differs from expected ({analysis.classification})",
            expected_hash=expected_hash,
            actual_hash=actual_hash,
        )
