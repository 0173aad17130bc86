from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: int
    username: str
    hostname: str
    label: str = ""
    tags: str = ""
    serial: int = 0
    is_active: bool = True
    is_dirty: bool = False
    key_hash: str = ""

    def __str__(self) -> str:
        base = f"{self.username}@{self.hostname}"
        if self.label:
            return f"{self.label} ({base})"
        return base

    @property
    def deployed(self) -> bool:
        return self.serial != 0


@dataclass
class SystemKey:
    id: int
    serial: int
    public_key: str
    private_key: str = field(repr=False)
    is_active: bool = False


@dataclass
class PublicKey:
    id: int
    algorithm: str
    key_data: str
    comment: str = ""
    is_global: bool = False
    expires_at: datetime | None = None

    def line(self) -> str:
        if self.comment:
            return f"{self.algorithm} {self.key_data} {self.comment}"
        return f"{self.algorithm} {self.key_data}"

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    action: str
    details: str


@dataclass
class OperationResult:
    account: Account
    error: BaseException | None = None
    skipped: bool = False
    skip_reason: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if self.skipped:
            return "skipped"
        return "ok"


@dataclass
class DeployResult(OperationResult):
    serial: int = 0


@dataclass
class AuditResult(OperationResult):
    mode: str = ""


@dataclass
class DecommissionResult(OperationResult):
    remote_cleanup_done: bool = False
    remote_cleanup_error: BaseException | None = None
    database_delete_done: bool = False
    backup_path: str | None = None

    def summary(self) -> str:
        if self.status == "skipped":
            return f"SKIPPED {self.account}: {self.skip_reason}"
        details: list[str] = []
        if self.remote_cleanup_error is not None:
            details.append(f"remote cleanup failed: {self.remote_cleanup_error}")
        elif self.remote_cleanup_done:
            details.append("authorized_keys cleaned")
        if self.database_delete_done:
            details.append("removed from database")
        elif self.error is not None and self.error is not self.remote_cleanup_error:
            details.append(f"database delete failed: {self.error}")
        if self.backup_path:
            details.append(f"backup: {self.backup_path}")
        if self.error is not None:
            status = "FAILED"
        elif self.remote_cleanup_error is not None:
            status = "PARTIAL"
        else:
            status = "SUCCESS"
        return f"{status} {self.account}: {', '.join(details) or 'nothing to do'}"


@dataclass(frozen=True)
class FleetSummary:
    succeeded: int
    failed: int
    skipped: int

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped
