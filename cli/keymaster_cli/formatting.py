from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from rich.table import Table

from keymaster_core.models import DecommissionResult, FleetSummary, OperationResult

_STATUS_STYLE = {"ok": "green", "failed": "red", "skipped": "yellow"}


def format_list_timestamp(value: datetime | str | None) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return text
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    ms = dt.microsecond // 1000
    if ms:
        return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def format_status(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def result_detail(result: OperationResult) -> str:
    if isinstance(result, DecommissionResult) and result.status != "skipped":
        return result.summary()
    if result.error is not None:
        return str(result.error)
    if result.skipped:
        return result.skip_reason
    return ""


def results_table(results: Iterable[OperationResult], title: str) -> Table:
    table = Table(title=title)
    table.add_column("id", style="bold", justify="right")
    table.add_column("account")
    table.add_column("status", no_wrap=True)
    table.add_column("details")
    for r in results:
        table.add_row(str(r.account.id), str(r.account), format_status(r.status), result_detail(r))
    return table


def summary_line(summary: FleetSummary) -> str:
    return (
        f"{summary.total} account(s): {summary.succeeded} ok, "
        f"{summary.failed} failed, {summary.skipped} skipped"
    )
