from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, Sequence

from .interfaces import Reporter
from .models import Account, FleetSummary, OperationResult

logger = logging.getLogger(__name__)


class LoggingReporter:
    def report(self, message: str) -> None:
        logger.info(message)


def _as_result(account: Account, value, result_type: type[OperationResult]) -> OperationResult:
    if isinstance(value, OperationResult):
        return value
    return result_type(account=account)


class FleetRunner:
    """Runs one per-account operation over many accounts on a bounded pool.

    Every account gets exactly one result, in input order. An exception
    raised by the operation becomes that account's ``error``.
    """

    def __init__(self, max_workers: int = 16, reporter: Reporter | None = None):
        self.max_workers = max(1, int(max_workers))
        self.reporter = reporter or LoggingReporter()

    def run(
            self,
            accounts: Sequence[Account],
            operation: Callable[[Account], object],
            result_type: type[OperationResult] = OperationResult,
    ) -> list[OperationResult]:
        accounts = list(accounts)
        if not accounts:
            return []
        results: list[OperationResult | None] = [None] * len(accounts)
        workers = min(self.max_workers, len(accounts))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keymaster-fleet") as pool:
            futures = {pool.submit(operation, account): i for i, account in enumerate(accounts)}
            for fut in as_completed(futures):
                i = futures[fut]
                account = accounts[i]
                try:
                    result = _as_result(account, fut.result(), result_type)
                except Exception as e:
                    result = result_type(account=account, error=e)
                results[i] = result
                self._report(result)

        return [r for r in results if r is not None]

    def _report(self, result: OperationResult) -> None:
        if result.error is not None:
            message = f"{result.account}: failed: {result.error}"
        elif result.skipped:
            message = f"{result.account}: skipped ({result.skip_reason})"
        else:
            message = f"{result.account}: ok"
        try:
            self.reporter.report(message)
        except Exception as e:
            logger.debug("reporter failed: %s", e)


def summarize(results: Iterable[OperationResult]) -> FleetSummary:
    succeeded = failed = skipped = 0
    for r in results:
        if r.error is not None:
            failed += 1
        elif r.skipped:
            skipped += 1
        else:
            succeeded += 1
    return FleetSummary(succeeded=succeeded, failed=failed, skipped=skipped)
