from __future__ import annotations

import socket
import threading

from keymaster_core.audit import AuditEngine, AuditMode
from keymaster_core.errors import ConnectionTimeoutError
from keymaster_core.fleet import FleetRunner, summarize
from keymaster_core.models import AuditResult, OperationResult


class ListReporter:
    def __init__(self):
        self.messages: list[str] = []
        self._lock = threading.Lock()

    def report(self, message: str) -> None:
        with self._lock:
            self.messages.append(message)


def _fleet_threads() -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name.startswith("keymaster-fleet")]


def test_one_timeout_does_not_stop_the_fleet(store, renderer, transport, make_account, system_key) -> None:
    accounts = [make_account(f"host{i}", serial=system_key.serial) for i in range(1, 6)]
    for i in range(1, 6):
        if i != 3:
            transport.host(f"host{i}").put_authorized_keys(renderer.render(accounts[i - 1].id))
    transport.host("host3").connect_error = socket.timeout("timed out")
    engine = AuditEngine(store, renderer, transport, store, store)
    reporter = ListReporter()

    results = FleetRunner(max_workers=4, reporter=reporter).run(
        accounts, lambda a: engine.audit_result(a, AuditMode.STRICT), result_type=AuditResult
    )

    assert [r.account.hostname for r in results] == [f"host{i}" for i in range(1, 6)]
    assert [r.status for r in results] == ["ok", "ok", "failed", "ok", "ok"]
    assert isinstance(results[2].error, ConnectionTimeoutError)
    assert isinstance(results[2], AuditResult)
    assert len(reporter.messages) == 5
    assert _fleet_threads() == []


def test_plain_return_values_become_results(make_account) -> None:
    accounts = [make_account("a"), make_account("b")]
    results = FleetRunner(max_workers=8).run(accounts, lambda a: None)
    assert all(type(r) is OperationResult and r.ok for r in results)


def test_empty_fleet() -> None:
    assert FleetRunner().run([], lambda a: None) == []


def test_summarize(make_account) -> None:
    a = make_account()
    summary = summarize(
        [
            OperationResult(account=a),
            OperationResult(account=a, error=RuntimeError("x")),
            OperationResult(account=a, skipped=True, skip_reason="dry run"),
            OperationResult(account=a),
        ]
    )
    assert (summary.succeeded, summary.failed, summary.skipped, summary.total) == (2, 1, 1, 4)
