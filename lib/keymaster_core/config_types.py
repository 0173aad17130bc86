from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    connect_timeout_s: float = 10.0
    sftp_timeout_s: float = 60.0
    host_key_timeout_s: float = 5.0
    max_workers: int = 16
    bootstrap_timeout_s: float = 1800.0
    committing_grace_s: float = 300.0
    reaper_interval_s: float = 300.0

    def deadline(self) -> float:
        """Monotonic deadline covering one connect plus one SFTP operation."""
        return time.monotonic() + self.connect_timeout_s + self.sftp_timeout_s


def bounded_timeout(timeout_s: float, deadline: float | None) -> float:
    if deadline is None:
        return timeout_s
    remaining = deadline - time.monotonic()
    return max(0.1, min(timeout_s, remaining))
