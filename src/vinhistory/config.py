from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PollingConfig:
    max_attempts: int = 600  # 10 minutes at 1s intervals
    interval_ms: int = 1000

    @property
    def budget_seconds(self) -> float:
        return self.max_attempts * self.interval_ms / 1000.0
