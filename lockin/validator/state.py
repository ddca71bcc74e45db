"""Validator-owned mutable state: registry standing and processing counters.

Owned by the ValidatorNode and passed explicitly to whoever updates it.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from lockin.validator.models import ValidatorInfo


@dataclass
class ValidatorState:
    """Standing of this validator as last reported by the registry."""

    validator_id: str
    active: bool = True
    reputation: int = 0
    total_validations: int = 0
    last_refreshed: float | None = None

    def apply(self, info: ValidatorInfo) -> None:
        self.active = info.active
        self.reputation = info.reputation
        self.total_validations = info.total_validations
        self.last_refreshed = time.time()


@dataclass
class ProcessingStats:
    """Aggregate counters exposed by the stats endpoint."""

    discovered: int = 0
    duplicates_dropped: int = 0
    backpressure_skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    approvals: int = 0
    rejections: int = 0
    degraded_adjudications: int = 0
    failures_by_reason: Counter = field(default_factory=Counter)
    started_at: float = field(default_factory=time.time)

    def record_failure(self, reason: str) -> None:
        self.failed += 1
        self.failures_by_reason[reason] += 1

    def snapshot(self) -> dict[str, Any]:
        return {
            "discovered": self.discovered,
            "duplicates_dropped": self.duplicates_dropped,
            "backpressure_skipped": self.backpressure_skipped,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "approvals": self.approvals,
            "rejections": self.rejections,
            "degraded_adjudications": self.degraded_adjudications,
            "failures_by_reason": dict(self.failures_by_reason),
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }


__all__ = ["ProcessingStats", "ValidatorState"]
