"""Harvest Metrics and Structured Logging Module.

Provides:
- Structured JSON logging of every classified fetch attempt
- Run-level counters (runs, fallbacks, records)
- Prometheus-compatible text export

Usage:
    from .metrics import HarvestMetrics, log_fetch_attempt

    log_fetch_attempt(
        run_id="a1b2c3",
        product="acme-crm",
        strategy="static_http",
        page=1,
        verdict="soft_block",
        reason="status_403",
        execution_time_ms=150.0,
    )

    summary = HarvestMetrics().get_summary()
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Any

logger = logging.getLogger("harvest.metrics")


@dataclass
class AttemptLog:
    """Structured log entry for one classified fetch attempt."""

    timestamp: str
    run_id: str
    product: str
    strategy: str
    page: int
    verdict: str  # success, soft_block, hard_block, network_failure
    execution_time_ms: float
    reason: str | None = None
    status_code: int | None = None
    identity: str | None = None
    records: int | None = None

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.__dict__, default=str)


class HarvestMetrics:
    """Thread-safe metrics collector for the harvester.

    Tracks:
    - Attempts per strategy and per verdict
    - Block reasons distribution
    - Attempt timings
    - Runs, fallbacks and harvested records
    """

    _instance = None
    _lock = Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize metrics storage."""
        self._lock = Lock()
        self._start_time = datetime.now(UTC)

        self.attempts_total = 0
        self.attempts_by_strategy = defaultdict(int)
        self.attempts_by_verdict = defaultdict(int)
        self.block_reasons = defaultdict(int)

        self.runs_total = 0
        self.runs_succeeded = 0
        self.runs_failed = 0
        self.fallbacks_total = 0
        self.records_total = 0

        self.execution_times: list[float] = []

    def record_attempt(self, log: AttemptLog) -> None:
        with self._lock:
            self.attempts_total += 1
            self.attempts_by_strategy[log.strategy] += 1
            self.attempts_by_verdict[log.verdict] += 1
            if log.verdict != "success" and log.reason:
                self.block_reasons[log.reason] += 1

            self.execution_times.append(log.execution_time_ms)
            # Keep only last 10000 timing samples to prevent memory growth
            if len(self.execution_times) > 10000:
                self.execution_times = self.execution_times[-10000:]

    def record_run(self, success: bool, records: int, strategies_attempted: int) -> None:
        with self._lock:
            self.runs_total += 1
            if success:
                self.runs_succeeded += 1
            else:
                self.runs_failed += 1
            self.records_total += records
            if strategies_attempted > 1:
                self.fallbacks_total += strategies_attempted - 1

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": (datetime.now(UTC) - self._start_time).total_seconds(),
                "attempts": {
                    "total": self.attempts_total,
                    "by_strategy": dict(self.attempts_by_strategy),
                    "by_verdict": dict(self.attempts_by_verdict),
                },
                "blocks": dict(self.block_reasons),
                "runs": {
                    "total": self.runs_total,
                    "succeeded": self.runs_succeeded,
                    "failed": self.runs_failed,
                    "fallbacks": self.fallbacks_total,
                    "records": self.records_total,
                },
                "timing": self._calculate_timing_stats(),
            }

    def _calculate_timing_stats(self) -> dict[str, Any]:
        if not self.execution_times:
            return {"samples": 0}

        sorted_times = sorted(self.execution_times)
        count = len(sorted_times)

        return {
            "samples": count,
            "min_ms": round(sorted_times[0], 2),
            "max_ms": round(sorted_times[-1], 2),
            "mean_ms": round(sum(sorted_times) / count, 2),
            "p50_ms": round(sorted_times[count // 2], 2),
            "p90_ms": round(sorted_times[int(count * 0.9)], 2),
        }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus format."""
        lines = [
            f"harvest_attempts_total {self.attempts_total}",
            f"harvest_runs_total {self.runs_total}",
            f"harvest_runs_failed_total {self.runs_failed}",
            f"harvest_fallbacks_total {self.fallbacks_total}",
            f"harvest_records_total {self.records_total}",
        ]
        for strategy, count in self.attempts_by_strategy.items():
            lines.append(f'harvest_attempts_by_strategy{{strategy="{strategy}"}} {count}')
        for verdict, count in self.attempts_by_verdict.items():
            lines.append(f'harvest_attempts_by_verdict{{verdict="{verdict}"}} {count}')
        for reason, count in self.block_reasons.items():
            lines.append(f'harvest_blocks_by_reason{{reason="{reason}"}} {count}')
        return "\n".join(lines)

    @classmethod
    def reset(cls) -> None:
        """Reset all metrics (for testing)."""
        if cls._instance:
            cls._instance._initialize()


# Global metrics instance
_metrics = HarvestMetrics()


def log_fetch_attempt(
    run_id: str,
    product: str,
    strategy: str,
    page: int,
    verdict: str,
    execution_time_ms: float,
    reason: str | None = None,
    status_code: int | None = None,
    identity: str | None = None,
    records: int | None = None,
) -> AttemptLog:
    """Record and log one classified fetch attempt.

    Returns:
        The AttemptLog that was recorded
    """
    log = AttemptLog(
        timestamp=datetime.now(UTC).isoformat(),
        run_id=run_id,
        product=product,
        strategy=strategy,
        page=page,
        verdict=verdict,
        execution_time_ms=execution_time_ms,
        reason=reason,
        status_code=status_code,
        identity=identity,
        records=records,
    )

    _metrics.record_attempt(log)

    if verdict == "success":
        logger.info(log.to_json())
    else:
        logger.warning(log.to_json())

    return log


def record_run(success: bool, records: int, strategies_attempted: int) -> None:
    _metrics.record_run(success, records, strategies_attempted)


def get_metrics_summary() -> dict[str, Any]:
    """Get current metrics summary."""
    return _metrics.get_summary()


def get_prometheus_metrics() -> str:
    """Get metrics in Prometheus format."""
    return _metrics.to_prometheus()
