"""Metric math helpers and the pipeline counter collector.

``PipelineMetrics`` is an ordinary object: the app builds one at startup and
hands it to the runners, tests build a fresh one per case.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict


def safe_div(numerator: float | int, denominator: float | int) -> float:
    if denominator in (0, 0.0):
        return 0.0
    return float(numerator) / float(denominator)


def drift_pct(fast_path_value: int, authoritative_value: int) -> float:
    """Unsigned drift of the fast-path counter as a fraction of the authoritative count.

    0.0 when the authoritative count is 0; the sign of the drift lives in
    ``last_drift``.
    """
    return safe_div(abs(fast_path_value - authoritative_value), authoritative_value)


def drift_exceeds_threshold(drift: int, authoritative_value: int, *, abs_threshold: float, pct_threshold: float) -> bool:
    return abs(drift) > max(abs_threshold, pct_threshold * authoritative_value)


class PipelineMetrics:
    """Thread-safe named counters for upload and reconciliation cycles."""

    UPLOAD_CLAIMED = "ocq_rows_claimed_total"
    UPLOAD_COMPLETED = "ocq_rows_completed_total"
    UPLOAD_RETRIED = "ocq_rows_retried_total"
    UPLOAD_FAILED = "ocq_rows_failed_total"
    CONCURRENCY_DEFERRED = "ocq_concurrency_deferred_total"
    ATTEMPT_CAP_SWEPT = "ocq_attempt_cap_swept_total"
    STUCK_RECOVERED = "ocq_stuck_recovered_total"
    RECONCILE_COMPLETED = "billing_reconciliation_completed_total"
    RECONCILE_FAILED = "billing_reconciliation_failed_total"
    RECONCILE_DRIFT_CORRECTED = "billing_reconciliation_drift_corrected_total"
    CACHE_UNAVAILABLE = "billing_usage_cache_unavailable_total"
    CRON_LOCK_SKIPPED = "cron_lock_skipped_total"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)

    def increment(self, name: str, amount: int = 1) -> None:
        if amount == 0:
            return
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


__all__ = ["safe_div", "drift_pct", "drift_exceeds_threshold", "PipelineMetrics"]
