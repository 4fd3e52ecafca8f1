"""Core application configuration & tunable operational rules.

Every threshold that may evolve (attempt caps, stuck thresholds, backoff,
concurrency limits, drift tolerances, cron lock TTLs) is centralized here so
it can be adjusted without diving into service logic. Values are read from
environment variables once at import; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	try:
		return int(raw)
	except ValueError:
		return default


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	try:
		return float(raw)
	except ValueError:
		return default


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None:
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, int] = {
	# Hard attempt cap; rows at or above it are never claimed and get swept to FAILED.
	"max_attempts": _env_int("OCQ_MAX_ATTEMPTS", 5),
	# PROCESSING rows older than this are treated as abandoned by a crashed worker.
	"stuck_processing_minutes": _env_int("OCQ_STUCK_PROCESSING_MINUTES", 15),
	"batch_size_worker": _env_int("OCQ_BATCH_SIZE_WORKER", 50),
	"default_limit_cron": _env_int("OCQ_DEFAULT_LIMIT_CRON", 50),
	"max_limit_cron": _env_int("OCQ_MAX_LIMIT_CRON", 500),
	"list_groups_limit": _env_int("OCQ_LIST_GROUPS_LIMIT", 100),
	"last_error_max_len": 1000,
	"error_code_max_len": 64,
	# Wall-clock budget for one upload cycle.
	"run_budget_seconds": _env_int("OCQ_RUN_BUDGET_SECONDS", 240),
	# Operator sweep input bounds.
	"attempt_cap_min": 1,
	"attempt_cap_max": 20,
	"min_age_minutes_max": 1440,
	"stuck_minutes_min": 1,
	"stuck_minutes_max": 60,
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": _env_int("OCQ_BACKOFF_BASE_SECONDS", 300),     # 5 minutes
	"factor": 2,                                                   # Exponential factor
	"max_seconds": _env_int("OCQ_BACKOFF_MAX_SECONDS", 86400),     # 24 hours
	# Concurrency deferral: 30s + up to 10s jitter, applied by the runner
	"concurrency_retry_base_seconds": 30,
	"concurrency_retry_spread_seconds": 10,
}

# ------------------------------ Concurrency ------------------------------- #
CONCURRENCY_SETTINGS: dict[str, int] = {
	"per_site_provider": max(1, _env_int("CONCURRENCY_PER_SITE_PROVIDER", 2)),
	# 0 disables the global gate
	"global_per_provider": max(0, _env_int("CONCURRENCY_GLOBAL_PER_PROVIDER", 10)),
	"semaphore_ttl_ms": max(60_000, _env_int("CONCURRENCY_SEMAPHORE_TTL_MS", 120_000)),
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive provider failures before OPEN
	"open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
	"half_open_probe_count": 5,      # Rows allowed through in HALF_OPEN
}

# ----------------------------- Reconciliation ----------------------------- #
RECONCILIATION_SETTINGS: dict[str, int | float | str] = {
	# Drift is flagged when |drift| > max(abs, pct * authoritative)
	"drift_threshold_abs": _env_int("RECONCILE_DRIFT_THRESHOLD_ABS", 10),
	"drift_threshold_pct": _env_float("RECONCILE_DRIFT_THRESHOLD_PCT", 0.01),
	"batch_size": _env_int("RECONCILE_BATCH_SIZE", 50),
	"max_batch_size": 500,
	# Sites with billable events in this trailing window count as active
	"active_window_hours": 24,
	"cache_key_prefix": "usage:",
	"cache_max_ttl_seconds": 62 * 24 * 3600,
	"backfill_max_months": 12,
}

# ---------------------------------- Cron ---------------------------------- #
CRON_SETTINGS: dict[str, object] = {
	"secret": os.getenv("CRON_SECRET") or None,
	"lock_key_prefix": "cron_lock:",
	"lock_ttl_seconds": {
		"upload": 660,
		"attempt_cap": 300,
		"recover_processing": 660,
		"reconcile_enqueue": 300,
		"reconcile_run": 600,
		"reconcile_backfill": 600,
	},
	"default_lock_ttl_seconds": 300,
}

# Probability of a simulated transient failure in the mock provider adapter
MOCK_FAILURE_RATE: float = _env_float("MOCK_FAILURE_RATE", 0.05)

# Operator surface token. Tenant-level authorization is handled upstream.
OPERATOR_TOKEN: str | None = os.getenv("OPERATOR_TOKEN") or None

# ---------------------------------- Redis --------------------------------- #
REDIS_SETTINGS: dict[str, object] = {
	"use_redis": _env_bool("USE_REDIS", False),
	"url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"socket_timeout": _env_float("REDIS_SOCKET_TIMEOUT", 2.0),
}

# ------------------------------- Scheduler -------------------------------- #
SCHEDULER_SETTINGS: dict[str, object] = {
	# In-process periodic runner for deployments without an external cron
	"enabled": _env_bool("ENABLE_SCHEDULER", False),
	"upload_interval_seconds": _env_int("SCHEDULER_UPLOAD_INTERVAL_SECONDS", 60),
	"sweep_interval_seconds": _env_int("SCHEDULER_SWEEP_INTERVAL_SECONDS", 300),
	"reconcile_interval_seconds": _env_int("SCHEDULER_RECONCILE_INTERVAL_SECONDS", 900),
}

# ------------------------------- Providers -------------------------------- #
# JSON map of "site_id:provider_key" -> credential blob used by the default store
PROVIDER_CREDENTIALS_JSON: str | None = os.getenv("PROVIDER_CREDENTIALS_JSON") or None
ORDER_ID_PREFIX: str = os.getenv("ORDER_ID_PREFIX", "rk")

__all__ = [
	"QUEUE_SETTINGS",
	"BACKOFF_POLICY",
	"CONCURRENCY_SETTINGS",
	"CIRCUIT_BREAKER",
	"RECONCILIATION_SETTINGS",
	"CRON_SETTINGS",
	"OPERATOR_TOKEN",
	"REDIS_SETTINGS",
	"SCHEDULER_SETTINGS",
	"PROVIDER_CREDENTIALS_JSON",
	"ORDER_ID_PREFIX",
	"MOCK_FAILURE_RATE",
]
