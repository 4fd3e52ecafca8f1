"""Upload runner: claimed queue rows -> provider adapter -> row outcome.

One cycle lists eligible (site, provider) groups, gates each through the
circuit breaker, claims a fair share of the cycle limit per group and
processes the claimed rows one at a time:

1. build the order id (idempotency key)
2. take a per-site and a global semaphore slot, or defer the row without
   counting a provider attempt
3. delegate to the adapter and store SUCCESS / RETRY / FAILED
4. release the slots in ``finally``

Row outcomes are written with a status guard (``status = PROCESSING``), so
an operator action or sweep that moved the row meanwhile wins.
Each claimed batch is bracketed by STARTED and FINISHED rows in
``provider_upload_attempts``.
"""
from __future__ import annotations

import enum
import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from revenue_kernel.config import CONCURRENCY_SETTINGS, QUEUE_SETTINGS
from revenue_kernel.integrations import (
    ConversionUpload,
    CredentialStore,
    ProviderAdapter,
    ProviderRegistry,
    UnknownProviderError,
    UploadOutcome,
    UploadStatus,
)
from revenue_kernel.integrations.errors import PERMANENT_CATEGORIES, RETRYABLE_CATEGORIES
from revenue_kernel.jobs.semaphore import ConcurrencySemaphore, global_provider_key, site_provider_key
from revenue_kernel.models.db.enums import ProviderErrorCategory, QueueStatus, UploadAttemptPhase
from revenue_kernel.models.db.offline_conversions import OfflineConversionJob
from revenue_kernel.models.db.provider_upload_attempts import ProviderUploadAttempt, new_batch_id
from revenue_kernel.services.conversion_queue import (
    claim_batch,
    finish_claimed_row,
    list_eligible_groups,
    release_claims,
    truncate_code,
    truncate_error,
)
from revenue_kernel.services.idempotency import order_id_for_row
from revenue_kernel.utils import get_logger, log_performance
from revenue_kernel.utils.backoff import jittered_delay_seconds, next_retry_delay_seconds
from revenue_kernel.utils.circuit_breaker import CircuitBreaker
from revenue_kernel.utils.metrics import PipelineMetrics
from revenue_kernel.utils.time import utc_now

logger = get_logger(__name__)

CONCURRENCY_LIMIT = "CONCURRENCY_LIMIT"
CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class RunMode(str, enum.Enum):
    WORKER = "worker"
    CRON = "cron"


class RowOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"
    DEFERRED = "deferred"
    # Row left PROCESSING before the outcome could be stored
    LOST = "lost"


@dataclass
class UploadCycleResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    released: int = 0
    skipped_groups: int = 0

    def record(self, outcome: RowOutcome) -> None:
        self.processed += 1
        if outcome == RowOutcome.COMPLETED:
            self.completed += 1
        elif outcome == RowOutcome.FAILED:
            self.failed += 1
        elif outcome == RowOutcome.DEFERRED:
            self.deferred += 1
            self.retried += 1
        elif outcome == RowOutcome.RETRIED:
            self.retried += 1

    def merge(self, other: "UploadCycleResult") -> None:
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class UploadRunner:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        registry: ProviderRegistry,
        credential_store: CredentialStore,
        semaphore: ConcurrencySemaphore,
        metrics: Optional[PipelineMetrics] = None,
        breaker: Optional[CircuitBreaker] = None,
        run_budget_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.credential_store = credential_store
        self.semaphore = semaphore
        self.metrics = metrics or PipelineMetrics()
        self.breaker = breaker or CircuitBreaker()
        self.run_budget_seconds = float(
            run_budget_seconds if run_budget_seconds is not None else QUEUE_SETTINGS["run_budget_seconds"]
        )

    # ------------------------------------------------------------------ #
    # Cycle
    # ------------------------------------------------------------------ #

    def _resolve_limit(self, mode: RunMode, limit: Optional[int]) -> int:
        if mode == RunMode.WORKER:
            return max(1, int(limit or QUEUE_SETTINGS["batch_size_worker"]))
        requested = int(limit or QUEUE_SETTINGS["default_limit_cron"])
        return max(1, min(requested, int(QUEUE_SETTINGS["max_limit_cron"])))

    def run_upload_cycle(
        self,
        provider_key: Optional[str] = None,
        mode: RunMode | str = RunMode.CRON,
        *,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> UploadCycleResult:
        """Process up to ``limit`` eligible rows; returns per-cycle counts.

        WORKER mode serves a single provider and requires ``provider_key``;
        CRON mode accepts an optional provider filter.
        """
        mode = RunMode(mode)
        if mode == RunMode.WORKER and not provider_key:
            raise ValueError("provider_key is required in worker mode")
        budget_limit = self._resolve_limit(mode, limit)
        started = time.monotonic()
        deadline = started + self.run_budget_seconds
        result = UploadCycleResult()

        session = self.session_factory()
        try:
            groups = list_eligible_groups(session, provider_key=provider_key, now=now)
            remaining = budget_limit
            for index, (site_id, group_provider, eligible) in enumerate(groups):
                if remaining <= 0:
                    break
                if time.monotonic() >= deadline:
                    logger.warning("Upload cycle budget exhausted before all groups", pending_groups=len(groups) - index)
                    break
                groups_left = len(groups) - index
                share = min(eligible, max(1, math.ceil(remaining / groups_left)))
                claimed = self._run_group(session, site_id, group_provider, share, deadline, result, now=now)
                remaining -= claimed
        finally:
            session.close()

        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "run_complete",
            mode=mode.value,
            provider_key=provider_key,
            **result.as_dict(),
        )
        log_performance(
            "ocq_upload_cycle",
            duration_ms,
            {"mode": mode.value, "processed": result.processed},
            slow_ms=self.run_budget_seconds * 1000,
        )
        return result

    def _run_group(
        self,
        session: Session,
        site_id: str,
        provider_key: str,
        share: int,
        deadline: float,
        result: UploadCycleResult,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        decision = self.breaker.allow_call(session, site_id, provider_key, now=now)
        session.commit()
        if not decision.allowed:
            result.skipped_groups += 1
            logger.info(
                "Group skipped, circuit open",
                site_id=site_id,
                provider_key=provider_key,
                next_probe_at=decision.next_probe_at.isoformat() if decision.next_probe_at else None,
            )
            return 0
        if decision.max_rows is not None:
            share = min(share, decision.max_rows)

        try:
            adapter = self.registry.get(provider_key)
        except UnknownProviderError:
            result.skipped_groups += 1
            return 0

        credentials = self._load_credentials(site_id, provider_key)
        rows = claim_batch(session, share, provider_key=provider_key, site_id=site_id, now=now)
        self.metrics.increment(PipelineMetrics.UPLOAD_CLAIMED, len(rows))
        if not rows:
            return 0

        row_ids = [r.id for r in rows]
        batch_id = new_batch_id()
        batch_started = time.monotonic()
        self._record_attempt(session, site_id, provider_key, batch_id, UploadAttemptPhase.STARTED, claimed=len(rows), now=now)

        group = UploadCycleResult()
        for position, row in enumerate(rows):
            if time.monotonic() >= deadline:
                unprocessed = row_ids[position:]
                group.released += release_claims(session, unprocessed, now=now)
                logger.warning("Upload cycle budget exhausted; released claims", site_id=site_id, released=len(unprocessed))
                break
            if credentials is None:
                outcome = self._defer_missing_credentials(session, row, now=now)
            else:
                outcome = self.process_row(session, row, adapter, credentials, now=now)
            group.record(outcome)

        error_code, error_category = self._batch_error(session, row_ids, group)
        self._record_attempt(
            session,
            site_id,
            provider_key,
            batch_id,
            UploadAttemptPhase.FINISHED,
            claimed=len(rows),
            completed=group.completed,
            failed=group.failed,
            retried=group.retried,
            duration_ms=int((time.monotonic() - batch_started) * 1000),
            error_code=error_code,
            error_category=error_category,
            now=now,
        )
        logger.info("Batch finished", site_id=site_id, provider_key=provider_key, batch_id=batch_id, **group.as_dict())
        result.merge(group)
        return len(rows)

    def _record_attempt(
        self,
        session: Session,
        site_id: str,
        provider_key: str,
        batch_id: str,
        phase: UploadAttemptPhase,
        *,
        claimed: int,
        completed: Optional[int] = None,
        failed: Optional[int] = None,
        retried: Optional[int] = None,
        duration_ms: Optional[int] = None,
        error_code: Optional[str] = None,
        error_category: Optional[ProviderErrorCategory] = None,
        now: Optional[datetime] = None,
    ) -> None:
        try:
            session.add(ProviderUploadAttempt(
                site_id=site_id,
                provider_key=provider_key,
                batch_id=batch_id,
                phase=phase,
                claimed_count=claimed,
                completed_count=completed,
                failed_count=failed,
                retry_count=retried,
                duration_ms=duration_ms,
                error_code=truncate_code(error_code),
                error_category=error_category,
                created_at=now or utc_now(),
            ))
            session.commit()
        except SQLAlchemyError as e:
            # Row outcomes are already stored; only the audit row is lost.
            session.rollback()
            logger.error("Upload attempt insert failed", batch_id=batch_id, phase=phase.value, error=str(e), exc_info=True)

    @staticmethod
    def _batch_error(
        session: Session,
        row_ids: list[str],
        group: UploadCycleResult,
    ) -> tuple[Optional[str], Optional[ProviderErrorCategory]]:
        """Most recent error left on the batch's unfinished or failed rows."""
        if group.completed == group.processed and not group.released:
            return None, None
        found = (
            session.query(OfflineConversionJob.provider_error_code, OfflineConversionJob.provider_error_category)
            .filter(
                OfflineConversionJob.id.in_(row_ids),
                OfflineConversionJob.provider_error_code.isnot(None),
                OfflineConversionJob.status != QueueStatus.COMPLETED,
            )
            .order_by(OfflineConversionJob.updated_at.desc(), OfflineConversionJob.id)
            .first()
        )
        if found is None:
            return None, None
        return found[0], found[1]

    def _load_credentials(self, site_id: str, provider_key: str) -> Any:
        try:
            return self.credential_store.get_credentials(site_id, provider_key)
        except Exception as e:  # credential backend is an external collaborator
            logger.error("Credential lookup failed", site_id=site_id, provider_key=provider_key, error=str(e), exc_info=True)
            return None

    # ------------------------------------------------------------------ #
    # Row
    # ------------------------------------------------------------------ #

    def process_row(
        self,
        session: Session,
        row: OfflineConversionJob,
        adapter: ProviderAdapter,
        credentials: Any,
        *,
        now: Optional[datetime] = None,
    ) -> RowOutcome:
        """Upload one claimed row and store its outcome."""
        now = now or utc_now()
        row_id, site_id, provider_key = row.id, row.site_id, row.provider_key
        # Provider attempt this upload will count as once its outcome is stored
        provider_attempt = int(row.provider_attempt_count) + 1
        order_id = order_id_for_row(row)
        upload = ConversionUpload.from_row(row, order_id)

        ttl_ms = int(CONCURRENCY_SETTINGS["semaphore_ttl_ms"])
        global_limit = int(CONCURRENCY_SETTINGS["global_per_provider"])
        site_key = site_provider_key(site_id, provider_key)
        global_key = global_provider_key(provider_key)
        site_token: Optional[str] = None
        global_token: Optional[str] = None
        try:
            site_token = self.semaphore.acquire(site_key, int(CONCURRENCY_SETTINGS["per_site_provider"]), ttl_ms)
            if site_token is not None and global_limit > 0:
                global_token = self.semaphore.acquire(global_key, global_limit, ttl_ms)
            if site_token is None or (global_limit > 0 and global_token is None):
                return self._defer_for_concurrency(session, row_id, now=now)

            outcome = adapter.upload(upload, order_id, credentials)
            return self._store_outcome(session, row_id, site_id, provider_key, provider_attempt, outcome, now=now)
        except Exception as e:
            session.rollback()
            logger.error("Unexpected error while uploading row", job_id=row_id, site_id=site_id, error=str(e), exc_info=True)
            stored = self._store_retry(
                session,
                row_id,
                code=UNEXPECTED_ERROR,
                category=ProviderErrorCategory.TRANSIENT,
                message=f"{type(e).__name__}: {e}",
                delay_seconds=next_retry_delay_seconds(provider_attempt),
                now=now,
            )
            return RowOutcome.RETRIED if stored else RowOutcome.LOST
        finally:
            if global_token is not None:
                self.semaphore.release(global_key, global_token)
            if site_token is not None:
                self.semaphore.release(site_key, site_token)

    def _store_outcome(
        self,
        session: Session,
        row_id: str,
        site_id: str,
        provider_key: str,
        provider_attempt: int,
        outcome: UploadOutcome,
        *,
        now: datetime,
    ) -> RowOutcome:
        if outcome.status == UploadStatus.SUCCESS:
            self.breaker.record_success(session, site_id, provider_key, now=now)
            stored = finish_claimed_row(session, row_id, {
                "status": QueueStatus.COMPLETED,
                "provider_attempt_count": OfflineConversionJob.provider_attempt_count + 1,
                "uploaded_at": now,
                "provider_ref": outcome.provider_ref,
                "claimed_at": None,
                "next_retry_at": None,
                "last_error": None,
                "provider_error_code": None,
                "provider_error_category": None,
                "updated_at": now,
            })
            if not stored:
                return RowOutcome.LOST
            self.metrics.increment(PipelineMetrics.UPLOAD_COMPLETED)
            logger.info("Conversion uploaded", job_id=row_id, site_id=site_id, provider_key=provider_key, provider_ref=outcome.provider_ref)
            return RowOutcome.COMPLETED

        if outcome.status == UploadStatus.RETRYABLE_FAILURE:
            category = outcome.error_category if outcome.error_category in RETRYABLE_CATEGORIES else ProviderErrorCategory.TRANSIENT
            self.breaker.record_failure(session, site_id, provider_key, now=now)
            delay = next_retry_delay_seconds(provider_attempt)
            stored = self._store_retry(
                session,
                row_id,
                code=outcome.error_code,
                category=category,
                message=outcome.error_message or "Retryable provider failure",
                delay_seconds=delay,
                now=now,
            )
            if not stored:
                return RowOutcome.LOST
            logger.warning(
                "Conversion upload will be retried",
                job_id=row_id,
                site_id=site_id,
                provider_key=provider_key,
                error_code=outcome.error_code,
                error_category=category.value,
                provider_attempt=provider_attempt,
                retry_in_seconds=delay,
            )
            return RowOutcome.RETRIED

        category = outcome.error_category if outcome.error_category in PERMANENT_CATEGORIES else ProviderErrorCategory.PERMANENT
        stored = finish_claimed_row(session, row_id, {
            "status": QueueStatus.FAILED,
            "provider_attempt_count": OfflineConversionJob.provider_attempt_count + 1,
            "claimed_at": None,
            "next_retry_at": None,
            "last_error": truncate_error(outcome.error_message or "Permanent provider failure"),
            "provider_error_code": truncate_code(outcome.error_code),
            "provider_error_category": category,
            "updated_at": now,
        })
        if not stored:
            return RowOutcome.LOST
        self.metrics.increment(PipelineMetrics.UPLOAD_FAILED)
        logger.warning(
            "Conversion upload failed permanently",
            job_id=row_id,
            site_id=site_id,
            provider_key=provider_key,
            error_code=outcome.error_code,
            error_category=category.value,
        )
        return RowOutcome.FAILED

    def _store_retry(
        self,
        session: Session,
        row_id: str,
        *,
        code: Optional[str],
        category: ProviderErrorCategory,
        message: str,
        delay_seconds: float,
        now: datetime,
    ) -> bool:
        stored = finish_claimed_row(session, row_id, {
            "status": QueueStatus.RETRY,
            "claimed_at": None,
            "next_retry_at": now + timedelta(seconds=delay_seconds),
            "provider_attempt_count": OfflineConversionJob.provider_attempt_count + 1,
            "last_error": truncate_error(message),
            "provider_error_code": truncate_code(code),
            "provider_error_category": category,
            "updated_at": now,
        })
        if stored:
            self.metrics.increment(PipelineMetrics.UPLOAD_RETRIED)
        return stored

    def _defer_for_concurrency(self, session: Session, row_id: str, *, now: datetime) -> RowOutcome:
        # Not a provider attempt: provider_attempt_count and the breaker stay untouched.
        stored = finish_claimed_row(session, row_id, {
            "status": QueueStatus.RETRY,
            "claimed_at": None,
            "next_retry_at": now + timedelta(seconds=jittered_delay_seconds()),
            "last_error": f"{CONCURRENCY_LIMIT}: Semaphore full",
            "provider_error_code": CONCURRENCY_LIMIT,
            "provider_error_category": ProviderErrorCategory.TRANSIENT,
            "updated_at": now,
        })
        if not stored:
            return RowOutcome.LOST
        self.metrics.increment(PipelineMetrics.CONCURRENCY_DEFERRED)
        logger.info("Upload deferred, concurrency limit reached", job_id=row_id)
        return RowOutcome.DEFERRED

    def _defer_missing_credentials(self, session: Session, row: OfflineConversionJob, *, now: Optional[datetime]) -> RowOutcome:
        now = now or utc_now()
        stored = self._store_retry(
            session,
            row.id,
            code=CREDENTIALS_MISSING,
            category=ProviderErrorCategory.AUTH,
            message="Credentials missing or unreadable",
            delay_seconds=next_retry_delay_seconds(int(row.provider_attempt_count) + 1),
            now=now,
        )
        return RowOutcome.RETRIED if stored else RowOutcome.LOST


__all__ = [
    "UploadRunner",
    "UploadCycleResult",
    "RunMode",
    "RowOutcome",
    "CONCURRENCY_LIMIT",
    "CREDENTIALS_MISSING",
    "UNEXPECTED_ERROR",
]
