"""Circuit breaker per (site, provider), persisted in ``provider_health``.

State lives in the database so every worker process sees the same view.
The caller owns the transaction; methods only flush.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from revenue_kernel.config import CIRCUIT_BREAKER
from revenue_kernel.models.db.enums import BreakerState
from revenue_kernel.models.db.provider_health import ProviderHealth
from revenue_kernel.utils import get_logger
from revenue_kernel.utils.time import utc_now

logger = get_logger(__name__)


@dataclass
class BreakerDecision:
    allowed: bool
    state: BreakerState
    reason: str | None = None
    # Row cap while probing in HALF_OPEN; None means unlimited.
    max_rows: int | None = None
    next_probe_at: datetime | None = None


class CircuitBreaker:
    def __init__(self, *, failure_threshold: int | None = None, cooldown_seconds: int | None = None, probe_count: int | None = None):
        self.failure_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown_seconds = int(cooldown_seconds or CIRCUIT_BREAKER["open_cooldown_seconds"])
        self.probe_count = int(probe_count or CIRCUIT_BREAKER["half_open_probe_count"])

    def _get(self, session: Session, site_id: str, provider_key: str) -> ProviderHealth | None:
        return (
            session.query(ProviderHealth)
            .filter(ProviderHealth.site_id == site_id, ProviderHealth.provider_key == provider_key)
            .one_or_none()
        )

    def _get_or_create(self, session: Session, site_id: str, provider_key: str) -> ProviderHealth:
        health = self._get(session, site_id, provider_key)
        if health is not None:
            return health
        # Another worker may insert the same pair concurrently; fall back to loading it.
        try:
            with session.begin_nested():
                health = ProviderHealth(
                    site_id=site_id,
                    provider_key=provider_key,
                    state=BreakerState.CLOSED,
                    failure_count=0,
                    probe_limit=self.probe_count,
                )
                session.add(health)
            return health
        except IntegrityError:
            existing = self._get(session, site_id, provider_key)
            if existing is None:
                raise
            return existing

    def allow_call(self, session: Session, site_id: str, provider_key: str, *, now: datetime | None = None) -> BreakerDecision:
        now = now or utc_now()
        health = self._get(session, site_id, provider_key)
        if health is None or health.state == BreakerState.CLOSED:
            return BreakerDecision(allowed=True, state=BreakerState.CLOSED)
        if health.state == BreakerState.OPEN:
            if health.next_probe_at and health.next_probe_at > now:
                return BreakerDecision(
                    allowed=False,
                    state=BreakerState.OPEN,
                    reason="circuit_open",
                    next_probe_at=health.next_probe_at,
                )
            health.state = BreakerState.HALF_OPEN
            health.updated_at = now
            session.flush()
            logger.info("Circuit half-open, probing provider", site_id=site_id, provider_key=provider_key)
        return BreakerDecision(
            allowed=True,
            state=BreakerState.HALF_OPEN,
            max_rows=max(1, int(health.probe_limit or self.probe_count)),
        )

    def record_success(self, session: Session, site_id: str, provider_key: str, *, now: datetime | None = None) -> None:
        health = self._get(session, site_id, provider_key)
        if health is None:
            return
        if health.state != BreakerState.CLOSED:
            logger.info("Circuit closed after successful upload", site_id=site_id, provider_key=provider_key)
        health.state = BreakerState.CLOSED
        health.failure_count = 0
        health.opened_at = None
        health.next_probe_at = None
        health.updated_at = now or utc_now()
        session.flush()

    def record_failure(self, session: Session, site_id: str, provider_key: str, *, now: datetime | None = None) -> None:
        now = now or utc_now()
        health = self._get_or_create(session, site_id, provider_key)
        health.failure_count = int(health.failure_count or 0) + 1
        should_open = (
            health.state == BreakerState.HALF_OPEN
            or (health.state == BreakerState.CLOSED and health.failure_count >= self.failure_threshold)
        )
        if should_open:
            health.state = BreakerState.OPEN
            health.opened_at = now
            health.next_probe_at = now + timedelta(seconds=self.cooldown_seconds)
            logger.warning(
                "Circuit opened for provider",
                site_id=site_id,
                provider_key=provider_key,
                failure_count=health.failure_count,
                next_probe_at=health.next_probe_at.isoformat(),
            )
        health.updated_at = now
        session.flush()

    def snapshot(self, session: Session, site_id: str | None = None) -> list[dict[str, object]]:
        query = session.query(ProviderHealth)
        if site_id is not None:
            query = query.filter(ProviderHealth.site_id == site_id)
        return [
            {
                "site_id": h.site_id,
                "provider_key": h.provider_key,
                "state": h.state.value,
                "failure_count": h.failure_count,
                "opened_at": h.opened_at.isoformat() if h.opened_at else None,
                "next_probe_at": h.next_probe_at.isoformat() if h.next_probe_at else None,
            }
            for h in query.order_by(ProviderHealth.site_id, ProviderHealth.provider_key).all()
        ]


__all__ = ["CircuitBreaker", "BreakerDecision"]
