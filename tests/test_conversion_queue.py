"""Queue primitives: enqueue, claim, sweeps, operator actions and the read side."""
import threading
from datetime import timedelta

import pytest

from revenue_kernel.models.db.enums import ProviderErrorCategory, QueueAction, QueueStatus
from revenue_kernel.services.conversion_queue import (
    MAX_ATTEMPTS_EXCEEDED,
    STUCK_PROCESSING_RECOVERED,
    apply_queue_action,
    claim_batch,
    enqueue_conversion,
    finish_claimed_row,
    list_eligible_groups,
    list_rows,
    queue_stats,
    release_claims,
    sweep_attempt_cap,
    sweep_stuck_processing,
)
from conftest import NOW, TestingSessionLocal, load_row


# ---------- enqueue ----------

def test_enqueue_is_idempotent_per_source_event(db_session):
    kwargs = dict(
        site_id="site-a",
        provider_key="mock",
        source_event_id="order-1",
        occurred_at=NOW,
        amount_minor=500,
        currency="usd",
        click_ids={"gclid": "g1"},
    )
    row, created = enqueue_conversion(db_session, **kwargs)
    again, created_again = enqueue_conversion(db_session, **kwargs)
    assert created is True and created_again is False
    assert again.id == row.id
    assert row.status == QueueStatus.QUEUED
    assert row.attempt_count == 0
    assert row.currency == "USD"


@pytest.mark.parametrize("amount,currency", [(-1, "USD"), (10, "US"), (10, "")])
def test_enqueue_rejects_invalid_input(db_session, amount, currency):
    with pytest.raises(ValueError):
        enqueue_conversion(
            db_session,
            site_id="site-a",
            provider_key="mock",
            source_event_id="bad",
            occurred_at=NOW,
            amount_minor=amount,
            currency=currency,
        )


# ---------- claim ----------

def test_claim_moves_rows_to_processing_and_counts_attempt(db_session, row_factory):
    rows = [row_factory() for _ in range(3)]
    claimed = claim_batch(db_session, 10, now=NOW)

    assert {r.id for r in claimed} == {r.id for r in rows}
    for r in claimed:
        assert r.status == QueueStatus.PROCESSING
        assert r.attempt_count == 1
        assert r.provider_attempt_count == 0
        assert r.claimed_at == NOW


def test_claim_respects_limit_and_eligibility(db_session, row_factory):
    ready = row_factory()
    row_factory(status=QueueStatus.RETRY, next_retry_at=NOW + timedelta(minutes=5))
    due = row_factory(status=QueueStatus.RETRY, next_retry_at=NOW - timedelta(seconds=1))
    row_factory(status=QueueStatus.COMPLETED)
    row_factory(status=QueueStatus.FAILED)
    row_factory(provider_attempt_count=5)

    claimed = claim_batch(db_session, 10, now=NOW)
    assert {r.id for r in claimed} == {ready.id, due.id}

    assert claim_batch(db_session, 10, now=NOW) == []


def test_claim_count_does_not_gate_eligibility(db_session, row_factory):
    # Many claims, all deferred before reaching the provider
    row = row_factory(status=QueueStatus.RETRY, attempt_count=12, provider_attempt_count=4)
    claimed = claim_batch(db_session, 10, now=NOW, max_attempts=5)
    assert [r.id for r in claimed] == [row.id]
    assert claimed[0].attempt_count == 13


def test_claim_filters_by_site_and_provider(db_session, row_factory):
    a = row_factory(site_id="site-a")
    row_factory(site_id="site-b")
    row_factory(site_id="site-a", provider_key="other")

    claimed = claim_batch(db_session, 10, site_id="site-a", provider_key="mock", now=NOW)
    assert [r.id for r in claimed] == [a.id]


def test_claim_zero_limit_returns_empty(db_session, row_factory):
    row_factory()
    assert claim_batch(db_session, 0, now=NOW) == []


def test_concurrent_claims_are_disjoint(row_factory):
    rows = [row_factory() for _ in range(20)]
    results: list[list[str]] = []
    guard = threading.Lock()
    barrier = threading.Barrier(4)

    def claimer():
        session = TestingSessionLocal()
        try:
            barrier.wait()
            batch = claim_batch(session, 8, now=NOW)
            with guard:
                results.append([r.id for r in batch])
        finally:
            session.close()

    threads = [threading.Thread(target=claimer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    claimed = [row_id for batch in results for row_id in batch]
    assert len(claimed) == len(set(claimed))
    assert set(claimed) <= {r.id for r in rows}

    session = TestingSessionLocal()
    try:
        for row_id in claimed:
            assert load_row(session, row_id).attempt_count == 1
    finally:
        session.close()


def test_list_eligible_groups_busiest_first(db_session, row_factory):
    for _ in range(3):
        row_factory(site_id="big")
    row_factory(site_id="small")
    row_factory(site_id="done", status=QueueStatus.COMPLETED)

    groups = list_eligible_groups(db_session, now=NOW)
    assert groups == [("big", "mock", 3), ("small", "mock", 1)]
    assert list_eligible_groups(db_session, provider_key="other", now=NOW) == []


def test_release_claims_returns_rows_to_queue(db_session, row_factory):
    row = row_factory()
    claim_batch(db_session, 1, now=NOW)
    assert release_claims(db_session, [row.id], now=NOW) == 1
    released = load_row(db_session, row.id)
    assert released.status == QueueStatus.QUEUED
    assert released.attempt_count == 1
    assert released.claimed_at is None


def test_finish_claimed_row_requires_processing(db_session, row_factory):
    row = row_factory()
    assert finish_claimed_row(db_session, row.id, {"status": QueueStatus.COMPLETED}) is False
    claim_batch(db_session, 1, now=NOW)
    assert finish_claimed_row(db_session, row.id, {"status": QueueStatus.COMPLETED}) is True
    assert load_row(db_session, row.id).status == QueueStatus.COMPLETED


# ---------- attempt cap sweep ----------

def test_attempt_cap_fails_rows_at_cap(db_session, row_factory):
    at_cap = row_factory(status=QueueStatus.RETRY, provider_attempt_count=5)
    processing = row_factory(status=QueueStatus.PROCESSING, provider_attempt_count=6)
    below = row_factory(status=QueueStatus.RETRY, provider_attempt_count=4)
    done = row_factory(status=QueueStatus.COMPLETED, provider_attempt_count=9)

    assert sweep_attempt_cap(db_session, 5, now=NOW) == 2

    for row_id in (at_cap.id, processing.id):
        swept = load_row(db_session, row_id)
        assert swept.status == QueueStatus.FAILED
        assert swept.provider_error_code == MAX_ATTEMPTS_EXCEEDED
        assert swept.provider_error_category == ProviderErrorCategory.PERMANENT
        assert swept.next_retry_at is None
    assert load_row(db_session, below.id).status == QueueStatus.RETRY
    assert load_row(db_session, done.id).status == QueueStatus.COMPLETED


def test_attempt_cap_ignores_claim_count(db_session, row_factory):
    row = row_factory(status=QueueStatus.RETRY, attempt_count=9, provider_attempt_count=1)
    assert sweep_attempt_cap(db_session, 5, now=NOW) == 0
    assert load_row(db_session, row.id).status == QueueStatus.RETRY


def test_attempt_cap_is_clamped(db_session, row_factory):
    row = row_factory(status=QueueStatus.RETRY, provider_attempt_count=20)
    row_factory(status=QueueStatus.RETRY, provider_attempt_count=19)
    # 99 clamps to 20
    assert sweep_attempt_cap(db_session, 99, now=NOW) == 1
    assert load_row(db_session, row.id).status == QueueStatus.FAILED


def test_attempt_cap_min_age_filters_recent_rows(db_session, row_factory):
    row = row_factory(status=QueueStatus.RETRY, provider_attempt_count=5)
    # Row was just touched; a 30 minute age filter skips it
    assert sweep_attempt_cap(db_session, 5, 30) == 0
    later = load_row(db_session, row.id).updated_at + timedelta(minutes=31)
    assert sweep_attempt_cap(db_session, 5, 30, now=later) == 1


# ---------- stuck processing ----------

def test_stuck_processing_recovered_to_retry(db_session, row_factory):
    stuck = row_factory(status=QueueStatus.PROCESSING, claimed_at=NOW - timedelta(minutes=20), attempt_count=1)
    fresh = row_factory(status=QueueStatus.PROCESSING, claimed_at=NOW - timedelta(minutes=2), attempt_count=1)

    assert sweep_stuck_processing(db_session, 15, now=NOW) == 1

    recovered = load_row(db_session, stuck.id)
    assert recovered.status == QueueStatus.RETRY
    assert recovered.provider_error_code == STUCK_PROCESSING_RECOVERED
    assert recovered.provider_error_category == ProviderErrorCategory.TRANSIENT
    assert recovered.next_retry_at is None
    assert recovered.attempt_count == 1
    assert recovered.provider_attempt_count == 1
    assert load_row(db_session, fresh.id).status == QueueStatus.PROCESSING


def test_stuck_processing_minutes_clamped(db_session, row_factory):
    row = row_factory(status=QueueStatus.PROCESSING, claimed_at=NOW - timedelta(minutes=61))
    # 500 clamps to 60
    assert sweep_stuck_processing(db_session, 500, now=NOW) == 1
    assert load_row(db_session, row.id).status == QueueStatus.RETRY


# ---------- operator actions ----------

def test_retry_selected_only_touches_failed_and_retry(db_session, row_factory):
    failed = row_factory(status=QueueStatus.FAILED, next_retry_at=None, last_error="x")
    retry = row_factory(status=QueueStatus.RETRY, next_retry_at=NOW + timedelta(hours=1))
    processing = row_factory(status=QueueStatus.PROCESSING)
    completed = row_factory(status=QueueStatus.COMPLETED)

    affected = apply_queue_action(
        db_session, "site-a", QueueAction.RETRY_SELECTED, [failed.id, retry.id, processing.id, completed.id]
    )
    assert affected == 2
    assert load_row(db_session, failed.id).status == QueueStatus.QUEUED
    assert load_row(db_session, retry.id).next_retry_at is None
    assert load_row(db_session, processing.id).status == QueueStatus.PROCESSING
    assert load_row(db_session, completed.id).status == QueueStatus.COMPLETED


@pytest.mark.parametrize("action", [QueueAction.RETRY_SELECTED, QueueAction.RESET_TO_QUEUED])
def test_requeue_gives_capped_row_a_fresh_budget(db_session, row_factory, action):
    row = row_factory(status=QueueStatus.RETRY, attempt_count=5, provider_attempt_count=5)
    assert sweep_attempt_cap(db_session, 5, now=NOW) == 1

    assert apply_queue_action(db_session, "site-a", action, [row.id], now=NOW) == 1
    requeued = load_row(db_session, row.id)
    assert requeued.status == QueueStatus.QUEUED
    assert requeued.provider_attempt_count == 0
    assert requeued.attempt_count == 5

    claimed = claim_batch(db_session, 10, now=NOW, max_attempts=5)
    assert [r.id for r in claimed] == [row.id]
    assert sweep_attempt_cap(db_session, 5, now=NOW) == 0


def test_actions_are_scoped_to_site(db_session, row_factory):
    other = row_factory(site_id="site-b", status=QueueStatus.FAILED)
    assert apply_queue_action(db_session, "site-a", "RETRY_SELECTED", [other.id]) == 0
    assert load_row(db_session, other.id).status == QueueStatus.FAILED


def test_reset_to_queued_can_clear_errors(db_session, row_factory):
    row = row_factory(
        status=QueueStatus.FAILED,
        last_error="boom",
        provider_error_code="X",
        provider_error_category=ProviderErrorCategory.VALIDATION,
    )
    keep = row_factory(status=QueueStatus.RETRY, last_error="keep me")

    apply_queue_action(db_session, "site-a", QueueAction.RESET_TO_QUEUED, [row.id], clear_errors=True)
    apply_queue_action(db_session, "site-a", QueueAction.RESET_TO_QUEUED, [keep.id])

    cleared = load_row(db_session, row.id)
    assert cleared.status == QueueStatus.QUEUED
    assert cleared.last_error is None and cleared.provider_error_code is None
    assert load_row(db_session, keep.id).last_error == "keep me"


def test_mark_failed_uses_reason_and_defaults(db_session, row_factory):
    queued = row_factory()
    completed = row_factory(status=QueueStatus.COMPLETED)

    affected = apply_queue_action(
        db_session, "site-a", QueueAction.MARK_FAILED, [queued.id, completed.id], reason="bad click id"
    )
    assert affected == 1
    failed = load_row(db_session, queued.id)
    assert failed.status == QueueStatus.FAILED
    assert failed.last_error == "bad click id"
    assert failed.provider_error_code == "MANUAL_FAIL"
    assert failed.provider_error_category == ProviderErrorCategory.PERMANENT
    assert load_row(db_session, completed.id).status == QueueStatus.COMPLETED


def test_empty_id_list_is_noop(db_session):
    assert apply_queue_action(db_session, "site-a", QueueAction.MARK_FAILED, []) == 0


# ---------- read side ----------

def test_queue_stats_and_listing(db_session, row_factory):
    row_factory()
    row_factory()
    row_factory(status=QueueStatus.FAILED)
    row_factory(status=QueueStatus.PROCESSING, claimed_at=NOW - timedelta(hours=2))
    row_factory(site_id="site-b")

    stats = queue_stats(db_session, "site-a", now=NOW)
    assert stats["totals"]["QUEUED"] == 2
    assert stats["totals"]["FAILED"] == 1
    assert stats["totals"]["COMPLETED"] == 0
    assert stats["stuck_processing"] == 1
    assert stats["total"] == 4

    rows, total = list_rows(db_session, "site-a", status="QUEUED", limit=1)
    assert total == 2 and len(rows) == 1
    rows, total = list_rows(db_session, "site-a")
    assert total == 4
