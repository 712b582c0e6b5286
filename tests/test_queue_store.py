"""Tests for the queue store.

Tests cover:
- Insert and lookup
- Claim ordering, due filtering and kind filtering
- Claim exclusivity under concurrent callers
- Reaping of stale 'processing' rows
- Conditional transitions out of 'processing'
- Failed-row scans and the refund marker
- Status aggregates and the runnable-work check

Runs against a SQLite file database (see conftest.py).
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from fulfillq.db.models import PurchaseKind, QueueStatus
from fulfillq.services.queue_store import (
    REFUND_MARKER,
    QueueStore,
    QueueStoreError,
    refund_marker,
)
from tests.factories import insert_queue_item, make_queue_item
from tests.fakes import T0


class TestInsertAndGet:
    """Tests for insert and get."""

    @pytest.mark.asyncio
    async def test_insert_returns_queue_id(self, session):
        """Inserted item can be read back by its queue_id."""
        store = QueueStore(session)
        item = make_queue_item(queue_id="q_insert")

        queue_id = await store.insert(item)
        await session.commit()

        assert queue_id == "q_insert"
        loaded = await store.get("q_insert")
        assert loaded is not None
        assert loaded.status == QueueStatus.PENDING
        assert loaded.attempts == 0

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, session):
        """Unknown queue_id returns None."""
        assert await QueueStore(session).get("q_missing") is None

    @pytest.mark.asyncio
    async def test_insert_wraps_database_errors(self):
        """SQLAlchemy errors surface as QueueStoreError."""
        session = AsyncMock()
        session.add = MagicMock()
        session.flush.side_effect = OperationalError("INSERT", {}, Exception("db down"))

        with pytest.raises(QueueStoreError, match="Failed to insert"):
            await QueueStore(session).insert(make_queue_item())


class TestFindActiveDuplicate:
    """Tests for find_active_duplicate."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.COMPLETED]
    )
    async def test_active_statuses_are_duplicates(self, session, status):
        """Pending, processing and completed items block a new enqueue."""
        await insert_queue_item(session, queue_id="q_dup", license_key="KEY-AAAA", status=status)

        found = await QueueStore(session).find_active_duplicate("pi_test", "KEY-AAAA")

        assert found is not None
        assert found.queue_id == "q_dup"

    @pytest.mark.asyncio
    async def test_failed_item_is_not_a_duplicate(self, session):
        """A failed item does not block a new enqueue."""
        await insert_queue_item(session, license_key="KEY-AAAA", status=QueueStatus.FAILED)

        assert await QueueStore(session).find_active_duplicate("pi_test", "KEY-AAAA") is None

    @pytest.mark.asyncio
    async def test_other_payment_is_not_a_duplicate(self, session):
        """Same key under a different payment intent is a different unit of work."""
        await insert_queue_item(session, license_key="L1", payment_intent_id="pi_other")

        assert await QueueStore(session).find_active_duplicate("pi_test", "L1") is None


class TestClaimBatch:
    """Tests for claim_batch."""

    @pytest.mark.asyncio
    async def test_claims_oldest_first_up_to_limit(self, session):
        """Rows are claimed in created_at order and limited."""
        await insert_queue_item(session, queue_id="q_new", created_at=T0 + 20)
        await insert_queue_item(session, queue_id="q_old", created_at=T0)
        await insert_queue_item(session, queue_id="q_mid", created_at=T0 + 10)

        claimed = await QueueStore(session).claim_batch(limit=2, now=T0 + 30)

        assert [item.queue_id for item in claimed] == ["q_old", "q_mid"]
        assert all(item.status == QueueStatus.PROCESSING for item in claimed)
        assert all(item.updated_at == T0 + 30 for item in claimed)

    @pytest.mark.asyncio
    async def test_skips_rows_not_yet_due(self, session):
        """A pending row with a future next_retry_at is not claimed."""
        await insert_queue_item(session, queue_id="q_later", next_retry_at=T0 + 120)
        await insert_queue_item(session, queue_id="q_due", next_retry_at=T0 - 1)

        store = QueueStore(session)
        claimed = await store.claim_batch(limit=10, now=T0)

        assert [item.queue_id for item in claimed] == ["q_due"]

        later = await store.claim_batch(limit=10, now=T0 + 120)
        assert [item.queue_id for item in later] == ["q_later"]

    @pytest.mark.asyncio
    async def test_kind_filter(self, session):
        """Only rows of the requested purchase kind are claimed."""
        await insert_queue_item(session, queue_id="q_qty")
        await insert_queue_item(session, queue_id="q_site", site_domain="example.com")

        claimed = await QueueStore(session).claim_batch(
            limit=10, now=T0, kind=PurchaseKind.SITE
        )

        assert [item.queue_id for item in claimed] == ["q_site"]
        assert claimed[0].kind == PurchaseKind.SITE

    @pytest.mark.asyncio
    async def test_ignores_non_pending_rows(self, session):
        """Completed and failed rows are never claimed."""
        await insert_queue_item(session, status=QueueStatus.COMPLETED)
        await insert_queue_item(session, status=QueueStatus.FAILED)

        assert await QueueStore(session).claim_batch(limit=10, now=T0) == []

    @pytest.mark.asyncio
    async def test_claimed_row_is_not_claimed_again(self, session):
        """A second claim does not return rows already processing."""
        await insert_queue_item(session, queue_id="q_once")
        store = QueueStore(session)

        first = await store.claim_batch(limit=10, now=T0)
        second = await store.claim_batch(limit=10, now=T0 + 1)

        assert [item.queue_id for item in first] == ["q_once"]
        assert second == []

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_exclusive(self, session_factory):
        """Two concurrent claimers against one pending row: exactly one wins."""
        async with session_factory() as setup:
            await insert_queue_item(setup, queue_id="q_contended")

        async def claim() -> list[str]:
            async with session_factory() as session:
                items = await QueueStore(session).claim_batch(limit=10, now=T0)
                return [item.queue_id for item in items]

        first, second = await asyncio.gather(claim(), claim())

        assert sorted([first, second], key=len) == [[], ["q_contended"]]

    @pytest.mark.asyncio
    async def test_concurrent_claims_partition_many_rows(self, session_factory):
        """Concurrent claimers never receive the same row."""
        async with session_factory() as setup:
            for index in range(8):
                await insert_queue_item(setup, queue_id=f"q_{index}", created_at=T0 + index)

        async def claim() -> list[str]:
            async with session_factory() as session:
                items = await QueueStore(session).claim_batch(limit=8, now=T0 + 100)
                return [item.queue_id for item in items]

        results = await asyncio.gather(claim(), claim(), claim())
        claimed = [queue_id for result in results for queue_id in result]

        assert len(claimed) == len(set(claimed))
        assert set(claimed) == {f"q_{index}" for index in range(8)}


class TestReapStale:
    """Tests for reaping stuck 'processing' rows."""

    @pytest.mark.asyncio
    async def test_stale_processing_row_is_reaped(self, session):
        """A processing row older than the threshold returns to pending."""
        await insert_queue_item(
            session, queue_id="q_stuck", status=QueueStatus.PROCESSING, updated_at=T0 - 301
        )
        store = QueueStore(session, stale_after_seconds=300)

        reaped = await store.reap_stale(T0)

        assert reaped == 1
        item = await store.get("q_stuck")
        assert item.status == QueueStatus.PENDING
        assert item.attempts == 0

    @pytest.mark.asyncio
    async def test_fresh_processing_row_is_not_reaped(self, session):
        """A processing row inside the threshold keeps its owner."""
        await insert_queue_item(
            session, queue_id="q_busy", status=QueueStatus.PROCESSING, updated_at=T0 - 299
        )
        store = QueueStore(session, stale_after_seconds=300)

        assert await store.reap_stale(T0) == 0
        assert (await store.get("q_busy")).status == QueueStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_claim_batch_reclaims_reaped_row(self, session):
        """claim_batch reaps first, so a crashed job is picked up again."""
        await insert_queue_item(
            session, queue_id="q_crashed", status=QueueStatus.PROCESSING, updated_at=T0 - 600
        )

        claimed = await QueueStore(session).claim_batch(limit=10, now=T0)

        assert [item.queue_id for item in claimed] == ["q_crashed"]
        assert claimed[0].updated_at == T0


class TestTransitions:
    """Tests for the conditional transitions out of 'processing'."""

    @pytest.mark.asyncio
    async def test_mark_completed(self, session):
        """Completion records the subscription and final key in one update."""
        await insert_queue_item(session, queue_id="q_done", status=QueueStatus.PROCESSING)
        store = QueueStore(session)

        applied = await store.mark_completed(
            "q_done", "sub_1", "si_1", T0 + 5, final_key="KEY-ABCD-EFGH-JKLM-NPQR"
        )
        await session.commit()

        assert applied is True
        item = await store.get("q_done")
        assert item.status == QueueStatus.COMPLETED
        assert item.subscription_id == "sub_1"
        assert item.item_id == "si_1"
        assert item.final_key == "KEY-ABCD-EFGH-JKLM-NPQR"
        assert item.processed_at == T0 + 5
        assert item.effective_license_key == "KEY-ABCD-EFGH-JKLM-NPQR"

    @pytest.mark.asyncio
    async def test_completed_row_is_immutable(self, session):
        """Transitions on a completed row do not apply."""
        await insert_queue_item(
            session,
            queue_id="q_final",
            status=QueueStatus.COMPLETED,
            subscription_id="sub_1",
        )
        store = QueueStore(session)

        assert await store.mark_failed("q_final", "late error", T0) is False
        assert await store.reschedule("q_final", 1, "late error", T0 + 60, T0) is False
        assert await store.mark_completed("q_final", "sub_2", None, T0) is False
        await session.commit()

        item = await store.get("q_final")
        assert item.status == QueueStatus.COMPLETED
        assert item.subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_reschedule(self, session):
        """Reschedule returns the row to pending with a future retry time."""
        await insert_queue_item(session, queue_id="q_retry", status=QueueStatus.PROCESSING)
        store = QueueStore(session)

        applied = await store.reschedule("q_retry", 1, "timeout", T0 + 120, T0)
        await session.commit()

        assert applied is True
        item = await store.get("q_retry")
        assert item.status == QueueStatus.PENDING
        assert item.attempts == 1
        assert item.next_retry_at == T0 + 120
        assert item.error_message == "timeout"

    @pytest.mark.asyncio
    async def test_reschedule_never_lowers_attempts(self, session):
        """A stale reschedule with a lower attempt count does not apply."""
        await insert_queue_item(
            session, queue_id="q_attempts", status=QueueStatus.PROCESSING, attempts=2
        )

        applied = await QueueStore(session).reschedule("q_attempts", 1, "stale", T0 + 60, T0)

        assert applied is False

    @pytest.mark.asyncio
    async def test_mark_failed(self, session):
        """Terminal failure records the error and attempt count."""
        await insert_queue_item(
            session, queue_id="q_dead", status=QueueStatus.PROCESSING, attempts=2
        )
        store = QueueStore(session)

        applied = await store.mark_failed("q_dead", "gave up", T0, attempts=3)
        await session.commit()

        assert applied is True
        item = await store.get("q_dead")
        assert item.status == QueueStatus.FAILED
        assert item.attempts == 3
        assert item.error_message == "gave up"
        assert item.next_retry_at is None


class TestFailedScanAndRefundMarker:
    """Tests for scan_failed_older_than and annotate_refund."""

    @pytest.mark.asyncio
    async def test_scan_respects_cutoff_and_marker(self, session):
        """Only old, unrefunded failed rows are returned."""
        await insert_queue_item(
            session, queue_id="q_old", status=QueueStatus.FAILED, created_at=T0 - 100
        )
        await insert_queue_item(
            session, queue_id="q_young", status=QueueStatus.FAILED, created_at=T0 + 100
        )
        await insert_queue_item(
            session,
            queue_id="q_refunded",
            status=QueueStatus.FAILED,
            created_at=T0 - 100,
            error_message="boom" + refund_marker("re_1", 1500, "usd"),
        )
        await insert_queue_item(session, queue_id="q_pending", created_at=T0 - 100)

        items = await QueueStore(session).scan_failed_older_than(T0, limit=10)

        assert [item.queue_id for item in items] == ["q_old"]

    @pytest.mark.asyncio
    async def test_scan_orders_by_last_touch(self, session):
        """Recently deferred rows come after rows that were left alone."""
        await insert_queue_item(
            session,
            queue_id="q_first",
            status=QueueStatus.FAILED,
            created_at=T0 - 300,
            updated_at=T0 - 300,
        )
        await insert_queue_item(
            session,
            queue_id="q_second",
            status=QueueStatus.FAILED,
            created_at=T0 - 200,
            updated_at=T0 - 200,
        )
        store = QueueStore(session)

        assert await store.defer_refund("q_first", T0) is True
        await session.commit()
        items = await store.scan_failed_older_than(T0, limit=1)

        assert [item.queue_id for item in items] == ["q_second"]

    @pytest.mark.asyncio
    async def test_defer_refund_skips_refunded_and_other_rows(self, session):
        await insert_queue_item(
            session,
            queue_id="q_done",
            status=QueueStatus.FAILED,
            error_message="boom" + refund_marker("re_1", 1500, "usd"),
        )
        await insert_queue_item(session, queue_id="q_live", license_key="L2")
        store = QueueStore(session)

        assert await store.defer_refund("q_done", T0 + 10) is False
        assert await store.defer_refund("q_live", T0 + 10) is False

    @pytest.mark.asyncio
    async def test_annotate_refund_appends_marker_once(self, session):
        """The marker is appended to the existing error message exactly once."""
        await insert_queue_item(
            session, queue_id="q_fail", status=QueueStatus.FAILED, error_message="timeout"
        )
        store = QueueStore(session)

        assert await store.annotate_refund("q_fail", "re_9", 1500, "usd", T0) is True
        await session.commit()
        assert await store.annotate_refund("q_fail", "re_9", 1500, "usd", T0) is False

        item = await store.get("q_fail")
        assert item.error_message == "timeout | REFUNDED re_9 amount=1500 usd"
        assert item.error_message.count(REFUND_MARKER) == 1

    @pytest.mark.asyncio
    async def test_annotate_refund_requires_failed_status(self, session):
        """Non-failed rows are never annotated."""
        await insert_queue_item(session, queue_id="q_ok", status=QueueStatus.COMPLETED)

        assert await QueueStore(session).annotate_refund("q_ok", "re_1", 1, "usd", T0) is False


class TestAggregates:
    """Tests for count_by_status, has_runnable_work and total_quantity_for_payment."""

    @pytest.mark.asyncio
    async def test_count_by_status_with_filters(self, session):
        """Counts can be filtered by customer, email or payment intent."""
        await insert_queue_item(session, customer_id="cus_a", payment_intent_id="pi_a")
        await insert_queue_item(
            session, customer_id="cus_a", payment_intent_id="pi_a", status=QueueStatus.COMPLETED
        )
        await insert_queue_item(
            session,
            customer_id="cus_b",
            user_email="b@example.com",
            payment_intent_id="pi_b",
            status=QueueStatus.FAILED,
        )
        store = QueueStore(session)

        everything = await store.count_by_status()
        by_customer = await store.count_by_status("cus_a")
        by_email = await store.count_by_status("b@example.com")
        by_payment = await store.count_by_status("pi_a")

        assert sum(everything.values()) == 3
        assert by_customer[QueueStatus.PENDING] == 1
        assert by_customer[QueueStatus.COMPLETED] == 1
        assert by_customer[QueueStatus.FAILED] == 0
        assert by_email[QueueStatus.FAILED] == 1
        assert sum(by_email.values()) == 1
        assert by_payment == by_customer

    @pytest.mark.asyncio
    async def test_has_runnable_work(self, session):
        """Due pending, stale processing and refundable failed rows count as work."""
        store = QueueStore(session, stale_after_seconds=300)
        refund_cutoff = T0 - 43200

        assert await store.has_runnable_work(T0, refund_cutoff) is False

        await insert_queue_item(session, queue_id="q_later", next_retry_at=T0 + 60)
        await insert_queue_item(
            session, queue_id="q_busy", status=QueueStatus.PROCESSING, updated_at=T0 - 10
        )
        await insert_queue_item(
            session, queue_id="q_recent_fail", status=QueueStatus.FAILED, created_at=T0 - 100
        )
        assert await store.has_runnable_work(T0, refund_cutoff) is False

        assert await store.has_runnable_work(T0 + 60, refund_cutoff) is True
        assert await store.has_runnable_work(T0 + 400, T0 - 200) is True

    @pytest.mark.asyncio
    async def test_has_runnable_work_sees_refundable_failure(self, session):
        """An old unrefunded failure is work for the compensator."""
        await insert_queue_item(
            session, status=QueueStatus.FAILED, created_at=T0 - 50000, error_message="x"
        )

        assert await QueueStore(session).has_runnable_work(T0, T0 - 43200) is True

    @pytest.mark.asyncio
    async def test_total_quantity_for_payment(self, session):
        """Quantities are summed over every item of one payment intent."""
        await insert_queue_item(session, license_key="L1", quantity=1)
        await insert_queue_item(session, license_key="L2", quantity=2)
        await insert_queue_item(session, license_key="L1", payment_intent_id="pi_other")
        store = QueueStore(session)

        assert await store.total_quantity_for_payment("pi_test") == 3
        assert await store.total_quantity_for_payment("pi_none") == 0
