from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from app.models.reservation_cache import CustomerReservationCache, RefreshStatus
from app.modules.reservations.domain.cache_store import ReservationCacheStore, decode_snapshot
from app.schemas.reservations import Reservation, ReservationSnapshot, ReservationSummary


def snapshot(total=1):
    return ReservationSnapshot(
        summary=ReservationSummary(total_reservations=total, active_reservations=total),
        reservations=[Reservation(reservation_id=f"res-{i}", order_id="order-1") for i in range(total)],
        errors=["Recommendations for sub-2: 500"],
    )


@pytest.mark.asyncio
async def test_claim_is_exclusive(db, customer):
    store = ReservationCacheStore(db)

    assert await store.claim(customer.id) is True
    assert await store.claim(customer.id) is False

    row = await store.get(customer.id)
    assert row.status == RefreshStatus.RUNNING.value


@pytest.mark.asyncio
async def test_claim_after_completion(db, customer):
    store = ReservationCacheStore(db)
    await store.claim(customer.id)
    await store.save_snapshot(customer.id, snapshot())

    assert await store.claim(customer.id) is True


@pytest.mark.asyncio
async def test_stale_running_claim_can_be_reclaimed(db, customer):
    store = ReservationCacheStore(db, stale_after_seconds=60)
    await store.claim(customer.id)
    await db.execute(
        update(CustomerReservationCache)
        .where(CustomerReservationCache.customer_id == customer.id)
        .values(updated_at=datetime.now(timezone.utc) - timedelta(hours=2))
    )
    await db.commit()

    assert await store.claim(customer.id) is True


@pytest.mark.asyncio
async def test_save_and_decode_snapshot(db, customer):
    store = ReservationCacheStore(db)
    await store.claim(customer.id)

    await store.save_snapshot(customer.id, snapshot(total=2))

    row = await store.get(customer.id)
    assert row.status == RefreshStatus.COMPLETED.value
    assert row.last_refreshed is not None
    assert row.error_message is None
    assert '"totalReservations":2' in row.summary_json
    decoded = decode_snapshot(row)
    assert decoded.summary.total_reservations == 2
    assert [r.reservation_id for r in decoded.reservations] == ["res-0", "res-1"]
    assert decoded.errors == ["Recommendations for sub-2: 500"]


@pytest.mark.asyncio
async def test_save_without_prior_row_inserts(db, customer):
    store = ReservationCacheStore(db)

    await store.save_snapshot(customer.id, snapshot(), RefreshStatus.FAILED, "timed out")

    row = await store.get(customer.id)
    assert row.status == RefreshStatus.FAILED.value
    assert row.error_message == "timed out"


@pytest.mark.asyncio
async def test_mark_failed_keeps_previous_blobs(db, customer):
    store = ReservationCacheStore(db)
    await store.save_snapshot(customer.id, snapshot(total=3))
    before = (await store.get(customer.id)).reservations_json

    await store.mark_failed(customer.id, "Secret 'sp-secret' not found")

    row = await store.get(customer.id)
    assert row.status == RefreshStatus.FAILED.value
    assert row.error_message == "Secret 'sp-secret' not found"
    assert row.reservations_json == before


@pytest.mark.asyncio
async def test_corrupt_blob_decodes_to_default(db, customer):
    store = ReservationCacheStore(db)
    await store.save_snapshot(customer.id, snapshot(total=2))
    await db.execute(
        update(CustomerReservationCache)
        .where(CustomerReservationCache.customer_id == customer.id)
        .values(reservations_json="{not json")
    )
    await db.commit()

    decoded = decode_snapshot(await store.get(customer.id))

    assert decoded.reservations == []
    assert decoded.summary.total_reservations == 2
