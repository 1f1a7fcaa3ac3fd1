import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ticket_holds.core.clock import now_utc
from ticket_holds.core.db import Base
from ticket_holds.models import (
    Booking,
    Event,
    EventOccurrence,
    HoldAllocation,
    Organizer,
    PurchaseLink,
    PurchaseLinkAccess,
    PurchaseLinkPurchase,
    TicketType,
    Transaction,
    User,
)
from ticket_holds.models.enums import BookingStatus, LinkStatus, QuantityMode, TransactionStatus
from ticket_holds.schemas.purchase_links import PurchaseLinkCreate
from ticket_holds.schemas.purchases import PurchaseIn, PurchaseItemIn, PurchaseRequest
from ticket_holds.schemas.ticket_holds import AllocationIn, TicketHoldCreate
from ticket_holds.services import purchases as purchase_service
from ticket_holds.services.errors import (
    HoldNotActive,
    InsufficientHoldInventory,
    LinkNotFound,
    LinkNotUsable,
    UserNotAuthorizedForLink,
)
from ticket_holds.services.holds import create_hold, get_hold, release_hold
from ticket_holds.services.inventory import get_availability
from ticket_holds.services.purchase_links import create_link, record_access, revoke_link
from ticket_holds.services.purchases import process_purchase, quote_purchase


def _request(code, *items, coupon_code=None):
    return PurchaseRequest(
        link_code=code,
        items=[PurchaseItemIn(ticket_type_id=t, quantity=q) for t, q in items],
        coupon_code=coupon_code,
    )


@pytest.fixture
async def discounted_hold(catalog, make_hold):
    """10 VIP seats at 20% off."""
    return await make_hold(
        [
            {
                "ticket_type_id": catalog.vip.id,
                "allocated_quantity": 10,
                "pricing_mode": "percentage_discount",
                "discount_percentage": 20,
            }
        ]
    )


# =============================================================================
# happy path
# =============================================================================

@pytest.mark.asyncio
async def test_purchase_three_from_ten(db, catalog, discounted_hold, make_link, count_rows):
    vip_id = catalog.vip.id
    link = await make_link(discounted_hold)

    result = await process_purchase(db, _request(link.code, (vip_id, 3)))

    tx = result.transaction
    assert tx.transaction_number.startswith("TH-")
    assert len(tx.transaction_number) == 15
    assert tx.status is TransactionStatus.CONFIRMED
    assert tx.total_amount == 12000
    assert tx.currency == "hkd"
    assert tx.user_id is None
    assert tx.meta["source"] == "ticket_hold"
    assert tx.meta["ticket_hold_id"] == discounted_hold.id
    assert tx.meta["purchase_link_id"] == link.id
    assert tx.meta["purchase_link_code"] == link.code
    assert tx.meta["total_savings"] == 3000
    assert "coupon_code" not in tx.meta

    assert len(result.bookings) == 3
    for booking in result.bookings:
        assert booking.booking_number.startswith("BK-")
        assert len(booking.booking_number) == 13
        assert booking.quantity == 1
        assert booking.price_at_booking == 4000
        assert booking.status is BookingStatus.CONFIRMED
        assert booking.event_occurrence_id == catalog.occurrence.id
        assert booking.transaction_id == tx.id
        assert booking.meta["pricing_mode"] == "percentage_discount"
        assert booking.meta["original_price"] == 5000
    assert len({b.qr_code_identifier for b in result.bookings}) == 3

    assert [(p.unit_price, p.original_price, p.quantity) for p in result.purchases] == [(4000, 5000, 1)] * 3
    assert {p.booking_id for p in result.purchases} == {b.id for b in result.bookings}
    assert await count_rows(PurchaseLinkPurchase) == 3

    hold = await get_hold(db, discounted_hold.id)
    alloc = hold.allocation_for(vip_id)
    assert (alloc.allocated_quantity, alloc.purchased_quantity, alloc.remaining_quantity) == (10, 3, 7)
    assert link.quantity_purchased == 3
    assert link.status is LinkStatus.ACTIVE

    snap = await get_availability(db, ticket_type_id=vip_id, event_occurrence_id=catalog.occurrence.id)
    assert (snap.booked, snap.held, snap.available) == (3, 7, 90)


@pytest.mark.asyncio
async def test_purchase_mixed_ticket_types(db, catalog, make_hold, make_link):
    vip_id, general_id = catalog.vip.id, catalog.general.id
    hold = await make_hold(
        [
            {"ticket_type_id": vip_id, "allocated_quantity": 5, "pricing_mode": "fixed", "custom_price": 3000},
            {"ticket_type_id": general_id, "allocated_quantity": 5, "pricing_mode": "free"},
        ]
    )
    link = await make_link(hold)

    result = await process_purchase(
        db, _request(link.code, (vip_id, 2), (general_id, 1), coupon_code="SPONSOR")
    )

    assert result.totals.subtotal == 6000
    assert result.totals.total_savings == 6000
    assert result.totals.total_quantity == 3
    assert result.transaction.total_amount == 6000
    assert result.transaction.meta["coupon_code"] == "SPONSOR"
    assert [b.price_at_booking for b in result.bookings] == [3000, 3000, 0]
    assert [b.ticket_type_id for b in result.bookings] == [vip_id, vip_id, general_id]


@pytest.mark.asyncio
async def test_duplicate_items_are_merged(db, catalog, discounted_hold, make_link):
    vip_id = catalog.vip.id
    link = await make_link(discounted_hold)

    result = await process_purchase(db, _request(link.code, (vip_id, 1), (vip_id, 2)))

    assert [(line.ticket_type_id, line.quantity) for line in result.totals.items] == [(vip_id, 3)]
    assert len(result.bookings) == 3


@pytest.mark.asyncio
async def test_purchase_records_buyer(db, catalog, customer, discounted_hold, make_link):
    link = await make_link(discounted_hold, mode=QuantityMode.MAXIMUM, limit=2, assigned_user_id=customer.id)

    result = await process_purchase(db, _request(link.code, (catalog.vip.id, 1)), user=customer)

    assert result.transaction.user_id == customer.id
    assert all(p.user_id == customer.id for p in result.purchases)


@pytest.mark.asyncio
async def test_access_is_credited_with_the_purchase(db, catalog, discounted_hold, make_link, reload):
    link = await make_link(discounted_hold)
    other_link = await make_link(discounted_hold)
    access = await record_access(db, link=link, ip_address="192.0.2.10")
    stray = await record_access(db, link=other_link)

    result = await process_purchase(db, _request(link.code, (catalog.vip.id, 1)), access=access)
    assert result.purchases[0].access_id == access.id
    assert (await reload(PurchaseLinkAccess, access.id)).resulted_in_purchase is True

    result = await process_purchase(db, _request(link.code, (catalog.vip.id, 1)), access=stray)
    assert result.purchases[0].access_id is None
    assert (await reload(PurchaseLinkAccess, stray.id)).resulted_in_purchase is False


# =============================================================================
# quantity modes
# =============================================================================

@pytest.mark.asyncio
async def test_fixed_link_sells_its_whole_limit_once(db, catalog, discounted_hold, make_link, reload):
    vip_id = catalog.vip.id
    link = await make_link(discounted_hold, mode=QuantityMode.FIXED, limit=2)
    code, link_id = link.code, link.id

    with pytest.raises(LinkNotUsable) as exc:
        await process_purchase(db, _request(code, (vip_id, 1)))
    assert exc.value.remaining == 2

    await process_purchase(db, _request(code, (vip_id, 2)))
    link = await reload(PurchaseLink, link_id)
    assert link.status is LinkStatus.EXHAUSTED
    assert link.quantity_purchased == 2
    assert not link.is_usable

    with pytest.raises(LinkNotUsable):
        await process_purchase(db, _request(code, (vip_id, 1)))


@pytest.mark.asyncio
async def test_maximum_link_caps_total_across_purchases(db, catalog, discounted_hold, make_link, reload):
    vip_id = catalog.vip.id
    link = await make_link(discounted_hold, mode=QuantityMode.MAXIMUM, limit=3)
    code, link_id = link.code, link.id

    await process_purchase(db, _request(code, (vip_id, 2)))

    with pytest.raises(LinkNotUsable) as exc:
        await process_purchase(db, _request(code, (vip_id, 2)))
    assert exc.value.remaining == 1

    await process_purchase(db, _request(code, (vip_id, 1)))
    link = await reload(PurchaseLink, link_id)
    assert link.quantity_purchased == 3
    assert link.status is LinkStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_unlimited_link_is_bounded_by_the_hold(db, catalog, make_hold, make_link):
    vip_id = catalog.vip.id
    hold = await make_hold([{"ticket_type_id": vip_id, "allocated_quantity": 1}])
    link = await make_link(hold)
    code = link.code

    await process_purchase(db, _request(code, (vip_id, 1)))

    with pytest.raises(InsufficientHoldInventory) as exc:
        await process_purchase(db, _request(code, (vip_id, 1)))
    assert exc.value.available == 0
    assert exc.value.requested == 1

    res = await db.execute(select(Booking.id))
    assert len(res.scalars().all()) == 1


@pytest.fixture
async def file_sessions(tmp_path):
    """Independent connections to one SQLite file so two buyers can race."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await eng.dispose()


@pytest.mark.asyncio
async def test_concurrent_buyers_cannot_oversell_the_hold(file_sessions):
    async with file_sessions() as s:
        organizer = Organizer(name="Harbour Live")
        s.add(organizer)
        await s.flush()
        event = Event(name="Jazz Night", organizer_id=organizer.id)
        s.add(event)
        await s.flush()
        occurrence = EventOccurrence(event_id=event.id, event=event, starts_at=now_utc() + timedelta(days=30))
        vip = TicketType(event_id=event.id, name="VIP", price=5000, currency="hkd", total_quantity=100)
        staff = User(username="admin", password_hash="!", role="admin")
        s.add_all([occurrence, vip, staff])
        await s.commit()

        hold = await create_hold(
            s,
            data=TicketHoldCreate(
                event_occurrence_id=occurrence.id,
                name="Last seat",
                allocations=[AllocationIn(ticket_type_id=vip.id, allocated_quantity=1)],
            ),
            creator=staff,
        )
        link = await create_link(s, hold=hold, data=PurchaseLinkCreate(quantity_mode=QuantityMode.UNLIMITED))
        code, vip_id, alloc_id = link.code, vip.id, hold.allocations[0].id

    async def buy():
        async with file_sessions() as session:
            return await process_purchase(session, _request(code, (vip_id, 1)))

    results = await asyncio.gather(buy(), buy(), return_exceptions=True)

    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientHoldInventory)

    async with file_sessions() as s:
        res = await s.execute(select(HoldAllocation).where(HoldAllocation.id == alloc_id))
        assert res.scalar_one().purchased_quantity == 1
        res = await s.execute(select(func.count(Booking.id)))
        assert res.scalar_one() == 1


# =============================================================================
# rejections
# =============================================================================

@pytest.mark.asyncio
async def test_assigned_link_rejects_other_buyers(db, catalog, customer, make_user, discounted_hold, make_link, reload):
    vip_id = catalog.vip.id
    stranger = await make_user("customer")
    owner_id, stranger_id = customer.id, stranger.id
    link = await make_link(discounted_hold, mode=QuantityMode.MAXIMUM, limit=5, assigned_user_id=owner_id)
    code = link.code

    with pytest.raises(UserNotAuthorizedForLink):
        await process_purchase(db, _request(code, (vip_id, 1)))

    with pytest.raises(UserNotAuthorizedForLink):
        await process_purchase(db, _request(code, (vip_id, 1)), user=await reload(User, stranger_id))

    result = await process_purchase(db, _request(code, (vip_id, 1)), user=await reload(User, owner_id))
    assert result.transaction.user_id == owner_id


@pytest.mark.asyncio
async def test_revoked_link_is_rejected(db, catalog, admin, discounted_hold, make_link):
    link = await make_link(discounted_hold)
    await revoke_link(db, link=link, revoked_by=admin)

    with pytest.raises(LinkNotUsable):
        await process_purchase(db, _request(link.code, (catalog.vip.id, 1)))


@pytest.mark.asyncio
async def test_released_hold_blocks_purchases(db, catalog, admin, discounted_hold, make_link):
    vip_id = catalog.vip.id
    link = await make_link(discounted_hold)
    code = link.code
    await release_hold(db, hold=discounted_hold, released_by=admin)

    # release revokes the link as well
    with pytest.raises(LinkNotUsable):
        await process_purchase(db, _request(code, (vip_id, 1)))


@pytest.mark.asyncio
async def test_expired_hold_blocks_purchases(db, catalog, discounted_hold, make_link):
    link = await make_link(discounted_hold)
    discounted_hold.expires_at = now_utc() - timedelta(seconds=1)
    await db.commit()

    with pytest.raises(HoldNotActive):
        await process_purchase(db, _request(link.code, (catalog.vip.id, 1)))


@pytest.mark.asyncio
async def test_expired_link_is_rejected(db, catalog, discounted_hold, make_link):
    link = await make_link(discounted_hold)
    link.expires_at = now_utc() - timedelta(seconds=1)
    await db.commit()

    with pytest.raises(LinkNotUsable) as exc:
        await process_purchase(db, _request(link.code, (catalog.vip.id, 1)))
    assert "expired" in exc.value.message


@pytest.mark.asyncio
async def test_ticket_type_outside_the_hold(db, catalog, discounted_hold, make_link):
    link = await make_link(discounted_hold)

    with pytest.raises(InsufficientHoldInventory):
        await process_purchase(db, _request(link.code, (catalog.general.id, 1)))


@pytest.mark.asyncio
async def test_unknown_link_code(db):
    with pytest.raises(LinkNotFound):
        await process_purchase(db, _request("does-not-exist", (1, 1)))


@pytest.mark.asyncio
async def test_purchase_is_all_or_nothing(db, catalog, discounted_hold, make_link, count_rows, reload, monkeypatch):
    vip_id = catalog.vip.id
    link = await make_link(discounted_hold, mode=QuantityMode.MAXIMUM, limit=5)
    code, link_id = link.code, link.id
    alloc_id = discounted_hold.allocations[0].id

    real_generate = purchase_service._generate_number
    calls = {"n": 0}

    async def flaky_generate(db, column, prefix, length):
        calls["n"] += 1
        # transaction number, first booking number, then failure
        if calls["n"] == 3:
            raise RuntimeError("sequence unavailable")
        return await real_generate(db, column, prefix, length)

    monkeypatch.setattr(purchase_service, "_generate_number", flaky_generate)

    with pytest.raises(RuntimeError):
        await process_purchase(db, _request(code, (vip_id, 3)))

    assert await count_rows(Transaction) == 0
    assert await count_rows(Booking) == 0
    assert await count_rows(PurchaseLinkPurchase) == 0
    assert (await reload(HoldAllocation, alloc_id)).purchased_quantity == 0
    link = await reload(PurchaseLink, link_id)
    assert link.quantity_purchased == 0
    assert link.status is LinkStatus.ACTIVE


# =============================================================================
# quote
# =============================================================================

@pytest.mark.asyncio
async def test_quote_prices_without_writing(db, catalog, discounted_hold, make_link, count_rows):
    link = await make_link(discounted_hold)

    totals = await quote_purchase(db, link.code, {catalog.vip.id: 2, catalog.general.id: 4})

    assert totals.subtotal == 8000
    assert totals.total_savings == 2000
    assert [line.ticket_type_id for line in totals.items] == [catalog.vip.id]
    assert await count_rows(Transaction) == 0


@pytest.mark.asyncio
async def test_quote_on_revoked_link(db, catalog, admin, discounted_hold, make_link):
    link = await make_link(discounted_hold)
    await revoke_link(db, link=link, revoked_by=admin)

    with pytest.raises(LinkNotUsable) as exc:
        await quote_purchase(db, link.code, {catalog.vip.id: 1})
    assert exc.value.message == "This purchase link has been revoked."


@pytest.mark.asyncio
async def test_quote_on_stale_link_marks_it_expired(db, catalog, discounted_hold, make_link, reload):
    link = await make_link(discounted_hold)
    link_id = link.id
    link.expires_at = now_utc() - timedelta(seconds=1)
    await db.commit()

    with pytest.raises(LinkNotUsable) as exc:
        await quote_purchase(db, link.code, {catalog.vip.id: 1})
    assert exc.value.message == "This purchase link has expired."

    link = await reload(PurchaseLink, link_id)
    assert link.status is LinkStatus.EXPIRED


def test_purchase_input_limits():
    assert PurchaseItemIn(ticket_type_id=1, quantity=1000).quantity == 1000
    with pytest.raises(ValueError):
        PurchaseItemIn(ticket_type_id=1, quantity=0)

    assert PurchaseIn(items=[{"ticket_type_id": 1, "quantity": 1}], coupon_code="C" * 50).coupon_code == "C" * 50
    with pytest.raises(ValueError):
        PurchaseIn(items=[{"ticket_type_id": 1, "quantity": 1}], coupon_code="C" * 51)
