"""
Inventory ledger for ticket holds.

Event capacity for a ticket type on one occurrence is shared by three consumers:

    available = total_quantity
              - booked   (CONFIRMED / PENDING_CONFIRMATION bookings)
              - held     (unpurchased units of other usable holds)

Purchased hold units already exist as bookings, so a hold only counts
``allocated - purchased`` towards ``held``.

Every validation runs inside the caller's transaction and takes row locks in a
fixed order (ticket type, bookings, allocations) so concurrent hold writers
serialize on the ticket-type row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.clock import as_utc, is_past, now_utc
from ticket_holds.models.booking import Booking
from ticket_holds.models.catalog import Event, EventOccurrence, Organizer, TicketType
from ticket_holds.models.enums import BookingStatus, HoldStatus
from ticket_holds.models.ticket_hold import HoldAllocation, TicketHold
from ticket_holds.services.errors import InsufficientInventory, TicketTypeNotFound, TicketTypeNotOnOccurrence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilitySnapshot:
    ticket_type: TicketType
    event_occurrence_id: int
    total_quantity: int | None
    booked: int
    held: int
    available: int | None  # None = unlimited

    @property
    def is_unlimited(self) -> bool:
        return self.available is None

    def can_fulfil(self, quantity: int) -> bool:
        return self.available is None or quantity <= self.available


async def _get_ticket_type(db: AsyncSession, ticket_type_id: int, *, lock: bool) -> TicketType:
    stmt = select(TicketType).where(TicketType.id == ticket_type_id)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    tt = res.scalar_one_or_none()
    if tt is None:
        raise TicketTypeNotFound(ticket_type_id)
    return tt


async def _booked_quantity(
    db: AsyncSession, *, ticket_type_id: int, event_occurrence_id: int, lock: bool
) -> int:
    stmt = (
        select(Booking.id, Booking.quantity)
        .where(
            Booking.ticket_type_id == ticket_type_id,
            Booking.event_occurrence_id == event_occurrence_id,
            Booking.status.in_(BookingStatus.holding_inventory()),
        )
        .order_by(Booking.id)
    )
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    return sum(int(qty) for _id, qty in res.all())


async def _held_quantity(
    db: AsyncSession,
    *,
    ticket_type_id: int,
    event_occurrence_id: int,
    exclude_hold_id: int | None,
    lock: bool,
) -> int:
    stmt = (
        select(
            HoldAllocation.id,
            HoldAllocation.allocated_quantity,
            HoldAllocation.purchased_quantity,
            TicketHold.expires_at,
        )
        .join(TicketHold, TicketHold.id == HoldAllocation.ticket_hold_id)
        .where(
            HoldAllocation.ticket_type_id == ticket_type_id,
            TicketHold.event_occurrence_id == event_occurrence_id,
            TicketHold.status == HoldStatus.ACTIVE,
        )
        .order_by(HoldAllocation.id)
    )
    if exclude_hold_id is not None:
        stmt = stmt.where(TicketHold.id != exclude_hold_id)
    if lock:
        stmt = stmt.with_for_update(of=HoldAllocation)

    res = await db.execute(stmt)

    now = now_utc()
    held = 0
    for _id, allocated, purchased, expires_at in res.all():
        # expired holds stop reserving inventory even before anyone releases them
        if is_past(expires_at, now=now):
            continue
        held += max(0, int(allocated) - int(purchased))
    return held


async def _snapshot(
    db: AsyncSession,
    *,
    ticket_type_id: int,
    event_occurrence_id: int,
    exclude_hold_id: int | None,
    lock: bool,
    event_id: int | None = None,
) -> AvailabilitySnapshot:
    tt = await _get_ticket_type(db, ticket_type_id, lock=lock)
    if event_id is not None and tt.event_id != event_id:
        raise TicketTypeNotOnOccurrence(ticket_type_id, event_occurrence_id)

    if tt.total_quantity is None:
        return AvailabilitySnapshot(
            ticket_type=tt,
            event_occurrence_id=event_occurrence_id,
            total_quantity=None,
            booked=0,
            held=0,
            available=None,
        )

    booked = await _booked_quantity(
        db, ticket_type_id=ticket_type_id, event_occurrence_id=event_occurrence_id, lock=lock
    )
    held = await _held_quantity(
        db,
        ticket_type_id=ticket_type_id,
        event_occurrence_id=event_occurrence_id,
        exclude_hold_id=exclude_hold_id,
        lock=lock,
    )

    return AvailabilitySnapshot(
        ticket_type=tt,
        event_occurrence_id=event_occurrence_id,
        total_quantity=tt.total_quantity,
        booked=booked,
        held=held,
        available=tt.total_quantity - booked - held,
    )


async def validate_availability(
    db: AsyncSession,
    *,
    ticket_type_id: int,
    requested_quantity: int,
    event_occurrence_id: int,
    exclude_hold_id: int | None = None,
    event_id: int | None = None,
) -> AvailabilitySnapshot:
    """
    Lock the rows behind the ledger and make sure ``requested_quantity`` fits.
    Must be called inside an open transaction; the locks live until it ends.
    With ``event_id`` the ticket type must also belong to that event.
    """
    snap = await _snapshot(
        db,
        ticket_type_id=ticket_type_id,
        event_occurrence_id=event_occurrence_id,
        exclude_hold_id=exclude_hold_id,
        lock=True,
        event_id=event_id,
    )

    if not snap.can_fulfil(requested_quantity):
        logger.warning(
            "inventory short ticket_type=%s occurrence=%s requested=%s available=%s",
            ticket_type_id,
            event_occurrence_id,
            requested_quantity,
            snap.available,
        )
        raise InsufficientInventory(snap.ticket_type.name, requested_quantity, max(0, snap.available))

    return snap


async def get_availability(
    db: AsyncSession,
    *,
    ticket_type_id: int,
    event_occurrence_id: int,
    exclude_hold_id: int | None = None,
) -> AvailabilitySnapshot:
    """Read-only ledger snapshot (no locks, never raises for shortage)."""
    return await _snapshot(
        db,
        ticket_type_id=ticket_type_id,
        event_occurrence_id=event_occurrence_id,
        exclude_hold_id=exclude_hold_id,
        lock=False,
    )


async def get_occurrence(db: AsyncSession, occurrence_id: int) -> EventOccurrence | None:
    res = await db.execute(
        select(EventOccurrence)
        .where(EventOccurrence.id == occurrence_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def get_event_context(
    db: AsyncSession, *, occurrence_id: int, organizer_id: int | None = None
) -> dict | None:
    """Display details for a checkout page: event, occurrence times, venue and selling organizer."""
    res = await db.execute(
        select(
            Event.id,
            Event.name,
            EventOccurrence.starts_at,
            EventOccurrence.ends_at,
            EventOccurrence.venue,
        )
        .select_from(EventOccurrence)
        .join(Event, Event.id == EventOccurrence.event_id)
        .where(EventOccurrence.id == occurrence_id)
    )
    row = res.one_or_none()
    if row is None:
        return None
    event_id, event_name, starts_at, ends_at, venue = row

    organizer_name = None
    if organizer_id is not None:
        org = await db.execute(select(Organizer.name).where(Organizer.id == organizer_id))
        organizer_name = org.scalar_one_or_none()

    return {
        "event_id": event_id,
        "event_name": event_name,
        "occurrence_id": occurrence_id,
        "starts_at": as_utc(starts_at),
        "ends_at": as_utc(ends_at),
        "venue": venue,
        "organizer_name": organizer_name,
    }


async def list_occurrence_availability(
    db: AsyncSession, occurrence: EventOccurrence
) -> list[AvailabilitySnapshot]:
    """Snapshot for every ticket type sold on the occurrence's event."""
    res = await db.execute(
        select(TicketType.id).where(TicketType.event_id == occurrence.event_id).order_by(TicketType.id)
    )
    out: list[AvailabilitySnapshot] = []
    for ticket_type_id in res.scalars().all():
        out.append(
            await get_availability(
                db, ticket_type_id=ticket_type_id, event_occurrence_id=occurrence.id
            )
        )
    return out
