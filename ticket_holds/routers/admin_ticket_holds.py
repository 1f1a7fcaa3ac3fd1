# ticket_holds/routers/admin_ticket_holds.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.db import get_db
from ticket_holds.core.deps import ensure_can_manage, require_staff
from ticket_holds.models.enums import HoldStatus
from ticket_holds.models.ticket_hold import TicketHold
from ticket_holds.models.user import User
from ticket_holds.schemas.analytics import HoldAnalyticsOut
from ticket_holds.schemas.purchase_links import PurchaseLinkCreate, PurchaseLinkOut
from ticket_holds.schemas.ticket_holds import (
    OccurrenceAvailabilityOut,
    TicketAvailabilityOut,
    TicketHoldCreate,
    TicketHoldListOut,
    TicketHoldOut,
    TicketHoldUpdate,
)
from ticket_holds.services.analytics import hold_analytics, revenue_by_ticket_type
from ticket_holds.services.errors import EventOccurrenceNotFound
from ticket_holds.services.holds import (
    count_links,
    create_hold,
    delete_hold,
    get_hold,
    list_holds,
    release_hold,
    update_hold,
    visible_organizer_ids,
)
from ticket_holds.services.inventory import get_occurrence, list_occurrence_availability
from ticket_holds.services.purchase_links import create_link, list_links_for_hold

router = APIRouter(prefix="/admin", tags=["Admin - Ticket Holds"])


async def _load_hold(db: AsyncSession, hold_id: int, user: User) -> TicketHold:
    hold = await get_hold(db, hold_id)
    ensure_can_manage(user, hold.organizer_id)
    return hold


async def _hold_out(db: AsyncSession, hold: TicketHold) -> TicketHoldOut:
    counts = await count_links(db, [hold.id])
    return TicketHoldOut.from_hold(hold, purchase_links_count=counts.get(hold.id, 0))


@router.get("/ticket-holds", response_model=TicketHoldListOut)
async def list_ticket_holds(
    organizer_id: int | None = Query(default=None),
    occurrence_id: int | None = Query(default=None),
    status_filter: HoldStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=255),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    holds, total = await list_holds(
        db,
        organizer_ids=visible_organizer_ids(staff),
        organizer_id=organizer_id,
        event_occurrence_id=occurrence_id,
        status=status_filter,
        search=search,
        limit=limit,
        offset=offset,
    )
    counts = await count_links(db, [h.id for h in holds])
    return TicketHoldListOut(
        items=[TicketHoldOut.from_hold(h, purchase_links_count=counts.get(h.id, 0)) for h in holds],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/ticket-holds", response_model=TicketHoldOut, status_code=status.HTTP_201_CREATED)
async def create_ticket_hold(
    body: TicketHoldCreate,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    # organizer staff always create holds under their own organizer
    if staff.role != "admin" and body.organizer_id is None:
        body.organizer_id = staff.organizer_id
    ensure_can_manage(staff, body.organizer_id)

    hold = await create_hold(db, data=body, creator=staff)
    return TicketHoldOut.from_hold(hold)


@router.get("/ticket-holds/{hold_id}", response_model=TicketHoldOut)
async def get_ticket_hold(
    hold_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    return await _hold_out(db, hold)


@router.patch("/ticket-holds/{hold_id}", response_model=TicketHoldOut)
async def update_ticket_hold(
    hold_id: int,
    body: TicketHoldUpdate,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    hold = await update_hold(db, hold=hold, data=body)
    return await _hold_out(db, hold)


@router.delete("/ticket-holds/{hold_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket_hold(
    hold_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    await delete_hold(db, hold=hold)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/ticket-holds/{hold_id}/release", response_model=TicketHoldOut)
async def release_ticket_hold(
    hold_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    hold = await release_hold(db, hold=hold, released_by=staff)
    return await _hold_out(db, hold)


@router.get("/ticket-holds/{hold_id}/analytics", response_model=HoldAnalyticsOut)
async def ticket_hold_analytics(
    hold_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    data = await hold_analytics(db, hold)
    data["revenue_by_ticket_type"] = await revenue_by_ticket_type(db, hold)
    return data


@router.get("/occurrences/{occurrence_id}/available-tickets", response_model=OccurrenceAvailabilityOut)
async def available_tickets(
    occurrence_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    occurrence = await get_occurrence(db, occurrence_id)
    if occurrence is None:
        raise EventOccurrenceNotFound(occurrence_id)

    snapshots = await list_occurrence_availability(db, occurrence)
    return OccurrenceAvailabilityOut(
        occurrence_id=occurrence.id,
        event_name=occurrence.event_name,
        starts_at=occurrence.starts_at,
        ticket_types=[
            TicketAvailabilityOut(
                ticket_type_id=s.ticket_type.id,
                name=s.ticket_type.name,
                price=s.ticket_type.price,
                currency=s.ticket_type.currency,
                total_quantity=s.total_quantity,
                booked=s.booked,
                held=s.held,
                available=s.available,
            )
            for s in snapshots
        ],
    )


@router.get("/ticket-holds/{hold_id}/purchase-links", response_model=list[PurchaseLinkOut])
async def list_purchase_links(
    hold_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    links = await list_links_for_hold(db, hold.id)
    return [PurchaseLinkOut.from_link(link) for link in links]


@router.post(
    "/ticket-holds/{hold_id}/purchase-links",
    response_model=PurchaseLinkOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_purchase_link(
    hold_id: int,
    body: PurchaseLinkCreate,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    hold = await _load_hold(db, hold_id, staff)
    link = await create_link(db, hold=hold, data=body)
    return PurchaseLinkOut.from_link(link)
