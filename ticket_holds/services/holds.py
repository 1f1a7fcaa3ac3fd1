from __future__ import annotations

import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.clock import now_utc
from ticket_holds.models.enums import HoldStatus, LinkStatus
from ticket_holds.models.purchase_link import PurchaseLink, PurchaseLinkAccess, PurchaseLinkPurchase
from ticket_holds.models.ticket_hold import HoldAllocation, TicketHold
from ticket_holds.models.user import User
from ticket_holds.schemas.ticket_holds import TicketHoldCreate, TicketHoldUpdate
from ticket_holds.services.errors import (
    EventOccurrenceNotFound,
    HoldHasPurchases,
    HoldNotActive,
    HoldNotFound,
    InsufficientInventory,
)
from ticket_holds.services.inventory import get_occurrence, validate_availability

logger = logging.getLogger(__name__)


async def get_hold(db: AsyncSession, hold_id: int) -> TicketHold:
    res = await db.execute(
        select(TicketHold).where(TicketHold.id == hold_id).execution_options(populate_existing=True)
    )
    hold = res.scalar_one_or_none()
    if hold is None:
        raise HoldNotFound()
    return hold


async def get_hold_by_uuid(db: AsyncSession, hold_uuid: str) -> TicketHold:
    res = await db.execute(select(TicketHold).where(TicketHold.uuid == hold_uuid))
    hold = res.scalar_one_or_none()
    if hold is None:
        raise HoldNotFound()
    return hold


async def list_holds(
    db: AsyncSession,
    *,
    organizer_ids: list[int] | None = None,
    organizer_id: int | None = None,
    event_occurrence_id: int | None = None,
    status: HoldStatus | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[TicketHold], int]:
    """
    organizer_ids restricts the visible scope (organizer staff),
    organizer_id is the user's own filter inside that scope.
    """
    stmt = select(TicketHold)

    if organizer_ids is not None:
        stmt = stmt.where(TicketHold.organizer_id.in_(organizer_ids))
    if organizer_id is not None:
        stmt = stmt.where(TicketHold.organizer_id == organizer_id)
    if event_occurrence_id is not None:
        stmt = stmt.where(TicketHold.event_occurrence_id == event_occurrence_id)
    if status is not None:
        stmt = stmt.where(TicketHold.status == status)
    if search:
        escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        stmt = stmt.where(TicketHold.name.ilike(f"%{escaped}%", escape="\\"))

    total_res = await db.execute(select(func.count()).select_from(stmt.subquery()))
    total = int(total_res.scalar_one())

    res = await db.execute(
        stmt.order_by(TicketHold.created_at.desc(), TicketHold.id.desc()).limit(limit).offset(offset)
    )
    return list(res.scalars().all()), total


async def count_links(db: AsyncSession, hold_ids: list[int]) -> dict[int, int]:
    if not hold_ids:
        return {}
    res = await db.execute(
        select(PurchaseLink.ticket_hold_id, func.count(PurchaseLink.id))
        .where(PurchaseLink.ticket_hold_id.in_(hold_ids))
        .group_by(PurchaseLink.ticket_hold_id)
    )
    return {int(hid): int(n) for hid, n in res.all()}


async def lock_allocations(db: AsyncSession, hold_id: int) -> list[HoldAllocation]:
    res = await db.execute(
        select(HoldAllocation)
        .where(HoldAllocation.ticket_hold_id == hold_id)
        .order_by(HoldAllocation.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def create_hold(db: AsyncSession, *, data: TicketHoldCreate, creator: User) -> TicketHold:
    """
    Reserve inventory for an occurrence.
    Every allocation is checked against the ledger before anything is written;
    one short allocation aborts the whole hold.
    """
    try:
        occurrence = await get_occurrence(db, data.event_occurrence_id)
        if occurrence is None:
            raise EventOccurrenceNotFound(data.event_occurrence_id)

        organizer_id = data.organizer_id if data.organizer_id is not None else occurrence.organizer_id

        # ticket-type rows are locked in id order so concurrent writers queue the same way
        ordered = sorted(data.allocations, key=lambda a: a.ticket_type_id)
        ticket_types = {}
        for a in ordered:
            snap = await validate_availability(
                db,
                ticket_type_id=a.ticket_type_id,
                requested_quantity=a.allocated_quantity,
                event_occurrence_id=occurrence.id,
                event_id=occurrence.event_id,
            )
            ticket_types[a.ticket_type_id] = snap.ticket_type

        hold = TicketHold(
            event_occurrence_id=occurrence.id,
            organizer_id=organizer_id,
            created_by=creator.id,
            name=data.name,
            description=data.description,
            internal_notes=data.internal_notes,
            status=HoldStatus.ACTIVE,
            expires_at=data.expires_at,
        )
        hold.allocations = [
            HoldAllocation(
                ticket_type_id=a.ticket_type_id,
                ticket_type=ticket_types[a.ticket_type_id],
                allocated_quantity=a.allocated_quantity,
                purchased_quantity=0,
                pricing_mode=a.pricing_mode,
                custom_price=a.custom_price,
                discount_percentage=a.discount_percentage,
            )
            for a in data.allocations
        ]
        db.add(hold)

        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info(
        "hold created id=%s occurrence=%s allocations=%s by user=%s",
        hold.id,
        hold.event_occurrence_id,
        {a.ticket_type_id: a.allocated_quantity for a in hold.allocations},
        creator.id,
    )
    return hold


async def update_hold(db: AsyncSession, *, hold: TicketHold, data: TicketHoldUpdate) -> TicketHold:
    """
    Partial update. When ``allocations`` is supplied it replaces the set:
    missing ticket types are dropped, known ones updated, new ones inserted.
    Only the unpurchased part of an allocation is checked against the ledger.
    """
    if not hold.is_usable:
        raise HoldNotActive("Only active, unexpired holds can be edited.")

    fields = data.model_fields_set

    try:
        current = await lock_allocations(db, hold.id)

        for attr in ("name", "description", "internal_notes", "expires_at"):
            if attr in fields:
                value = getattr(data, attr)
                if attr == "name" and value is None:
                    continue
                setattr(hold, attr, value)

        if data.allocations is not None:
            occurrence = await get_occurrence(db, hold.event_occurrence_id)
            existing = {a.ticket_type_id: a for a in current}
            wanted = {a.ticket_type_id: a for a in data.allocations}

            for ticket_type_id, alloc in existing.items():
                if ticket_type_id not in wanted and alloc.purchased_quantity > 0:
                    raise InsufficientInventory(
                        alloc.ticket_type.name,
                        0,
                        alloc.purchased_quantity,
                        message=(
                            f"Cannot remove '{alloc.ticket_type.name}': "
                            f"{alloc.purchased_quantity} ticket(s) already purchased."
                        ),
                    )

            kept: list[HoldAllocation] = []
            for ticket_type_id in sorted(wanted):
                req = wanted[ticket_type_id]
                alloc = existing.get(ticket_type_id)
                purchased = alloc.purchased_quantity if alloc is not None else 0

                if alloc is not None and req.allocated_quantity < purchased:
                    raise InsufficientInventory(
                        alloc.ticket_type.name,
                        req.allocated_quantity,
                        purchased,
                        message=(
                            f"Cannot reduce '{alloc.ticket_type.name}' to {req.allocated_quantity}: "
                            f"{purchased} ticket(s) already purchased."
                        ),
                    )

                snap = await validate_availability(
                    db,
                    ticket_type_id=ticket_type_id,
                    requested_quantity=req.allocated_quantity - purchased,
                    event_occurrence_id=hold.event_occurrence_id,
                    exclude_hold_id=hold.id,
                    event_id=occurrence.event_id,
                )

                if alloc is None:
                    alloc = HoldAllocation(
                        ticket_hold_id=hold.id,
                        ticket_type_id=ticket_type_id,
                        ticket_type=snap.ticket_type,
                        purchased_quantity=0,
                    )
                alloc.allocated_quantity = req.allocated_quantity
                alloc.pricing_mode = req.pricing_mode
                alloc.custom_price = req.custom_price
                alloc.discount_percentage = req.discount_percentage
                kept.append(alloc)

            # delete-orphan cascade removes the allocations that were left out
            hold.allocations = sorted(kept, key=lambda a: (a.id is None, a.id or 0))

        hold.updated_at = now_utc()
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info("hold updated id=%s fields=%s", hold.id, sorted(fields))
    return hold


async def release_hold(db: AsyncSession, *, hold: TicketHold, released_by: User) -> TicketHold:
    """Give the unpurchased inventory back and revoke every active link."""
    now = now_utc()
    try:
        hold.status = HoldStatus.RELEASED
        hold.released_at = now
        hold.released_by = released_by.id

        res = await db.execute(
            update(PurchaseLink)
            .where(
                PurchaseLink.ticket_hold_id == hold.id,
                PurchaseLink.status == LinkStatus.ACTIVE,
            )
            .values(
                status=LinkStatus.REVOKED,
                revoked_at=now,
                revoked_by=released_by.id,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        revoked = res.rowcount

        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info("hold released id=%s by user=%s links_revoked=%s", hold.id, released_by.id, revoked)
    return hold


async def delete_hold(db: AsyncSession, *, hold: TicketHold) -> None:
    try:
        res = await db.execute(
            select(func.count(PurchaseLinkPurchase.id))
            .join(PurchaseLink, PurchaseLink.id == PurchaseLinkPurchase.purchase_link_id)
            .where(PurchaseLink.ticket_hold_id == hold.id)
        )
        purchases = int(res.scalar_one())
        if purchases > 0 or hold.total_purchased > 0:
            raise HoldHasPurchases()

        link_ids = select(PurchaseLink.id).where(PurchaseLink.ticket_hold_id == hold.id)
        await db.execute(
            delete(PurchaseLinkAccess).where(PurchaseLinkAccess.purchase_link_id.in_(link_ids))
        )
        await db.execute(delete(PurchaseLink).where(PurchaseLink.ticket_hold_id == hold.id))
        await db.delete(hold)
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info("hold deleted id=%s", hold.id)


def visible_organizer_ids(user: User) -> list[int] | None:
    """None = no restriction (admin)."""
    if user.role == "admin":
        return None
    return [user.organizer_id] if user.organizer_id is not None else []
