# ticket_holds/routers/purchase_links.py
# Public purchase-link pages; login is optional.
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.db import get_db
from ticket_holds.core.deps import get_optional_user
from ticket_holds.models.user import User
from ticket_holds.schemas.purchase_links import PublicEventOut, PublicHoldOut, PublicLinkOut
from ticket_holds.schemas.purchases import (
    BookingOut,
    LinkPurchaseOut,
    OrderTotalsOut,
    PurchaseIn,
    PurchaseOut,
    PurchaseRequest,
    QuoteIn,
    TransactionOut,
)
from ticket_holds.schemas.ticket_holds import AllocationOut
from ticket_holds.services.errors import LinkNotFound
from ticket_holds.services.inventory import get_event_context
from ticket_holds.services.purchase_links import (
    get_access,
    record_access,
    unavailable_message,
    validate_link_for_user,
)
from ticket_holds.services.purchases import process_purchase, quote_purchase

router = APIRouter(prefix="/l", tags=["Purchase Links"])


@router.get("/{code}", response_model=PublicLinkOut)
async def show_purchase_link(
    code: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: User | None = Depends(get_optional_user),
):
    result = await validate_link_for_user(db, code, user)
    link = result["link"]
    if link is None:
        raise LinkNotFound("This purchase link was not found or is no longer available.")

    access = await record_access(
        db,
        link=link,
        user=user,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        referer=request.headers.get("referer"),
        session_id=request.headers.get("x-session-id"),
    )

    errors = list(result["errors"])
    if not link.is_usable:
        # first entry is the human readable reason for the landing page
        errors.insert(0, unavailable_message(link))

    hold = link.hold
    event = None
    if result["valid"]:
        context = await get_event_context(
            db, occurrence_id=hold.event_occurrence_id, organizer_id=hold.organizer_id
        )
        event = PublicEventOut(**context) if context is not None else None

    return PublicLinkOut(
        code=link.code,
        name=link.name,
        valid=result["valid"],
        errors=errors,
        quantity_mode=link.quantity_mode,
        quantity_limit=link.quantity_limit,
        remaining_quantity=link.remaining_quantity,
        expires_at=link.expires_at,
        hold=PublicHoldOut(
            name=hold.name,
            description=hold.description,
            event_occurrence_id=hold.event_occurrence_id,
            expires_at=hold.expires_at,
        ),
        event=event,
        allocations=[AllocationOut.from_allocation(a) for a in hold.allocations] if result["valid"] else [],
        access_id=access.id,
    )


@router.post("/{code}/quote", response_model=OrderTotalsOut)
async def quote(
    code: str,
    body: QuoteIn,
    db: AsyncSession = Depends(get_db),
):
    items = PurchaseRequest(link_code=code, items=body.items).merged_items()
    totals = await quote_purchase(db, code, items)
    return OrderTotalsOut.model_validate(totals)


@router.post("/{code}/purchase", response_model=PurchaseOut, status_code=status.HTTP_201_CREATED)
async def purchase(
    code: str,
    body: PurchaseIn,
    db: AsyncSession = Depends(get_db),
    user: User | None = Depends(get_optional_user),
):
    access = await get_access(db, body.access_id)

    result = await process_purchase(
        db,
        PurchaseRequest(link_code=code, items=body.items, coupon_code=body.coupon_code),
        user=user,
        access=access,
    )

    return PurchaseOut(
        transaction=TransactionOut.model_validate(result.transaction),
        bookings=[BookingOut.model_validate(b) for b in result.bookings],
        purchases=[LinkPurchaseOut.model_validate(p) for p in result.purchases],
        totals=OrderTotalsOut.model_validate(result.totals),
    )
