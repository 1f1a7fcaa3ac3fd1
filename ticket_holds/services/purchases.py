from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass, field

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.config import settings
from ticket_holds.models.booking import Booking, Transaction
from ticket_holds.models.enums import BookingStatus, LinkStatus, QuantityMode, TransactionStatus
from ticket_holds.models.purchase_link import PurchaseLink, PurchaseLinkAccess, PurchaseLinkPurchase
from ticket_holds.models.ticket_hold import HoldAllocation
from ticket_holds.models.user import User
from ticket_holds.schemas.purchases import PurchaseRequest
from ticket_holds.services.errors import (
    HoldNotActive,
    InsufficientHoldInventory,
    LinkNotFound,
    LinkNotUsable,
    NumberGenerationFailed,
    TicketHoldError,
    UserNotAuthorizedForLink,
)
from ticket_holds.services.holds import get_hold, lock_allocations
from ticket_holds.services.pricing import OrderTotals, calculate_order_total
from ticket_holds.services.purchase_links import get_link_by_code, unavailable_message

logger = logging.getLogger(__name__)

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
TRANSACTION_PREFIX = "TH-"
BOOKING_PREFIX = "BK-"
MAX_NUMBER_ATTEMPTS = 20


@dataclass
class PurchaseResult:
    transaction: Transaction
    bookings: list[Booking] = field(default_factory=list)
    purchases: list[PurchaseLinkPurchase] = field(default_factory=list)
    totals: OrderTotals = field(default_factory=OrderTotals)


async def _generate_number(db: AsyncSession, column, prefix: str, length: int) -> str:
    # Avoid mid-transaction IntegrityError: pre-check for collisions
    for _attempt in range(MAX_NUMBER_ATTEMPTS):
        candidate = prefix + "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(length))
        exists = await db.execute(select(column).where(column == candidate))
        if exists.scalar_one_or_none() is None:
            return candidate
    raise NumberGenerationFailed(prefix, MAX_NUMBER_ATTEMPTS)


async def _lock_link(db: AsyncSession, code: str) -> PurchaseLink:
    res = await db.execute(
        select(PurchaseLink)
        .where(PurchaseLink.code == code)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    link = res.scalar_one_or_none()
    if link is None:
        raise LinkNotFound()
    return link


def _check_link(link: PurchaseLink, user: User | None) -> None:
    if link.status is not LinkStatus.ACTIVE:
        raise LinkNotUsable(f"Purchase link is not usable (status: {link.status.label()}).")
    if link.is_expired:
        raise LinkNotUsable("Purchase link has expired.")
    if not link.hold.is_usable:
        raise HoldNotActive("The ticket hold for this link is no longer active.")
    if not link.can_be_used_by(user.id if user is not None else None):
        raise UserNotAuthorizedForLink()


def _check_items(link: PurchaseLink, allocations: list[HoldAllocation], items: dict[int, int]) -> None:
    by_type = {a.ticket_type_id: a for a in allocations}

    for ticket_type_id, quantity in items.items():
        alloc = by_type.get(ticket_type_id)
        if alloc is None:
            raise InsufficientHoldInventory(f"ticket type #{ticket_type_id}", quantity, 0)
        if quantity > alloc.remaining_quantity:
            raise InsufficientHoldInventory(alloc.ticket_type.name, quantity, alloc.remaining_quantity)

    total = sum(items.values())
    if not link.can_purchase_quantity(total):
        remaining = link.remaining_quantity
        if link.quantity_mode is QuantityMode.FIXED:
            message = f"This link must be used to purchase exactly {remaining} ticket(s); requested {total}."
        else:
            message = f"This link allows at most {remaining} more ticket(s); requested {total}."
        raise LinkNotUsable(message, remaining=remaining)


async def _claim_units(
    db: AsyncSession, link: PurchaseLink, by_type: dict[int, HoldAllocation], totals: OrderTotals
) -> None:
    # bounds live in the WHERE clause so a stale read cannot oversell
    for line in totals.items:
        alloc = by_type[line.ticket_type_id]
        res = await db.execute(
            update(HoldAllocation)
            .where(
                HoldAllocation.id == alloc.id,
                HoldAllocation.purchased_quantity + line.quantity <= HoldAllocation.allocated_quantity,
            )
            .values(purchased_quantity=HoldAllocation.purchased_quantity + line.quantity)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(alloc, ["purchased_quantity"])
        if res.rowcount != 1:
            raise InsufficientHoldInventory(alloc.ticket_type.name, line.quantity, alloc.remaining_quantity)

    res = await db.execute(
        update(PurchaseLink)
        .where(
            PurchaseLink.id == link.id,
            PurchaseLink.status == LinkStatus.ACTIVE,
            or_(
                PurchaseLink.quantity_limit.is_(None),
                PurchaseLink.quantity_purchased + totals.total_quantity <= PurchaseLink.quantity_limit,
            ),
        )
        .values(quantity_purchased=PurchaseLink.quantity_purchased + totals.total_quantity)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(link, ["quantity_purchased", "status"])
    if res.rowcount != 1:
        raise LinkNotUsable(
            f"This link allows at most {link.remaining_quantity} more ticket(s); requested {totals.total_quantity}.",
            remaining=link.remaining_quantity,
        )


async def process_purchase(
    db: AsyncSession,
    request: PurchaseRequest,
    *,
    user: User | None = None,
    access: PurchaseLinkAccess | None = None,
) -> PurchaseResult:
    """
    Sell tickets out of a hold through a purchase link.

    Lock order: link row, then the hold's allocation rows (by id).
    Claims the units on the allocation and link counters first, then writes one
    Transaction plus one Booking and PurchaseLinkPurchase per ticket unit, and
    commits everything together.
    Any failure rolls the whole purchase back.
    """
    items = request.merged_items()

    try:
        link = await _lock_link(db, request.link_code)
        hold = await get_hold(db, link.ticket_hold_id)
        allocations = await lock_allocations(db, hold.id)

        _check_link(link, user)
        _check_items(link, allocations, items)

        totals = calculate_order_total(allocations, items)
        by_type = {a.ticket_type_id: a for a in allocations}
        await _claim_units(db, link, by_type, totals)

        currency = by_type[totals.items[0].ticket_type_id].ticket_type.currency if totals.items else settings.CURRENCY

        meta = {
            "source": "ticket_hold",
            "ticket_hold_id": hold.id,
            "purchase_link_id": link.id,
            "purchase_link_code": link.code,
            "total_savings": totals.total_savings,
        }
        if request.coupon_code:
            meta["coupon_code"] = request.coupon_code

        tx = Transaction(
            transaction_number=await _generate_number(db, Transaction.transaction_number, TRANSACTION_PREFIX, 12),
            user_id=user.id if user is not None else None,
            total_amount=totals.subtotal,
            currency=currency,
            status=TransactionStatus.CONFIRMED,
            meta=meta,
        )
        db.add(tx)
        await db.flush()  # tx.id

        units: list[tuple[Booking, int, int, str]] = []
        for line in totals.items:
            alloc = by_type[line.ticket_type_id]
            for _ in range(line.quantity):
                booking = Booking(
                    booking_number=await _generate_number(db, Booking.booking_number, BOOKING_PREFIX, 10),
                    transaction_id=tx.id,
                    ticket_type_id=line.ticket_type_id,
                    event_occurrence_id=hold.event_occurrence_id,
                    quantity=1,
                    price_at_booking=line.unit_price,
                    currency_at_booking=alloc.ticket_type.currency,
                    status=BookingStatus.CONFIRMED,
                    qr_code_identifier=str(uuid.uuid4()),
                    max_allowed_check_ins=1,
                    meta={
                        "source": "ticket_hold",
                        "ticket_hold_id": hold.id,
                        "purchase_link_id": link.id,
                        "pricing_mode": line.pricing_mode.value,
                        "original_price": line.original_price,
                    },
                )
                db.add(booking)
                units.append((booking, line.unit_price, line.original_price, alloc.ticket_type.currency))

        await db.flush()  # booking ids

        purchases: list[PurchaseLinkPurchase] = []
        for booking, unit_price, original_price, unit_currency in units:
            p = PurchaseLinkPurchase(
                purchase_link_id=link.id,
                booking_id=booking.id,
                transaction_id=tx.id,
                user_id=user.id if user is not None else None,
                access_id=access.id if access is not None and access.purchase_link_id == link.id else None,
                quantity=1,
                unit_price=unit_price,
                original_price=original_price,
                currency=unit_currency,
            )
            db.add(p)
            purchases.append(p)

        if link.quantity_mode.is_limited() and link.remaining_quantity == 0:
            link.status = LinkStatus.EXHAUSTED

        if access is not None and access.purchase_link_id == link.id:
            access.resulted_in_purchase = True

        await db.commit()

    except TicketHoldError as e:
        await db.rollback()
        logger.warning("purchase rejected link=%s reason=%s: %s", request.link_code, e.code, e)
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "purchase completed tx=%s link=%s tickets=%s total=%s %s",
        tx.transaction_number,
        link.id,
        totals.total_quantity,
        totals.subtotal,
        tx.currency,
    )

    return PurchaseResult(
        transaction=tx,
        bookings=[u[0] for u in units],
        purchases=purchases,
        totals=totals,
    )


async def quote_purchase(db: AsyncSession, code: str, items: dict[int, int]) -> OrderTotals:
    """
    Price a cart for the checkout page without taking locks.
    Nothing is sold; the only possible write is the lookup marking a stale link EXPIRED.
    """
    link = await get_link_by_code(db, code)
    if not link.is_usable:
        raise LinkNotUsable(unavailable_message(link), remaining=link.remaining_quantity)
    return calculate_order_total(link.hold.allocations, items)
