from __future__ import annotations

from collections import Counter
from datetime import timedelta

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.clock import as_utc, now_utc
from ticket_holds.core.config import settings
from ticket_holds.models.booking import Booking
from ticket_holds.models.catalog import TicketType
from ticket_holds.models.enums import LinkStatus
from ticket_holds.models.purchase_link import PurchaseLink, PurchaseLinkAccess, PurchaseLinkPurchase
from ticket_holds.models.ticket_hold import TicketHold

ACCESS_WINDOW_DAYS = 30
RECENT_ACCESSES = 10


def _rate(part: int, whole: int) -> float:
    """Percentage with 2 decimals; 0 when nothing to divide by."""
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


async def hold_analytics(db: AsyncSession, hold: TicketHold) -> dict:
    total_allocated = hold.total_allocated
    total_purchased = hold.total_purchased

    res = await db.execute(
        select(PurchaseLink.status, func.count(PurchaseLink.id))
        .where(PurchaseLink.ticket_hold_id == hold.id)
        .group_by(PurchaseLink.status)
    )
    by_status = {status: int(n) for status, n in res.all()}

    res = await db.execute(
        select(func.count(PurchaseLinkAccess.id))
        .join(PurchaseLink, PurchaseLink.id == PurchaseLinkAccess.purchase_link_id)
        .where(PurchaseLink.ticket_hold_id == hold.id)
    )
    total_accesses = int(res.scalar_one() or 0)

    res = await db.execute(
        select(func.count(PurchaseLinkPurchase.id))
        .join(PurchaseLink, PurchaseLink.id == PurchaseLinkPurchase.purchase_link_id)
        .where(PurchaseLink.ticket_hold_id == hold.id)
    )
    total_purchase_records = int(res.scalar_one() or 0)

    return {
        "hold": {
            "id": hold.id,
            "uuid": hold.uuid,
            "name": hold.name,
            "status": hold.status.value,
            "created_at": hold.created_at,
            "expires_at": hold.expires_at,
        },
        "inventory": {
            "total_allocated": total_allocated,
            "total_purchased": total_purchased,
            "total_remaining": total_allocated - total_purchased,
            "utilization_rate": _rate(total_purchased, total_allocated),
        },
        "allocations": [
            {
                "ticket_type_id": a.ticket_type_id,
                "ticket_name": a.ticket_type.name,
                "allocated": a.allocated_quantity,
                "purchased": a.purchased_quantity,
                "remaining": a.remaining_quantity,
                "pricing_mode": a.pricing_mode.value,
                "utilization_rate": _rate(a.purchased_quantity, a.allocated_quantity),
            }
            for a in hold.allocations
        ],
        "links": {
            "total": sum(by_status.values()),
            "active": by_status.get(LinkStatus.ACTIVE, 0),
            "revoked": by_status.get(LinkStatus.REVOKED, 0),
            "exhausted": by_status.get(LinkStatus.EXHAUSTED, 0),
            "expired": by_status.get(LinkStatus.EXPIRED, 0),
        },
        "engagement": {
            "total_accesses": total_accesses,
            "total_purchases": total_purchase_records,
            "conversion_rate": _rate(total_purchase_records, total_accesses),
        },
    }


async def link_analytics(db: AsyncSession, link: PurchaseLink) -> dict:
    res = await db.execute(
        select(
            func.count(PurchaseLinkAccess.id),
            func.count(func.distinct(PurchaseLinkAccess.user_id)),
            func.coalesce(func.sum(case((PurchaseLinkAccess.resulted_in_purchase.is_(True), 1), else_=0)), 0),
        ).where(PurchaseLinkAccess.purchase_link_id == link.id)
    )
    total_accesses, unique_visitors, purchased_accesses = (int(v or 0) for v in res.one())

    res = await db.execute(
        select(
            func.count(PurchaseLinkPurchase.id),
            func.coalesce(func.sum(PurchaseLinkPurchase.unit_price * PurchaseLinkPurchase.quantity), 0),
            func.coalesce(func.sum(PurchaseLinkPurchase.original_price * PurchaseLinkPurchase.quantity), 0),
        ).where(PurchaseLinkPurchase.purchase_link_id == link.id)
    )
    purchase_count, total_revenue, total_original = (int(v or 0) for v in res.one())

    cutoff = now_utc() - timedelta(days=ACCESS_WINDOW_DAYS)
    res = await db.execute(
        select(PurchaseLinkAccess.accessed_at)
        .where(
            PurchaseLinkAccess.purchase_link_id == link.id,
            PurchaseLinkAccess.accessed_at >= cutoff,
        )
    )
    by_day = Counter(as_utc(ts).strftime("%Y-%m-%d") for ts in res.scalars().all())

    res = await db.execute(
        select(PurchaseLinkAccess)
        .where(PurchaseLinkAccess.purchase_link_id == link.id)
        .order_by(PurchaseLinkAccess.accessed_at.desc(), PurchaseLinkAccess.id.desc())
        .limit(RECENT_ACCESSES)
    )
    recent = res.scalars().all()

    return {
        "link": {
            "id": link.id,
            "uuid": link.uuid,
            "code": link.code,
            "name": link.name,
            "status": link.status.value,
            "quantity_mode": link.quantity_mode.value,
            "quantity_limit": link.quantity_limit,
            "quantity_purchased": link.quantity_purchased,
            "remaining_quantity": link.remaining_quantity,
            "is_anonymous": link.is_anonymous,
            "created_at": link.created_at,
            "expires_at": link.expires_at,
        },
        "engagement": {
            "total_accesses": total_accesses,
            "unique_visitors": unique_visitors,
            "purchases_from_access": purchased_accesses,
            "conversion_rate": _rate(purchased_accesses, total_accesses),
        },
        "revenue": {
            "total_revenue": total_revenue,
            "total_original_value": total_original,
            "total_savings_given": total_original - total_revenue,
            "average_order_value": round(total_revenue / purchase_count) if purchase_count else 0,
            "currency": settings.CURRENCY,
        },
        "accesses_by_day": dict(sorted(by_day.items())),
        "recent_accesses": [
            {
                "accessed_at": a.accessed_at,
                "user_id": a.user_id,
                "ip_address": a.ip_address,
                "resulted_in_purchase": a.resulted_in_purchase,
            }
            for a in recent
        ],
    }


async def revenue_by_ticket_type(db: AsyncSession, hold: TicketHold) -> list[dict]:
    qty = PurchaseLinkPurchase.quantity
    res = await db.execute(
        select(
            TicketType.id,
            TicketType.name,
            func.sum(qty),
            func.sum(PurchaseLinkPurchase.unit_price * qty),
            func.sum(PurchaseLinkPurchase.original_price * qty),
        )
        .join(PurchaseLink, PurchaseLink.id == PurchaseLinkPurchase.purchase_link_id)
        .join(Booking, Booking.id == PurchaseLinkPurchase.booking_id)
        .join(TicketType, TicketType.id == Booking.ticket_type_id)
        .where(PurchaseLink.ticket_hold_id == hold.id)
        .group_by(TicketType.id, TicketType.name)
        .order_by(TicketType.id)
    )

    out: list[dict] = []
    for ticket_type_id, name, total_quantity, revenue, original in res.all():
        revenue = int(revenue or 0)
        original = int(original or 0)
        out.append(
            {
                "ticket_type_id": ticket_type_id,
                "ticket_name": name,
                "total_quantity": int(total_quantity or 0),
                "total_revenue": revenue,
                "original_value": original,
                "total_savings": original - revenue,
            }
        )
    return out
