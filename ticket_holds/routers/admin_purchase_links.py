# ticket_holds/routers/admin_purchase_links.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.db import get_db
from ticket_holds.core.deps import ensure_can_manage, require_staff
from ticket_holds.models.purchase_link import PurchaseLink
from ticket_holds.models.user import User
from ticket_holds.schemas.analytics import LinkAnalyticsOut
from ticket_holds.schemas.purchase_links import PurchaseLinkOut, PurchaseLinkUpdate, UserOptionOut
from ticket_holds.services.analytics import link_analytics
from ticket_holds.services.purchase_links import (
    delete_link,
    get_link,
    revoke_link,
    search_users,
    update_link,
)

router = APIRouter(prefix="/admin/purchase-links", tags=["Admin - Purchase Links"])


async def _load_link(db: AsyncSession, link_id: int, user: User) -> PurchaseLink:
    link = await get_link(db, link_id)
    ensure_can_manage(user, link.hold.organizer_id)
    return link


@router.get("/users/search", response_model=list[UserOptionOut])
async def search_assignable_users(
    query: str = Query(min_length=2, max_length=100),
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    users = await search_users(db, query)
    return [UserOptionOut.from_user(u) for u in users]


@router.get("/{link_id}", response_model=PurchaseLinkOut)
async def get_purchase_link(
    link_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    link = await _load_link(db, link_id, staff)
    return PurchaseLinkOut.from_link(link)


@router.patch("/{link_id}", response_model=PurchaseLinkOut)
async def update_purchase_link(
    link_id: int,
    body: PurchaseLinkUpdate,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    link = await _load_link(db, link_id, staff)
    link = await update_link(db, link=link, data=body)
    return PurchaseLinkOut.from_link(link)


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_purchase_link(
    link_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    link = await _load_link(db, link_id, staff)
    await delete_link(db, link=link)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{link_id}/revoke", response_model=PurchaseLinkOut)
async def revoke_purchase_link(
    link_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    link = await _load_link(db, link_id, staff)
    link = await revoke_link(db, link=link, revoked_by=staff)
    return PurchaseLinkOut.from_link(link)


@router.get("/{link_id}/analytics", response_model=LinkAnalyticsOut)
async def purchase_link_analytics(
    link_id: int,
    db: AsyncSession = Depends(get_db),
    staff: User = Depends(require_staff),
):
    link = await _load_link(db, link_id, staff)
    return await link_analytics(db, link)
