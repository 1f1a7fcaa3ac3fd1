from __future__ import annotations

import ipaddress
import logging
import secrets
import string
from datetime import datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticket_holds.core.clock import now_utc
from ticket_holds.models.enums import LinkStatus
from ticket_holds.models.purchase_link import (
    LINK_CODE_LENGTH,
    USER_AGENT_MAX_LENGTH,
    PurchaseLink,
    PurchaseLinkAccess,
    PurchaseLinkPurchase,
)
from ticket_holds.models.ticket_hold import TicketHold
from ticket_holds.models.user import User
from ticket_holds.schemas.purchase_links import PurchaseLinkCreate, PurchaseLinkUpdate
from ticket_holds.services.errors import (
    AssignedUserNotFound,
    HoldNotActive,
    LinkCodeGenerationFailed,
    LinkHasPurchases,
    LinkNotFound,
    LinkNotUsable,
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_letters + string.digits
MAX_CODE_ATTEMPTS = 10
USER_SEARCH_LIMIT = 20


def _random_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(LINK_CODE_LENGTH))


async def _generate_unique_code(db: AsyncSession) -> str:
    # pre-check for collisions so a clash never aborts the surrounding transaction
    for _attempt in range(MAX_CODE_ATTEMPTS):
        candidate = _random_code()
        exists = await db.execute(select(PurchaseLink.id).where(PurchaseLink.code == candidate))
        if exists.scalar_one_or_none() is None:
            return candidate
    raise LinkCodeGenerationFailed(MAX_CODE_ATTEMPTS)


def _clean_ip(ip_address: str | None) -> str | None:
    if not ip_address:
        return None
    try:
        return str(ipaddress.ip_address(ip_address.strip()))
    except ValueError:
        return None


def unavailable_message(link: PurchaseLink) -> str:
    if link.is_expired:
        return "This purchase link has expired."

    if not link.status.is_usable():
        return {
            LinkStatus.REVOKED: "This purchase link has been revoked.",
            LinkStatus.EXHAUSTED: "All tickets available through this link have been purchased.",
            LinkStatus.EXPIRED: "This purchase link has expired.",
        }.get(link.status, "This purchase link is no longer active.")

    if not link.hold.is_usable:
        return "The ticket hold associated with this link is no longer active."

    if link.remaining_quantity == 0:
        return "All tickets available through this link have been purchased."

    return "This purchase link is not available."


async def create_link(db: AsyncSession, *, hold: TicketHold, data: PurchaseLinkCreate) -> PurchaseLink:
    if not hold.is_usable:
        raise HoldNotActive("Purchase links can only be created for active ticket holds.")

    try:
        if data.assigned_user_id is not None:
            res = await db.execute(select(User.id).where(User.id == data.assigned_user_id))
            if res.scalar_one_or_none() is None:
                raise AssignedUserNotFound(data.assigned_user_id)

        code = await _generate_unique_code(db)

        link = PurchaseLink(
            code=code,
            ticket_hold_id=hold.id,
            hold=hold,
            name=data.name,
            assigned_user_id=data.assigned_user_id,
            quantity_mode=data.quantity_mode,
            quantity_limit=data.quantity_limit,
            quantity_purchased=0,
            status=LinkStatus.ACTIVE,
            expires_at=data.expires_at,
            notes=data.notes,
            meta=dict(data.metadata or {}),
        )
        db.add(link)
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info(
        "purchase link created id=%s hold=%s mode=%s limit=%s assigned_user=%s",
        link.id,
        hold.id,
        link.quantity_mode.value,
        link.quantity_limit,
        link.assigned_user_id,
    )
    return link


async def update_link(db: AsyncSession, *, link: PurchaseLink, data: PurchaseLinkUpdate) -> PurchaseLink:
    """Only cosmetic fields and expiry change; quantity settings stay as created."""
    if link.quantity_purchased > 0 and not link.is_usable:
        raise LinkNotUsable("Cannot update a link that has purchases and is no longer usable.")

    fields = data.model_fields_set

    try:
        if "name" in fields:
            link.name = data.name
        if "expires_at" in fields:
            link.expires_at = data.expires_at
        if "notes" in fields:
            link.notes = data.notes
        if "metadata" in fields:
            # reassign so the JSON column is flagged dirty
            link.meta = dict(data.metadata or {})

        link.updated_at = now_utc()
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info("purchase link updated id=%s fields=%s", link.id, sorted(fields))
    return link


async def revoke_link(db: AsyncSession, *, link: PurchaseLink, revoked_by: User) -> PurchaseLink:
    if link.status is not LinkStatus.ACTIVE:
        return link

    try:
        now = now_utc()
        link.status = LinkStatus.REVOKED
        link.revoked_at = now
        link.revoked_by = revoked_by.id
        link.updated_at = now
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info("purchase link revoked id=%s by user=%s", link.id, revoked_by.id)
    return link


async def delete_link(db: AsyncSession, *, link: PurchaseLink) -> None:
    """Links that sold anything stay for the ledger and analytics; revoke those instead."""
    try:
        res = await db.execute(
            select(func.count(PurchaseLinkPurchase.id)).where(PurchaseLinkPurchase.purchase_link_id == link.id)
        )
        if int(res.scalar_one()) > 0 or link.quantity_purchased > 0:
            raise LinkHasPurchases()

        await db.execute(delete(PurchaseLinkAccess).where(PurchaseLinkAccess.purchase_link_id == link.id))
        await db.delete(link)
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.info("purchase link deleted id=%s hold=%s", link.id, link.ticket_hold_id)


async def record_access(
    db: AsyncSession,
    *,
    link: PurchaseLink,
    user: User | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    referer: str | None = None,
    session_id: str | None = None,
    accessed_at: datetime | None = None,
) -> PurchaseLinkAccess:
    try:
        access = PurchaseLinkAccess(
            purchase_link_id=link.id,
            user_id=user.id if user is not None else None,
            ip_address=_clean_ip(ip_address),
            user_agent=user_agent[:USER_AGENT_MAX_LENGTH] if user_agent else None,
            referer=referer or None,
            session_id=session_id or None,
            resulted_in_purchase=False,
            accessed_at=accessed_at or now_utc(),
        )
        db.add(access)
        await db.commit()

    except Exception:
        await db.rollback()
        raise

    logger.debug("purchase link access id=%s link=%s user=%s", access.id, link.id, access.user_id)
    return access


async def get_access(db: AsyncSession, access_id: int | None) -> PurchaseLinkAccess | None:
    """The purchase only credits the access if it was recorded for the same link."""
    if access_id is None:
        return None
    res = await db.execute(select(PurchaseLinkAccess).where(PurchaseLinkAccess.id == access_id))
    return res.scalar_one_or_none()


async def get_link_by_code(db: AsyncSession, code: str) -> PurchaseLink:
    """
    Load a link with its hold, allocations and ticket types.
    An ACTIVE link found past its expiry is moved to EXPIRED on the spot.
    """
    res = await db.execute(
        select(PurchaseLink).where(PurchaseLink.code == code).execution_options(populate_existing=True)
    )
    link = res.scalar_one_or_none()
    if link is None:
        raise LinkNotFound()

    if link.status is LinkStatus.ACTIVE and link.is_expired:
        try:
            link.status = LinkStatus.EXPIRED
            link.updated_at = now_utc()
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("purchase link expired id=%s", link.id)

    return link


async def get_link(db: AsyncSession, link_id: int) -> PurchaseLink:
    res = await db.execute(
        select(PurchaseLink).where(PurchaseLink.id == link_id).execution_options(populate_existing=True)
    )
    link = res.scalar_one_or_none()
    if link is None:
        raise LinkNotFound()
    return link


async def list_links_for_hold(db: AsyncSession, hold_id: int) -> list[PurchaseLink]:
    res = await db.execute(
        select(PurchaseLink)
        .where(PurchaseLink.ticket_hold_id == hold_id)
        .order_by(PurchaseLink.created_at.desc(), PurchaseLink.id.desc())
    )
    return list(res.scalars().all())


async def validate_link_for_user(db: AsyncSession, code: str, user: User | None) -> dict:
    try:
        link = await get_link_by_code(db, code)
    except LinkNotFound:
        return {"valid": False, "link": None, "errors": ["Link not found"]}

    errors: list[str] = []

    if not link.is_usable:
        errors.append(f"Link is not usable. Status: {link.status.label()}")

    if not link.can_be_used_by(user.id if user is not None else None):
        errors.append("You are not authorized to use this link")

    if not link.hold.is_usable:
        errors.append("The associated ticket hold is not active")

    return {"valid": not errors, "link": link, "errors": errors}


async def search_users(db: AsyncSession, query: str, limit: int = USER_SEARCH_LIMIT) -> list[User]:
    """Candidates for a link assignment, matched on username, full name or email."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    res = await db.execute(
        select(User)
        .where(
            or_(
                User.username.ilike(pattern, escape="\\"),
                User.full_name.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
            )
        )
        .order_by(User.username)
        .limit(limit)
    )
    return list(res.scalars().all())
