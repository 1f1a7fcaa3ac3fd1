# ticket_holds/models/purchase_link.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ticket_holds.core.clock import is_past, now_utc
from ticket_holds.core.config import settings
from ticket_holds.core.db import Base, BigIntId, JSONDict, str_enum
from ticket_holds.models.enums import LinkStatus, QuantityMode
from ticket_holds.models.ticket_hold import TicketHold

LINK_CODE_LENGTH = 16
USER_AGENT_MAX_LENGTH = 500


class PurchaseLink(Base):
    __tablename__ = "purchase_links"
    __table_args__ = (
        CheckConstraint("quantity_purchased >= 0", name="purchase_links_purchased_nonneg_check"),
        CheckConstraint(
            "quantity_limit IS NULL OR quantity_purchased <= quantity_limit",
            name="purchase_links_purchased_le_limit_check",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    uuid: Mapped[str] = mapped_column(
        String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4())
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    ticket_hold_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ticket_holds.id", ondelete="CASCADE"), nullable=False
    )

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # NULL = anonymous link, anyone holding the code may buy
    assigned_user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    quantity_mode: Mapped[QuantityMode] = mapped_column(
        str_enum(QuantityMode, "quantity_mode"), nullable=False, default=QuantityMode.MAXIMUM
    )
    quantity_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity_purchased: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[LinkStatus] = mapped_column(
        str_enum(LinkStatus, "link_status"), nullable=False, default=LinkStatus.ACTIVE
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc
    )

    hold: Mapped[TicketHold] = relationship(TicketHold, lazy="selectin")

    # -------------------------
    # Derived state
    # -------------------------
    @property
    def is_anonymous(self) -> bool:
        return self.assigned_user_id is None

    @property
    def is_expired(self) -> bool:
        return is_past(self.expires_at)

    @property
    def remaining_quantity(self) -> Optional[int]:
        """None means unlimited."""
        if not self.quantity_mode.is_limited():
            return None
        return max(0, (self.quantity_limit or 0) - self.quantity_purchased)

    @property
    def is_usable(self) -> bool:
        if not self.status.is_usable():
            return False
        if self.is_expired:
            return False
        if not self.hold.is_usable:
            return False
        return self.remaining_quantity != 0

    @property
    def full_url(self) -> str:
        return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/l/{self.code}"

    def can_be_used_by(self, user_id: Optional[int]) -> bool:
        if self.is_anonymous:
            return True
        return user_id is not None and user_id == self.assigned_user_id

    def can_purchase_quantity(self, quantity: int) -> bool:
        remaining = self.remaining_quantity
        if self.quantity_mode is QuantityMode.UNLIMITED:
            return True
        if self.quantity_mode is QuantityMode.FIXED:
            return quantity == remaining
        return quantity <= remaining


class PurchaseLinkAccess(Base):
    __tablename__ = "purchase_link_accesses"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)

    purchase_link_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchase_links.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)  # IPv6 fits
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    referer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    resulted_in_purchase: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accessed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc
    )


class PurchaseLinkPurchase(Base):
    __tablename__ = "purchase_link_purchases"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)

    purchase_link_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchase_links.id", ondelete="CASCADE"), nullable=False
    )
    booking_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    access_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("purchase_link_accesses.id", ondelete="SET NULL"), nullable=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)  # cents actually charged
    original_price: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )


Index("ix_purchase_links_hold_status", PurchaseLink.ticket_hold_id, PurchaseLink.status)
Index("ix_purchase_links_assigned_user", PurchaseLink.assigned_user_id)
Index(
    "ix_link_accesses_link_purchase",
    PurchaseLinkAccess.purchase_link_id,
    PurchaseLinkAccess.resulted_in_purchase,
)
Index("ix_link_accesses_accessed_at", PurchaseLinkAccess.accessed_at)
Index("ix_link_purchases_link", PurchaseLinkPurchase.purchase_link_id)
Index("ix_link_purchases_transaction", PurchaseLinkPurchase.transaction_id)
