# ticket_holds/models/ticket_hold.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ticket_holds.core.clock import is_past, now_utc
from ticket_holds.core.db import Base, BigIntId, str_enum
from ticket_holds.models.enums import HoldStatus, PricingMode

if TYPE_CHECKING:
    from ticket_holds.models.catalog import TicketType


class TicketHold(Base):
    __tablename__ = "ticket_holds"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    uuid: Mapped[str] = mapped_column(
        String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4())
    )

    event_occurrence_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("event_occurrences.id", ondelete="CASCADE"), nullable=False
    )
    organizer_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("organizers.id", ondelete="SET NULL"), nullable=True
    )
    created_by: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[HoldStatus] = mapped_column(
        str_enum(HoldStatus, "hold_status"), nullable=False, default=HoldStatus.ACTIVE
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc
    )

    allocations: Mapped[List["HoldAllocation"]] = relationship(
        "HoldAllocation",
        cascade="all, delete-orphan",
        order_by="HoldAllocation.id",
        lazy="selectin",
    )

    # -------------------------
    # Derived state
    # -------------------------
    @property
    def is_expired(self) -> bool:
        return is_past(self.expires_at)

    @property
    def is_usable(self) -> bool:
        return self.status.is_usable() and not self.is_expired

    @property
    def total_allocated(self) -> int:
        return sum(a.allocated_quantity for a in self.allocations)

    @property
    def total_purchased(self) -> int:
        return sum(a.purchased_quantity for a in self.allocations)

    @property
    def total_remaining(self) -> int:
        return self.total_allocated - self.total_purchased

    def allocation_for(self, ticket_type_id: int) -> Optional["HoldAllocation"]:
        for a in self.allocations:
            if a.ticket_type_id == ticket_type_id:
                return a
        return None


class HoldAllocation(Base):
    __tablename__ = "hold_allocations"
    __table_args__ = (
        UniqueConstraint("ticket_hold_id", "ticket_type_id", name="hold_allocation_unique"),
        CheckConstraint("allocated_quantity >= 1", name="hold_allocations_allocated_check"),
        CheckConstraint("purchased_quantity >= 0", name="hold_allocations_purchased_nonneg_check"),
        CheckConstraint(
            "purchased_quantity <= allocated_quantity",
            name="hold_allocations_purchased_le_allocated_check",
        ),
        CheckConstraint(
            "discount_percentage IS NULL OR (discount_percentage >= 0 AND discount_percentage <= 100)",
            name="hold_allocations_discount_check",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)

    ticket_hold_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ticket_holds.id", ondelete="CASCADE"), nullable=False
    )
    ticket_type_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ticket_types.id", ondelete="CASCADE"), nullable=False
    )

    allocated_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    purchased_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    pricing_mode: Mapped[PricingMode] = mapped_column(
        str_enum(PricingMode, "pricing_mode"), nullable=False, default=PricingMode.ORIGINAL
    )
    custom_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # cents
    discount_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc
    )

    ticket_type: Mapped["TicketType"] = relationship("TicketType", lazy="selectin")

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.allocated_quantity - self.purchased_quantity)

    @property
    def is_available(self) -> bool:
        return self.remaining_quantity > 0


Index("ix_ticket_holds_occurrence_status", TicketHold.event_occurrence_id, TicketHold.status)
Index("ix_ticket_holds_organizer_status", TicketHold.organizer_id, TicketHold.status)
Index("ix_hold_allocations_ticket_type", HoldAllocation.ticket_type_id)
