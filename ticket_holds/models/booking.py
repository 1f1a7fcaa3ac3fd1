# ticket_holds/models/booking.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ticket_holds.core.clock import now_utc
from ticket_holds.core.db import Base, BigIntId, JSONDict, str_enum
from ticket_holds.models.enums import BookingStatus, TransactionStatus


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    transaction_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # cents
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        str_enum(TransactionStatus, "transaction_status"),
        nullable=False,
    )

    # "metadata" is reserved on declarative classes; attribute is "meta"
    meta: Mapped[dict] = mapped_column("metadata", JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    booking_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )
    ticket_type_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("ticket_types.id", ondelete="CASCADE"), nullable=False
    )
    event_occurrence_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("event_occurrences.id", ondelete="CASCADE"), nullable=False
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price_at_booking: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_at_booking: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        str_enum(BookingStatus, "booking_status"),
        nullable=False,
    )

    qr_code_identifier: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    max_allowed_check_ins: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    meta: Mapped[dict] = mapped_column("metadata", JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )


Index("ix_bookings_inventory", Booking.ticket_type_id, Booking.event_occurrence_id, Booking.status)
Index("ix_bookings_transaction_id", Booking.transaction_id)
