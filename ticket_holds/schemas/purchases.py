from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from ticket_holds.models.enums import BookingStatus, PricingMode, TransactionStatus


class PurchaseItemIn(BaseModel):
    ticket_type_id: int = Field(validation_alias=AliasChoices("ticket_type_id", "ticket_definition_id"))
    quantity: int = Field(ge=1)


class PurchaseIn(BaseModel):
    """Body of POST /l/{code}/purchase."""

    items: list[PurchaseItemIn] = Field(min_length=1)
    coupon_code: str | None = Field(default=None, max_length=50)
    access_id: int | None = None


class QuoteIn(BaseModel):
    items: list[PurchaseItemIn] = Field(min_length=1)


class PurchaseRequest(BaseModel):
    link_code: str
    items: list[PurchaseItemIn] = Field(min_length=1)
    coupon_code: str | None = None

    def merged_items(self) -> dict[int, int]:
        """ticket_type_id -> quantity, duplicates summed, request order kept."""
        out: dict[int, int] = {}
        for item in self.items:
            out[item.ticket_type_id] = out.get(item.ticket_type_id, 0) + item.quantity
        return out


class OrderLineOut(BaseModel):
    ticket_type_id: int
    ticket_name: str
    quantity: int
    unit_price: int
    original_price: int
    line_total: int
    line_savings: int
    pricing_mode: PricingMode

    class Config:
        from_attributes = True


class OrderTotalsOut(BaseModel):
    items: list[OrderLineOut]
    subtotal: int
    total_savings: int

    class Config:
        from_attributes = True


class TransactionOut(BaseModel):
    id: int
    transaction_number: str
    user_id: int | None
    total_amount: int
    currency: str
    status: TransactionStatus
    metadata: dict[str, Any] = Field(validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime

    class Config:
        from_attributes = True


class BookingOut(BaseModel):
    id: int
    booking_number: str
    ticket_type_id: int
    event_occurrence_id: int
    quantity: int
    price_at_booking: int
    currency_at_booking: str
    status: BookingStatus
    qr_code_identifier: str
    max_allowed_check_ins: int

    class Config:
        from_attributes = True


class LinkPurchaseOut(BaseModel):
    id: int
    purchase_link_id: int
    booking_id: int
    transaction_id: int | None
    user_id: int | None
    access_id: int | None
    quantity: int
    unit_price: int
    original_price: int
    currency: str

    class Config:
        from_attributes = True


class PurchaseOut(BaseModel):
    transaction: TransactionOut
    bookings: list[BookingOut]
    purchases: list[LinkPurchaseOut]
    totals: OrderTotalsOut
