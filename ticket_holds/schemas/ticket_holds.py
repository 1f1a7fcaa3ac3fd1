# ticket_holds/schemas/ticket_holds.py
from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, AliasChoices, BaseModel, Field, model_validator

from ticket_holds.core.clock import is_past
from ticket_holds.models.enums import HoldStatus, PricingMode
from ticket_holds.models.ticket_hold import HoldAllocation, TicketHold
from ticket_holds.services.pricing import price_allocation


class AllocationIn(BaseModel):
    ticket_type_id: int = Field(validation_alias=AliasChoices("ticket_type_id", "ticket_definition_id"))
    allocated_quantity: int = Field(ge=1)
    pricing_mode: PricingMode = PricingMode.ORIGINAL
    custom_price: int | None = Field(default=None, ge=0)
    discount_percentage: int | None = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _pricing_fields(self):
        if self.pricing_mode is PricingMode.FIXED and self.custom_price is None:
            raise ValueError("custom_price is required for fixed pricing")
        if self.pricing_mode is PricingMode.PERCENTAGE_DISCOUNT and self.discount_percentage is None:
            raise ValueError("discount_percentage is required for percentage discount pricing")
        return self


def future_expiry(value: datetime | None) -> datetime | None:
    if value is not None and is_past(value):
        raise ValueError("expires_at must be in the future")
    return value


FutureExpiry = Annotated[datetime | None, AfterValidator(future_expiry)]


def _unique_ticket_types(allocations: list[AllocationIn] | None) -> None:
    if not allocations:
        return
    ids = [a.ticket_type_id for a in allocations]
    if len(ids) != len(set(ids)):
        raise ValueError("each ticket type may only be allocated once per hold")


class TicketHoldCreate(BaseModel):
    event_occurrence_id: int
    organizer_id: int | None = None
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    internal_notes: str | None = Field(default=None, max_length=5000)
    expires_at: FutureExpiry = None
    allocations: list[AllocationIn] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_allocations(self):
        _unique_ticket_types(self.allocations)
        return self


class TicketHoldUpdate(BaseModel):
    """Only supplied fields change; ``allocations`` replaces the whole set."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    internal_notes: str | None = Field(default=None, max_length=5000)
    expires_at: FutureExpiry = None
    allocations: list[AllocationIn] | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _check_allocations(self):
        _unique_ticket_types(self.allocations)
        return self


class AllocationOut(BaseModel):
    id: int
    ticket_type_id: int
    ticket_type_name: str
    allocated_quantity: int
    purchased_quantity: int
    remaining_quantity: int
    pricing_mode: PricingMode
    pricing_mode_label: str
    custom_price: int | None
    discount_percentage: int | None
    original_price: int
    unit_price: int
    savings: int
    savings_percentage: float
    is_free: bool
    currency: str

    @classmethod
    def from_allocation(cls, a: HoldAllocation) -> "AllocationOut":
        price = price_allocation(a)
        return cls(
            id=a.id,
            ticket_type_id=a.ticket_type_id,
            ticket_type_name=a.ticket_type.name,
            allocated_quantity=a.allocated_quantity,
            purchased_quantity=a.purchased_quantity,
            remaining_quantity=a.remaining_quantity,
            pricing_mode=a.pricing_mode,
            pricing_mode_label=a.pricing_mode.label(),
            custom_price=a.custom_price,
            discount_percentage=a.discount_percentage,
            original_price=price.original_price,
            unit_price=price.unit_price,
            savings=price.savings,
            savings_percentage=price.savings_percentage,
            is_free=price.is_free,
            currency=a.ticket_type.currency,
        )


class TicketHoldOut(BaseModel):
    id: int
    uuid: str
    event_occurrence_id: int
    organizer_id: int | None
    created_by: int

    name: str
    description: str | None
    internal_notes: str | None

    status: HoldStatus
    status_label: str
    expires_at: datetime | None
    released_at: datetime | None
    released_by: int | None

    is_expired: bool
    is_usable: bool
    total_allocated: int
    total_purchased: int
    total_remaining: int
    purchase_links_count: int = 0

    allocations: list[AllocationOut] = Field(default_factory=list)

    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_hold(cls, hold: TicketHold, purchase_links_count: int = 0) -> "TicketHoldOut":
        return cls(
            id=hold.id,
            uuid=hold.uuid,
            event_occurrence_id=hold.event_occurrence_id,
            organizer_id=hold.organizer_id,
            created_by=hold.created_by,
            name=hold.name,
            description=hold.description,
            internal_notes=hold.internal_notes,
            status=hold.status,
            status_label=hold.status.label(),
            expires_at=hold.expires_at,
            released_at=hold.released_at,
            released_by=hold.released_by,
            is_expired=hold.is_expired,
            is_usable=hold.is_usable,
            total_allocated=hold.total_allocated,
            total_purchased=hold.total_purchased,
            total_remaining=hold.total_remaining,
            purchase_links_count=purchase_links_count,
            allocations=[AllocationOut.from_allocation(a) for a in hold.allocations],
            created_at=hold.created_at,
            updated_at=hold.updated_at,
        )


class TicketHoldListOut(BaseModel):
    items: list[TicketHoldOut]
    total: int
    limit: int
    offset: int


class TicketAvailabilityOut(BaseModel):
    ticket_type_id: int
    name: str
    price: int
    currency: str
    total_quantity: int | None
    booked: int
    held: int
    available: int | None


class OccurrenceAvailabilityOut(BaseModel):
    occurrence_id: int
    event_name: str
    starts_at: datetime
    ticket_types: list[TicketAvailabilityOut]
