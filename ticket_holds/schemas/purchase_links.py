# ticket_holds/schemas/purchase_links.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from ticket_holds.models.enums import LinkStatus, QuantityMode
from ticket_holds.models.purchase_link import PurchaseLink
from ticket_holds.models.user import User
from ticket_holds.schemas.ticket_holds import AllocationOut, FutureExpiry


class PurchaseLinkCreate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    assigned_user_id: int | None = None
    quantity_mode: QuantityMode = QuantityMode.MAXIMUM
    quantity_limit: int | None = Field(default=None, ge=1)
    expires_at: FutureExpiry = None
    notes: str | None = Field(default=None, max_length=5000)
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _quantity_rules(self):
        if self.quantity_mode is QuantityMode.UNLIMITED:
            self.quantity_limit = None
        elif self.quantity_limit is None:
            raise ValueError("quantity_limit is required unless quantity_mode is unlimited")
        return self


class PurchaseLinkUpdate(BaseModel):
    """Quantity settings are fixed once the link exists."""

    name: str | None = Field(default=None, max_length=255)
    expires_at: FutureExpiry = None
    notes: str | None = Field(default=None, max_length=5000)
    metadata: dict[str, Any] | None = None


class PurchaseLinkOut(BaseModel):
    id: int
    uuid: str
    code: str
    full_url: str
    ticket_hold_id: int
    name: str | None

    assigned_user_id: int | None
    is_anonymous: bool

    quantity_mode: QuantityMode
    quantity_mode_label: str
    quantity_limit: int | None
    quantity_purchased: int
    remaining_quantity: int | None

    status: LinkStatus
    status_label: str
    is_expired: bool
    is_usable: bool

    expires_at: datetime | None
    revoked_at: datetime | None
    revoked_by: int | None
    notes: str | None
    metadata: dict[str, Any]

    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_link(cls, link: PurchaseLink) -> "PurchaseLinkOut":
        return cls(
            id=link.id,
            uuid=link.uuid,
            code=link.code,
            full_url=link.full_url,
            ticket_hold_id=link.ticket_hold_id,
            name=link.name,
            assigned_user_id=link.assigned_user_id,
            is_anonymous=link.is_anonymous,
            quantity_mode=link.quantity_mode,
            quantity_mode_label=link.quantity_mode.label(),
            quantity_limit=link.quantity_limit,
            quantity_purchased=link.quantity_purchased,
            remaining_quantity=link.remaining_quantity,
            status=link.status,
            status_label=link.status.label(),
            is_expired=link.is_expired,
            is_usable=link.is_usable,
            expires_at=link.expires_at,
            revoked_at=link.revoked_at,
            revoked_by=link.revoked_by,
            notes=link.notes,
            metadata=link.meta or {},
            created_at=link.created_at,
            updated_at=link.updated_at,
        )


class PublicHoldOut(BaseModel):
    name: str
    description: str | None
    event_occurrence_id: int
    expires_at: datetime | None


class PublicEventOut(BaseModel):
    event_id: int
    event_name: str
    occurrence_id: int
    starts_at: datetime
    ends_at: datetime | None
    venue: str | None
    organizer_name: str | None


class PublicLinkOut(BaseModel):
    """Landing page payload for /l/{code}; internal notes are never exposed."""

    code: str
    name: str | None
    valid: bool
    errors: list[str] = Field(default_factory=list)

    quantity_mode: QuantityMode
    quantity_limit: int | None
    remaining_quantity: int | None
    expires_at: datetime | None

    hold: PublicHoldOut
    event: PublicEventOut | None = None
    allocations: list[AllocationOut] = Field(default_factory=list)

    access_id: int | None = None


class LinkAccessOut(BaseModel):
    id: int
    user_id: int | None
    ip_address: str | None
    user_agent: str | None
    referer: str | None
    resulted_in_purchase: bool
    accessed_at: datetime

    class Config:
        from_attributes = True


class UserOptionOut(BaseModel):
    id: int
    username: str
    full_name: str | None
    email: str | None
    label: str

    @classmethod
    def from_user(cls, user: User) -> "UserOptionOut":
        shown = user.full_name or user.username
        return cls(
            id=user.id,
            username=user.username,
            full_name=user.full_name,
            email=user.email,
            label=f"{shown} ({user.email})" if user.email else shown,
        )
