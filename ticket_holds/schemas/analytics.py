from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class HoldSummary(BaseModel):
    id: int
    uuid: str
    name: str
    status: str
    created_at: datetime
    expires_at: datetime | None


class InventoryStats(BaseModel):
    total_allocated: int
    total_purchased: int
    total_remaining: int
    utilization_rate: float


class AllocationStats(BaseModel):
    ticket_type_id: int
    ticket_name: str
    allocated: int
    purchased: int
    remaining: int
    pricing_mode: str
    utilization_rate: float


class LinkCounts(BaseModel):
    total: int
    active: int
    revoked: int
    exhausted: int
    expired: int


class HoldEngagement(BaseModel):
    total_accesses: int
    total_purchases: int
    conversion_rate: float


class TicketTypeRevenue(BaseModel):
    ticket_type_id: int
    ticket_name: str
    total_quantity: int
    total_revenue: int
    original_value: int
    total_savings: int


class HoldAnalyticsOut(BaseModel):
    hold: HoldSummary
    inventory: InventoryStats
    allocations: list[AllocationStats]
    links: LinkCounts
    engagement: HoldEngagement
    revenue_by_ticket_type: list[TicketTypeRevenue] = []


class LinkSummary(BaseModel):
    id: int
    uuid: str
    code: str
    name: str | None
    status: str
    quantity_mode: str
    quantity_limit: int | None
    quantity_purchased: int
    remaining_quantity: int | None
    is_anonymous: bool
    created_at: datetime
    expires_at: datetime | None


class LinkEngagement(BaseModel):
    total_accesses: int
    unique_visitors: int
    purchases_from_access: int
    conversion_rate: float


class LinkRevenue(BaseModel):
    total_revenue: int
    total_original_value: int
    total_savings_given: int
    average_order_value: int
    currency: str


class RecentAccess(BaseModel):
    accessed_at: datetime
    user_id: int | None
    ip_address: str | None
    resulted_in_purchase: bool


class LinkAnalyticsOut(BaseModel):
    link: LinkSummary
    engagement: LinkEngagement
    revenue: LinkRevenue
    accesses_by_day: dict[str, int]
    recent_accesses: list[RecentAccess]
