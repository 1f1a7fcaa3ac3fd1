# ticket_holds/models/enums.py
from __future__ import annotations

from enum import Enum


class HoldStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"

    def is_usable(self) -> bool:
        return self is HoldStatus.ACTIVE

    def label(self) -> str:
        return {
            HoldStatus.ACTIVE: "Active",
            HoldStatus.RELEASED: "Released",
        }[self]


class LinkStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"

    def is_usable(self) -> bool:
        return self is LinkStatus.ACTIVE

    def label(self) -> str:
        return {
            LinkStatus.ACTIVE: "Active",
            LinkStatus.REVOKED: "Revoked",
            LinkStatus.EXHAUSTED: "Exhausted",
            LinkStatus.EXPIRED: "Expired",
        }[self]


class QuantityMode(str, Enum):
    UNLIMITED = "unlimited"
    FIXED = "fixed"  # the whole limit must be bought in a single purchase
    MAXIMUM = "maximum"

    def is_limited(self) -> bool:
        return self is not QuantityMode.UNLIMITED

    def label(self) -> str:
        return {
            QuantityMode.UNLIMITED: "Unlimited",
            QuantityMode.FIXED: "Fixed quantity",
            QuantityMode.MAXIMUM: "Up to a maximum",
        }[self]


class PricingMode(str, Enum):
    ORIGINAL = "original"
    FIXED = "fixed"
    PERCENTAGE_DISCOUNT = "percentage_discount"
    FREE = "free"

    def label(self) -> str:
        return {
            PricingMode.ORIGINAL: "Original price",
            PricingMode.FIXED: "Fixed price",
            PricingMode.PERCENTAGE_DISCOUNT: "Percentage discount",
            PricingMode.FREE: "Free",
        }[self]


class BookingStatus(str, Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def holding_inventory(cls) -> tuple["BookingStatus", ...]:
        """Statuses whose bookings consume ticket inventory."""
        return (cls.CONFIRMED, cls.PENDING_CONFIRMATION)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"
