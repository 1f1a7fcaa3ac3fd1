from __future__ import annotations


class TicketHoldError(Exception):
    """Base for every domain failure raised by the hold services."""

    code = "TICKET_HOLD_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TicketTypeNotFound(TicketHoldError):
    code = "TICKET_TYPE_NOT_FOUND"

    def __init__(self, ticket_type_id: int, message: str | None = None):
        super().__init__(message or f"Ticket type {ticket_type_id} not found.")
        self.ticket_type_id = ticket_type_id


class HoldNotFound(TicketHoldError):
    code = "HOLD_NOT_FOUND"

    def __init__(self, message: str = "Ticket hold not found."):
        super().__init__(message)


class LinkNotFound(TicketHoldError):
    code = "LINK_NOT_FOUND"

    def __init__(self, message: str = "Purchase link not found."):
        super().__init__(message)


class InsufficientInventory(TicketHoldError):
    """Not enough event inventory to back a hold allocation."""

    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, ticket_name: str, requested: int, available: int, message: str | None = None):
        super().__init__(
            message
            or f"Insufficient inventory for '{ticket_name}': requested {requested}, available {available}."
        )
        self.ticket_name = ticket_name
        self.requested = requested
        self.available = available


class InsufficientHoldInventory(TicketHoldError):
    """Not enough unpurchased units left inside a hold allocation."""

    code = "INSUFFICIENT_HOLD_INVENTORY"

    def __init__(self, ticket_name: str, requested: int, available: int):
        super().__init__(
            f"Only {available} '{ticket_name}' ticket(s) left in this hold, requested {requested}."
        )
        self.ticket_name = ticket_name
        self.requested = requested
        self.available = available


class HoldNotActive(TicketHoldError):
    code = "HOLD_NOT_ACTIVE"

    def __init__(self, message: str = "Ticket hold is not active."):
        super().__init__(message)


class HoldHasPurchases(TicketHoldError):
    code = "HOLD_HAS_PURCHASES"

    def __init__(self, message: str = "Ticket hold has purchases and cannot be deleted; release it instead."):
        super().__init__(message)


class LinkNotUsable(TicketHoldError):
    code = "LINK_NOT_USABLE"

    def __init__(self, message: str, remaining: int | None = None):
        super().__init__(message)
        self.remaining = remaining


class UserNotAuthorizedForLink(TicketHoldError):
    code = "USER_NOT_AUTHORIZED_FOR_LINK"

    def __init__(self, message: str = "This purchase link is assigned to a different user."):
        super().__init__(message)


class LinkCodeGenerationFailed(TicketHoldError):
    code = "LINK_CODE_GENERATION_FAILED"

    def __init__(self, attempts: int):
        super().__init__(f"Failed to generate a unique link code after {attempts} attempts.")
        self.attempts = attempts


class EventOccurrenceNotFound(TicketHoldError):
    code = "EVENT_OCCURRENCE_NOT_FOUND"

    def __init__(self, occurrence_id: int):
        super().__init__(f"Event occurrence {occurrence_id} not found.")
        self.occurrence_id = occurrence_id


class AssignedUserNotFound(TicketHoldError):
    code = "ASSIGNED_USER_NOT_FOUND"

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found.")
        self.user_id = user_id


class TicketTypeNotOnOccurrence(TicketTypeNotFound):
    """The ticket type belongs to a different event than the hold's occurrence."""

    code = "TICKET_TYPE_NOT_ON_OCCURRENCE"

    def __init__(self, ticket_type_id: int, occurrence_id: int):
        super().__init__(
            ticket_type_id, f"Ticket type {ticket_type_id} is not sold on event occurrence {occurrence_id}."
        )
        self.occurrence_id = occurrence_id


class LinkHasPurchases(TicketHoldError):
    code = "LINK_HAS_PURCHASES"

    def __init__(self, message: str = "Purchase link has purchases and cannot be deleted; revoke it instead."):
        super().__init__(message)


class NumberGenerationFailed(TicketHoldError):
    code = "NUMBER_GENERATION_FAILED"

    def __init__(self, prefix: str, attempts: int):
        super().__init__(f"Failed to generate a unique {prefix} number after {attempts} attempts.")
        self.prefix = prefix
        self.attempts = attempts
