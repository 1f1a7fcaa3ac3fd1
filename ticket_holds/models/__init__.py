# Importing every model registers all tables and FKs on Base.metadata
from ticket_holds.models.booking import Booking, Transaction  # noqa: F401
from ticket_holds.models.catalog import Event, EventOccurrence, Organizer, TicketType  # noqa: F401
from ticket_holds.models.purchase_link import (  # noqa: F401
    PurchaseLink,
    PurchaseLinkAccess,
    PurchaseLinkPurchase,
)
from ticket_holds.models.ticket_hold import HoldAllocation, TicketHold  # noqa: F401
from ticket_holds.models.user import User  # noqa: F401
