from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import ticket_holds.models  # noqa: F401
from ticket_holds.core.config import settings
from ticket_holds.core.logging import configure_logging
from ticket_holds.routers.admin_purchase_links import router as admin_purchase_links_router
from ticket_holds.routers.admin_ticket_holds import router as admin_ticket_holds_router
from ticket_holds.routers.auth import router as auth_router
from ticket_holds.routers.purchase_links import router as purchase_links_router
from ticket_holds.services.errors import (
    AssignedUserNotFound,
    EventOccurrenceNotFound,
    HoldHasPurchases,
    HoldNotActive,
    HoldNotFound,
    InsufficientHoldInventory,
    InsufficientInventory,
    LinkCodeGenerationFailed,
    LinkHasPurchases,
    LinkNotFound,
    LinkNotUsable,
    NumberGenerationFailed,
    TicketHoldError,
    TicketTypeNotFound,
    UserNotAuthorizedForLink,
)

configure_logging()

ERROR_STATUS: dict[type[TicketHoldError], int] = {
    LinkNotFound: 404,
    HoldNotFound: 404,
    TicketTypeNotFound: 404,
    EventOccurrenceNotFound: 404,
    UserNotAuthorizedForLink: 403,
    InsufficientInventory: 409,
    InsufficientHoldInventory: 409,
    HoldNotActive: 409,
    LinkNotUsable: 409,
    HoldHasPurchases: 409,
    LinkHasPurchases: 409,
    AssignedUserNotFound: 422,
    LinkCodeGenerationFailed: 503,
    NumberGenerationFailed: 503,
}


def status_for(exc: TicketHoldError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


app = FastAPI(title="Ticket Holds API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TicketHoldError)
async def ticket_hold_error_handler(request: Request, exc: TicketHoldError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": exc.message, "code": exc.code},
    )


# Auth
app.include_router(auth_router)

# Admin
app.include_router(admin_ticket_holds_router)
app.include_router(admin_purchase_links_router)

# Public
app.include_router(purchase_links_router)
