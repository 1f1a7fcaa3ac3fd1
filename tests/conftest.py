"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database (aiosqlite, StaticPool), fresh schema per test
- Catalog seed: organizer, event, occurrence and ticket types
- Factories for users, bookings, holds and purchase links
- HTTPX AsyncClient over ASGITransport with get_db overridden
"""
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-length-for-hs256")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ticket_holds.core.db import Base, get_db
from ticket_holds.core.security import create_access_token
from ticket_holds.main import app
from ticket_holds.models import Booking, Event, EventOccurrence, Organizer, TicketType, User
from ticket_holds.models.enums import BookingStatus, QuantityMode
from ticket_holds.schemas.purchase_links import PurchaseLinkCreate
from ticket_holds.schemas.ticket_holds import AllocationIn, TicketHoldCreate
from ticket_holds.services.holds import create_hold
from ticket_holds.services.purchase_links import create_link


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def db(engine) -> AsyncGenerator[AsyncSession, None]:
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


# =============================================================================
# Catalog seed
# =============================================================================

@dataclass
class Catalog:
    organizer: Organizer
    other_organizer: Organizer
    event: Event
    occurrence: EventOccurrence
    other_occurrence: EventOccurrence
    vip: TicketType  # 5000 cents, 100 seats
    general: TicketType  # 2000 cents, 10 seats
    open_seating: TicketType  # 1500 cents, unlimited


@pytest.fixture
async def catalog(db: AsyncSession) -> Catalog:
    organizer = Organizer(name="Harbour Live")
    other_organizer = Organizer(name="Kowloon Events")
    db.add_all([organizer, other_organizer])
    await db.flush()

    event = Event(name="Jazz Night", organizer_id=organizer.id)
    db.add(event)
    await db.flush()

    starts = datetime.now(timezone.utc) + timedelta(days=30)
    occurrence = EventOccurrence(event_id=event.id, event=event, venue="Hall A", starts_at=starts)
    other_occurrence = EventOccurrence(
        event_id=event.id, event=event, venue="Hall A", starts_at=starts + timedelta(days=1)
    )

    vip = TicketType(event_id=event.id, name="VIP", price=5000, currency="hkd", total_quantity=100)
    general = TicketType(event_id=event.id, name="General", price=2000, currency="hkd", total_quantity=10)
    open_seating = TicketType(event_id=event.id, name="Open Seating", price=1500, currency="hkd", total_quantity=None)

    db.add_all([occurrence, other_occurrence, vip, general, open_seating])
    await db.commit()

    return Catalog(
        organizer=organizer,
        other_organizer=other_organizer,
        event=event,
        occurrence=occurrence,
        other_occurrence=other_occurrence,
        vip=vip,
        general=general,
        open_seating=open_seating,
    )


# =============================================================================
# Users
# =============================================================================

@pytest.fixture
def make_user(db: AsyncSession):
    counter = {"n": 0}

    async def _make(role: str = "customer", organizer_id: int | None = None, password_hash: str = "!") -> User:
        counter["n"] += 1
        user = User(
            username=f"{role}{counter['n']}",
            password_hash=password_hash,
            role=role,
            organizer_id=organizer_id,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
async def admin(make_user) -> User:
    return await make_user("admin")


@pytest.fixture
async def customer(make_user) -> User:
    return await make_user("customer")


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id=user.id, role=user.role)}"}

    return _headers


# =============================================================================
# Holds & links
# =============================================================================

@pytest.fixture
def make_hold(db: AsyncSession, catalog: Catalog, admin: User):
    async def _make(allocations=None, *, occurrence=None, expires_at=None, name="Sponsor block", creator=None):
        if allocations is None:
            allocations = [{"ticket_type_id": catalog.vip.id, "allocated_quantity": 10}]
        data = TicketHoldCreate(
            event_occurrence_id=(occurrence or catalog.occurrence).id,
            name=name,
            expires_at=expires_at,
            allocations=[AllocationIn(**a) for a in allocations],
        )
        return await create_hold(db, data=data, creator=creator or admin)

    return _make


@pytest.fixture
def make_link(db: AsyncSession):
    async def _make(hold, *, mode=QuantityMode.UNLIMITED, limit=None, assigned_user_id=None, expires_at=None):
        data = PurchaseLinkCreate(
            quantity_mode=mode,
            quantity_limit=limit,
            assigned_user_id=assigned_user_id,
            expires_at=expires_at,
        )
        return await create_link(db, hold=hold, data=data)

    return _make


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def reload(db: AsyncSession):
    """Fetch a fresh copy of a row; use ids captured before any rolled-back call."""

    async def _reload(model, pk: int):
        res = await db.execute(
            select(model).where(model.id == pk).execution_options(populate_existing=True)
        )
        return res.scalar_one()

    return _reload


@pytest.fixture
def count_rows(db: AsyncSession):
    async def _count(model) -> int:
        res = await db.execute(select(func.count(model.id)))
        return int(res.scalar_one())

    return _count


@pytest.fixture
def make_booking(db: AsyncSession, catalog: Catalog):
    """Bookings sold outside any hold; they only matter to the inventory ledger."""

    async def _make(ticket_type, quantity: int, *, status=BookingStatus.CONFIRMED, occurrence=None) -> Booking:
        booking = Booking(
            booking_number=f"BK-{uuid.uuid4().hex[:10].upper()}",
            ticket_type_id=ticket_type.id,
            event_occurrence_id=(occurrence or catalog.occurrence).id,
            quantity=quantity,
            price_at_booking=ticket_type.price,
            currency_at_booking=ticket_type.currency,
            status=status,
            qr_code_identifier=str(uuid.uuid4()),
        )
        db.add(booking)
        await db.commit()
        return booking

    return _make
