"""Shared fixtures: in-memory database, fake gateway, recording notifier, fixed clock."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.base import init_db
from database.models import Matriculation, UnavailablePeriod, User, Vehicle
from services.exceptions import GatewayError
from services.payment_service import GatewayPayment, PaymentLink
from services.prolongation_service import ProlongationService
from services.reservation_service import ReservationService


class FixedClock:
    def __init__(self, today: date):
        self.current = today

    def today(self) -> date:
        return self.current


class FakeGateway:
    """Records init-payment payloads and answers lookups from completed payments"""

    def __init__(self):
        self.payloads = {}
        self.payments = {}
        self.lookups = 0
        self.fail_with = None

    async def init_payment(self, payload):
        if self.fail_with:
            raise self.fail_with
        payment_ref = f"ref-{len(self.payloads) + 1}"
        self.payloads[payment_ref] = payload
        return PaymentLink(pay_url=f"https://pay.test/{payment_ref}", payment_ref=payment_ref)

    async def get_payment(self, payment_ref):
        self.lookups += 1
        if payment_ref not in self.payments:
            raise GatewayError(f"Payment not found: {payment_ref}")
        return self.payments[payment_ref]

    def complete(self, payment_ref, amount=None, order_id=None, status="completed"):
        payload = self.payloads[payment_ref]
        self.payments[payment_ref] = GatewayPayment(
            status=status,
            amount=payload["amount"] if amount is None else amount,
            order_id=order_id or payload["orderId"],
        )


class RecordingNotifier:
    def __init__(self):
        self.events = []
        self.fail = False

    async def send(self, event_type, payload):
        if self.fail:
            raise RuntimeError("SMTP down")
        self.events.append((event_type, payload))

    def of_type(self, event_type):
        return [payload for sent, payload in self.events if sent == event_type]


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FixedClock(date(2025, 6, 1))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reservations(session_factory, gateway, notifier, clock):
    return ReservationService(session_factory=session_factory, gateway=gateway, notifier=notifier, clock=clock)


@pytest.fixture
def prolongations(session_factory, gateway, notifier, clock):
    return ProlongationService(session_factory=session_factory, gateway=gateway, notifier=notifier, clock=clock)


@pytest.fixture
async def fleet(session_factory):
    """One client, one vehicle at 100/day with two plates"""
    async with session_factory() as session:
        user = User(full_name="Amira Ben Salah", email="amira@example.com", phone="+21620123456")
        vehicle = Vehicle(brand="Kia", model="Picanto", price_per_day=Decimal("100"))
        vehicle.matriculations.append(Matriculation(plate_number="123TUN456"))
        vehicle.matriculations.append(Matriculation(plate_number="124TUN457"))
        session.add_all([user, vehicle])
        await session.commit()
        return SimpleNamespace(user_id=user.id, vehicle_id=vehicle.id, plate="123TUN456", other_plate="124TUN457")


@pytest.fixture
def make_reservation(reservations, fleet):
    """Create a reservation through the back office with sensible defaults"""

    async def make(pickup_date, dropoff_date, status="pending", matriculation=None, payment_percentage=0, **kwargs):
        return await reservations.create_reservation(
            user_id=fleet.user_id,
            vehicle_id=fleet.vehicle_id,
            pickup_location="Tunis-Carthage Airport",
            dropoff_location="Sousse",
            pickup_date=pickup_date,
            dropoff_date=dropoff_date,
            pickup_time="10:00",
            dropoff_time="18:00",
            matriculation=matriculation,
            status=status,
            payment_percentage=payment_percentage,
            **kwargs,
        )

    return make


@pytest.fixture
def calendar(session_factory, fleet):
    """Periods held on a plate as (start, end, reservation_id), by start date"""

    async def periods(plate=None):
        async with session_factory() as session:
            result = await session.execute(
                select(UnavailablePeriod)
                .join(Matriculation)
                .where(Matriculation.plate_number == (plate or fleet.plate))
                .order_by(UnavailablePeriod.start_date)
            )
            return [(p.start_date, p.end_date, p.reservation_id) for p in result.scalars().all()]

    return periods


@pytest.fixture
def plate_status(session_factory, fleet):
    async def status(plate=None):
        async with session_factory() as session:
            result = await session.execute(
                select(Matriculation.status).where(Matriculation.plate_number == (plate or fleet.plate))
            )
            return result.scalar_one()

    return status


@pytest.fixture
def set_plate_status(session_factory, fleet):
    async def update(status, plate=None):
        async with session_factory() as session:
            result = await session.execute(
                select(Matriculation).where(Matriculation.plate_number == (plate or fleet.plate))
            )
            result.scalar_one().status = status
            await session.commit()

    return update


@pytest.fixture
def fetch(session_factory):
    """Fresh copy of a record, as committed"""

    async def get(model, record_id):
        async with session_factory() as session:
            return await session.get(model, record_id)

    return get
