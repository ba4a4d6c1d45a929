"""
Shared fixtures: in-memory stores, a controllable clock and record builders.
"""

import os
import sys
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from dispatch.models.domain import (
    Actor,
    ActorRole,
    Address,
    Courier,
    CourierLocation,
    GeoPoint,
    Order,
    OrderItem,
    OrderPriority,
)
from dispatch.services.coordinator import DispatchCoordinator
from dispatch.services.registry import PartyRegistry
from dispatch.services.reputation import ReputationAggregator
from dispatch.store import build_memory_stores
from dispatch.utils.config import Settings

# 2024-01-15 is a Monday
MONDAY_10AM = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

COMPANY_POINT = {"lat": -23.5505, "lng": -46.6333}
NEARBY_POINT = {"lat": -23.5600, "lng": -46.6400}

ADMIN = Actor(role=ActorRole.ADMIN)


class FakeClock:
    """Clock callable that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


_serial = itertools.count(1)


def _order_payload(**overrides):
    data = {
        "customer_name": "Maria Silva",
        "customer_phone": "11999990000",
        "delivery": {"address": "Rua Augusta 100", "coordinates": dict(NEARBY_POINT)},
        "items": [{"name": "Pizza", "quantity": 1, "price": "45.00"}],
        "total_value": "45.00",
    }
    data.update(overrides)
    return data


@pytest.fixture
def order_payload():
    """Valid OrderCreate payload; keyword overrides replace top-level fields"""
    return _order_payload


@pytest.fixture
def clock():
    return FakeClock(MONDAY_10AM)


@pytest.fixture
def config():
    return Settings(STORE_BACKEND="memory", TIMEZONE="UTC")


@pytest.fixture
def stores():
    return build_memory_stores()


@pytest.fixture
def registry(stores, clock, config):
    return PartyRegistry(stores, clock=clock, config=config)


@pytest.fixture
def reputation(stores, clock, config):
    return ReputationAggregator(stores, clock=clock, config=config)


@pytest.fixture
def coordinator(stores, clock, config, reputation):
    return DispatchCoordinator(stores, reputation=reputation, clock=clock, config=config)


@pytest.fixture
def make_company(registry):
    """Register a company; keyword overrides go into the registration payload"""

    def _make(**overrides):
        n = next(_serial)
        data = {
            "name": f"Pizzaria {n}",
            "email": f"company{n}@example.com",
            "cnpj": f"{n:014d}",
            "address": "Av. Paulista 1000",
            "coordinates": dict(COMPANY_POINT),
        }
        data.update(overrides)
        return registry.register_company(data)

    return _make


@pytest.fixture
def make_courier(registry):
    """Register a courier, verified and online by default, located at the company"""

    def _make(verified=True, available=True, location=COMPANY_POINT, **overrides):
        n = next(_serial)
        data = {
            "name": f"Courier {n}",
            "email": f"courier{n}@example.com",
            "phone": "11988887777",
            "cpf": f"{n:011d}",
            "cnh": f"CNH{n}",
        }
        data.update(overrides)
        courier = registry.register_courier(data)
        if verified:
            courier = registry.verify_courier(ADMIN, courier.id, True)
        if available:
            courier = registry.set_availability(ADMIN, courier.id, True)
        if location is not None:
            courier = registry.update_location(ADMIN, courier.id, location["lat"], location["lng"])
        return courier

    return _make


@pytest.fixture
def make_order():
    """Build an Order record directly, bypassing the coordinator"""

    def _make(**overrides):
        n = next(_serial)
        data = {
            "id": uuid.uuid4(),
            "tracking_code": f"MR{n:06d}TEST",
            "company_id": uuid.uuid4(),
            "customer_name": "Joao Souza",
            "customer_phone": "11911112222",
            "priority": OrderPriority.NORMAL,
            "pickup": Address(address="Av. Paulista 1000", coordinates=GeoPoint(**COMPANY_POINT)),
            "delivery": Address(address="Rua Augusta 100", coordinates=GeoPoint(**NEARBY_POINT)),
            "items": [OrderItem(name="Pizza", price=Decimal("45.00"))],
            "total_value": Decimal("45.00"),
            "delivery_fee": Decimal("5.00"),
            "estimated_delivery_time": 30,
            "created_at": MONDAY_10AM,
        }
        data.update(overrides)
        return Order(**data)

    return _make


@pytest.fixture
def make_courier_record():
    """Build a Courier record directly; eligible on a weekday by default"""

    def _make(**overrides):
        n = next(_serial)
        data = {
            "id": uuid.uuid4(),
            "name": f"Courier {n}",
            "email": f"rec{n}@example.com",
            "phone": "11988887777",
            "cpf": f"{n:011d}",
            "cnh": f"CNH{n}",
            "is_active": True,
            "is_available": True,
            "is_verified": True,
            "current_location": CourierLocation(timestamp=MONDAY_10AM, **COMPANY_POINT),
            "created_at": MONDAY_10AM,
            "updated_at": MONDAY_10AM,
        }
        data.update(overrides)
        return Courier(**data)

    return _make
