"""
Domain Models - Pydantic models for dispatch records.

These models represent the records the core reads and writes through the
keyed record store (orders, couriers, companies, ratings). Stored records
are replaced wholesale on every write; nothing mutates a record in place.
"""

import math
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, model_validator


# ============================================================================
# Enums
# ============================================================================

class OrderStatus(str, Enum):
    """Lifecycle states of an order."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderPriority(str, Enum):
    """Order priority, ranked urgent > high > normal > low."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    OrderPriority.LOW: 1,
    OrderPriority.NORMAL: 2,
    OrderPriority.HIGH: 3,
    OrderPriority.URGENT: 4,
}


class PartyType(str, Enum):
    """The two kinds of party that rate each other."""
    COMPANY = "company"
    COURIER = "courier"


class ActorRole(str, Enum):
    """Capability the caller acts under, as established by the auth collaborator."""
    COMPANY = "company"
    COURIER = "courier"
    ADMIN = "admin"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    PIX = "pix"
    ONLINE = "online"


class VehicleType(str, Enum):
    MOTORCYCLE = "motorcycle"
    BICYCLE = "bicycle"
    CAR = "car"


class Weekday(str, Enum):
    """Weekday names, indexed like datetime.weekday()."""
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def of(cls, moment: datetime) -> "Weekday":
        return list(cls)[moment.weekday()]


# ============================================================================
# Value Objects
# ============================================================================

class Actor(BaseModel):
    """Opaque capability: the caller acts as this company, courier or admin."""

    model_config = ConfigDict(frozen=True)

    role: ActorRole
    id: Optional[UUID] = None


class GeoPoint(BaseModel):
    """A latitude/longitude pair."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class CourierLocation(GeoPoint):
    """Last reported courier position, stamped with its own timestamp."""

    timestamp: datetime


class Address(BaseModel):
    """Pickup or delivery location of an order."""

    address: str = Field(..., min_length=1)
    coordinates: GeoPoint
    instructions: str = ""
    contact_name: str = ""
    contact_phone: str = ""


class OrderItem(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    description: str = ""


class WorkingWindow(BaseModel):
    """One weekday's working window, inclusive on both ends."""

    start: time
    end: time
    active: bool = True

    @model_validator(mode="after")
    def _check_order(self) -> "WorkingWindow":
        # Overnight windows are not supported
        if self.end < self.start:
            raise ValueError("end must not be earlier than start")
        return self


def _weekday_window() -> WorkingWindow:
    return WorkingWindow(start=time(8, 0), end=time(18, 0), active=True)


def _weekend_window() -> WorkingWindow:
    return WorkingWindow(start=time(8, 0), end=time(14, 0), active=False)


class WorkingHours(BaseModel):
    """Per-weekday schedule. Defaults to Mon-Fri 08:00-18:00, weekend off."""

    monday: WorkingWindow = Field(default_factory=_weekday_window)
    tuesday: WorkingWindow = Field(default_factory=_weekday_window)
    wednesday: WorkingWindow = Field(default_factory=_weekday_window)
    thursday: WorkingWindow = Field(default_factory=_weekday_window)
    friday: WorkingWindow = Field(default_factory=_weekday_window)
    saturday: WorkingWindow = Field(default_factory=_weekend_window)
    sunday: WorkingWindow = Field(default_factory=_weekend_window)

    def window_for(self, day: Weekday) -> WorkingWindow:
        return getattr(self, day.value)


class Vehicle(BaseModel):
    type: VehicleType = VehicleType.MOTORCYCLE
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    plate: Optional[str] = None
    color: Optional[str] = None
    capacity: int = Field(default=1, ge=1)


class RatingAggregate(BaseModel):
    """Rolling average and count over every rating targeting one party."""

    average: float = 0.0
    count: int = 0


class CourierStats(BaseModel):
    total_deliveries: int = 0
    successful_deliveries: int = 0
    cancelled_deliveries: int = 0
    on_time_deliveries: int = 0
    total_earnings: Decimal = Decimal("0")

    def success_rate(self) -> float:
        if self.total_deliveries == 0:
            return 0.0
        return self.successful_deliveries / self.total_deliveries * 100

    def on_time_rate(self) -> float:
        if self.total_deliveries == 0:
            return 0.0
        return self.on_time_deliveries / self.total_deliveries * 100


class CompanyStats(BaseModel):
    total_deliveries: int = 0
    successful_deliveries: int = 0
    cancelled_deliveries: int = 0


class DeliveryConfig(BaseModel):
    max_delivery_radius: float = 10.0  # km
    average_delivery_time: int = 30  # minutes
    delivery_fee: Decimal = Decimal("5.00")
    accepts_scheduled_delivery: bool = False


# ============================================================================
# Records
# ============================================================================

class StatusUpdate(BaseModel):
    """One entry of an order's append-only audit trail."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    from_status: OrderStatus
    to_status: OrderStatus
    actor_id: Optional[UUID] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[ActorRole] = None


class Order(BaseModel):
    """A single delivery job from a company to an end customer."""

    id: UUID
    tracking_code: str
    company_id: UUID
    courier_id: Optional[UUID] = None

    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    priority: OrderPriority = OrderPriority.NORMAL

    pickup: Address
    delivery: Address
    items: List[OrderItem] = Field(default_factory=list)
    total_value: Decimal
    delivery_fee: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH

    scheduled_for: Optional[datetime] = None
    estimated_delivery_time: int  # minutes
    distance: float = 0.0  # km, pickup to delivery
    notes: str = ""
    cancellation_reason: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    created_at: datetime
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    updates: List[StatusUpdate] = Field(default_factory=list)

    # Company -> courier and courier -> company rating slots
    courier_rating: Optional[int] = None
    courier_rating_comment: Optional[str] = None
    company_rating: Optional[int] = None
    company_rating_comment: Optional[str] = None

    def can_be_accepted(self) -> bool:
        return self.status == OrderStatus.PENDING

    def can_be_cancelled(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.ACCEPTED)

    def actual_delivery_time(self) -> Optional[int]:
        """Minutes from acceptance to delivery, rounded half up; None if either is unset."""
        if self.accepted_at is None or self.delivered_at is None:
            return None
        seconds = (self.delivered_at - self.accepted_at).total_seconds()
        return int(math.floor(seconds / 60 + 0.5))

    def is_on_time(self) -> Optional[bool]:
        actual = self.actual_delivery_time()
        if actual is None:
            return None
        return actual <= self.estimated_delivery_time


class Courier(BaseModel):
    """Mobile worker fulfilling deliveries."""

    id: UUID
    name: str
    email: str
    phone: str
    cpf: str
    cnh: str
    cnh_category: str = "A"
    address: Optional[str] = None

    is_active: bool = True
    is_available: bool = False
    is_verified: bool = False  # administrative actor only

    current_location: Optional[CourierLocation] = None
    working_radius: float = 15.0  # km
    vehicle: Vehicle = Field(default_factory=Vehicle)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)

    rating: RatingAggregate = Field(default_factory=RatingAggregate)
    stats: CourierStats = Field(default_factory=CourierStats)

    created_at: datetime
    updated_at: datetime


class Company(BaseModel):
    """Requesting party that creates orders."""

    id: UUID
    name: str
    email: str
    phone: Optional[str] = None
    cnpj: str
    address: str
    coordinates: GeoPoint
    business_type: Optional[str] = None

    is_active: bool = True
    delivery_config: DeliveryConfig = Field(default_factory=DeliveryConfig)

    rating: RatingAggregate = Field(default_factory=RatingAggregate)
    total_orders: int = 0
    stats: CompanyStats = Field(default_factory=CompanyStats)

    created_at: datetime
    updated_at: datetime


class Rating(BaseModel):
    """Immutable rating left by one party of a delivered order for the other."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    order_id: UUID
    from_type: PartyType
    from_id: UUID
    to_type: PartyType
    to_id: UUID
    score: int = Field(ge=1, le=5)
    categories: Dict[str, int] = Field(default_factory=dict)
    comment: str = ""
    created_at: datetime
