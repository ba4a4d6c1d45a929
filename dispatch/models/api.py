"""
API Models - Pydantic models for inbound requests, patches and read views.

Request and patch models forbid unknown fields, so an attempt to touch a
field an operation may not change (id, created_at, stats, rating...) is
rejected at the boundary instead of being silently merged.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, StrictInt, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from dispatch.errors import ValidationError

from .domain import (
    Address,
    DeliveryConfig,
    GeoPoint,
    Order,
    OrderItem,
    OrderPriority,
    OrderStatus,
    PaymentMethod,
    Vehicle,
    VehicleType,
    WorkingHours,
    WorkingWindow,
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is not None and not _EMAIL_RE.match(value):
        raise ValueError("a valid email is required")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


RequestT = TypeVar("RequestT", bound=BaseModel)


# ============================================================================
# Orders
# ============================================================================

class OrderCreate(_Request):
    """Payload a company submits to create an order."""

    customer_name: str = Field(..., min_length=2)
    customer_phone: str = Field(..., min_length=1)
    customer_email: Optional[str] = None
    pickup: Optional[Address] = Field(default=None, description="Defaults to the company address")
    delivery: Address
    items: List[OrderItem] = Field(..., min_length=1)
    total_value: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    priority: OrderPriority = OrderPriority.NORMAL
    scheduled_for: Optional[datetime] = None
    notes: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("customer_email")
    @classmethod
    def _valid_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class AvailableOrdersQuery(_Request):
    """Filters a courier applies when browsing pending orders."""

    max_distance: Optional[float] = Field(default=None, gt=0, description="km from the courier")
    limit: Optional[int] = Field(default=None, ge=1)


class CourierSearchQuery(_Request):
    """Filters a company applies when looking for couriers."""

    reference_point: Optional[GeoPoint] = None
    max_distance: Optional[float] = Field(default=None, gt=0, description="km from reference_point")
    min_rating: Optional[float] = Field(default=None, ge=0, le=5)
    limit: Optional[int] = Field(default=None, ge=1)


class OrderListQuery(_Request):
    status: Optional[OrderStatus] = None
    courier_id: Optional[UUID] = None
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1)


class OrderPage(BaseModel):
    items: List[Order]
    page: int
    limit: int
    total: int
    pages: int


class TrackingEvent(BaseModel):
    timestamp: datetime
    status: OrderStatus


class TrackingView(BaseModel):
    """Public, identity-free view of an order's progress."""

    tracking_code: str
    status: OrderStatus
    estimated_delivery_time: int
    delivery_address: str
    updates: List[TrackingEvent] = Field(default_factory=list)


# ============================================================================
# Ratings
# ============================================================================

class RatingSubmission(_Request):
    score: StrictInt = Field(..., ge=1, le=5)
    categories: Dict[str, StrictInt] = Field(default_factory=dict)
    comment: str = ""


class RecentRatingStats(BaseModel):
    total: int
    average: float
    window_days: int


class RatingStats(BaseModel):
    """Aggregate view over every rating targeting one party."""

    total: int
    average: float
    distribution: Dict[int, int]
    category_averages: Dict[str, float]
    recent: RecentRatingStats


# ============================================================================
# Party registration and profile patches
# ============================================================================

class CourierRegistration(_Request):
    name: str = Field(..., min_length=2)
    email: str
    phone: str = Field(..., min_length=1)
    cpf: str
    cnh: str = Field(..., min_length=1)
    cnh_category: str = "A"
    address: Optional[str] = None
    vehicle: Vehicle = Field(default_factory=Vehicle)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    working_radius: float = Field(default=15.0, gt=0)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @field_validator("cpf")
    @classmethod
    def _check_cpf(cls, value: str) -> str:
        if len(_digits(value)) != 11:
            raise ValueError("a valid CPF (11 digits) is required")
        return value

    @model_validator(mode="after")
    def _check_license(self) -> "CourierRegistration":
        if self.vehicle.type == VehicleType.MOTORCYCLE and self.cnh_category not in ("A", "AB"):
            raise ValueError("CNH category A or AB is required for a motorcycle")
        return self


class CompanyRegistration(_Request):
    name: str = Field(..., min_length=2)
    email: str
    phone: Optional[str] = None
    cnpj: str
    address: str = Field(..., min_length=1)
    coordinates: GeoPoint
    business_type: Optional[str] = None
    delivery_config: DeliveryConfig = Field(default_factory=DeliveryConfig)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @field_validator("cnpj")
    @classmethod
    def _check_cnpj(cls, value: str) -> str:
        if len(_digits(value)) != 14:
            raise ValueError("a valid CNPJ (14 digits) is required")
        return value


class CourierProfileUpdate(_Request):
    name: Optional[str] = Field(default=None, min_length=2)
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, min_length=1)
    address: Optional[str] = None
    vehicle: Optional[Vehicle] = None
    working_radius: Optional[float] = Field(default=None, gt=0)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class WorkingHoursUpdate(_Request):
    """Partial schedule change; days left out keep their current window."""

    monday: Optional[WorkingWindow] = None
    tuesday: Optional[WorkingWindow] = None
    wednesday: Optional[WorkingWindow] = None
    thursday: Optional[WorkingWindow] = None
    friday: Optional[WorkingWindow] = None
    saturday: Optional[WorkingWindow] = None
    sunday: Optional[WorkingWindow] = None


class CompanyProfileUpdate(_Request):
    name: Optional[str] = Field(default=None, min_length=2)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = Field(default=None, min_length=1)
    coordinates: Optional[GeoPoint] = None
    business_type: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class DeliveryConfigUpdate(_Request):
    max_delivery_radius: Optional[float] = Field(default=None, ge=1, le=50)
    average_delivery_time: Optional[int] = Field(default=None, ge=1)
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    accepts_scheduled_delivery: Optional[bool] = None


# ============================================================================
# Party statistics views
# ============================================================================

class CourierActivityStats(BaseModel):
    total_orders: int
    active_orders: int
    completed_orders: int
    cancelled_orders: int
    total_earnings: Decimal
    average_delivery_time: float
    success_rate: float
    on_time_rate: float
    rating: float
    total_ratings: int
    currently_eligible: bool


class CompanyActivityStats(BaseModel):
    total_orders: int
    pending_orders: int
    active_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: Decimal
    total_delivery_fees: Decimal
    average_delivery_time: float
    cancellation_rate: float
    rating: float
    total_ratings: int


def parse_request(model: Type[RequestT], data: Union[RequestT, Mapping[str, Any]]) -> RequestT:
    """
    Validate an inbound payload into ``model``.

    Accepts an already built instance of ``model`` or a plain mapping.

    Raises:
        ValidationError: If pydantic rejects the payload
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc
