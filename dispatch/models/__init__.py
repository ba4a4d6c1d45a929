"""
Models package for the dispatch core.
"""

# Domain models
from .domain import (
    Actor,
    ActorRole,
    Address,
    Company,
    CompanyStats,
    Courier,
    CourierLocation,
    CourierStats,
    DeliveryConfig,
    GeoPoint,
    Order,
    OrderItem,
    OrderPriority,
    OrderStatus,
    PartyType,
    PaymentMethod,
    Rating,
    RatingAggregate,
    StatusUpdate,
    Vehicle,
    VehicleType,
    Weekday,
    WorkingHours,
    WorkingWindow,
)

# API models
from .api import (
    AvailableOrdersQuery,
    CompanyActivityStats,
    CompanyProfileUpdate,
    CompanyRegistration,
    CourierActivityStats,
    CourierProfileUpdate,
    CourierRegistration,
    CourierSearchQuery,
    DeliveryConfigUpdate,
    OrderCreate,
    OrderListQuery,
    OrderPage,
    RatingStats,
    RatingSubmission,
    RecentRatingStats,
    TrackingEvent,
    TrackingView,
    parse_request,
    WorkingHoursUpdate,
)

__all__ = [
    # Domain
    "Actor",
    "ActorRole",
    "Address",
    "Company",
    "CompanyStats",
    "Courier",
    "CourierLocation",
    "CourierStats",
    "DeliveryConfig",
    "GeoPoint",
    "Order",
    "OrderItem",
    "OrderPriority",
    "OrderStatus",
    "PartyType",
    "PaymentMethod",
    "Rating",
    "RatingAggregate",
    "StatusUpdate",
    "Vehicle",
    "VehicleType",
    "Weekday",
    "WorkingHours",
    "WorkingWindow",
    # API
    "AvailableOrdersQuery",
    "CompanyActivityStats",
    "CompanyProfileUpdate",
    "CompanyRegistration",
    "CourierActivityStats",
    "CourierProfileUpdate",
    "CourierRegistration",
    "CourierSearchQuery",
    "DeliveryConfigUpdate",
    "OrderCreate",
    "OrderListQuery",
    "OrderPage",
    "RatingStats",
    "RatingSubmission",
    "RecentRatingStats",
    "TrackingEvent",
    "TrackingView",
    "WorkingHoursUpdate",
    "parse_request",
]
