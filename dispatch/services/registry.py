"""
Party Registry

Creates couriers and companies and applies their own profile changes:
- couriers: registration, profile, location, availability, schedule
- companies: registration, profile, delivery configuration, activation
- administrators: courier verification

Every change is a typed patch applied inside the party's atomic update.
Rating aggregates and delivery statistics are never written here; they
belong to the reputation aggregator and the dispatch coordinator.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Mapping, Optional, Type, Union
from uuid import UUID

from pydantic import BaseModel

from dispatch.errors import Conflict, Forbidden, NotFound, ValidationError
from dispatch.models.api import (
    CompanyActivityStats,
    CompanyProfileUpdate,
    CompanyRegistration,
    CourierActivityStats,
    CourierProfileUpdate,
    CourierRegistration,
    DeliveryConfigUpdate,
    WorkingHoursUpdate,
    parse_request,
)
from dispatch.models.domain import (
    Actor,
    ActorRole,
    Company,
    Courier,
    CourierLocation,
    DeliveryConfig,
    GeoPoint,
    Order,
    OrderStatus,
)
from dispatch.services.availability import is_eligible
from dispatch.services.lifecycle import ACTIVE_STATUSES
from dispatch.store import Stores
from dispatch.utils.clock import Clock, local_time, round_half_up, utc_now
from dispatch.utils.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

Payload = Union[Mapping[str, Any], BaseModel]


def _changes(patch: BaseModel, record_model: Type[BaseModel]) -> dict:
    """
    Fields the caller actually sent, as model instances rather than dicts.

    An explicit null clears a field the record allows to be empty (its
    default is None) and is rejected for every other field.
    """
    changes = {}
    for name in patch.model_fields_set:
        value = getattr(patch, name)
        if value is None and record_model.model_fields[name].default is not None:
            raise ValidationError(f"{name} cannot be cleared")
        changes[name] = value
    return changes


def _average_delivery_time(orders: List[Order]) -> float:
    times = [o.actual_delivery_time() for o in orders if o.status == OrderStatus.DELIVERED]
    times = [t for t in times if t is not None]
    if not times:
        return 0.0
    return round_half_up(sum(times) / len(times), 1)


class PartyRegistry:
    """Courier and company records outside the order flow"""

    def __init__(self, stores: Stores, clock: Optional[Clock] = None, config: Optional[Settings] = None):
        self.stores = stores
        self.clock = clock or utc_now
        self.config = config or default_settings

    # ------------------------------------------------------------------
    # Access helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_self(actor: Actor, role: ActorRole, party_id: UUID) -> None:
        """Only the party itself (or an administrator) may change its record"""
        if actor.role == ActorRole.ADMIN:
            return
        if actor.role != role or actor.id != party_id:
            raise Forbidden(f"Actor may not modify {role.value} {party_id}")

    def get_courier(self, courier_id: UUID) -> Courier:
        courier = self.stores.couriers.get(str(courier_id))
        if courier is None:
            raise NotFound(f"Courier {courier_id} not found")
        return courier

    def get_company(self, company_id: UUID) -> Company:
        company = self.stores.companies.get(str(company_id))
        if company is None:
            raise NotFound(f"Company {company_id} not found")
        return company

    def list_couriers(
        self,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> List[Courier]:
        """All couriers, optionally filtered, oldest registration first"""
        couriers = self.stores.couriers.filter(
            lambda c: (is_active is None or c.is_active == is_active)
            and (is_verified is None or c.is_verified == is_verified)
        )
        return sorted(couriers, key=lambda c: c.created_at)

    def _patch_courier(self, courier_id: UUID, change: Callable[[Courier], dict]) -> Courier:
        def mutator(courier: Courier) -> Courier:
            updates = change(courier)
            updates["updated_at"] = self.clock()
            return courier.model_copy(update=updates)

        return self.stores.couriers.update(str(courier_id), mutator)

    def _patch_company(self, company_id: UUID, change: Callable[[Company], dict]) -> Company:
        def mutator(company: Company) -> Company:
            updates = change(company)
            updates["updated_at"] = self.clock()
            return company.model_copy(update=updates)

        return self.stores.companies.update(str(company_id), mutator)

    # ------------------------------------------------------------------
    # Couriers
    # ------------------------------------------------------------------

    def register_courier(self, data: Payload) -> Courier:
        """
        Register a new courier.

        New couriers start unverified and unavailable; an administrator
        must verify them before they can go online.

        Raises:
            ValidationError: Invalid registration payload
            Conflict: Email or CPF already registered
        """
        registration = parse_request(CourierRegistration, data)
        duplicate = self.stores.couriers.find(
            lambda c: c.email == registration.email or c.cpf == registration.cpf
        )
        if duplicate is not None:
            logger.warning(f"Courier registration rejected: {registration.email} already registered")
            raise Conflict("A courier with this email or CPF is already registered")

        now = self.clock()
        courier = Courier(
            id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            **registration.model_dump(),
        )
        self.stores.couriers.add(str(courier.id), courier)
        logger.info(f"Registered courier {courier.id} ({courier.name}), awaiting verification")
        return courier

    def update_courier_profile(self, actor: Actor, courier_id: UUID, data: Payload) -> Courier:
        self._require_self(actor, ActorRole.COURIER, courier_id)
        patch = parse_request(CourierProfileUpdate, data)
        changes = _changes(patch, Courier)
        return self._patch_courier(courier_id, lambda _: changes)

    def update_location(self, actor: Actor, courier_id: UUID, lat: float, lng: float) -> Courier:
        """Record the courier's current position, stamped with the clock"""
        self._require_self(actor, ActorRole.COURIER, courier_id)
        point = parse_request(GeoPoint, {"lat": lat, "lng": lng})
        location = CourierLocation(lat=point.lat, lng=point.lng, timestamp=self.clock())
        return self._patch_courier(courier_id, lambda _: {"current_location": location})

    def set_availability(
        self,
        actor: Actor,
        courier_id: UUID,
        available: Optional[bool] = None,
    ) -> Courier:
        """
        Go online or offline (toggle when ``available`` is None).

        Raises:
            Forbidden: The courier is not verified yet
        """
        self._require_self(actor, ActorRole.COURIER, courier_id)

        def change(courier: Courier) -> dict:
            if not courier.is_verified:
                raise Forbidden("Courier must be verified before changing availability")
            target = (not courier.is_available) if available is None else available
            return {"is_available": target}

        courier = self._patch_courier(courier_id, change)
        logger.info(f"Courier {courier_id} is now {'available' if courier.is_available else 'unavailable'}")
        return courier

    def update_working_hours(self, actor: Actor, courier_id: UUID, data: Payload) -> Courier:
        """Merge per-day windows into the courier's schedule"""
        self._require_self(actor, ActorRole.COURIER, courier_id)
        patch = parse_request(WorkingHoursUpdate, data)
        days = {day: window for day, window in patch if window is not None}

        def change(courier: Courier) -> dict:
            return {"working_hours": courier.working_hours.model_copy(update=days)}

        return self._patch_courier(courier_id, change)

    def verify_courier(self, actor: Actor, courier_id: UUID, verified: Optional[bool] = None) -> Courier:
        """
        Set (or toggle) the verification flag.

        Raises:
            Forbidden: The actor is not an administrator
        """
        if actor.role != ActorRole.ADMIN:
            raise Forbidden("Only an administrator can verify couriers")

        def change(courier: Courier) -> dict:
            target = (not courier.is_verified) if verified is None else verified
            updates = {"is_verified": target}
            # An unverified courier cannot stay online
            if not target:
                updates["is_available"] = False
            return updates

        courier = self._patch_courier(courier_id, change)
        logger.info(f"Courier {courier_id} {'verified' if courier.is_verified else 'unverified'} by admin")
        return courier

    def courier_stats(self, courier_id: UUID, now: Optional[datetime] = None) -> CourierActivityStats:
        courier = self.get_courier(courier_id)
        orders = self.stores.orders.filter(lambda o: o.courier_id == courier_id)
        delivered = [o for o in orders if o.status == OrderStatus.DELIVERED]

        return CourierActivityStats(
            total_orders=len(orders),
            active_orders=sum(1 for o in orders if o.status in ACTIVE_STATUSES),
            completed_orders=len(delivered),
            cancelled_orders=sum(1 for o in orders if o.status == OrderStatus.CANCELLED),
            total_earnings=sum((o.delivery_fee for o in delivered), Decimal("0")),
            average_delivery_time=_average_delivery_time(orders),
            success_rate=courier.stats.success_rate(),
            on_time_rate=courier.stats.on_time_rate(),
            rating=courier.rating.average,
            total_ratings=courier.rating.count,
            currently_eligible=is_eligible(courier, local_time(now or self.clock(), self.config.timezone)),
        )

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def register_company(self, data: Payload) -> Company:
        """
        Register a new company.

        Raises:
            ValidationError: Invalid registration payload
            Conflict: Email or CNPJ already registered
        """
        registration = parse_request(CompanyRegistration, data)
        duplicate = self.stores.companies.find(
            lambda c: c.email == registration.email or c.cnpj == registration.cnpj
        )
        if duplicate is not None:
            logger.warning(f"Company registration rejected: {registration.email} already registered")
            raise Conflict("A company with this email or CNPJ is already registered")

        now = self.clock()
        company = Company(
            id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            **registration.model_dump(),
        )
        self.stores.companies.add(str(company.id), company)
        logger.info(f"Registered company {company.id} ({company.name})")
        return company

    def update_company_profile(self, actor: Actor, company_id: UUID, data: Payload) -> Company:
        self._require_self(actor, ActorRole.COMPANY, company_id)
        patch = parse_request(CompanyProfileUpdate, data)
        changes = _changes(patch, Company)
        return self._patch_company(company_id, lambda _: changes)

    def update_delivery_config(self, actor: Actor, company_id: UUID, data: Payload) -> Company:
        """Merge the given fields into the company's delivery configuration"""
        self._require_self(actor, ActorRole.COMPANY, company_id)
        patch = parse_request(DeliveryConfigUpdate, data)
        fields = _changes(patch, DeliveryConfig)

        def change(company: Company) -> dict:
            return {"delivery_config": company.delivery_config.model_copy(update=fields)}

        company = self._patch_company(company_id, change)
        logger.info(f"Company {company_id} delivery config updated: {sorted(fields)}")
        return company

    def set_company_active(self, actor: Actor, company_id: UUID, active: bool) -> Company:
        self._require_self(actor, ActorRole.COMPANY, company_id)
        company = self._patch_company(company_id, lambda _: {"is_active": active})
        logger.info(f"Company {company_id} {'activated' if active else 'deactivated'}")
        return company

    def company_stats(self, company_id: UUID) -> CompanyActivityStats:
        company = self.get_company(company_id)
        orders = self.stores.orders.filter(lambda o: o.company_id == company_id)
        delivered = [o for o in orders if o.status == OrderStatus.DELIVERED]
        cancelled = sum(1 for o in orders if o.status == OrderStatus.CANCELLED)

        return CompanyActivityStats(
            total_orders=len(orders),
            pending_orders=sum(1 for o in orders if o.status == OrderStatus.PENDING),
            active_orders=sum(1 for o in orders if o.status in ACTIVE_STATUSES),
            completed_orders=len(delivered),
            cancelled_orders=cancelled,
            total_revenue=sum((o.total_value for o in delivered), Decimal("0")),
            total_delivery_fees=sum((o.delivery_fee for o in delivered), Decimal("0")),
            average_delivery_time=_average_delivery_time(orders),
            cancellation_rate=(cancelled / len(orders) * 100) if orders else 0.0,
            rating=company.rating.average,
            total_ratings=company.rating.count,
        )
