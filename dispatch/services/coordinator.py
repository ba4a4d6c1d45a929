"""
Dispatch Coordinator

Entry point for every order operation. Each state change runs as one
atomic read-modify-write on the order's key:
1. accept: compare (pending + eligible courier) and transition in one step,
   so exactly one of N concurrent couriers wins
2. update_status / cancel: the relationship check happens inside the same
   step as the transition, so a cancel racing an accept or a status update
   never overwrites the other
3. rate_order: the slot check, the Rating insert and the slot write share
   the order's step

Nested updates always take keys in the order: order -> rating -> party.
Rejected calls are logged at WARNING and re-raised unchanged.
"""

import logging
import math
import secrets
import string
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union
from uuid import UUID

from pydantic import BaseModel

from dispatch.errors import (
    Conflict,
    DispatchError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from dispatch.models.api import (
    AvailableOrdersQuery,
    CourierSearchQuery,
    OrderCreate,
    OrderListQuery,
    OrderPage,
    RatingSubmission,
    TrackingEvent,
    TrackingView,
    parse_request,
)
from dispatch.models.domain import (
    Actor,
    ActorRole,
    Address,
    Company,
    Courier,
    Order,
    OrderStatus,
    PartyType,
    Rating,
)
from dispatch.services.availability import is_eligible
from dispatch.services.geo import DistanceFn, haversine_km
from dispatch.services.lifecycle import TransitionDetails, transition
from dispatch.services.matching import MatchEngine
from dispatch.services.reputation import ReputationAggregator
from dispatch.store import Stores, TrackingCodeEntry, build_stores
from dispatch.utils.clock import Clock, local_time, utc_now
from dispatch.utils.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

Payload = Union[Mapping[str, Any], BaseModel]

_TRACKING_ALPHABET = string.digits + string.ascii_uppercase


class DispatchCoordinator:
    """Orchestrates order creation, acceptance, progress, cancellation and rating"""

    def __init__(
        self,
        stores: Stores,
        reputation: Optional[ReputationAggregator] = None,
        distance: Optional[DistanceFn] = None,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        """
        Args:
            stores: Record stores for orders, parties, ratings and tracking codes
            reputation: Aggregator used for rating submissions
            distance: distance(point_a, point_b) -> km (defaults to haversine)
            clock: Zero-argument callable returning "now"
            config: Settings (defaults to the global settings)
        """
        self.stores = stores
        self.clock = clock or utc_now
        self.config = config or default_settings
        self.distance = distance or haversine_km
        self.matcher = MatchEngine(self.distance)
        self.reputation = reputation or ReputationAggregator(stores, clock=self.clock, config=self.config)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _order(self, order_id: UUID) -> Order:
        order = self.stores.orders.get(str(order_id))
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def _courier(self, courier_id: UUID) -> Courier:
        courier = self.stores.couriers.get(str(courier_id))
        if courier is None:
            raise NotFound(f"Courier {courier_id} not found")
        return courier

    def _company(self, company_id: UUID) -> Company:
        company = self.stores.companies.get(str(company_id))
        if company is None:
            raise NotFound(f"Company {company_id} not found")
        return company

    def _local_now(self):
        """Current time on the wall clock couriers' working hours are written in"""
        return local_time(self.clock(), self.config.timezone)

    @staticmethod
    def _is_party(order: Order, actor: Actor) -> bool:
        """True when the actor is the owning company or the assigned courier"""
        if actor.id is None:
            return False
        if actor.role == ActorRole.COMPANY:
            return order.company_id == actor.id
        if actor.role == ActorRole.COURIER:
            return order.courier_id == actor.id
        return False

    def _update_order(self, order_id: UUID, mutator: Callable[[Order], Order], operation: str) -> Order:
        try:
            return self.stores.orders.update(str(order_id), mutator)
        except DispatchError as e:
            logger.warning(f"{operation} rejected for order {order_id}: {e.code}: {e.message}")
            raise

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _new_tracking_code(self) -> str:
        millis = int(self.clock().timestamp() * 1000)
        suffix = "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(4))
        return f"{self.config.TRACKING_CODE_PREFIX}{str(millis)[-6:]}{suffix}"

    def _reserve_tracking_code(self, order_id: UUID) -> str:
        """Claim a unique tracking code in the index, regenerating on collision"""
        for attempt in range(1, self.config.MAX_TRACKING_CODE_ATTEMPTS + 1):
            code = self._new_tracking_code()
            try:
                self.stores.tracking_codes.add(code, TrackingCodeEntry(tracking_code=code, order_id=order_id))
                return code
            except Conflict:
                logger.debug(f"Tracking code collision on attempt {attempt}: {code}")
        raise Conflict("Could not allocate a unique tracking code")

    def create_order(self, company_id: UUID, order_spec: Payload) -> Order:
        """
        Create a pending order for a company.

        Args:
            company_id: Requesting company
            order_spec: OrderCreate payload (model or mapping)

        Returns:
            The stored order

        Raises:
            NotFound: Unknown company
            Forbidden: Inactive company
            ValidationError: Invalid payload, scheduling not accepted, or the
                delivery lies outside the company's delivery radius
        """
        request = parse_request(OrderCreate, order_spec)
        company = self._company(company_id)
        if not company.is_active:
            logger.warning(f"create_order rejected: company {company_id} is inactive")
            raise Forbidden("Inactive companies cannot create orders")

        config = company.delivery_config
        if request.scheduled_for is not None and not config.accepts_scheduled_delivery:
            raise ValidationError("This company does not accept scheduled deliveries")

        pickup = request.pickup or Address(
            address=company.address,
            coordinates=company.coordinates,
            instructions="Pick up at the store",
        )
        distance = self.distance(pickup.coordinates, request.delivery.coordinates)
        if distance > config.max_delivery_radius:
            raise ValidationError(
                f"Delivery is {distance:.1f} km away, beyond the "
                f"{config.max_delivery_radius:g} km delivery radius"
            )

        order_id = uuid.uuid4()
        order = Order(
            id=order_id,
            tracking_code=self._reserve_tracking_code(order_id),
            company_id=company.id,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
            priority=request.priority,
            pickup=pickup,
            delivery=request.delivery,
            items=request.items,
            total_value=request.total_value,
            delivery_fee=config.delivery_fee,
            payment_method=request.payment_method,
            scheduled_for=request.scheduled_for,
            estimated_delivery_time=config.average_delivery_time or self.config.DEFAULT_ESTIMATED_DELIVERY_TIME,
            distance=round(distance, 2),
            notes=request.notes,
            metadata=request.metadata,
            created_at=self.clock(),
        )
        self.stores.orders.add(str(order.id), order)

        self.stores.companies.update(
            str(company.id),
            lambda c: c.model_copy(update={"total_orders": c.total_orders + 1, "updated_at": self.clock()}),
        )
        logger.info(
            f"Created order {order.id} ({order.tracking_code}) for company {company.id}, "
            f"priority={order.priority.value}, distance={order.distance} km"
        )
        return order

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def list_eligible_orders(self, courier_id: UUID, filters: Optional[Payload] = None) -> List[Order]:
        """
        Pending orders a courier can take, best first.

        Raises:
            NotFound: Unknown courier
            Forbidden: The courier is not currently eligible
        """
        query = parse_request(AvailableOrdersQuery, filters or {})
        courier = self._courier(courier_id)
        if not is_eligible(courier, self._local_now()):
            logger.warning(f"list_eligible_orders rejected: courier {courier_id} is not eligible")
            raise Forbidden("Courier is not available right now")

        pending = self.stores.orders.filter(lambda o: o.status == OrderStatus.PENDING)
        return self.matcher.orders_for_courier(
            courier, pending, max_distance=query.max_distance, limit=query.limit
        )

    def find_couriers(self, filters: Optional[Payload] = None) -> List[Courier]:
        """Eligible couriers, best rated first"""
        query = parse_request(CourierSearchQuery, filters or {})
        return self.matcher.couriers_for_order(
            self.stores.couriers.list(),
            self._local_now(),
            min_rating=query.min_rating,
            max_distance=query.max_distance,
            reference_point=query.reference_point,
            limit=query.limit,
        )

    def find_couriers_for_order(
        self,
        order_id: UUID,
        actor: Actor,
        filters: Optional[Payload] = None,
    ) -> List[Courier]:
        """Eligible couriers ranked for one order, measured from its pickup point"""
        query = parse_request(CourierSearchQuery, filters or {})
        order = self._order(order_id)
        if actor.role != ActorRole.ADMIN and not self._is_party(order, actor):
            raise Forbidden(f"No access to order {order_id}")
        return self.matcher.couriers_for_order(
            self.stores.couriers.list(),
            self._local_now(),
            min_rating=query.min_rating,
            max_distance=query.max_distance,
            reference_point=order.pickup.coordinates,
            limit=query.limit,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def accept(self, order_id: UUID, courier_id: UUID) -> Order:
        """
        Assign a pending order to a courier.

        Raises:
            NotFound: Unknown courier or order
            Conflict: The order is no longer pending (another courier won)
            Forbidden: The courier is not currently eligible
        """
        self._courier(courier_id)
        now = self.clock()

        def mutator(order: Order) -> Order:
            if not order.can_be_accepted():
                raise Conflict(f"Order {order.id} can no longer be accepted ({order.status.value})")
            courier = self._courier(courier_id)
            if not is_eligible(courier, local_time(now, self.config.timezone)):
                raise Forbidden(f"Courier {courier_id} is not available right now")
            return transition(order, OrderStatus.ACCEPTED, courier_id, now, courier_id=courier_id)

        return self._update_order(order_id, mutator, "accept")

    def update_status(
        self,
        order_id: UUID,
        courier_id: UUID,
        new_status: Union[OrderStatus, str],
        notes: Optional[str] = None,
    ) -> Order:
        """
        Advance an order on behalf of its assigned courier.

        A move to ``cancelled`` is handled as a courier cancellation.

        Raises:
            ValidationError: Unknown status
            Forbidden: The caller is not the assigned courier
            InvalidTransition: The move is not allowed from the current status
        """
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {new_status}") from None

        if target == OrderStatus.CANCELLED:
            courier = Actor(role=ActorRole.COURIER, id=courier_id)
            return self._cancel(order_id, courier, notes, InvalidTransition, "update_status")

        now = self.clock()

        def mutator(order: Order) -> Order:
            if order.courier_id is None or order.courier_id != courier_id:
                raise Forbidden(f"Courier {courier_id} is not assigned to order {order.id}")
            return transition(order, target, courier_id, now, details=TransitionDetails(notes=notes))

        order = self._update_order(order_id, mutator, "update_status")
        if order.status == OrderStatus.DELIVERED:
            self._record_delivery(order)
        return order

    def _record_delivery(self, order: Order) -> None:
        """One combined stats write per party for a delivered order"""
        on_time = bool(order.is_on_time())

        def courier_mutator(courier: Courier) -> Courier:
            stats = courier.stats.model_copy(update={
                "total_deliveries": courier.stats.total_deliveries + 1,
                "successful_deliveries": courier.stats.successful_deliveries + 1,
                "on_time_deliveries": courier.stats.on_time_deliveries + (1 if on_time else 0),
                "total_earnings": courier.stats.total_earnings + order.delivery_fee,
            })
            return courier.model_copy(update={"stats": stats, "updated_at": self.clock()})

        def company_mutator(company: Company) -> Company:
            stats = company.stats.model_copy(update={
                "total_deliveries": company.stats.total_deliveries + 1,
                "successful_deliveries": company.stats.successful_deliveries + 1,
            })
            return company.model_copy(update={"stats": stats, "updated_at": self.clock()})

        self.stores.couriers.update(str(order.courier_id), courier_mutator)
        self.stores.companies.update(str(order.company_id), company_mutator)
        logger.info(
            f"Order {order.id} delivered in {order.actual_delivery_time()} min "
            f"(estimate {order.estimated_delivery_time}, on_time={on_time})"
        )

    def cancel(self, order_id: UUID, actor: Actor, reason: Optional[str] = None) -> Order:
        """
        Cancel a pending or accepted order.

        Raises:
            Forbidden: The actor is neither the owning company nor the assigned courier
            Conflict: The order already moved past the cancellable states
        """
        return self._cancel(order_id, actor, reason, Conflict, "cancel")

    def _cancel(
        self,
        order_id: UUID,
        actor: Actor,
        reason: Optional[str],
        not_cancellable: Type[DispatchError],
        operation: str,
    ) -> Order:
        """
        Shared cancellation step.

        ``not_cancellable`` is raised when the order is past the cancellable
        states: Conflict for a direct cancel, InvalidTransition for a courier
        requesting the move through update_status.
        """
        now = self.clock()

        def mutator(order: Order) -> Order:
            if not self._is_party(order, actor):
                raise Forbidden(f"No permission to cancel order {order.id}")
            if not order.can_be_cancelled():
                raise not_cancellable(f"Order {order.id} can no longer be cancelled ({order.status.value})")
            details = TransitionDetails(cancellation_reason=reason, cancelled_by=actor.role)
            return transition(order, OrderStatus.CANCELLED, actor.id, now, details=details)

        order = self._update_order(order_id, mutator, operation)
        self._record_cancellation(order, actor)
        return order

    def _record_cancellation(self, order: Order, actor: Actor) -> None:
        def bump(record):
            stats = record.stats.model_copy(update={
                "cancelled_deliveries": record.stats.cancelled_deliveries + 1,
            })
            return record.model_copy(update={"stats": stats, "updated_at": self.clock()})

        self.stores.companies.update(str(order.company_id), bump)
        # Only a courier's own cancellation counts against the courier
        if actor.role == ActorRole.COURIER and order.courier_id is not None:
            self.stores.couriers.update(str(order.courier_id), bump)
        logger.info(f"Order {order.id} cancelled by {actor.role.value}: {order.cancellation_reason or '-'}")

    # ------------------------------------------------------------------
    # Ratings
    # ------------------------------------------------------------------

    def rate_order(
        self,
        order_id: UUID,
        actor: Actor,
        score: int,
        categories: Optional[Dict[str, int]] = None,
        comment: str = "",
    ) -> Rating:
        """
        Rate the other party of a delivered order.

        The company rates the courier and the courier rates the company;
        each side gets exactly one rating per order.

        Raises:
            ValidationError: Bad score/categories or this side already rated
            InvalidTransition: The order is not delivered
            Forbidden: The actor is not a party of the order
        """
        submission = parse_request(
            RatingSubmission,
            {"score": score, "categories": categories or {}, "comment": comment or ""},
        )
        if actor.role == ActorRole.COMPANY:
            from_type, to_type = PartyType.COMPANY, PartyType.COURIER
            slot, comment_slot = "courier_rating", "courier_rating_comment"
        elif actor.role == ActorRole.COURIER:
            from_type, to_type = PartyType.COURIER, PartyType.COMPANY
            slot, comment_slot = "company_rating", "company_rating_comment"
        else:
            raise Forbidden("Only the company or the courier of an order can rate it")

        stored: Dict[str, Rating] = {}

        def mutator(order: Order) -> Order:
            if order.status != OrderStatus.DELIVERED:
                raise InvalidTransition("Only delivered orders can be rated")
            if not self._is_party(order, actor):
                raise Forbidden(f"No permission to rate order {order.id}")
            if getattr(order, slot) is not None:
                raise ValidationError(f"Order {order.id} was already rated by the {from_type.value}")

            to_id = order.courier_id if to_type == PartyType.COURIER else order.company_id
            stored["rating"] = self.reputation.submit_rating(
                order.id,
                from_type,
                actor.id,
                to_type,
                to_id,
                submission.score,
                submission.categories,
                submission.comment,
            )
            return order.model_copy(update={slot: submission.score, comment_slot: submission.comment})

        self._update_order(order_id, mutator, "rate_order")
        return stored["rating"]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: UUID, actor: Actor) -> Order:
        """Full order record, visible to its company and its courier only"""
        order = self._order(order_id)
        if not self._is_party(order, actor):
            logger.warning(f"get_order rejected: {actor.role.value} {actor.id} has no access to {order_id}")
            raise Forbidden(f"No permission to view order {order_id}")
        return order

    def get_by_tracking_code(self, code: str) -> Order:
        """Look up an order by its public tracking code"""
        normalized = (code or "").strip().upper()
        entry = self.stores.tracking_codes.get(normalized)
        if entry is None:
            raise NotFound(f"No order with tracking code {code}")
        return self._order(entry.order_id)

    def track(self, code: str) -> TrackingView:
        """Identity-free progress view for the end customer"""
        order = self.get_by_tracking_code(code)
        events = [TrackingEvent(timestamp=order.created_at, status=OrderStatus.PENDING)]
        events.extend(TrackingEvent(timestamp=u.timestamp, status=u.to_status) for u in order.updates)
        return TrackingView(
            tracking_code=order.tracking_code,
            status=order.status,
            estimated_delivery_time=order.estimated_delivery_time,
            delivery_address=order.delivery.address,
            updates=events,
        )

    def _page(self, orders: List[Order], query: OrderListQuery) -> OrderPage:
        limit = min(query.limit or self.config.DEFAULT_PAGE_SIZE, self.config.MAX_PAGE_SIZE)
        ordered = sorted(orders, key=lambda o: o.created_at, reverse=True)
        start = (query.page - 1) * limit
        return OrderPage(
            items=ordered[start:start + limit],
            page=query.page,
            limit=limit,
            total=len(ordered),
            pages=math.ceil(len(ordered) / limit),
        )

    def list_company_orders(self, company_id: UUID, filters: Optional[Payload] = None) -> OrderPage:
        """A company's orders, newest first, filtered by status and courier"""
        query = parse_request(OrderListQuery, filters or {})
        self._company(company_id)
        orders = self.stores.orders.filter(
            lambda o: o.company_id == company_id
            and (query.status is None or o.status == query.status)
            and (query.courier_id is None or o.courier_id == query.courier_id)
        )
        return self._page(orders, query)

    def list_courier_orders(self, courier_id: UUID, filters: Optional[Payload] = None) -> OrderPage:
        """Orders assigned to a courier, newest first, filtered by status"""
        query = parse_request(OrderListQuery, filters or {})
        self._courier(courier_id)
        orders = self.stores.orders.filter(
            lambda o: o.courier_id == courier_id
            and (query.status is None or o.status == query.status)
        )
        return self._page(orders, query)


# Global coordinator instance
_coordinator: Optional[DispatchCoordinator] = None


def get_coordinator() -> DispatchCoordinator:
    """
    Get the global dispatch coordinator, built on the configured store backend.

    Returns:
        DispatchCoordinator instance
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = DispatchCoordinator(build_stores())
    return _coordinator


def reset_coordinator():
    """Reset the global coordinator (useful for testing)."""
    global _coordinator
    _coordinator = None
