"""
Match Engine

Filter-then-sort pipelines in both directions:
- orders for a courier: pending orders, optionally near the courier,
  strict priority then oldest first
- couriers for an order: eligible couriers, optionally rated and near a
  reference point, best rated first

Neither direction mutates its inputs, so both can run concurrently against
a snapshot of the pool.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from dispatch.models.domain import Courier, GeoPoint, Order, OrderStatus
from dispatch.services.availability import is_eligible
from dispatch.services.geo import DistanceFn, haversine_km

logger = logging.getLogger(__name__)


class MatchEngine:
    """Ranks orders for couriers and couriers for orders"""

    def __init__(self, distance: Optional[DistanceFn] = None):
        """
        Args:
            distance: distance(point_a, point_b) -> km (defaults to haversine)
        """
        self.distance = distance or haversine_km

    def orders_for_courier(
        self,
        courier: Courier,
        orders: Iterable[Order],
        max_distance: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Order]:
        """
        Pending orders ranked for one courier.

        The distance filter applies only when the courier has reported a
        location; without one every pending order is kept.
        """
        candidates = [order for order in orders if order.status == OrderStatus.PENDING]

        origin = courier.current_location
        if max_distance is not None and origin is not None:
            candidates = [
                order for order in candidates
                if self.distance(origin, order.pickup.coordinates) <= max_distance
            ]

        ranked = sorted(candidates, key=lambda o: (-o.priority.rank, o.created_at))
        logger.debug(f"{len(ranked)} pending orders match courier {courier.id}")
        return ranked[:limit] if limit is not None else ranked

    def couriers_for_order(
        self,
        couriers: Iterable[Courier],
        now: datetime,
        min_rating: Optional[float] = None,
        max_distance: Optional[float] = None,
        reference_point: Optional[GeoPoint] = None,
        limit: Optional[int] = None,
    ) -> List[Courier]:
        """
        Eligible couriers ranked by rating.

        Ties are broken by successful deliveries (more first), then by id,
        so the ranking never depends on the pool's iteration order.
        """
        candidates = [courier for courier in couriers if is_eligible(courier, now)]

        if min_rating is not None:
            candidates = [c for c in candidates if c.rating.average >= min_rating]

        if max_distance is not None and reference_point is not None:
            candidates = [
                c for c in candidates
                if c.current_location is not None
                and self.distance(reference_point, c.current_location) <= max_distance
            ]

        ranked = sorted(
            candidates,
            key=lambda c: (-c.rating.average, -c.stats.successful_deliveries, str(c.id)),
        )
        return ranked[:limit] if limit is not None else ranked
