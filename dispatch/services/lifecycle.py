"""
Order lifecycle state machine.

The only code allowed to change an order's status. ``transition`` is pure:
it validates against the transition table and returns a new Order with the
status, the per-state timestamp and one more audit entry; the caller
decides where (and under which lock) to store it.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from dispatch.errors import InvalidTransition
from dispatch.models.domain import ActorRole, Order, OrderStatus, StatusUpdate

logger = logging.getLogger(__name__)


# Current status -> statuses it may move to. Nothing moves back to pending.
TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.PICKED_UP, OrderStatus.CANCELLED}),
    OrderStatus.PICKED_UP: frozenset({OrderStatus.IN_TRANSIT}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

ACTIVE_STATUSES = frozenset({OrderStatus.ACCEPTED, OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT})

# Status -> the timestamp field set when the order enters it
_TIMESTAMP_FIELDS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class TransitionDetails(BaseModel):
    """Extra audit fields a transition may carry."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[ActorRole] = None


def is_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(
    order: Order,
    target: OrderStatus,
    actor_id: Optional[UUID],
    now: datetime,
    courier_id: Optional[UUID] = None,
    details: Optional[TransitionDetails] = None,
) -> Order:
    """
    Move ``order`` to ``target`` and return the updated copy.

    Args:
        order: Current order (left untouched)
        target: Status to move to
        actor_id: Who performs the transition (recorded in the audit trail)
        now: Commit timestamp
        courier_id: Required when target is ACCEPTED
        details: Notes / cancellation data for the audit entry

    Raises:
        InvalidTransition: If the move is not in the transition table, or an
            acceptance lacks a courier or targets an already assigned order
    """
    current = order.status
    if not is_allowed(current, target):
        raise InvalidTransition(
            f"Invalid status transition: {current.value} -> {target.value}"
        )

    details = details or TransitionDetails()
    changes: Dict[str, object] = {"status": target}

    if target == OrderStatus.ACCEPTED:
        if courier_id is None:
            raise InvalidTransition("Accepting an order requires a courier")
        if order.courier_id is not None:
            raise InvalidTransition(f"Order {order.id} already has a courier")
        changes["courier_id"] = courier_id

    if target == OrderStatus.CANCELLED and details.cancellation_reason is not None:
        changes["cancellation_reason"] = details.cancellation_reason

    field = _TIMESTAMP_FIELDS.get(target)
    if field is not None and getattr(order, field) is None:
        changes[field] = now

    entry = StatusUpdate(
        timestamp=now,
        from_status=current,
        to_status=target,
        actor_id=actor_id,
        notes=details.notes,
        cancellation_reason=details.cancellation_reason,
        cancelled_by=details.cancelled_by,
    )
    changes["updates"] = [*order.updates, entry]

    logger.info(f"Order {order.id} ({order.tracking_code}): {current.value} -> {target.value}")
    return order.model_copy(update=changes, deep=True)
