"""
Dispatch coordinator tests

End-to-end order flows against the in-memory stores: creation, matching,
the accept race, status progress, cancellation, rating and read views.
"""

import pytest
import sys
import os
import re
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

# Add the project root to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from dispatch.errors import (
    Conflict,
    DispatchError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from dispatch.models.domain import Actor, ActorRole, OrderStatus, PartyType
from dispatch.services.coordinator import DispatchCoordinator
from dispatch.store import TrackingCodeEntry
from dispatch.utils.config import Settings


def company_actor(company):
    return Actor(role=ActorRole.COMPANY, id=company.id)


def courier_actor(courier):
    return Actor(role=ActorRole.COURIER, id=courier.id)


def race(*calls):
    """Start every call at the same moment; each returns its result or its DispatchError"""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call()
        except DispatchError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


@pytest.fixture
def company(make_company):
    return make_company()


@pytest.fixture
def courier(make_courier):
    return make_courier()


@pytest.fixture
def order(coordinator, company, order_payload):
    return coordinator.create_order(company.id, order_payload())


@pytest.fixture
def deliver(coordinator, clock):
    """Drive an order from pending to delivered, taking ``minutes`` after acceptance"""

    def _deliver(order, courier, minutes=20):
        coordinator.accept(order.id, courier.id)
        coordinator.update_status(order.id, courier.id, OrderStatus.PICKED_UP)
        coordinator.update_status(order.id, courier.id, OrderStatus.IN_TRANSIT)
        clock.advance(minutes=minutes)
        return coordinator.update_status(order.id, courier.id, OrderStatus.DELIVERED, notes="Left with doorman")

    return _deliver


class TestCreateOrder:
    """Order creation from a company payload"""

    def test_defaults_from_company(self, coordinator, stores, company, order):
        """Pickup, fee and estimate come from the company"""
        assert order.status == OrderStatus.PENDING
        assert order.company_id == company.id
        assert order.courier_id is None
        assert order.pickup.address == company.address
        assert order.pickup.coordinates == company.coordinates
        assert order.delivery_fee == company.delivery_config.delivery_fee
        assert order.estimated_delivery_time == company.delivery_config.average_delivery_time
        assert 0 < order.distance < 2
        assert order.updates == []
        assert stores.companies.get(str(company.id)).total_orders == 1

    def test_tracking_code_format_and_lookup(self, coordinator, order):
        """MR + 6 clock digits + 4 base-36 characters, indexed for lookup"""
        assert re.fullmatch(r"MR\d{6}[0-9A-Z]{4}", order.tracking_code)
        assert coordinator.get_by_tracking_code(order.tracking_code).id == order.id
        assert coordinator.get_by_tracking_code(order.tracking_code.lower()).id == order.id

    def test_tracking_code_collision_is_retried(self, coordinator, stores, company, order_payload):
        """A code already in the index is regenerated"""
        stores.tracking_codes.add("MR000000AAAA", TrackingCodeEntry(tracking_code="MR000000AAAA", order_id=uuid.uuid4()))

        with patch.object(coordinator, "_new_tracking_code", side_effect=["MR000000AAAA", "MR000000BBBB"]):
            order = coordinator.create_order(company.id, order_payload())

        assert order.tracking_code == "MR000000BBBB"

    def test_tracking_code_attempts_are_bounded(self, coordinator, stores, company, order_payload):
        stores.tracking_codes.add("MR000000AAAA", TrackingCodeEntry(tracking_code="MR000000AAAA", order_id=uuid.uuid4()))

        with patch.object(coordinator, "_new_tracking_code", return_value="MR000000AAAA"):
            with pytest.raises(Conflict):
                coordinator.create_order(company.id, order_payload())

        assert stores.orders.list() == []

    def test_priority_and_explicit_pickup(self, coordinator, company, order_payload):
        pickup = {"address": "Rua Oscar Freire 50", "coordinates": {"lat": -23.5610, "lng": -46.6700}}
        order = coordinator.create_order(
            company.id,
            order_payload(priority="urgent", pickup=pickup, delivery={
                "address": "Rua Haddock Lobo 10", "coordinates": {"lat": -23.5590, "lng": -46.6640},
            }),
        )
        assert order.priority.value == "urgent"
        assert order.pickup.address == "Rua Oscar Freire 50"

    def test_unknown_company(self, coordinator, order_payload):
        with pytest.raises(NotFound):
            coordinator.create_order(uuid.uuid4(), order_payload())

    def test_inactive_company(self, coordinator, registry, company, order_payload):
        registry.set_company_active(company_actor(company), company.id, False)
        with pytest.raises(Forbidden):
            coordinator.create_order(company.id, order_payload())

    @pytest.mark.parametrize("overrides", [
        {"customer_name": "A"},
        {"items": []},
        {"total_value": "0"},
        {"delivery": {"address": "No coordinates"}},
        {"status": "delivered"},
        {"courier_id": str(uuid.uuid4())},
    ])
    def test_invalid_payload(self, coordinator, company, order_payload, overrides):
        """Malformed payloads and attempts to set managed fields are rejected"""
        with pytest.raises(ValidationError) as exc_info:
            coordinator.create_order(company.id, order_payload(**overrides))
        assert exc_info.value.errors

    def test_scheduled_delivery_requires_company_opt_in(self, coordinator, registry, company, order_payload):
        payload = order_payload(scheduled_for="2024-01-16T12:00:00+00:00")
        with pytest.raises(ValidationError):
            coordinator.create_order(company.id, payload)

        registry.update_delivery_config(company_actor(company), company.id, {"accepts_scheduled_delivery": True})
        order = coordinator.create_order(company.id, payload)
        assert order.scheduled_for is not None

    def test_delivery_outside_radius(self, coordinator, company, order_payload):
        """Rio de Janeiro is far beyond a 10 km radius from Sao Paulo"""
        payload = order_payload(delivery={"address": "Copacabana", "coordinates": {"lat": -22.97, "lng": -43.18}})
        with pytest.raises(ValidationError):
            coordinator.create_order(company.id, payload)

    def test_fee_and_estimate_follow_config(self, coordinator, registry, company, order_payload):
        registry.update_delivery_config(
            company_actor(company), company.id, {"delivery_fee": "8.50", "average_delivery_time": 45}
        )
        order = coordinator.create_order(company.id, order_payload())
        assert str(order.delivery_fee) == "8.50"
        assert order.estimated_delivery_time == 45


class TestMatching:
    """Coordinator entry points into the match engine"""

    def test_list_eligible_orders_ranks_by_priority(self, coordinator, company, courier, order_payload, clock):
        normal = coordinator.create_order(company.id, order_payload())
        clock.advance(seconds=1)
        urgent = coordinator.create_order(company.id, order_payload(priority="urgent"))

        ranked = coordinator.list_eligible_orders(courier.id)

        assert [o.id for o in ranked] == [urgent.id, normal.id]

    def test_list_eligible_orders_requires_eligibility(self, coordinator, make_courier, order):
        offline = make_courier(available=False)
        with pytest.raises(Forbidden):
            coordinator.list_eligible_orders(offline.id)

    def test_list_eligible_orders_outside_hours(self, coordinator, courier, order, clock):
        clock.advance(hours=9)  # Monday 19:00
        with pytest.raises(Forbidden):
            coordinator.list_eligible_orders(courier.id)

    def test_list_eligible_orders_filters(self, coordinator, courier, order):
        assert coordinator.list_eligible_orders(courier.id, {"max_distance": 5, "limit": 1})[0].id == order.id
        with pytest.raises(ValidationError):
            coordinator.list_eligible_orders(courier.id, {"radius": 5})

    def test_working_hours_follow_configured_timezone(self, stores, reputation, coordinator, courier, order, clock):
        """Monday 10:00 UTC is 07:00 in Sao Paulo; 20:30 UTC is 17:30 there"""
        local = DispatchCoordinator(
            stores,
            reputation=reputation,
            clock=clock,
            config=Settings(STORE_BACKEND="memory", TIMEZONE="America/Sao_Paulo"),
        )
        with pytest.raises(Forbidden):
            local.list_eligible_orders(courier.id)

        clock.advance(hours=10, minutes=30)

        assert [o.id for o in local.list_eligible_orders(courier.id)] == [order.id]
        with pytest.raises(Forbidden):
            coordinator.list_eligible_orders(courier.id)
        assert local.accept(order.id, courier.id).courier_id == courier.id

    def test_find_couriers_for_order(self, coordinator, make_courier, company, order):
        near = make_courier()
        make_courier(verified=False, available=False)
        make_courier(location={"lat": -22.97, "lng": -43.18})

        ranked = coordinator.find_couriers_for_order(order.id, company_actor(company), {"max_distance": 5})

        assert [c.id for c in ranked] == [near.id]

    def test_find_couriers_for_foreign_order(self, coordinator, make_company, order):
        with pytest.raises(Forbidden):
            coordinator.find_couriers_for_order(order.id, company_actor(make_company()))

    def test_find_couriers(self, coordinator, make_courier):
        make_courier()
        make_courier(available=False)
        assert len(coordinator.find_couriers({"min_rating": 0})) == 1


class TestAccept:
    """Atomic compare-and-transition on acceptance"""

    def test_accept(self, coordinator, courier, order):
        accepted = coordinator.accept(order.id, courier.id)

        assert accepted.status == OrderStatus.ACCEPTED
        assert accepted.courier_id == courier.id
        assert accepted.accepted_at is not None
        assert len(accepted.updates) == 1

    def test_second_accept_conflicts(self, coordinator, make_courier, order):
        first, second = make_courier(), make_courier()
        coordinator.accept(order.id, first.id)

        with pytest.raises(Conflict):
            coordinator.accept(order.id, second.id)

        assert coordinator.get_by_tracking_code(order.tracking_code).courier_id == first.id

    def test_ineligible_courier_leaves_order_untouched(self, coordinator, stores, make_courier, order):
        unverified = make_courier(verified=False, available=False)
        before = stores.orders.get_versioned(str(order.id))

        with pytest.raises(Forbidden):
            coordinator.accept(order.id, unverified.id)

        after = stores.orders.get_versioned(str(order.id))
        assert after.version == before.version
        assert after.record == before.record

    def test_unknown_ids(self, coordinator, courier, order):
        with pytest.raises(NotFound):
            coordinator.accept(uuid.uuid4(), courier.id)
        with pytest.raises(NotFound):
            coordinator.accept(order.id, uuid.uuid4())

    def test_exactly_one_concurrent_accept_wins(self, coordinator, make_courier, order):
        """N couriers race for one order: one winner, N-1 Conflicts"""
        couriers = [make_courier() for _ in range(12)]

        def attempt(courier):
            try:
                coordinator.accept(order.id, courier.id)
                return courier.id
            except Conflict:
                return None

        with ThreadPoolExecutor(max_workers=12) as pool:
            results = list(pool.map(attempt, couriers))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        final = coordinator.get_by_tracking_code(order.tracking_code)
        assert final.courier_id == winners[0]
        assert len(final.updates) == 1

    def test_accept_after_cancel_conflicts(self, coordinator, company, courier, order):
        coordinator.cancel(order.id, company_actor(company), reason="Duplicate")
        with pytest.raises(Conflict):
            coordinator.accept(order.id, courier.id)


class TestUpdateStatus:
    """Courier-driven progress"""

    def test_delivery_updates_stats_once(self, coordinator, stores, company, courier, order, deliver):
        delivered = deliver(order, courier, minutes=20)

        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.updates[-1].notes == "Left with doorman"
        assert [u.to_status for u in delivered.updates] == [
            OrderStatus.ACCEPTED, OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED,
        ]

        stats = stores.couriers.get(str(courier.id)).stats
        assert stats.total_deliveries == 1
        assert stats.successful_deliveries == 1
        assert stats.on_time_deliveries == 1
        assert stats.total_earnings == order.delivery_fee

        company_stats = stores.companies.get(str(company.id)).stats
        assert company_stats.successful_deliveries == 1

    def test_late_delivery_is_not_on_time(self, coordinator, stores, courier, order, deliver):
        """40 minutes against a 30 minute estimate"""
        delivered = deliver(order, courier, minutes=40)

        assert delivered.actual_delivery_time() == 40
        assert delivered.is_on_time() is False
        stats = stores.couriers.get(str(courier.id)).stats
        assert stats.successful_deliveries == 1
        assert stats.on_time_deliveries == 0

    def test_only_assigned_courier(self, coordinator, make_courier, order):
        assigned, other = make_courier(), make_courier()
        coordinator.accept(order.id, assigned.id)

        with pytest.raises(Forbidden):
            coordinator.update_status(order.id, other.id, OrderStatus.PICKED_UP)

    def test_pending_order_has_no_assigned_courier(self, coordinator, courier, order):
        with pytest.raises(Forbidden):
            coordinator.update_status(order.id, courier.id, OrderStatus.PICKED_UP)

    @pytest.mark.parametrize("path,target", [
        ([], OrderStatus.DELIVERED),
        ([], OrderStatus.IN_TRANSIT),
        ([OrderStatus.PICKED_UP], OrderStatus.DELIVERED),
        ([OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT], OrderStatus.PICKED_UP),
    ])
    def test_transitions_outside_table(self, coordinator, courier, order, path, target):
        coordinator.accept(order.id, courier.id)
        for status in path:
            coordinator.update_status(order.id, courier.id, status)

        with pytest.raises(InvalidTransition):
            coordinator.update_status(order.id, courier.id, target)

    def test_unknown_status(self, coordinator, courier, order):
        with pytest.raises(ValidationError):
            coordinator.update_status(order.id, courier.id, "lost")

    def test_courier_cancel_through_status_update(self, coordinator, stores, courier, order):
        coordinator.accept(order.id, courier.id)

        cancelled = coordinator.update_status(order.id, courier.id, "cancelled", notes="Flat tyre")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Flat tyre"
        assert cancelled.updates[-1].cancelled_by == ActorRole.COURIER
        assert stores.couriers.get(str(courier.id)).stats.cancelled_deliveries == 1

    def test_courier_cancel_after_pickup_is_invalid_transition(self, coordinator, stores, courier, order):
        """picked_up -> cancelled is outside the table, not a lost race"""
        coordinator.accept(order.id, courier.id)
        coordinator.update_status(order.id, courier.id, OrderStatus.PICKED_UP)

        with pytest.raises(InvalidTransition):
            coordinator.update_status(order.id, courier.id, "cancelled")

        current = stores.orders.get(str(order.id))
        assert current.status == OrderStatus.PICKED_UP
        assert len(current.updates) == 2
        assert stores.couriers.get(str(courier.id)).stats.cancelled_deliveries == 0

    def test_unassigned_courier_cannot_cancel_through_status_update(self, coordinator, make_courier, order):
        assigned, other = make_courier(), make_courier()
        coordinator.accept(order.id, assigned.id)

        with pytest.raises(Forbidden):
            coordinator.update_status(order.id, other.id, "cancelled")


class TestCancel:
    """Cancellation by the owning company or the assigned courier"""

    def test_company_cancels_pending(self, coordinator, stores, company, order):
        cancelled = coordinator.cancel(order.id, company_actor(company), reason="Customer called")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Customer called"
        assert cancelled.cancelled_at is not None
        assert cancelled.updates[-1].cancelled_by == ActorRole.COMPANY
        assert stores.companies.get(str(company.id)).stats.cancelled_deliveries == 1

    def test_company_cancel_does_not_count_against_courier(self, coordinator, stores, company, courier, order):
        coordinator.accept(order.id, courier.id)
        coordinator.cancel(order.id, company_actor(company))
        assert stores.couriers.get(str(courier.id)).stats.cancelled_deliveries == 0

    def test_strangers_cannot_cancel(self, coordinator, make_company, make_courier, order):
        with pytest.raises(Forbidden):
            coordinator.cancel(order.id, company_actor(make_company()))
        with pytest.raises(Forbidden):
            coordinator.cancel(order.id, courier_actor(make_courier()))
        with pytest.raises(Forbidden):
            coordinator.cancel(order.id, Actor(role=ActorRole.ADMIN))

    def test_cancel_after_pickup_conflicts(self, coordinator, company, courier, order):
        coordinator.accept(order.id, courier.id)
        coordinator.update_status(order.id, courier.id, OrderStatus.PICKED_UP)

        with pytest.raises(Conflict):
            coordinator.cancel(order.id, company_actor(company))

    def test_double_cancel_conflicts(self, coordinator, company, order):
        coordinator.cancel(order.id, company_actor(company))
        with pytest.raises(Conflict):
            coordinator.cancel(order.id, company_actor(company))

    def test_status_update_after_cancel(self, coordinator, company, courier, order):
        coordinator.accept(order.id, courier.id)
        coordinator.cancel(order.id, company_actor(company))
        with pytest.raises(InvalidTransition):
            coordinator.update_status(order.id, courier.id, OrderStatus.PICKED_UP)


class TestRaces:
    """Concurrent operations on one order commit in some serial order"""

    def test_cancel_racing_accept(self, coordinator, stores, company, courier, order_payload):
        """The company cancel always lands; the accept commits only if it got there first"""
        for _ in range(20):
            order = coordinator.create_order(company.id, order_payload())

            accepted, cancelled = race(
                lambda: coordinator.accept(order.id, courier.id),
                lambda: coordinator.cancel(order.id, company_actor(company)),
            )

            final = stores.orders.get(str(order.id))
            assert final.status == OrderStatus.CANCELLED
            assert not isinstance(cancelled, DispatchError)
            if isinstance(accepted, DispatchError):
                assert isinstance(accepted, Conflict)
                assert final.courier_id is None
                assert [u.to_status for u in final.updates] == [OrderStatus.CANCELLED]
            else:
                assert final.courier_id == courier.id
                assert [u.to_status for u in final.updates] == [OrderStatus.ACCEPTED, OrderStatus.CANCELLED]

        assert stores.companies.get(str(company.id)).stats.cancelled_deliveries == 20

    def test_status_update_racing_cancel(self, coordinator, stores, company, courier, order_payload):
        """Pickup and cancel of an accepted order: exactly one commits"""
        cancels = 0
        for _ in range(20):
            order = coordinator.create_order(company.id, order_payload())
            coordinator.accept(order.id, courier.id)

            picked_up, cancelled = race(
                lambda: coordinator.update_status(order.id, courier.id, OrderStatus.PICKED_UP),
                lambda: coordinator.cancel(order.id, company_actor(company)),
            )

            committed = [r for r in (picked_up, cancelled) if not isinstance(r, DispatchError)]
            assert len(committed) == 1

            final = stores.orders.get(str(order.id))
            assert [u.to_status for u in final.updates] == [OrderStatus.ACCEPTED, final.status]
            if final.status == OrderStatus.PICKED_UP:
                assert isinstance(cancelled, Conflict)
            else:
                assert final.status == OrderStatus.CANCELLED
                assert isinstance(picked_up, InvalidTransition)
                cancels += 1

        assert stores.companies.get(str(company.id)).stats.cancelled_deliveries == cancels


class TestRateOrder:
    """Both sides rate once each after delivery"""

    def test_both_sides_rate_independently(self, coordinator, stores, company, courier, order, deliver):
        deliver(order, courier)

        company_rating = coordinator.rate_order(
            order.id, company_actor(company), 5, {"punctuality": 5}, "Great"
        )
        courier_rating = coordinator.rate_order(order.id, courier_actor(courier), 4)

        assert company_rating.to_type == PartyType.COURIER
        assert courier_rating.to_type == PartyType.COMPANY
        stored = coordinator.get_order(order.id, company_actor(company))
        assert stored.courier_rating == 5
        assert stored.courier_rating_comment == "Great"
        assert stored.company_rating == 4
        assert stores.couriers.get(str(courier.id)).rating.average == 5.0
        assert stores.companies.get(str(company.id)).rating.count == 1

    def test_second_rating_rejected(self, coordinator, stores, company, courier, order, deliver):
        deliver(order, courier)
        coordinator.rate_order(order.id, company_actor(company), 5)

        with pytest.raises(ValidationError):
            coordinator.rate_order(order.id, company_actor(company), 1)

        assert len(stores.ratings.list()) == 1
        assert stores.couriers.get(str(courier.id)).rating.average == 5.0

    def test_requires_delivered(self, coordinator, company, courier, order):
        coordinator.accept(order.id, courier.id)
        with pytest.raises(InvalidTransition):
            coordinator.rate_order(order.id, company_actor(company), 5)

    def test_requires_relationship(self, coordinator, make_company, courier, order, deliver):
        deliver(order, courier)
        with pytest.raises(Forbidden):
            coordinator.rate_order(order.id, company_actor(make_company()), 5)

    @pytest.mark.parametrize("score", [0, 6, True, 4.5])
    def test_bad_score_leaves_order_untouched(self, coordinator, stores, company, courier, order, deliver, score):
        deliver(order, courier)
        before = stores.orders.get_versioned(str(order.id))

        with pytest.raises(ValidationError):
            coordinator.rate_order(order.id, company_actor(company), score)

        assert stores.orders.get_versioned(str(order.id)).version == before.version
        assert stores.ratings.list() == []


class TestReads:
    """Visibility, tracking and listings"""

    def test_get_order_visibility(self, coordinator, make_company, company, courier, order):
        assert coordinator.get_order(order.id, company_actor(company)).id == order.id
        with pytest.raises(Forbidden):
            coordinator.get_order(order.id, courier_actor(courier))

        coordinator.accept(order.id, courier.id)
        assert coordinator.get_order(order.id, courier_actor(courier)).id == order.id
        with pytest.raises(Forbidden):
            coordinator.get_order(order.id, company_actor(make_company()))

    def test_track_is_identity_free(self, coordinator, courier, order):
        coordinator.accept(order.id, courier.id)

        view = coordinator.track(order.tracking_code)

        assert view.status == OrderStatus.ACCEPTED
        assert view.delivery_address == order.delivery.address
        assert [e.status for e in view.updates] == [OrderStatus.PENDING, OrderStatus.ACCEPTED]
        dumped = view.model_dump()
        assert "courier_id" not in dumped
        assert "company_id" not in dumped
        assert "customer_phone" not in dumped

    def test_unknown_tracking_code(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.track("MR123456ZZZZ")

    def test_company_listing_paginates_newest_first(self, coordinator, company, order_payload, clock):
        created = []
        for _ in range(5):
            created.append(coordinator.create_order(company.id, order_payload()))
            clock.advance(minutes=1)

        page = coordinator.list_company_orders(company.id, {"page": 2, "limit": 2})

        assert page.total == 5
        assert page.pages == 3
        assert [o.id for o in page.items] == [created[2].id, created[1].id]

    def test_listing_filters(self, coordinator, company, courier, order_payload):
        first = coordinator.create_order(company.id, order_payload())
        coordinator.create_order(company.id, order_payload())
        coordinator.accept(first.id, courier.id)

        accepted = coordinator.list_company_orders(company.id, {"status": "accepted"})
        assert [o.id for o in accepted.items] == [first.id]

        by_courier = coordinator.list_company_orders(company.id, {"courier_id": str(courier.id)})
        assert by_courier.total == 1

        mine = coordinator.list_courier_orders(courier.id)
        assert [o.id for o in mine.items] == [first.id]
        assert mine.limit == 20

    def test_errors_share_a_base(self):
        assert issubclass(Conflict, DispatchError)
        assert Conflict("lost").to_dict() == {"code": "conflict", "message": "lost"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
