# Overview: Pytest coverage for route planning, stop moves and route cancellation.

import pytest
from dairy.extensions import db
from dairy.models import Route, RouteStop
from dairy.services import fulfillment_service, route_planner_service, subscription_service
from dairy.services.route_planner_service import RouteLocked
from dairy.validation import ValidationError


@pytest.fixture
def due_deliveries(customer, address, postpaid_customer, postpaid_address, milk, tomorrow,
                   make_customer, make_address, schedule_delivery):
    """
    Four deliveries tomorrow across three zones:
    RS Puram x2, Gandhipuram x1, Peelamedu x1.
    """
    third = make_customer("9800000003", "Anitha")
    fourth = make_customer("9800000004", "Suresh")
    return [
        schedule_delivery(customer, address, milk, tomorrow),
        schedule_delivery(postpaid_customer, postpaid_address, milk, tomorrow),
        schedule_delivery(third, make_address(third, pincode="641003", area="Peelamedu"), milk, tomorrow),
        schedule_delivery(fourth, make_address(fourth, pincode="641004", area="RS Puram"), milk, tomorrow),
    ]


def _route_of(agent, route_date):
    return route_planner_service.get_agent_route(agent.id, route_date)


def _sequences(route):
    return sorted(stop.sequence for stop in route.stops)


# ============================================================================
# PLANNING
# ============================================================================

class TestPlanRoutes:
    """Zone assignment and sequencing."""

    def test_two_agents_split_by_zone(self, org, agent, second_agent, due_deliveries, tomorrow):
        result = route_planner_service.plan_routes(org.id, tomorrow)

        assert result.assigned_count == 4
        assert len(result.routes) == 2
        assert result.unassigned == []

        # Largest zone goes first, to the lowest agent id
        first = _route_of(agent, tomorrow)
        assert {s.address.area for s in first.stops} == {"RS Puram"}
        second = _route_of(second_agent, tomorrow)
        assert {s.address.area for s in second.stops} == {"Gandhipuram", "Peelamedu"}

        for route in (first, second):
            assert route.status == "planned"
            assert _sequences(route) == [1, 2]
            assert route.total_distance_km > 0
            assert route.estimated_duration_minutes > 0

    def test_nearest_stop_first(self, org, agent, due_deliveries, tomorrow, address):
        route_planner_service.plan_routes(org.id, tomorrow)

        route = _route_of(agent, tomorrow)
        first_stop = next(s for s in route.stops if s.sequence == 1)
        assert first_stop.address_id == address.id

    def test_deliveries_carry_agent(self, org, agent, second_agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)

        for delivery in due_deliveries:
            stop = route_planner_service.active_stop_for(subscription_delivery_id=delivery.id)
            assert delivery.agent_id == stop.route.agent_id

    def test_rerun_assigns_nothing_new(self, org, agent, second_agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)

        result = route_planner_service.plan_routes(org.id, tomorrow)

        assert result.assigned_count == 0
        assert result.routes == []
        assert db.session.query(Route).count() == 2
        assert db.session.query(RouteStop).count() == 4

    def test_rerun_extends_planned_route(self, org, agent, due_deliveries, tomorrow,
                                         make_customer, make_address, schedule_delivery, milk):
        route_planner_service.plan_routes(org.id, tomorrow)
        late = make_customer("9800000005", "Divya")
        schedule_delivery(late, make_address(late, pincode="641002", area="Gandhipuram"), milk, tomorrow)

        result = route_planner_service.plan_routes(org.id, tomorrow)

        assert result.assigned_count == 1
        route = _route_of(agent, tomorrow)
        assert _sequences(route) == [1, 2, 3, 4, 5]

    def test_no_agent_leaves_work_unassigned(self, org, due_deliveries, tomorrow):
        result = route_planner_service.plan_routes(org.id, tomorrow)

        summary = result.to_dict()
        assert summary["assigned_count"] == 0
        assert summary["unassigned_count"] == 4
        assert {u["reason"] for u in summary["unassigned"]} == {"no_available_agent"}
        assert db.session.query(Route).count() == 0

    def test_agent_filter(self, org, agent, second_agent, due_deliveries, tomorrow):
        result = route_planner_service.plan_routes(org.id, tomorrow, [second_agent.id])

        assert [r.agent_id for r in result.routes] == [second_agent.id]
        assert _sequences(_route_of(second_agent, tomorrow)) == [1, 2, 3, 4]

    def test_unknown_agent_rejected(self, org, agent, customer, due_deliveries, tomorrow):
        with pytest.raises(ValidationError):
            route_planner_service.plan_routes(org.id, tomorrow, [customer.id])

    def test_started_route_is_frozen(self, org, agent, second_agent, due_deliveries, tomorrow,
                                     make_customer, make_address, schedule_delivery, milk):
        route_planner_service.plan_routes(org.id, tomorrow)
        fulfillment_service.start_route(agent.id, tomorrow)
        late = make_customer("9800000005", "Divya")
        schedule_delivery(late, make_address(late, pincode="641001", area="RS Puram"), milk, tomorrow)

        route_planner_service.plan_routes(org.id, tomorrow)

        assert len(_route_of(agent, tomorrow).stops) == 2
        assert len(_route_of(second_agent, tomorrow).stops) == 3

    def test_missing_coordinates_geocoded(self, org, agent, customer, milk, tomorrow, make_address, schedule_delivery):
        bare = make_address(customer, pincode="641003", area="Peelamedu", with_coordinates=False)
        schedule_delivery(customer, bare, milk, tomorrow)

        route_planner_service.plan_routes(org.id, tomorrow)

        db.session.refresh(bare)
        assert bare.has_coordinates
        stop = _route_of(agent, tomorrow).stops[0]
        assert stop.distance_from_previous_km is not None

    def test_ungeocodable_stops_go_last(self, org, agent, customer, address, milk, tomorrow,
                                        make_customer, make_address, schedule_delivery):
        schedule_delivery(customer, address, milk, tomorrow)
        remote = make_customer("9800000006", "Vel")
        nowhere = make_address(remote, pincode="600001", area="RS Puram", with_coordinates=False)
        schedule_delivery(remote, nowhere, milk, tomorrow)

        route_planner_service.plan_routes(org.id, tomorrow)

        route = _route_of(agent, tomorrow)
        last = next(s for s in route.stops if s.sequence == 2)
        assert last.address_id == nowhere.id
        assert last.distance_from_previous_km is None


# ============================================================================
# AFTER PLANNING
# ============================================================================

class TestRouteChanges:
    """Moves, cancellations and locking."""

    def test_move_stop_between_routes(self, org, agent, second_agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)
        source = _route_of(agent, tomorrow)
        target = _route_of(second_agent, tomorrow)
        stop = source.stops[0]

        route_planner_service.move_stop(org.id, stop.id, target.id, sequence=1)

        assert stop.route_id == target.id
        assert stop.sequence == 1
        assert _sequences(source) == [1]
        assert _sequences(target) == [1, 2, 3]
        assert stop.subscription_delivery.agent_id == second_agent.id

    def test_move_to_started_route_locked(self, org, agent, second_agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)
        fulfillment_service.start_route(second_agent.id, tomorrow)
        stop = _route_of(agent, tomorrow).stops[0]

        with pytest.raises(RouteLocked):
            route_planner_service.move_stop(org.id, stop.id, _route_of(second_agent, tomorrow).id)

    def test_cancel_route_releases_stops(self, org, agent, second_agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)
        route = _route_of(agent, tomorrow)

        route_planner_service.cancel_route(org.id, route.id, reason="Van breakdown")

        assert route.status == "cancelled"
        assert route.notes == "Van breakdown"
        assert {s.status for s in route.stops} == {"cancelled"}
        assert all(s.subscription_delivery.agent_id is None for s in route.stops)

        # Released work goes to the remaining open agent
        result = route_planner_service.plan_routes(org.id, tomorrow)
        assert result.assigned_count == 2
        assert _sequences(_route_of(second_agent, tomorrow)) == [1, 2, 3, 4]

    def test_cancel_started_route_rejected(self, org, agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)
        route = fulfillment_service.start_route(agent.id, tomorrow)

        with pytest.raises(ValueError):
            route_planner_service.cancel_route(org.id, route.id)

    def test_paused_subscription_cancels_pending_stop(self, org, agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)
        delivery = due_deliveries[0]

        subscription_service.pause_subscription(delivery.subscription_id)

        route = _route_of(agent, tomorrow)
        cancelled = [s for s in route.stops if s.status == "cancelled"]
        assert [s.subscription_delivery_id for s in cancelled] == [delivery.id]
        # Cancelled stops trail the active ones
        assert max(s.sequence for s in route.stops if s.status != "cancelled") < cancelled[0].sequence

    def test_list_routes_filters(self, org, agent, second_agent, due_deliveries, tomorrow):
        route_planner_service.plan_routes(org.id, tomorrow)
        fulfillment_service.start_route(agent.id, tomorrow)

        assert len(route_planner_service.list_routes(org.id, tomorrow)) == 2
        started = route_planner_service.list_routes(org.id, tomorrow, status="in_progress")
        assert [r.agent_id for r in started] == [agent.id]
