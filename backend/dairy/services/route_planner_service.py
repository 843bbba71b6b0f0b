# Overview: Assigns a day's due deliveries and orders to agent routes and sequences the stops.

"""
Route Assignment Planner

WHY: Agents work from an ordered list of stops. Planning turns the day's
scheduled subscription deliveries plus eligible one-off orders into one
Route per (agent, date) with RouteStops numbered 1..N.

DESIGN:
- Work set: 'scheduled' deliveries and pending/confirmed/processing orders
  due on the date that have no active (non-cancelled) stop yet.
- Zones: work items are grouped by address area. Zones go, largest first,
  to the least-loaded open agent.
- Routes: created if absent; an existing 'planned' route is extended and
  re-sequenced. in_progress/completed/cancelled routes are frozen and their
  agent gets no new work that day.
- Sequencing: nearest neighbour from the depot by haversine distance. Stops
  without coordinates (after the geocoder) go last and add no distance.
  total_distance_km is the sum of legs; the estimate is MINUTES_PER_KM per km.
- No open agent: nothing is written, every item is returned as an
  UnassignedDelivery and logged; the next run retries.
- Concurrency: the state check on the route (re-read under lock, plus the
  version column) is the exclusion mechanism. Moving a stop on a route
  that is no longer 'planned' raises RouteLocked.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date

from flask import current_app
from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Address, Order, Route, RouteStop, Subscription, SubscriptionDelivery, User
from dairy.time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from . import event_service, lifecycle_service
from .concurrency import lock_for_update, run_with_retry
from .geo import estimate_minutes, nearest_neighbour, path_legs
from .integrations import get_geocoder


ELIGIBLE_ORDER_STATUSES = ("pending", "confirmed", "processing")
UNZONED = "(unzoned)"


class RouteLocked(ConflictError):
    """Stop membership of a route that is no longer 'planned' cannot change."""


@dataclass
class WorkItem:
    stop_type: str
    target: object
    user_id: int
    address: Address
    delivery_items: list
    total_cents: int

    @property
    def zone(self) -> str:
        return (self.address.area or "").strip() or UNZONED


@dataclass
class UnassignedDelivery:
    stop_type: str
    target_id: int
    zone: str
    reason: str

    def to_dict(self) -> dict:
        return {
            "stop_type": self.stop_type,
            "target_id": self.target_id,
            "zone": self.zone,
            "reason": self.reason,
        }


@dataclass
class PlanningResult:
    route_date: date
    routes: list = field(default_factory=list)
    assigned_count: int = 0
    unassigned: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "route_date": self.route_date.isoformat(),
            "routes": [route.to_dict() for route in self.routes],
            "assigned_count": self.assigned_count,
            "unassigned_count": len(self.unassigned),
            "unassigned": [u.to_dict() for u in self.unassigned],
        }


# =============================================================================
# STOP HELPERS (shared with materializer/fulfillment)
# =============================================================================

def active_stop_for(*, subscription_delivery_id: int | None = None, order_id: int | None = None) -> RouteStop | None:
    query = db.session.query(RouteStop).filter(RouteStop.status != "cancelled")
    if subscription_delivery_id is not None:
        query = query.filter(RouteStop.subscription_delivery_id == subscription_delivery_id)
    elif order_id is not None:
        query = query.filter(RouteStop.order_id == order_id)
    else:
        raise ValueError("subscription_delivery_id or order_id is required")
    return query.first()


def cancel_pending_stop(*, subscription_delivery_id: int | None = None, order_id: int | None = None) -> RouteStop | None:
    """Cancel the target's stop if it has not been started. Caller owns the commit."""
    stop = active_stop_for(subscription_delivery_id=subscription_delivery_id, order_id=order_id)
    if stop is None or stop.status != "pending":
        return None
    lifecycle_service.require_transition("route_stop", stop.status, "cancelled")
    stop.status = "cancelled"
    if stop.route.status == "planned":
        resequence_route(stop.route)
    else:
        maybe_complete_route(stop.route)
    return stop


def delivery_items_for_delivery(delivery: SubscriptionDelivery) -> list[dict]:
    product = delivery.product
    return [{
        "product_id": delivery.product_id,
        "product_name": product.name if product else None,
        "unit": product.unit if product else None,
        "quantity": delivery.quantity,
        "unit_price_cents": delivery.unit_price_cents,
        "total_cents": delivery.total_cents,
    }]


def delivery_items_for_order(order: Order) -> list[dict]:
    return [
        {
            "product_id": item.product_id,
            "product_name": item.product.name if item.product else None,
            "unit": item.product.unit if item.product else None,
            "quantity": item.quantity,
            "unit_price_cents": item.unit_price_cents,
            "total_cents": item.total_cents,
        }
        for item in order.items
    ]


def refresh_pending_stop(delivery: SubscriptionDelivery) -> None:
    """Copy a delivery's refreshed snapshot onto its pending stop."""
    stop = active_stop_for(subscription_delivery_id=delivery.id)
    if stop is None or stop.status != "pending":
        return
    address_changed = stop.address_id != delivery.address_id
    stop.delivery_items = delivery_items_for_delivery(delivery)
    stop.total_cents = delivery.total_cents
    stop.address_id = delivery.address_id
    if address_changed and stop.route.status == "planned":
        db.session.flush()
        db.session.refresh(stop)
        resequence_route(stop.route)


def maybe_complete_route(route: Route) -> bool:
    """Complete an in-progress route once every stop is terminal."""
    if route.status != "in_progress":
        return False
    if not all(lifecycle_service.ROUTE_STOP.is_terminal(stop.status) for stop in route.stops):
        return False
    lifecycle_service.require_transition("route", route.status, "completed")
    route.status = "completed"
    route.end_time = utcnow()
    event_service.record_event(
        org_id=route.org_id,
        event_type="route.completed",
        entity_type="route",
        entity_id=route.id,
        user_id=route.agent_id,
    )
    return True


# =============================================================================
# SEQUENCING
# =============================================================================

def _stop_coords(stop: RouteStop) -> tuple[float, float] | None:
    address = stop.address or db.session.get(Address, stop.address_id)
    if address is None or not address.has_coordinates:
        return None
    return (address.latitude, address.longitude)


def _depot() -> tuple[float, float]:
    return (current_app.config["DEPOT_LATITUDE"], current_app.config["DEPOT_LONGITUDE"])


def _apply_order(route: Route, ordered_active: list[RouteStop], inactive: list[RouteStop]) -> None:
    """Number stops 1..N in the given order and recompute distance/duration."""
    legs = path_legs(_depot(), ordered_active, _stop_coords)
    total_km = 0.0
    sequence = 0
    for stop, km in legs:
        sequence += 1
        stop.sequence = sequence
        stop.distance_from_previous_km = round(km, 3) if km is not None else None
        total_km += km or 0.0
    for stop in inactive:
        sequence += 1
        stop.sequence = sequence
        stop.distance_from_previous_km = None

    route.total_distance_km = round(total_km, 2)
    route.estimated_duration_minutes = estimate_minutes(total_km, current_app.config["MINUTES_PER_KM"])


def _split_stops(route: Route, exclude: RouteStop | None = None) -> tuple[list[RouteStop], list[RouteStop]]:
    stops = [s for s in route.stops if s is not exclude]
    active = sorted((s for s in stops if s.status != "cancelled"), key=lambda s: (s.id or 0))
    inactive = sorted((s for s in stops if s.status == "cancelled"), key=lambda s: (s.sequence or 0, s.id or 0))
    return active, inactive


def resequence_route(route: Route) -> None:
    """Nearest-neighbour order for active stops; cancelled stops trail."""
    active, inactive = _split_stops(route)
    ordered = [stop for stop, _ in nearest_neighbour(_depot(), active, _stop_coords)]
    _apply_order(route, ordered, inactive)


# =============================================================================
# PLANNING
# =============================================================================

def _geocode_missing(addresses) -> None:
    geocoder = get_geocoder()
    for address in addresses:
        if address.has_coordinates:
            continue
        point = geocoder.geocode(address)
        if point is not None:
            address.latitude, address.longitude = point


def collect_due_work(org_id: int, route_date: date) -> list[WorkItem]:
    """Scheduled deliveries and eligible orders for the date that have no active stop."""
    delivery_has_stop = exists().where(
        RouteStop.subscription_delivery_id == SubscriptionDelivery.id,
        RouteStop.status != "cancelled",
    )
    deliveries = (
        db.session.query(SubscriptionDelivery)
        .join(Subscription, Subscription.id == SubscriptionDelivery.subscription_id)
        .filter(
            Subscription.org_id == org_id,
            SubscriptionDelivery.delivery_date == route_date,
            SubscriptionDelivery.status == "scheduled",
            ~delivery_has_stop,
        )
        .order_by(SubscriptionDelivery.id)
        .all()
    )

    order_has_stop = exists().where(
        RouteStop.order_id == Order.id,
        RouteStop.status != "cancelled",
    )
    orders = (
        db.session.query(Order)
        .filter(
            Order.org_id == org_id,
            Order.delivery_date == route_date,
            Order.status.in_(ELIGIBLE_ORDER_STATUSES),
            ~order_has_stop,
        )
        .order_by(Order.id)
        .all()
    )

    work = [
        WorkItem(
            stop_type="subscription",
            target=d,
            user_id=d.user_id,
            address=d.address,
            delivery_items=delivery_items_for_delivery(d),
            total_cents=d.total_cents,
        )
        for d in deliveries
    ]
    work.extend(
        WorkItem(
            stop_type="order",
            target=o,
            user_id=o.user_id,
            address=o.address,
            delivery_items=delivery_items_for_order(o),
            total_cents=o.total_cents,
        )
        for o in orders
    )
    _geocode_missing({item.address.id: item.address for item in work}.values())
    return work


def _open_agents(org_id: int, route_date: date, agent_ids: list[int] | None) -> list[tuple[User, Route | None]]:
    query = db.session.query(User).filter(
        User.org_id == org_id,
        User.role == "agent",
        User.status == "active",
    )
    if agent_ids is not None:
        query = query.filter(User.id.in_(agent_ids))
    agents = query.order_by(User.id).all()

    if agent_ids is not None:
        missing = set(agent_ids) - {a.id for a in agents}
        if missing:
            raise ValidationError(
                f"Not active agents in this organization: {', '.join(str(i) for i in sorted(missing))}"
            )

    open_agents = []
    for agent in agents:
        route = lock_for_update(
            db.session.query(Route).filter_by(agent_id=agent.id, route_date=route_date)
        ).first()
        if route is None or route.status == "planned":
            open_agents.append((agent, route))
        else:
            current_app.logger.info(
                "Agent %s skipped for %s: route %s is %s", agent.id, route_date, route.id, route.status
            )
    return open_agents


def _new_route(org_id: int, agent: User, route_date: date) -> Route:
    route = Route(
        org_id=org_id,
        agent_id=agent.id,
        route_date=route_date,
        route_name=f"{agent.full_name or agent.phone} - {route_date.isoformat()}",
        status="planned",
        total_distance_km=0.0,
        estimated_duration_minutes=0,
        depot_location={
            "latitude": current_app.config["DEPOT_LATITUDE"],
            "longitude": current_app.config["DEPOT_LONGITUDE"],
            "address": current_app.config["DEPOT_ADDRESS"],
        },
    )
    db.session.add(route)
    return route


def _plan_once(org_id: int, route_date: date, agent_ids: list[int] | None) -> PlanningResult:
    result = PlanningResult(route_date=route_date)
    work = collect_due_work(org_id, route_date)
    if not work:
        return result

    agents = _open_agents(org_id, route_date, agent_ids)
    if not agents:
        result.unassigned = [
            UnassignedDelivery(item.stop_type, item.target.id, item.zone, "no_available_agent")
            for item in work
        ]
        current_app.logger.warning(
            "No available agent for org %s on %s: %s stops left unassigned",
            org_id,
            route_date,
            len(work),
        )
        return result

    zones: dict[str, list[WorkItem]] = defaultdict(list)
    for item in work:
        zones[item.zone].append(item)

    loads = {}
    for agent, route in agents:
        loads[agent.id] = 0 if route is None else sum(1 for s in route.stops if s.status != "cancelled")

    assignments: dict[int, list[WorkItem]] = defaultdict(list)
    for zone in sorted(zones, key=lambda z: (-len(zones[z]), z)):
        agent, _ = min(agents, key=lambda pair: (loads[pair[0].id], pair[0].id))
        assignments[agent.id].extend(zones[zone])
        loads[agent.id] += len(zones[zone])

    for agent, route in agents:
        items = assignments.get(agent.id)
        if not items:
            continue
        if route is None:
            route = _new_route(org_id, agent, route_date)
        for item in items:
            stop = RouteStop(
                sequence=0,
                stop_type=item.stop_type,
                subscription_delivery_id=item.target.id if item.stop_type == "subscription" else None,
                order_id=item.target.id if item.stop_type == "order" else None,
                user_id=item.user_id,
                address_id=item.address.id,
                address=item.address,
                delivery_items=item.delivery_items,
                total_cents=item.total_cents,
                status="pending",
            )
            route.stops.append(stop)
            if item.stop_type == "subscription":
                item.target.agent_id = agent.id
        db.session.flush()
        resequence_route(route)
        result.routes.append(route)
        result.assigned_count += len(items)

    db.session.flush()
    for route in result.routes:
        event_service.record_event(
            org_id=org_id,
            event_type="route.planned",
            entity_type="route",
            entity_id=route.id,
            user_id=route.agent_id,
            payload={"route_date": route_date.isoformat(), "stops": len(route.stops)},
        )
    return result


def plan_routes(org_id: int, route_date: date, agent_ids: list[int] | None = None) -> PlanningResult:
    """
    Plan (or extend) the routes for a date and commit.

    Re-running is safe: already-placed work is not planned twice.
    """
    def _op() -> PlanningResult:
        try:
            result = _plan_once(org_id, route_date, agent_ids)
            db.session.commit()
        except IntegrityError:
            # A concurrent run placed some of the same work; replay against its rows.
            db.session.rollback()
            current_app.logger.info("Concurrent route planning for org %s on %s; replaying", org_id, route_date)
            result = _plan_once(org_id, route_date, agent_ids)
            db.session.commit()
        return result

    result = run_with_retry(_op)
    current_app.logger.info(
        "Planned org %s on %s: %s stops on %s routes, %s unassigned",
        org_id,
        route_date,
        result.assigned_count,
        len(result.routes),
        len(result.unassigned),
    )
    return result


# =============================================================================
# MUTATION AFTER PLANNING
# =============================================================================

def _get_route(org_id: int, route_id: int, *, lock: bool = False) -> Route:
    query = db.session.query(Route).filter_by(id=route_id, org_id=org_id)
    if lock:
        query = lock_for_update(query)
    route = query.first()
    if route is None:
        raise NotFoundError(f"Route {route_id} not found")
    return route


def _require_planned(route: Route) -> None:
    if route.status != "planned":
        raise RouteLocked(f"Route {route.id} is {route.status}; its stops can no longer be changed")


def move_stop(org_id: int, stop_id: int, target_route_id: int, sequence: int | None = None) -> RouteStop:
    """
    Move a pending stop to another planned route (or position) of the same date.

    Raises RouteLocked when either route has left 'planned'.
    """
    def _op() -> RouteStop:
        stop = db.session.get(RouteStop, stop_id)
        if stop is None or stop.route.org_id != org_id:
            raise NotFoundError(f"Route stop {stop_id} not found")

        source = _get_route(org_id, stop.route_id, lock=True)
        target = _get_route(org_id, target_route_id, lock=True)
        _require_planned(source)
        _require_planned(target)

        if stop.status != "pending":
            raise ValidationError(f"Only pending stops can be moved (stop is {stop.status})")
        if source.route_date != target.route_date:
            raise ValidationError("Stops can only move between routes of the same date")
        if sequence is not None and sequence < 1:
            raise ValidationError("sequence must be >= 1")

        if source.id != target.id:
            stop.route = target
            if stop.subscription_delivery is not None:
                stop.subscription_delivery.agent_id = target.agent_id
            resequence_route(source)

        if sequence is None:
            resequence_route(target)
        else:
            active, inactive = _split_stops(target, exclude=stop)
            ordered = [s for s, _ in nearest_neighbour(_depot(), active, _stop_coords)]
            ordered.insert(min(sequence, len(ordered) + 1) - 1, stop)
            _apply_order(target, ordered, inactive)

        event_service.record_event(
            org_id=org_id,
            event_type="route_stop.moved",
            entity_type="route_stop",
            entity_id=stop.id,
            user_id=stop.user_id,
            payload={"from_route_id": source.id, "to_route_id": target.id, "sequence": stop.sequence},
        )
        db.session.commit()
        return stop

    return run_with_retry(_op)


def cancel_route(org_id: int, route_id: int, reason: str | None = None) -> Route:
    """Cancel a planned route; its pending stops are released for replanning."""
    def _op() -> Route:
        route = _get_route(org_id, route_id, lock=True)
        lifecycle_service.require_transition("route", route.status, "cancelled")

        for stop in route.stops:
            if stop.status == "pending":
                stop.status = "cancelled"
                if stop.subscription_delivery is not None:
                    stop.subscription_delivery.agent_id = None
        route.status = "cancelled"
        if reason:
            route.notes = reason
        resequence_route(route)

        event_service.record_event(
            org_id=org_id,
            event_type="route.cancelled",
            entity_type="route",
            entity_id=route.id,
            user_id=route.agent_id,
            payload={"reason": reason},
        )
        db.session.commit()
        return route

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def list_routes(org_id: int, route_date: date | None = None, status: str | None = None) -> list[Route]:
    query = db.session.query(Route).filter(Route.org_id == org_id)
    if route_date is not None:
        query = query.filter(Route.route_date == route_date)
    if status:
        query = query.filter(Route.status == status)
    return query.order_by(Route.route_date.desc(), Route.id).all()


def get_agent_route(agent_id: int, route_date: date) -> Route | None:
    return db.session.query(Route).filter_by(agent_id=agent_id, route_date=route_date).first()


def get_agent_deliveries(agent_id: int, route_date: date) -> list[SubscriptionDelivery]:
    return (
        db.session.query(SubscriptionDelivery)
        .filter(
            SubscriptionDelivery.agent_id == agent_id,
            SubscriptionDelivery.delivery_date == route_date,
        )
        .order_by(SubscriptionDelivery.id)
        .all()
    )
