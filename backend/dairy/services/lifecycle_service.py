# Overview: Status state machines for deliveries, stops, routes, orders, subscriptions, invoices and payments.

"""
Status Lifecycle Service

================================================================================
PURPOSE: One place that knows which status changes are legal
================================================================================

STATE MACHINES:

    SubscriptionDelivery:
        scheduled -> picked_up -> in_transit -> delivered
        scheduled | picked_up | in_transit -> failed
        scheduled -> cancelled

    RouteStop:
        pending -> in_transit -> delivered | missed | cancelled
        pending -> cancelled

    Route:
        planned -> in_progress -> completed
        planned -> cancelled

    Order:
        pending -> confirmed -> processing -> out_for_delivery -> delivered
        any non-terminal -> cancelled | refunded

    Subscription:
        active <-> paused
        active | paused -> cancelled

    Invoice:
        draft -> sent -> paid | overdue | cancelled
        overdue -> paid
        paid -> sent        (a refund re-opens the balance)
        draft -> cancelled

    Payment:
        pending -> completed | failed
        completed -> refunded

RULES:
1. Cannot skip states (scheduled -> delivered is rejected)
2. Terminal states have no outgoing transitions
3. Same-state requests are rejected; callers decide whether a repeat is a no-op
4. Walking several legal steps at once goes through transition_path()

The only sanctioned bypass is the admin corrective override in
fulfillment_service, which is logged and recorded as a domain event.
================================================================================
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass


class InvalidStatusTransition(ValueError):
    """
    Raised when an illegal status change is attempted.

    This is a domain error surfaced to the caller as a 400.
    """

    def __init__(self, entity: str, from_status: str, to_status: str, message: str | None = None):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Cannot change {entity} status from '{from_status}' to '{to_status}'"
        )


@dataclass(frozen=True)
class StateMachine:
    name: str
    statuses: frozenset
    transitions: frozenset
    terminal: frozenset

    def validate_status(self, status: str) -> None:
        if status not in self.statuses:
            raise InvalidStatusTransition(
                self.name,
                status,
                status,
                f"Invalid {self.name} status '{status}'. Must be one of: {', '.join(sorted(self.statuses))}",
            )

    def can_transition(self, from_status: str, to_status: str) -> bool:
        if from_status not in self.statuses or to_status not in self.statuses:
            return False
        return (from_status, to_status) in self.transitions

    def require(self, from_status: str, to_status: str) -> None:
        self.validate_status(to_status)
        if not self.can_transition(from_status, to_status):
            raise InvalidStatusTransition(self.name, from_status, to_status)

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal

    def path(self, from_status: str, to_status: str) -> list[str] | None:
        """
        Shortest chain of legal steps from from_status to to_status,
        excluding from_status. [] when already there, None when unreachable.
        """
        if from_status == to_status:
            return []
        queue = deque([(from_status, [])])
        seen = {from_status}
        while queue:
            current, steps = queue.popleft()
            for src, dst in sorted(self.transitions):
                if src != current or dst in seen:
                    continue
                if dst == to_status:
                    return steps + [dst]
                seen.add(dst)
                queue.append((dst, steps + [dst]))
        return None


def _machine(name: str, transitions: set[tuple[str, str]], terminal: set[str]) -> StateMachine:
    statuses = {s for pair in transitions for s in pair} | set(terminal)
    return StateMachine(
        name=name,
        statuses=frozenset(statuses),
        transitions=frozenset(transitions),
        terminal=frozenset(terminal),
    )


DELIVERY = _machine(
    "delivery",
    {
        ("scheduled", "picked_up"),
        ("picked_up", "in_transit"),
        ("in_transit", "delivered"),
        ("scheduled", "failed"),
        ("picked_up", "failed"),
        ("in_transit", "failed"),
        ("scheduled", "cancelled"),
    },
    {"delivered", "failed", "cancelled"},
)

ROUTE_STOP = _machine(
    "route_stop",
    {
        ("pending", "in_transit"),
        ("pending", "cancelled"),
        ("in_transit", "delivered"),
        ("in_transit", "missed"),
        ("in_transit", "cancelled"),
    },
    {"delivered", "missed", "cancelled"},
)

ROUTE = _machine(
    "route",
    {
        ("planned", "in_progress"),
        ("in_progress", "completed"),
        ("planned", "cancelled"),
    },
    {"completed", "cancelled"},
)

_ORDER_FLOW = ["pending", "confirmed", "processing", "out_for_delivery", "delivered"]

ORDER = _machine(
    "order",
    {(a, b) for a, b in zip(_ORDER_FLOW, _ORDER_FLOW[1:])}
    | {(s, "cancelled") for s in _ORDER_FLOW[:-1]}
    | {(s, "refunded") for s in _ORDER_FLOW[:-1]},
    {"delivered", "cancelled", "refunded"},
)

SUBSCRIPTION = _machine(
    "subscription",
    {
        ("active", "paused"),
        ("paused", "active"),
        ("active", "cancelled"),
        ("paused", "cancelled"),
    },
    {"cancelled"},
)

INVOICE = _machine(
    "invoice",
    {
        ("draft", "sent"),
        ("sent", "paid"),
        ("sent", "overdue"),
        ("sent", "cancelled"),
        ("overdue", "paid"),
        ("paid", "sent"),
        ("draft", "cancelled"),
    },
    {"cancelled"},
)

PAYMENT = _machine(
    "payment",
    {
        ("pending", "completed"),
        ("pending", "failed"),
        ("completed", "refunded"),
    },
    {"failed", "refunded"},
)

MACHINES = {
    m.name: m
    for m in (DELIVERY, ROUTE_STOP, ROUTE, ORDER, SUBSCRIPTION, INVOICE, PAYMENT)
}


def get_machine(name: str) -> StateMachine:
    try:
        return MACHINES[name]
    except KeyError:
        raise ValueError(f"Unknown state machine '{name}'")


def can_transition(machine: str, from_status: str, to_status: str) -> bool:
    return get_machine(machine).can_transition(from_status, to_status)


def require_transition(machine: str, from_status: str, to_status: str) -> None:
    get_machine(machine).require(from_status, to_status)


def transition_path(machine: str, from_status: str, to_status: str) -> list[str]:
    """
    Legal steps to walk from from_status to to_status.

    Raises InvalidStatusTransition when to_status is unreachable.
    """
    m = get_machine(machine)
    m.validate_status(to_status)
    steps = m.path(from_status, to_status)
    if steps is None:
        raise InvalidStatusTransition(machine, from_status, to_status)
    return steps
