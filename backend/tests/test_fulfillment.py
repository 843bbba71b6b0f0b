# Overview: Pytest coverage for agent execution, stop/delivery mirroring, prepaid charging and admin overrides.

import pytest
from dairy.extensions import db
from dairy.models import DomainEvent, LedgerEntry
from dairy.services import billing_service, event_service, fulfillment_service, ledger_service, order_service, route_planner_service
from dairy.services.lifecycle_service import InvalidStatusTransition
from dairy.validation import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def planned_delivery(org, agent, customer, address, milk, tomorrow, schedule_delivery):
    """Prepaid milk delivery tomorrow, planned onto the agent's route."""
    delivery = schedule_delivery(customer, address, milk, tomorrow)
    route_planner_service.plan_routes(org.id, tomorrow, agent_ids=[agent.id])
    return delivery


def _stop_for(delivery):
    return route_planner_service.active_stop_for(subscription_delivery_id=delivery.id)


def _event_types(entity_type, entity_id):
    return [
        e.event_type
        for e in db.session.query(DomainEvent)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(DomainEvent.id)
    ]


# ============================================================================
# STOP UPDATES
# ============================================================================

class TestStopUpdates:
    """Agent reports per stop; the target follows."""

    def test_delivered_stop_walks_delivery_and_completes_route(self, agent, customer, planned_delivery, tomorrow):
        stop = _stop_for(planned_delivery)

        fulfillment_service.update_stop(agent.id, stop.id, "delivered", customer_rating=5)

        assert stop.status == "delivered"
        assert stop.customer_rating == 5
        assert planned_delivery.status == "delivered"
        assert planned_delivery.delivered_at is not None
        assert _event_types("subscription_delivery", planned_delivery.id)[-3:] == [
            "delivery.picked_up", "delivery.in_transit", "delivery.delivered",
        ]
        route = route_planner_service.get_agent_route(agent.id, tomorrow)
        assert route.status == "completed"
        assert route.start_time is not None and route.end_time is not None

    def test_prepaid_delivery_debited_with_tax(self, agent, customer, planned_delivery):
        fulfillment_service.update_stop(agent.id, _stop_for(planned_delivery).id, "delivered")

        assert ledger_service.get_balance(customer.id) == 3150
        assert planned_delivery.charged_at is not None
        entry = db.session.query(LedgerEntry).filter_by(subscription_delivery_id=planned_delivery.id).one()
        assert entry.entry_type == "debit"
        assert entry.details == {"subtotal_cents": 3000, "tax_cents": 150}

    def test_missed_stop_fails_delivery(self, agent, planned_delivery):
        stop = _stop_for(planned_delivery)

        fulfillment_service.update_stop(agent.id, stop.id, "missed", delivery_notes="Gate locked")

        assert stop.status == "missed"
        assert stop.delivery_notes == "Gate locked"
        assert planned_delivery.status == "failed"

    def test_in_transit_stop_starts_route(self, agent, planned_delivery, tomorrow):
        fulfillment_service.update_stop(agent.id, _stop_for(planned_delivery).id, "in_transit")

        assert route_planner_service.get_agent_route(agent.id, tomorrow).status == "in_progress"
        assert planned_delivery.status == "in_transit"

    def test_other_agent_cannot_update(self, second_agent, planned_delivery):
        with pytest.raises(NotFoundError):
            fulfillment_service.update_stop(second_agent.id, _stop_for(planned_delivery).id, "delivered")

    def test_rating_out_of_range(self, agent, planned_delivery):
        with pytest.raises(ValidationError):
            fulfillment_service.update_stop(agent.id, _stop_for(planned_delivery).id, "delivered", customer_rating=6)

    def test_terminal_stop_cannot_change(self, agent, planned_delivery):
        stop = _stop_for(planned_delivery)
        fulfillment_service.update_stop(agent.id, stop.id, "delivered")

        with pytest.raises(InvalidStatusTransition):
            fulfillment_service.update_stop(agent.id, stop.id, "missed")


# ============================================================================
# DELIVERY UPDATES
# ============================================================================

class TestDeliveryUpdates:
    """Agent reports per delivery; the stop follows."""

    def test_shortcut_to_delivered_rejected(self, agent, planned_delivery):
        with pytest.raises(InvalidStatusTransition):
            fulfillment_service.update_delivery(agent.id, planned_delivery.id, "delivered")
        assert planned_delivery.status == "scheduled"

    def test_step_by_step(self, agent, planned_delivery, tomorrow):
        stop = _stop_for(planned_delivery)

        fulfillment_service.update_delivery(agent.id, planned_delivery.id, "picked_up")
        assert stop.status == "pending"

        fulfillment_service.update_delivery(agent.id, planned_delivery.id, "in_transit")
        assert stop.status == "in_transit"

        fulfillment_service.update_delivery(
            agent.id,
            planned_delivery.id,
            "delivered",
            proof_type="otp",
            proof_data="4821",
            customer_feedback="On time",
        )
        assert planned_delivery.proof_type == "otp"
        assert planned_delivery.customer_feedback == "On time"
        assert stop.status == "delivered"
        assert route_planner_service.get_agent_route(agent.id, tomorrow).status == "completed"

    def test_failed_delivery_misses_stop(self, agent, planned_delivery):
        fulfillment_service.update_delivery(agent.id, planned_delivery.id, "failed", delivery_notes="Not home")

        stop = _stop_for(planned_delivery)
        assert stop.status == "missed"
        assert stop.delivery_notes == "Not home"

    def test_unassigned_delivery_hidden(self, agent, customer, address, milk, tomorrow, schedule_delivery):
        delivery = schedule_delivery(customer, address, milk, tomorrow)

        with pytest.raises(NotFoundError):
            fulfillment_service.update_delivery(agent.id, delivery.id, "picked_up")

    def test_bad_proof_type(self, agent, planned_delivery):
        with pytest.raises(ValidationError):
            fulfillment_service.update_delivery(agent.id, planned_delivery.id, "picked_up", proof_type="video")


# ============================================================================
# ORDERS ON ROUTES
# ============================================================================

class TestOrderStops:
    """Order stops drive order status and prepaid charges."""

    def test_delivered_order_stop(self, org, agent, customer, address, ghee, tomorrow):
        order = order_service.create_order(
            customer.id, address_id=address.id, items=[{"product_id": ghee.id, "quantity": 1}]
        )
        route_planner_service.plan_routes(org.id, tomorrow)
        stop = route_planner_service.active_stop_for(order_id=order.id)

        fulfillment_service.update_stop(agent.id, stop.id, "delivered")

        assert order.status == "delivered"
        assert order.charged_at is not None
        assert ledger_service.get_balance(customer.id) == order.total_cents == 31250

    def test_missed_order_stop_leaves_order(self, org, agent, customer, address, ghee, tomorrow):
        order = order_service.create_order(
            customer.id, address_id=address.id, items=[{"product_id": ghee.id, "quantity": 1}]
        )
        route_planner_service.plan_routes(org.id, tomorrow)
        stop = route_planner_service.active_stop_for(order_id=order.id)

        fulfillment_service.update_stop(agent.id, stop.id, "missed")

        assert stop.status == "missed"
        assert order.status == "pending"
        assert order.charged_at is None
        assert ledger_service.get_balance(customer.id) == 0


# ============================================================================
# ADMIN OVERRIDE
# ============================================================================

class TestOverride:
    """Corrective status override."""

    def test_override_requires_reason(self, org, planned_delivery):
        with pytest.raises(ValidationError):
            fulfillment_service.override_delivery_status(org.id, planned_delivery.id, "delivered", reason=" ")

    def test_override_to_delivered(self, org, admin, customer, planned_delivery):
        fulfillment_service.override_delivery_status(
            org.id, planned_delivery.id, "delivered", reason="Confirmed by phone", actor_user_id=admin.id
        )

        assert planned_delivery.status == "delivered"
        assert _stop_for(planned_delivery).status == "delivered"
        assert ledger_service.get_balance(customer.id) == 3150
        event = db.session.query(DomainEvent).filter_by(event_type="delivery.override").one()
        assert event.payload["from_status"] == "scheduled"
        assert event.payload["actor_user_id"] == admin.id

    def test_override_charges_once(self, org, agent, customer, planned_delivery):
        fulfillment_service.update_stop(agent.id, _stop_for(planned_delivery).id, "delivered")
        fulfillment_service.override_delivery_status(org.id, planned_delivery.id, "failed", reason="Wrong house")
        fulfillment_service.override_delivery_status(org.id, planned_delivery.id, "delivered", reason="Found it")

        assert ledger_service.get_balance(customer.id) == 3150

    def test_override_away_from_delivered_credits_charge(self, org, agent, customer, planned_delivery):
        fulfillment_service.update_stop(agent.id, _stop_for(planned_delivery).id, "delivered")
        assert ledger_service.get_balance(customer.id) == 3150

        fulfillment_service.override_delivery_status(org.id, planned_delivery.id, "cancelled", reason="Never arrived")

        assert planned_delivery.status == "cancelled"
        assert planned_delivery.charged_at is None
        assert ledger_service.get_balance(customer.id) == 0
        entries = (
            db.session.query(LedgerEntry)
            .filter_by(subscription_delivery_id=planned_delivery.id)
            .order_by(LedgerEntry.sequence)
            .all()
        )
        assert [(e.entry_type, e.amount_cents) for e in entries] == [("debit", 3150), ("credit", 3150)]
        assert ledger_service.verify_ledger(customer.id) == 0

    def test_override_of_invoiced_delivery_rejected(
        self, org, postpaid_customer, postpaid_address, milk, tomorrow, schedule_delivery
    ):
        delivery = schedule_delivery(postpaid_customer, postpaid_address, milk, tomorrow)
        fulfillment_service.override_delivery_status(org.id, delivery.id, "delivered", reason="Confirmed by phone")
        invoice = billing_service.generate_invoice(postpaid_customer.id, tomorrow, tomorrow)
        assert delivery.invoice_id == invoice.id

        with pytest.raises(ConflictError):
            fulfillment_service.override_delivery_status(org.id, delivery.id, "failed", reason="Wrong house")

        db.session.refresh(delivery)
        assert delivery.status == "delivered"
        assert ledger_service.get_balance(postpaid_customer.id) == 0

    def test_override_other_org_hidden(self, other_org, planned_delivery):
        with pytest.raises(NotFoundError):
            fulfillment_service.override_delivery_status(
                other_org.id, planned_delivery.id, "delivered", reason="x"
            )


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class TestEventDispatch:
    """Pending domain events go to the push notifier once."""

    def test_dispatch_marks_events(self, notifier, agent, planned_delivery):
        fulfillment_service.update_stop(agent.id, _stop_for(planned_delivery).id, "delivered")

        first = event_service.dispatch_pending_events()
        second = event_service.dispatch_pending_events()

        assert first["dispatched"] > 0
        assert first["failed"] == 0
        assert second == {"dispatched": 0, "failed": 0}
        assert ("delivery.delivered", planned_delivery.id) in notifier.sent
