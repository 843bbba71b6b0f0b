# Overview: Pytest coverage for the status state machines.

import pytest
from dairy.services import lifecycle_service
from dairy.services.lifecycle_service import InvalidStatusTransition


class TestDeliveryMachine:

    @pytest.mark.parametrize(
        "src,dst",
        [
            ("scheduled", "picked_up"),
            ("picked_up", "in_transit"),
            ("in_transit", "delivered"),
            ("in_transit", "failed"),
            ("scheduled", "cancelled"),
        ],
    )
    def test_legal(self, src, dst):
        assert lifecycle_service.can_transition("delivery", src, dst)

    @pytest.mark.parametrize(
        "src,dst",
        [
            ("scheduled", "delivered"),
            ("delivered", "scheduled"),
            ("cancelled", "scheduled"),
            ("failed", "delivered"),
            ("in_transit", "cancelled"),
        ],
    )
    def test_illegal(self, src, dst):
        with pytest.raises(InvalidStatusTransition):
            lifecycle_service.require_transition("delivery", src, dst)

    def test_unknown_status(self):
        with pytest.raises(InvalidStatusTransition) as exc:
            lifecycle_service.require_transition("delivery", "scheduled", "lost")
        assert "Invalid delivery status" in str(exc.value)

    def test_path_walks_each_step(self):
        assert lifecycle_service.transition_path("delivery", "scheduled", "delivered") == [
            "picked_up", "in_transit", "delivered",
        ]

    def test_path_to_self_is_empty(self):
        assert lifecycle_service.transition_path("delivery", "in_transit", "in_transit") == []

    def test_path_out_of_terminal_rejected(self):
        with pytest.raises(InvalidStatusTransition):
            lifecycle_service.transition_path("delivery", "delivered", "failed")


class TestOtherMachines:

    def test_route_stop_missed_only_from_in_transit(self):
        assert not lifecycle_service.can_transition("route_stop", "pending", "missed")
        assert lifecycle_service.transition_path("route_stop", "pending", "missed") == ["in_transit", "missed"]

    def test_route_cannot_cancel_once_started(self):
        assert not lifecycle_service.can_transition("route", "in_progress", "cancelled")

    def test_order_flow(self):
        assert lifecycle_service.transition_path("order", "pending", "out_for_delivery") == [
            "confirmed", "processing", "out_for_delivery",
        ]
        assert not lifecycle_service.can_transition("order", "delivered", "refunded")

    def test_subscription_cancel_is_final(self):
        assert lifecycle_service.can_transition("subscription", "paused", "cancelled")
        assert not lifecycle_service.can_transition("subscription", "cancelled", "active")

    def test_paid_invoice_can_reopen(self):
        assert lifecycle_service.can_transition("invoice", "paid", "sent")
        assert not lifecycle_service.can_transition("invoice", "paid", "overdue")

    def test_terminal_statuses(self):
        machine = lifecycle_service.get_machine("route_stop")
        assert {s for s in machine.statuses if machine.is_terminal(s)} == {"delivered", "missed", "cancelled"}

    def test_unknown_machine(self):
        with pytest.raises(ValueError):
            lifecycle_service.get_machine("invoice_line")
