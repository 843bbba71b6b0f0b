# Overview: Pytest coverage for delivery materialization and subscription lifecycle effects.

"""
Materializer Tests

Subscriptions are built directly with fixed dates and materialized with an
explicit as_of so the expected calendar is deterministic. 2026-03-01 is a
Sunday.
"""

from datetime import date, timedelta

import pytest
from dairy.extensions import db
from dairy.models import DomainEvent, Subscription, SubscriptionDelivery
from dairy.services import materializer_service, subscription_service
from dairy.time_utils import today
from dairy.validation import ConflictError, NotFoundError, ValidationError


AS_OF = date(2026, 3, 1)
WINDOW_END = date(2026, 3, 14)


def _subscription(customer, address, product, **overrides):
    fields = dict(
        org_id=customer.org_id,
        user_id=customer.id,
        product_id=product.id,
        address_id=address.id,
        default_quantity=1,
        billing_cycle="weekly",
        delivery_days=[1, 3],
        start_date=AS_OF,
        payment_mode=customer.payment_mode,
        status="active",
    )
    fields.update(overrides)
    subscription = Subscription(**fields)
    db.session.add(subscription)
    db.session.commit()
    return subscription


def _materialize(subscription, date_from=AS_OF, date_to=WINDOW_END, as_of=AS_OF):
    return materializer_service.materialize_subscription(
        subscription.id, date_from, date_to, as_of=as_of
    )


def _rows(subscription, status=None):
    query = db.session.query(SubscriptionDelivery).filter_by(subscription_id=subscription.id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(SubscriptionDelivery.delivery_date).all()


# ============================================================================
# MATERIALIZATION
# ============================================================================

class TestMaterialize:
    """Row creation and idempotency."""

    def test_weekly_rows_created_with_snapshot(self, customer, address, milk):
        sub = _subscription(customer, address, milk, default_quantity=2)

        result = _materialize(sub)

        assert result.created == 4
        rows = _rows(sub)
        assert [r.delivery_date for r in rows] == [
            date(2026, 3, 2), date(2026, 3, 4), date(2026, 3, 9), date(2026, 3, 11),
        ]
        for row in rows:
            assert row.status == "scheduled"
            assert row.quantity == 2
            assert row.unit_price_cents == 3000
            assert row.total_cents == 6000
            assert row.address_id == address.id

    def test_rerun_is_a_no_op(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        _materialize(sub)

        result = _materialize(sub)

        assert result.created == 0
        assert result.unchanged == 4
        assert len(_rows(sub)) == 4

    def test_scheduled_event_per_new_row(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        _materialize(sub)
        _materialize(sub)

        events = db.session.query(DomainEvent).filter_by(event_type="delivery.scheduled").count()
        assert events == 4

    def test_past_dates_never_created(self, customer, address, milk):
        sub = _subscription(customer, address, milk)

        result = _materialize(sub, as_of=date(2026, 3, 10))

        assert result.created == 1
        assert [r.delivery_date for r in _rows(sub)] == [date(2026, 3, 11)]

    def test_end_date_bounds_rows(self, customer, address, milk):
        sub = _subscription(customer, address, milk, billing_cycle="daily", delivery_days=[], end_date=date(2026, 3, 3))

        result = _materialize(sub)

        assert result.created == 3

    def test_inactive_product_skipped(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        milk.status = "inactive"
        db.session.commit()

        result = _materialize(sub)

        assert result.skipped == 1
        assert _rows(sub) == []

    def test_materialize_all_counts_every_subscription(self, org, customer, address, milk, postpaid_customer, postpaid_address):
        _subscription(customer, address, milk)
        _subscription(postpaid_customer, postpaid_address, milk, billing_cycle="daily", delivery_days=[])
        _subscription(customer, address, milk, status="paused")

        result = materializer_service.materialize_all(org.id, AS_OF, WINDOW_END, as_of=AS_OF)

        assert result.created == 4 + 14
        assert result.failed == 0


# ============================================================================
# CONCURRENT RUNS
# ============================================================================

def _losing_race(times, original=materializer_service._materialize_once):
    """Stand-in for _materialize_once that loses the insert race `times` times first."""
    calls = []

    def _run(subscription_id, date_from, date_to, as_of):
        calls.append(subscription_id)
        if len(calls) <= times:
            raise materializer_service.DuplicateDelivery(f"Subscription {subscription_id} raced")
        return original(subscription_id, date_from, date_to, as_of)

    _run.calls = calls
    return _run


class TestConcurrentRuns:
    """A lost insert race is replayed; a run that keeps losing is a conflict."""

    def test_lost_race_is_replayed(self, monkeypatch, customer, address, milk):
        sub = _subscription(customer, address, milk)
        racing = _losing_race(1)
        monkeypatch.setattr(materializer_service, "_materialize_once", racing)

        result = _materialize(sub)

        assert len(racing.calls) == 2
        assert result.created == 4
        assert len(_rows(sub)) == 4

    def test_replays_are_bounded(self, monkeypatch, customer, address, milk):
        sub = _subscription(customer, address, milk)
        racing = _losing_race(100)
        monkeypatch.setattr(materializer_service, "_materialize_once", racing)

        with pytest.raises(ConflictError):
            _materialize(sub)

        assert len(racing.calls) == materializer_service.MAX_REPLAYS + 1
        assert _rows(sub) == []

    def test_batch_counts_conflict_and_continues(self, monkeypatch, org, customer, address, milk, postpaid_customer, postpaid_address):
        racing_sub = _subscription(customer, address, milk)
        other_sub = _subscription(postpaid_customer, postpaid_address, milk)
        original = materializer_service._materialize_once

        def _run(subscription_id, date_from, date_to, as_of):
            if subscription_id == racing_sub.id:
                raise materializer_service.DuplicateDelivery("raced")
            return original(subscription_id, date_from, date_to, as_of)

        monkeypatch.setattr(materializer_service, "_materialize_once", _run)

        result = materializer_service.materialize_all(org.id, AS_OF, WINDOW_END, as_of=AS_OF)

        assert result.failed == 1
        assert result.created == 4
        assert len(_rows(other_sub)) == 4


# ============================================================================
# RE-RUNS AFTER CHANGES
# ============================================================================

class TestScheduleChanges:
    """Future scheduled rows follow the subscription."""

    def test_quantity_change_refreshes_but_keeps_price(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        _materialize(sub)

        sub.default_quantity = 3
        milk.price_cents = 3500
        db.session.commit()
        result = _materialize(sub)

        assert result.refreshed == 4
        for row in _rows(sub):
            assert row.unit_price_cents == 3000
            assert row.total_cents == 9000

    def test_address_change_refreshes(self, customer, address, milk, make_address):
        sub = _subscription(customer, address, milk)
        _materialize(sub)
        work = make_address(customer, pincode="641003", area="Peelamedu")

        sub.address_id = work.id
        db.session.commit()
        _materialize(sub)

        assert {r.address_id for r in _rows(sub)} == {work.id}

    def test_dropped_dates_cancelled_then_reinstated(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        _materialize(sub)

        sub.delivery_days = [1]
        db.session.commit()
        result = _materialize(sub)

        assert result.cancelled == 2
        cancelled = _rows(sub, "cancelled")
        assert {r.delivery_date for r in cancelled} == {date(2026, 3, 4), date(2026, 3, 11)}
        assert {r.cancel_reason for r in cancelled} == {"schedule_changed"}

        sub.delivery_days = [1, 3]
        db.session.commit()
        result = _materialize(sub)

        assert result.reinstated == 2
        assert len(_rows(sub, "scheduled")) == 4

    def test_delivered_rows_untouched(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        _materialize(sub)
        first = _rows(sub)[0]
        first.status = "delivered"
        db.session.commit()

        sub.default_quantity = 5
        db.session.commit()
        _materialize(sub)

        db.session.refresh(first)
        assert first.status == "delivered"
        assert first.quantity == 1

    def test_paused_subscription_cancels_future_rows(self, customer, address, milk):
        sub = _subscription(customer, address, milk)
        _materialize(sub)

        sub.status = "paused"
        db.session.commit()
        result = _materialize(sub)

        assert result.cancelled == 4
        assert {r.cancel_reason for r in _rows(sub)} == {"subscription_paused"}


# ============================================================================
# SUBSCRIPTION SERVICE
# ============================================================================

class TestSubscriptionLifecycle:
    """create/pause/resume/cancel keep the materialized horizon in step."""

    def _create_daily(self, customer, address, milk):
        return subscription_service.create_subscription(customer.id, {
            "product_id": milk.id,
            "address_id": address.id,
            "billing_cycle": "daily",
        })

    def test_create_materializes_horizon(self, customer, address, milk):
        sub = self._create_daily(customer, address, milk)

        rows = _rows(sub)
        assert len(rows) == 15
        assert rows[0].delivery_date == today()
        assert rows[-1].delivery_date == today() + timedelta(days=14)
        assert sub.payment_mode == "prepaid"

    def test_create_rejects_past_start(self, customer, address, milk):
        with pytest.raises(ValidationError):
            subscription_service.create_subscription(customer.id, {
                "product_id": milk.id,
                "address_id": address.id,
                "billing_cycle": "daily",
                "start_date": (today() - timedelta(days=1)).isoformat(),
            })

    def test_create_rejects_one_off_product(self, customer, address, ghee):
        with pytest.raises(ValidationError):
            subscription_service.create_subscription(customer.id, {
                "product_id": ghee.id,
                "address_id": address.id,
                "billing_cycle": "daily",
            })

    def test_create_rejects_monthly_day_29(self, customer, address, milk):
        with pytest.raises(ValidationError):
            subscription_service.create_subscription(customer.id, {
                "product_id": milk.id,
                "address_id": address.id,
                "billing_cycle": "monthly",
                "delivery_days": [29],
            })

    def test_pause_then_resume_reinstates(self, customer, address, milk):
        sub = self._create_daily(customer, address, milk)

        subscription_service.pause_subscription(sub.id, user_id=customer.id)
        assert len(_rows(sub, "scheduled")) == 0
        assert len(_rows(sub, "cancelled")) == 15

        subscription_service.resume_subscription(sub.id, user_id=customer.id)
        assert sub.status == "active"
        assert len(_rows(sub, "scheduled")) == 15
        assert {r.cancel_reason for r in _rows(sub)} == {None}

    def test_cancel_is_final(self, customer, address, milk):
        sub = self._create_daily(customer, address, milk)

        subscription_service.cancel_subscription(sub.id, user_id=customer.id)
        assert {r.cancel_reason for r in _rows(sub)} == {"subscription_cancelled"}

        with pytest.raises(ConflictError):
            subscription_service.update_subscription(sub.id, {"status": "active"}, user_id=customer.id)

    def test_update_quantity_reaches_future_rows(self, customer, address, milk):
        sub = self._create_daily(customer, address, milk)

        subscription_service.update_subscription(sub.id, {"default_quantity": 2}, user_id=customer.id)

        assert {r.quantity for r in _rows(sub)} == {2}

    def test_other_customer_cannot_see_subscription(self, customer, address, milk, postpaid_customer):
        sub = self._create_daily(customer, address, milk)

        with pytest.raises(NotFoundError):
            subscription_service.get_subscription(sub.id, user_id=postpaid_customer.id)
