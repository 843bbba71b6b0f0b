# Overview: Pytest coverage for the ledger, invoices, payments, refunds and billing cycles.

"""
Billing Tests

Postpaid deliveries are marked delivered directly so invoices can be
generated for fixed past periods. 2026-03-02 is a Monday.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import update

from dairy.extensions import db
from dairy.models import LedgerEntry, Payment
from dairy.services import billing_service, ledger_service, order_service
from dairy.services.billing_service import PaymentError
from dairy.services.ledger_service import LedgerIntegrityError
from dairy.validation import ValidationError


DELIVERY_DAY = date(2026, 3, 4)


def _delivered(delivery):
    delivery.status = "delivered"
    db.session.commit()
    return delivery


@pytest.fixture
def postpaid_delivery(postpaid_customer, postpaid_address, milk, schedule_delivery):
    return _delivered(schedule_delivery(postpaid_customer, postpaid_address, milk, DELIVERY_DAY))


@pytest.fixture
def invoice(postpaid_customer, postpaid_delivery):
    return billing_service.generate_invoice(
        postpaid_customer.id, DELIVERY_DAY, DELIVERY_DAY, billing_cycle="weekly", as_of=date(2026, 3, 9)
    )


# ============================================================================
# TAX AND LEDGER
# ============================================================================

class TestTax:

    @pytest.mark.parametrize("amount,expected", [(3000, 150), (10, 1), (9, 0), (0, 0), (25000, 1250)])
    def test_half_up_at_five_percent(self, app, amount, expected):
        assert billing_service.compute_tax(amount) == expected

    def test_explicit_rate(self, app):
        assert billing_service.compute_tax(10000, rate_bps=1800) == 1800


class TestLedger:
    """Append-only running balance."""

    def test_running_balance(self, customer):
        ledger_service.append_entry(user_id=customer.id, entry_type="credit", amount_cents=10000, description="Topup")
        ledger_service.append_entry(user_id=customer.id, entry_type="debit", amount_cents=3150, description="Milk")
        db.session.commit()

        entries = ledger_service.list_entries(customer.id)
        assert [e.sequence for e in entries] == [2, 1]
        assert [e.running_balance_cents for e in entries] == [-6850, -10000]
        assert ledger_service.get_balance(customer.id) == -6850
        assert ledger_service.verify_ledger(customer.id) == -6850
        assert ledger_service.totals(customer.id) == {"debits_cents": 3150, "credits_cents": 10000}

    @pytest.mark.parametrize("entry_type,amount", [("debit", 0), ("credit", -5), ("adjustment", 100)])
    def test_invalid_entries(self, customer, entry_type, amount):
        with pytest.raises(ValidationError):
            ledger_service.append_entry(user_id=customer.id, entry_type=entry_type, amount_cents=amount, description="x")

    def test_tampered_balance_detected(self, customer, postpaid_customer):
        ledger_service.append_entry(user_id=customer.id, entry_type="debit", amount_cents=100, description="a")
        ledger_service.append_entry(user_id=customer.id, entry_type="debit", amount_cents=200, description="b")
        ledger_service.append_entry(user_id=postpaid_customer.id, entry_type="debit", amount_cents=50, description="c")
        db.session.commit()
        db.session.execute(
            update(LedgerEntry)
            .where(LedgerEntry.user_id == customer.id, LedgerEntry.sequence == 2)
            .values(running_balance_cents=999)
        )
        db.session.commit()

        with pytest.raises(LedgerIntegrityError) as exc:
            ledger_service.verify_ledger(customer.id)
        assert exc.value.sequence == 2
        assert exc.value.expected == 300

        assert ledger_service.verify_all(customer.org_id) == {"checked": 2, "broken": [customer.id]}


# ============================================================================
# PREPAID
# ============================================================================

class TestTopup:

    def test_topup_credits_balance(self, customer):
        payment = billing_service.topup_prepaid(customer.id, 50000, "upi", gateway_payment_id="pay_abc")

        assert payment.status == "completed"
        assert payment.reference_number == "PAY-000001"
        assert ledger_service.get_balance(customer.id) == -50000
        summary = billing_service.get_billing_summary(customer.id)
        assert summary["prepaid_credit_cents"] == 50000
        assert summary["outstanding_cents"] == 0

    def test_replayed_gateway_id_is_idempotent(self, customer):
        first = billing_service.topup_prepaid(customer.id, 50000, "upi", gateway_payment_id="pay_abc")
        second = billing_service.topup_prepaid(customer.id, 50000, "upi", gateway_payment_id="pay_abc")

        assert second.id == first.id
        assert ledger_service.get_balance(customer.id) == -50000

    def test_gateway_id_of_other_customer_rejected(self, customer, postpaid_customer):
        billing_service.topup_prepaid(customer.id, 50000, "upi", gateway_payment_id="pay_abc")

        with pytest.raises(PaymentError):
            billing_service.topup_prepaid(postpaid_customer.id, 50000, "upi", gateway_payment_id="pay_abc")

    @pytest.mark.parametrize("amount,method", [(0, "upi"), (-100, "upi"), (100, "cheque")])
    def test_invalid_topups(self, customer, amount, method):
        with pytest.raises(PaymentError):
            billing_service.topup_prepaid(customer.id, amount, method)
        assert db.session.query(Payment).count() == 0


# ============================================================================
# INVOICES
# ============================================================================

class TestInvoiceGeneration:

    def test_invoice_for_delivered_postpaid(self, postpaid_customer, postpaid_delivery, invoice):
        assert invoice.invoice_number == "INV-000001"
        assert invoice.status == "sent"
        assert invoice.subtotal_cents == 3000
        assert invoice.tax_cents == 150
        assert invoice.total_cents == 3150
        assert invoice.balance_cents == 3150
        assert invoice.due_date == date(2026, 3, 16)
        assert [line["reference_id"] for line in invoice.line_items] == [postpaid_delivery.id]
        assert postpaid_delivery.invoice_id == invoice.id
        assert ledger_service.get_balance(postpaid_customer.id) == 3150

    def test_no_double_billing(self, postpaid_customer, invoice):
        again = billing_service.generate_invoice(postpaid_customer.id, DELIVERY_DAY, DELIVERY_DAY)

        assert again is None
        assert ledger_service.get_balance(postpaid_customer.id) == 3150

    def test_undelivered_not_invoiced(self, postpaid_customer, postpaid_address, milk, schedule_delivery):
        schedule_delivery(postpaid_customer, postpaid_address, milk, DELIVERY_DAY)

        assert billing_service.generate_invoice(postpaid_customer.id, DELIVERY_DAY, DELIVERY_DAY) is None

    def test_prepaid_customer_not_invoiced(self, customer, address, milk, schedule_delivery):
        _delivered(schedule_delivery(customer, address, milk, DELIVERY_DAY))

        assert billing_service.generate_invoice(customer.id, DELIVERY_DAY, DELIVERY_DAY) is None

    def test_inverted_period_rejected(self, postpaid_customer):
        with pytest.raises(ValidationError):
            billing_service.generate_invoice(postpaid_customer.id, DELIVERY_DAY, DELIVERY_DAY - timedelta(days=1))

    def test_orders_are_not_taxed_twice(self, postpaid_customer, postpaid_address, milk, ghee, tomorrow, schedule_delivery):
        _delivered(schedule_delivery(postpaid_customer, postpaid_address, milk, tomorrow))
        order = order_service.create_order(
            postpaid_customer.id, address_id=postpaid_address.id, items=[{"product_id": ghee.id, "quantity": 1}]
        )
        for status in ("confirmed", "processing", "out_for_delivery", "delivered"):
            order_service.update_order_status(postpaid_customer.org_id, order.id, status)
        assert order.charged_at is None

        invoice = billing_service.generate_invoice(postpaid_customer.id, tomorrow, tomorrow)

        assert invoice.subtotal_cents == 3000 + 31250
        assert invoice.tax_cents == 150
        assert invoice.total_cents == 34400
        assert order.invoice_id == invoice.id


class TestBillingCycles:

    def test_cycle_periods(self):
        assert billing_service.cycle_period("weekly", date(2026, 3, 9)) == (date(2026, 3, 2), date(2026, 3, 8))
        assert billing_service.cycle_period("monthly", date(2026, 3, 15)) == (date(2026, 2, 1), date(2026, 2, 28))
        assert billing_service.cycle_period("monthly", date(2026, 1, 5)) == (date(2025, 12, 1), date(2025, 12, 31))
        with pytest.raises(ValidationError):
            billing_service.cycle_period("yearly", date(2026, 1, 5))

    def test_weekly_run(self, org, postpaid_customer, postpaid_delivery, customer, address, milk, schedule_delivery):
        _delivered(schedule_delivery(customer, address, milk, DELIVERY_DAY))

        result = billing_service.generate_cycle_invoices(org.id, "weekly", as_of=date(2026, 3, 9))

        assert result["period_start"] == "2026-03-02"
        assert result["period_end"] == "2026-03-08"
        assert len(result["generated"]) == 1
        assert result["failed"] == 0

        rerun = billing_service.generate_cycle_invoices(org.id, "weekly", as_of=date(2026, 3, 9))
        assert rerun["generated"] == []
        assert rerun["empty"] == 1

    def test_monthly_run_skips_weekly_subscribers(self, org, postpaid_delivery):
        result = billing_service.generate_cycle_invoices(org.id, "monthly", as_of=date(2026, 4, 1))

        assert result["generated"] == []
        assert result["empty"] == 0

    def test_each_run_bills_only_its_own_subscriptions(self, org, postpaid_customer, postpaid_address, milk,
                                                       postpaid_delivery, schedule_delivery):
        monthly_delivery = _delivered(schedule_delivery(postpaid_customer, postpaid_address, milk, DELIVERY_DAY))
        monthly_delivery.subscription.billing_cycle = "monthly"
        monthly_delivery.subscription.delivery_days = [DELIVERY_DAY.day]
        db.session.commit()

        weekly = billing_service.generate_cycle_invoices(org.id, "weekly", as_of=date(2026, 3, 9))

        assert len(weekly["generated"]) == 1
        weekly_invoice = billing_service.get_invoice(postpaid_customer.id, weekly["generated"][0])
        assert [item["reference_id"] for item in weekly_invoice.line_items] == [postpaid_delivery.id]
        assert weekly_invoice.total_cents == 3150
        assert monthly_delivery.invoice_id is None

        monthly = billing_service.generate_cycle_invoices(org.id, "monthly", as_of=date(2026, 4, 1))

        assert len(monthly["generated"]) == 1
        monthly_invoice = billing_service.get_invoice(postpaid_customer.id, monthly["generated"][0])
        assert [item["reference_id"] for item in monthly_invoice.line_items] == [monthly_delivery.id]
        assert monthly_invoice.billing_cycle == "monthly"


# ============================================================================
# PAYMENTS AND REFUNDS
# ============================================================================

class TestInvoicePayments:

    def test_partial_then_full(self, postpaid_customer, invoice):
        billing_service.pay_invoice(postpaid_customer.id, invoice.id, "cash", amount_cents=1000)
        assert invoice.status == "sent"
        assert invoice.balance_cents == 2150

        billing_service.pay_invoice(postpaid_customer.id, invoice.id, "upi")
        assert invoice.status == "paid"
        assert invoice.paid_at is not None
        assert invoice.paid_amount_cents == 3150
        assert ledger_service.get_balance(postpaid_customer.id) == 0

    def test_overpayment_rejected(self, postpaid_customer, invoice):
        with pytest.raises(PaymentError):
            billing_service.pay_invoice(postpaid_customer.id, invoice.id, "cash", amount_cents=3151)
        assert invoice.balance_cents == 3150

    def test_paid_invoice_cannot_be_paid_again(self, postpaid_customer, invoice):
        billing_service.pay_invoice(postpaid_customer.id, invoice.id, "card")

        with pytest.raises(PaymentError):
            billing_service.pay_invoice(postpaid_customer.id, invoice.id, "card", amount_cents=1)

    def test_pending_payments_cannot_overpay_together(self, postpaid_customer, invoice):
        first = billing_service.create_payment(
            postpaid_customer.id, 3150, "upi", "invoice_payment", invoice_id=invoice.id
        )
        second = billing_service.create_payment(
            postpaid_customer.id, 3150, "card", "invoice_payment", invoice_id=invoice.id
        )

        billing_service.complete_payment(first.id, gateway_payment_id="gw_first")
        with pytest.raises(PaymentError):
            billing_service.complete_payment(second.id, gateway_payment_id="gw_second")

        db.session.refresh(invoice)
        db.session.refresh(second)
        assert invoice.status == "paid"
        assert invoice.paid_amount_cents == invoice.total_cents == 3150
        assert second.status == "pending"
        assert ledger_service.get_balance(postpaid_customer.id) == 0

    def test_pending_payment_above_remaining_balance_rejected(self, postpaid_customer, invoice):
        pending = billing_service.create_payment(
            postpaid_customer.id, 2000, "upi", "invoice_payment", invoice_id=invoice.id
        )
        billing_service.pay_invoice(postpaid_customer.id, invoice.id, "cash", amount_cents=2000)

        with pytest.raises(PaymentError):
            billing_service.complete_payment(pending.id)

        db.session.refresh(invoice)
        assert invoice.balance_cents == 1150
        assert billing_service.recompute_invoice_balance(invoice) == 1150

    def test_refund_reopens_invoice(self, postpaid_customer, invoice):
        payment = billing_service.pay_invoice(postpaid_customer.id, invoice.id, "card")

        refund = billing_service.refund_payment(payment.id, 500, reason="Spoilt packet")

        assert refund.payment_type == "refund"
        assert refund.reference_number == "REF-000001"
        assert payment.status == "completed"
        assert payment.refunded_amount_cents == 500
        assert invoice.status == "sent"
        assert invoice.balance_cents == 500
        assert ledger_service.get_balance(postpaid_customer.id) == 500
        assert billing_service.recompute_invoice_balance(invoice) == invoice.balance_cents

    def test_full_refund_marks_original(self, customer):
        payment = billing_service.topup_prepaid(customer.id, 20000, "upi")

        billing_service.refund_payment(payment.id)

        assert payment.status == "refunded"
        assert ledger_service.get_balance(customer.id) == 0
        with pytest.raises(PaymentError):
            billing_service.refund_payment(payment.id, 1)

    def test_refund_limits(self, customer):
        payment = billing_service.topup_prepaid(customer.id, 20000, "upi")
        refund = billing_service.refund_payment(payment.id, 5000)

        with pytest.raises(PaymentError):
            billing_service.refund_payment(payment.id, 15001)
        with pytest.raises(PaymentError):
            billing_service.refund_payment(refund.id)


class TestOverdue:

    def test_mark_overdue_then_pay(self, postpaid_customer, invoice):
        assert billing_service.mark_overdue_invoices(as_of=invoice.due_date) == 0

        assert billing_service.mark_overdue_invoices(as_of=invoice.due_date + timedelta(days=1)) == 1
        assert invoice.status == "overdue"
        summary = billing_service.get_billing_summary(postpaid_customer.id)
        assert summary["overdue_invoice_count"] == 1
        assert summary["outstanding_cents"] == 3150

        billing_service.pay_invoice(postpaid_customer.id, invoice.id, "netbanking")
        assert invoice.status == "paid"
