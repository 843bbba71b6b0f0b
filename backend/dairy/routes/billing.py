# Overview: Flask API routes for a customer's balance, invoices, payments, ledger, topups and invoice payments.

"""
Billing routes.

Payment gateway results (payment_id, payment_details) arrive in the
request body and are stored on the Payment. Replaying a gateway payment
id returns the original payment instead of charging twice.
"""

from flask import Blueprint, g, request

from ..decorators import require_auth
from ..responses import success
from ..services import billing_service, ledger_service
from ..validation import ValidationError, coerce_int, require_json_object


billing_bp = Blueprint("billing", __name__, url_prefix="/api/billing")


@billing_bp.get("/summary")
@require_auth
def summary():
    return success(billing_service.get_billing_summary(g.current_user.id))


@billing_bp.get("/invoices")
@require_auth
def list_invoices():
    invoices = billing_service.list_invoices(g.current_user.id, status=request.args.get("status"))
    return success([i.to_dict() for i in invoices])


@billing_bp.get("/invoices/<int:invoice_id>")
@require_auth
def get_invoice(invoice_id: int):
    return success(billing_service.get_invoice(g.current_user.id, invoice_id).to_dict())


@billing_bp.get("/payments")
@require_auth
def list_payments():
    payments = billing_service.list_payments(
        g.current_user.id,
        limit=min(request.args.get("limit", 20, type=int), 50),
        offset=request.args.get("offset", 0, type=int),
    )
    return success([p.to_dict() for p in payments])


@billing_bp.get("/ledger")
@require_auth
def ledger():
    entries = ledger_service.list_entries(
        g.current_user.id,
        limit=min(request.args.get("limit", 50, type=int), 500),
        offset=request.args.get("offset", 0, type=int),
    )
    return success({
        "balance_cents": ledger_service.get_balance(g.current_user.id),
        "entries": [e.to_dict() for e in entries],
    })


def _payment_fields(data: dict) -> dict:
    method = data.get("payment_method")
    if not method:
        raise ValidationError("payment_method is required", errors={"payment_method": "required"})
    details = data.get("payment_details")
    if details is not None and not isinstance(details, dict):
        raise ValidationError("payment_details must be an object")
    return {
        "payment_method": method,
        "gateway_payment_id": data.get("payment_id"),
        "payment_details": details,
    }


@billing_bp.post("/topup")
@require_auth
def topup():
    """Body: {"amount_cents", "payment_method", "payment_id"?, "payment_details"?}"""
    data = require_json_object(request.get_json(silent=True))
    if data.get("amount_cents") is None:
        raise ValidationError("amount_cents is required", errors={"amount_cents": "required"})
    payment = billing_service.topup_prepaid(
        g.current_user.id,
        coerce_int("amount_cents", data["amount_cents"]),
        **_payment_fields(data),
    )
    return success({
        "payment": payment.to_dict(),
        "balance_cents": ledger_service.get_balance(g.current_user.id),
    }, message="Topup successful", status=201)


@billing_bp.post("/invoices/<int:invoice_id>/pay")
@require_auth
def pay_invoice(invoice_id: int):
    """Body: {"payment_method", "amount_cents"? (default: full balance), "payment_id"?, "payment_details"?}"""
    data = require_json_object(request.get_json(silent=True))
    amount = data.get("amount_cents")
    payment = billing_service.pay_invoice(
        g.current_user.id,
        invoice_id,
        amount_cents=None if amount is None else coerce_int("amount_cents", amount),
        **_payment_fields(data),
    )
    invoice = billing_service.get_invoice(g.current_user.id, invoice_id)
    return success({
        "payment": payment.to_dict(),
        "invoice": invoice.to_dict(),
    }, message="Payment recorded", status=201)


@billing_bp.post("/payments")
@require_auth
def create_payment():
    """
    Start a gateway payment; it stays pending until the gateway result is
    confirmed through the admin complete/fail endpoints.

    Body: {"amount_cents", "payment_method", "payment_type", "invoice_id"?, "payment_id"?, "payment_details"?}
    """
    data = require_json_object(request.get_json(silent=True))
    for field in ("amount_cents", "payment_type"):
        if data.get(field) is None:
            raise ValidationError(f"{field} is required", errors={field: "required"})
    invoice_id = data.get("invoice_id")
    payment = billing_service.create_payment(
        g.current_user.id,
        coerce_int("amount_cents", data["amount_cents"]),
        payment_type=data["payment_type"],
        invoice_id=None if invoice_id is None else coerce_int("invoice_id", invoice_id),
        **_payment_fields(data),
    )
    return success(payment.to_dict(), message="Payment pending", status=201)
