# Overview: Append-only per-customer running-balance ledger with integrity verification.

"""
Customer Ledger

Every money movement for a customer is one LedgerEntry:

    debit   the customer owes more   (deliveries, orders, invoices, refunds)
    credit  the customer owes less   (payments, prepaid topups)

running_balance_cents after entry N equals the fold of entries 1..N.
Entries are never updated or deleted; corrections are new entries.

Appends are serialized per user: the user row is locked, the next sequence
is last + 1, and the (user_id, sequence) unique constraint rejects a
concurrent duplicate. Callers run under run_with_retry(retry_on=(IntegrityError,)).
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import LedgerEntry, User
from ..validation import NotFoundError, ValidationError
from .concurrency import lock_for_update


class LedgerIntegrityError(Exception):
    """A stored running balance disagrees with the fold of its entries. Never auto-corrected."""

    def __init__(self, user_id: int, sequence: int, expected: int, actual: int):
        self.user_id = user_id
        self.sequence = sequence
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Ledger for user {user_id} broken at sequence {sequence}: "
            f"expected balance {expected}, stored {actual}"
        )


def _signed(entry_type: str, amount_cents: int) -> int:
    return amount_cents if entry_type == "debit" else -amount_cents


def _last_entry(user_id: int) -> LedgerEntry | None:
    return (
        db.session.query(LedgerEntry)
        .filter(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.sequence.desc())
        .first()
    )


def append_entry(
    *,
    user_id: int,
    entry_type: str,
    amount_cents: int,
    description: str,
    reference_number: str | None = None,
    invoice_id: int | None = None,
    payment_id: int | None = None,
    order_id: int | None = None,
    subscription_delivery_id: int | None = None,
    details: dict | None = None,
) -> LedgerEntry:
    """
    Append one entry and return it. Flushes; the caller owns the commit.
    """
    if entry_type not in ("debit", "credit"):
        raise ValidationError(f"Invalid ledger entry type '{entry_type}'")
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("Ledger amount must be a positive integer")

    user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    last = _last_entry(user_id)
    previous_balance = last.running_balance_cents if last else 0

    entry = LedgerEntry(
        org_id=user.org_id,
        user_id=user_id,
        sequence=(last.sequence + 1) if last else 1,
        entry_type=entry_type,
        amount_cents=amount_cents,
        running_balance_cents=previous_balance + _signed(entry_type, amount_cents),
        description=description[:255],
        reference_number=reference_number,
        invoice_id=invoice_id,
        payment_id=payment_id,
        order_id=order_id,
        subscription_delivery_id=subscription_delivery_id,
        details=details,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_balance(user_id: int) -> int:
    """Amount owed (positive) or prepaid credit (negative)."""
    last = _last_entry(user_id)
    return last.running_balance_cents if last else 0


def list_entries(user_id: int, limit: int = 100, offset: int = 0) -> list[LedgerEntry]:
    return (
        db.session.query(LedgerEntry)
        .filter(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.sequence.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def verify_ledger(user_id: int) -> int:
    """
    Replay a user's ledger from zero and compare every running balance.

    Returns the final balance. Raises LedgerIntegrityError on the first
    mismatch or sequence gap.
    """
    balance = 0
    expected_sequence = 1
    entries = (
        db.session.query(LedgerEntry)
        .filter(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.sequence)
        .all()
    )
    for entry in entries:
        balance += _signed(entry.entry_type, entry.amount_cents)
        if entry.sequence != expected_sequence or entry.running_balance_cents != balance:
            error = LedgerIntegrityError(user_id, entry.sequence, balance, entry.running_balance_cents)
            current_app.logger.critical(str(error))
            raise error
        expected_sequence += 1
    return balance


def verify_all(org_id: int | None = None) -> dict:
    """
    Verify every ledger (optionally for one organization).

    Returns {"checked": n, "broken": [user_id, ...]}.
    """
    query = db.session.query(LedgerEntry.user_id).group_by(LedgerEntry.user_id)
    if org_id is not None:
        query = query.filter(LedgerEntry.org_id == org_id)

    checked = 0
    broken = []
    for (user_id,) in query.order_by(LedgerEntry.user_id):
        checked += 1
        try:
            verify_ledger(user_id)
        except LedgerIntegrityError:
            broken.append(user_id)
    return {"checked": checked, "broken": broken}


def totals(user_id: int) -> dict:
    rows = (
        db.session.query(LedgerEntry.entry_type, func.coalesce(func.sum(LedgerEntry.amount_cents), 0))
        .filter(LedgerEntry.user_id == user_id)
        .group_by(LedgerEntry.entry_type)
        .all()
    )
    sums = {entry_type: int(total) for entry_type, total in rows}
    return {"debits_cents": sums.get("debit", 0), "credits_cents": sums.get("credit", 0)}


def delivery_net_cents(subscription_delivery_id: int) -> int:
    """Debits minus credits posted against one delivery."""
    rows = (
        db.session.query(LedgerEntry.entry_type, func.coalesce(func.sum(LedgerEntry.amount_cents), 0))
        .filter(LedgerEntry.subscription_delivery_id == subscription_delivery_id)
        .group_by(LedgerEntry.entry_type)
        .all()
    )
    return sum(_signed(entry_type, int(total)) for entry_type, total in rows)
