# Overview: Per-organization document numbering (orders, invoices, payments).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


ORDER = ("ORDER", "ORD")
INVOICE = ("INVOICE", "INV")
PAYMENT = ("PAYMENT", "PAY")
REFUND = ("REFUND", "REF")

SEQUENCE_RACE_ERRORS = (IntegrityError,)


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""


def next_document_number(
    *,
    org_id: int,
    document_type: str,
    prefix: str,
    pad: int = 6,
) -> str:
    """
    Allocate the next document number for an organization/type.

    The UPDATE ... SET next_number = next_number + 1 takes the row lock, so
    concurrent callers serialize on (org_id, document_type). Runs inside the
    caller's transaction; the caller owns commit/rollback.
    """
    if not org_id:
        raise DocumentSequenceError("org_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.org_id == org_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(org_id=org_id, document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(org_id=org_id, document_type=document_type, next_number=2)
        db.session.add(seq)
        # IntegrityError here means another transaction created the counter
        # first; callers run under run_with_retry(retry_on=SEQUENCE_RACE_ERRORS).
        db.session.flush()
        next_num = 1

    return f"{prefix}-{next_num:0{pad}d}"


def allocate(org_id: int, kind: tuple[str, str]) -> str:
    document_type, prefix = kind
    return next_document_number(org_id=org_id, document_type=document_type, prefix=prefix)
