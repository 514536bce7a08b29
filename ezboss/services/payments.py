"""
Payment ledger.

Payments are not revisions: they do not change the priced scope of the
document, only the running balance. Overpayment is allowed and simply shows
as a negative balance.
"""
import math
from typing import Optional

import structlog

from ..exceptions import PaymentNotFoundError, ValidationError
from ..schemas.auth import Actor
from ..schemas.estimates import Estimate, PaymentRecord, PaymentSummary
from ..schemas.updates import RecordPayment
from .clock import Clock, IdGenerator


logger = structlog.get_logger(__name__)


def total_paid(estimate: Estimate) -> float:
    return round(sum(p.amount for p in estimate.payments), 2)


def balance(estimate: Estimate) -> float:
    return round(estimate.total - total_paid(estimate), 2)


def payment_summary(estimate: Estimate) -> PaymentSummary:
    return PaymentSummary(
        total=estimate.total,
        total_paid=total_paid(estimate),
        balance=balance(estimate),
        payments=list(estimate.payments),
    )


def add_payment(estimate: Estimate, payload: RecordPayment, clock: Clock, ids: IdGenerator, actor: Optional[Actor] = None) -> PaymentRecord:
    amount = round(payload.amount, 2) if payload.amount is not None and math.isfinite(payload.amount) else None
    # Checked on the stored (rounded) amount
    if amount is None or amount <= 0:
        raise ValidationError("Payment amount must be greater than 0", errors={"amount": "must be greater than 0"})
    now = clock.now()
    payment = PaymentRecord(
        id=ids.new("pay"),
        amount=amount,
        date=payload.date or now.date(),
        method=payload.method,
        notes=payload.notes,
        created_by=actor.name if actor else None,
        created_at=now,
    )
    estimate.payments.append(payment)
    logger.info("payment_recorded", estimate_id=estimate.id, payment_id=payment.id, amount=payment.amount, balance=balance(estimate))
    return payment


def delete_payment(estimate: Estimate, payment_id: str) -> PaymentRecord:
    for payment in estimate.payments:
        if payment.id == payment_id:
            estimate.payments = [p for p in estimate.payments if p.id != payment_id]
            logger.info("payment_deleted", estimate_id=estimate.id, payment_id=payment_id, balance=balance(estimate))
            return payment
    raise PaymentNotFoundError(estimate.id, payment_id)
