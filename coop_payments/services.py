"""Persistence steps shared by the payment handlers.

Nothing here commits; the calling handler owns the transaction.
"""
import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from coop_payments.models import (
    Notification,
    Participant,
    ParticipantPaymentStatus,
    ParticipantStatus,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

PARTICIPANT_FIELDS = (
    "program_id",
    "participant_name",
    "participant_email",
    "participant_phone",
    "emergency_contact",
    "dietary_restrictions",
    "special_requests",
)


def find_open_payment(db, order_id):
    """The order's payment that is still pending or completed, if any."""
    return (
        db.query(Payment)
        .filter(Payment.order_id == order_id)
        .filter(Payment.status.notin_(PaymentStatus.TERMINAL))
        .order_by(Payment.created_at.desc())
        .first()
    )


def latest_payment(db, order_id):
    return (
        db.query(Payment)
        .filter_by(order_id=order_id)
        .order_by(Payment.created_at.desc())
        .first()
    )


def parse_participant_data(raw):
    """Decode the merchant-reserved JSON round-tripped through the gateway."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("merchant-reserved data must be a JSON object")
    return data


def apply_payment_status(db, payment, status):
    """Move a payment to ``status`` and carry its participant along."""
    now = utcnow()
    payment.status = status
    if status == PaymentStatus.COMPLETED and payment.paid_at is None:
        payment.paid_at = now
    if status in (PaymentStatus.CANCELLED, PaymentStatus.REFUNDED) and payment.cancelled_at is None:
        payment.cancelled_at = now

    if not payment.participant_id:
        return
    participant = db.get(Participant, payment.participant_id)
    if participant is None:
        logger.warning("Payment %s links to missing participant %s",
                       payment.id, payment.participant_id)
        return
    if status == PaymentStatus.COMPLETED:
        participant.status = ParticipantStatus.CONFIRMED
        participant.payment_status = ParticipantPaymentStatus.PAID
    elif status in (PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
        participant.status = ParticipantStatus.CANCELLED
        participant.payment_status = ParticipantPaymentStatus.CANCELLED


def record_approval(db, order_id, tid, amount, approval, participant_data, pending=None):
    """Complete the payment for an approved transaction.

    A participant row is written only when the merchant-reserved data names
    one; subscription checkouts complete the payment alone. The pending
    payment's owner wins over the browser-posted user id, which the
    gateway signature does not cover.
    """
    if pending is not None:
        user_id = pending.user_id
    else:
        user_id = participant_data.get("user_id")

    participant = None
    if participant_data.get("participant_name") and participant_data.get("participant_email"):
        participant = Participant(
            user_id=user_id,
            amount_paid=amount,
            status=ParticipantStatus.CONFIRMED,
            payment_status=ParticipantPaymentStatus.PAID,
            **{field: participant_data.get(field) for field in PARTICIPANT_FIELDS},
        )
        db.add(participant)
        db.flush()

    payment = pending
    if payment is None:
        payment = Payment(
            order_id=order_id,
            user_id=user_id,
            program_id=participant_data.get("program_id"),
            amount=amount,
            currency="KRW",
        )
        db.add(payment)

    if participant is not None:
        payment.participant_id = participant.id
    payment.payment_key = tid
    payment.payment_method = approval.get("payMethod") or "card"
    payment.raw_data = approval
    apply_payment_status(db, payment, PaymentStatus.COMPLETED)
    db.flush()
    return participant, payment


def record_cancellation(db, payment, user_id, reason, result):
    """Mark a gateway-cancelled payment refunded and write its refund row."""
    now = utcnow()
    payment.cancel_reason = reason
    apply_payment_status(db, payment, PaymentStatus.REFUNDED)

    refund = Refund(
        payment_id=payment.id,
        user_id=user_id,
        amount=result.get("cancelAmt") or result.get("amount") or payment.amount,
        reason=reason,
        status=RefundStatus.COMPLETED,
        refund_tid=result.get("cancelledTid") or result.get("tid"),
        raw_data=result,
        processed_at=now,
    )
    db.add(refund)
    db.flush()
    return refund


def notify(db, user_id, title, message, type, action_url=None):
    """Best-effort notification; a failure is logged and never propagated."""
    if not user_id:
        return None
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type,
        action_url=action_url,
    )
    try:
        db.add(notification)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write %s notification for user %s", type, user_id)
        return None
    return notification
