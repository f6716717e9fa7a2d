from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, String, Integer, Text, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import validates

from coop_payments.database import Base


def _uuid():
    return str(uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    # an order id may be reused only once every earlier attempt is in one of these
    TERMINAL = (FAILED, CANCELLED, REFUNDED)


class ParticipantStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ParticipantPaymentStatus:
    UNPAID = "unpaid"
    PAID = "paid"
    CANCELLED = "cancelled"


class RefundStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# NicePay status vocabulary as reported by webhooks
WEBHOOK_STATUS_MAP = {
    "paid": PaymentStatus.COMPLETED,
    "cancelled": PaymentStatus.CANCELLED,
    "failed": PaymentStatus.FAILED,
}

# NicePay status vocabulary as reported by GET /v1/payments/{tid}
LOOKUP_STATUS_MAP = {
    "paid": PaymentStatus.COMPLETED,
    "ready": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.REFUNDED,
    "partialCancelled": PaymentStatus.REFUNDED,
}


def map_webhook_status(gateway_status):
    return WEBHOOK_STATUS_MAP.get(gateway_status, PaymentStatus.PENDING)


def map_lookup_status(gateway_status):
    return LOOKUP_STATUS_MAP.get(gateway_status, PaymentStatus.PENDING)


class Participant(Base):
    __tablename__ = "program_participants"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True)
    program_id = Column(String, index=True)
    participant_name = Column(String, nullable=False)
    participant_email = Column(String, nullable=False)
    participant_phone = Column(String)
    emergency_contact = Column(String)
    dietary_restrictions = Column(Text)
    special_requests = Column(Text)
    amount_paid = Column(Integer, nullable=False, default=0)
    status = Column(String, default=ParticipantStatus.PENDING)               # pending | confirmed | cancelled
    payment_status = Column(String, default=ParticipantPaymentStatus.UNPAID)  # unpaid | paid | cancelled
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True)
    participant_id = Column(String, ForeignKey("program_participants.id"))
    program_id = Column(String)
    subscription_id = Column(String)
    amount = Column(Integer, nullable=False)
    currency = Column(String, default="KRW")
    status = Column(String, default=PaymentStatus.PENDING, index=True)
    payment_method = Column(String)
    payment_key = Column(String, index=True)    # NicePay tid
    mall_reserved = Column(Text)
    raw_data = Column(JSON)
    webhook_data = Column(JSON)
    webhook_received_at = Column(DateTime(timezone=True))
    cancel_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    paid_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @validates("amount")
    def _freeze_amount(self, key, value):
        if self.amount is not None and value != self.amount:
            raise ValueError("Payment amount cannot change once set")
        return value


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True, default=_uuid)
    payment_id = Column(String, ForeignKey("payments.id"), index=True, nullable=False)
    user_id = Column(String, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(Text)
    status = Column(String, default=RefundStatus.PENDING)
    refund_tid = Column(String)
    raw_data = Column(JSON)
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    action_url = Column(String)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
