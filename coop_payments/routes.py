import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coop_payments.auth import get_current_user_id
from coop_payments.config import nicepay_credentials
from coop_payments.database import get_db
from coop_payments.models import LOOKUP_STATUS_MAP, Payment, PaymentStatus, map_lookup_status
from coop_payments.nicepay import MAX_AMOUNT, NicePayClient, NicePayError, generate_order_id, get_nicepay
from coop_payments.services import (
    apply_payment_status,
    find_open_payment,
    notify,
    record_cancellation,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments")


class ParticipantDetails(BaseModel):
    participant_name: str
    participant_email: str
    participant_phone: Optional[str] = None
    emergency_contact: Optional[str] = None
    dietary_restrictions: Optional[str] = None
    special_requests: Optional[str] = None


class CheckoutRequest(BaseModel):
    amount: int = Field(..., gt=0, le=MAX_AMOUNT)
    goods_name: str
    order_id: Optional[str] = None
    program_id: Optional[str] = None
    subscription_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_tel: Optional[str] = None
    participant: Optional[ParticipantDetails] = None


class CancelRequest(BaseModel):
    payment_id: Optional[str] = None
    reason: Optional[str] = None


def serialize_payment(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "participant_id": payment.participant_id,
        "program_id": payment.program_id,
        "subscription_id": payment.subscription_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "payment_method": payment.payment_method,
        "payment_key": payment.payment_key,
        "cancel_reason": payment.cancel_reason,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "cancelled_at": payment.cancelled_at.isoformat() if payment.cancelled_at else None,
    }


def _owned_payment(db, payment_id, user_id) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="결제 정보를 찾을 수 없습니다.")
    if payment.user_id != user_id:
        raise HTTPException(status_code=403, detail="본인의 결제만 조회하거나 취소할 수 있습니다.")
    return payment


@router.post("/checkout")
def checkout(
    body: CheckoutRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        client_id, _ = nicepay_credentials()
    except RuntimeError:
        logger.exception("Checkout requested but NicePay credentials are missing")
        raise HTTPException(status_code=500, detail="Failed to load payment configuration")

    order_id = body.order_id or generate_order_id(
        user_id, body.program_id or body.subscription_id or "general"
    )

    if find_open_payment(db, order_id) is not None:
        raise HTTPException(status_code=409, detail="이미 진행 중인 주문번호입니다.")

    reserved = {"user_id": user_id, "program_id": body.program_id}
    if body.participant is not None:
        reserved.update(body.participant.model_dump())
    mall_reserved = json.dumps(reserved, ensure_ascii=False)

    payment = Payment(
        order_id=order_id,
        user_id=user_id,
        program_id=body.program_id,
        subscription_id=body.subscription_id,
        amount=body.amount,
        currency="KRW",
        status=PaymentStatus.PENDING,
        mall_reserved=mall_reserved,
    )
    try:
        db.add(payment)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create pending payment for order %s", order_id)
        raise HTTPException(status_code=500, detail="결제 정보를 저장하지 못했습니다.")

    logger.info("Pending payment %s created for order %s (%s KRW)",
                payment.id, order_id, body.amount)

    return {
        "payment_id": payment.id,
        "order_id": order_id,
        "amount": payment.amount,
        "status": payment.status,
        "nicepay": {
            "clientId": client_id,
            "method": "card",
            "orderId": order_id,
            "amount": body.amount,
            "goodsName": body.goods_name,
            "buyerName": body.buyer_name,
            "buyerEmail": body.buyer_email,
            "buyerTel": body.buyer_tel,
            "returnUrl": str(request.url_for("process_payment")),
            "mallReserved": mall_reserved,
        },
    }


@router.post("/cancel")
def cancel_payment(
    body: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    nicepay: NicePayClient = Depends(get_nicepay),
):
    if not body.payment_id or not body.reason:
        raise HTTPException(status_code=400, detail="결제 ID와 취소 사유는 필수입니다.")

    payment = _owned_payment(db, body.payment_id, user_id)

    if payment.status != PaymentStatus.COMPLETED:
        raise HTTPException(
            status_code=400,
            detail="취소할 수 없는 결제입니다. 결제 완료 상태만 취소 가능합니다.",
        )
    if not payment.payment_key or not payment.order_id:
        raise HTTPException(status_code=400, detail="결제 키 또는 주문번호 정보가 없습니다.")

    try:
        result = nicepay.cancel(payment.payment_key, payment.order_id, body.reason)
    except NicePayError as exc:
        if exc.is_rejection:
            raise HTTPException(status_code=400, detail=f"취소 실패: {exc.message}")
        raise HTTPException(status_code=502, detail=exc.message)

    try:
        refund = record_cancellation(db, payment, user_id, body.reason, result)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Payment %s (tid=%s) was cancelled by NicePay but could not be recorded",
            payment.id, payment.payment_key,
        )
        raise HTTPException(
            status_code=500,
            detail="결제는 취소되었으나 기록 저장에 실패했습니다. 고객센터로 문의해 주세요.",
        )

    logger.info("Payment %s refunded (refund %s)", payment.id, refund.id)
    notify(
        db,
        user_id,
        title="결제 취소 완료",
        message=f"{payment.amount:,}원 결제가 취소되었습니다.",
        type="payment_cancelled",
        action_url="/dashboard/payments",
    )

    return {
        "success": True,
        "message": "취소가 완료되었습니다.",
        "refund_id": refund.id,
        "cancel_result": result,
    }


@router.get("")
def list_payments(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    payments = (
        db.query(Payment)
        .filter_by(user_id=user_id)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return {"payments": [serialize_payment(p) for p in payments]}


@router.get("/{payment_id}")
def payment_detail(
    payment_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    nicepay: NicePayClient = Depends(get_nicepay),
):
    payment = _owned_payment(db, payment_id, user_id)

    gateway_data = None
    if payment.payment_key:
        try:
            gateway_data = nicepay.get_payment(payment.payment_key)
        except NicePayError as exc:
            logger.warning("Could not refresh payment %s from NicePay: %s", payment.id, exc.message)

    # statuses outside the lookup vocabulary leave the stored status alone
    if gateway_data is not None and gateway_data.get("status") in LOOKUP_STATUS_MAP:
        status = map_lookup_status(gateway_data["status"])
        if status != payment.status:
            try:
                apply_payment_status(db, payment, status)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Failed to refresh status of payment %s", payment.id)

    return {
        "success": True,
        "payment": serialize_payment(payment),
        "nicepay_data": gateway_data,
    }
