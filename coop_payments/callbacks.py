"""Endpoints NicePay itself (or the browser it redirects) talks to."""
import logging
from typing import Any, Dict
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coop_payments.database import get_db
from coop_payments.models import PaymentStatus, map_webhook_status, utcnow
from coop_payments.nicepay import (
    SUCCESS_CODE,
    NicePayClient,
    NicePayError,
    client_config,
    get_nicepay,
    validate_amount,
)
from coop_payments.services import (
    apply_payment_status,
    find_open_payment,
    latest_payment,
    notify,
    parse_participant_data,
    record_approval,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/nicepay")

MISSING_FIELDS_MSG = "결제 정보가 누락되었습니다"
SIGNATURE_MSG = "결제 보안 검증에 실패했습니다"
AMOUNT_MISMATCH_MSG = "결제 금액이 주문 금액과 일치하지 않습니다"
PARTICIPANT_PARSE_MSG = "참가자 정보 파싱에 실패했습니다"
DATABASE_MSG = "데이터베이스 처리 중 오류가 발생했습니다"
AUTH_FAILED_MSG = "결제 인증에 실패했습니다"
ALREADY_PAID_MSG = "이미 결제가 완료된 주문입니다"

REQUIRED_FIELDS = ("tid", "orderId", "amount", "authResultCode")


def _redirect(request: Request, path: str, **params) -> RedirectResponse:
    url = str(request.base_url).rstrip("/") + path
    if params:
        url += "?" + urlencode(params)
    # 303 so the browser follows the gateway's POST with a GET
    return RedirectResponse(url, status_code=303)


def _error(request, message):
    return _redirect(request, "/payments/error", message=message)


def _failure(request, message):
    return _redirect(request, "/payments/failure", message=message)


@router.get("/config")
def nicepay_config():
    try:
        data = client_config()
    except RuntimeError:
        logger.exception("NicePay config requested but credentials are missing")
        raise HTTPException(status_code=500, detail="Failed to load payment configuration")
    return {"success": True, "data": data}


async def auth_result_fields(request: Request) -> Dict[str, str]:
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/process", name="process_payment")
def process_payment(
    request: Request,
    fields: Dict[str, str] = Depends(auth_result_fields),
    db: Session = Depends(get_db),
    nicepay: NicePayClient = Depends(get_nicepay),
):
    """Server approval of a NicePay authentication result.

    NicePay posts the authentication result here as a browser redirect, so
    every outcome is a redirect to one of the result pages rather than an
    error body. Nothing is written unless the result code, signature and
    server-side approval all succeed.
    """
    logger.info("NicePay auth result for order %s: %s %s",
                fields.get("orderId"), fields.get("authResultCode"), fields.get("authResultMsg"))

    if any(not fields.get(name) for name in REQUIRED_FIELDS):
        logger.error("NicePay auth result is missing required fields: %s", sorted(fields))
        return _error(request, MISSING_FIELDS_MSG)

    tid = fields["tid"]
    order_id = fields["orderId"]

    if fields["authResultCode"] != SUCCESS_CODE:
        logger.warning("NicePay authentication failed for order %s: %s",
                       order_id, fields.get("authResultMsg"))
        return _failure(request, fields.get("authResultMsg") or AUTH_FAILED_MSG)

    if not nicepay.verify_auth_signature(fields):
        logger.error("NicePay signature verification failed for order %s", order_id)
        return _error(request, SIGNATURE_MSG)

    try:
        amount = int(fields["amount"])
    except ValueError:
        return _error(request, MISSING_FIELDS_MSG)
    if not validate_amount(amount):
        return _error(request, MISSING_FIELDS_MSG)

    pending = find_open_payment(db, order_id)
    if pending is not None and pending.status == PaymentStatus.COMPLETED:
        if pending.payment_key == tid:
            # the browser re-posted an order that is already approved
            return _redirect(request, "/payments/success", orderId=order_id, amount=pending.amount)
        logger.error("Order %s is already completed with tid %s; rejecting tid %s",
                     order_id, pending.payment_key, tid)
        return _error(request, ALREADY_PAID_MSG)
    if pending is not None and pending.amount != amount:
        logger.error("Order %s amount mismatch: checkout %s, gateway %s",
                     order_id, pending.amount, amount)
        return _error(request, AMOUNT_MISMATCH_MSG)

    try:
        approval = nicepay.approve(tid, amount)
    except NicePayError as exc:
        logger.error("NicePay approval failed for order %s: %s", order_id, exc.message)
        return _failure(request, exc.message)

    raw_reserved = fields.get("mallReserved") or (pending.mall_reserved if pending else None)
    try:
        participant_data = parse_participant_data(raw_reserved or "")
    except ValueError:
        logger.error("Order %s (tid=%s) approved but merchant-reserved data is unreadable: %r",
                     order_id, tid, raw_reserved)
        return _error(request, PARTICIPANT_PARSE_MSG)

    try:
        participant, payment = record_approval(
            db, order_id, tid, amount, approval, participant_data, pending
        )
        db.commit()
    except (SQLAlchemyError, ValueError):
        db.rollback()
        logger.exception("Order %s (tid=%s, %s KRW) approved by NicePay but not recorded",
                         order_id, tid, amount)
        return _error(request, DATABASE_MSG)

    logger.info("Order %s completed: payment %s, participant %s",
                order_id, payment.id, participant.id if participant else None)
    notify(
        db,
        payment.user_id,
        title="결제 완료",
        message=(f"{amount:,}원 결제가 완료되어 참가 신청이 확정되었습니다." if participant
                 else f"{amount:,}원 결제가 완료되었습니다."),
        type="payment_completed",
        action_url="/dashboard/payments",
    )

    return _redirect(request, "/payments/success", orderId=order_id, amount=amount)


@router.post("/webhook")
def nicepay_webhook(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    nicepay: NicePayClient = Depends(get_nicepay),
):
    """Reconcile a payment with an asynchronous NicePay status notification.

    Keyed by order id and idempotent: a repeated delivery sets the same
    status again. Delivery order is not checked. Any non-2xx answer makes
    NicePay deliver again.
    """
    logger.info("NicePay webhook received: %s", payload)

    if payload.get("resultCode") != SUCCESS_CODE:
        logger.error("NicePay webhook reported failure: %s", payload)
        return JSONResponse({"error": "fail"}, status_code=500)

    if payload.get("signature") and payload.get("ediDate"):
        if not nicepay.verify_webhook_signature(payload):
            logger.error("NicePay webhook signature mismatch for order %s", payload.get("orderId"))
            return JSONResponse({"error": "invalid signature"}, status_code=400)

    order_id = payload.get("orderId")
    if not order_id:
        return JSONResponse({"error": "orderId is required"}, status_code=400)

    payment = latest_payment(db, order_id)
    if payment is None:
        logger.warning("NicePay webhook for unknown order %s; acknowledging", order_id)
        return {"message": "ok"}

    try:
        apply_payment_status(db, payment, map_webhook_status(payload.get("status")))
        if not payment.payment_key and payload.get("tid"):
            payment.payment_key = payload["tid"]
        payment.webhook_data = payload
        payment.webhook_received_at = utcnow()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update payment for order %s from webhook", order_id)
        return JSONResponse({"error": "Failed to process webhook"}, status_code=500)

    return {"message": "ok"}
