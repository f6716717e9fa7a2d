from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from coop_payments.models import Participant, Payment

from conftest import make_participant, make_payment


def webhook(**overrides):
    payload = {
        "resultCode": "0000",
        "resultMsg": "정상 처리되었습니다.",
        "tid": "TID_1",
        "orderId": "ORD1",
        "status": "paid",
        "amount": 50000,
        "payMethod": "card",
    }
    payload.update(overrides)
    return payload


def test_paid_webhook_completes_payment_and_confirms_participant(client, db):
    participant = make_participant(db, status="pending", payment_status="unpaid")
    make_payment(db, order_id="ORD1", participant_id=participant.id)

    response = client.post("/api/nicepay/webhook", json=webhook())

    assert response.status_code == 200
    assert response.json() == {"message": "ok"}
    db.expire_all()
    payment = db.query(Payment).filter_by(order_id="ORD1").one()
    assert payment.status == "completed"
    assert payment.payment_key == "TID_1"
    assert payment.webhook_data["status"] == "paid"
    assert payment.webhook_received_at is not None
    participant = db.get(Participant, participant.id)
    assert participant.status == "confirmed"
    assert participant.payment_status == "paid"


def test_duplicate_delivery_is_idempotent(client, db):
    make_payment(db, order_id="ORD1")

    first = client.post("/api/nicepay/webhook", json=webhook(status="cancelled"))
    db.expire_all()
    after_first = db.query(Payment).filter_by(order_id="ORD1").one().status
    second = client.post("/api/nicepay/webhook", json=webhook(status="cancelled"))
    db.expire_all()
    after_second = db.query(Payment).filter_by(order_id="ORD1").one().status

    assert first.json() == second.json() == {"message": "ok"}
    assert after_first == after_second == "cancelled"


def test_failure_result_code_asks_for_redelivery(client, db):
    make_payment(db, order_id="ORD1")

    response = client.post("/api/nicepay/webhook", json=webhook(resultCode="9999"))

    assert response.status_code == 500
    assert response.json() == {"error": "fail"}
    assert db.query(Payment).one().status == "pending"


def test_unknown_order_is_acknowledged(client, db):
    response = client.post("/api/nicepay/webhook", json=webhook(orderId="NOPE"))

    assert response.status_code == 200
    assert db.query(Payment).count() == 0


def test_only_latest_attempt_for_order_is_updated(client, db):
    make_payment(db, order_id="ORD1", status="failed", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    latest = make_payment(db, order_id="ORD1", status="pending")

    client.post("/api/nicepay/webhook", json=webhook())

    db.expire_all()
    statuses = {p.id: p.status for p in db.query(Payment).all()}
    assert statuses[latest.id] == "completed"
    assert sorted(statuses.values()) == ["completed", "failed"]


def test_signed_webhook_is_verified(client, db, nicepay_client):
    make_payment(db, order_id="ORD1")
    edi_date = "2026-10-19T10:00:00.000+0900"
    payload = webhook(ediDate=edi_date, signature=nicepay_client.webhook_signature("TID_1", 50000, edi_date))

    response = client.post("/api/nicepay/webhook", json=payload)

    assert response.status_code == 200


def test_forged_webhook_signature_is_rejected(client, db):
    make_payment(db, order_id="ORD1")

    response = client.post(
        "/api/nicepay/webhook",
        json=webhook(ediDate="2026-10-19T10:00:00.000+0900", signature="f" * 64),
    )

    assert response.status_code == 400
    assert db.query(Payment).one().status == "pending"


def test_store_failure_returns_error_so_gateway_retries(client, db, mocker):
    make_payment(db, order_id="ORD1")
    mocker.patch("coop_payments.callbacks.apply_payment_status", side_effect=SQLAlchemyError("locked"))

    response = client.post("/api/nicepay/webhook", json=webhook())

    assert response.status_code == 500
    db.expire_all()
    assert db.query(Payment).one().status == "pending"
