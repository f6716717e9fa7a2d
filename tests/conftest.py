import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ["NICEPAY_CLIENT_ID"] = "S2_test_client"
os.environ["NICEPAY_SECRET_KEY"] = "test_secret_key"

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coop_payments.main import app as fastapi_app
from coop_payments.auth import get_current_user_id
from coop_payments.database import Base, get_db
from coop_payments.models import Participant, Payment
from coop_payments.nicepay import NicePayClient, get_nicepay

CLIENT_ID = "S2_test_client"
SECRET_KEY = "test_secret_key"
USER_ID = "user-1234-abcd"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeNicePay:
    """Stands in for the NicePay HTTP API and records every call."""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def respond(self, method, path, body, status_code=200):
        self.responses[(method, path)] = (status_code, body)

    def approve_ok(self, tid, order_id, amount, **extra):
        body = {
            "resultCode": "0000",
            "resultMsg": "정상 처리되었습니다.",
            "tid": tid,
            "orderId": order_id,
            "amount": amount,
            "status": "paid",
            "payMethod": "card",
        }
        body.update(extra)
        self.respond("POST", f"/v1/payments/{tid}", body)

    def cancel_ok(self, tid, order_id, amount, cancelled_tid="CANCEL_TID_1"):
        self.respond("POST", f"/v1/payments/{tid}/cancel", {
            "resultCode": "0000",
            "resultMsg": "취소 성공",
            "tid": tid,
            "cancelledTid": cancelled_tid,
            "orderId": order_id,
            "amount": amount,
            "status": "cancelled",
        })

    def handler(self, request):
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.responses:
            return httpx.Response(404, json={"resultCode": "9999", "resultMsg": "not found"})
        status_code, body = self.responses[key]
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status_code, json=body)

    def calls(self, method=None, path=None):
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeNicePay()


@pytest.fixture
def nicepay_client(gateway):
    client = NicePayClient(
        CLIENT_ID,
        SECRET_KEY,
        "https://sandbox-api.nicepay.test",
        transport=httpx.MockTransport(gateway.handler),
    )
    yield client
    client.close()


@pytest.fixture
def client(nicepay_client):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_nicepay] = lambda: nicepay_client
    fastapi_app.dependency_overrides[get_current_user_id] = lambda: USER_ID

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


def make_payment(db, **fields):
    values = {
        "order_id": "ORD1",
        "user_id": USER_ID,
        "amount": 50000,
        "currency": "KRW",
        "status": "pending",
    }
    values.update(fields)
    payment = Payment(**values)
    db.add(payment)
    db.commit()
    db.refresh(payment)
    # detach so later queries in the test see what the app wrote
    db.expunge(payment)
    return payment


def make_participant(db, **fields):
    values = {
        "user_id": USER_ID,
        "program_id": "prog-1",
        "participant_name": "김하늘",
        "participant_email": "sky@example.com",
        "amount_paid": 50000,
        "status": "confirmed",
        "payment_status": "paid",
    }
    values.update(fields)
    participant = Participant(**values)
    db.add(participant)
    db.commit()
    db.refresh(participant)
    db.expunge(participant)
    return participant
