"""NicePay server-approval API client.

Every call goes straight to the gateway; nothing is retried. A gateway
rejection (``resultCode`` other than ``"0000"``), a non-2xx response or a
transport failure all surface as :class:`NicePayError`.
"""
import hashlib
import hmac
import logging
import time

import httpx

from coop_payments import config

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"
MAX_AMOUNT = 50_000_000


class NicePayError(Exception):
    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    @property
    def is_rejection(self):
        """True when the gateway answered and declined, as opposed to being unreachable."""
        return self.code is not None


def _sha256(*parts) -> str:
    return hashlib.sha256("".join(str(p) for p in parts).encode("utf-8")).hexdigest()


def generate_order_id(user_id: str, program_id: str) -> str:
    return f"ORDER_{int(time.time() * 1000)}_{user_id[:8]}_{program_id[:8]}"


def validate_amount(amount) -> bool:
    return isinstance(amount, int) and 0 < amount <= MAX_AMOUNT


class NicePayClient:
    def __init__(self, client_id, secret_key, base_url, timeout=10.0, transport=None):
        self.client_id = client_id
        self._secret_key = secret_key
        self._http = httpx.Client(
            base_url=base_url,
            auth=(client_id, secret_key),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls):
        client_id, secret_key = config.nicepay_credentials()
        return cls(
            client_id,
            secret_key,
            config.nicepay_api_url(),
            timeout=config.nicepay_timeout(),
        )

    def close(self):
        self._http.close()

    def _request(self, method, path, body=None):
        try:
            response = self._http.request(method, path, json=body)
        except httpx.HTTPError as exc:
            logger.error("NicePay %s %s failed: %s", method, path, exc)
            raise NicePayError("결제 서버와 통신 중 오류가 발생했습니다.") from exc

        if response.is_error:
            logger.error("NicePay %s %s returned %s: %s",
                         method, path, response.status_code, response.text)
            raise NicePayError(
                f"NicePay API 오류: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise NicePayError("NicePay 응답을 해석할 수 없습니다.") from exc

        if data.get("resultCode") != SUCCESS_CODE:
            logger.warning("NicePay %s %s rejected: %s %s",
                           method, path, data.get("resultCode"), data.get("resultMsg"))
            raise NicePayError(
                data.get("resultMsg") or "결제 요청이 거절되었습니다.",
                code=data.get("resultCode") or "unknown",
                status_code=response.status_code,
            )
        return data

    def approve(self, tid: str, amount: int) -> dict:
        """Server-side approval of an authenticated transaction."""
        return self._request("POST", f"/v1/payments/{tid}", {"amount": amount})

    def cancel(self, tid: str, order_id: str, reason: str, amount: int = None) -> dict:
        body = {"reason": reason, "orderId": order_id}
        if amount is not None:
            body["cancelAmt"] = amount
        return self._request("POST", f"/v1/payments/{tid}/cancel", body)

    def get_payment(self, tid: str) -> dict:
        return self._request("GET", f"/v1/payments/{tid}")

    def auth_signature(self, auth_token, amount) -> str:
        return _sha256(auth_token, self.client_id, amount, self._secret_key)

    def verify_auth_signature(self, fields: dict) -> bool:
        """Check the signature NicePay attaches to the browser redirect-back."""
        signature = fields.get("signature")
        auth_token = fields.get("authToken")
        if not signature or not auth_token:
            return False
        if fields.get("clientId") != self.client_id:
            return False
        expected = self.auth_signature(auth_token, fields.get("amount"))
        return hmac.compare_digest(expected.encode("utf-8"), str(signature).encode("utf-8"))

    def webhook_signature(self, tid, amount, edi_date) -> str:
        return _sha256(tid, amount, edi_date, self._secret_key)

    def verify_webhook_signature(self, payload: dict) -> bool:
        signature = payload.get("signature")
        if not signature:
            return False
        expected = self.webhook_signature(
            payload.get("tid"), payload.get("amount"), payload.get("ediDate")
        )
        return hmac.compare_digest(expected.encode("utf-8"), str(signature).encode("utf-8"))


def client_config() -> dict:
    """Gateway settings that are safe to hand to the browser."""
    client_id, _ = config.nicepay_credentials()
    return {
        "clientId": client_id,
        "jsSDKUrl": config.NICEPAY_JS_SDK_URL,
        "environment": config.nicepay_environment(),
    }


def get_nicepay():
    client = NicePayClient.from_env()
    try:
        yield client
    finally:
        client.close()
