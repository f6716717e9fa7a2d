import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

NICEPAY_API_URLS = {
    "sandbox": "https://sandbox-api.nicepay.co.kr",
    "production": "https://api.nicepay.co.kr",
}
NICEPAY_JS_SDK_URL = "https://pay.nicepay.co.kr/v1/js/"


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def jwt_secret() -> str:
    return os.getenv("JWT_SECRET", "")


def nicepay_credentials():
    client_id = os.getenv("NICEPAY_CLIENT_ID")
    secret_key = os.getenv("NICEPAY_SECRET_KEY")
    if not client_id or not secret_key:
        raise RuntimeError(
            "NicePay credentials are not configured "
            "(set NICEPAY_CLIENT_ID and NICEPAY_SECRET_KEY)."
        )
    return client_id, secret_key


def nicepay_environment() -> str:
    env = os.getenv("NICEPAY_ENV", "sandbox").lower()
    return "production" if env == "production" else "sandbox"


def nicepay_api_url() -> str:
    return os.getenv("NICEPAY_API_URL") or NICEPAY_API_URLS[nicepay_environment()]


def nicepay_timeout() -> float:
    return float(os.getenv("NICEPAY_TIMEOUT", "10"))


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()
