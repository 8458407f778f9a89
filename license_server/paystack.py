import logging
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

API_BASE = "https://api.paystack.co"


class PaystackError(Exception):
    """Transaction could not be started. Always safe to retry."""


def _mock_response(email, plan_code, reference):
    return {
        "status": True,
        "message": "Mock transaction initialised",
        "data": {
            "authorization_url": f"https://paystack.mock/checkout/{quote(reference, safe='')}",
            "access_code": f"MOCK-{reference}",
            "reference": reference,
            "metadata": {"email": email, "planCode": plan_code, "mock": True},
        },
        "mock": True,
    }


def _is_ip_restriction(message: str) -> bool:
    return "ip address is not allowed" in (message or "").lower()


class PaystackClient:
    def __init__(self, secret_key="", base_url=API_BASE, timeout=15.0, use_mock=False, session=None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.use_mock = use_mock
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings):
        return cls(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PAYSTACK_TIMEOUT_SECONDS,
            use_mock=settings.PAYSTACK_USE_MOCK,
        )

    def initialize_transaction(self, email: str, plan_code: str, reference: str, metadata: dict) -> dict:
        if not email:
            raise ValueError("email is required")
        if not plan_code:
            raise ValueError("plan code is required")

        if not self.secret_key:
            if self.use_mock:
                return _mock_response(email, plan_code, reference)
            raise PaystackError("PAYSTACK_SECRET_KEY must be configured")

        url = f"{self.base_url}/transaction/initialize"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        payload = {"email": email, "plan": plan_code, "reference": reference, "metadata": metadata}
        try:
            r = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise PaystackError("payment gateway timed out") from e
        except requests.exceptions.RequestException as e:
            raise PaystackError("payment gateway unreachable") from e

        try:
            body = r.json()
        except ValueError:
            body = {}
        message = body.get("message") if isinstance(body, dict) else None

        if r.status_code >= 400 or not (isinstance(body, dict) and body.get("status")):
            if self.use_mock and _is_ip_restriction(message):
                logger.warning("Falling back to mock Paystack transaction due to IP restriction")
                return _mock_response(email, plan_code, reference)
            logger.error("Paystack initialize failed (%s): %s", r.status_code, message)
            raise PaystackError(message or f"payment gateway error ({r.status_code})")
        return body
