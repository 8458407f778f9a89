from typing import Optional

from license_server.lifecycle import PaymentEvent
from license_server.security import normalize_email, normalize_key

SUPPORTED_EVENTS = frozenset({
    "subscription.create",
    "charge.success",
    "invoice.create",
    "subscription.renew",
})


def event_type(payload) -> str:
    return str((payload or {}).get("event") or "").strip()


def is_supported(payload) -> bool:
    return event_type(payload) in SUPPORTED_EVENTS


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def parse_payment_event(payload: dict) -> Optional[PaymentEvent]:
    """
    Pull the license identity out of a Paystack envelope.
    Returns None when the event carries no license key or customer email,
    which happens for charges that did not start from /subscribe.
    """
    data = _dict(payload.get("data"))
    metadata = _dict(data.get("metadata"))
    customer = _dict(data.get("customer")) or _dict(payload.get("customer"))
    subscription = _dict(data.get("subscription"))

    license_key = normalize_key(metadata.get("licenseKey") or metadata.get("license_key"))
    email = normalize_email(customer.get("email") or metadata.get("email"))
    if not license_key or not email:
        return None

    fingerprint = str(metadata.get("fingerprint") or metadata.get("device_id") or "").strip()
    reference = (
        data.get("reference")
        or data.get("subscription_code")
        or subscription.get("subscription_code")
        or metadata.get("reference")
        or ""
    )
    paid_at = data.get("paid_at") or data.get("paidAt") or data.get("created_at") or data.get("createdAt")
    return PaymentEvent(
        event=event_type(payload),
        email=email,
        license_key=license_key,
        fingerprint=fingerprint,
        reference=str(reference).strip(),
        paid_at=paid_at,
    )
