import hashlib, hmac, secrets, time
from typing import Optional

from itsdangerous import TimestampSigner, BadSignature

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def normalize_email(email) -> str:
    return str(email or "").strip().lower()


def normalize_key(license_key) -> str:
    return str(license_key or "").strip().upper()


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _B36[r] + out
        if n == 0:
            return out


def make_license_key(email: str) -> str:
    """
    HASH-RANDOM-TIME, upper-cased.
    HASH is 12 hex chars of sha256(normalized email), RANDOM is 6 random bytes
    in hex, TIME is epoch milliseconds in base 36.
    """
    email_hash = hashlib.sha256(normalize_email(email).encode()).hexdigest()[:12]
    random_part = secrets.token_hex(6)
    time_part = _base36(time.time_ns() // 1_000_000)
    return f"{email_hash}-{random_part}-{time_part}".upper()


def make_payment_reference() -> str:
    return f"LS-{time.time_ns() // 1_000_000}-{secrets.token_hex(4).upper()}"


def sign_token(payload: str, secret: str) -> str:
    return TimestampSigner(secret).sign(payload.encode()).decode()


def unsign_token(token: str, secret: str, max_age_seconds=86400 * 365) -> Optional[str]:
    try:
        return TimestampSigner(secret).unsign(token, max_age=max_age_seconds).decode()
    except BadSignature:
        return None


def activation_token(license_key: str, fingerprint: str, secret: str) -> str:
    return sign_token(f"{license_key}|{fingerprint}", secret)


def verify_paystack_signature(body_bytes: bytes, header_signature: str, secret: str) -> bool:
    if not header_signature or not secret:
        return False
    digest = hmac.new(
        secret.encode(),
        msg=body_bytes,
        digestmod='sha512'
    ).hexdigest()
    return hmac.compare_digest(digest.encode(), header_signature.strip().lower().encode())
