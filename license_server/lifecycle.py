r"""
License state machine.

    pending --activation--> active --time--> expired --renewal--> active
       \                      |                 |
        +-------deactivate----+-----------------+--> deactivated
                                                        |
                           trusted renewal webhook <----+

Transitions into ``active`` always go through ``LicenseStore.upsert_active`` so
replayed or reordered gateway events converge on the same row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from license_server.mailer import MailerError
from license_server.models import ACTIVE, DEACTIVATED, EXPIRED, PENDING, LicenseRecord
from license_server.security import make_license_key, normalize_email, normalize_key

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY = timedelta(days=30)

# rejection codes
NOT_FOUND = "not_found"
EMAIL_MISMATCH = "email_mismatch"
EXPIRED_CODE = "expired"
PAYMENT_PENDING = "payment_pending"
DEACTIVATED_CODE = "deactivated"
INACTIVE = "inactive"
FINGERPRINT_MISMATCH = "fingerprint_mismatch"

MESSAGES = {
    NOT_FOUND: "license not found",
    EMAIL_MISMATCH: "email mismatch",
    EXPIRED_CODE: "subscription expired",
    PAYMENT_PENDING: "payment pending",
    DEACTIVATED_CODE: "license deactivated",
    INACTIVE: "subscription inactive",
    FINGERPRINT_MISMATCH: "fingerprint mismatch",
}

_STATUS_CODES = {
    EXPIRED: EXPIRED_CODE,
    PENDING: PAYMENT_PENDING,
    DEACTIVATED: DEACTIVATED_CODE,
}


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string into naive UTC. None when absent or unparseable."""
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "Z"


@dataclass(frozen=True)
class PaymentEvent:
    event: str
    email: str
    license_key: str
    fingerprint: str = ""
    reference: str = ""
    paid_at: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    code: Optional[str] = None
    record: Optional[LicenseRecord] = None

    @property
    def message(self) -> Optional[str]:
        return MESSAGES.get(self.code)

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.record.expires_at if self.record else None


class LicenseLifecycle:
    def __init__(self, store, validity: timedelta = DEFAULT_VALIDITY, clock=None, mailer=None):
        self.store = store
        self.validity = validity
        self.clock = clock or store.clock
        self.mailer = mailer

    def compute_expiry(self, paid_at=None) -> datetime:
        base = parse_timestamp(paid_at)
        if base is None:
            base = self.clock()
        return base + self.validity

    def open_pending(self, email: str, fingerprint: str, reference: str) -> str:
        email = normalize_email(email)
        license_key = make_license_key(email)
        self.store.upsert_pending(email, license_key, fingerprint, reference)
        logger.info("Pending license %s... opened (ref %s)", license_key[:8], reference)
        return license_key

    def apply_payment(self, event: PaymentEvent) -> LicenseRecord:
        expires_at = self.compute_expiry(event.paid_at)
        self.store.upsert_active(
            normalize_email(event.email),
            normalize_key(event.license_key),
            event.fingerprint,
            expires_at,
            event.reference,
        )
        record = self.store.get_by_key(event.license_key)
        logger.info(
            "Payment event %s applied to %s... -> %s until %s",
            event.event, event.license_key[:8], record.status, isoformat(record.expires_at),
        )
        if self.mailer is not None and record.status == ACTIVE:
            self._mail_license(record)
        return record

    def _mail_license(self, record: LicenseRecord):
        try:
            self.mailer.send_license_email(record.email, record.license_key, record.expires_at)
        except MailerError as e:
            logger.error(f"License email for {record.license_key[:8]}... not sent: {e}")
        else:
            logger.info("License email sent for %s...", record.license_key[:8])

    def validate(self, email: str, license_key: str, fingerprint: str) -> ValidationResult:
        record = self.store.get_by_key(license_key)
        if record is None:
            return ValidationResult(False, NOT_FOUND)
        if normalize_email(record.email) != normalize_email(email):
            return ValidationResult(False, EMAIL_MISMATCH, record)
        if record.status == EXPIRED:
            return ValidationResult(False, EXPIRED_CODE, record)
        if record.status == PENDING:
            return ValidationResult(False, PAYMENT_PENDING, record)
        if record.status == DEACTIVATED:
            return ValidationResult(False, DEACTIVATED_CODE, record)
        if record.expires_at is None:
            return ValidationResult(False, INACTIVE, record)
        if record.fingerprint and record.fingerprint != fingerprint:
            return ValidationResult(False, FINGERPRINT_MISMATCH, record)

        if not record.fingerprint:
            if self.store.bind_fingerprint(record.license_key, fingerprint):
                logger.info("Fingerprint bound on first use for %s...", record.license_key[:8])
            # the bind may have lost to another device or to a deactivation
            record = self.store.get_by_key(record.license_key)
            if record is None:
                return ValidationResult(False, NOT_FOUND)

        if record.status != ACTIVE:
            return ValidationResult(False, _STATUS_CODES.get(record.status, INACTIVE), record)
        if record.fingerprint != fingerprint:
            return ValidationResult(False, FINGERPRINT_MISMATCH, record)
        return ValidationResult(True, record=record)

    def deactivate(self, license_key: str) -> bool:
        found = self.store.clear_and_deactivate(license_key)
        if found:
            logger.info("License %s... deactivated", normalize_key(license_key)[:8])
        return found
