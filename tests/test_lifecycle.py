from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from license_server.lifecycle import (
    DEACTIVATED_CODE, EMAIL_MISMATCH, EXPIRED_CODE, FINGERPRINT_MISMATCH, INACTIVE,
    NOT_FOUND, PAYMENT_PENDING, LicenseLifecycle, PaymentEvent, isoformat, parse_timestamp,
)
from license_server.mailer import MailerError
from license_server.models import ACTIVE, DEACTIVATED, PENDING
from license_server.store import MemoryLicenseStore

from conftest import NOW, StubMailer


@pytest.fixture
def lifecycle(store):
    return LicenseLifecycle(store)


def _event(key, fingerprint="D1", paid_at="2024-01-01", email="a@b.com", reference="REF-1"):
    return PaymentEvent(event="charge.success", email=email, license_key=key,
                        fingerprint=fingerprint, reference=reference, paid_at=paid_at)


class TestTimestamps:
    def test_date_only(self):
        assert parse_timestamp("2024-01-01") == datetime(2024, 1, 1)

    def test_zulu_with_millis(self):
        assert parse_timestamp("2024-01-01T10:30:00.000Z") == datetime(2024, 1, 1, 10, 30)

    def test_offset_is_converted_to_utc(self):
        assert parse_timestamp("2024-01-01T01:00:00+01:00") == datetime(2024, 1, 1, 0, 0)

    def test_garbage_and_blank(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None

    def test_isoformat(self):
        assert isoformat(datetime(2024, 1, 31, 0, 0, 0, 1234)) == "2024-01-31T00:00:00Z"
        assert isoformat(None) is None


class TestExpiry:
    def test_from_paid_at(self, lifecycle):
        assert lifecycle.compute_expiry("2024-01-01") == datetime(2024, 1, 31)

    def test_falls_back_to_now(self, lifecycle):
        assert lifecycle.compute_expiry(None) == NOW + timedelta(days=30)
        assert lifecycle.compute_expiry("not a date") == NOW + timedelta(days=30)

    def test_custom_validity(self, store):
        lc = LicenseLifecycle(store, validity=timedelta(days=7))
        assert lc.compute_expiry("2024-01-01") == datetime(2024, 1, 8)


class TestActivation:
    def test_pending_then_activation(self, lifecycle, store):
        key = lifecycle.open_pending(" A@B.com", "D1", "REF-1")
        row = store.get_by_key(key)
        assert row.status == PENDING
        assert row.email == "a@b.com"
        assert row.expires_at is None

        row = lifecycle.apply_payment(_event(key))
        assert row.status == ACTIVE
        assert row.expires_at == datetime(2024, 1, 31)
        assert row.fingerprint == "D1"

    def test_replay_is_idempotent(self, lifecycle, store):
        key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
        first = lifecycle.apply_payment(_event(key))
        second = lifecycle.apply_payment(_event(key))
        assert (first.status, first.expires_at, first.fingerprint) == \
            (second.status, second.expires_at, second.fingerprint)

    def test_activation_without_pending_row(self, lifecycle):
        row = lifecycle.apply_payment(_event("FRESH-KEY", fingerprint=""))
        assert row.status == ACTIVE
        assert row.fingerprint is None

    def test_renewal_does_not_touch_bound_fingerprint(self, lifecycle):
        key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
        lifecycle.apply_payment(_event(key))
        row = lifecycle.apply_payment(_event(key, fingerprint="D9", paid_at="2024-01-20", reference="REF-2"))
        assert row.fingerprint == "D1"
        assert row.expires_at == datetime(2024, 2, 19)

    def test_reactivation_after_deactivation_rebinds(self, lifecycle):
        key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
        lifecycle.apply_payment(_event(key))
        assert lifecycle.deactivate(key) is True
        row = lifecycle.apply_payment(_event(key, fingerprint="D2", paid_at="2024-01-05", reference="REF-2"))
        assert row.status == ACTIVE
        assert row.fingerprint == "D2"

    def test_deactivate_unknown(self, lifecycle):
        assert lifecycle.deactivate("NOPE") is False


class TestValidate:
    @pytest.fixture
    def active_key(self, lifecycle):
        key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
        lifecycle.apply_payment(_event(key))
        return key

    def test_accepts_matching_license(self, lifecycle, active_key):
        result = lifecycle.validate("A@B.COM", active_key.lower(), "D1")
        assert result.ok
        assert result.expires_at == datetime(2024, 1, 31)

    def test_unknown_key(self, lifecycle):
        result = lifecycle.validate("a@b.com", "NOPE", "D1")
        assert not result.ok and result.code == NOT_FOUND
        assert result.message == "license not found"

    def test_email_mismatch(self, lifecycle, active_key):
        assert lifecycle.validate("x@y.com", active_key, "D1").code == EMAIL_MISMATCH

    def test_expired(self, lifecycle, active_key, clock):
        clock.advance(days=30)
        result = lifecycle.validate("a@b.com", active_key, "D1")
        assert result.code == EXPIRED_CODE
        assert result.expires_at == datetime(2024, 1, 31)

    def test_pending(self, lifecycle):
        key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
        assert lifecycle.validate("a@b.com", key, "D1").code == PAYMENT_PENDING

    def test_deactivated(self, lifecycle, active_key):
        lifecycle.deactivate(active_key)
        for fp in ("D1", "D2"):
            assert lifecycle.validate("a@b.com", active_key, fp).code == DEACTIVATED_CODE

    def test_fingerprint_mismatch_leaves_row_alone(self, lifecycle, store, active_key):
        before = store.get_by_key(active_key)
        result = lifecycle.validate("a@b.com", active_key, "D2")
        assert result.code == FINGERPRINT_MISMATCH
        assert store.get_by_key(active_key) == before

    def test_first_use_binds_fingerprint(self, lifecycle, store):
        lifecycle.apply_payment(_event("KEY-NOFP", fingerprint=""))
        assert lifecycle.validate("a@b.com", "KEY-NOFP", "D7").ok
        assert store.get_by_key("KEY-NOFP").fingerprint == "D7"
        assert lifecycle.validate("a@b.com", "KEY-NOFP", "D8").code == FINGERPRINT_MISMATCH

    def test_order_email_checked_before_status(self, lifecycle):
        key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
        assert lifecycle.validate("x@y.com", key, "D1").code == EMAIL_MISMATCH


class _RacingStore(MemoryLicenseStore):
    """Another request binds a different device between our read and our bind."""

    def bind_fingerprint(self, license_key, fingerprint):
        super().bind_fingerprint(license_key, "OTHER-DEVICE")
        return super().bind_fingerprint(license_key, fingerprint)


def test_concurrent_first_use_bind_loses_cleanly(clock):
    store = _RacingStore(clock=clock)
    lc = LicenseLifecycle(store)
    lc.apply_payment(_event("KEY-RACE", fingerprint=""))
    assert lc.validate("a@b.com", "KEY-RACE", "D1").code == FINGERPRINT_MISMATCH
    assert store.get_by_key("KEY-RACE").fingerprint == "OTHER-DEVICE"


def test_inactive_when_no_expiry_recorded(clock):
    store = MemoryLicenseStore(clock=clock)
    lc = LicenseLifecycle(store)
    store.upsert_pending("a@b.com", "KEY-X", "D1", "R")
    # an active row without an expiry can only come from outside the store API
    store._rows["KEY-X"] = replace(store._rows["KEY-X"], status=ACTIVE)
    assert lc.validate("a@b.com", "KEY-X", "D1").code == INACTIVE


def test_status_invariants(lifecycle, store):
    pending = lifecycle.open_pending("p@b.com", "D1", "R1")
    active = lifecycle.open_pending("a@b.com", "D2", "R2")
    lifecycle.apply_payment(_event(active, fingerprint="D2"))
    for key in (pending, active):
        row = store.get_by_key(key)
        if row.status == ACTIVE:
            assert row.expires_at is not None
        if row.status == PENDING:
            assert row.expires_at is None
    assert store.get_by_key(pending).status == PENDING
    assert store.get_by_key(active).status == ACTIVE


class _DeactivatingStore(MemoryLicenseStore):
    """An operator deactivates the key between our read and our bind."""

    def bind_fingerprint(self, license_key, fingerprint):
        self.clear_and_deactivate(license_key)
        return super().bind_fingerprint(license_key, fingerprint)


def test_deactivation_during_first_use_bind_leaves_key_rebindable(clock):
    store = _DeactivatingStore(clock=clock)
    lc = LicenseLifecycle(store)
    lc.apply_payment(_event("KEY-OFF", fingerprint="", reference="REF-1"))

    assert lc.validate("a@b.com", "KEY-OFF", "D1").code == DEACTIVATED_CODE
    assert store.get_by_key("KEY-OFF").fingerprint is None

    row = lc.apply_payment(_event("KEY-OFF", fingerprint="D2", paid_at="2024-01-05", reference="REF-2"))
    assert row.status == ACTIVE
    assert row.fingerprint == "D2"


def test_redelivery_after_deactivation_keeps_it_deactivated(lifecycle):
    key = lifecycle.open_pending("a@b.com", "D1", "REF-1")
    lifecycle.apply_payment(_event(key))
    lifecycle.deactivate(key)
    row = lifecycle.apply_payment(_event(key))
    assert row.status == DEACTIVATED
    assert row.fingerprint is None


class TestLicenseEmail:
    @pytest.fixture
    def mailer(self):
        return StubMailer()

    def test_activation_sends_key_and_expiry(self, store, mailer):
        lc = LicenseLifecycle(store, mailer=mailer)
        key = lc.open_pending("A@B.com", "D1", "REF-1")
        lc.apply_payment(_event(key))
        assert mailer.sent == [("a@b.com", key, datetime(2024, 1, 31))]

    def test_pending_checkout_sends_nothing(self, store, mailer):
        LicenseLifecycle(store, mailer=mailer).open_pending("a@b.com", "D1", "REF-1")
        assert mailer.sent == []

    def test_no_mail_for_redelivery_to_deactivated_key(self, store, mailer):
        lc = LicenseLifecycle(store, mailer=mailer)
        key = lc.open_pending("a@b.com", "D1", "REF-1")
        lc.apply_payment(_event(key))
        lc.deactivate(key)
        lc.apply_payment(_event(key))
        assert len(mailer.sent) == 1

    def test_mail_failure_is_logged_not_raised(self, store, mailer, caplog):
        mailer.error = MailerError("connection refused")
        lc = LicenseLifecycle(store, mailer=mailer)
        key = lc.open_pending("a@b.com", "D1", "REF-1")
        row = lc.apply_payment(_event(key))
        assert row.status == ACTIVE
        assert "not sent" in caplog.text
