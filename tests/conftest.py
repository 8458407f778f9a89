from datetime import datetime, timedelta

import pytest

from license_server.app import create_app
from license_server.config import Settings
from license_server.store import MemoryLicenseStore, SqlLicenseStore

NOW = datetime(2024, 1, 10, 12, 0, 0)
PAYSTACK_IP = "52.31.139.75"
API_TOKEN = "installer-token"

BASE_ENV = {
    "APP_SECRET": "test-secret",
    "APP_ENV": "test",
    "LOG_LEVEL": "WARNING",
    "STORE_BACKEND": "memory",
    "PAYSTACK_PLAN_CODE": "PLN_test",
    "WEBHOOK_TRUST_MODE": "ip",
    "LICENSE_API_TOKEN": API_TOKEN,
    "REAPER_INTERVAL_SECONDS": "0",
    "PENDING_TTL_HOURS": "72",
}


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StubGateway:
    def __init__(self):
        self.calls = []
        self.error = None

    def initialize_transaction(self, email, plan_code, reference, metadata):
        self.calls.append({"email": email, "plan_code": plan_code, "reference": reference, "metadata": metadata})
        if self.error is not None:
            raise self.error
        return {
            "status": True,
            "data": {"authorization_url": f"https://checkout.test/{reference}", "access_code": "AC_test"},
        }


class StubMailer:
    def __init__(self):
        self.sent = []
        self.error = None

    def send_license_email(self, to, license_key, expires_at):
        if self.error is not None:
            raise self.error
        self.sent.append((to, license_key, expires_at))


def make_settings(**overrides) -> Settings:
    env = dict(BASE_ENV)
    env.update(overrides)
    return Settings(env)


def webhook_payload(license_key, email="a@b.com", fingerprint="D1", paid_at="2024-01-01",
                    event="charge.success", reference="REF-1"):
    return {
        "event": event,
        "data": {
            "reference": reference,
            "paid_at": paid_at,
            "customer": {"email": email},
            "metadata": {"licenseKey": license_key, "fingerprint": fingerprint},
        },
    }


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture(params=["memory", "sql"])
def store(request, clock, tmp_path):
    if request.param == "memory":
        s = MemoryLicenseStore(clock=clock)
    else:
        s = SqlLicenseStore(f"sqlite:///{tmp_path / 'licenses.db'}", clock=clock)
        s.create_schema()
    yield s
    s.close()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def mailer():
    return StubMailer()


@pytest.fixture
def make_app(store, gateway, clock, mailer):
    def factory(**overrides):
        return create_app(make_settings(**overrides), store=store, gateway=gateway, clock=clock, mailer=mailer)
    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth():
    return {"X-License-Token": API_TOKEN}
