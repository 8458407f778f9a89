import json
import logging
from datetime import timedelta
from functools import wraps

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from license_server.config import settings as default_settings
from license_server.db import utcnow
from license_server.gates import TrustedProxyFix, TrustGate, ValidationGate
from license_server.lifecycle import PAYMENT_PENDING, EXPIRED_CODE, LicenseLifecycle, isoformat
from license_server.mailer import SmtpMailer
from license_server.paystack import PaystackClient, PaystackError
from license_server.reaper import ExpiryReaper
from license_server.security import activation_token, make_payment_reference, normalize_email, normalize_key
from license_server.store import open_store
from license_server.webhook import event_type, is_supported, parse_payment_event

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

bp = Blueprint("licenses", __name__)


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class Services:
    def __init__(self, settings, store, lifecycle, trust_gate, validation_gate, gateway, reaper):
        self.settings = settings
        self.store = store
        self.lifecycle = lifecycle
        self.trust_gate = trust_gate
        self.validation_gate = validation_gate
        self.gateway = gateway
        self.reaper = reaper


def services() -> Services:
    return current_app.extensions["license_server"]


def _body() -> dict:
    j = request.get_json(silent=True)
    return j if isinstance(j, dict) else {}


def _text(j, *names) -> str:
    for name in names:
        v = j.get(name)
        if v:
            return str(v).strip()
    return ""


def require_validation_gate(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = request.headers.get("X-License-Token") or request.headers.get("X-Installer-Token")
        if not services().validation_gate.permits(token, request.remote_addr):
            return jsonify({"error": "forbidden"}), 403
        return fn(*args, **kwargs)
    return wrapper


@bp.get("/")
@bp.get("/health")
@bp.get("/healthz")
def health():
    svc = services()
    body = {"timestamp": isoformat(utcnow()), "product": svc.settings.PRODUCT_CODE}
    try:
        svc.store.ping()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({**body, "status": "degraded", "store": "unreachable"}), 503
    return jsonify({**body, "status": "ok", "store": "ok"})


@bp.post("/subscribe")
@bp.post("/paystack/subscribe")
def subscribe():
    svc = services()
    j = _body()
    email = normalize_email(j.get("email"))
    fingerprint = _text(j, "fingerprint")
    plan_code = _text(j, "planCode") or svc.settings.PAYSTACK_PLAN_CODE

    if not email or "@" not in email:
        return jsonify({"error": "a valid email is required"}), 400
    if not fingerprint:
        return jsonify({"error": "fingerprint is required"}), 400
    if not plan_code:
        logger.error("Subscribe called but PAYSTACK_PLAN_CODE is not configured")
        return jsonify({"error": "PAYSTACK_PLAN_CODE is not configured"}), 500

    reference = make_payment_reference()
    license_key = svc.lifecycle.open_pending(email, fingerprint, reference)
    metadata = {"licenseKey": license_key, "fingerprint": fingerprint, "product": svc.settings.PRODUCT_CODE}
    try:
        resp = svc.gateway.initialize_transaction(
            email=email, plan_code=plan_code, reference=reference, metadata=metadata,
        )
    except PaystackError as e:
        logger.error(f"Subscribe failed for {license_key[:8]}... (ref {reference}): {e}")
        return jsonify({"error": str(e), "retryable": True}), 502

    data = resp.get("data") or {}
    return jsonify({
        "status": "pending",
        "licenseKey": license_key,
        "reference": reference,
        "authorizationUrl": data.get("authorization_url"),
        "accessCode": data.get("access_code"),
    })


@bp.post("/validate")
@bp.post("/paystack/validate")
@require_validation_gate
def validate():
    svc = services()
    j = _body()
    email = normalize_email(j.get("email"))
    license_key = normalize_key(_text(j, "licenseKey", "license_key"))
    fingerprint = _text(j, "fingerprint")
    if not (email and license_key and fingerprint):
        return jsonify({"error": "licenseKey, email and fingerprint are required"}), 400

    result = svc.lifecycle.validate(email, license_key, fingerprint)
    if result.ok:
        return jsonify({
            "status": "valid",
            "licenseKey": result.record.license_key,
            "expiresAt": isoformat(result.expires_at),
            "activationToken": activation_token(result.record.license_key, fingerprint, svc.settings.SECRET_KEY),
        })

    logger.info("Validation rejected for %s...: %s", license_key[:8], result.code)
    if result.code == PAYMENT_PENDING:
        return jsonify({"error": result.message, "code": result.code}), 409
    if svc.settings.OPAQUE_REJECTIONS:
        return jsonify({"error": "unauthorized", "code": "unauthorized"}), 401
    body = {"error": result.message, "code": result.code}
    if result.code == EXPIRED_CODE:
        body["expiresAt"] = isoformat(result.expires_at)
    return jsonify(body), 401


@bp.post("/deactivate")
@bp.post("/paystack/deactivate")
@require_validation_gate
def deactivate():
    license_key = normalize_key(_text(_body(), "licenseKey", "license_key"))
    if not license_key:
        return jsonify({"error": "licenseKey is required"}), 400
    if not services().lifecycle.deactivate(license_key):
        return jsonify({"error": "license not found"}), 404
    return jsonify({"status": "deactivated", "licenseKey": license_key})


@bp.post("/webhook")
@bp.post("/paystack/webhook")
def paystack_webhook():
    svc = services()
    body = request.get_data(cache=True)
    sig = request.headers.get("x-paystack-signature", "")
    if not svc.trust_gate.is_trusted(request.remote_addr, body, sig):
        return jsonify({"error": "untrusted source"}), 403

    try:
        payload = json.loads(body or b"null")
    except ValueError:
        return jsonify({"error": "invalid JSON payload"}), 400
    if not isinstance(payload, dict):
        return jsonify({"error": "invalid JSON payload"}), 400

    if not is_supported(payload):
        logger.info("Ignoring unsupported webhook event: %s", event_type(payload) or "(none)")
        return jsonify({"status": "ignored", "reason": "unsupported event"}), 202

    event = parse_payment_event(payload)
    if event is None:
        logger.warning("Webhook %s received without licenseKey/email", event_type(payload))
        return jsonify({"status": "ignored", "reason": "missing licenseKey or email"}), 202

    record = svc.lifecycle.apply_payment(event)
    return jsonify({
        "status": "processed",
        "licenseKey": record.license_key,
        "licenseStatus": record.status,
        "expiresAt": isoformat(record.expires_at),
    })


def _http_error(e: HTTPException):
    return jsonify({"error": e.name.lower()}), e.code


def _unhandled(e: Exception):
    logger.error(f"Unhandled exception: {e}", exc_info=True)
    return jsonify({"error": "internal server error"}), 500


def create_app(settings=None, store=None, gateway=None, clock=None, mailer=None) -> Flask:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    store = store or open_store(settings, clock=clock)
    mailer = mailer or SmtpMailer.from_settings(settings)
    lifecycle = LicenseLifecycle(
        store,
        validity=timedelta(days=settings.LICENSE_VALIDITY_DAYS),
        clock=clock,
        mailer=mailer,
    )
    reaper = ExpiryReaper.from_settings(store, settings)
    reaper.run_once()
    reaper.start()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.SECRET_KEY
    if settings.TRUSTED_PROXIES and settings.PROXY_HOPS > 0:
        app.wsgi_app = TrustedProxyFix(app.wsgi_app, settings.TRUSTED_PROXIES, x_for=settings.PROXY_HOPS)

    app.extensions["license_server"] = Services(
        settings=settings,
        store=store,
        lifecycle=lifecycle,
        trust_gate=TrustGate.from_settings(settings),
        validation_gate=ValidationGate.from_settings(settings),
        gateway=gateway or PaystackClient.from_settings(settings),
        reaper=reaper,
    )
    app.register_blueprint(bp)
    app.register_error_handler(HTTPException, _http_error)
    app.register_error_handler(Exception, _unhandled)

    logger.info(
        "License server ready (store=%s, webhook trust=%s, gateway mock=%s, mail=%s)",
        settings.STORE_BACKEND, settings.WEBHOOK_TRUST_MODE, settings.PAYSTACK_USE_MOCK,
        "on" if mailer is not None else "off",
    )
    return app


def main():
    app = create_app()
    s = default_settings
    logger.info(f"Starting license server on {s.HOST}:{s.PORT}")
    app.run(host=s.HOST, port=s.PORT, threaded=True)


if __name__ == "__main__":
    main()
