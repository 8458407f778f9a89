import hmac
import ipaddress
import logging

from werkzeug.middleware.proxy_fix import ProxyFix

from license_server.security import verify_paystack_signature

logger = logging.getLogger(__name__)

IP_MODE = "ip"
SIGNATURE_MODE = "signature"


def _address(remote_addr):
    try:
        return ipaddress.ip_address((remote_addr or "").strip())
    except ValueError:
        return None


def is_loopback(remote_addr) -> bool:
    addr = _address(remote_addr)
    return bool(addr and addr.is_loopback)


def _networks(addresses):
    return [ipaddress.ip_network(a, strict=False) for a in addresses]


def address_in(remote_addr, networks) -> bool:
    addr = _address(remote_addr)
    return bool(addr and any(addr in net for net in networks))


class TrustedProxyFix:
    """
    WSGI middleware that applies ProxyFix only when the direct peer is a known
    proxy. Anyone else keeps their socket address whatever X-Forwarded-For says.
    """

    def __init__(self, wsgi_app, trusted_proxies, x_for=1):
        self.wsgi_app = wsgi_app
        self.proxied = ProxyFix(wsgi_app, x_for=x_for)
        self.networks = _networks(trusted_proxies)

    def __call__(self, environ, start_response):
        if address_in(environ.get("REMOTE_ADDR"), self.networks):
            return self.proxied(environ, start_response)
        return self.wsgi_app(environ, start_response)


class TrustGate:
    """Decides whether a payment-gateway callback really came from the gateway."""

    def __init__(self, mode=IP_MODE, allowed_addresses=(), trust_loopback=False, secret=""):
        if mode not in (IP_MODE, SIGNATURE_MODE):
            raise ValueError(f"unknown webhook trust mode: {mode!r}")
        self.mode = mode
        self.networks = _networks(allowed_addresses)
        self.trust_loopback = trust_loopback
        self.secret = secret or ""
        if mode == SIGNATURE_MODE and not self.secret:
            logger.error("Webhook signature mode enabled without a secret; every callback will be rejected")

    @classmethod
    def from_settings(cls, settings):
        return cls(
            mode=settings.WEBHOOK_TRUST_MODE,
            allowed_addresses=settings.PAYSTACK_WEBHOOK_IPS,
            trust_loopback=settings.TRUST_LOOPBACK_WEBHOOKS,
            secret=settings.PAYSTACK_WEBHOOK_SECRET,
        )

    def address_allowed(self, remote_addr) -> bool:
        addr = _address(remote_addr)
        if addr is None:
            return False
        if self.trust_loopback and addr.is_loopback:
            return True
        return address_in(remote_addr, self.networks)

    def is_trusted(self, remote_addr, body: bytes, signature: str) -> bool:
        if self.mode == SIGNATURE_MODE:
            ok = verify_paystack_signature(body, signature, self.secret)
        else:
            ok = self.address_allowed(remote_addr)
        if not ok:
            logger.warning("Rejected untrusted webhook from %s (mode=%s)", remote_addr, self.mode)
        return ok


class ValidationGate:
    """Shared-token (or local-origin) check in front of validate/deactivate."""

    def __init__(self, token="", allow_local=False):
        self.token = (token or "").strip()
        self.allow_local = allow_local

    @classmethod
    def from_settings(cls, settings):
        return cls(token=settings.LICENSE_API_TOKEN, allow_local=settings.ALLOW_LOCAL_VALIDATION)

    def permits(self, provided_token, remote_addr) -> bool:
        if self.token and provided_token and hmac.compare_digest(provided_token.encode(), self.token.encode()):
            return True
        if self.allow_local and is_loopback(remote_addr):
            return True
        logger.warning("Forbidden call from %s", remote_addr)
        return False
