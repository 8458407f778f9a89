import os
from dotenv import load_dotenv

load_dotenv()

PAYSTACK_WEBHOOK_IPS = "52.31.139.75,52.49.173.169,52.214.14.220"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _flag(value, default=False):
    v = str(value or "").strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return default


def _csv(value: str) -> list:
    return [p.strip() for p in (value or "").split(",") if p.strip()]


def normalize_database_url(url: str) -> str:
    # Render/Heroku hand out postgres:// which SQLAlchemy no longer accepts
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


class Settings:
    def __init__(self, environ=None):
        env = os.environ if environ is None else environ
        get = lambda key, default="": (env.get(key) or default)

        self.SECRET_KEY = get("APP_SECRET", "change_this_in_render_env")
        self.APP_ENV = get("APP_ENV", "development").lower()
        self.LOG_LEVEL = get("LOG_LEVEL", "INFO").upper()
        self.HOST = get("HOST", "0.0.0.0")
        self.PORT = int(get("PORT", "8080"))
        self.PRODUCT_CODE = get("PRODUCT_CODE", "license-desktop")

        self.DATABASE_URL = normalize_database_url(get("DATABASE_URL", "sqlite:///data/licenses.db"))
        self.STORE_BACKEND = get("STORE_BACKEND", "sql").lower()
        self.DB_TIMEOUT_SECONDS = float(get("DB_TIMEOUT_SECONDS", "10"))

        self.PAYSTACK_SECRET_KEY = get("PAYSTACK_SECRET_KEY")
        self.PAYSTACK_WEBHOOK_SECRET = get("PAYSTACK_WEBHOOK_SECRET", self.PAYSTACK_SECRET_KEY)
        self.PAYSTACK_PLAN_CODE = get("PAYSTACK_PLAN_CODE")
        self.PAYSTACK_BASE_URL = get("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/")
        self.PAYSTACK_TIMEOUT_SECONDS = float(get("PAYSTACK_TIMEOUT_SECONDS", "15"))
        # unset means: mock outside production
        self.PAYSTACK_USE_MOCK = _flag(get("PAYSTACK_USE_MOCK"), default=not self.is_production)

        self.WEBHOOK_TRUST_MODE = get("WEBHOOK_TRUST_MODE", "ip").lower()
        self.PAYSTACK_WEBHOOK_IPS = _csv(get("PAYSTACK_WEBHOOK_IPS", PAYSTACK_WEBHOOK_IPS))
        self.TRUST_LOOPBACK_WEBHOOKS = _flag(get("TRUST_LOOPBACK_WEBHOOKS"))
        # X-Forwarded-For is only believed when the direct peer is one of these
        self.TRUSTED_PROXIES = _csv(get("TRUSTED_PROXIES"))
        self.PROXY_HOPS = int(get("PROXY_HOPS", "1"))

        self.SMTP_HOST = get("SMTP_HOST").strip()
        self.SMTP_PORT = int(get("SMTP_PORT", "465"))
        self.SMTP_USERNAME = get("SMTP_USERNAME")
        self.SMTP_PASSWORD = get("SMTP_PASSWORD")
        self.SMTP_FROM = get("SMTP_FROM").strip()
        self.SMTP_STARTTLS = _flag(get("SMTP_STARTTLS"), default=True)
        self.SMTP_TIMEOUT_SECONDS = float(get("SMTP_TIMEOUT_SECONDS", "15"))

        self.LICENSE_API_TOKEN = get("LICENSE_API_TOKEN").strip()
        self.ALLOW_LOCAL_VALIDATION = _flag(get("ALLOW_LOCAL_VALIDATION"))
        self.OPAQUE_REJECTIONS = _flag(get("OPAQUE_REJECTIONS"))

        self.LICENSE_VALIDITY_DAYS = int(get("LICENSE_VALIDITY_DAYS", "30"))
        self.REAPER_INTERVAL_SECONDS = int(get("REAPER_INTERVAL_SECONDS", "3600"))
        self.PENDING_TTL_HOURS = int(get("PENDING_TTL_HOURS", "72"))

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


settings = Settings()
