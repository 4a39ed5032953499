from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at the project root: marketplace/core/config.py -> marketplace/core -> marketplace -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"

DEFAULT_GATEWAY_PRIORITY = "razorpay,stripe,paypal,cod"


def _csv(value: str | None) -> list[str]:
    return [p.strip() for p in (value or "").split(",") if p.strip()]


class Settings(BaseSettings):
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./marketplace.db"
    # Comma separated origin list; "*" allows everything
    cors_origins: str = "*"
    # Per-IP requests per minute on create-order / verify
    rate_limit_per_minute: int = 60
    environment: str = "development"
    # Razorpay (cards / UPI / netbanking). Key id + secret enable the gateway.
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    # Stripe (cards). Secret key enables the gateway.
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    # PayPal (wallet). Client id + secret enable the gateway.
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_mode: str = "sandbox"  # sandbox | live
    # PayPal approval page return/cancel targets
    frontend_url: str = "http://127.0.0.1:3000"
    brand_name: str = "Marketplace"
    payment_gateway_priority: str = DEFAULT_GATEWAY_PRIORITY
    payment_request_timeout: float = 15.0  # seconds, per outbound processor call
    webhook_tolerance_seconds: int = 300
    razorpay_currencies: str = "INR"
    stripe_currencies: str = "USD,EUR,GBP,INR"
    paypal_currencies: str = "USD,EUR,GBP"
    cod_currencies: str = "INR,USD"

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator(
        "razorpay_key_id",
        "razorpay_key_secret",
        "razorpay_webhook_secret",
        "stripe_secret_key",
        "stripe_publishable_key",
        "stripe_webhook_secret",
        "paypal_client_id",
        "paypal_client_secret",
        "paypal_webhook_id",
        mode="before",
    )
    @classmethod
    def strip_credentials(cls, v: str | None) -> str:
        """Stray whitespace from copy/paste must not count as a configured key."""
        return (v or "").strip()

    @property
    def gateway_priority(self) -> list[str]:
        return [g.lower() for g in _csv(self.payment_gateway_priority)] or _csv(DEFAULT_GATEWAY_PRIORITY)

    def currencies_for(self, gateway: str) -> list[str]:
        raw = getattr(self, f"{gateway}_currencies", "")
        return [c.upper() for c in _csv(raw)]

    @property
    def razorpay_enabled(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def paypal_enabled(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_client_secret)


settings = Settings()


def cors_origins_list() -> list[str]:
    if not settings.cors_origins or settings.cors_origins.strip() == "*":
        return ["*"]
    return _csv(settings.cors_origins)
