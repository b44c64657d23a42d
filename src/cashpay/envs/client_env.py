from __future__ import annotations

import os
from typing import List
from urllib.parse import urlparse

from pydantic import BaseModel, field_validator

DEFAULT_ENDPOINT = "https://pay.infra.cash"


def _validate_http_url(v: str, name: str) -> str:
    if not v:
        raise ValueError(f"{name} cannot be empty")
    parsed = urlparse(v)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError(f"{name} must start with http:// or https://")
    if not parsed.netloc:
        raise ValueError(f"{name} must include a host")
    return v.rstrip("/")


class Settings(BaseModel):
    """Typed client settings built from environment variables."""

    endpoint: str = DEFAULT_ENDPOINT
    # Open the push channel and run the expiry countdown after creation.
    listen: bool = True
    user_currency: str = "USD"
    network: str = "main"
    http_timeout: float = 10.0
    trusted_endpoints: List[str] = []

    # Webhook receiver settings
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    webhook_path: str = "/webhooks/cashpay"

    app_name: str = "CashPay"
    app_version: str = "0.1.0"

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        return _validate_http_url(v, "Endpoint")

    @field_validator("trusted_endpoints")
    @classmethod
    def validate_trusted_endpoints(cls, v: List[str]) -> List[str]:
        return [_validate_http_url(e, "Trusted endpoint") for e in v]

    @field_validator("http_timeout")
    @classmethod
    def validate_http_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("HTTP timeout must be positive")
        return v

    def resolved_trusted_endpoints(self) -> List[str]:
        """Trusted endpoints, defaulting to the pay server endpoint itself."""
        return self.trusted_endpoints or [self.endpoint]


def get_settings() -> Settings:
    """Return typed settings instance sourced from env vars."""
    trusted = os.environ.get("CASHPAY_TRUSTED_ENDPOINTS", "")
    return Settings(
        endpoint=os.environ.get("CASHPAY_ENDPOINT", DEFAULT_ENDPOINT),
        listen=os.environ.get("CASHPAY_LISTEN", "true").lower() == "true",
        user_currency=os.environ.get("CASHPAY_USER_CURRENCY", "USD"),
        network=os.environ.get("CASHPAY_NETWORK", "main"),
        http_timeout=float(os.environ.get("CASHPAY_HTTP_TIMEOUT", "10.0")),
        trusted_endpoints=[e.strip() for e in trusted.split(",") if e.strip()],
        webhook_host=os.environ.get("CASHPAY_WEBHOOK_HOST", "0.0.0.0"),
        webhook_port=int(os.environ.get("CASHPAY_WEBHOOK_PORT", "8080")),
        webhook_path=os.environ.get("CASHPAY_WEBHOOK_PATH", "/webhooks/cashpay"),
    )
