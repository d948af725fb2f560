"""Central environment-driven settings shared by all GetFame processes.

Each process loads this once at startup. Provider credentials are optional so a
process can boot without the integrations it does not use; the webhook
verifier fails closed when a secret is missing.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # Upstream provisioning panel.
    provider_url: str = "https://justanotherpanel.com/api/v2"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 10.0
    dispatch_max_attempts: int = 3
    dispatch_backoff_seconds: float = 1.0

    # Catalog.
    profit_margin: Decimal = Decimal("2.5")
    catalog_ttl_seconds: int = 300
    catalog_fallback_rate: Decimal = Decimal("9.99")

    # Payment providers.
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_tolerance_seconds: int = 300
    nowpayments_api_url: str = "https://api.nowpayments.io/v1"
    nowpayments_api_key: str = ""
    nowpayments_ipn_secret: str = ""
    frontend_url: str = "https://getfame.net"
    backend_url: str = "https://getfame-backend.onrender.com"

    # Checkout guards.
    rate_limit_per_minute: int = 10
    min_charge_cents: int = 50
    max_charge_cents: int = 5_000_000

    # Notification sink.
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
