"""Central environment-driven settings for the PayLink service.

The process loads this once at startup. Provider keys, sweep windows and
redirect defaults are controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "paylink"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 30

    # Base64 encoded 32 byte key for AES-256-GCM merchant credentials.
    merchant_secret_encryption_key: str = ""

    santimpay_merchant_id: str = ""
    santimpay_private_key: str = ""
    santimpay_testbed: bool = True
    chapa_base_url: str = "https://api.chapa.co/v1"
    gateway_failover: dict[str, str] = {"santimpay": "chapa"}

    provider_timeout_seconds: float = 30.0
    provider_status_retries: int = 3
    provider_retry_backoff_seconds: float = 1.0

    webhook_base_url: str = "http://localhost:8000"
    default_success_url: str = "http://localhost:5173/success"
    default_cancel_url: str = "http://localhost:5173/cancel"
    default_failure_url: str = "http://localhost:5173/failed"

    reconcile_interval_seconds: int = 300
    reconcile_grace_seconds: int = 15 * 60
    reconcile_timeout_seconds: int = 24 * 60 * 60
    reconcile_window_seconds: int = 7 * 24 * 60 * 60
    reconcile_batch_size: int = 100
    cleanup_interval_seconds: int = 6 * 60 * 60
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
