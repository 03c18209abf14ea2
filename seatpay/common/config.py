"""Central environment-driven settings for the seat payment service.

The process loads this once at startup. Provider credentials and engine
windows are controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "seatpay"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    payme_merchant_id: str = ""
    payme_login: str = "Paycom"
    payme_secret_key: str = ""
    payme_test_secret_key: str = ""
    payme_sandbox: bool = False
    payme_checkout_url: str = "https://checkout.paycom.uz"

    click_merchant_id: str = ""
    click_service_id: str = ""
    click_merchant_user_id: str = ""
    click_secret_key: str = ""
    click_checkout_url: str = "https://my.click.uz/services/pay"
    click_return_url: str = "http://localhost:3000/payment/result"

    # Open transaction window (provider standard is 12 hours).
    transaction_timeout_seconds: int = 43_200
    sweep_interval_seconds: int = 60
    sweep_batch_size: int = 100
    ledger_max_retries: int = 3
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
