from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./settlement.db"
    database_echo: bool = False
    secret_key: str = "change-me"

    # Internal API security
    checkout_api_key: str = ""
    admin_api_key: str = ""

    # Stripe (card payments)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Installment gateway
    installment_gateway_base_url: str | None = None
    installment_gateway_api_key: str = ""
    installment_gateway_webhook_secret: str = ""
    installment_gateway_timeout_seconds: float = 10.0

    # Reconciliation sweep
    reconciliation_worker_enabled: bool = False
    reconciliation_interval_seconds: int = 15 * 60
    reconciliation_min_age_seconds: int = 5 * 60
    reconciliation_max_age_hours: int = 72
    reconciliation_batch_size: int = 50
    reconciliation_max_attempts: int = 5
    reconciliation_trigger_label: str = "scheduler"
    payment_pending_timeout_minutes: int = 72 * 60

    # Best-effort side effects
    side_effect_workers: int = 4
    side_effect_queue_size: int = 200
    notification_webhook_url: str | None = None
    notification_timeout_seconds: float = 5.0
    notification_event_kinds: list[str] = Field(default_factory=list)
    shipment_base_url: str | None = None
    shipment_api_key: str = ""
    shipment_timeout_seconds: float = 10.0

    @field_validator("notification_event_kinds", mode="before")
    @classmethod
    def _parse_event_kinds(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Maintenance scheduler
    maintenance_scheduler_enabled: bool = False
    maintenance_schedule_path: str = "config/schedules.toml"

    # Tracing
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
