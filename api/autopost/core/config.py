from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "autopost-api"
    environment: str = "dev"
    cron_secret: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    credential_encryption_key: str | None = None
    x_api_base_url: str = "https://api.x.com"
    x_token_url: str = "https://api.x.com/2/oauth2/token"
    x_client_id: str | None = None
    x_client_secret: str | None = None
    dispatch_batch_size: int = 10
    job_max_attempts: int = 3
    job_retry_delay_seconds: int = 300
    token_refresh_lookahead_seconds: int = 60
    platform_request_timeout_seconds: float = 10.0
    reconnect_bump_delay_seconds: int = 30
    schedule_min_lead_seconds: int = 30
    monitor_stale_pending_minutes: int = 10
    monitor_stuck_running_minutes: int = 15
    monitor_failure_lookback_minutes: int = 60
    monitor_row_limit: int = 20
    alert_dedupe_monitor_minutes: int = 60
    alert_dedupe_report_minutes: int = 30
    alert_subject_prefix: str = "[autopost]"
    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    alert_from_email: str | None = None
    alert_to_email: str | None = None
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    admin_emails: str = ""
    otel_enabled: bool = True
    otel_service_name: str = "autopost-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="AP_", extra="ignore")

    @property
    def admin_email_set(self) -> set[str]:
        return {chunk.strip().lower() for chunk in self.admin_emails.split(",") if chunk.strip()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
