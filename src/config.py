from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    email_bounces_table: str = "email_bounces"
    sendgrid_webhook_public_key: str | None = None
    mailgun_webhook_signing_key: str | None = None
    postmark_webhook_token: str | None = None
    webhook_timestamp_tolerance_seconds: int = 300
    webhook_log_redact_emails: bool = False
    sns_cert_fetch_timeout_seconds: float = 5.0
    sns_cert_cache_ttl_seconds: int = 0  # 0 disables the certificate cache

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
