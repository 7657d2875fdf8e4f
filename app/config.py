"""AdPulse — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Google Ads ──
    google_ads_client_id: str = ""
    google_ads_client_secret: str = ""
    google_ads_developer_token: str = ""
    google_ads_login_customer_id: Optional[str] = None
    google_ads_redirect_uri: str = "http://localhost:8000/oauth/google-ads/callback"
    google_ads_api_version: str = "v17"
    google_ads_base_url: str = "https://googleads.googleapis.com"
    google_oauth_token_url: str = "https://oauth2.googleapis.com/token"
    google_oauth_authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"

    # ── Meta API ──
    meta_app_id: str = ""
    meta_app_secret: str = ""
    meta_redirect_uri: str = "http://localhost:8000/oauth/meta/callback"
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_dialog_url: str = "https://www.facebook.com"

    # ── Shopify ──
    shopify_api_key: str = ""
    shopify_api_secret: str = ""
    shopify_redirect_uri: str = "http://localhost:8000/oauth/shopify/callback"
    shopify_api_version: str = "2024-01"

    # ── Database ──
    database_url: str = ""

    # ── Job Queue ──
    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 2.0
    job_defer_seconds: float = 15.0
    completed_job_retention_seconds: int = 3600  # 1 hour
    failed_job_retention_seconds: int = 86400  # 24 hours, kept for postmortem
    stalled_job_timeout_seconds: int = 600  # since the last heartbeat
    job_heartbeat_seconds: float = 60.0

    # ── Workers ──
    worker_enabled: bool = True
    worker_concurrency: int = 5
    worker_poll_interval_seconds: float = 1.0

    # ── Sync ──
    adapter_timeout_seconds: float = 30.0
    http_timeout_seconds: float = 30.0
    token_refresh_margin_seconds: int = 300  # refresh 5 min before expiry
    sync_lookback_days: int = 30

    # ── Scheduler ──
    scheduler_enabled: bool = True
    sync_all_cron: str = "0 */6 * * *"  # Every 6 hours
    maintenance_interval_minutes: int = 10

    # ── App ──
    log_level: str = "INFO"

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/adpulse.db"
        return "sqlite:///./adpulse.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
