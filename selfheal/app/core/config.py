"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "SelfHeal"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    api_prefix: str = "/api/v1"

    # State store
    database_url: str = "sqlite+aiosqlite:///./selfheal.db"
    store_connect_timeout_seconds: float = 2.0
    incident_ttl_seconds: int = 7 * 24 * 3600
    approval_ttl_seconds: int = 3600
    state_purge_interval_seconds: int = 3600

    # Confidence Protocol
    hypothesis_confidence_threshold: float = 90.0
    context_match_threshold: float = 85.0

    # Edge case detection
    low_confidence_threshold: float = 60.0
    critical_services: list[str] = ["payment", "auth", "checkout", "api-gateway", "database"]
    customer_facing_keywords: list[str] = ["checkout", "payment", "login", "signup", "cart", "order"]

    # Context retrieval (runbook search)
    context_api_url: Optional[str] = None
    context_api_token: Optional[str] = None
    context_result_limit: int = 5
    context_timeout_seconds: float = 15.0

    # Reasoning provider
    reasoning_provider: str = "gemini"  # gemini | on-prem
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    onprem_llm_url: str = "http://localhost:11434"
    onprem_llm_model: str = "llama3"
    reasoning_timeout_seconds: float = 120.0

    # Sandboxed execution (Coder)
    coder_api_url: Optional[str] = None
    coder_api_token: Optional[str] = None
    coder_template_id: Optional[str] = None
    coder_ready_timeout_seconds: float = 300.0
    execution_timeout_seconds: float = 600.0

    # Verification
    verification_timeout_seconds: float = 30.0
    preflight_enabled: bool = True

    # Approval channel (Slack or compatible)
    slack_bot_token: Optional[str] = None
    slack_api_url: str = "https://slack.com/api"
    slack_approval_channel: str = "incident-approvals"
    slack_signing_secret: Optional[str] = None
    slack_signature_max_age_seconds: int = 300
    notification_timeout_seconds: float = 10.0

    # Incident tracker (PagerDuty)
    pagerduty_api_key: Optional[str] = None
    pagerduty_api_url: str = "https://api.pagerduty.com"
    pagerduty_from_email: str = "selfheal@localhost"
    pagerduty_webhook_secret: Optional[str] = None

    # Circuit breaker applied to every collaborator
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout_seconds: int = 30

    # Post-incident learning
    learning_enabled: bool = False
    learning_stability_period_seconds: int = 24 * 3600
    learning_interval_seconds: int = 3600

    # Pending approval expiry handling
    approval_sweep_interval_seconds: int = 60
    escalate_on_approval_timeout: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
