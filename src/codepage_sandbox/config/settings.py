from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Configuration settings for codepage-sandbox.

    Values can be overridden by environment variables with CODEPAGE_SANDBOX__ prefix.
    e.g. CODEPAGE_SANDBOX__TIMEOUT_MS=5000
    """
    model_config = SettingsConfigDict(
        env_prefix="CODEPAGE_SANDBOX__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="codepage-sandbox", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")

    # Platform defaults for a single execution (merged with caller overrides)
    timeout_ms: int = Field(
        default=30000,
        gt=0,
        description="Default wall-clock limit for a script run in milliseconds."
    )
    memory_limit_bytes: int = Field(
        default=128 * 1024 * 1024,
        gt=0,
        description="Default resident memory limit for a script run in bytes."
    )
    api_call_limit: int = Field(
        default=100,
        ge=0,
        description="Default number of mock API calls a script run may make."
    )
    environment: str = Field(
        default="development",
        description="Default execution environment (development, staging, production)."
    )

    # Sandbox supervision
    monitor_interval: float = Field(
        default=0.1,
        gt=0,
        description="Interval in seconds between deadline checks and memory samples."
    )
    mock_latency_scale: float = Field(
        default=1.0,
        ge=0,
        description="Multiplier applied to the artificial latency of mock API calls."
    )
    max_concurrent_executions: int = Field(
        default=4,
        ge=1,
        description="Worker count used by execute_many."
    )

    # Reporting
    report_history_size: int = Field(
        default=100,
        ge=1,
        description="Number of recent results kept per project/version."
    )
    report_result_sample: int = Field(
        default=20,
        ge=0,
        description="Number of most recent results embedded in a generated report."
    )

    # Metrics and alerting
    metrics_buffer_size: int = Field(
        default=1000,
        ge=1,
        description="Buffered metric count that triggers a flush into the retained store."
    )
    metrics_flush_interval: float = Field(
        default=30.0,
        gt=0,
        description="Interval in seconds for the background metrics flush."
    )
    system_sample_interval: float = Field(
        default=60.0,
        gt=0,
        description="Interval in seconds between host CPU/memory samples."
    )
    install_default_rules: bool = Field(
        default=True,
        description="Whether the built-in alert rules are created at startup."
    )
    notification_workers: int = Field(
        default=2,
        ge=1,
        description="Threads delivering alert notifications in the background."
    )

    # Logging
    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_file: Optional[str] = Field(default=None, description="Optional log file path.")
    log_json: bool = Field(default=False, description="Emit logs as JSON lines.")

    # Notification channels
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Incoming webhook used by the slack alert channel."
    )
    smtp_host: Optional[str] = Field(default=None, description="SMTP relay for the email channel.")
    smtp_port: int = Field(default=25, description="SMTP relay port.")
    alert_email_from: str = Field(default="alerts@codepage.local", description="Sender address for alert mail.")
    alert_email_to: Optional[str] = Field(default=None, description="Recipient address for alert mail.")


def get_settings() -> Settings:
    """Retrieve application settings."""
    return Settings()
