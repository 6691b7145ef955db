"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Loan policy (rates, limits, grace periods) is NOT configured here; it lives in the
organisation's LoanSettings record and the per-loan snapshot.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicroloansConfig(BaseSettings):
    """Micro-loan back office configuration"""

    # Database configuration
    database_url: str = "sqlite:///microloans.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    cron_secret: str = ""  # Empty = cron endpoint accepts unsigned calls

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Organisation details used in notification templates
    company_name: str = "Microloans"
    mpesa_paybill: str = "123456"
    admin_notification_email: str = ""

    # Outbound email (HTTP email API)
    email_api_url: str = ""  # Empty = emails are logged, not sent
    email_api_key: str = ""
    email_sender: str = "no-reply@microloans.local"
    notification_timeout_seconds: float = 5.0
    max_notification_retries: int = 3
    failed_email_retry_hours: int = 24

    # Business rules configuration
    link_validity_hours: float = 24
    max_active_loans: int = 1
    max_conflict_retries: int = 5

    # Scheduler configuration
    scheduler_deadline_seconds: float = 300.0
    cleanup_retention_days: int = 30

    class Config:
        env_prefix = "MICROLOANS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicroloansConfig()


def get_config() -> MicroloansConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicroloansConfig:
    """Reload configuration from environment"""
    global config
    config = MicroloansConfig()
    return config
