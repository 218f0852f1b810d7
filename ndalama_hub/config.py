"""
Configuration Management Module

Centralized configuration using pydantic-settings; every field can be set
from an NDALAMA_* environment variable or a .env file.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class NdalamaConfig(BaseSettings):
    """NdalamaHub lending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="NDALAMA_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_url: str = "sqlite:///ndalama_hub.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    cors_origins: str = "*"  # comma separated

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Lending rules
    default_currency: str = "MWK"
    min_loan_amount: Decimal = Decimal("100")
    max_loan_amount: Decimal = Decimal("1000000")
    max_term_months: int = 60
    due_date_policy: str = "thirty_day"  # thirty_day or calendar_month
    overpayment_policy: str = "accept"  # accept, reject, clamp, carry_forward

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = NdalamaConfig()


def get_config() -> NdalamaConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> NdalamaConfig:
    """Reload configuration from environment"""
    global config
    config = NdalamaConfig()
    return config
