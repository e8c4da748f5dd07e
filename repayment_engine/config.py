"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class EngineConfig(BaseSettings):
    """Repayment engine configuration"""

    # Delinquency policy
    grace_days: int = 30           # Days past the oldest unpaid due date before overdue becomes arrears
    npl_days: int = 90             # Days past due at which a loan is non-performing
    max_tenor_months: int = 60

    # Monetary tolerances (Decimal strings)
    match_tolerance: str = "0.01"        # Statement vs system amount
    installment_tolerance: str = "1.00"  # Month counts as paid within this shortfall
    default_currency: str = "NGN"

    # Storage configuration
    database_url: str = "sqlite:///repayments.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "REPAYMENT_"
        env_file = ".env"
        case_sensitive = False

    @property
    def match_tolerance_decimal(self) -> Decimal:
        return Decimal(self.match_tolerance)

    @property
    def installment_tolerance_decimal(self) -> Decimal:
        return Decimal(self.installment_tolerance)


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
