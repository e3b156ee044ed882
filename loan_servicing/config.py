"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Product rules (interest recalculation, accounting type, tolerances) are
per-loan LoanProductSettings, not environment settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Defaults for new loans
    default_currency: str = "USD"
    default_transaction_processor: str = "mifos-standard-strategy"

    # Collaborator switches
    enable_business_events: bool = True
    enable_schedule_history: bool = True
    enable_accounting_posting: bool = True
    validate_disbursement_collateral: bool = True

    # Guard rail on full-history replays
    max_reprocess_transactions: int = 10000

    # Days past an installment due date before overdue penalties apply
    overdue_penalty_grace_days: int = 0

    class Config:
        env_prefix = "LOAN_SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
