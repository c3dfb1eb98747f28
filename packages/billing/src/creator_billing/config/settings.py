"""Configuration settings for the creator billing core."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingSettings(BaseSettings):
    """Flat settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Invoicing defaults
    currency: str = Field(default="INR", validation_alias="BILLING_CURRENCY")
    default_gst_rate: float = Field(default=18.0, validation_alias="BILLING_GST_RATE")
    default_gst_type: Literal["cgst_sgst", "igst"] = Field(
        default="cgst_sgst", validation_alias="BILLING_GST_TYPE"
    )
    default_tds_rate: float = Field(default=10.0, validation_alias="BILLING_TDS_RATE")
    payment_terms_days: int = Field(default=30, validation_alias="BILLING_PAYMENT_TERMS_DAYS")
    hsn_code: str = Field(default="998314", validation_alias="BILLING_HSN_CODE")
    eligible_deal_statuses: list[str] = Field(
        default=["completed", "live", "paid"],
        validation_alias="BILLING_ELIGIBLE_DEAL_STATUSES",
    )
    agency_payout_statuses: list[str] = Field(
        default=["completed", "paid"],
        validation_alias="BILLING_AGENCY_PAYOUT_STATUSES",
    )
    # Used when a deal carries no monetary value; flagged on the line item
    fallback_deal_value: float = Field(
        default=0.0, validation_alias="BILLING_FALLBACK_DEAL_VALUE"
    )

    # Subscription billing
    subscription_gst_rate: float = Field(
        default=0.18, validation_alias="BILLING_SUBSCRIPTION_GST_RATE"
    )
    quarterly_discount_rate: float = Field(
        default=0.10, validation_alias="BILLING_QUARTERLY_DISCOUNT_RATE"
    )
    grace_period_days: int = Field(default=3, validation_alias="BILLING_GRACE_PERIOD_DAYS")
    cycle_payment_tolerance: float = Field(
        default=50.0, validation_alias="BILLING_CYCLE_PAYMENT_TOLERANCE"
    )
    payment_due_offset_days: int = Field(
        default=7, validation_alias="BILLING_PAYMENT_DUE_OFFSET_DAYS"
    )
    proration_cycle_days: int = Field(
        default=90, validation_alias="BILLING_PRORATION_CYCLE_DAYS"
    )
    refund_window_days: int = Field(default=15, validation_alias="BILLING_REFUND_WINDOW_DAYS")
    upgrade_rollback_days: int = Field(
        default=7, validation_alias="BILLING_UPGRADE_ROLLBACK_DAYS"
    )
    trial_days: int = Field(default=14, validation_alias="BILLING_TRIAL_DAYS")

    # Storage boundary encryption for bank and tax identifiers
    encryption_key: SecretStr = Field(..., validation_alias="BILLING_ENCRYPTION_KEY")

    # Platform gateway (notifications, rendering, object storage)
    platform_api_url: str = Field(
        default="http://localhost:8080", validation_alias="PLATFORM_API_URL"
    )
    platform_api_token: SecretStr | None = Field(
        default=None, validation_alias="PLATFORM_API_TOKEN"
    )
    platform_api_timeout: float = Field(default=30.0, validation_alias="PLATFORM_API_TIMEOUT")
    platform_api_max_retries: int = Field(
        default=3, validation_alias="PLATFORM_API_MAX_RETRIES"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> BillingSettings:
    """Get cached settings instance."""
    return BillingSettings()
