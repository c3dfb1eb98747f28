"""Configuration module for the creator billing core."""

from creator_billing.config.logging import configure_logging, get_logger
from creator_billing.config.settings import BillingSettings, get_settings
from creator_billing.config.tiers_loader import (
    FeatureLimits,
    TierPlan,
    load_tier_catalog,
)

__all__ = [
    "BillingSettings",
    "get_settings",
    "configure_logging",
    "get_logger",
    "FeatureLimits",
    "TierPlan",
    "load_tier_catalog",
]
