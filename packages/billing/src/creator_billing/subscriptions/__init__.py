"""Subscriptions: billing cycles, renewals and tier changes."""

from creator_billing.subscriptions.cycles import (
    CYCLE_MACHINE,
    BillingCycleEngine,
    RenewalRunResult,
    compute_cycle_amounts,
)
from creator_billing.subscriptions.proration import (
    UPGRADE_MACHINE,
    UpgradeEngine,
    calculate_proration,
)

__all__ = [
    # Cycles
    "CYCLE_MACHINE",
    "BillingCycleEngine",
    "RenewalRunResult",
    "compute_cycle_amounts",
    # Tier changes
    "UPGRADE_MACHINE",
    "UpgradeEngine",
    "calculate_proration",
]
