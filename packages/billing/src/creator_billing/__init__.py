"""Creator Billing - invoicing, payments and subscription billing for creators."""

__version__ = "0.1.0"

# invoicing loads before the modules that depend on its models
from creator_billing.invoicing import (
    DealSelector,
    InvoiceAssembler,
    InvoiceService,
    PaymentLedger,
    ReminderScheduler,
    calculate_tax,
)
from creator_billing.clients import PlatformAPIClient
from creator_billing.config import configure_logging, get_settings
from creator_billing.errors import (
    BillingError,
    NotFoundError,
    OwnershipError,
    StateConflictError,
    UpstreamError,
    ValidationError,
)
from creator_billing.store import (
    InMemoryBillingStore,
    InMemoryCreatorProfileStore,
    InMemoryDealStore,
)
from creator_billing.subscriptions import BillingCycleEngine, UpgradeEngine

__all__ = [
    # Version
    "__version__",
    # Invoicing
    "DealSelector",
    "InvoiceAssembler",
    "InvoiceService",
    "PaymentLedger",
    "ReminderScheduler",
    "calculate_tax",
    # Subscriptions
    "BillingCycleEngine",
    "UpgradeEngine",
    # Errors
    "BillingError",
    "ValidationError",
    "OwnershipError",
    "StateConflictError",
    "NotFoundError",
    "UpstreamError",
    # Infrastructure
    "InMemoryBillingStore",
    "InMemoryDealStore",
    "InMemoryCreatorProfileStore",
    "PlatformAPIClient",
    "configure_logging",
    "get_settings",
]
