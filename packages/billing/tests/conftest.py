"""Pytest configuration and fixtures."""

import os
import random
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("BILLING_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("PLATFORM_API_TOKEN", "platform-test-token")

from creator_billing.config import get_settings, load_tier_catalog  # noqa: E402
from creator_billing.identifiers import IdentifierFactory  # noqa: E402
from creator_billing.invoicing import (  # noqa: E402
    InvoiceAssembler,
    InvoiceService,
    PaymentLedger,
    ReminderScheduler,
)
from creator_billing.invoicing.models import (  # noqa: E402
    Address,
    BankDetails,
    BrandProfile,
    CreatorProfile,
    Deliverable,
    TaxPreferences,
    WorkItem,
)
from creator_billing.secrets import FernetSecretCodec  # noqa: E402
from creator_billing.store import (  # noqa: E402
    InMemoryBillingStore,
    InMemoryCreatorProfileStore,
    InMemoryDealStore,
)
from creator_billing.subscriptions import BillingCycleEngine, UpgradeEngine  # noqa: E402
from creator_billing.subscriptions.models import Subscriber  # noqa: E402

TEST_KEY = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def codec():
    return FernetSecretCodec(TEST_KEY)


@pytest.fixture
def identifiers(clock):
    return IdentifierFactory(clock=clock, rng=random.Random(7))


@pytest.fixture
def catalog():
    return load_tier_catalog()


# === Profiles and deals ===


@pytest.fixture
def nike(codec):
    return BrandProfile(
        brand_id="brand-nike",
        name="Nike India",
        email="billing@nike.example",
        phone="+91-22-5555-0100",
        address=Address(street="1 Linking Road", city="Mumbai", state="Maharashtra", pincode="400050"),
        state="Maharashtra",
        gst_number=codec.seal("27AAACN1234F1Z5"),
    )


@pytest.fixture
def puma(codec):
    return BrandProfile(
        brand_id="brand-puma",
        name="Puma",
        email="accounts@puma.example",
        state="Karnataka",
        gst_number=codec.seal("29AAACP9876K1Z2"),
        parent_agency_id="agency-1",
    )


@pytest.fixture
def agency():
    return BrandProfile(
        brand_id="agency-1",
        name="Bright Talent Agency",
        email="payouts@bright.example",
        state="Karnataka",
    )


@pytest.fixture
def creator(codec):
    return CreatorProfile(
        creator_id="creator-1",
        name="Asha Rao",
        email="asha@example.com",
        phone="+91-98200-00000",
        state="Maharashtra",
        pan_number=codec.seal("ABCPR1234K"),
        tax_preferences=TaxPreferences(apply_gst=True, gst_rate=Decimal("18")),
        bank_details=BankDetails(
            account_holder="Asha Rao",
            account_number=codec.seal("001234567890"),
            ifsc_code="HDFC0000123",
            bank_name="HDFC Bank",
        ),
    )


@pytest.fixture
def deals(nike, puma):
    return [
        WorkItem(
            deal_id="deal-1",
            creator_id="creator-1",
            status="completed",
            value=Decimal("10000"),
            platform="instagram",
            title="Spring launch post",
            brand=nike,
            completed_at=datetime(2025, 2, 5, 10, 0, tzinfo=UTC),
        ),
        WorkItem(
            deal_id="deal-2",
            creator_id="creator-1",
            status="live",
            value=Decimal("20000"),
            platform="instagram",
            title="Running series",
            brand=nike,
            deliverables=[
                Deliverable("reel", "Running reel", quantity=2),
                Deliverable("story", "Launch story", quantity=1),
            ],
            completed_at=datetime(2025, 2, 20, 10, 0, tzinfo=UTC),
        ),
        WorkItem(
            deal_id="deal-3",
            creator_id="creator-1",
            status="paid",
            value=Decimal("5000"),
            platform="youtube",
            title="Sneaker review",
            brand=puma,
            deliverables=[Deliverable("video", "Review video", quantity=1, rate=Decimal("5000"))],
            completed_at=datetime(2025, 2, 25, 10, 0, tzinfo=UTC),
        ),
        WorkItem(
            deal_id="deal-4",
            creator_id="creator-1",
            status="negotiating",
            value=Decimal("3000"),
            platform="instagram",
            brand=puma,
        ),
        WorkItem(
            deal_id="deal-5",
            creator_id="creator-2",
            status="completed",
            value=Decimal("7000"),
            platform="instagram",
            brand=nike,
            completed_at=datetime(2025, 2, 10, 10, 0, tzinfo=UTC),
        ),
        WorkItem(
            deal_id="deal-6",
            creator_id="creator-1",
            status="completed",
            value=None,
            platform="youtube",
            brand=nike,
            completed_at=datetime(2025, 1, 15, 10, 0, tzinfo=UTC),
        ),
    ]


# === Stores and collaborators ===


@pytest.fixture
def store():
    return InMemoryBillingStore()


@pytest.fixture
def deal_store(deals):
    return InMemoryDealStore(deals)


@pytest.fixture
def profiles(creator):
    return InMemoryCreatorProfileStore([creator])


@pytest.fixture
def notifier():
    """Mock notification sender."""
    sender = MagicMock()
    sender.send_email = MagicMock(return_value=None)
    sender.send_sms = MagicMock(return_value=None)
    return sender


@pytest.fixture
def renderer():
    """Mock document renderer."""
    doc = MagicMock()
    doc.render_invoice = MagicMock(return_value="https://docs.example/invoice.pdf")
    doc.render_receipt = MagicMock(return_value="https://docs.example/receipt.pdf")
    return doc


@pytest.fixture
def object_storage():
    storage = MagicMock()
    storage.upload = MagicMock(return_value="https://files.example/proof.png")
    return storage


# === Services ===


@pytest.fixture
def assembler(store, deal_store, profiles, settings, clock, identifiers):
    return InvoiceAssembler(store, deal_store, profiles, settings, clock, identifiers)


@pytest.fixture
def reminders(store, notifier, clock):
    return ReminderScheduler(store, notifier, clock)


@pytest.fixture
def invoice_service(store, deal_store, renderer, notifier, reminders, clock):
    return InvoiceService(store, deal_store, renderer, notifier, reminders, clock)


@pytest.fixture
def ledger(store, renderer, object_storage, reminders, clock, identifiers):
    return PaymentLedger(store, renderer, object_storage, reminders, clock, identifiers)


@pytest.fixture
def subscriber(store):
    sub = Subscriber(
        subscriber_id="sub-1",
        name="Asha Rao",
        email="asha@example.com",
        tier="pro",
        phone="+91-98200-00000",
    )
    store.save_subscriber(sub)
    return sub


@pytest.fixture
def cycle_engine(store, notifier, catalog, settings, clock):
    return BillingCycleEngine(store, notifier, catalog, settings, clock)


@pytest.fixture
def upgrade_engine(store, notifier, catalog, settings, clock):
    return UpgradeEngine(store, notifier, catalog, settings, clock)


@pytest.fixture
def pay_cycle(cycle_engine):
    """Submit the full amount for a cycle and approve it."""

    def _pay(cycle, transaction_reference="pay_001"):
        submission = cycle_engine.submit_cycle_payment(
            cycle.cycle_id,
            amount=cycle.total_amount_with_gst,
            proof_url="https://files.example/proof.png",
            transaction_reference=transaction_reference,
        )
        return cycle_engine.approve_cycle_payment(submission.submission_id, verified_by="ops-1")

    return _pay
