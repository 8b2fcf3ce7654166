"""Shared fixtures: test tiers, a fake billing gateway and wired service components."""

import os
import time
from pathlib import Path

import pytest

from subscription_core.models import Invoice, InvoiceStatus, TierDefinition
from subscription_core.repositories.subscription_store import SubscriptionStore
from subscription_core.repositories.tier_repository import TierRepository
from subscription_core.services.billing_gateway import GatewayUnavailableError
from subscription_core.services.expiration_scheduler import ExpirationScheduler
from subscription_core.services.subscription_service import SubscriptionService
from subscription_core.services.time_controller import TimeController
from subscription_core.utils.duration import MILLIS_PER_HOUR
from subscription_core.utils.invoice_id import generate_invoice_id

REPO_ROOT = Path(__file__).resolve().parent.parent

os.environ.setdefault("CONFIG_PATH", str(REPO_ROOT / "config" / "tiers.yaml"))

VALID_SIGNATURE = "valid-signature"


class FakeGateway:
    """In-memory stand-in for the billing provider. Counts every call."""

    def __init__(self, tier_repository: TierRepository):
        self.tiers = tier_repository
        self.created: list[Invoice] = []
        self.status_calls: list[str] = []
        self.statuses: dict[str, InvoiceStatus] = {}
        self.fail = False

    @property
    def create_calls(self) -> int:
        return len(self.created)

    def create_invoice(self, user_id, tier_id, expires_at_millis=None, renewal=False):
        if self.fail:
            raise GatewayUnavailableError("provider down")
        tier = self.tiers.get_by_id(tier_id)
        invoice_id = generate_invoice_id()
        invoice = Invoice(
            invoice_id=invoice_id,
            user_id=user_id,
            tier_id=tier.id,
            amount_micros=tier.price_micros,
            currency=tier.currency,
            pay_url=f"https://pay.example.test/{invoice_id}",
            expiration_time_millis=expires_at_millis or int(time.time() * 1000) + MILLIS_PER_HOUR,
            renewal=renewal,
        )
        self.created.append(invoice)
        return invoice

    def get_invoice_status(self, invoice_id):
        self.status_calls.append(invoice_id)
        if self.fail:
            raise GatewayUnavailableError("provider down")
        return self.statuses.get(invoice_id, InvoiceStatus.WAITING)

    def verify_notification_signature(self, bill, signature):
        return signature == VALID_SIGNATURE

    def close(self):
        pass


@pytest.fixture
def tiers():
    """Two test tiers with distinct price and duration."""
    return [
        TierDefinition(
            id="1_month",
            title="Subscription for 1 month",
            price_micros=199000000,
            duration="P1M",
        ),
        TierDefinition(
            id="3_months",
            title="Subscription for 3 months",
            price_micros=499000000,
            duration="P3M",
        ),
    ]


@pytest.fixture
def tier_repository(tiers):
    return TierRepository(tiers=tiers)


@pytest.fixture
def clock():
    return TimeController()


@pytest.fixture
def store():
    store = SubscriptionStore()
    yield store
    store.reset()


@pytest.fixture
def gateway(tier_repository):
    return FakeGateway(tier_repository)


@pytest.fixture
def scheduler(clock):
    scheduler = ExpirationScheduler(time_controller=clock, max_workers=2)
    scheduler.start()
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.fixture
def service(store, gateway, scheduler, tier_repository, clock):
    return SubscriptionService(
        store=store,
        gateway=gateway,
        scheduler=scheduler,
        tier_repository=tier_repository,
        time_controller=clock,
        invoice_lifetime_millis=MILLIS_PER_HOUR,
    )


@pytest.fixture
def wait_for():
    """Poll a condition until it holds or the timeout passes."""

    def _wait_for(condition, timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()

    return _wait_for
