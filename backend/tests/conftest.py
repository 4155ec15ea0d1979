"""
Shared test fixtures for the ProLocal billing test suite.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from prolocal.config import StripeConfig
from prolocal.errors import BillingProviderError, ProviderSignatureInvalid
from prolocal.models.billing import (
    CheckoutSession,
    Entitlement,
    Listing,
    PlanId,
    PriceSnapshot,
    ProductSnapshot,
    SubscriptionSnapshot,
    SubscriptionStatus,
    UserAccount,
)
from prolocal.services.directories import InMemoryListingDirectory, InMemoryUserDirectory
from prolocal.services.entitlement_store import (
    EntitlementStore,
    InMemoryEntitlementRepository,
    UserLockRegistry,
)
from prolocal.services.quota_enforcer import QuotaEnforcer
from prolocal.services.stripe_service import StripeService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
VALID_SIGNATURE = "t=1,v1=valid"

# Catalog-matching prices the fake provider starts with
SEEDED_PRICES = {
    PlanId.PLUS: ("price_plus", 1499),
    PlanId.PREMIUM: ("price_premium", 2199),
    PlanId.ENTERPRISE: ("price_enterprise", 4299),
}


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class FakeBillingProvider:
    """In-memory billing provider recording every call.

    Payload parsing is delegated to the real Stripe wrapper so webhook tests
    exercise the same object shapes production sees.
    """

    def __init__(self, *, seed_catalog: bool = True):
        self._parser = StripeService(StripeConfig(secret_key="sk_test_fake"))
        self.customers: list[dict] = []
        self.products: list[ProductSnapshot] = []
        self.prices: dict[str, PriceSnapshot] = {}
        self.subscriptions: dict[str, SubscriptionSnapshot] = {}
        self.checkout_calls: list[dict] = []
        self.update_calls: list[tuple[str, bool]] = []
        self.list_products_calls = 0
        self.created_prices: list[PriceSnapshot] = []
        self.fail_with: BillingProviderError | None = None

        if seed_catalog:
            for plan_id, (price_id, amount) in SEEDED_PRICES.items():
                product_id = f"prod_{plan_id.value}"
                self.products.append(
                    ProductSnapshot(
                        product_id=product_id,
                        name=f"ProLocal {plan_id.value.title()}",
                        metadata={"plan_id": plan_id.value},
                    )
                )
                self.prices[price_id] = PriceSnapshot(
                    price_id=price_id,
                    unit_amount=amount,
                    currency="brl",
                    interval="month",
                    product_id=product_id,
                )

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create_customer(self, *, user_id, email, name) -> str:
        self._maybe_fail()
        await asyncio.sleep(0)
        self.customers.append({"user_id": user_id, "email": email, "name": name})
        return f"cus_{len(self.customers)}"

    async def list_products(self) -> list[ProductSnapshot]:
        self.list_products_calls += 1
        return list(self.products)

    async def create_product(self, *, name, description, metadata) -> ProductSnapshot:
        product = ProductSnapshot(
            product_id=f"prod_new_{len(self.products) + 1}", name=name, metadata=metadata
        )
        self.products.append(product)
        return product

    async def list_prices(self, *, product_id) -> list[PriceSnapshot]:
        return [p for p in self.prices.values() if p.product_id == product_id and p.active]

    async def create_price(self, *, product_id, unit_amount, currency, interval) -> PriceSnapshot:
        price = PriceSnapshot(
            price_id=f"price_new_{len(self.created_prices) + 1}",
            unit_amount=unit_amount,
            currency=currency,
            interval=interval,
            product_id=product_id,
        )
        self.prices[price.price_id] = price
        self.created_prices.append(price)
        return price

    async def retrieve_price(self, price_id) -> PriceSnapshot:
        price = self.prices.get(price_id)
        if price is None:
            raise BillingProviderError("retrieve_price", f"No such price: {price_id}")
        return price

    async def create_checkout_session(self, **kwargs) -> CheckoutSession:
        self._maybe_fail()
        await asyncio.sleep(0)
        self.checkout_calls.append(kwargs)
        return CheckoutSession(
            session_id=f"cs_test_{len(self.checkout_calls)}",
            url=f"https://checkout.test/cs_test_{len(self.checkout_calls)}",
        )

    async def retrieve_subscription(self, subscription_id) -> SubscriptionSnapshot:
        return self.subscriptions[subscription_id]

    async def update_subscription(self, subscription_id, *, cancel_at_period_end):
        self._maybe_fail()
        self.update_calls.append((subscription_id, cancel_at_period_end))
        snapshot = self.subscriptions.get(subscription_id) or SubscriptionSnapshot(
            subscription_id=subscription_id,
            customer_id="cus_1",
            status=SubscriptionStatus.ACTIVE,
            price_id="price_plus",
        )
        return snapshot.model_copy(update={"cancel_at_period_end": cancel_at_period_end})

    def subscription_snapshot_from_object(self, subscription_obj) -> SubscriptionSnapshot:
        return self._parser.subscription_snapshot_from_object(subscription_obj)

    def subscription_ref_from_invoice(self, invoice_obj) -> str | None:
        return self._parser.subscription_ref_from_invoice(invoice_obj)

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if signature != VALID_SIGNATURE:
            raise ProviderSignatureInvalid("No signatures found matching the expected signature")
        return json.loads(payload)


def stripe_subscription(
    *,
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    status: str = "active",
    price_id: str = "price_plus",
    user_id: str | None = "user-1",
    plan_id: str | None = "plus",
    period_start: datetime = NOW - timedelta(days=5),
    period_end: datetime = NOW + timedelta(days=25),
) -> dict:
    """Stripe-shaped subscription object as embedded in webhook events."""
    metadata = {}
    if user_id:
        metadata["user_id"] = user_id
    if plan_id:
        metadata["plan_id"] = plan_id
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "current_period_start": int(period_start.timestamp()),
        "current_period_end": int(period_end.timestamp()),
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
        "metadata": metadata,
    }


def stripe_event(event_type: str, data_object: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": data_object}}


class YieldingListingDirectory(InMemoryListingDirectory):
    """Suspends before every read and write, like a networked store would.

    Lets concurrent coroutines interleave between a quota count and its write.
    """

    async def count_by_owner(self, owner_id, **filters) -> int:
        await asyncio.sleep(0)
        return await super().count_by_owner(owner_id, **filters)

    async def create_listing(self, listing: Listing) -> Listing:
        await asyncio.sleep(0)
        return await super().create_listing(listing)

    async def save_listing(self, listing: Listing) -> Listing:
        await asyncio.sleep(0)
        return await super().save_listing(listing)


class Harness:
    """Entitlement components wired over in-memory storage."""

    def __init__(
        self,
        clock: MutableClock,
        provider: FakeBillingProvider,
        listings: InMemoryListingDirectory | None = None,
    ):
        self.clock = clock
        self.provider = provider
        self.repository = InMemoryEntitlementRepository()
        self.users = InMemoryUserDirectory()
        self.listings = listings or InMemoryListingDirectory()
        self.store = EntitlementStore(
            self.repository,
            self.users,
            self.listings,
            UserLockRegistry(),
            now_provider=clock.now,
        )
        self.enforcer = QuotaEnforcer(self.store)

    def add_user(self, user_id: str = "user-1", *, has_active_plan: bool = False) -> UserAccount:
        return self.users.add(
            UserAccount(
                id=user_id,
                email=f"{user_id}@example.com",
                name=user_id.title(),
                has_active_plan=has_active_plan,
            )
        )

    def set_entitlement(
        self,
        user_id: str = "user-1",
        plan: PlanId = PlanId.PLUS,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        *,
        subscription_ref: str | None = "sub_1",
        customer_ref: str | None = "cus_1",
        period_end: datetime | None = NOW + timedelta(days=20),
    ) -> Entitlement:
        entitlement = Entitlement(
            id=f"ent-{user_id}",
            user_id=user_id,
            plan=plan,
            status=status,
            billing_customer_ref=customer_ref,
            billing_subscription_ref=subscription_ref if plan != PlanId.FREE else None,
            billing_price_ref=SEEDED_PRICES[plan][0] if plan in SEEDED_PRICES else None,
            current_period_start=NOW - timedelta(days=10) if period_end else None,
            current_period_end=period_end,
            created_at=NOW - timedelta(days=40),
            updated_at=NOW - timedelta(days=10),
        )
        self.repository.entitlements[user_id] = entitlement
        return entitlement

    def add_listing(
        self,
        owner_id: str = "user-1",
        *,
        listing_id: str | None = None,
        is_active: bool = True,
        is_highlighted: bool = False,
        highlight_tier_label: str | None = None,
        age_days: int = 0,
    ) -> Listing:
        listing_id = listing_id or f"listing-{len(self.listings.listings) + 1}"
        listing = Listing(
            id=listing_id,
            owner_id=owner_id,
            title=f"Service {listing_id}",
            price=100.0,
            is_active=is_active,
            is_highlighted=is_highlighted,
            highlight_tier_label=highlight_tier_label if is_highlighted else None,
            created_at=NOW - timedelta(days=age_days),
            updated_at=NOW - timedelta(days=age_days),
        )
        self.listings.listings[listing_id] = listing
        return listing

    def entitlement(self, user_id: str = "user-1") -> Entitlement | None:
        return self.repository.entitlements.get(user_id)

    def user(self, user_id: str = "user-1") -> UserAccount | None:
        return self.users.users.get(user_id)

    def listing(self, listing_id: str) -> Listing:
        return self.listings.listings[listing_id]


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings never reaches real services."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("FRONTEND_URL", "http://localhost:3000")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(NOW)


@pytest.fixture
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def harness(clock: MutableClock, provider: FakeBillingProvider) -> Harness:
    """Store, enforcer and directories sharing one lock registry and clock."""
    return Harness(clock, provider)


@pytest.fixture
def yielding_harness(clock: MutableClock, provider: FakeBillingProvider) -> Harness:
    """Harness whose listing directory yields to the event loop on every call."""
    return Harness(clock, provider, YieldingListingDirectory())


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from prolocal.config import get_settings

    get_settings.cache_clear()

    from prolocal.main import app

    return TestClient(app)


@pytest.fixture
def make_subscription():
    """Factory for Stripe-shaped subscription objects."""
    return stripe_subscription


@pytest.fixture
def make_event():
    """Factory for Stripe-shaped webhook events."""
    return stripe_event


@pytest.fixture
def valid_signature() -> str:
    return VALID_SIGNATURE


@pytest.fixture
def empty_provider() -> FakeBillingProvider:
    """Provider account with no products or prices yet."""
    return FakeBillingProvider(seed_catalog=False)
