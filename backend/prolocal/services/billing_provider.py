"""Billing provider contract consumed by checkout and webhook reconciliation."""

from typing import Any, Protocol

from prolocal.models.billing import (
    CheckoutSession,
    PriceSnapshot,
    ProductSnapshot,
    SubscriptionSnapshot,
)


class BillingProvider(Protocol):
    """Operations the entitlement engine needs from a payment provider.

    Network calls are async and raise ``BillingProviderError`` on provider
    failure. Parsing helpers are sync and raise ``ValueError`` on payloads they
    cannot read.
    """

    async def create_customer(
        self, *, user_id: str, email: str | None, name: str | None
    ) -> str:
        """Create a customer record and return its id."""

    async def list_products(self) -> list[ProductSnapshot]:
        """Active products."""

    async def create_product(
        self, *, name: str, description: str, metadata: dict[str, str]
    ) -> ProductSnapshot:
        """Create a product."""

    async def list_prices(self, *, product_id: str) -> list[PriceSnapshot]:
        """Active prices attached to ``product_id``."""

    async def create_price(
        self, *, product_id: str, unit_amount: int, currency: str, interval: str
    ) -> PriceSnapshot:
        """Create a recurring price."""

    async def retrieve_price(self, price_id: str) -> PriceSnapshot:
        """Fetch one price."""

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Start a hosted subscription checkout."""

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Fetch the authoritative subscription."""

    async def update_subscription(
        self, subscription_id: str, *, cancel_at_period_end: bool
    ) -> SubscriptionSnapshot:
        """Schedule or unschedule cancellation at period end."""

    def subscription_snapshot_from_object(self, subscription_obj: Any) -> SubscriptionSnapshot:
        """Normalize a subscription object embedded in an event."""

    def subscription_ref_from_invoice(self, invoice_obj: Any) -> str | None:
        """Subscription id an invoice belongs to, if any."""

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Check the signature over the raw body and return the parsed event."""
