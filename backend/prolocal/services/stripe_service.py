"""Stripe implementation of the billing provider."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from prolocal.config import StripeConfig
from prolocal.constants import PROVIDER_STATUS_ALIASES
from prolocal.errors import BillingProviderError, ProviderSignatureInvalid
from prolocal.models.billing import (
    CheckoutSession,
    PriceSnapshot,
    ProductSnapshot,
    SubscriptionSnapshot,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    for name in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, name, None)
        if callable(converter):
            return converter()
    raise ValueError(f"Unsupported Stripe payload type: {type(obj).__name__}")


def _ref(value: Any) -> str | None:
    """Id of an expandable field, which Stripe sends as a string or an object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    ref = _as_dict(value).get("id")
    return str(ref) if ref else None


def _string_metadata(raw: Any) -> dict[str, str]:
    return {str(k): str(v) for k, v in (raw or {}).items()}


def map_subscription_status(raw_status: str) -> SubscriptionStatus:
    """Map a Stripe status onto the local enum. Raises ValueError when unknown."""
    return SubscriptionStatus(PROVIDER_STATUS_ALIASES.get(raw_status, raw_status))


class StripeService:
    """Encapsulates Stripe SDK calls used by checkout and webhook handling."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key
        if config.api_version:
            stripe.api_version = config.api_version

    async def _call(self, operation: str, func, **params) -> Any:
        try:
            return await asyncio.to_thread(func, **params)
        except stripe.StripeError as e:
            logger.error("stripe_call_failed", operation=operation, error=str(e))
            raise BillingProviderError(operation, str(e)) from e

    async def create_customer(
        self, *, user_id: str, email: str | None, name: str | None
    ) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = _as_dict(
            await self._call("create_customer", stripe.Customer.create, **params)
        )
        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer["id"])
        return str(customer["id"])

    async def list_products(self) -> list[ProductSnapshot]:
        products = await self._call(
            "list_products", stripe.Product.list, active=True, limit=100
        )
        return [self.product_snapshot_from_object(p) for p in _as_dict(products).get("data", [])]

    async def create_product(
        self, *, name: str, description: str, metadata: dict[str, str]
    ) -> ProductSnapshot:
        product = await self._call(
            "create_product",
            stripe.Product.create,
            name=name,
            description=description,
            metadata=metadata,
        )
        logger.info("stripe_product_created", name=name, metadata=metadata)
        return self.product_snapshot_from_object(product)

    async def list_prices(self, *, product_id: str) -> list[PriceSnapshot]:
        prices = await self._call(
            "list_prices", stripe.Price.list, product=product_id, active=True, limit=100
        )
        return [self.price_snapshot_from_object(p) for p in _as_dict(prices).get("data", [])]

    async def create_price(
        self, *, product_id: str, unit_amount: int, currency: str, interval: str
    ) -> PriceSnapshot:
        price = await self._call(
            "create_price",
            stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=currency,
            recurring={"interval": interval},
        )
        logger.info(
            "stripe_price_created",
            product_id=product_id,
            unit_amount=unit_amount,
            currency=currency,
            interval=interval,
        )
        return self.price_snapshot_from_object(price)

    async def retrieve_price(self, price_id: str) -> PriceSnapshot:
        price = await self._call("retrieve_price", stripe.Price.retrieve, id=price_id)
        return self.price_snapshot_from_object(price)

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            client_reference_id=metadata.get("user_id"),
            metadata=metadata,
            # Copied onto the subscription so its own events carry the correlation ids
            subscription_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        session = _as_dict(session)
        return CheckoutSession(session_id=str(session["id"]), url=session.get("url"))

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        subscription = await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, id=subscription_id
        )
        return self.subscription_snapshot_from_object(subscription)

    async def update_subscription(
        self, subscription_id: str, *, cancel_at_period_end: bool
    ) -> SubscriptionSnapshot:
        subscription = await self._call(
            "update_subscription",
            stripe.Subscription.modify,
            id=subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        logger.info(
            "stripe_subscription_updated",
            subscription_id=subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        return self.subscription_snapshot_from_object(subscription)

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self.config.webhook_secret:
            raise ProviderSignatureInvalid("webhook secret is not configured")
        if not signature:
            raise ProviderSignatureInvalid("missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.config.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            raise ProviderSignatureInvalid(str(e)) from e
        except ValueError as e:
            raise ProviderSignatureInvalid(f"invalid payload: {e}") from e
        return _as_dict(event)

    def subscription_snapshot_from_object(self, subscription_obj: Any) -> SubscriptionSnapshot:
        subscription = _as_dict(subscription_obj)

        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            raise ValueError("Stripe subscription has no items")
        first_item = items[0]

        price_id = _ref(first_item.get("price"))
        if not price_id:
            raise ValueError("Stripe subscription is missing price id")

        subscription_id = subscription.get("id")
        customer_id = _ref(subscription.get("customer"))
        if not subscription_id or not customer_id:
            raise ValueError("Stripe subscription is missing id or customer")

        # Newer API versions moved the period bounds onto subscription items
        period_start = subscription.get("current_period_start") or first_item.get(
            "current_period_start"
        )
        period_end = subscription.get("current_period_end") or first_item.get(
            "current_period_end"
        )

        return SubscriptionSnapshot(
            subscription_id=str(subscription_id),
            customer_id=customer_id,
            status=map_subscription_status(str(subscription.get("status", ""))),
            price_id=price_id,
            current_period_start=_to_datetime(period_start),
            current_period_end=_to_datetime(period_end),
            canceled_at=_to_datetime(subscription.get("canceled_at")),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            metadata=_string_metadata(subscription.get("metadata")),
        )

    def subscription_ref_from_invoice(self, invoice_obj: Any) -> str | None:
        invoice = _as_dict(invoice_obj)
        ref = _ref(invoice.get("subscription"))
        if ref:
            return ref
        details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
        return _ref(details.get("subscription"))

    def price_snapshot_from_object(self, price_obj: Any) -> PriceSnapshot:
        price = _as_dict(price_obj)
        if not price.get("id"):
            raise ValueError("Stripe price is missing id")
        recurring = price.get("recurring") or {}
        return PriceSnapshot(
            price_id=str(price["id"]),
            unit_amount=price.get("unit_amount"),
            currency=price.get("currency"),
            interval=recurring.get("interval"),
            product_id=_ref(price.get("product")),
            active=bool(price.get("active", True)),
        )

    def product_snapshot_from_object(self, product_obj: Any) -> ProductSnapshot:
        product = _as_dict(product_obj)
        if not product.get("id"):
            raise ValueError("Stripe product is missing id")
        return ProductSnapshot(
            product_id=str(product["id"]),
            name=str(product.get("name") or ""),
            metadata=_string_metadata(product.get("metadata")),
        )
