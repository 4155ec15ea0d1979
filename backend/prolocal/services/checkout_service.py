"""Subscription checkout and cancellation against the billing provider."""

import uuid

import structlog

from prolocal.config import StripeConfig
from prolocal.constants import CANCEL_AT_PERIOD_END_MESSAGE, METADATA_PLAN_ID, METADATA_USER_ID
from prolocal.errors import (
    AlreadyActiveSubscription,
    AlreadyCanceled,
    EntitlementNotFound,
    InvalidPlan,
    MissingBillingSubscription,
    UnknownPlan,
    UserNotFound,
)
from prolocal.models.billing import (
    CancellationResult,
    CheckoutSession,
    Entitlement,
    ImplicitFreeEntitlement,
    PlanId,
    PlanTier,
    ProductSnapshot,
    SubscriptionStatus,
    UserAccount,
)
from prolocal.services.billing_provider import BillingProvider
from prolocal.services.entitlement_store import EntitlementStore
from prolocal.services.plan_catalog import get_plan

logger = structlog.get_logger(__name__)


class CheckoutService:
    """Starts paid subscriptions using catalog prices only.

    Checkout grants nothing by itself: the pending row it seeds stays on the
    free plan until a billing event confirms the subscription.
    """

    def __init__(
        self,
        store: EntitlementStore,
        provider: BillingProvider,
        config: StripeConfig,
        *,
        success_url: str,
        cancel_url: str,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config
        self.success_url = success_url
        self.cancel_url = cancel_url
        self._price_cache: dict[tuple[PlanId, int, str], str] = {}

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await self.store.users.find_user_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def _purchasable_tier(self, plan_id: str) -> PlanTier:
        try:
            tier = get_plan(plan_id)
        except UnknownPlan as e:
            raise InvalidPlan(f"Unknown plan: {e.plan_id}") from None
        if tier.id == PlanId.FREE:
            raise InvalidPlan("The free plan does not require checkout")
        return tier

    async def create_checkout_session(self, user_id: str, plan_id: str) -> CheckoutSession:
        tier = self._purchasable_tier(plan_id)
        user = await self._require_user(user_id)

        store = self.store
        # Held across the provider calls so concurrent checkouts share one customer
        async with store.locks.for_user(user_id):
            state = await store.load_state(user_id)
            if isinstance(state, Entitlement):
                state = await store.resolve_locked(user_id)
            if state.status == SubscriptionStatus.ACTIVE and state.plan != PlanId.FREE:
                raise AlreadyActiveSubscription()
            customer_ref = state.billing_customer_ref if isinstance(state, Entitlement) else None

            if customer_ref is None:
                customer_ref = await self.provider.create_customer(
                    user_id=user_id, email=user.email, name=user.name
                )
            price_id = await self.resolve_price(tier)

            session = await self.provider.create_checkout_session(
                customer_id=customer_ref,
                price_id=price_id,
                metadata={METADATA_USER_ID: user_id, METADATA_PLAN_ID: tier.id.value},
                success_url=self.success_url,
                cancel_url=self.cancel_url,
            )
            await self._bind_customer(user_id, customer_ref)

        logger.info(
            "checkout_session_created",
            user_id=user_id,
            plan=tier.id.value,
            session_id=session.session_id,
        )
        return session

    async def _bind_customer(self, user_id: str, customer_ref: str) -> Entitlement:
        state = await self.store.load_state(user_id)
        if isinstance(state, ImplicitFreeEntitlement):
            pending = Entitlement(
                id=str(uuid.uuid4()),
                user_id=user_id,
                plan=PlanId.FREE,
                status=SubscriptionStatus.TRIALING,
                billing_customer_ref=customer_ref,
            )
            return await self.store.repository.save(pending)
        if state.billing_customer_ref == customer_ref:
            return state
        return await self.store.repository.save(
            state.model_copy(update={"billing_customer_ref": customer_ref})
        )

    async def resolve_price(self, tier: PlanTier) -> str:
        """Provider price id for the catalog amount of ``tier``, created on demand."""
        amount = tier.price_minor_units
        interval = self.config.billing_interval
        key = (tier.id, amount, interval)
        cached = self._price_cache.get(key)
        if cached:
            return cached

        product = await self.resolve_product(tier)
        price_id = None
        for price in await self.provider.list_prices(product_id=product.product_id):
            if (
                price.active
                and price.unit_amount == amount
                and price.interval == interval
                and (price.currency or "").lower() == self.config.currency.lower()
            ):
                price_id = price.price_id
                break

        if price_id is None:
            created = await self.provider.create_price(
                product_id=product.product_id,
                unit_amount=amount,
                currency=self.config.currency,
                interval=interval,
            )
            price_id = created.price_id

        self._price_cache[key] = price_id
        return price_id

    async def resolve_product(self, tier: PlanTier) -> ProductSnapshot:
        for product in await self.provider.list_products():
            if product.metadata.get(METADATA_PLAN_ID) == tier.id.value:
                return product
        return await self.provider.create_product(
            name=f"{self.config.product_name_prefix} {tier.display_name}",
            description=", ".join(tier.feature_descriptions),
            metadata={METADATA_PLAN_ID: tier.id.value},
        )

    async def cancel_subscription(self, user_id: str) -> CancellationResult:
        """Ask the provider to end the subscription when the current period ends.

        Local state is left alone; the provider's deletion event reverts the
        plan once the period is over.
        """
        await self._require_user(user_id)

        store = self.store
        async with store.locks.for_user(user_id):
            if isinstance(await store.load_state(user_id), ImplicitFreeEntitlement):
                raise EntitlementNotFound(user_id)
            entitlement = await store.resolve_locked(user_id)

        if entitlement.status == SubscriptionStatus.CANCELED:
            raise AlreadyCanceled()
        if not entitlement.billing_subscription_ref:
            raise MissingBillingSubscription()

        snapshot = await self.provider.update_subscription(
            entitlement.billing_subscription_ref, cancel_at_period_end=True
        )
        logger.info(
            "subscription_cancel_scheduled",
            user_id=user_id,
            subscription_id=entitlement.billing_subscription_ref,
        )
        return CancellationResult(
            message=CANCEL_AT_PERIOD_END_MESSAGE,
            cancel_at=entitlement.current_period_end or snapshot.current_period_end,
        )
