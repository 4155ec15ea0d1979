"""Applies billing-provider webhook events to local entitlements.

Handlers recompute the full target state from the provider's payload and
write it, so redelivered or reordered events converge on the same row. Events
that cannot be tied to a local user or subscription are logged and
acknowledged; only provider outages and price integrity failures propagate.
"""

import uuid
from typing import Any

import structlog

from prolocal.constants import METADATA_PLAN_ID, METADATA_USER_ID
from prolocal.errors import IntegrityViolation, UnknownPlan
from prolocal.models.billing import (
    Entitlement,
    PlanId,
    PlanTier,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from prolocal.services.billing_provider import BillingProvider
from prolocal.services.entitlement_store import EntitlementStore
from prolocal.services.plan_catalog import get_plan
from prolocal.services.quota_enforcer import QuotaEnforcer

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def _ignored(reason: str, **context: Any) -> None:
    logger.warning("billing_webhook_ignored", reason=reason, **context)


def _paid_plan_from_metadata(metadata: dict[str, Any]) -> tuple[str, PlanTier] | None:
    user_id = metadata.get(METADATA_USER_ID)
    plan_id = metadata.get(METADATA_PLAN_ID)
    if not user_id or not plan_id:
        _ignored("missing_metadata", metadata_keys=sorted(metadata))
        return None
    try:
        tier = get_plan(plan_id)
    except UnknownPlan:
        _ignored("unknown_plan", user_id=user_id, plan_id=plan_id)
        return None
    if tier.id == PlanId.FREE:
        _ignored("free_plan_in_metadata", user_id=user_id)
        return None
    return str(user_id), tier


class BillingReconciler:
    """Dispatches verified provider events to entitlement transitions."""

    def __init__(
        self,
        store: EntitlementStore,
        enforcer: QuotaEnforcer,
        provider: BillingProvider,
    ) -> None:
        self.store = store
        self.enforcer = enforcer
        self.provider = provider
        self._handlers = {
            CHECKOUT_COMPLETED: self.on_checkout_completed,
            SUBSCRIPTION_CREATED: self.on_subscription_changed,
            SUBSCRIPTION_UPDATED: self.on_subscription_changed,
            SUBSCRIPTION_DELETED: self.on_subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self.on_invoice_payment_succeeded,
            INVOICE_PAYMENT_FAILED: self.on_invoice_payment_failed,
        }

    async def handle_event(self, event: dict[str, Any]) -> bool:
        """Apply one verified event.

        Returns False when the event was already applied or carries no id,
        True when the handlers ran (including deliberate no-ops).
        """
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if not event_id:
            _ignored("missing_event_id", event_type=event_type)
            return False

        repository = self.store.repository
        if await repository.has_processed_webhook(event_id):
            logger.info("billing_webhook_duplicate", event_id=event_id, event_type=event_type)
            return False

        handler = self._handlers.get(event_type)
        if handler is None:
            _ignored("unhandled_event_type", event_id=event_id, event_type=event_type)
        else:
            data_object = (event.get("data") or {}).get("object") or {}
            structlog.contextvars.bind_contextvars(event_id=event_id, event_type=event_type)
            try:
                await handler(data_object)
            finally:
                structlog.contextvars.unbind_contextvars("event_id", "event_type")

        await repository.record_processed_webhook(event_id, event_type)
        logger.info("billing_webhook_processed", event_id=event_id, event_type=event_type)
        return True

    async def on_checkout_completed(self, session: dict[str, Any]) -> None:
        parsed = _paid_plan_from_metadata(session.get("metadata") or {})
        if parsed is None:
            return
        user_id, tier = parsed

        subscription_ref = session.get("subscription")
        if isinstance(subscription_ref, dict):
            subscription_ref = subscription_ref.get("id")
        if not subscription_ref:
            _ignored("missing_subscription_ref", user_id=user_id)
            return

        # Never trust the session payload for amounts; ask the provider.
        snapshot = await self.provider.retrieve_subscription(str(subscription_ref))
        await self.upsert_subscription(user_id, tier, snapshot)

    async def on_subscription_changed(self, subscription: dict[str, Any]) -> None:
        try:
            snapshot = self.provider.subscription_snapshot_from_object(subscription)
        except ValueError as e:
            _ignored("unparseable_subscription", error=str(e))
            return

        parsed = _paid_plan_from_metadata(snapshot.metadata)
        if parsed is None:
            return
        user_id, tier = parsed
        await self.upsert_subscription(user_id, tier, snapshot)

    async def upsert_subscription(
        self, user_id: str, tier: PlanTier, snapshot: SubscriptionSnapshot
    ) -> Entitlement | None:
        """Write the provider's subscription onto the user's entitlement.

        Raises ``IntegrityViolation`` without touching local state when the
        subscription's price does not match the catalog price for ``tier``.
        """
        store = self.store
        async with store.locks.for_user(user_id):
            if await store.users.find_user_by_id(user_id) is None:
                _ignored("unknown_user", user_id=user_id)
                return None

            price = await self.provider.retrieve_price(snapshot.price_id)
            if price.unit_amount != tier.price_minor_units:
                logger.critical(
                    "billing_price_mismatch",
                    user_id=user_id,
                    plan=tier.id.value,
                    expected_amount=tier.price_minor_units,
                    actual_amount=price.unit_amount,
                    price_id=snapshot.price_id,
                    subscription_id=snapshot.subscription_id,
                )
                raise IntegrityViolation(
                    f"Price {snapshot.price_id} does not match the {tier.display_name} plan",
                    plan=tier.id.value,
                    price_id=snapshot.price_id,
                )

            state = await store.load_state(user_id)
            base = (
                state
                if isinstance(state, Entitlement)
                else state.materialize(str(uuid.uuid4()), store.now_provider())
            )
            entitlement = await store.repository.save(
                base.model_copy(
                    update={
                        "plan": tier.id,
                        "status": snapshot.status,
                        "billing_customer_ref": snapshot.customer_id,
                        "billing_subscription_ref": snapshot.subscription_id,
                        "billing_price_ref": snapshot.price_id,
                        "current_period_start": snapshot.current_period_start,
                        "current_period_end": snapshot.current_period_end,
                        "canceled_at": snapshot.canceled_at,
                    }
                )
            )
            await store.sync_user_flag(entitlement)
            await self.enforcer.prune_excess_highlights(user_id, tier.highlight_limit)

        logger.info(
            "entitlement_synced",
            user_id=user_id,
            plan=entitlement.plan.value,
            status=entitlement.status.value,
            subscription_id=snapshot.subscription_id,
        )
        return entitlement

    async def _entitlement_for_ref(self, subscription_ref: str | None) -> Entitlement | None:
        if not subscription_ref:
            _ignored("missing_subscription_ref")
            return None
        entitlement = await self.store.repository.get_by_subscription_ref(subscription_ref)
        if entitlement is None:
            _ignored("unknown_subscription", subscription_id=subscription_ref)
        return entitlement

    async def on_subscription_deleted(self, subscription: dict[str, Any]) -> None:
        subscription_ref = subscription.get("id")
        found = await self._entitlement_for_ref(subscription_ref)
        if found is None:
            return

        try:
            period_end = self.provider.subscription_snapshot_from_object(
                subscription
            ).current_period_end
        except ValueError:
            period_end = None

        store = self.store
        async with store.locks.for_user(found.user_id):
            # Re-read under the lock; a concurrent event may have moved the row.
            entitlement = await store.repository.get_by_subscription_ref(subscription_ref)
            if entitlement is None:
                _ignored("unknown_subscription", subscription_id=subscription_ref)
                return
            await store.revert_to_free(
                entitlement,
                canceled_at=store.now_provider(),
                current_period_end=period_end,
            )
        logger.info(
            "entitlement_canceled", user_id=found.user_id, subscription_id=subscription_ref
        )

    async def _set_status(self, subscription_ref: str | None, status: SubscriptionStatus) -> None:
        found = await self._entitlement_for_ref(subscription_ref)
        if found is None:
            return

        store = self.store
        async with store.locks.for_user(found.user_id):
            entitlement = await store.repository.get_by_subscription_ref(subscription_ref)
            if entitlement is None or entitlement.status == status:
                return
            saved = await store.repository.save(entitlement.model_copy(update={"status": status}))
            await store.sync_user_flag(saved)
        logger.info(
            "entitlement_status_changed",
            user_id=found.user_id,
            previous_status=found.status.value,
            status=status.value,
        )

    async def on_invoice_payment_succeeded(self, invoice: dict[str, Any]) -> None:
        await self._set_status(
            self.provider.subscription_ref_from_invoice(invoice), SubscriptionStatus.ACTIVE
        )

    async def on_invoice_payment_failed(self, invoice: dict[str, Any]) -> None:
        # past_due is a grace state; listings stay as they are
        await self._set_status(
            self.provider.subscription_ref_from_invoice(invoice), SubscriptionStatus.PAST_DUE
        )
