"""Entitlement repositories and the lazily-expiring entitlement read path."""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

import structlog

from prolocal.errors import UserNotFound
from prolocal.models.billing import (
    Entitlement,
    EntitlementState,
    ImplicitFreeEntitlement,
    PlanId,
    SubscriptionStatus,
)
from prolocal.services.directories import ListingDirectory, UserDirectory
from prolocal.services.quota_enforcer import cascade_deactivate_and_strip_highlights

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EntitlementRepository(Protocol):
    """Storage contract for entitlement rows and the webhook event ledger."""

    async def get_by_user(self, user_id: str) -> Entitlement | None:
        """Fetch the entitlement owned by ``user_id``."""

    async def get_by_subscription_ref(self, subscription_ref: str) -> Entitlement | None:
        """Fetch the entitlement linked to a billing-provider subscription."""

    async def save(self, entitlement: Entitlement) -> Entitlement:
        """Insert or update by user id (one row per user)."""

    async def has_processed_webhook(self, event_id: str) -> bool:
        """Whether a provider event was already applied."""

    async def record_processed_webhook(self, event_id: str, event_type: str) -> None:
        """Remember that a provider event was applied."""


class InMemoryEntitlementRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.entitlements: dict[str, Entitlement] = {}
        self.processed_events: dict[str, str] = {}

    async def get_by_user(self, user_id: str) -> Entitlement | None:
        entitlement = self.entitlements.get(user_id)
        return entitlement.model_copy(deep=True) if entitlement else None

    async def get_by_subscription_ref(self, subscription_ref: str) -> Entitlement | None:
        for entitlement in self.entitlements.values():
            if entitlement.billing_subscription_ref == subscription_ref:
                return entitlement.model_copy(deep=True)
        return None

    async def save(self, entitlement: Entitlement) -> Entitlement:
        now = _utcnow()
        stored = entitlement.model_copy(
            update={"created_at": entitlement.created_at or now, "updated_at": now},
            deep=True,
        )
        self.entitlements[stored.user_id] = stored
        return stored.model_copy(deep=True)

    async def has_processed_webhook(self, event_id: str) -> bool:
        return event_id in self.processed_events

    async def record_processed_webhook(self, event_id: str, event_type: str) -> None:
        self.processed_events[event_id] = event_type


class SupabaseEntitlementRepository:
    """Supabase-backed repository for entitlement rows."""

    def __init__(self, client, entitlements_table: str, webhook_events_table: str):
        self.client = client
        self.entitlements_table = entitlements_table
        self.webhook_events_table = webhook_events_table

    async def _first(self, column: str, value: str) -> Entitlement | None:
        response = (
            await self.client.table(self.entitlements_table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Entitlement.model_validate(rows[0])

    async def get_by_user(self, user_id: str) -> Entitlement | None:
        return await self._first("user_id", user_id)

    async def get_by_subscription_ref(self, subscription_ref: str) -> Entitlement | None:
        return await self._first("billing_subscription_ref", subscription_ref)

    async def save(self, entitlement: Entitlement) -> Entitlement:
        # Nulls are written on purpose: reverting to free clears the provider refs.
        payload = entitlement.model_dump(mode="json", exclude={"created_at"})
        payload["updated_at"] = _utcnow().isoformat()
        response = (
            await self.client.table(self.entitlements_table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return entitlement
        return Entitlement.model_validate(rows[0])

    async def has_processed_webhook(self, event_id: str) -> bool:
        existing = (
            await self.client.table(self.webhook_events_table)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        return bool(existing.data)

    async def record_processed_webhook(self, event_id: str, event_type: str) -> None:
        await (
            self.client.table(self.webhook_events_table)
            .upsert(
                {
                    "event_id": event_id,
                    "event_type": event_type,
                    "processed_at": _utcnow().isoformat(),
                },
                on_conflict="event_id",
            )
            .execute()
        )


class UserLockRegistry:
    """Per-user asyncio locks serializing read-count-then-write sequences.

    Locks are process-local; several workers need a database row lock instead.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def for_user(self, user_id: str) -> asyncio.Lock:
        return self._locks[user_id]


class EntitlementStore:
    """Reads and transitions per-user entitlements.

    A user without a row is implicitly on the free tier; the row is
    materialized on first read. Lapsed paid plans (period ended while still
    ``active``) are reverted to free on read instead of by a background sweep,
    so a user who stops making requests keeps a stale row until the next call.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        users: UserDirectory,
        listings: ListingDirectory,
        locks: UserLockRegistry | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.users = users
        self.listings = listings
        self.locks = locks or UserLockRegistry()
        self.now_provider = now_provider

    async def load_state(self, user_id: str) -> EntitlementState:
        entitlement = await self.repository.get_by_user(user_id)
        if entitlement is None:
            return ImplicitFreeEntitlement(user_id=user_id)
        return entitlement

    async def get_entitlement(self, user_id: str) -> Entitlement:
        """Current entitlement for ``user_id``, materializing or lapsing it if needed."""
        async with self.locks.for_user(user_id):
            return await self.resolve_locked(user_id)

    async def resolve_locked(self, user_id: str) -> Entitlement:
        """Same as :meth:`get_entitlement`; caller must hold the user's lock."""
        if await self.users.find_user_by_id(user_id) is None:
            raise UserNotFound(user_id)

        now = self.now_provider()
        state = await self.load_state(user_id)

        if isinstance(state, ImplicitFreeEntitlement):
            entitlement = await self.repository.save(state.materialize(str(uuid.uuid4()), now))
            logger.info("entitlement_materialized", user_id=user_id, plan=entitlement.plan.value)
            return entitlement

        if state.is_lapsed(now):
            logger.info(
                "entitlement_lapsed",
                user_id=user_id,
                plan=state.plan.value,
                current_period_end=state.current_period_end.isoformat(),
            )
            return await self.revert_to_free(state, canceled_at=now)

        return state

    async def revert_to_free(
        self,
        entitlement: Entitlement,
        *,
        canceled_at: datetime,
        current_period_end: datetime | None = None,
    ) -> Entitlement:
        """Terminate paid access: free/canceled, flag cleared, listings deactivated.

        Caller must hold the user's lock.
        """
        updated = entitlement.model_copy(
            update={
                "plan": PlanId.FREE,
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": canceled_at,
                "current_period_end": current_period_end or entitlement.current_period_end,
                # free never carries provider subscription linkage
                "billing_subscription_ref": None,
                "billing_price_ref": None,
            }
        )
        saved = await self.repository.save(updated)
        await self.users.update_user(entitlement.user_id, has_active_plan=False)
        await cascade_deactivate_and_strip_highlights(self.listings, entitlement.user_id)
        return saved

    async def sync_user_flag(self, entitlement: Entitlement) -> None:
        """Mirror ``grants_paid_access`` into the user's ``has_active_plan``."""
        await self.users.update_user(
            entitlement.user_id, has_active_plan=entitlement.grants_paid_access
        )
