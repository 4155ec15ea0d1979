"""User and listing directories consumed by the entitlement engine."""

import uuid
from datetime import UTC, datetime
from typing import Protocol

from prolocal.models.billing import (
    DEACTIVATE_AND_STRIP,
    STRIP_HIGHLIGHT,
    Listing,
    ListingPatch,
    UserAccount,
)


_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UserDirectory(Protocol):
    """Storage contract for the user fields billing cares about."""

    async def find_user_by_id(self, user_id: str) -> UserAccount | None:
        """Fetch a user."""

    async def update_user(self, user_id: str, *, has_active_plan: bool) -> None:
        """Persist the denormalized paid-plan flag."""


class ListingDirectory(Protocol):
    """Storage contract for listings owned by users."""

    async def get_listing(self, listing_id: str) -> Listing | None:
        """Fetch a listing."""

    async def create_listing(self, listing: Listing) -> Listing:
        """Insert a new listing."""

    async def save_listing(self, listing: Listing) -> Listing:
        """Persist a single listing."""

    async def count_by_owner(
        self,
        owner_id: str,
        *,
        is_active: bool | None = None,
        is_highlighted: bool | None = None,
        exclude_id: str | None = None,
    ) -> int:
        """Count listings owned by ``owner_id`` matching the given filter."""

    async def find_by_owner(
        self, owner_id: str, *, is_highlighted: bool | None = None
    ) -> list[Listing]:
        """Listings owned by ``owner_id``, oldest first."""

    async def bulk_update(self, listing_ids: list[str], patch: ListingPatch) -> int:
        """Apply ``patch`` to every listed id. Returns rows touched."""

    async def deactivate_and_strip(self, owner_id: str) -> int:
        """Deactivate and un-highlight every listing of ``owner_id``."""

    async def strip_highlights(self, owner_id: str) -> int:
        """Un-highlight every highlighted listing of ``owner_id``."""


class InMemoryUserDirectory:
    """In-memory user store used for tests and local fallback."""

    def __init__(self, users: list[UserAccount] | None = None) -> None:
        self.users: dict[str, UserAccount] = {u.id: u for u in users or []}

    def add(self, user: UserAccount) -> UserAccount:
        self.users[user.id] = user.model_copy(deep=True)
        return user

    async def find_user_by_id(self, user_id: str) -> UserAccount | None:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def update_user(self, user_id: str, *, has_active_plan: bool) -> None:
        user = self.users.get(user_id)
        if user is not None:
            self.users[user_id] = user.model_copy(update={"has_active_plan": has_active_plan})


class InMemoryListingDirectory:
    """In-memory listing store used for tests and local fallback."""

    def __init__(self) -> None:
        self.listings: dict[str, Listing] = {}

    async def get_listing(self, listing_id: str) -> Listing | None:
        listing = self.listings.get(listing_id)
        return listing.model_copy(deep=True) if listing else None

    async def create_listing(self, listing: Listing) -> Listing:
        now = _utcnow()
        stored = listing.model_copy(
            update={
                "id": listing.id or str(uuid.uuid4()),
                "created_at": listing.created_at or now,
                "updated_at": now,
            }
        )
        self.listings[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save_listing(self, listing: Listing) -> Listing:
        stored = listing.model_copy(update={"updated_at": _utcnow()})
        self.listings[stored.id] = stored
        return stored.model_copy(deep=True)

    def _owned(self, owner_id: str) -> list[Listing]:
        owned = [item for item in self.listings.values() if item.owner_id == owner_id]
        # created_at ties fall back to id so ordering is stable
        return sorted(owned, key=lambda item: (item.created_at or _EPOCH, item.id))

    async def count_by_owner(
        self,
        owner_id: str,
        *,
        is_active: bool | None = None,
        is_highlighted: bool | None = None,
        exclude_id: str | None = None,
    ) -> int:
        return sum(
            1
            for item in self._owned(owner_id)
            if (is_active is None or item.is_active == is_active)
            and (is_highlighted is None or item.is_highlighted == is_highlighted)
            and item.id != exclude_id
        )

    async def find_by_owner(
        self, owner_id: str, *, is_highlighted: bool | None = None
    ) -> list[Listing]:
        return [
            item.model_copy(deep=True)
            for item in self._owned(owner_id)
            if is_highlighted is None or item.is_highlighted == is_highlighted
        ]

    async def bulk_update(self, listing_ids: list[str], patch: ListingPatch) -> int:
        touched = 0
        now = _utcnow()
        for listing_id in listing_ids:
            listing = self.listings.get(listing_id)
            if listing is None:
                continue
            self.listings[listing_id] = patch.apply(listing).model_copy(update={"updated_at": now})
            touched += 1
        return touched

    async def deactivate_and_strip(self, owner_id: str) -> int:
        ids = [item.id for item in self._owned(owner_id)]
        return await self.bulk_update(ids, DEACTIVATE_AND_STRIP)

    async def strip_highlights(self, owner_id: str) -> int:
        ids = [item.id for item in self._owned(owner_id) if item.is_highlighted]
        return await self.bulk_update(ids, STRIP_HIGHLIGHT)


class SupabaseUserDirectory:
    """Supabase-backed user directory."""

    def __init__(self, client, users_table: str):
        self.client = client
        self.users_table = users_table

    async def find_user_by_id(self, user_id: str) -> UserAccount | None:
        response = (
            await self.client.table(self.users_table)
            .select("id, email, name, has_active_plan")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return UserAccount.model_validate(rows[0])

    async def update_user(self, user_id: str, *, has_active_plan: bool) -> None:
        await (
            self.client.table(self.users_table)
            .update({"has_active_plan": has_active_plan, "updated_at": _utcnow().isoformat()})
            .eq("id", user_id)
            .execute()
        )


class SupabaseListingDirectory:
    """Supabase-backed listing directory."""

    def __init__(self, client, listings_table: str):
        self.client = client
        self.listings_table = listings_table

    def _table(self):
        return self.client.table(self.listings_table)

    async def get_listing(self, listing_id: str) -> Listing | None:
        response = await self._table().select("*").eq("id", listing_id).limit(1).execute()
        rows = response.data or []
        if not rows:
            return None
        return Listing.model_validate(rows[0])

    async def create_listing(self, listing: Listing) -> Listing:
        payload = listing.model_dump(mode="json", exclude_none=True)
        response = await self._table().insert(payload).execute()
        rows = response.data or []
        if not rows:
            return listing
        return Listing.model_validate(rows[0])

    async def save_listing(self, listing: Listing) -> Listing:
        payload = listing.model_dump(mode="json", exclude={"id", "created_at"})
        payload["updated_at"] = _utcnow().isoformat()
        response = await self._table().update(payload).eq("id", listing.id).execute()
        rows = response.data or []
        if not rows:
            return listing
        return Listing.model_validate(rows[0])

    async def count_by_owner(
        self,
        owner_id: str,
        *,
        is_active: bool | None = None,
        is_highlighted: bool | None = None,
        exclude_id: str | None = None,
    ) -> int:
        query = self._table().select("id", count="exact").eq("owner_id", owner_id)
        if is_active is not None:
            query = query.eq("is_active", is_active)
        if is_highlighted is not None:
            query = query.eq("is_highlighted", is_highlighted)
        if exclude_id is not None:
            query = query.neq("id", exclude_id)
        response = await query.execute()
        return response.count or 0

    async def find_by_owner(
        self, owner_id: str, *, is_highlighted: bool | None = None
    ) -> list[Listing]:
        query = self._table().select("*").eq("owner_id", owner_id)
        if is_highlighted is not None:
            query = query.eq("is_highlighted", is_highlighted)
        response = await query.order("created_at").order("id").execute()
        return [Listing.model_validate(row) for row in response.data or []]

    async def bulk_update(self, listing_ids: list[str], patch: ListingPatch) -> int:
        if not listing_ids:
            return 0
        row = patch.to_row()
        row["updated_at"] = _utcnow().isoformat()
        response = await self._table().update(row).in_("id", listing_ids).execute()
        return len(response.data or [])

    async def deactivate_and_strip(self, owner_id: str) -> int:
        row = DEACTIVATE_AND_STRIP.to_row()
        row["updated_at"] = _utcnow().isoformat()
        response = await self._table().update(row).eq("owner_id", owner_id).execute()
        return len(response.data or [])

    async def strip_highlights(self, owner_id: str) -> int:
        row = STRIP_HIGHLIGHT.to_row()
        row["updated_at"] = _utcnow().isoformat()
        response = (
            await self._table()
            .update(row)
            .eq("owner_id", owner_id)
            .eq("is_highlighted", True)
            .execute()
        )
        return len(response.data or [])
