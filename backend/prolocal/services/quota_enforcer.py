"""Plan quota checks for listing creation, activation and highlighting."""

import uuid
from typing import TYPE_CHECKING

import structlog

from prolocal.errors import (
    AlreadyActive,
    Forbidden,
    HighlightNotAllowed,
    ListingNotFound,
    QuotaExceeded,
)
from prolocal.models.billing import DEACTIVATE, STRIP_HIGHLIGHT, Listing, ListingDraft, PlanTier
from prolocal.services.directories import ListingDirectory
from prolocal.services.plan_catalog import get_plan

if TYPE_CHECKING:
    from prolocal.services.entitlement_store import EntitlementStore

logger = structlog.get_logger(__name__)

RESOURCE_LISTINGS = "listings"
RESOURCE_ACTIVE_LISTINGS = "active listings"
RESOURCE_HIGHLIGHTS = "highlighted listings"


async def cascade_deactivate_and_strip_highlights(
    listings: ListingDirectory, user_id: str
) -> int:
    """Deactivate and un-highlight every listing of ``user_id`` in one bulk update."""
    touched = await listings.deactivate_and_strip(user_id)
    logger.info("listings_deactivated", user_id=user_id, count=touched)
    return touched


async def prune_excess_highlights(
    listings: ListingDirectory, user_id: str, new_limit: int
) -> int:
    """Strip highlights beyond ``new_limit``, keeping the oldest listings highlighted."""
    if new_limit == 0:
        stripped = await listings.strip_highlights(user_id)
    else:
        highlighted = await listings.find_by_owner(user_id, is_highlighted=True)
        excess = [listing.id for listing in highlighted[new_limit:]]
        stripped = await listings.bulk_update(excess, STRIP_HIGHLIGHT) if excess else 0

    if stripped:
        logger.info(
            "highlights_pruned", user_id=user_id, highlight_limit=new_limit, stripped=stripped
        )
    return stripped


class QuotaEnforcer:
    """Gates listing mutations on the owner's current plan.

    Every check runs under the owner's lock from the shared registry, so the
    count and the write cannot interleave with another request for that user.
    """

    def __init__(self, store: "EntitlementStore") -> None:
        self.store = store

    @property
    def listings(self) -> ListingDirectory:
        return self.store.listings

    async def _owned_listing(self, user_id: str, listing_id: str) -> Listing:
        listing = await self.listings.get_listing(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        if listing.owner_id != user_id:
            raise Forbidden("You do not own this listing", "listing_not_owned")
        return listing

    async def _current_tier(self, user_id: str) -> PlanTier:
        entitlement = await self.store.resolve_locked(user_id)
        return get_plan(entitlement.plan)

    def _exceeded(self, user_id: str, tier: PlanTier, resource: str, limit: int) -> QuotaExceeded:
        logger.info(
            "quota_exceeded", user_id=user_id, plan=tier.id.value, resource=resource, limit=limit
        )
        return QuotaExceeded(
            resource=resource, limit=limit, plan=tier.id, plan_name=tier.display_name
        )

    async def authorize_resource_creation(self, user_id: str, draft: ListingDraft) -> Listing:
        """Create an active listing if the owner's total listing count is under quota."""
        async with self.store.locks.for_user(user_id):
            tier = await self._current_tier(user_id)
            limit = tier.resource_limit
            if limit is not None:
                owned = await self.listings.count_by_owner(user_id)
                if owned >= limit:
                    raise self._exceeded(user_id, tier, RESOURCE_LISTINGS, limit)

            listing = await self.listings.create_listing(
                Listing(
                    id=str(uuid.uuid4()),
                    owner_id=user_id,
                    title=draft.title,
                    description=draft.description,
                    price=draft.price,
                )
            )
        logger.info("listing_created", user_id=user_id, listing_id=listing.id)
        return listing

    async def authorize_resource_activation(self, user_id: str, listing_id: str) -> Listing:
        """Activate a dormant listing if the owner's active count is under quota."""
        async with self.store.locks.for_user(user_id):
            tier = await self._current_tier(user_id)
            listing = await self._owned_listing(user_id, listing_id)
            if listing.is_active:
                raise AlreadyActive(listing_id)

            limit = tier.resource_limit
            if limit is not None:
                active = await self.listings.count_by_owner(user_id, is_active=True)
                if active >= limit:
                    raise self._exceeded(user_id, tier, RESOURCE_ACTIVE_LISTINGS, limit)

            saved = await self.listings.save_listing(listing.model_copy(update={"is_active": True}))
        logger.info("listing_activated", user_id=user_id, listing_id=listing_id)
        return saved

    async def deactivate_listing(self, user_id: str, listing_id: str) -> Listing:
        """Make an owned listing dormant, freeing an active slot. Never quota-checked."""
        async with self.store.locks.for_user(user_id):
            listing = await self._owned_listing(user_id, listing_id)
            if not listing.is_active:
                return listing
            saved = await self.listings.save_listing(DEACTIVATE.apply(listing))
        logger.info("listing_deactivated", user_id=user_id, listing_id=listing_id)
        return saved

    async def authorize_highlight_grant(
        self, user_id: str, listing_id: str, enable: bool
    ) -> Listing:
        """Grant or revoke the highlight flag on one listing.

        Revoking is never quota-checked. Granting counts the owner's other
        highlighted listings, so re-enabling an already highlighted listing
        does not count it twice.
        """
        async with self.store.locks.for_user(user_id):
            tier = await self._current_tier(user_id)
            listing = await self._owned_listing(user_id, listing_id)

            if not enable:
                saved = await self.listings.save_listing(STRIP_HIGHLIGHT.apply(listing))
                logger.info("highlight_revoked", user_id=user_id, listing_id=listing_id)
                return saved

            if tier.highlight_limit == 0:
                raise HighlightNotAllowed(tier.id)

            others = await self.listings.count_by_owner(
                user_id, is_highlighted=True, exclude_id=listing_id
            )
            if others >= tier.highlight_limit:
                raise self._exceeded(user_id, tier, RESOURCE_HIGHLIGHTS, tier.highlight_limit)

            saved = await self.listings.save_listing(
                listing.model_copy(
                    update={
                        "is_highlighted": True,
                        "highlight_tier_label": tier.highlight_tier_label,
                    }
                )
            )
        logger.info(
            "highlight_granted",
            user_id=user_id,
            listing_id=listing_id,
            tier_label=tier.highlight_tier_label,
        )
        return saved

    async def prune_excess_highlights(self, user_id: str, new_limit: int) -> int:
        """Caller must hold the user's lock."""
        return await prune_excess_highlights(self.listings, user_id, new_limit)
