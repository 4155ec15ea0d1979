"""Listing endpoints gated by plan quotas."""

from datetime import datetime

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from prolocal.api.v1.schemas import CamelModel
from prolocal.auth import CurrentUser
from prolocal.errors import BillingUnavailable
from prolocal.models.billing import Listing, ListingDraft
from prolocal.services.quota_enforcer import QuotaEnforcer

router = APIRouter(prefix="/listings", tags=["listings"])


class ListingResponse(CamelModel):
    id: str
    owner_id: str
    title: str
    description: str | None
    price: float | None
    is_active: bool
    is_highlighted: bool
    highlight_tier_label: str | None
    created_at: datetime | None

    @classmethod
    def from_listing(cls, listing: Listing) -> "ListingResponse":
        return cls.model_validate(listing.model_dump())


class HighlightRequest(BaseModel):
    enabled: bool


def _get_quota_enforcer(request: Request) -> QuotaEnforcer:
    enforcer = getattr(request.app.state, "quota_enforcer", None)
    if enforcer is None:
        raise BillingUnavailable("Quota enforcer")
    return enforcer


@router.post("", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
async def create_listing(
    body: ListingDraft, request: Request, user: CurrentUser
) -> ListingResponse:
    """Create an active listing if the plan allows another one."""
    listing = await _get_quota_enforcer(request).authorize_resource_creation(user.id, body)
    return ListingResponse.from_listing(listing)


@router.post("/{listing_id}/activate", response_model=ListingResponse)
async def activate_listing(
    listing_id: str, request: Request, user: CurrentUser
) -> ListingResponse:
    listing = await _get_quota_enforcer(request).authorize_resource_activation(
        user.id, listing_id
    )
    return ListingResponse.from_listing(listing)


@router.post("/{listing_id}/deactivate", response_model=ListingResponse)
async def deactivate_listing(
    listing_id: str, request: Request, user: CurrentUser
) -> ListingResponse:
    listing = await _get_quota_enforcer(request).deactivate_listing(user.id, listing_id)
    return ListingResponse.from_listing(listing)


@router.put("/{listing_id}/highlight", response_model=ListingResponse)
async def set_listing_highlight(
    listing_id: str, body: HighlightRequest, request: Request, user: CurrentUser
) -> ListingResponse:
    """Grant or revoke the highlight flag."""
    listing = await _get_quota_enforcer(request).authorize_highlight_grant(
        user.id, listing_id, body.enabled
    )
    return ListingResponse.from_listing(listing)
