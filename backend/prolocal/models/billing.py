"""Plan, entitlement and listing models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PlanId(str, Enum):
    """Supported plan tiers."""

    FREE = "free"
    PLUS = "plus"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Billing status of an entitlement."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    TRIALING = "trialing"


PAID_ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class PlanTier(BaseModel):
    """Static plan definition. Sole source of truth for price and quota."""

    model_config = ConfigDict(frozen=True)

    id: PlanId
    display_name: str
    price_minor_units: int = Field(ge=0, description="Monthly price in cents")
    # None means unbounded
    resource_limit: int | None = Field(default=None, ge=0)
    highlight_limit: int = Field(default=0, ge=0)
    highlight_tier_label: str | None = None
    feature_descriptions: tuple[str, ...] = ()


class Entitlement(BaseModel):
    """Persisted per-user plan and billing state (one row per user)."""

    id: str
    user_id: str
    plan: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_customer_ref: str | None = None
    billing_subscription_ref: str | None = None
    billing_price_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def grants_paid_access(self) -> bool:
        """Value mirrored into ``UserAccount.has_active_plan``."""
        return self.status in PAID_ACCESS_STATUSES and self.plan != PlanId.FREE

    def is_lapsed(self, now: datetime) -> bool:
        """Active paid plan whose billing period ended without renewal."""
        return (
            self.plan != PlanId.FREE
            and self.status == SubscriptionStatus.ACTIVE
            and self.current_period_end is not None
            and self.current_period_end < now
        )


class ImplicitFreeEntitlement(BaseModel):
    """A user with no stored entitlement row: free tier, active."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    def materialize(self, entitlement_id: str, now: datetime) -> Entitlement:
        return Entitlement(
            id=entitlement_id,
            user_id=self.user_id,
            plan=self.plan,
            status=self.status,
            created_at=now,
            updated_at=now,
        )


EntitlementState = Entitlement | ImplicitFreeEntitlement


class UserAccount(BaseModel):
    """Slice of the user record the entitlement engine reads and writes."""

    id: str
    email: str | None = None
    name: str | None = None
    has_active_plan: bool = False


class Listing(BaseModel):
    """A service listing owned by a provider user."""

    id: str
    owner_id: str
    title: str
    description: str | None = None
    price: float | None = None
    is_active: bool = True
    is_highlighted: bool = False
    highlight_tier_label: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ListingDraft(BaseModel):
    """Caller-supplied fields for a new listing. Highlight fields are not accepted."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=100)
    price: float = Field(gt=0)


class ListingPatch(BaseModel):
    """Fields applied by a bulk listing update; None leaves a field untouched."""

    is_active: bool | None = None
    is_highlighted: bool | None = None
    clear_highlight_tier_label: bool = False

    def apply(self, listing: Listing) -> Listing:
        return listing.model_copy(update=self.to_row())

    def to_row(self) -> dict:
        row: dict = {}
        if self.is_active is not None:
            row["is_active"] = self.is_active
        if self.is_highlighted is not None:
            row["is_highlighted"] = self.is_highlighted
        if self.clear_highlight_tier_label:
            row["highlight_tier_label"] = None
        return row


DEACTIVATE = ListingPatch(is_active=False)
STRIP_HIGHLIGHT = ListingPatch(is_highlighted=False, clear_highlight_tier_label=True)
DEACTIVATE_AND_STRIP = ListingPatch(
    is_active=False, is_highlighted=False, clear_highlight_tier_label=True
)


class SubscriptionSnapshot(BaseModel):
    """Normalized billing-provider subscription payload."""

    subscription_id: str
    customer_id: str
    status: SubscriptionStatus
    price_id: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    cancel_at_period_end: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class PriceSnapshot(BaseModel):
    """Normalized billing-provider price."""

    price_id: str
    unit_amount: int | None = None
    currency: str | None = None
    interval: str | None = None
    product_id: str | None = None
    active: bool = True


class ProductSnapshot(BaseModel):
    """Normalized billing-provider product."""

    product_id: str
    name: str = ""
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSession(BaseModel):
    """Provider checkout session handed back to the caller."""

    session_id: str
    url: str | None = None


class CancellationResult(BaseModel):
    """Outcome of a cancel-at-period-end request."""

    message: str
    cancel_at: datetime | None = None
