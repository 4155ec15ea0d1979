"""Plan catalog, subscription and billing webhook endpoints."""

from datetime import datetime

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, Field

from prolocal.api.v1.schemas import CamelModel
from prolocal.auth import CurrentUser
from prolocal.errors import BillingUnavailable
from prolocal.models.billing import Entitlement, PlanId, PlanTier, SubscriptionStatus
from prolocal.services.billing_reconciler import BillingReconciler
from prolocal.services.checkout_service import CheckoutService
from prolocal.services.entitlement_store import EntitlementStore
from prolocal.services.plan_catalog import list_plans

router = APIRouter(tags=["subscriptions"])


class PlanResponse(CamelModel):
    """Public view of a plan tier."""

    id: PlanId
    display_name: str
    price_minor_units: int
    resource_limit: int | None
    highlight_limit: int
    highlight_tier_label: str | None
    feature_descriptions: list[str]

    @classmethod
    def from_tier(cls, tier: PlanTier) -> "PlanResponse":
        return cls.model_validate(tier.model_dump())


class CheckoutRequest(CamelModel):
    """Checkout session request. Price is never accepted from the caller."""

    # Plain string so unknown plans answer 400 InvalidPlan rather than 422
    plan_id: str = Field(description="Requested paid plan")


class CheckoutResponse(CamelModel):
    session_id: str
    url: str | None


class EntitlementResponse(CamelModel):
    """Current plan and billing status for the authenticated user."""

    id: str
    user_id: str
    plan: PlanId
    status: SubscriptionStatus
    billing_customer_ref: str | None
    billing_subscription_ref: str | None
    billing_price_ref: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    canceled_at: datetime | None

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement) -> "EntitlementResponse":
        return cls.model_validate(entitlement.model_dump())


class CancelResponse(CamelModel):
    message: str
    cancel_at: datetime | None


class WebhookResponse(BaseModel):
    """Billing webhook processing response."""

    received: bool
    processed: bool


def _get_entitlement_store(request: Request) -> EntitlementStore:
    store = getattr(request.app.state, "entitlement_store", None)
    if store is None:
        raise BillingUnavailable("Entitlement store")
    return store


def _get_checkout_service(request: Request) -> CheckoutService:
    service = getattr(request.app.state, "checkout_service", None)
    if service is None:
        raise BillingUnavailable("Billing provider")
    return service


def _get_billing_reconciler(request: Request) -> BillingReconciler:
    reconciler = getattr(request.app.state, "billing_reconciler", None)
    if reconciler is None:
        raise BillingUnavailable("Billing provider")
    return reconciler


@router.get("/plans", response_model=list[PlanResponse])
async def get_plans() -> list[PlanResponse]:
    """List every plan tier with its price and quotas."""
    return [PlanResponse.from_tier(tier) for tier in list_plans()]


@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: CurrentUser,
) -> CheckoutResponse:
    """Create a hosted checkout session for a paid plan."""
    service = _get_checkout_service(request)
    session = await service.create_checkout_session(user.id, body.plan_id)
    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.get("/subscriptions/me", response_model=EntitlementResponse)
async def get_my_subscription(request: Request, user: CurrentUser) -> EntitlementResponse:
    """Current entitlement of the authenticated user (lapsed plans are reverted first)."""
    store = _get_entitlement_store(request)
    entitlement = await store.get_entitlement(user.id)
    return EntitlementResponse.from_entitlement(entitlement)


@router.delete("/subscriptions/cancel", response_model=CancelResponse)
async def cancel_subscription(request: Request, user: CurrentUser) -> CancelResponse:
    """Cancel the paid subscription at the end of the current period."""
    service = _get_checkout_service(request)
    result = await service.cancel_subscription(user.id)
    return CancelResponse(message=result.message, cancel_at=result.cancel_at)


@router.post("/subscriptions/webhook", response_model=WebhookResponse)
async def billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify and apply a billing provider event.

    The signature covers the raw bytes, so the body is read unparsed.
    """
    reconciler = _get_billing_reconciler(request)
    payload = await request.body()

    event = reconciler.provider.verify_webhook_event(payload, stripe_signature)
    processed = await reconciler.handle_event(event)
    return WebhookResponse(received=True, processed=processed)
