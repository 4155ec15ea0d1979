"""Domain errors surfaced to HTTP callers as status code + message."""

from dataclasses import dataclass
from typing import Any, Mapping

from fastapi import status

from prolocal.models.billing import PlanId


@dataclass(eq=False)
class EntitlementError(Exception):
    """Base for every error the entitlement engine raises on purpose."""

    message: str
    code: str = "entitlement_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> dict[str, Any]:
        """Serialized representation suitable for JSON responses."""
        body: dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.detail:
            body.update(self.detail)
        return body


class NotFound(EntitlementError):
    def __init__(self, message: str, code: str = "not_found") -> None:
        super().__init__(message, code, status.HTTP_404_NOT_FOUND)


class UserNotFound(NotFound):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}", "user_not_found")
        self.user_id = user_id


class ListingNotFound(NotFound):
    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing not found: {listing_id}", "listing_not_found")


class EntitlementNotFound(NotFound):
    def __init__(self, user_id: str) -> None:
        super().__init__("Subscription not found", "entitlement_not_found")
        self.user_id = user_id


class Forbidden(EntitlementError):
    def __init__(self, message: str, code: str = "forbidden") -> None:
        super().__init__(message, code, status.HTTP_403_FORBIDDEN)


class HighlightNotAllowed(Forbidden):
    def __init__(self, plan: PlanId) -> None:
        super().__init__(
            f"The {plan.value} plan does not include highlighted listings",
            "highlight_not_allowed",
        )
        self.plan = plan


class QuotaExceeded(EntitlementError):
    """Resource or highlight limit reached. The message is shown to users verbatim."""

    def __init__(self, *, resource: str, limit: int, plan: PlanId, plan_name: str) -> None:
        super().__init__(
            f"{resource.capitalize()} limit reached: the {plan_name} plan allows {limit}. "
            "Upgrade your plan to add more.",
            "quota_exceeded",
            status.HTTP_403_FORBIDDEN,
            {"limit": limit, "plan": plan.value, "resource": resource},
        )
        self.resource = resource
        self.limit = limit
        self.plan = plan


class InvalidState(EntitlementError):
    def __init__(self, message: str, code: str = "invalid_state") -> None:
        super().__init__(message, code, status.HTTP_400_BAD_REQUEST)


class AlreadyActive(InvalidState):
    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing {listing_id} is already active", "already_active")


class AlreadyCanceled(InvalidState):
    def __init__(self) -> None:
        super().__init__("Subscription is already canceled", "already_canceled")


class MissingBillingSubscription(InvalidState):
    def __init__(self) -> None:
        super().__init__(
            "Subscription has no billing provider reference", "missing_billing_subscription"
        )


class AlreadyActiveSubscription(EntitlementError):
    def __init__(self) -> None:
        super().__init__(
            "You already have an active subscription. Cancel it before subscribing to a new plan.",
            "already_active_subscription",
            status.HTTP_409_CONFLICT,
        )


class UnknownPlan(EntitlementError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Unknown plan: {plan_id}", "unknown_plan", status.HTTP_400_BAD_REQUEST)
        self.plan_id = plan_id


class InvalidPlan(EntitlementError):
    def __init__(self, message: str) -> None:
        super().__init__(message, "invalid_plan", status.HTTP_400_BAD_REQUEST)


class ProviderSignatureInvalid(EntitlementError):
    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Webhook signature verification failed: {reason}",
            "provider_signature_invalid",
            status.HTTP_400_BAD_REQUEST,
        )


class IntegrityViolation(EntitlementError):
    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(
            message, "integrity_violation", status.HTTP_500_INTERNAL_SERVER_ERROR, detail or None
        )


class BillingProviderError(EntitlementError):
    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            f"Billing provider call failed ({operation}): {reason}",
            "billing_provider_error",
            status.HTTP_502_BAD_GATEWAY,
        )
        self.operation = operation


class BillingUnavailable(EntitlementError):
    def __init__(self, component: str) -> None:
        super().__init__(
            f"{component} is not configured",
            "billing_unavailable",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
