"""
Business logic constants for the ProLocal billing service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. Provider credentials, currency and redirect URLs
live in config.py.
"""

from prolocal.models.billing import PlanId, PlanTier

API_TITLE = "ProLocal Billing API"
API_VERSION = "0.1.0"

# --- Plan catalog ---
# Prices in cents of the configured currency, charged monthly.
# The only source of price and quota: checkout never reads a price from the
# caller and webhook price checks compare against these amounts.
PLAN_CATALOG: dict[PlanId, PlanTier] = {
    PlanId.FREE: PlanTier(
        id=PlanId.FREE,
        display_name="Free",
        price_minor_units=0,
        resource_limit=1,
        highlight_limit=0,
        feature_descriptions=("1 listed service", "Basic listing"),
    ),
    PlanId.PLUS: PlanTier(
        id=PlanId.PLUS,
        display_name="Plus",
        price_minor_units=1499,
        resource_limit=5,
        highlight_limit=2,
        highlight_tier_label="plus",
        feature_descriptions=(
            "Up to 5 services",
            "Plus highlight on 2 services",
            "Basic statistics",
            "Priority support",
        ),
    ),
    PlanId.PREMIUM: PlanTier(
        id=PlanId.PREMIUM,
        display_name="Premium",
        price_minor_units=2199,
        resource_limit=15,
        highlight_limit=5,
        highlight_tier_label="premium",
        feature_descriptions=(
            "Up to 15 services",
            "Premium highlight on 5 services",
            "Advanced statistics",
            "24/7 support",
            "Verified badge",
        ),
    ),
    PlanId.ENTERPRISE: PlanTier(
        id=PlanId.ENTERPRISE,
        display_name="Enterprise",
        price_minor_units=4299,
        resource_limit=50,
        highlight_limit=15,
        highlight_tier_label="enterprise",
        feature_descriptions=(
            "Up to 50 services",
            "Enterprise highlight on 15 services",
            "Full analytics",
            "Dedicated account manager",
        ),
    ),
}

# --- Billing provider correlation metadata keys ---
# Set on checkout sessions and subscriptions at creation time (server side).
METADATA_USER_ID = "user_id"
METADATA_PLAN_ID = "plan_id"

# --- Provider subscription statuses outside the local status enum ---
PROVIDER_STATUS_ALIASES: dict[str, str] = {
    "incomplete": "unpaid",
    "incomplete_expired": "canceled",
    "paused": "past_due",
}

CANCEL_AT_PERIOD_END_MESSAGE = "Subscription will be canceled at the end of the current period"
