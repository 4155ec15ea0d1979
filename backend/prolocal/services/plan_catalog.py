"""Plan catalog lookups."""

from prolocal.constants import PLAN_CATALOG
from prolocal.errors import UnknownPlan
from prolocal.models.billing import PlanId, PlanTier


def get_plan(plan_id: PlanId | str) -> PlanTier:
    """Return the tier for ``plan_id`` or raise ``UnknownPlan``."""
    try:
        return PLAN_CATALOG[PlanId(plan_id)]
    except (ValueError, KeyError):
        raise UnknownPlan(str(getattr(plan_id, "value", plan_id))) from None


def list_plans() -> list[PlanTier]:
    """All tiers in catalog order, for public display."""
    return list(PLAN_CATALOG.values())
