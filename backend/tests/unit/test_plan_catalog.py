"""Unit tests for the plan catalog."""

import pytest
from pydantic import ValidationError

from prolocal.errors import UnknownPlan
from prolocal.models.billing import PlanId
from prolocal.services.plan_catalog import get_plan, list_plans


class TestGetPlan:
    @pytest.mark.parametrize(
        ("plan_id", "resource_limit", "highlight_limit"),
        [
            ("free", 1, 0),
            ("plus", 5, 2),
            ("premium", 15, 5),
            ("enterprise", 50, 15),
        ],
    )
    def test_quotas_match_published_table(self, plan_id, resource_limit, highlight_limit):
        tier = get_plan(plan_id)

        assert tier.resource_limit == resource_limit
        assert tier.highlight_limit == highlight_limit

    def test_accepts_enum_members(self):
        assert get_plan(PlanId.PREMIUM).price_minor_units == 2199

    def test_unknown_plan_raises(self):
        with pytest.raises(UnknownPlan) as exc_info:
            get_plan("platinum")

        assert exc_info.value.plan_id == "platinum"
        assert exc_info.value.status_code == 400

    def test_free_tier_has_no_highlight_label(self):
        assert get_plan("free").highlight_tier_label is None

    @pytest.mark.parametrize("plan_id", ["plus", "premium", "enterprise"])
    def test_paid_tiers_label_highlights_with_their_id(self, plan_id):
        assert get_plan(plan_id).highlight_tier_label == plan_id


class TestListPlans:
    def test_lists_every_tier_in_price_order(self):
        plans = list_plans()

        assert [p.id for p in plans] == [
            PlanId.FREE,
            PlanId.PLUS,
            PlanId.PREMIUM,
            PlanId.ENTERPRISE,
        ]
        assert [p.price_minor_units for p in plans] == [0, 1499, 2199, 4299]

    def test_tiers_are_immutable(self):
        tier = list_plans()[1]

        with pytest.raises(ValidationError):
            tier.price_minor_units = 1
