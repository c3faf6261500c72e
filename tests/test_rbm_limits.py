"""Unit tests for plan-limit resolution and RBAC permission mapping."""

from __future__ import annotations

from decimal import Decimal
import uuid

from rbm.collaborators import ActorRole
from rbm.common import PLAN_TIER_LIMITS, RBM_MAX_SYSTEM
from rbm.limits import OPERATE, PLATFORM, VIEW_ONLY, permissions_for, plan_limit
from rbm.records import CampaignSnapshot, PlanSnapshot


def _campaign(franchise_id: int | None = 7) -> CampaignSnapshot:
    return CampaignSnapshot(
        campaign_id=uuid.uuid4(),
        portfolio_id="portfolio-1",
        franchise_id=franchise_id,
        name="c",
        status="active",
        initial_capital=Decimal("1000"),
        current_equity=Decimal("1000"),
        max_drawdown_pct=Decimal("10"),
        current_drawdown_pct=Decimal("0"),
        rbm_requested=None,
        rbm_approved=Decimal("1.00"),
        rbm_status="INACTIVE",
        rbm_approved_at=None,
        rbm_reduced_at=None,
        rbm_reduced_reason=None,
    )


def _plan(limit: object) -> PlanSnapshot:
    return PlanSnapshot(plan_id=1, tier_code="pro", display_name="Pro", max_rbm_multiplier=limit)


def test_platform_campaign_gets_system_ceiling() -> None:
    assert plan_limit(_campaign(franchise_id=None), None) == Decimal("5.00")


def test_plan_ceiling_is_used_when_well_formed() -> None:
    assert plan_limit(_campaign(), _plan(Decimal("3.00"))) == Decimal("3.00")
    assert plan_limit(_campaign(), _plan("2.5")) == Decimal("2.5")


def test_missing_or_malformed_plan_falls_back_to_default() -> None:
    campaign = _campaign()
    assert plan_limit(campaign, None) == Decimal("1.00")
    for malformed in (None, "abc", "NaN", True, Decimal("0.5"), Decimal("9")):
        assert plan_limit(campaign, _plan(malformed)) == Decimal("1.00")


def test_permission_mapping_by_role() -> None:
    assert permissions_for(None) == VIEW_ONLY
    assert permissions_for(ActorRole(global_role="franchisor", franchise_role=None)) == PLATFORM
    assert permissions_for(ActorRole(global_role="admin", franchise_role="operator")) == PLATFORM
    assert permissions_for(ActorRole(global_role="franchisee", franchise_role="master")) == OPERATE
    assert permissions_for(ActorRole(global_role="franchisee", franchise_role=None, is_franchise_owner=True)) == OPERATE
    assert permissions_for(ActorRole(global_role="franchisee", franchise_role="operator")) == OPERATE
    assert permissions_for(ActorRole(global_role="franchisee", franchise_role="analyst")) == VIEW_ONLY
    assert permissions_for(ActorRole(global_role="franchisee", franchise_role="finance")) == VIEW_ONLY
    assert permissions_for(ActorRole(global_role="franchisee", franchise_role="intern")) == VIEW_ONLY


def test_permission_payload_exposes_capabilities_only() -> None:
    payload = OPERATE.as_payload()
    assert payload == {"canActivateRBM": True, "canViewRBM": True, "canSetRBMLimits": False}
    assert PLATFORM.as_payload()["canSetRBMLimits"] is True
    assert PLATFORM.as_payload()["canActivateRBM"] is False


def test_plan_tiers_are_monotonic_and_capped() -> None:
    limits = [PLAN_TIER_LIMITS[tier] for tier in ("starter", "pro", "enterprise", "master")]
    assert limits == sorted(limits)
    assert len(set(limits)) == len(limits)
    assert max(limits) <= RBM_MAX_SYSTEM
