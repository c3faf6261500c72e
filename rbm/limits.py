"""Plan-limit resolution and RBAC permission mapping."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Optional

from rbm.collaborators import ActorRole
from rbm.common import RBM_DEFAULT, RBM_MAX_SYSTEM, is_multiplier_in_bounds, parse_multiplier
from rbm.records import CampaignSnapshot, PlanSnapshot

logger = logging.getLogger(__name__)

PLATFORM_ROLES: frozenset[str] = frozenset({"franchisor", "admin"})
OWNER_ROLES: frozenset[str] = frozenset({"master"})
OPERATOR_ROLES: frozenset[str] = frozenset({"operator"})
READ_ONLY_ROLES: frozenset[str] = frozenset({"analyst", "finance"})


@dataclass(frozen=True)
class PermissionSet:
    """Derived RBM capabilities; deliberately carries no role identifiers."""

    can_activate: bool
    can_view: bool
    can_set_limits: bool

    def as_payload(self) -> dict[str, bool]:
        return {
            "canActivateRBM": self.can_activate,
            "canViewRBM": self.can_view,
            "canSetRBMLimits": self.can_set_limits,
        }


VIEW_ONLY = PermissionSet(can_activate=False, can_view=True, can_set_limits=False)
OPERATE = PermissionSet(can_activate=True, can_view=True, can_set_limits=False)
PLATFORM = PermissionSet(can_activate=False, can_view=True, can_set_limits=True)


def permissions_for(role: Optional[ActorRole]) -> PermissionSet:
    """Map an actor's roles to RBM capabilities."""
    if role is None:
        return VIEW_ONLY
    if role.global_role in PLATFORM_ROLES:
        return PLATFORM
    if role.is_franchise_owner or role.franchise_role in OWNER_ROLES:
        return OPERATE
    if role.franchise_role in OPERATOR_ROLES:
        return OPERATE
    if role.franchise_role in READ_ONLY_ROLES:
        return VIEW_ONLY
    return VIEW_ONLY


def plan_limit(campaign: CampaignSnapshot, plan: Optional[PlanSnapshot]) -> Decimal:
    """Maximum multiplier the campaign's subscription tier permits.

    Platform-owned campaigns (no franchise) get the system ceiling. A franchise
    whose plan is missing or carries a malformed ceiling falls back to the
    default multiplier rather than the ceiling.
    """
    if campaign.franchise_id is None:
        return RBM_MAX_SYSTEM
    if plan is None:
        logger.warning("No plan for campaign %s franchise %s, using default limit", campaign.campaign_id, campaign.franchise_id)
        return RBM_DEFAULT
    limit = parse_multiplier(plan.max_rbm_multiplier)
    if limit is None or not is_multiplier_in_bounds(limit):
        logger.warning("Plan %s has malformed RBM ceiling %r, using default limit", plan.plan_id, plan.max_rbm_multiplier)
        return RBM_DEFAULT
    return min(limit, RBM_MAX_SYSTEM)
