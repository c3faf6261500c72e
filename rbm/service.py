"""RBM request pipeline, status views, manual rollback and franchisor operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Optional, Union
from uuid import UUID

from backend.db.enums import CampaignStatus, RbmEventType, RbmStatus, TriggeredBy
from rbm.collaborators import ActorDirectory
from rbm.common import (
    ELIGIBLE_CAMPAIGN_STATUSES,
    PLAN_TIER_LIMITS,
    RBM_DEFAULT,
    RBM_MAX_SYSTEM,
    RBM_MIN_SYSTEM,
    RBM_STEPS,
    CollaboratorPool,
    RbmClock,
    decimal_to_str,
    is_multiplier_in_bounds,
    parse_multiplier,
    quantize_multiplier,
    utc_iso,
)
from rbm.config import RbmConfig
from rbm.errors import (
    CampaignNotFoundError,
    RbmAuthorizationError,
    RbmTransitionConflictError,
    RbmValidationError,
)
from rbm.limits import VIEW_ONLY, PermissionSet, permissions_for, plan_limit
from rbm.quality_gate import QUALITY_GATE_CHECKS, QualityGateEvaluator, QualityGateResult
from rbm.records import CampaignSnapshot, EventDraft, EventRecord, PlanSnapshot, Transition
from rbm.rollback_policy import MANUAL_ROLLBACK_REASON, plan_ceiling_decision
from rbm.store import RbmStore

logger = logging.getLogger(__name__)

CampaignRef = Union[UUID, str]

PERMISSION_DENIED = "PERMISSION_DENIED"
MULTIPLIER_OUT_OF_BOUNDS = "MULTIPLIER_OUT_OF_BOUNDS"
CAMPAIGN_NOT_FOUND = "CAMPAIGN_NOT_FOUND"
CAMPAIGN_STATUS_INELIGIBLE = "CAMPAIGN_STATUS_INELIGIBLE"
PLAN_LIMIT_EXCEEDED = "PLAN_LIMIT_EXCEEDED"
QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"
APPROVED = "APPROVED"
INTERNAL_ERROR = "INTERNAL_ERROR"
TRANSITION_CONFLICT = "TRANSITION_CONFLICT"


@dataclass(frozen=True)
class RbmRequestResult:
    """Outcome of one elevation request.

    accepted is False only for validation, authorization and infrastructure
    failures; a denial by plan limit or quality gate is an accepted request.
    """

    accepted: bool
    approved: bool
    granted_multiplier: Decimal
    reason: str
    reason_code: str
    evidence: Optional[dict[str, Any]] = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.accepted,
            "approved": self.approved,
            "approvedMultiplier": float(self.granted_multiplier),
            "reason": self.reason,
        }
        if self.evidence is not None:
            payload["qualityGateSnapshot"] = self.evidence
        return payload


def _rejected(reason_code: str, reason: str) -> RbmRequestResult:
    return RbmRequestResult(
        accepted=False,
        approved=False,
        granted_multiplier=RBM_DEFAULT,
        reason=reason,
        reason_code=reason_code,
    )


@dataclass(frozen=True)
class RbmStatusView:
    campaign_id: UUID
    requested: Decimal
    approved: Decimal
    status: str
    approved_at: Optional[datetime]
    reduced_at: Optional[datetime]
    reduced_reason: Optional[str]
    plan_limit: Decimal
    recent_events: tuple[EventRecord, ...]

    def as_payload(self) -> dict[str, Any]:
        return {
            "campaignId": str(self.campaign_id),
            "rbmRequested": float(self.requested),
            "rbmApproved": float(self.approved),
            "rbmStatus": self.status,
            "rbmApprovedAt": None if self.approved_at is None else utc_iso(self.approved_at),
            "rbmReducedAt": None if self.reduced_at is None else utc_iso(self.reduced_at),
            "rbmReducedReason": self.reduced_reason,
            "planLimit": float(self.plan_limit),
            "recentEvents": [event.as_payload() for event in self.recent_events],
        }


@dataclass(frozen=True)
class RbmConfigView:
    system_max: Decimal
    system_min: Decimal
    default: Decimal
    plan_limits: dict[str, Decimal]
    steps: tuple[Decimal, ...]
    quality_gate_checks: tuple[str, ...]

    def as_payload(self) -> dict[str, Any]:
        return {
            "systemMax": float(self.system_max),
            "systemMin": float(self.system_min),
            "default": float(self.default),
            "planLimits": {tier: float(limit) for tier, limit in self.plan_limits.items()},
            "steps": [float(step) for step in self.steps],
            "qualityGateChecks": list(self.quality_gate_checks),
        }


@dataclass(frozen=True)
class DeactivationResult:
    success: bool
    reason: str
    previous_value: Decimal = RBM_DEFAULT
    new_value: Decimal = RBM_DEFAULT

    def as_payload(self) -> dict[str, Any]:
        return {"success": self.success, "reason": self.reason}


@dataclass(frozen=True)
class RbmAggregateMetrics:
    total_active_campaigns: int
    rbm_active_campaigns: int
    rbm_reduced_campaigns: int
    rbm_pending_campaigns: int
    average_multiplier: Decimal
    multiplier_distribution: dict[str, int]
    approval_count_24h: int
    rollback_count_24h: int
    denial_count_24h: int
    recent_events: tuple[EventRecord, ...] = field(default_factory=tuple)

    def as_payload(self) -> dict[str, Any]:
        return {
            "summary": {
                "totalActiveCampaigns": self.total_active_campaigns,
                "rbmActiveCampaigns": self.rbm_active_campaigns,
                "rbmReducedCampaigns": self.rbm_reduced_campaigns,
                "rbmPendingCampaigns": self.rbm_pending_campaigns,
                "averageMultiplier": float(self.average_multiplier),
            },
            "multiplierDistribution": dict(self.multiplier_distribution),
            "approvalCount24h": self.approval_count_24h,
            "rollbackCount24h": self.rollback_count_24h,
            "denialCount24h": self.denial_count_24h,
            "recentEvents": [event.as_payload() for event in self.recent_events],
        }


def _coerce_campaign_id(campaign_id: CampaignRef) -> Optional[UUID]:
    if isinstance(campaign_id, UUID):
        return campaign_id
    try:
        return UUID(str(campaign_id))
    except ValueError:
        return None


def _distribution_bucket(multiplier: Decimal) -> str:
    if multiplier <= Decimal("1.0"):
        return "1.0x"
    for label in ("1.5", "2.0", "2.5", "3.0"):
        if multiplier <= Decimal(label):
            return f"{label}x"
    return "3.5x+"


class RbmService:
    """Entry point for callers of the RBM core."""

    def __init__(
        self,
        *,
        store: RbmStore,
        evaluator: QualityGateEvaluator | None = None,
        actors: ActorDirectory | None = None,
        config: RbmConfig | None = None,
        clock: RbmClock | None = None,
        pool: CollaboratorPool | None = None,
    ) -> None:
        self._store = store
        self._evaluator = evaluator
        self._actors = actors
        self._config = config or RbmConfig()
        self._clock = clock or RbmClock()
        self._pool = pool or CollaboratorPool(self._config.collaborator_max_workers)

    def close(self) -> None:
        self._pool.shutdown()

    def permissions(self, actor_id: str) -> PermissionSet:
        """Derived capabilities for an actor; unresolvable actors may only view."""
        if self._actors is None:
            return VIEW_ONLY
        role = self._pool.call(
            "actor directory",
            self._config.collaborator_timeout_seconds,
            self._actors.role_for,
            actor_id,
        )
        return permissions_for(role)

    def _require_limits_role(self, actor_id: str) -> None:
        if not self.permissions(actor_id).can_set_limits:
            raise RbmAuthorizationError("Access denied - franchisor only")

    def request_elevation(
        self,
        campaign_id: CampaignRef,
        multiplier: Any,
        actor_id: Optional[str] = None,
    ) -> RbmRequestResult:
        """Validate, evaluate and atomically record one elevation request.

        Any unexpected failure resolves to a non-approved result with nothing
        committed.
        """
        try:
            return self._request_elevation(campaign_id, multiplier, actor_id)
        except RbmTransitionConflictError as exc:
            logger.warning("RBM request for campaign %s conflicted with a concurrent update: %s", campaign_id, exc)
            return _rejected(TRANSITION_CONFLICT, f"Request conflicted with a concurrent update: {exc}")
        except Exception as exc:
            logger.exception("RBM request for campaign %s failed closed", campaign_id)
            return _rejected(INTERNAL_ERROR, f"Internal error: {exc}")

    def _request_elevation(
        self,
        campaign_ref: CampaignRef,
        multiplier: Any,
        actor_id: Optional[str],
    ) -> RbmRequestResult:
        if actor_id is not None and not self.permissions(actor_id).can_activate:
            return _rejected(PERMISSION_DENIED, "Permission denied: Your role does not allow RBM activation")

        parsed = parse_multiplier(multiplier)
        if parsed is None or not is_multiplier_in_bounds(parsed):
            return _rejected(
                MULTIPLIER_OUT_OF_BOUNDS,
                f"Multiplier must be between {decimal_to_str(RBM_MIN_SYSTEM)} and {decimal_to_str(RBM_MAX_SYSTEM)}",
            )
        requested = quantize_multiplier(parsed)

        campaign_id = _coerce_campaign_id(campaign_ref)
        campaign = None if campaign_id is None else self._store.get_campaign(campaign_id)
        if campaign is None:
            return _rejected(CAMPAIGN_NOT_FOUND, "Campaign not found")
        if campaign.status not in ELIGIBLE_CAMPAIGN_STATUSES:
            return _rejected(
                CAMPAIGN_STATUS_INELIGIBLE,
                f"Campaign status '{campaign.status}' does not allow RBM activation. "
                f"Must be: {', '.join(ELIGIBLE_CAMPAIGN_STATUSES)}",
            )

        limit = plan_limit(campaign, self._store.get_plan_for_campaign(campaign))
        if requested > limit:
            reason = f"Requested multiplier {decimal_to_str(requested)}x exceeds plan limit of {decimal_to_str(limit)}x"
            evidence = {
                "plan_limit": decimal_to_str(limit),
                "requested": decimal_to_str(requested),
                "campaign_id": str(campaign.campaign_id),
            }
            self._commit_decision(campaign, requested, actor_id, approved=False, reason=reason, evidence=evidence)
            logger.info("RBM request denied for campaign %s: %s", campaign.campaign_id, reason)
            return RbmRequestResult(
                accepted=True,
                approved=False,
                granted_multiplier=RBM_DEFAULT,
                reason=reason,
                reason_code=PLAN_LIMIT_EXCEEDED,
            )

        if self._evaluator is None:
            raise RbmValidationError("Quality gate evaluator is not configured")
        gate = self._evaluator.evaluate(campaign.campaign_id)

        if gate.ok:
            self._commit_decision(
                campaign,
                requested,
                actor_id,
                approved=True,
                reason="Quality Gate passed - RBM approved",
                evidence=gate.evidence,
            )
            logger.info("RBM %sx approved for campaign %s", decimal_to_str(requested), campaign.campaign_id)
            return RbmRequestResult(
                accepted=True,
                approved=True,
                granted_multiplier=requested,
                reason="RBM approved after Quality Gate validation",
                reason_code=APPROVED,
                evidence=gate.evidence,
            )

        reason = _gate_failure_reason(gate)
        self._commit_decision(campaign, requested, actor_id, approved=False, reason=reason, evidence=gate.evidence)
        logger.info("RBM request denied for campaign %s: %s", campaign.campaign_id, reason)
        return RbmRequestResult(
            accepted=True,
            approved=False,
            granted_multiplier=RBM_DEFAULT,
            reason=reason,
            reason_code=QUALITY_GATE_FAILED,
            evidence=gate.evidence,
        )

    def _commit_decision(
        self,
        campaign: CampaignSnapshot,
        requested: Decimal,
        actor_id: Optional[str],
        *,
        approved: bool,
        reason: str,
        evidence: dict[str, Any],
    ) -> None:
        now = self._clock.now_utc()
        triggered_by = TriggeredBy.USER.value if actor_id is not None else TriggeredBy.SYSTEM.value
        request_reason = "User requested RBM activation" if actor_id is not None else "Operator requested RBM activation"

        def decide(locked: CampaignSnapshot) -> Transition:
            if locked.status not in ELIGIBLE_CAMPAIGN_STATUSES:
                raise RbmTransitionConflictError(
                    f"campaign status changed to '{locked.status}' before the decision was recorded"
                )
            if not locked.same_rbm_state(campaign):
                raise RbmTransitionConflictError(
                    f"RBM state changed to {decimal_to_str(locked.rbm_approved)}x {locked.rbm_status} "
                    "while the request was evaluated"
                )
            if approved and locked.plan_ceiling is not None and requested > locked.plan_ceiling:
                raise RbmTransitionConflictError(
                    f"plan limit changed to {decimal_to_str(locked.plan_ceiling)}x while the request was evaluated"
                )
            new_value = requested if approved else RBM_DEFAULT
            # an approval at the default multiplier leaves nothing to monitor or unwind
            elevated = approved and new_value > RBM_DEFAULT
            updates: dict[str, Any] = {
                "rbm_requested": requested,
                "rbm_approved": new_value,
                "rbm_status": RbmStatus.ACTIVE.value if elevated else RbmStatus.INACTIVE.value,
                "rbm_approved_at": now if elevated else None,
            }
            if approved:
                updates["rbm_reduced_at"] = None
                updates["rbm_reduced_reason"] = None
            return Transition(
                updates=updates,
                events=(
                    EventDraft(
                        event_type=RbmEventType.REQUEST.value,
                        previous_value=locked.rbm_approved,
                        new_value=requested,
                        reason=request_reason,
                        triggered_by=triggered_by,
                        actor_id=actor_id,
                        evidence={"requested": decimal_to_str(requested)},
                    ),
                    EventDraft(
                        event_type=RbmEventType.APPROVE.value if approved else RbmEventType.DENY.value,
                        previous_value=locked.rbm_approved,
                        new_value=new_value,
                        reason=reason,
                        triggered_by=triggered_by,
                        actor_id=actor_id,
                        evidence=evidence,
                    ),
                ),
            )

        self._store.apply_transition(campaign.campaign_id, decide, occurred_at_utc=now)

    def status(self, campaign_id: CampaignRef) -> Optional[RbmStatusView]:
        resolved = _coerce_campaign_id(campaign_id)
        campaign = None if resolved is None else self._store.get_campaign(resolved)
        if campaign is None:
            return None
        limit = plan_limit(campaign, self._store.get_plan_for_campaign(campaign))
        return RbmStatusView(
            campaign_id=campaign.campaign_id,
            requested=campaign.rbm_requested if campaign.rbm_requested is not None else RBM_DEFAULT,
            approved=campaign.rbm_approved,
            status=campaign.rbm_status,
            approved_at=campaign.rbm_approved_at,
            reduced_at=campaign.rbm_reduced_at,
            reduced_reason=campaign.rbm_reduced_reason,
            plan_limit=limit,
            recent_events=tuple(self._store.recent_events(campaign.campaign_id, 10)),
        )

    def config(self) -> RbmConfigView:
        return rbm_config_view()

    def list_events(self, campaign_id: CampaignRef, limit: int = 50) -> list[EventRecord]:
        resolved = _coerce_campaign_id(campaign_id)
        if resolved is None:
            return []
        return self._store.recent_events(resolved, limit)

    def all_events(self, limit: int = 100) -> list[EventRecord]:
        return self._store.all_events(limit)

    def deactivate(self, campaign_id: CampaignRef, actor_id: Optional[str] = None) -> DeactivationResult:
        """Manually return a campaign to the default multiplier.

        A campaign that is not elevated is left untouched and reported as success.
        """
        try:
            if actor_id is not None:
                permissions = self.permissions(actor_id)
                if not (permissions.can_activate or permissions.can_set_limits):
                    return DeactivationResult(
                        success=False,
                        reason="Permission denied: Your role does not allow RBM deactivation",
                    )
            resolved = _coerce_campaign_id(campaign_id)
            if resolved is None:
                return DeactivationResult(success=False, reason="Campaign not found")
            return self._deactivate(resolved, actor_id)
        except CampaignNotFoundError:
            return DeactivationResult(success=False, reason="Campaign not found")
        except Exception as exc:
            logger.exception("RBM deactivation failed for campaign %s", campaign_id)
            return DeactivationResult(success=False, reason=f"Rollback failed: {exc}")

    def _deactivate(self, campaign_id: UUID, actor_id: Optional[str]) -> DeactivationResult:
        now = self._clock.now_utc()
        triggered_by = TriggeredBy.USER.value if actor_id is not None else TriggeredBy.SYSTEM.value

        def decide(locked: CampaignSnapshot) -> Optional[Transition]:
            if locked.rbm_approved <= RBM_DEFAULT:
                return None
            return Transition(
                updates={
                    "rbm_approved": RBM_DEFAULT,
                    "rbm_status": RbmStatus.ROLLED_BACK.value,
                    "rbm_reduced_at": now,
                    "rbm_reduced_reason": MANUAL_ROLLBACK_REASON,
                },
                events=(
                    EventDraft(
                        event_type=RbmEventType.DEACTIVATE.value,
                        previous_value=locked.rbm_approved,
                        new_value=RBM_DEFAULT,
                        reason=MANUAL_ROLLBACK_REASON,
                        triggered_by=triggered_by,
                        actor_id=actor_id,
                    ),
                ),
            )

        applied = self._store.apply_transition(campaign_id, decide, occurred_at_utc=now)
        if not applied.changed:
            return DeactivationResult(
                success=True,
                reason="No rollback needed",
                previous_value=applied.before.rbm_approved,
                new_value=applied.before.rbm_approved,
            )
        logger.info(
            "RBM DEACTIVATE for campaign %s: %sx -> 1x",
            campaign_id,
            decimal_to_str(applied.before.rbm_approved),
        )
        return DeactivationResult(
            success=True,
            reason=MANUAL_ROLLBACK_REASON,
            previous_value=applied.before.rbm_approved,
            new_value=applied.after.rbm_approved,
        )

    def set_plan_limit(self, plan_id: int, limit: Any, actor_id: str) -> PlanSnapshot:
        self._require_limits_role(actor_id)
        parsed = parse_multiplier(limit)
        if parsed is None or not is_multiplier_in_bounds(parsed):
            raise RbmValidationError(
                f"Plan limit must be between {decimal_to_str(RBM_MIN_SYSTEM)} and {decimal_to_str(RBM_MAX_SYSTEM)}"
            )
        plan = self._store.update_plan_limit(plan_id, quantize_multiplier(parsed))
        reduced = self._enforce_plan_ceiling(plan_id, actor_id)
        logger.info(
            "RBM plan %s limit set to %sx by %s (%d campaigns reduced)",
            plan_id,
            decimal_to_str(parsed),
            actor_id,
            reduced,
        )
        return plan

    def _enforce_plan_ceiling(self, plan_id: int, actor_id: str) -> int:
        """Bring every campaign on the plan down to its new ceiling.

        A campaign that fails here is left for the monitor, which applies the
        same ceiling on its next sweep.
        """
        reduced = 0
        now = self._clock.now_utc()

        def decide(locked: CampaignSnapshot) -> Optional[Transition]:
            decision = plan_ceiling_decision(locked)
            if decision is None or not locked.is_elevated:
                return None
            return Transition(
                updates={
                    "rbm_approved": decision.target_value,
                    "rbm_status": decision.rbm_status,
                    "rbm_reduced_at": now,
                    "rbm_reduced_reason": decision.reason,
                },
                events=(
                    EventDraft(
                        event_type=decision.event_type,
                        previous_value=decision.previous_value,
                        new_value=decision.target_value,
                        reason=decision.reason,
                        triggered_by=TriggeredBy.USER.value,
                        actor_id=actor_id,
                        evidence={"trigger": decision.trigger, "plan_id": plan_id},
                    ),
                ),
            )

        for campaign in self._store.list_elevated_campaigns_for_plan(plan_id):
            try:
                applied = self._store.apply_transition(campaign.campaign_id, decide, occurred_at_utc=now)
            except Exception:
                logger.exception("Plan %s ceiling enforcement failed for campaign %s", plan_id, campaign.campaign_id)
                continue
            if applied.changed:
                reduced += 1
                logger.info(
                    "RBM plan %s ceiling reduced campaign %s: %sx -> %sx",
                    plan_id,
                    campaign.campaign_id,
                    decimal_to_str(applied.before.rbm_approved),
                    decimal_to_str(applied.after.rbm_approved),
                )
        return reduced

    def aggregate_metrics(self, actor_id: str) -> RbmAggregateMetrics:
        self._require_limits_role(actor_id)
        campaigns = self._store.list_campaigns_by_status((CampaignStatus.ACTIVE.value,))
        elevated = [c for c in campaigns if c.rbm_status == RbmStatus.ACTIVE.value and c.rbm_approved > RBM_DEFAULT]
        reduced = [c for c in campaigns if c.rbm_status == RbmStatus.REDUCED.value]
        pending = [c for c in campaigns if c.rbm_status == RbmStatus.PENDING.value]
        average = (
            quantize_multiplier(sum((c.rbm_approved for c in elevated), Decimal("0")) / len(elevated))
            if elevated
            else RBM_DEFAULT
        )

        distribution = {label: 0 for label in ("1.0x", "1.5x", "2.0x", "2.5x", "3.0x", "3.5x+")}
        for campaign in campaigns:
            distribution[_distribution_bucket(campaign.rbm_approved)] += 1

        events = self._store.events_since(self._clock.now_utc() - timedelta(hours=24))
        unwinds = {RbmEventType.REDUCE.value, RbmEventType.ROLLBACK.value, RbmEventType.DEACTIVATE.value}
        return RbmAggregateMetrics(
            total_active_campaigns=len(campaigns),
            rbm_active_campaigns=len(elevated),
            rbm_reduced_campaigns=len(reduced),
            rbm_pending_campaigns=len(pending),
            average_multiplier=average,
            multiplier_distribution=distribution,
            approval_count_24h=sum(1 for e in events if e.event_type == RbmEventType.APPROVE.value),
            rollback_count_24h=sum(1 for e in events if e.event_type in unwinds),
            denial_count_24h=sum(1 for e in events if e.event_type == RbmEventType.DENY.value),
            recent_events=tuple(self._store.all_events(10)),
        )


def _gate_failure_reason(gate: QualityGateResult) -> str:
    return f"Quality Gate failed: {'; '.join(gate.reasons)}"


def rbm_config_view() -> RbmConfigView:
    """Static system limits, plan tiers and selectable steps."""
    return RbmConfigView(
        system_max=RBM_MAX_SYSTEM,
        system_min=RBM_MIN_SYSTEM,
        default=RBM_DEFAULT,
        plan_limits=dict(PLAN_TIER_LIMITS),
        steps=RBM_STEPS,
        quality_gate_checks=QUALITY_GATE_CHECKS,
    )
