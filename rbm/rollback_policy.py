"""Pure rollback-trigger policy for campaigns holding an elevated multiplier."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Optional

from backend.db.enums import CampaignStatus, RbmEventType, RbmStatus
from rbm.collaborators import ELEVATED_REGIMES, RegimeReading
from rbm.common import RBM_DEFAULT, decimal_to_str, reduce_multiplier
from rbm.config import RbmConfig
from rbm.records import CampaignSnapshot

TRIGGER_CAMPAIGN_PAUSED = "Campaign was paused"
TRIGGER_CAMPAIGN_STOPPED = "Campaign was stopped"
TRIGGER_REGIME_UNAVAILABLE = "VRE unavailable - precautionary rollback"
TRIGGER_REGIME_CHANGE = "VRE regime dropped below required level"
TRIGGER_CONFIDENCE_DROP = "VRE confidence dropped below minimum"
TRIGGER_CIRCUIT_BREAKER = "Circuit breaker activated"
TRIGGER_DRAWDOWN = "Drawdown exceeded safe threshold"
TRIGGER_STALENESS = "Market data staleness detected"
TRIGGER_PLAN_LIMIT = "Plan limit lowered below approved multiplier"
MANUAL_ROLLBACK_REASON = "Manual rollback requested"

STOPPED_CAMPAIGN_STATUSES: frozenset[str] = frozenset(
    {CampaignStatus.STOPPED.value, CampaignStatus.COMPLETED.value, CampaignStatus.CANCELLED.value}
)

_HALF = Decimal("0.5")


@dataclass(frozen=True)
class LiveSignals:
    """Live collaborator readings for one campaign; None marks an unavailable signal."""

    regime: Optional[RegimeReading] = None
    regime_error: Optional[str] = None
    global_tripped: Optional[bool] = None
    staleness_tripped: Optional[bool] = None
    errors: dict[str, str] = field(default_factory=dict)

    def as_evidence(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "regime": None if self.regime is None else self.regime.regime,
            "confidence": None if self.regime is None else float(self.regime.confidence),
            "global_tripped": self.global_tripped,
            "staleness_tripped": self.staleness_tripped,
        }
        if self.regime_error is not None:
            payload["regime_error"] = self.regime_error
        if self.errors:
            payload["errors"] = dict(self.errors)
        return payload


@dataclass(frozen=True)
class RollbackDecision:
    """Outcome of the first trigger that fired."""

    trigger: str
    reason: str
    previous_value: Decimal
    target_value: Decimal

    @property
    def is_full_rollback(self) -> bool:
        return self.target_value <= RBM_DEFAULT

    @property
    def action(self) -> str:
        return "rollback" if self.is_full_rollback else "reduce"

    @property
    def event_type(self) -> str:
        return RbmEventType.ROLLBACK.value if self.is_full_rollback else RbmEventType.REDUCE.value

    @property
    def rbm_status(self) -> str:
        return RbmStatus.ROLLED_BACK.value if self.is_full_rollback else RbmStatus.REDUCED.value


def drawdown_reduction_factor(severity: float) -> Decimal:
    """Map drawdown severity (live drawdown over configured max) to a multiplier factor.

    Zero means a full rollback to the default multiplier.
    """
    if severity < 0.6:
        return Decimal("0.75")
    if severity < 0.8:
        return Decimal("0.5")
    return Decimal("0")


def live_drawdown_pct(campaign: CampaignSnapshot) -> Optional[Decimal]:
    """Drawdown in percent, from equity when capital is known, else the stored figure."""
    if campaign.initial_capital > 0:
        return (campaign.initial_capital - campaign.current_equity) / campaign.initial_capital * Decimal("100")
    return campaign.current_drawdown_pct


def _decision(trigger: str, reason: str, current: Decimal, target: Decimal) -> RollbackDecision:
    return RollbackDecision(
        trigger=trigger,
        reason=reason,
        previous_value=current,
        target_value=max(RBM_DEFAULT, min(target, current)),
    )


def plan_ceiling_decision(campaign: CampaignSnapshot) -> Optional[RollbackDecision]:
    """Reduction to the plan ceiling when the approved multiplier sits above it."""
    ceiling = campaign.plan_ceiling
    current = campaign.rbm_approved
    if ceiling is None or current <= ceiling:
        return None
    return _decision("PLAN_LIMIT", f"{TRIGGER_PLAN_LIMIT} ({decimal_to_str(ceiling)}x)", current, ceiling)


def evaluate_rollback_triggers(
    campaign: CampaignSnapshot,
    signals: LiveSignals,
    config: RbmConfig,
) -> Optional[RollbackDecision]:
    """First firing trigger in priority order, or None when the elevation still holds.

    A known plan ceiling caps every target; with no other trigger firing, a
    multiplier above the ceiling is reduced to it.
    """
    if campaign.rbm_approved <= RBM_DEFAULT:
        return None
    decision = _first_trigger(campaign, signals, config)
    if decision is None:
        return plan_ceiling_decision(campaign)
    ceiling = campaign.plan_ceiling
    if ceiling is not None and decision.target_value > ceiling:
        return replace(decision, target_value=max(RBM_DEFAULT, ceiling))
    return decision


def _first_trigger(
    campaign: CampaignSnapshot,
    signals: LiveSignals,
    config: RbmConfig,
) -> Optional[RollbackDecision]:
    current = campaign.rbm_approved

    if campaign.status == CampaignStatus.PAUSED.value:
        return _decision("CAMPAIGN_PAUSED", TRIGGER_CAMPAIGN_PAUSED, current, RBM_DEFAULT)
    if campaign.status in STOPPED_CAMPAIGN_STATUSES:
        return _decision("CAMPAIGN_STOPPED", TRIGGER_CAMPAIGN_STOPPED, current, RBM_DEFAULT)

    reading = signals.regime
    if reading is None:
        return _decision("REGIME_UNAVAILABLE", TRIGGER_REGIME_UNAVAILABLE, current, RBM_DEFAULT)
    if reading.regime not in ELEVATED_REGIMES:
        return _decision(
            "REGIME_CHANGE",
            f"{TRIGGER_REGIME_CHANGE} (current: {reading.regime})",
            current,
            RBM_DEFAULT,
        )
    if reading.confidence < config.live_min_confidence:
        return _decision(
            "CONFIDENCE_DROP",
            f"{TRIGGER_CONFIDENCE_DROP} ({reading.confidence * 100:.1f}%)",
            current,
            reduce_multiplier(current, _HALF),
        )

    if signals.global_tripped:
        return _decision("CIRCUIT_BREAKER", f"{TRIGGER_CIRCUIT_BREAKER} (global)", current, RBM_DEFAULT)

    maximum = campaign.max_drawdown_pct
    drawdown = live_drawdown_pct(campaign)
    if maximum is not None and maximum > 0 and drawdown is not None:
        severity = float(drawdown / maximum)
        if severity >= config.rollback_drawdown_fraction:
            factor = drawdown_reduction_factor(severity)
            target = RBM_DEFAULT if factor == 0 else reduce_multiplier(current, factor)
            return _decision(
                "DRAWDOWN",
                f"{TRIGGER_DRAWDOWN} ({float(drawdown):.1f}% of {decimal_to_str(maximum)}% max)",
                current,
                target,
            )

    if signals.staleness_tripped:
        return _decision("STALENESS", TRIGGER_STALENESS, current, reduce_multiplier(current, _HALF))

    return None
