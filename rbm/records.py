"""Immutable projections of stored campaign, plan and audit rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional
from uuid import UUID

from backend.db.enums import RbmStatus
from rbm.common import RBM_DEFAULT, decimal_to_str, utc_iso

ELEVATED_STATUSES: tuple[str, ...] = (RbmStatus.ACTIVE.value, RbmStatus.REDUCED.value)

CAMPAIGN_RBM_FIELDS: frozenset[str] = frozenset(
    {
        "rbm_requested",
        "rbm_approved",
        "rbm_status",
        "rbm_approved_at",
        "rbm_reduced_at",
        "rbm_reduced_reason",
    }
)


@dataclass(frozen=True)
class CampaignSnapshot:
    """Campaign columns read by the RBM core."""

    campaign_id: UUID
    portfolio_id: Optional[str]
    franchise_id: Optional[int]
    name: str
    status: str
    initial_capital: Decimal
    current_equity: Decimal
    max_drawdown_pct: Optional[Decimal]
    current_drawdown_pct: Optional[Decimal]
    rbm_requested: Optional[Decimal]
    rbm_approved: Decimal
    rbm_status: str
    rbm_approved_at: Optional[datetime]
    rbm_reduced_at: Optional[datetime]
    rbm_reduced_reason: Optional[str]
    # Effective plan ceiling, resolved only on rows read under the transition lock.
    plan_ceiling: Optional[Decimal] = None

    @property
    def is_elevated(self) -> bool:
        return self.rbm_status in ELEVATED_STATUSES and self.rbm_approved > RBM_DEFAULT

    def same_rbm_state(self, other: CampaignSnapshot) -> bool:
        """True when the multiplier fields match those of another read of the same row."""
        return (
            self.rbm_approved == other.rbm_approved
            and self.rbm_status == other.rbm_status
            and self.rbm_approved_at == other.rbm_approved_at
            and self.rbm_reduced_at == other.rbm_reduced_at
        )


@dataclass(frozen=True)
class PlanSnapshot:
    """Subscription plan row; the ceiling is kept raw so malformed values stay visible."""

    plan_id: int
    tier_code: str
    display_name: str
    max_rbm_multiplier: Any


@dataclass(frozen=True)
class MarketSnapshot:
    """Cached 24h market figures for one symbol."""

    symbol: str
    volume_24h: Decimal
    bid_ask_spread: Optional[Decimal]


@dataclass(frozen=True)
class EventRecord:
    """Stored RBM audit event."""

    rbm_event_id: UUID
    campaign_id: UUID
    event_type: str
    previous_value: Decimal
    new_value: Decimal
    reason: str
    triggered_by: str
    actor_id: Optional[str]
    evidence: Optional[Mapping[str, Any]]
    created_at_utc: datetime

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": str(self.rbm_event_id),
            "campaign_id": str(self.campaign_id),
            "event_type": self.event_type,
            "previous_value": decimal_to_str(self.previous_value),
            "new_value": decimal_to_str(self.new_value),
            "reason": self.reason,
            "triggered_by": self.triggered_by,
            "actor_id": self.actor_id,
            "created_at": utc_iso(self.created_at_utc),
        }


@dataclass(frozen=True)
class EventDraft:
    """Audit event to append alongside a campaign transition."""

    event_type: str
    previous_value: Decimal
    new_value: Decimal
    reason: str
    triggered_by: str
    actor_id: Optional[str] = None
    evidence: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Transition:
    """Campaign RBM field updates plus the audit events written with them."""

    updates: Mapping[str, Any]
    events: tuple[EventDraft, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AppliedTransition:
    """Outcome of a unit of work: the locked row before and after the write."""

    before: CampaignSnapshot
    after: CampaignSnapshot
    transition: Optional[Transition]

    @property
    def changed(self) -> bool:
        return self.transition is not None
