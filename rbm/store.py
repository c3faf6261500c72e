"""Persistent store for RBM state with a transactional unit of work."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Callable, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from backend.db.models import Campaign, Franchise, FranchisePlan, MarketDataCache, RbmEvent
from rbm.common import RBM_DEFAULT, as_utc, is_multiplier_in_bounds
from rbm.errors import CampaignNotFoundError, RbmValidationError
from rbm.limits import plan_limit
from rbm.records import (
    CAMPAIGN_RBM_FIELDS,
    ELEVATED_STATUSES,
    AppliedTransition,
    CampaignSnapshot,
    EventRecord,
    MarketSnapshot,
    PlanSnapshot,
    Transition,
)

logger = logging.getLogger(__name__)

Decide = Callable[[CampaignSnapshot], Optional[Transition]]


class RbmStore(Protocol):
    """Store protocol consumed by the RBM service, evaluator and monitor."""

    def get_campaign(self, campaign_id: UUID) -> Optional[CampaignSnapshot]:
        """Fetch one campaign."""

    def get_plan_for_campaign(self, campaign: CampaignSnapshot) -> Optional[PlanSnapshot]:
        """Resolve the plan of the campaign's franchise."""

    def get_plan(self, plan_id: int) -> Optional[PlanSnapshot]:
        """Fetch one plan."""

    def update_plan_limit(self, plan_id: int, limit: Decimal) -> PlanSnapshot:
        """Persist a new plan ceiling."""

    def count_events_since(self, campaign_id: UUID, event_type: str, since_utc: datetime) -> int:
        """Count a campaign's events of one type at or after a timestamp."""

    def recent_events(self, campaign_id: UUID, limit: int = 10) -> list[EventRecord]:
        """Newest-first events for a campaign."""

    def all_events(self, limit: int = 100) -> list[EventRecord]:
        """Newest-first events across campaigns."""

    def events_since(self, since_utc: datetime) -> list[EventRecord]:
        """Events across campaigns at or after a timestamp."""

    def list_elevated_campaigns(self) -> list[CampaignSnapshot]:
        """Campaigns holding a multiplier above the default."""

    def list_campaigns_by_status(self, statuses: Sequence[str]) -> list[CampaignSnapshot]:
        """Campaigns in any of the given lifecycle statuses."""

    def list_elevated_campaigns_for_plan(self, plan_id: int) -> list[CampaignSnapshot]:
        """Elevated campaigns whose franchise subscribes to a plan."""

    def market_volumes(self) -> list[MarketSnapshot]:
        """All cached market rows."""

    def apply_transition(self, campaign_id: UUID, decide: Decide, *, occurred_at_utc: datetime) -> AppliedTransition:
        """Lock the campaign, let decide choose a transition, write it atomically."""


def _campaign_snapshot(row: Campaign, plan_ceiling: Optional[Decimal] = None) -> CampaignSnapshot:
    return CampaignSnapshot(
        campaign_id=row.campaign_id,
        portfolio_id=row.portfolio_id,
        franchise_id=row.franchise_id,
        name=row.name,
        status=row.status,
        initial_capital=Decimal(row.initial_capital or 0),
        current_equity=Decimal(row.current_equity or 0),
        max_drawdown_pct=None if row.max_drawdown_pct is None else Decimal(row.max_drawdown_pct),
        current_drawdown_pct=None if row.current_drawdown_pct is None else Decimal(row.current_drawdown_pct),
        rbm_requested=None if row.rbm_requested is None else Decimal(row.rbm_requested),
        rbm_approved=RBM_DEFAULT if row.rbm_approved is None else Decimal(row.rbm_approved),
        rbm_status=row.rbm_status,
        rbm_approved_at=None if row.rbm_approved_at is None else as_utc(row.rbm_approved_at),
        rbm_reduced_at=None if row.rbm_reduced_at is None else as_utc(row.rbm_reduced_at),
        rbm_reduced_reason=row.rbm_reduced_reason,
        plan_ceiling=plan_ceiling,
    )


def _plan_snapshot(row: FranchisePlan) -> PlanSnapshot:
    return PlanSnapshot(
        plan_id=row.plan_id,
        tier_code=row.tier_code,
        display_name=row.display_name,
        max_rbm_multiplier=row.max_rbm_multiplier,
    )


def _event_record(row: RbmEvent) -> EventRecord:
    return EventRecord(
        rbm_event_id=row.rbm_event_id,
        campaign_id=row.campaign_id,
        event_type=row.event_type,
        previous_value=Decimal(row.previous_value),
        new_value=Decimal(row.new_value),
        reason=row.reason,
        triggered_by=row.triggered_by,
        actor_id=row.actor_id,
        evidence=row.evidence,
        created_at_utc=as_utc(row.created_at_utc),
    )


class SqlAlchemyRbmStore:
    """SQLAlchemy-backed store; one short session per call, one transaction per transition."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_campaign(self, campaign_id: UUID) -> Optional[CampaignSnapshot]:
        with self._session_factory() as session:
            row = session.get(Campaign, campaign_id)
            return None if row is None else _campaign_snapshot(row)

    def get_plan_for_campaign(self, campaign: CampaignSnapshot) -> Optional[PlanSnapshot]:
        if campaign.franchise_id is None:
            return None
        with self._session_factory() as session:
            franchise = session.get(Franchise, campaign.franchise_id)
            if franchise is None or franchise.plan_id is None:
                return None
            plan = session.get(FranchisePlan, franchise.plan_id)
            return None if plan is None else _plan_snapshot(plan)

    def get_plan(self, plan_id: int) -> Optional[PlanSnapshot]:
        with self._session_factory() as session:
            plan = session.get(FranchisePlan, plan_id)
            return None if plan is None else _plan_snapshot(plan)

    def update_plan_limit(self, plan_id: int, limit: Decimal) -> PlanSnapshot:
        with self._session_factory.begin() as session:
            plan = session.get(FranchisePlan, plan_id, with_for_update=True)
            if plan is None:
                raise RbmValidationError(f"Plan {plan_id} not found")
            plan.max_rbm_multiplier = limit
            session.flush()
            return _plan_snapshot(plan)

    def count_events_since(self, campaign_id: UUID, event_type: str, since_utc: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(RbmEvent)
            .where(
                RbmEvent.campaign_id == campaign_id,
                RbmEvent.event_type == event_type,
                RbmEvent.created_at_utc >= since_utc,
            )
        )
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar_one())

    def recent_events(self, campaign_id: UUID, limit: int = 10) -> list[EventRecord]:
        stmt = (
            select(RbmEvent)
            .where(RbmEvent.campaign_id == campaign_id)
            .order_by(RbmEvent.created_at_utc.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return [_event_record(row) for row in session.scalars(stmt)]

    def all_events(self, limit: int = 100) -> list[EventRecord]:
        stmt = select(RbmEvent).order_by(RbmEvent.created_at_utc.desc()).limit(limit)
        with self._session_factory() as session:
            return [_event_record(row) for row in session.scalars(stmt)]

    def events_since(self, since_utc: datetime) -> list[EventRecord]:
        stmt = (
            select(RbmEvent)
            .where(RbmEvent.created_at_utc >= since_utc)
            .order_by(RbmEvent.created_at_utc.desc())
        )
        with self._session_factory() as session:
            return [_event_record(row) for row in session.scalars(stmt)]

    def list_elevated_campaigns(self) -> list[CampaignSnapshot]:
        stmt = (
            select(Campaign)
            .where(Campaign.rbm_status.in_(ELEVATED_STATUSES), Campaign.rbm_approved > RBM_DEFAULT)
            .order_by(Campaign.campaign_id)
        )
        with self._session_factory() as session:
            return [_campaign_snapshot(row) for row in session.scalars(stmt)]

    def list_campaigns_by_status(self, statuses: Sequence[str]) -> list[CampaignSnapshot]:
        stmt = select(Campaign).where(Campaign.status.in_(tuple(statuses))).order_by(Campaign.campaign_id)
        with self._session_factory() as session:
            return [_campaign_snapshot(row) for row in session.scalars(stmt)]

    def list_elevated_campaigns_for_plan(self, plan_id: int) -> list[CampaignSnapshot]:
        stmt = (
            select(Campaign)
            .join(Franchise, Franchise.franchise_id == Campaign.franchise_id)
            .where(
                Franchise.plan_id == plan_id,
                Campaign.rbm_status.in_(ELEVATED_STATUSES),
                Campaign.rbm_approved > RBM_DEFAULT,
            )
            .order_by(Campaign.campaign_id)
        )
        with self._session_factory() as session:
            return [_campaign_snapshot(row) for row in session.scalars(stmt)]

    def market_volumes(self) -> list[MarketSnapshot]:
        stmt = select(MarketDataCache).order_by(MarketDataCache.symbol)
        with self._session_factory() as session:
            return [
                MarketSnapshot(
                    symbol=row.symbol,
                    volume_24h=Decimal(row.volume_24h),
                    bid_ask_spread=None if row.bid_ask_spread is None else Decimal(row.bid_ask_spread),
                )
                for row in session.scalars(stmt)
            ]

    def _locked_plan_ceiling(self, session: Session, row: Campaign) -> Decimal:
        plan: Optional[PlanSnapshot] = None
        if row.franchise_id is not None:
            franchise = session.get(Franchise, row.franchise_id)
            if franchise is not None and franchise.plan_id is not None:
                # shared lock: a concurrent plan change waits for this unit to commit
                plan_row = session.get(FranchisePlan, franchise.plan_id, with_for_update={"read": True})
                plan = None if plan_row is None else _plan_snapshot(plan_row)
        return plan_limit(_campaign_snapshot(row), plan)

    def apply_transition(self, campaign_id: UUID, decide: Decide, *, occurred_at_utc: datetime) -> AppliedTransition:
        """Read-validate-write one campaign under a row lock.

        decide sees the locked row, with its plan ceiling resolved in the same
        transaction, and returns the transition to write, or None to leave the
        row untouched. Any exception rolls the whole unit back.
        """
        with self._session_factory.begin() as session:
            stmt = select(Campaign).where(Campaign.campaign_id == campaign_id).with_for_update()
            row = session.scalars(stmt).one_or_none()
            if row is None:
                raise CampaignNotFoundError(f"Campaign {campaign_id} not found")

            ceiling = self._locked_plan_ceiling(session, row)
            before = _campaign_snapshot(row, plan_ceiling=ceiling)
            transition = decide(before)
            if transition is None:
                return AppliedTransition(before=before, after=before, transition=None)

            unknown = set(transition.updates) - CAMPAIGN_RBM_FIELDS
            if unknown:
                raise RbmValidationError(f"Transition touches non-RBM columns: {sorted(unknown)}")
            if "rbm_approved" in transition.updates:
                approved = transition.updates["rbm_approved"]
                if not is_multiplier_in_bounds(approved):
                    raise RbmValidationError(f"Transition would set rbm_approved={approved} outside system bounds")
                if approved > ceiling:
                    raise RbmValidationError(
                        f"Transition would set rbm_approved={approved} above plan ceiling {ceiling}"
                    )

            for column, value in transition.updates.items():
                setattr(row, column, value)
            row.updated_at_utc = occurred_at_utc
            # events of one unit keep their draft order under created_at_utc
            for index, draft in enumerate(transition.events):
                session.add(
                    RbmEvent(
                        campaign_id=campaign_id,
                        event_type=draft.event_type,
                        previous_value=draft.previous_value,
                        new_value=draft.new_value,
                        reason=draft.reason,
                        triggered_by=draft.triggered_by,
                        actor_id=draft.actor_id,
                        evidence=None if draft.evidence is None else dict(draft.evidence),
                        created_at_utc=occurred_at_utc + timedelta(microseconds=index),
                    )
                )
            session.flush()
            after = _campaign_snapshot(row, plan_ceiling=ceiling)

        logger.debug(
            "Applied RBM transition on campaign %s: %s -> %s (%d events)",
            campaign_id,
            before.rbm_approved,
            after.rbm_approved,
            len(transition.events),
        )
        return AppliedTransition(before=before, after=after, transition=transition)
