"""Unit tests for the SQLAlchemy RBM store and its unit of work."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
import uuid

import pytest
from sqlalchemy.orm import Session, sessionmaker

from rbm.errors import CampaignNotFoundError, RbmValidationError
from rbm.records import EventDraft, Transition
from rbm.store import SqlAlchemyRbmStore
from tests.utils.fakes import T0
from tests.utils.seed import event_types, load_campaign, seed_campaign, seed_franchise, seed_plan, seed_request_events


def _draft(event_type: str, reason: str = "test") -> EventDraft:
    return EventDraft(
        event_type=event_type,
        previous_value=Decimal("1.00"),
        new_value=Decimal("2.00"),
        reason=reason,
        triggered_by="system",
    )


def test_campaign_and_plan_lookup(session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore) -> None:
    plan_id = seed_plan(session_factory, "enterprise", Decimal("4.00"))
    franchise_id = seed_franchise(session_factory, plan_id)
    campaign_id = seed_campaign(session_factory, franchise_id=franchise_id)
    orphan_id = seed_campaign(session_factory, franchise_id=seed_franchise(session_factory, None))

    campaign = store.get_campaign(campaign_id)
    assert campaign is not None
    assert campaign.rbm_approved == Decimal("1.00")
    assert campaign.rbm_status == "INACTIVE"
    assert campaign.is_elevated is False

    plan = store.get_plan_for_campaign(campaign)
    assert plan is not None
    assert plan.tier_code == "enterprise"
    assert Decimal(plan.max_rbm_multiplier) == Decimal("4.00")

    orphan = store.get_campaign(orphan_id)
    assert orphan is not None
    assert store.get_plan_for_campaign(orphan) is None
    assert store.get_campaign(uuid.uuid4()) is None


def test_update_plan_limit(session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore) -> None:
    plan_id = seed_plan(session_factory)
    updated = store.update_plan_limit(plan_id, Decimal("2.50"))
    assert Decimal(updated.max_rbm_multiplier) == Decimal("2.50")
    plan = store.get_plan(plan_id)
    assert plan is not None
    assert Decimal(plan.max_rbm_multiplier) == Decimal("2.50")

    with pytest.raises(RbmValidationError, match="not found"):
        store.update_plan_limit(plan_id + 100, Decimal("2.00"))


def test_apply_transition_writes_row_and_ordered_events(
    session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore
) -> None:
    campaign_id = seed_campaign(session_factory)

    applied = store.apply_transition(
        campaign_id,
        lambda locked: Transition(
            updates={"rbm_requested": Decimal("2.00"), "rbm_approved": Decimal("2.00"), "rbm_status": "ACTIVE"},
            events=(_draft("REQUEST"), _draft("APPROVE")),
        ),
        occurred_at_utc=T0,
    )

    assert applied.changed is True
    assert applied.before.rbm_approved == Decimal("1.00")
    assert applied.after.rbm_approved == Decimal("2.00")
    assert event_types(session_factory, campaign_id) == ["REQUEST", "APPROVE"]

    row = load_campaign(session_factory, campaign_id)
    assert row.rbm_status == "ACTIVE"
    assert row.updated_at_utc is not None

    newest_first = store.recent_events(campaign_id)
    assert [event.event_type for event in newest_first] == ["APPROVE", "REQUEST"]
    assert newest_first[0].as_payload()["new_value"] == "2"


def test_apply_transition_noop_leaves_row(session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore) -> None:
    campaign_id = seed_campaign(session_factory)
    applied = store.apply_transition(campaign_id, lambda locked: None, occurred_at_utc=T0)
    assert applied.changed is False
    assert applied.after == applied.before
    assert event_types(session_factory, campaign_id) == []
    assert load_campaign(session_factory, campaign_id).updated_at_utc is None


def test_apply_transition_rejects_bad_updates_atomically(
    session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore
) -> None:
    campaign_id = seed_campaign(session_factory)

    with pytest.raises(RbmValidationError, match="non-RBM columns"):
        store.apply_transition(
            campaign_id,
            lambda locked: Transition(updates={"status": "stopped"}, events=(_draft("REQUEST"),)),
            occurred_at_utc=T0,
        )
    with pytest.raises(RbmValidationError, match="outside system bounds"):
        store.apply_transition(
            campaign_id,
            lambda locked: Transition(updates={"rbm_approved": Decimal("6.00")}, events=(_draft("REQUEST"),)),
            occurred_at_utc=T0,
        )

    def explode(locked):  # type: ignore[no-untyped-def]
        raise RuntimeError("decide failed")

    with pytest.raises(RuntimeError):
        store.apply_transition(campaign_id, explode, occurred_at_utc=T0)

    assert event_types(session_factory, campaign_id) == []
    assert load_campaign(session_factory, campaign_id).status == "active"


def test_apply_transition_missing_campaign(store: SqlAlchemyRbmStore) -> None:
    with pytest.raises(CampaignNotFoundError):
        store.apply_transition(uuid.uuid4(), lambda locked: None, occurred_at_utc=T0)


def test_event_queries(session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore) -> None:
    first = seed_campaign(session_factory)
    second = seed_campaign(session_factory)
    seed_request_events(session_factory, first, 3, T0 - timedelta(minutes=5))
    seed_request_events(session_factory, second, 2, T0 - timedelta(hours=30))

    assert store.count_events_since(first, "REQUEST", T0 - timedelta(hours=1)) == 3
    assert store.count_events_since(first, "APPROVE", T0 - timedelta(hours=1)) == 0
    assert store.count_events_since(second, "REQUEST", T0 - timedelta(hours=1)) == 0
    assert len(store.recent_events(first, limit=2)) == 2
    assert len(store.all_events(limit=100)) == 5
    assert len(store.events_since(T0 - timedelta(hours=24))) == 3


def test_campaign_listings(session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore) -> None:
    elevated = seed_campaign(session_factory, rbm_approved=Decimal("2.00"), rbm_status="ACTIVE")
    reduced = seed_campaign(session_factory, rbm_approved=Decimal("1.50"), rbm_status="REDUCED", status="paused")
    seed_campaign(session_factory, rbm_approved=Decimal("1.00"), rbm_status="ROLLED_BACK")
    seed_campaign(session_factory, status="draft")

    assert {c.campaign_id for c in store.list_elevated_campaigns()} == {elevated, reduced}
    assert len(store.list_campaigns_by_status(("active",))) == 2
    assert len(store.list_campaigns_by_status(("active", "paused", "draft"))) == 4


def test_apply_transition_enforces_plan_ceiling_under_lock(
    session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore
) -> None:
    plan_id = seed_plan(session_factory, "starter", Decimal("2.00"))
    campaign_id = seed_campaign(session_factory, franchise_id=seed_franchise(session_factory, plan_id))
    seen: list[Decimal | None] = []

    def record(locked):  # type: ignore[no-untyped-def]
        seen.append(locked.plan_ceiling)
        return None

    store.apply_transition(campaign_id, record, occurred_at_utc=T0)
    assert seen == [Decimal("2.00")]

    with pytest.raises(RbmValidationError, match="above plan ceiling 2"):
        store.apply_transition(
            campaign_id,
            lambda locked: Transition(
                updates={"rbm_approved": Decimal("2.50"), "rbm_status": "ACTIVE"},
                events=(_draft("APPROVE"),),
            ),
            occurred_at_utc=T0,
        )
    assert event_types(session_factory, campaign_id) == []
    assert Decimal(load_campaign(session_factory, campaign_id).rbm_approved) == Decimal("1.00")


def test_campaign_without_plan_is_capped_at_default(
    session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore
) -> None:
    campaign_id = seed_campaign(session_factory, franchise_id=seed_franchise(session_factory, None))
    with pytest.raises(RbmValidationError, match="above plan ceiling"):
        store.apply_transition(
            campaign_id,
            lambda locked: Transition(updates={"rbm_approved": Decimal("1.50")}, events=(_draft("APPROVE"),)),
            occurred_at_utc=T0,
        )


def test_list_elevated_campaigns_for_plan(session_factory: sessionmaker[Session], store: SqlAlchemyRbmStore) -> None:
    plan_id = seed_plan(session_factory, "pro", Decimal("3.00"))
    other_plan_id = seed_plan(session_factory, "master", Decimal("5.00"))
    franchise_id = seed_franchise(session_factory, plan_id)
    elevated = seed_campaign(
        session_factory, franchise_id=franchise_id, rbm_approved=Decimal("3.00"), rbm_status="ACTIVE"
    )
    seed_campaign(session_factory, franchise_id=franchise_id)
    seed_campaign(
        session_factory,
        franchise_id=seed_franchise(session_factory, other_plan_id),
        rbm_approved=Decimal("4.00"),
        rbm_status="ACTIVE",
    )
    seed_campaign(session_factory, rbm_approved=Decimal("4.00"), rbm_status="ACTIVE")

    assert [c.campaign_id for c in store.list_elevated_campaigns_for_plan(plan_id)] == [elevated]
