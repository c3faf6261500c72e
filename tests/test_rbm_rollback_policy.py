"""Unit tests for auto-rollback trigger ordering and target values."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
import uuid

from rbm.config import RbmConfig
from rbm.records import CampaignSnapshot
from rbm.rollback_policy import (
    LiveSignals,
    drawdown_reduction_factor,
    evaluate_rollback_triggers,
    live_drawdown_pct,
    plan_ceiling_decision,
)
from tests.utils.fakes import regime_reading

CONFIG = RbmConfig()


def _elevated(**overrides: object) -> CampaignSnapshot:
    campaign = CampaignSnapshot(
        campaign_id=uuid.uuid4(),
        portfolio_id="portfolio-1",
        franchise_id=None,
        name="c",
        status="active",
        initial_capital=Decimal("100000"),
        current_equity=Decimal("100000"),
        max_drawdown_pct=Decimal("10"),
        current_drawdown_pct=Decimal("0"),
        rbm_requested=Decimal("3.00"),
        rbm_approved=Decimal("3.00"),
        rbm_status="ACTIVE",
        rbm_approved_at=None,
        rbm_reduced_at=None,
        rbm_reduced_reason=None,
    )
    return replace(campaign, **overrides)


def _healthy() -> LiveSignals:
    return LiveSignals(regime=regime_reading("HIGH", 0.85), global_tripped=False, staleness_tripped=False)


def test_healthy_signals_hold_the_multiplier() -> None:
    assert evaluate_rollback_triggers(_elevated(), _healthy(), CONFIG) is None


def test_default_multiplier_is_never_touched() -> None:
    campaign = _elevated(rbm_approved=Decimal("1.00"), status="paused")
    assert evaluate_rollback_triggers(campaign, LiveSignals(), CONFIG) is None


def test_paused_campaign_rolls_back_first() -> None:
    decision = evaluate_rollback_triggers(_elevated(status="paused"), _healthy(), CONFIG)
    assert decision is not None
    assert decision.reason == "Campaign was paused"
    assert decision.target_value == Decimal("1.00")
    assert decision.event_type == "ROLLBACK"
    assert decision.rbm_status == "ROLLED_BACK"


def test_stopped_and_cancelled_campaigns_roll_back() -> None:
    for status in ("stopped", "completed", "cancelled"):
        decision = evaluate_rollback_triggers(_elevated(status=status), _healthy(), CONFIG)
        assert decision is not None
        assert decision.reason == "Campaign was stopped"


def test_unavailable_regime_is_precautionary_rollback() -> None:
    signals = LiveSignals(regime=None, regime_error="timed out", global_tripped=False, staleness_tripped=False)
    decision = evaluate_rollback_triggers(_elevated(), signals, CONFIG)
    assert decision is not None
    assert decision.reason == "VRE unavailable - precautionary rollback"
    assert decision.is_full_rollback


def test_regime_drop_names_current_regime() -> None:
    signals = replace(_healthy(), regime=regime_reading("NORMAL", 0.9))
    decision = evaluate_rollback_triggers(_elevated(), signals, CONFIG)
    assert decision is not None
    assert decision.reason == "VRE regime dropped below required level (current: NORMAL)"
    assert decision.target_value == Decimal("1.00")


def test_confidence_drop_halves_multiplier() -> None:
    signals = replace(_healthy(), regime=regime_reading("HIGH", 0.55))
    decision = evaluate_rollback_triggers(_elevated(), signals, CONFIG)
    assert decision is not None
    assert decision.reason == "VRE confidence dropped below minimum (55.0%)"
    assert decision.target_value == Decimal("1.50")
    assert decision.event_type == "REDUCE"
    assert decision.rbm_status == "REDUCED"
    assert decision.action == "reduce"


def test_global_breaker_outranks_drawdown() -> None:
    signals = replace(_healthy(), global_tripped=True)
    campaign = _elevated(current_equity=Decimal("91000"))
    decision = evaluate_rollback_triggers(campaign, signals, CONFIG)
    assert decision is not None
    assert decision.reason == "Circuit breaker activated (global)"


def test_drawdown_tiers() -> None:
    assert drawdown_reduction_factor(0.55) == Decimal("0.75")
    assert drawdown_reduction_factor(0.7) == Decimal("0.5")
    assert drawdown_reduction_factor(0.75) == Decimal("0.5")
    assert drawdown_reduction_factor(0.8) == Decimal("0")
    assert drawdown_reduction_factor(0.95) == Decimal("0")

    mild = evaluate_rollback_triggers(_elevated(current_equity=Decimal("94500")), _healthy(), CONFIG)
    assert mild is not None
    assert mild.target_value == Decimal("2.25")
    assert mild.reason == "Drawdown exceeded safe threshold (5.5% of 10% max)"

    severe = evaluate_rollback_triggers(_elevated(current_equity=Decimal("92000")), _healthy(), CONFIG)
    assert severe is not None
    assert severe.target_value == Decimal("1.00")
    assert severe.event_type == "ROLLBACK"


def test_drawdown_below_threshold_or_without_max_is_ignored() -> None:
    assert evaluate_rollback_triggers(_elevated(current_equity=Decimal("96000")), _healthy(), CONFIG) is None
    assert evaluate_rollback_triggers(
        _elevated(current_equity=Decimal("50000"), max_drawdown_pct=None), _healthy(), CONFIG
    ) is None


def test_live_drawdown_prefers_equity() -> None:
    assert live_drawdown_pct(_elevated(current_equity=Decimal("95000"))) == Decimal("5")
    stored = _elevated(initial_capital=Decimal("0"), current_drawdown_pct=Decimal("4.2"))
    assert live_drawdown_pct(stored) == Decimal("4.2")


def test_staleness_reduces_last() -> None:
    signals = replace(_healthy(), staleness_tripped=True)
    decision = evaluate_rollback_triggers(_elevated(rbm_approved=Decimal("2.50")), signals, CONFIG)
    assert decision is not None
    assert decision.reason == "Market data staleness detected"
    assert decision.target_value == Decimal("1.25")


def test_unknown_breaker_state_does_not_fire() -> None:
    signals = replace(_healthy(), global_tripped=None, staleness_tripped=None, errors={"global_breaker": "down"})
    assert evaluate_rollback_triggers(_elevated(), signals, CONFIG) is None
    assert signals.as_evidence()["errors"] == {"global_breaker": "down"}


def test_multiplier_above_lowered_plan_ceiling_is_reduced_to_it() -> None:
    decision = evaluate_rollback_triggers(_elevated(plan_ceiling=Decimal("2.00")), _healthy(), CONFIG)
    assert decision is not None
    assert decision.trigger == "PLAN_LIMIT"
    assert decision.reason == "Plan limit lowered below approved multiplier (2x)"
    assert decision.target_value == Decimal("2.00")
    assert decision.event_type == "REDUCE"
    assert decision.rbm_status == "REDUCED"


def test_plan_ceiling_caps_a_partial_reduction() -> None:
    signals = replace(_healthy(), staleness_tripped=True)
    campaign = _elevated(rbm_approved=Decimal("4.00"), plan_ceiling=Decimal("1.50"))

    decision = evaluate_rollback_triggers(campaign, signals, CONFIG)

    assert decision is not None
    assert decision.trigger == "STALENESS"
    assert decision.target_value == Decimal("1.50")


def test_plan_ceiling_at_default_is_a_full_rollback() -> None:
    decision = plan_ceiling_decision(_elevated(plan_ceiling=Decimal("1.00")))
    assert decision is not None
    assert decision.event_type == "ROLLBACK"
    assert decision.rbm_status == "ROLLED_BACK"
    assert plan_ceiling_decision(_elevated(plan_ceiling=Decimal("3.00"))) is None
    assert plan_ceiling_decision(_elevated()) is None
