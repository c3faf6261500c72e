"""Effective risk caps consumed by position sizing."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from rbm.common import RBM_MAX_SYSTEM, RBM_MIN_SYSTEM


@dataclass(frozen=True)
class BaseRiskProfile:
    """Unscaled campaign risk budgets and the ceilings that bound their scaled values."""

    trade_risk_pct: Decimal
    simultaneous_risk_pct: Decimal
    capital_allocation: Decimal
    trade_risk_max_pct: Decimal
    simultaneous_risk_max_pct: Decimal
    capital_allocation_max: Decimal


@dataclass(frozen=True)
class EffectiveRiskCaps:
    """Risk budgets after applying the granted multiplier."""

    multiplier: Decimal
    trade_risk_pct: Decimal
    simultaneous_risk_pct: Decimal
    capital_allocation: Decimal


def clamp_multiplier(multiplier: Decimal) -> Decimal:
    return max(RBM_MIN_SYSTEM, min(multiplier, RBM_MAX_SYSTEM))


def effective_risk_caps(base: BaseRiskProfile, multiplier: Decimal) -> EffectiveRiskCaps:
    """Scale each budget by the multiplier and cap it at its profile or plan maximum."""
    applied = clamp_multiplier(multiplier)
    return EffectiveRiskCaps(
        multiplier=applied,
        trade_risk_pct=min(base.trade_risk_pct * applied, base.trade_risk_max_pct),
        simultaneous_risk_pct=min(base.simultaneous_risk_pct * applied, base.simultaneous_risk_max_pct),
        capital_allocation=min(base.capital_allocation * applied, base.capital_allocation_max),
    )
