"""Quality gate: the six checks that must all pass before an RBM increase."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
import logging
from typing import Any, Optional, Sequence
from uuid import UUID

from backend.db.enums import RbmEventType
from rbm.collaborators import ELEVATED_REGIMES, CircuitBreakers, RegimeClassifier, RegimeReading
from rbm.common import CollaboratorPool, RbmClock, utc_iso
from rbm.config import RbmConfig
from rbm.errors import CollaboratorUnavailableError
from rbm.records import CampaignSnapshot, MarketSnapshot
from rbm.store import RbmStore

logger = logging.getLogger(__name__)

QUALITY_GATE_VERSION = "rbm-quality-gate-v1"

QUALITY_GATE_CHECKS: tuple[str, ...] = (
    "regime",
    "circuit_breakers",
    "drawdown",
    "antifraud",
    "spread_slippage",
    "liquidity",
)

# Minimum 24h notional volume (USD) per baseline instrument.
LIQUIDITY_BASELINES: dict[str, Decimal] = {
    "XBT/USD": Decimal("50000000"),
    "ETH/USD": Decimal("20000000"),
}

MAX_SPREAD_BP: dict[str, int] = {"HIGH": 50, "EXTREME": 100}
MAX_SLIPPAGE_BP: dict[str, int] = {"HIGH": 30, "EXTREME": 60}


@dataclass(frozen=True)
class QualityGateResult:
    """Aggregate gate verdict with every failing reason and the evidence snapshot."""

    ok: bool
    reasons: tuple[str, ...]
    evidence: dict[str, Any] = field(default_factory=dict)


def rank_percentile(value: Decimal, population: Sequence[Decimal]) -> float:
    """Share of the population at or below value; ties count in value's favour."""
    if not population:
        return 0.0
    at_or_below = sum(1 for other in population if other <= value)
    return at_or_below / len(population)


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


class QualityGateEvaluator:
    """Runs regime, breaker, drawdown, anti-fraud, spread and liquidity checks."""

    def __init__(
        self,
        *,
        store: RbmStore,
        classifier: RegimeClassifier,
        breakers: CircuitBreakers,
        config: RbmConfig | None = None,
        clock: RbmClock | None = None,
        pool: CollaboratorPool | None = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._breakers = breakers
        self._config = config or RbmConfig()
        self._clock = clock or RbmClock()
        self._pool = pool or CollaboratorPool(self._config.collaborator_max_workers)

    def close(self) -> None:
        self._pool.shutdown()

    def evaluate(self, campaign_id: UUID) -> QualityGateResult:
        """Evaluate a campaign; the anti-fraud count includes the attempt being evaluated."""
        campaign = self._store.get_campaign(campaign_id)
        if campaign is None:
            return QualityGateResult(
                ok=False,
                reasons=("Campaign not found",),
                evidence={"campaign_id": str(campaign_id), "version": QUALITY_GATE_VERSION},
            )
        return self.evaluate_campaign(campaign)

    def evaluate_campaign(self, campaign: CampaignSnapshot) -> QualityGateResult:
        evidence: dict[str, Any] = {
            "evaluated_at": utc_iso(self._clock.now_utc()),
            "campaign_id": str(campaign.campaign_id),
            "version": QUALITY_GATE_VERSION,
        }
        failures: dict[str, list[str]] = {name: [] for name in QUALITY_GATE_CHECKS}

        reading = self._read_regime(evidence, failures["regime"])
        if reading is not None:
            self._check_regime(reading, failures["regime"])
        self._check_breakers(campaign, evidence, failures["circuit_breakers"])
        self._check_drawdown(campaign, evidence, failures["drawdown"])
        self._check_antifraud(campaign, evidence, failures["antifraud"])

        market, market_error = self._read_market()
        self._check_spread(reading, market, market_error, evidence, failures["spread_slippage"])
        self._check_liquidity(market, market_error, evidence, failures["liquidity"])

        reasons = tuple(reason for name in QUALITY_GATE_CHECKS for reason in failures[name])
        ok = not reasons
        evidence["passed"] = ok
        evidence["total_checks"] = len(QUALITY_GATE_CHECKS)
        evidence["failed_checks"] = sum(1 for name in QUALITY_GATE_CHECKS if failures[name])
        if not ok:
            logger.info("Quality gate failed for campaign %s: %s", campaign.campaign_id, "; ".join(reasons))
        return QualityGateResult(ok=ok, reasons=reasons, evidence=evidence)

    def _read_regime(self, evidence: dict[str, Any], reasons: list[str]) -> Optional[RegimeReading]:
        try:
            reading = self._pool.call(
                "regime classifier",
                self._config.collaborator_timeout_seconds,
                self._classifier.aggregate_regime,
                self._config.regime_instruments,
            )
        except CollaboratorUnavailableError as exc:
            # Fail closed: no elevation on missing regime data.
            logger.warning("Regime check unavailable, blocking approval: %s", exc)
            evidence["vre_error"] = exc.detail
            reasons.append(f"VRE validation unavailable: {exc.detail}")
            return None
        evidence["vre"] = reading.as_evidence()
        return reading

    def _check_regime(self, reading: RegimeReading, reasons: list[str]) -> None:
        config = self._config
        if reading.regime not in ELEVATED_REGIMES:
            reasons.append(f"VRE regime '{reading.regime}' not allowed for RBM (requires: HIGH, EXTREME)")
        if reading.confidence < config.min_confidence:
            reasons.append(
                f"VRE confidence {_pct(reading.confidence)} below threshold {_pct(config.min_confidence)}"
            )
        for symbol in config.regime_instruments:
            if symbol not in reading.per_instrument:
                reasons.append(f"{symbol} missing from VRE reading")
        for symbol, state in sorted(reading.per_instrument.items()):
            if state.cycles_in_regime < config.min_stability_cycles:
                reasons.append(
                    f"{symbol} stability cycles ({state.cycles_in_regime}) below minimum ({config.min_stability_cycles})"
                )
            if state.cooldown_remaining > 0:
                reasons.append(f"{symbol} in VRE cooldown ({state.cooldown_remaining} cycles remaining)")
            floor = config.volume_ratio_floor(state.regime)
            if floor is not None and state.volume_ratio < floor:
                reasons.append(
                    f"{symbol} volume ratio ({state.volume_ratio:.2f}) below threshold for "
                    f"{state.regime} regime (requires: {floor})"
                )

    def _check_breakers(self, campaign: CampaignSnapshot, evidence: dict[str, Any], reasons: list[str]) -> None:
        """Breaker verdicts go into evidence; a breaker-service error counts as a pass."""
        if not campaign.portfolio_id:
            evidence["circuit_breaker_skipped"] = "No portfolio_id"
            return
        timeout = self._config.collaborator_timeout_seconds
        try:
            global_check = self._pool.call(
                "global breaker", timeout, self._breakers.check_global, campaign.portfolio_id
            )
            evidence["circuit_breaker_global"] = {
                "allowed": global_check.allowed,
                "level": global_check.level,
                "reason": global_check.reason,
            }
            if not global_check.allowed:
                reasons.append(f"Global circuit breaker active: {global_check.reason}")

            staleness_check = self._pool.call(
                "staleness breaker", timeout, self._breakers.check_staleness, campaign.portfolio_id
            )
            evidence["circuit_breaker_staleness"] = {
                "allowed": staleness_check.allowed,
                "level": staleness_check.level,
            }
            if not staleness_check.allowed:
                reasons.append(f"Data staleness breaker active: {staleness_check.reason}")
        except CollaboratorUnavailableError as exc:
            logger.warning("Circuit breaker check unavailable, treating as pass: %s", exc)
            evidence["circuit_breaker_error"] = exc.detail

    def _check_drawdown(self, campaign: CampaignSnapshot, evidence: dict[str, Any], reasons: list[str]) -> None:
        current = campaign.current_drawdown_pct or Decimal("0")
        maximum = campaign.max_drawdown_pct
        threshold = self._config.max_drawdown_fraction
        if maximum is None or maximum == 0:
            evidence["drawdown"] = {
                "current": float(current),
                "max_allowed": None,
                "threshold": threshold,
                "check_status": "skipped_no_max_drawdown",
            }
            return
        used = float(current / maximum)
        evidence["drawdown"] = {
            "current": float(current),
            "max_allowed": float(maximum),
            "percentage_used": used,
            "threshold": threshold,
        }
        if used > threshold:
            reasons.append(
                f"Current drawdown ({_pct(used)} of max) exceeds RBM threshold ({threshold * 100:.0f}%)"
            )

    def _check_antifraud(self, campaign: CampaignSnapshot, evidence: dict[str, Any], reasons: list[str]) -> None:
        window = self._config.antifraud_window_minutes
        limit = self._config.max_requests_per_window
        since = self._clock.now_utc() - timedelta(minutes=window)
        try:
            prior = self._store.count_events_since(campaign.campaign_id, RbmEventType.REQUEST.value, since)
        except Exception as exc:
            # Fail closed: an unreadable audit log cannot bound the request rate.
            logger.warning("Anti-fraud count unavailable for campaign %s: %s", campaign.campaign_id, exc)
            evidence["antifraud_error"] = f"{type(exc).__name__}: {exc}"
            reasons.append(f"Anti-fraud validation unavailable: {type(exc).__name__}")
            return
        attempts = prior + 1
        evidence["antifraud"] = {
            "requests_in_window": prior,
            "attempt_number": attempts,
            "max_allowed": limit,
            "window_minutes": window,
        }
        if attempts >= limit:
            reasons.append(
                f"Too many RBM requests ({attempts}) in the last {window} minutes (must stay below {limit})"
            )

    def _read_market(self) -> tuple[list[MarketSnapshot], Optional[str]]:
        try:
            return self._store.market_volumes(), None
        except Exception as exc:
            logger.warning("Market data cache unavailable: %s", exc)
            return [], f"{type(exc).__name__}: {exc}"

    def _check_spread(
        self,
        reading: Optional[RegimeReading],
        market: list[MarketSnapshot],
        market_error: Optional[str],
        evidence: dict[str, Any],
        reasons: list[str],
    ) -> None:
        """Record regime ceilings and observed spreads; blocking only when enforcement is configured."""
        if reading is None:
            evidence["spread_slippage_error"] = "regime unavailable"
            return
        regime = reading.regime
        if regime not in ELEVATED_REGIMES:
            evidence["spread_slippage"] = {"regime": regime, "check_status": "skipped_low_regime"}
            return

        max_spread_bp = MAX_SPREAD_BP[regime]
        by_symbol = {row.symbol: row for row in market}
        observed: dict[str, Optional[float]] = {}
        for symbol in LIQUIDITY_BASELINES:
            row = by_symbol.get(symbol)
            if row is None or row.bid_ask_spread is None:
                observed[symbol] = None
            else:
                observed[symbol] = float(row.bid_ask_spread * Decimal("10000"))

        enforce = self._config.enforce_spread_ceiling
        evidence["spread_slippage"] = {
            "regime": regime,
            "max_spread_bp": max_spread_bp,
            "max_slippage_bp": MAX_SLIPPAGE_BP[regime],
            "observed_spread_bp": observed,
            "check_status": "enforced" if enforce else "advisory",
        }
        if market_error is not None:
            evidence["spread_slippage_error"] = market_error
        if not enforce:
            return
        for symbol, spread_bp in observed.items():
            if spread_bp is not None and spread_bp > max_spread_bp:
                reasons.append(f"{symbol} spread ({spread_bp:.1f}bp) exceeds {regime} ceiling ({max_spread_bp}bp)")

    def _check_liquidity(
        self,
        market: list[MarketSnapshot],
        market_error: Optional[str],
        evidence: dict[str, Any],
        reasons: list[str],
    ) -> None:
        min_percentile = self._config.min_liquidity_percentile
        if market_error is not None:
            evidence["liquidity_error"] = market_error
            reasons.append(f"Liquidity validation error: {market_error}")
            return

        volumes = [row.volume_24h for row in market]
        by_symbol = {row.symbol: row for row in market}
        data: dict[str, dict[str, Any]] = {}
        for symbol, minimum in LIQUIDITY_BASELINES.items():
            row = by_symbol.get(symbol)
            if row is None:
                continue
            percentile = rank_percentile(row.volume_24h, volumes)
            meets_baseline = row.volume_24h >= minimum
            data[symbol] = {
                "volume_24h": float(row.volume_24h),
                "bid_ask_spread": None if row.bid_ask_spread is None else float(row.bid_ask_spread),
                "volume_percentile": percentile,
                "meets_baseline": meets_baseline,
            }
            if percentile < min_percentile:
                reasons.append(
                    f"{symbol} volume percentile ({_pct(percentile)}) below threshold ({min_percentile * 100:.0f}%)"
                )
            if not meets_baseline:
                reasons.append(
                    f"{symbol} 24h volume (${float(row.volume_24h) / 1_000_000:.2f}M) below minimum "
                    f"(${float(minimum) / 1_000_000:.0f}M)"
                )

        evidence["liquidity"] = {
            "min_percentile_required": min_percentile,
            "pairs_checked": len(data),
            "total_pairs_in_market": len(volumes),
            "data": data,
        }
        if not data:
            reasons.append("Liquidity data unavailable for major trading pairs")
