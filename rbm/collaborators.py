"""Contracts for the external collaborators consulted by the RBM core."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol, Sequence

REGIMES: tuple[str, ...] = ("LOW", "NORMAL", "HIGH", "EXTREME")
ELEVATED_REGIMES: frozenset[str] = frozenset({"HIGH", "EXTREME"})


@dataclass(frozen=True)
class InstrumentRegime:
    """Per-instrument regime state reported by the classifier."""

    regime: str
    confidence: float
    cycles_in_regime: int
    cooldown_remaining: int
    volume_ratio: float


@dataclass(frozen=True)
class RegimeReading:
    """Aggregate regime over a set of instruments."""

    regime: str
    confidence: float
    per_instrument: Mapping[str, InstrumentRegime] = field(default_factory=dict)

    def as_evidence(self) -> dict[str, object]:
        return {
            "regime": self.regime,
            "confidence": float(self.confidence),
            "individual": {
                symbol: {
                    "regime": state.regime,
                    "confidence": float(state.confidence),
                    "cycles_in_regime": int(state.cycles_in_regime),
                    "cooldown_remaining": int(state.cooldown_remaining),
                    "rv_ratio": float(state.volume_ratio),
                }
                for symbol, state in sorted(self.per_instrument.items())
            },
        }


@dataclass(frozen=True)
class BreakerCheck:
    """Circuit-breaker verdict for one portfolio."""

    allowed: bool
    reason: Optional[str] = None
    level: Optional[str] = None


@dataclass(frozen=True)
class ActorRole:
    """Role facts about an actor; never exposed past the permission mapping."""

    global_role: Optional[str]
    franchise_role: Optional[str]
    is_franchise_owner: bool = False


class RegimeClassifier(Protocol):
    """Volatility-regime classifier handle."""

    def aggregate_regime(self, instruments: Sequence[str]) -> RegimeReading:
        """Classify the aggregate regime; raise on failure rather than returning LOW."""


class CircuitBreakers(Protocol):
    """Circuit-breaker subsystem status surface."""

    def check_global(self, portfolio_id: str) -> BreakerCheck:
        """Global breaker verdict for a portfolio."""

    def check_staleness(self, portfolio_id: str) -> BreakerCheck:
        """Data-staleness breaker verdict for a portfolio."""

    def global_tripped(self) -> bool:
        """True when the platform-wide breaker is tripped."""

    def staleness_tripped(self) -> bool:
        """True when the platform-wide staleness breaker is tripped."""


class ActorDirectory(Protocol):
    """Permission/role resolver."""

    def role_for(self, actor_id: str) -> Optional[ActorRole]:
        """Resolve an actor's roles, None when the actor is unknown."""
