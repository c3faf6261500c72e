"""Collaborator doubles for RBM unit tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import time
from typing import Mapping, Optional, Sequence

from rbm.collaborators import ActorRole, BreakerCheck, InstrumentRegime, RegimeReading

T0 = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock double that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def now_utc(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def regime_reading(
    regime: str = "HIGH",
    confidence: float = 0.85,
    *,
    cycles_in_regime: int = 5,
    cooldown_remaining: int = 0,
    volume_ratio: float = 1.4,
    instruments: Sequence[str] = ("BTC/USD", "ETH/USD"),
) -> RegimeReading:
    return RegimeReading(
        regime=regime,
        confidence=confidence,
        per_instrument={
            symbol: InstrumentRegime(
                regime=regime,
                confidence=confidence,
                cycles_in_regime=cycles_in_regime,
                cooldown_remaining=cooldown_remaining,
                volume_ratio=volume_ratio,
            )
            for symbol in instruments
        },
    )


class FakeRegimeClassifier:
    def __init__(
        self,
        reading: Optional[RegimeReading] = None,
        *,
        error: Optional[Exception] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.reading = reading if reading is not None else regime_reading()
        self.error = error
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[str, ...]] = []

    def aggregate_regime(self, instruments: Sequence[str]) -> RegimeReading:
        self.calls.append(tuple(instruments))
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return self.reading


class FakeBreakers:
    def __init__(
        self,
        *,
        global_allowed: bool = True,
        staleness_allowed: bool = True,
        global_is_tripped: bool = False,
        staleness_is_tripped: bool = False,
        error: Optional[Exception] = None,
    ) -> None:
        self.global_allowed = global_allowed
        self.staleness_allowed = staleness_allowed
        self.global_is_tripped = global_is_tripped
        self.staleness_is_tripped = staleness_is_tripped
        self.error = error

    def _raise_if_broken(self) -> None:
        if self.error is not None:
            raise self.error

    def check_global(self, portfolio_id: str) -> BreakerCheck:
        self._raise_if_broken()
        if self.global_allowed:
            return BreakerCheck(allowed=True, level="NORMAL")
        return BreakerCheck(allowed=False, reason="daily loss limit", level="TRIPPED")

    def check_staleness(self, portfolio_id: str) -> BreakerCheck:
        self._raise_if_broken()
        if self.staleness_allowed:
            return BreakerCheck(allowed=True, level="NORMAL")
        return BreakerCheck(allowed=False, reason="ticker feed stale", level="TRIPPED")

    def global_tripped(self) -> bool:
        self._raise_if_broken()
        return self.global_is_tripped

    def staleness_tripped(self) -> bool:
        self._raise_if_broken()
        return self.staleness_is_tripped


class FakeActorDirectory:
    def __init__(self, roles: Mapping[str, ActorRole], *, error: Optional[Exception] = None) -> None:
        self.roles = dict(roles)
        self.error = error

    def role_for(self, actor_id: str) -> Optional[ActorRole]:
        if self.error is not None:
            raise self.error
        return self.roles.get(actor_id)


DEFAULT_ACTORS: dict[str, ActorRole] = {
    "owner-1": ActorRole(global_role="franchisee", franchise_role="master", is_franchise_owner=True),
    "operator-1": ActorRole(global_role="franchisee", franchise_role="operator"),
    "analyst-1": ActorRole(global_role="franchisee", franchise_role="analyst"),
    "franchisor-1": ActorRole(global_role="franchisor", franchise_role=None),
}
