"""Shared constants and helpers for the RBM control core."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any, Callable, TypeVar

from rbm.errors import CollaboratorUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RBM_MIN_SYSTEM = Decimal("1.00")
RBM_MAX_SYSTEM = Decimal("5.00")
RBM_DEFAULT = Decimal("1.00")

PLAN_TIER_LIMITS: dict[str, Decimal] = {
    "starter": Decimal("2.00"),
    "pro": Decimal("3.00"),
    "enterprise": Decimal("4.00"),
    "master": Decimal("5.00"),
}

RBM_STEPS: tuple[Decimal, ...] = tuple(Decimal("1.00") + Decimal("0.50") * step for step in range(9))

ELIGIBLE_CAMPAIGN_STATUSES: tuple[str, ...] = ("active", "paused")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class RbmClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


def parse_multiplier(value: Any) -> Decimal | None:
    """Coerce a stored or requested multiplier to Decimal, None when malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def quantize_multiplier(value: Decimal) -> Decimal:
    """Round a multiplier to the stored 0.01 precision."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def is_multiplier_in_bounds(value: Decimal) -> bool:
    """True when value lies within the system multiplier range."""
    return RBM_MIN_SYSTEM <= value <= RBM_MAX_SYSTEM


def reduce_multiplier(current: Decimal, factor: Decimal) -> Decimal:
    """Scale down a multiplier, rounding toward zero and never below the default."""
    reduced = (current * factor).quantize(_CENT, rounding=ROUND_DOWN)
    return max(RBM_DEFAULT, reduced)


def decimal_to_str(value: Decimal) -> str:
    """Canonical decimal serialization."""
    return format(value.normalize(), "f") if value != 0 else "0"


def utc_iso(ts: datetime) -> str:
    """Normalize timestamp to UTC RFC3339 string."""
    return as_utc(ts).isoformat().replace("+00:00", "Z")


def as_utc(ts: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from stores without zone support."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class CollaboratorPool:
    """Bounded worker pool shared by every collaborator call of one component.

    Any error or timeout surfaces as CollaboratorUnavailableError so callers can
    apply their own fail-open or fail-closed default. A call that overruns its
    budget keeps its worker until the collaborator returns; the pool size caps
    how many such calls can pile up, and further calls queue behind them and
    time out. Workers still running at interpreter exit are joined by
    concurrent.futures, so a collaborator that never returns delays shutdown.
    """

    def __init__(self, max_workers: int = 8) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rbm-collaborator")

    def call(self, collaborator: str, timeout_seconds: float, func: Callable[..., T], *args: Any) -> T:
        """Invoke a collaborator with a wall-clock budget."""
        try:
            future = self._executor.submit(func, *args)
        except RuntimeError as exc:
            raise CollaboratorUnavailableError(collaborator, "collaborator pool is shut down") from exc
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise CollaboratorUnavailableError(collaborator, f"timed out after {timeout_seconds:g}s") from exc
        except CollaboratorUnavailableError:
            raise
        except Exception as exc:
            raise CollaboratorUnavailableError(collaborator, f"{type(exc).__name__}: {exc}") from exc

    def shutdown(self) -> None:
        """Drop queued calls without waiting on running ones."""
        self._executor.shutdown(wait=False, cancel_futures=True)
