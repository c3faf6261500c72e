"""Environment-backed configuration for the RBM control core."""

from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True)
class RbmConfig:
    """Thresholds and runtime budgets for approval, monitoring and the daemon."""

    min_confidence: float = 0.70
    live_min_confidence: float = 0.60
    min_stability_cycles: int = 3
    volume_ratio_high: float = 1.2
    volume_ratio_extreme: float = 1.5
    min_liquidity_percentile: float = 0.80
    max_drawdown_fraction: float = 0.30
    rollback_drawdown_fraction: float = 0.50
    max_requests_per_window: int = 5
    antifraud_window_minutes: int = 60
    regime_instruments: tuple[str, ...] = ("BTC/USD", "ETH/USD")
    enforce_spread_ceiling: bool = False
    collaborator_timeout_seconds: float = 5.0
    collaborator_max_workers: int = 8
    monitor_campaign_timeout_seconds: float = 10.0
    monitor_max_workers: int = 4
    monitor_interval_seconds: int = 60
    daemon_failure_backoff_seconds: int = 30
    daemon_max_consecutive_failures: int = 10

    def volume_ratio_floor(self, regime: str) -> float | None:
        """Minimum per-instrument volume ratio for a regime, None when unconstrained."""
        if regime == "HIGH":
            return self.volume_ratio_high
        if regime == "EXTREME":
            return self.volume_ratio_extreme
        return None


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    return value


def _read_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    if not items:
        raise RuntimeError(f"Invalid list value for {name}: {raw}")
    return items


def _require_fraction(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise RuntimeError(f"{name} must be within [0, 1], got {value}")


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got {value}")


def load_rbm_config() -> RbmConfig:
    """Load and validate RBM configuration from environment."""
    config = RbmConfig(
        min_confidence=_read_float("RBM_MIN_CONFIDENCE", 0.70),
        live_min_confidence=_read_float("RBM_LIVE_MIN_CONFIDENCE", 0.60),
        min_stability_cycles=_read_int("RBM_MIN_STABILITY_CYCLES", 3),
        volume_ratio_high=_read_float("RBM_VOLUME_RATIO_HIGH", 1.2),
        volume_ratio_extreme=_read_float("RBM_VOLUME_RATIO_EXTREME", 1.5),
        min_liquidity_percentile=_read_float("RBM_MIN_LIQUIDITY_PERCENTILE", 0.80),
        max_drawdown_fraction=_read_float("RBM_MAX_DRAWDOWN_FRACTION", 0.30),
        rollback_drawdown_fraction=_read_float("RBM_ROLLBACK_DRAWDOWN_FRACTION", 0.50),
        max_requests_per_window=_read_int("RBM_MAX_REQUESTS_PER_WINDOW", 5),
        antifraud_window_minutes=_read_int("RBM_ANTIFRAUD_WINDOW_MINUTES", 60),
        regime_instruments=_read_csv("RBM_REGIME_INSTRUMENTS", ("BTC/USD", "ETH/USD")),
        enforce_spread_ceiling=_read_bool("RBM_ENFORCE_SPREAD_CEILING", False),
        collaborator_timeout_seconds=_read_float("RBM_COLLABORATOR_TIMEOUT_SECONDS", 5.0),
        collaborator_max_workers=_read_int("RBM_COLLABORATOR_MAX_WORKERS", 8),
        monitor_campaign_timeout_seconds=_read_float("RBM_MONITOR_CAMPAIGN_TIMEOUT_SECONDS", 10.0),
        monitor_max_workers=_read_int("RBM_MONITOR_MAX_WORKERS", 4),
        monitor_interval_seconds=_read_int("RBM_MONITOR_INTERVAL_SECONDS", 60),
        daemon_failure_backoff_seconds=_read_int("RBM_DAEMON_FAILURE_BACKOFF_SECONDS", 30),
        daemon_max_consecutive_failures=_read_int("RBM_DAEMON_MAX_CONSECUTIVE_FAILURES", 10),
    )

    for name, fraction in (
        ("RBM_MIN_CONFIDENCE", config.min_confidence),
        ("RBM_LIVE_MIN_CONFIDENCE", config.live_min_confidence),
        ("RBM_MIN_LIQUIDITY_PERCENTILE", config.min_liquidity_percentile),
        ("RBM_MAX_DRAWDOWN_FRACTION", config.max_drawdown_fraction),
        ("RBM_ROLLBACK_DRAWDOWN_FRACTION", config.rollback_drawdown_fraction),
    ):
        _require_fraction(name, fraction)
    if config.live_min_confidence > config.min_confidence:
        raise RuntimeError("RBM_LIVE_MIN_CONFIDENCE must not exceed RBM_MIN_CONFIDENCE")

    for name, amount in (
        ("RBM_MAX_REQUESTS_PER_WINDOW", config.max_requests_per_window),
        ("RBM_ANTIFRAUD_WINDOW_MINUTES", config.antifraud_window_minutes),
        ("RBM_COLLABORATOR_TIMEOUT_SECONDS", config.collaborator_timeout_seconds),
        ("RBM_COLLABORATOR_MAX_WORKERS", config.collaborator_max_workers),
        ("RBM_MONITOR_CAMPAIGN_TIMEOUT_SECONDS", config.monitor_campaign_timeout_seconds),
        ("RBM_MONITOR_MAX_WORKERS", config.monitor_max_workers),
        ("RBM_MONITOR_INTERVAL_SECONDS", config.monitor_interval_seconds),
        ("RBM_DAEMON_MAX_CONSECUTIVE_FAILURES", config.daemon_max_consecutive_failures),
    ):
        _require_positive(name, amount)
    if config.daemon_failure_backoff_seconds < 0:
        raise RuntimeError("RBM_DAEMON_FAILURE_BACKOFF_SECONDS must be non-negative")
    return config
