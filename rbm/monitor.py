"""Auto-rollback monitor and its recurring daemon loop."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from decimal import Decimal
import logging
import time
from typing import Optional

from backend.db.enums import TriggeredBy
from rbm.collaborators import CircuitBreakers, RegimeClassifier
from rbm.common import CollaboratorPool, RbmClock, decimal_to_str
from rbm.config import RbmConfig
from rbm.errors import CollaboratorUnavailableError
from rbm.records import CampaignSnapshot, EventDraft, Transition
from rbm.rollback_policy import LiveSignals, RollbackDecision, evaluate_rollback_triggers
from rbm.store import RbmStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorAction:
    """One committed reduction or rollback."""

    campaign_id: str
    action: str
    reason: str
    previous_value: Decimal
    new_value: Decimal

    def as_payload(self) -> dict[str, str]:
        return {
            "campaignId": self.campaign_id,
            "action": self.action,
            "reason": self.reason,
            "previousValue": decimal_to_str(self.previous_value),
            "newValue": decimal_to_str(self.new_value),
        }


@dataclass(frozen=True)
class SweepReport:
    """Summary of one monitor sweep."""

    monitored: int
    actions: tuple[MonitorAction, ...]
    skipped: tuple[str, ...]

    def as_payload(self) -> dict[str, object]:
        return {
            "monitored": self.monitored,
            "actions": [action.as_payload() for action in self.actions],
            "skipped": list(self.skipped),
        }


class AutoRollbackMonitor:
    """Re-checks every elevated campaign and unwinds risk when live signals degrade.

    Collaborator reads fan out over a bounded worker pool; store writes stay on
    the sweep thread and go through the store's unit of work.
    """

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

    def gather_signals(self, campaign: CampaignSnapshot) -> LiveSignals:
        """Read regime and breaker state; each call is bounded by the collaborator timeout."""
        timeout = self._config.collaborator_timeout_seconds
        errors: dict[str, str] = {}
        regime = None
        regime_error = None
        try:
            regime = self._pool.call(
                "regime classifier",
                timeout,
                self._classifier.aggregate_regime,
                self._config.regime_instruments,
            )
        except CollaboratorUnavailableError as exc:
            logger.warning("Regime unavailable while monitoring campaign %s: %s", campaign.campaign_id, exc)
            regime_error = exc.detail

        global_tripped: Optional[bool] = None
        try:
            global_tripped = bool(self._pool.call("global breaker", timeout, self._breakers.global_tripped))
        except CollaboratorUnavailableError as exc:
            logger.warning("Global breaker status unavailable: %s", exc)
            errors["global_breaker"] = exc.detail

        staleness_tripped: Optional[bool] = None
        try:
            staleness_tripped = bool(self._pool.call("staleness breaker", timeout, self._breakers.staleness_tripped))
        except CollaboratorUnavailableError as exc:
            logger.warning("Staleness breaker status unavailable: %s", exc)
            errors["staleness_breaker"] = exc.detail

        return LiveSignals(
            regime=regime,
            regime_error=regime_error,
            global_tripped=global_tripped,
            staleness_tripped=staleness_tripped,
            errors=errors,
        )

    def run_sweep(self) -> SweepReport:
        """Evaluate all elevated campaigns once."""
        campaigns = self._store.list_elevated_campaigns()
        if not campaigns:
            return SweepReport(monitored=0, actions=(), skipped=())

        executor = ThreadPoolExecutor(
            max_workers=min(self._config.monitor_max_workers, len(campaigns)),
            thread_name_prefix="rbm-monitor",
        )
        try:
            futures: list[tuple[CampaignSnapshot, Future[LiveSignals]]] = [
                (campaign, executor.submit(self.gather_signals, campaign)) for campaign in campaigns
            ]
            actions: list[MonitorAction] = []
            skipped: list[str] = []
            for campaign, future in futures:
                campaign_id = str(campaign.campaign_id)
                try:
                    signals = future.result(timeout=self._config.monitor_campaign_timeout_seconds)
                except FutureTimeoutError:
                    future.cancel()
                    logger.warning("Monitor timed out gathering signals for campaign %s, retrying next cycle", campaign_id)
                    skipped.append(campaign_id)
                    continue
                except Exception:
                    logger.exception("Monitor failed gathering signals for campaign %s", campaign_id)
                    skipped.append(campaign_id)
                    continue

                try:
                    action = self._commit(campaign, signals)
                except Exception:
                    logger.exception("Monitor commit failed for campaign %s", campaign_id)
                    skipped.append(campaign_id)
                    continue
                if action is not None:
                    actions.append(action)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "RBM monitor sweep: monitored=%d actions=%d skipped=%d",
            len(campaigns),
            len(actions),
            len(skipped),
        )
        return SweepReport(monitored=len(campaigns), actions=tuple(actions), skipped=tuple(skipped))

    def _commit(self, campaign: CampaignSnapshot, signals: LiveSignals) -> Optional[MonitorAction]:
        # Triggers are only evaluated on the locked row, which carries the plan ceiling.
        now = self._clock.now_utc()
        fired: list[RollbackDecision] = []

        def decide(locked: CampaignSnapshot) -> Optional[Transition]:
            if not locked.is_elevated:
                return None
            decision = evaluate_rollback_triggers(locked, signals, self._config)
            if decision is None:
                return None
            fired.append(decision)
            return Transition(
                updates={
                    "rbm_approved": decision.target_value,
                    "rbm_status": decision.rbm_status,
                    "rbm_reduced_at": now,
                    "rbm_reduced_reason": decision.reason,
                },
                events=(
                    EventDraft(
                        event_type=decision.event_type,
                        previous_value=decision.previous_value,
                        new_value=decision.target_value,
                        reason=decision.reason,
                        triggered_by=TriggeredBy.SYSTEM.value,
                        evidence={"trigger": decision.trigger, "signals": signals.as_evidence()},
                    ),
                ),
            )

        applied = self._store.apply_transition(campaign.campaign_id, decide, occurred_at_utc=now)
        if not applied.changed:
            return None
        decision = fired[-1]
        logger.info(
            "RBM %s for campaign %s: %sx -> %sx (%s)",
            decision.event_type,
            campaign.campaign_id,
            decimal_to_str(decision.previous_value),
            decimal_to_str(decision.target_value),
            decision.reason,
        )
        return MonitorAction(
            campaign_id=str(campaign.campaign_id),
            action=decision.action,
            reason=decision.reason,
            previous_value=decision.previous_value,
            new_value=decision.target_value,
        )


class RbmMonitorDaemon:
    """Recurring scheduler around the monitor sweep."""

    def __init__(self, *, monitor: AutoRollbackMonitor, config: RbmConfig | None = None) -> None:
        self._monitor = monitor
        self._config = config or RbmConfig()

    def run_once(self) -> SweepReport:
        return self._monitor.run_sweep()

    def daemon_loop(self, *, max_cycles: int | None = None) -> None:
        """Run sweeps until interrupted or max_cycles reached."""
        logger.info("RBM monitor daemon started (max_cycles=%s)", max_cycles if max_cycles is not None else "infinite")
        cycles = 0
        consecutive_failures = 0
        try:
            while True:
                try:
                    self.run_once()
                    consecutive_failures = 0
                except Exception as exc:
                    consecutive_failures += 1
                    logger.exception("RBM monitor cycle failed (failure_count=%d)", consecutive_failures)
                    if consecutive_failures >= self._config.daemon_max_consecutive_failures:
                        raise RuntimeError(
                            "RBM monitor daemon exceeded max consecutive failures "
                            f"({self._config.daemon_max_consecutive_failures})"
                        ) from exc
                    time.sleep(self._config.daemon_failure_backoff_seconds)
                    continue

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    return
                time.sleep(self._config.monitor_interval_seconds)
        finally:
            logger.info("RBM monitor daemon stopped (completed_cycles=%d)", cycles)
