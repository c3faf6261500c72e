"""Risk-based multiplier (RBM) control core."""

from rbm.config import RbmConfig, load_rbm_config
from rbm.effective_risk import BaseRiskProfile, EffectiveRiskCaps, effective_risk_caps
from rbm.limits import PermissionSet, permissions_for, plan_limit
from rbm.monitor import AutoRollbackMonitor, RbmMonitorDaemon, SweepReport
from rbm.quality_gate import QualityGateEvaluator, QualityGateResult
from rbm.service import RbmRequestResult, RbmService
from rbm.store import RbmStore, SqlAlchemyRbmStore

__all__ = [
    "AutoRollbackMonitor",
    "BaseRiskProfile",
    "EffectiveRiskCaps",
    "PermissionSet",
    "QualityGateEvaluator",
    "QualityGateResult",
    "RbmConfig",
    "RbmMonitorDaemon",
    "RbmRequestResult",
    "RbmService",
    "RbmStore",
    "SqlAlchemyRbmStore",
    "SweepReport",
    "effective_risk_caps",
    "load_rbm_config",
    "permissions_for",
    "plan_limit",
]
