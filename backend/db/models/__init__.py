"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.campaign import Campaign
from backend.db.models.franchise import Franchise, FranchisePlan
from backend.db.models.market_data import MarketDataCache
from backend.db.models.rbm_event import RbmEvent

logger = logging.getLogger(__name__)

__all__ = [
    "Campaign",
    "Franchise",
    "FranchisePlan",
    "MarketDataCache",
    "RbmEvent",
]
