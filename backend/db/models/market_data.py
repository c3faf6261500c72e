"""Cached 24h market snapshot consumed by the liquidity sub-check."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class MarketDataCache(Base):
    """Latest per-symbol 24h notional volume and indicative spread."""

    __tablename__ = "market_data_cache"
    __table_args__ = (
        CheckConstraint("volume_24h >= 0", name="volume_non_negative"),
        CheckConstraint("bid_ask_spread IS NULL OR bid_ask_spread >= 0", name="spread_non_negative"),
    )

    symbol: Mapped[str] = mapped_column(Text, primary_key=True)
    volume_24h: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False)
    bid_ask_spread: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 8))
    updated_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
