"""Trading campaign model with the RBM state slice."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import CampaignStatus, RbmStatus, sql_in_list

logger = logging.getLogger(__name__)


class Campaign(Base):
    """Campaign row; this core reads lifecycle/risk columns and owns the rbm_* columns."""

    __tablename__ = "campaign"
    __table_args__ = (
        CheckConstraint(sql_in_list("status", CampaignStatus), name="status_valid"),
        CheckConstraint(sql_in_list("rbm_status", RbmStatus), name="rbm_status_valid"),
        CheckConstraint(
            "rbm_approved >= 1.0 AND rbm_approved <= 5.0",
            name="rbm_approved_range",
        ),
        CheckConstraint(
            "rbm_requested IS NULL OR (rbm_requested >= 1.0 AND rbm_requested <= 5.0)",
            name="rbm_requested_range",
        ),
        CheckConstraint(
            "max_drawdown_pct IS NULL OR max_drawdown_pct >= 0",
            name="max_drawdown_non_negative",
        ),
        Index("idx_campaign_rbm_status_approved", "rbm_status", "rbm_approved"),
    )

    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    portfolio_id: Mapped[Optional[str]] = mapped_column(Text)
    franchise_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("franchise.franchise_id", onupdate="RESTRICT", ondelete="RESTRICT"),
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=CampaignStatus.DRAFT.value)
    initial_capital: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0"))
    current_equity: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0"))
    max_drawdown_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 6))
    current_drawdown_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 6))

    rbm_requested: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))
    rbm_approved: Mapped[Decimal] = mapped_column(
        Numeric(6, 2),
        nullable=False,
        default=Decimal("1.00"),
        server_default=text("1.00"),
    )
    rbm_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=RbmStatus.INACTIVE.value,
        server_default=text("'INACTIVE'"),
    )
    rbm_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rbm_reduced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rbm_reduced_reason: Mapped[Optional[str]] = mapped_column(Text)
    updated_at_utc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
