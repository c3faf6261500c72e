"""Franchise and subscription plan model definitions."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class FranchisePlan(Base):
    """Subscription tier carrying the maximum RBM a franchise may request."""

    __tablename__ = "franchise_plan"
    __table_args__ = (
        CheckConstraint("length(trim(tier_code)) > 0", name="tier_code_not_blank"),
        CheckConstraint(
            "max_rbm_multiplier IS NULL OR (max_rbm_multiplier >= 1.0 AND max_rbm_multiplier <= 5.0)",
            name="max_rbm_multiplier_range",
        ),
    )

    plan_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tier_code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    max_rbm_multiplier: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))


class Franchise(Base):
    """Franchise unit bound to a subscription plan."""

    __tablename__ = "franchise"

    franchise_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    plan_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("franchise_plan.plan_id", onupdate="RESTRICT", ondelete="SET NULL"),
    )
