"""Append-only RBM audit event model."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Numeric, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import RbmEventType, TriggeredBy, sql_in_list

logger = logging.getLogger(__name__)


class RbmEvent(Base):
    """Audit row for every RBM request, decision, reduction and rollback."""

    __tablename__ = "rbm_event"
    __table_args__ = (
        CheckConstraint(sql_in_list("event_type", RbmEventType), name="event_type_valid"),
        CheckConstraint(sql_in_list("triggered_by", TriggeredBy), name="triggered_by_valid"),
        CheckConstraint("length(trim(reason)) > 0", name="reason_not_blank"),
        CheckConstraint(
            "triggered_by = 'system' OR actor_id IS NOT NULL",
            name="user_event_has_actor",
        ),
    )

    rbm_event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("campaign.campaign_id", onupdate="RESTRICT", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    previous_value: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    new_value: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    triggered_by: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(Text)
    evidence: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    created_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index(
    "idx_rbm_event_campaign_type_created_desc",
    RbmEvent.campaign_id,
    RbmEvent.event_type,
    RbmEvent.created_at_utc.desc(),
)
Index("idx_rbm_event_created_desc", RbmEvent.created_at_utc.desc())
