"""Value contracts for RBM status, audit event and campaign lifecycle columns."""

from __future__ import annotations

import enum
import logging

logger = logging.getLogger(__name__)


class RbmStatus(str, enum.Enum):
    """Risk-based multiplier state held on a campaign."""

    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REDUCED = "REDUCED"
    ROLLED_BACK = "ROLLED_BACK"


class RbmEventType(str, enum.Enum):
    """Append-only RBM audit event type."""

    REQUEST = "REQUEST"
    APPROVE = "APPROVE"
    DENY = "DENY"
    REDUCE = "REDUCE"
    ROLLBACK = "ROLLBACK"
    DEACTIVATE = "DEACTIVATE"


class CampaignStatus(str, enum.Enum):
    """Trading campaign lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TriggeredBy(str, enum.Enum):
    """Origin of an RBM audit event."""

    USER = "user"
    SYSTEM = "system"


def sql_in_list(column: str, members: type[enum.Enum]) -> str:
    """Render a portable CHECK predicate restricting a text column to enum values."""
    values = ", ".join(f"'{member.value}'" for member in members)
    return f"{column} IN ({values})"
