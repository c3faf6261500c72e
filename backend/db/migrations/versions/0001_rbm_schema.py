"""Initial schema for the risk-based multiplier control core."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_rbm_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE franchise_plan (
        plan_id INTEGER GENERATED ALWAYS AS IDENTITY,
        tier_code TEXT NOT NULL,
        display_name TEXT NOT NULL,
        max_rbm_multiplier NUMERIC(6,2),
        CONSTRAINT pk_franchise_plan PRIMARY KEY (plan_id),
        CONSTRAINT uq_franchise_plan_tier_code UNIQUE (tier_code),
        CONSTRAINT ck_franchise_plan_tier_code_not_blank CHECK (length(trim(tier_code)) > 0),
        CONSTRAINT ck_franchise_plan_max_rbm_multiplier_range CHECK (
            max_rbm_multiplier IS NULL OR (max_rbm_multiplier >= 1.0 AND max_rbm_multiplier <= 5.0)
        )
    );
    """,
    """
    CREATE TABLE franchise (
        franchise_id INTEGER GENERATED ALWAYS AS IDENTITY,
        name TEXT NOT NULL,
        plan_id INTEGER,
        CONSTRAINT pk_franchise PRIMARY KEY (franchise_id),
        CONSTRAINT fk_franchise_plan_id FOREIGN KEY (plan_id)
            REFERENCES franchise_plan (plan_id) ON UPDATE RESTRICT ON DELETE SET NULL
    );
    """,
    """
    CREATE TABLE campaign (
        campaign_id UUID NOT NULL,
        portfolio_id TEXT,
        franchise_id INTEGER,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        initial_capital NUMERIC(38,18) NOT NULL DEFAULT 0,
        current_equity NUMERIC(38,18) NOT NULL DEFAULT 0,
        max_drawdown_pct NUMERIC(12,6),
        current_drawdown_pct NUMERIC(12,6),
        rbm_requested NUMERIC(6,2),
        rbm_approved NUMERIC(6,2) NOT NULL DEFAULT 1.00,
        rbm_status TEXT NOT NULL DEFAULT 'INACTIVE',
        rbm_approved_at TIMESTAMPTZ,
        rbm_reduced_at TIMESTAMPTZ,
        rbm_reduced_reason TEXT,
        updated_at_utc TIMESTAMPTZ,
        CONSTRAINT pk_campaign PRIMARY KEY (campaign_id),
        CONSTRAINT fk_campaign_franchise_id FOREIGN KEY (franchise_id)
            REFERENCES franchise (franchise_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_campaign_status_valid CHECK (
            status IN ('draft', 'active', 'paused', 'stopped', 'completed', 'cancelled')
        ),
        CONSTRAINT ck_campaign_rbm_status_valid CHECK (
            rbm_status IN ('INACTIVE', 'PENDING', 'ACTIVE', 'REDUCED', 'ROLLED_BACK')
        ),
        CONSTRAINT ck_campaign_rbm_approved_range CHECK (rbm_approved >= 1.0 AND rbm_approved <= 5.0),
        CONSTRAINT ck_campaign_rbm_requested_range CHECK (
            rbm_requested IS NULL OR (rbm_requested >= 1.0 AND rbm_requested <= 5.0)
        ),
        CONSTRAINT ck_campaign_max_drawdown_non_negative CHECK (max_drawdown_pct IS NULL OR max_drawdown_pct >= 0)
    );
    """,
    """
    CREATE TABLE rbm_event (
        rbm_event_id UUID NOT NULL,
        campaign_id UUID NOT NULL,
        event_type TEXT NOT NULL,
        previous_value NUMERIC(6,2) NOT NULL,
        new_value NUMERIC(6,2) NOT NULL,
        reason TEXT NOT NULL,
        triggered_by TEXT NOT NULL,
        actor_id TEXT,
        evidence JSONB,
        created_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_rbm_event PRIMARY KEY (rbm_event_id),
        CONSTRAINT fk_rbm_event_campaign_id FOREIGN KEY (campaign_id)
            REFERENCES campaign (campaign_id) ON UPDATE RESTRICT ON DELETE CASCADE,
        CONSTRAINT ck_rbm_event_event_type_valid CHECK (
            event_type IN ('REQUEST', 'APPROVE', 'DENY', 'REDUCE', 'ROLLBACK', 'DEACTIVATE')
        ),
        CONSTRAINT ck_rbm_event_triggered_by_valid CHECK (triggered_by IN ('user', 'system')),
        CONSTRAINT ck_rbm_event_reason_not_blank CHECK (length(trim(reason)) > 0),
        CONSTRAINT ck_rbm_event_user_event_has_actor CHECK (triggered_by = 'system' OR actor_id IS NOT NULL)
    );
    """,
    """
    CREATE TABLE market_data_cache (
        symbol TEXT NOT NULL,
        volume_24h NUMERIC(38,8) NOT NULL,
        bid_ask_spread NUMERIC(12,8),
        updated_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_market_data_cache PRIMARY KEY (symbol),
        CONSTRAINT ck_market_data_cache_volume_non_negative CHECK (volume_24h >= 0),
        CONSTRAINT ck_market_data_cache_spread_non_negative CHECK (bid_ask_spread IS NULL OR bid_ask_spread >= 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_campaign_rbm_status_approved ON campaign (rbm_status, rbm_approved);",
    (
        "CREATE INDEX idx_rbm_event_campaign_type_created_desc "
        "ON rbm_event (campaign_id, event_type, created_at_utc DESC);"
    ),
    "CREATE INDEX idx_rbm_event_created_desc ON rbm_event (created_at_utc DESC);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_rbm_event_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF TG_OP = 'DELETE' AND pg_trigger_depth() > 1 THEN
            RETURN OLD;
        END IF;
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_rbm_event_append_only
    BEFORE UPDATE OR DELETE ON rbm_event
    FOR EACH ROW EXECUTE FUNCTION fn_rbm_event_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Create RBM tables, indexes and the audit append-only guard."""

    logger.info("Starting RBM schema migration upgrade.")
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed RBM schema migration upgrade.")


def downgrade() -> None:
    """Drop the RBM schema."""

    logger.info("Starting RBM schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_rbm_event_append_only ON rbm_event;",
            "DROP FUNCTION IF EXISTS fn_rbm_event_append_only();",
            "DROP TABLE IF EXISTS rbm_event;",
            "DROP TABLE IF EXISTS market_data_cache;",
            "DROP TABLE IF EXISTS campaign;",
            "DROP TABLE IF EXISTS franchise;",
            "DROP TABLE IF EXISTS franchise_plan;",
        )
    )
    logger.info("Completed RBM schema migration downgrade.")
