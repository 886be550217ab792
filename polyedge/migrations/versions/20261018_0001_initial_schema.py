"""Initial schema for PolyEdge.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates the decision-core tables:
- models, paper_accounts for strategy config and simulated balances
- signals, signal_runs for inputs and aggregation history
- market_snapshots, btc_prices for external market data
- trades for the paper-trading ledger
- trade_analyses, model_insights, versions for the learning loop
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Models table
    op.create_table(
        "models",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("signal_weights", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("thresholds", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("consecutive_losses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("blackout_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_learning_cycles", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    # Paper accounts
    op.create_table(
        "paper_accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("balance_usdc", sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column(
            "starting_balance",
            sa.Numeric(precision=14, scale=4),
            nullable=False,
            server_default="100",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("model_id"),
    )

    # Signals (append-only)
    op.create_table(
        "signals",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("normalized", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("raw_value", sa.Numeric(precision=20, scale=6), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_signals_model_source_ts", "signals", ["model_id", "source", "timestamp"]
    )

    # Signal runs
    op.create_table(
        "signal_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("aggregated_score", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("direction", sa.String(length=10), nullable=False),
        sa.Column("confidence", sa.String(length=10), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("sources_used", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("action_taken", sa.String(length=10), nullable=False),
        sa.Column("oracle_decision", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("oracle_reasoning", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_signal_runs_model_ts", "signal_runs", ["model_id", "timestamp"])

    # Market snapshots (external producer)
    op.create_table(
        "market_snapshots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("market_id", sa.String(length=100), nullable=False),
        sa.Column("market_name", sa.String(length=300), nullable=True),
        sa.Column("up_odds", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("down_odds", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("volume", sa.Numeric(precision=14, scale=4), nullable=True),
        sa.Column("time_remaining", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_market_snapshots_market_ts", "market_snapshots", ["market_id", "timestamp"]
    )

    # BTC prices (external producer)
    op.create_table(
        "btc_prices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column("change_1h", sa.Numeric(precision=10, scale=6), nullable=True),
        sa.Column("change_24h", sa.Numeric(precision=10, scale=6), nullable=True),
        sa.Column("volume_24h", sa.Numeric(precision=24, scale=2), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_btc_prices_timestamp", "btc_prices", ["timestamp"])

    # Trades
    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("market_id", sa.String(length=100), nullable=False),
        sa.Column("market_name", sa.String(length=300), nullable=True),
        sa.Column("direction", sa.String(length=10), nullable=False),
        sa.Column("amount_usdc", sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column("entry_odds", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("exit_odds", sa.Numeric(precision=10, scale=6), nullable=True),
        sa.Column(
            "status",
            sa.String(length=10),
            nullable=False,
            server_default="open",
            comment="'open', 'closed' or 'expired'",
        ),
        sa.Column("pnl", sa.Numeric(precision=14, scale=4), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_trades_model_status", "trades", ["model_id", "status"])
    op.create_index("idx_trades_model_opened", "trades", ["model_id", "opened_at"])

    # Trade analyses (one per trade)
    op.create_table(
        "trade_analyses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("trade_id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("verdict", sa.String(length=20), nullable=False),
        sa.Column(
            "signal_contributions", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column(
            "adjustment_suggestions", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column(
            "market_conditions", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column("analyzed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["trade_id"], ["trades.id"]),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("trade_id"),
    )

    # Model insights (append-only audit trail)
    op.create_table(
        "model_insights",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("insight_text", sa.Text(), nullable=False),
        sa.Column("action_taken", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_model_insights_model_ts", "model_insights", ["model_id", "timestamp"]
    )

    # Versions (append-only)
    op.create_table(
        "versions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("version_num", sa.Integer(), nullable=False),
        sa.Column("parent_version_id", sa.Integer(), nullable=True),
        sa.Column("mutation_reason", sa.String(length=200), nullable=False),
        sa.Column("signal_weights", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("thresholds", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_prod_synced", sa.Boolean(), nullable=False, server_default="false"),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.ForeignKeyConstraint(["parent_version_id"], ["versions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("model_id", "version_num", name="uq_versions_model_num"),
    )


def downgrade() -> None:
    op.drop_table("versions")
    op.drop_index("idx_model_insights_model_ts", table_name="model_insights")
    op.drop_table("model_insights")
    op.drop_table("trade_analyses")
    op.drop_index("idx_trades_model_opened", table_name="trades")
    op.drop_index("idx_trades_model_status", table_name="trades")
    op.drop_table("trades")
    op.drop_index("ix_btc_prices_timestamp", table_name="btc_prices")
    op.drop_table("btc_prices")
    op.drop_index("idx_market_snapshots_market_ts", table_name="market_snapshots")
    op.drop_table("market_snapshots")
    op.drop_index("idx_signal_runs_model_ts", table_name="signal_runs")
    op.drop_table("signal_runs")
    op.drop_index("idx_signals_model_source_ts", table_name="signals")
    op.drop_table("signals")
    op.drop_table("paper_accounts")
    op.drop_table("models")
