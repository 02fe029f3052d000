"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _status(name: str = "accountstatus") -> sa.Enum:
    return sa.Enum("ACTIVE", "INACTIVE", name=name)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("mcc_account_id", sa.String(length=64)),
        sa.Column("status", _status(), nullable=False, server_default="ACTIVE"),
        sa.Column("timezone", sa.String(length=64)),
        sa.Column("year", sa.Integer()),
        sa.Column("total_accounts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("live_accounts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_spending_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("status", _status(), nullable=False, server_default="ACTIVE"),
        sa.Column(
            "total_spending_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("total_accounts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_accounts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "invoice_entities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("mcc_invoice_id", sa.String(length=64)),
        sa.Column("status", _status(), nullable=False, server_default="ACTIVE"),
        sa.Column(
            "linked_accounts_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "active_accounts_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "total_spending_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("status", _status(), nullable=False, server_default="ACTIVE"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column(
            "batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=False
        ),
        sa.Column(
            "current_invoice_id", sa.Integer(), sa.ForeignKey("invoice_entities.id")
        ),
        sa.Column("current_customer_id", sa.Integer(), sa.ForeignKey("customers.id")),
        sa.Column(
            "total_spending_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_synced_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_accounts_batch", "accounts", ["batch_id"])
    op.create_index("ix_accounts_customer", "accounts", ["current_customer_id"])
    op.create_index("ix_accounts_invoice", "accounts", ["current_invoice_id"])

    op.create_table(
        "spending_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("spending_date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoice_entities.id")),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id")),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "spending_date", name="uq_spending_account_date"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_spending_amount_positive"),
        sa.CheckConstraint("period_start <= period_end", name="ck_spending_period"),
    )
    op.create_index("ix_spending_date", "spending_records", ["spending_date"])

    op.create_table(
        "spending_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("spending_date", sa.Date(), nullable=False),
        sa.Column("cumulative_amount_cents", sa.Integer(), nullable=False),
        sa.Column("snapshot_at", sa.DateTime(), nullable=False),
        sa.Column(
            "snapshot_type",
            sa.Enum("MI_CHANGE", "MC_CHANGE", "DAILY_FINAL", name="snapshottype"),
            nullable=False,
        ),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoice_entities.id")),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "cumulative_amount_cents >= 0", name="ck_snapshot_amount_positive"
        ),
    )
    op.create_index(
        "ix_snapshot_account_at", "spending_snapshots", ["account_id", "snapshot_at"]
    )
    op.create_index(
        "ix_snapshot_account_date",
        "spending_snapshots",
        ["account_id", "spending_date"],
    )
    op.create_index(
        "uq_snapshot_daily_final",
        "spending_snapshots",
        ["account_id", "spending_date"],
        unique=True,
        sqlite_where=sa.text("snapshot_type = 'DAILY_FINAL'"),
        postgresql_where=sa.text("snapshot_type = 'DAILY_FINAL'"),
    )


def downgrade():
    op.drop_index("uq_snapshot_daily_final", table_name="spending_snapshots")
    op.drop_index("ix_snapshot_account_date", table_name="spending_snapshots")
    op.drop_index("ix_snapshot_account_at", table_name="spending_snapshots")
    op.drop_table("spending_snapshots")
    op.drop_index("ix_spending_date", table_name="spending_records")
    op.drop_table("spending_records")
    op.drop_index("ix_accounts_invoice", table_name="accounts")
    op.drop_index("ix_accounts_customer", table_name="accounts")
    op.drop_index("ix_accounts_batch", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("invoice_entities")
    op.drop_table("customers")
    op.drop_table("batches")
    sa.Enum(name="snapshottype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="accountstatus").drop(op.get_bind(), checkfirst=True)
