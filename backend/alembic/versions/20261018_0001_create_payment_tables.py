"""Create users, deliveries, pending transactions, processing locks and ledger.

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(200), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("session_token_hash", sa.String(64), nullable=True),
        sa.Column("balance", sa.Numeric(20, 2), nullable=False, server_default="0"),
        sa.Column("balance_updated_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("account_level", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("upgraded_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_session_token_hash", "users", ["session_token_hash"], unique=True)

    op.create_table(
        "deliveries",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("price", sa.Numeric(20, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_deliveries_user_id", "deliveries", ["user_id"])
    op.create_index("ix_deliveries_status", "deliveries", ["status"])

    op.create_table(
        "pending_transactions",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("provider_ref", sa.String(128), nullable=True),
        sa.Column("nonce", sa.String(32), nullable=False),
        sa.Column("auth_tag", sa.String(32), nullable=False),
        sa.Column("ciphertext", sa.Text(), nullable=False),
        sa.Column("digest", sa.String(64), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_pending_transactions_provider_ref", "pending_transactions", ["provider_ref"], unique=True)
    op.create_index("ix_pending_transactions_created_at", "pending_transactions", ["created_at"])

    op.create_table(
        "processing_locks",
        sa.Column("transaction_id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("locked_at", sa.TIMESTAMP(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("uid", sa.String(36), nullable=False),
        sa.Column("transaction_id", sa.String(36), nullable=False, unique=True),
        sa.Column("direction", sa.Enum("CREDIT", "DEBIT", name="ledgerdirection"), nullable=False),
        sa.Column("amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_ledger_entries_uid", "ledger_entries", ["uid"])
    op.create_index("ix_ledger_entries_timestamp", "ledger_entries", ["timestamp"])


def downgrade() -> None:
    op.drop_table("ledger_entries")
    sa.Enum(name="ledgerdirection").drop(op.get_bind(), checkfirst=True)
    op.drop_table("processing_locks")
    op.drop_table("pending_transactions")
    op.drop_table("deliveries")
    op.drop_table("users")
