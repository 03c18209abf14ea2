"""add hot-path indexes for the sweeper and outbox

Revision ID: 0003_hot_path_indexes
Revises: 0002_ledger_immutability
Create Date: 2026-10-18
"""

from alembic import op


revision = "0003_hot_path_indexes"
down_revision = "0002_ledger_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payments_status_created_at",
        "payments",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_payment_transactions_payment_id_type",
        "payment_transactions",
        ["payment_id", "type"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_payment_transactions_payment_id_type", table_name="payment_transactions")
    op.drop_index("ix_payments_status_created_at", table_name="payments")
