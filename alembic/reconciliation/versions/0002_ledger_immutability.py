"""append-only payment_transactions

Revision ID: 0002_ledger_immutability
Revises: 0001_reconciliation
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_reconciliation"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payment_transaction_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_OP = 'UPDATE'
               AND (to_jsonb(NEW) - 'retry_count') = (to_jsonb(OLD) - 'retry_count') THEN
                RETURN NEW;
            END IF;
            RAISE EXCEPTION 'payment_transactions is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payment_transactions_immutable
        BEFORE UPDATE OR DELETE ON payment_transactions
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payment_transaction_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payment_transactions_immutable ON payment_transactions;")
    op.execute("DROP FUNCTION IF EXISTS prevent_payment_transaction_mutation();")
