"""Idempotency records table.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

One row per (scope, token) idempotency key. The primary key is what makes a
claim atomic: INSERT ... ON CONFLICT DO NOTHING lets exactly one concurrent
claimer win. The two indexes serve the reaper's sweeps.
"""

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create idempotency_records and its sweep indexes."""

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            scope TEXT NOT NULL,
            token TEXT NOT NULL,
            status TEXT NOT NULL
                CHECK (status IN ('claimed', 'completed', 'failed')),
            owner_token TEXT NOT NULL,
            lease_expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            retention_expires_at TIMESTAMPTZ NOT NULL,
            result_payload BYTEA,
            error_payload BYTEA,
            PRIMARY KEY (scope, token)
        )
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_idempotency_records_lease
        ON idempotency_records (status, lease_expires_at)
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_idempotency_records_retention
        ON idempotency_records (retention_expires_at)
        """
    )


def downgrade() -> None:
    """Drop idempotency_records."""
    op.execute("DROP TABLE IF EXISTS idempotency_records")
