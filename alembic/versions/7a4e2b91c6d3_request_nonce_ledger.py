"""Request nonce ledger

Revision ID: 7a4e2b91c6d3
Revises: 3c1d9e7a52f0
Create Date: 2026-10-20 00:00:00.000000

- consumed_request_nonces: one row per verified signed request, keyed by a
  digest of the key id and nonce, kept for the clock skew window.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7a4e2b91c6d3"
down_revision = "3c1d9e7a52f0"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "consumed_request_nonces",
        sa.Column("nonce_digest", sa.Text, primary_key=True),
        sa.Column("key_id", sa.Text, nullable=False),
        sa.Column("consumed_at_utc", sa.Text, nullable=False),
    )
    op.create_index(
        "idx_consumed_nonces_consumed_at", "consumed_request_nonces", ["consumed_at_utc"]
    )


def downgrade() -> None:
    op.drop_index("idx_consumed_nonces_consumed_at", table_name="consumed_request_nonces")
    op.drop_table("consumed_request_nonces")
