"""Baseline: approval ledger and authorisation records

Revision ID: 3c1d9e7a52f0
Revises:
Create Date: 2026-10-19 00:00:00.000000

- consumed_approval_claims: one row per approval claim that has been used,
  keyed by a digest of the claim's key id and signature.
- authorisation_records: current approval state per entity, guarded by an
  optimistic version column.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3c1d9e7a52f0"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "consumed_approval_claims",
        sa.Column("claim_digest", sa.Text, primary_key=True),
        sa.Column("entity_id", sa.Text, nullable=False),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("consumed_at_utc", sa.Text, nullable=False),
    )
    op.create_index(
        "idx_consumed_claims_entity", "consumed_approval_claims", ["entity_id"]
    )

    op.create_table(
        "authorisation_records",
        sa.Column("entity_id", sa.Text, primary_key=True),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("record_json", sa.Text, nullable=False),
        sa.Column("updated_at_utc", sa.Text, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("authorisation_records")
    op.drop_index("idx_consumed_claims_entity", table_name="consumed_approval_claims")
    op.drop_table("consumed_approval_claims")
