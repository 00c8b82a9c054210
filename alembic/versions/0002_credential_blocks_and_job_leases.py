"""Add credential blocking columns and job leases

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-08
"""

from alembic import op
import sqlalchemy as sa


revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("provider_credentials", sa.Column("blocked_until", sa.DateTime(), nullable=True))
    op.add_column("provider_credentials", sa.Column("block_reason", sa.String(length=200), nullable=True))

    op.create_table("job_leases",
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("holder", sa.String(length=100), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("name")
    )


def downgrade() -> None:
    op.drop_table("job_leases")
    with op.batch_alter_table("provider_credentials") as batch_op:
        batch_op.drop_column("block_reason")
        batch_op.drop_column("blocked_until")
