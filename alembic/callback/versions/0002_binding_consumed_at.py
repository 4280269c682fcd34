"""keep settled checkout bindings as consumed

Revision ID: 0002_binding_consumed_at
Revises: 0001_callback
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_binding_consumed_at"
down_revision = "0001_callback"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("checkout_bindings", sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("checkout_bindings", "consumed_at")
