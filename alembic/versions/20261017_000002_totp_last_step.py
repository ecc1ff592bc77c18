"""Remember the last accepted TOTP time step per user.

Revision ID: 20261017_000002
Revises: 20261017_000001
Create Date: 2026-10-17 00:00:02
"""

from alembic import op  # type: ignore[attr-defined]
import sqlalchemy as sa

revision = "20261017_000002"
down_revision = "20261017_000001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("users") as batch:
        batch.add_column(sa.Column("totp_last_step", sa.Integer(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("users") as batch:
        batch.drop_column("totp_last_step")
