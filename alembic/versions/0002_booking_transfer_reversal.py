"""booking transfer reversal id

Revision ID: 0002_booking_transfer_reversal
Revises: 0001_initial
Create Date: 2026-10-17

"""

from alembic import op
import sqlalchemy as sa

revision = "0002_booking_transfer_reversal"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("bookings", sa.Column("transfer_reversal_id", sa.String(length=255), nullable=True))
    op.create_unique_constraint("uq_bookings_transfer_reversal_id", "bookings", ["transfer_reversal_id"])


def downgrade() -> None:
    op.drop_constraint("uq_bookings_transfer_reversal_id", "bookings", type_="unique")
    op.drop_column("bookings", "transfer_reversal_id")
