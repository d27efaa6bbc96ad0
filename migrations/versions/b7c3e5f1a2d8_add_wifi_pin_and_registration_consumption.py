"""add_wifi_pin_and_registration_consumption

Revision ID: b7c3e5f1a2d8
Revises: a1f0c2d9e7b4
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "b7c3e5f1a2d8"
down_revision: Union[str, Sequence[str], None] = "a1f0c2d9e7b4"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("customers", sa.Column("wifi_pin", sa.String(length=20), nullable=True))
    # Set once a paid account-creation reference has produced an account.
    op.add_column(
        "renewal_transactions",
        sa.Column("registration_consumed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("renewal_transactions", "registration_consumed_at")
    op.drop_column("customers", "wifi_pin")
