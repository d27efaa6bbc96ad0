"""Create provisioning ledger, owners, customers and locations.

Revision ID: a1f0c2d9e7b4
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1f0c2d9e7b4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "account_owners",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_username", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column(
            "commission_rate",
            sa.Numeric(precision=5, scale=2),
            nullable=False,
            server_default="10.00",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_account_owners")),
    )
    op.create_index(
        op.f("ix_account_owners_owner_username"),
        "account_owners",
        ["owner_username"],
        unique=True,
    )

    op.create_table(
        "hotspot_locations",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("owner_id", sa.UUID(), nullable=True),
        sa.Column("default_owner_id", sa.UUID(), nullable=True),
        sa.Column(
            "account_creation_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "account_creation_price",
            sa.Numeric(precision=10, scale=2),
            nullable=False,
            server_default="0.00",
        ),
        sa.Column("account_creation_description", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["account_owners.id"],
            ondelete="SET NULL",
            name=op.f("fk_hotspot_locations_owner_id_account_owners"),
        ),
        sa.ForeignKeyConstraint(
            ["default_owner_id"],
            ["account_owners.id"],
            ondelete="SET NULL",
            name=op.f("fk_hotspot_locations_default_owner_id_account_owners"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_hotspot_locations")),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("account_owner_id", sa.UUID(), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("last_service_plan_id", sa.Integer(), nullable=True),
        sa.Column("last_service_plan_name", sa.String(length=255), nullable=True),
        sa.Column("last_renewal_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["account_owner_id"],
            ["account_owners.id"],
            ondelete="SET NULL",
            name=op.f("fk_customers_account_owner_id_account_owners"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_customers")),
    )
    op.create_index(op.f("ix_customers_username"), "customers", ["username"], unique=True)
    op.create_index(
        op.f("ix_customers_account_owner_id"), "customers", ["account_owner_id"], unique=False
    )

    op.create_table(
        "renewal_transactions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("paystack_reference", sa.String(length=255), nullable=False),
        sa.Column(
            "payment_status",
            sa.String(length=20),
            nullable=False,
            server_default="processing",
        ),
        sa.Column(
            "transaction_type",
            sa.String(length=30),
            nullable=False,
            server_default="renewal",
        ),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=True),
        sa.Column("account_owner_id", sa.UUID(), nullable=True),
        sa.Column(
            "owner_attributed", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("service_plan_id", sa.Integer(), nullable=True),
        sa.Column("service_plan_name", sa.String(length=255), nullable=True),
        sa.Column(
            "amount_paid",
            sa.Numeric(precision=12, scale=2),
            nullable=False,
            server_default="0.00",
        ),
        sa.Column(
            "commission_rate",
            sa.Numeric(precision=5, scale=2),
            nullable=False,
            server_default="0.00",
        ),
        sa.Column(
            "commission_amount",
            sa.Numeric(precision=12, scale=2),
            nullable=False,
            server_default="0.00",
        ),
        sa.Column("renewal_period_days", sa.Integer(), nullable=True),
        sa.Column("renewal_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("renewal_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("customer_location", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["customer_id"],
            ["customers.id"],
            ondelete="SET NULL",
            name=op.f("fk_renewal_transactions_customer_id_customers"),
        ),
        sa.ForeignKeyConstraint(
            ["account_owner_id"],
            ["account_owners.id"],
            ondelete="SET NULL",
            name=op.f("fk_renewal_transactions_account_owner_id_account_owners"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_renewal_transactions")),
        # The claim on a payment reference. Never relax this.
        sa.UniqueConstraint(
            "paystack_reference", name=op.f("uq_renewal_transactions_paystack_reference")
        ),
    )
    op.create_index(
        op.f("ix_renewal_transactions_payment_status"),
        "renewal_transactions",
        ["payment_status"],
        unique=False,
    )
    op.create_index(
        op.f("ix_renewal_transactions_username"),
        "renewal_transactions",
        ["username"],
        unique=False,
    )
    op.create_index(
        op.f("ix_renewal_transactions_account_owner_id"),
        "renewal_transactions",
        ["account_owner_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_renewal_transactions_account_owner_id"), table_name="renewal_transactions")
    op.drop_index(op.f("ix_renewal_transactions_username"), table_name="renewal_transactions")
    op.drop_index(op.f("ix_renewal_transactions_payment_status"), table_name="renewal_transactions")
    op.drop_table("renewal_transactions")
    op.drop_index(op.f("ix_customers_account_owner_id"), table_name="customers")
    op.drop_index(op.f("ix_customers_username"), table_name="customers")
    op.drop_table("customers")
    op.drop_table("hotspot_locations")
    op.drop_index(op.f("ix_account_owners_owner_username"), table_name="account_owners")
    op.drop_table("account_owners")
