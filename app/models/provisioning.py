from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionType(str, Enum):
    RENEWAL = "renewal"
    ACCOUNT_CREATION = "account_creation"


class AccountOwner(Base):
    """
    Commission recipient.

    `owner_username` is the owner tag the subscriber backend stores on
    accounts, which lets us attribute a subscriber to an owner.
    """

    __tablename__ = "account_owners"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    owner_username: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    # Percentage, e.g. 10.5 for 10.5%
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("10.00")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class HotspotLocation(Base):
    """A hotspot site with optional paid account-creation pricing."""

    __tablename__ = "hotspot_locations"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    owner_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("account_owners.id", ondelete="SET NULL")
    )
    default_owner_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("account_owners.id", ondelete="SET NULL")
    )

    account_creation_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    account_creation_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00")
    )
    account_creation_description: Mapped[Optional[str]] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def commission_owner_id(self) -> Optional[UUID]:
        return self.owner_id or self.default_owner_id


class Customer(Base):
    """
    Local shadow of a subscriber, used for commission attribution.
    Never authoritative over the subscriber backend.
    """

    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    account_owner_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("account_owners.id", ondelete="SET NULL"), index=True
    )
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    last_service_plan_id: Mapped[Optional[int]] = mapped_column(Integer)
    last_service_plan_name: Mapped[Optional[str]] = mapped_column(String(255))
    last_renewal_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Login PIN generated for accounts created on the customer's behalf.
    wifi_pin: Mapped[Optional[str]] = mapped_column(String(20))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class RenewalTransaction(Base):
    """
    Ledger row, one per payment reference.

    Inserting the row in `processing` state is the claim on the reference;
    the unique constraint on `paystack_reference` is the only lock.
    """

    __tablename__ = "renewal_transactions"
    __table_args__ = (UniqueConstraint("paystack_reference"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    paystack_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PROCESSING.value, index=True
    )
    transaction_type: Mapped[str] = mapped_column(
        String(30), default=TransactionType.RENEWAL.value
    )

    username: Mapped[str] = mapped_column(String(100), index=True)
    customer_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("customers.id", ondelete="SET NULL")
    )
    account_owner_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("account_owners.id", ondelete="SET NULL"), index=True
    )
    owner_attributed: Mapped[bool] = mapped_column(Boolean, default=False)

    service_plan_id: Mapped[Optional[int]] = mapped_column(Integer)
    service_plan_name: Mapped[Optional[str]] = mapped_column(String(255))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    commission_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )

    renewal_period_days: Mapped[Optional[int]] = mapped_column(Integer)
    renewal_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    renewal_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    payment_method: Mapped[Optional[str]] = mapped_column(String(50))
    customer_location: Mapped[Optional[str]] = mapped_column(String(255))
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    # Account-creation payments buy exactly one registration.
    registration_consumed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
