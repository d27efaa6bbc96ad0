"""Commission computation and owner attribution."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.provisioning import (
    AccountOwner,
    Customer,
    HotspotLocation,
    PaymentStatus,
    RenewalTransaction,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ResourceNotFoundError

from .paystack_shared import logger

CENT = Decimal("0.01")


def compute_commission(amount: Decimal | float | int, rate: Decimal | float | int) -> Decimal:
    """round(amount * rate / 100, 2), halves rounded away from zero."""
    value = Decimal(str(amount)) * Decimal(str(rate)) / Decimal(100)
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionAssignment:
    rate: Decimal
    amount: Decimal
    account_owner_id: Optional[UUID]
    owner_attributed: bool
    customer_id: Optional[UUID]

    def as_ledger_fields(self) -> dict[str, Any]:
        return {
            "commission_rate": self.rate,
            "commission_amount": self.amount,
            "account_owner_id": self.account_owner_id,
            "owner_attributed": self.owner_attributed,
            "customer_id": self.customer_id,
        }


class CommissionEngine:
    def __init__(self, db: AsyncSession, default_rate: Optional[float] = None):
        self.db = db
        self.default_rate = Decimal(
            str(default_rate if default_rate is not None else get_settings().DEFAULT_COMMISSION_RATE)
        )

    async def upsert_customer(
        self,
        username: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        service_plan_id: Optional[int] = None,
        service_plan_name: Optional[str] = None,
        wifi_pin: Optional[str] = None,
    ) -> Customer:
        """Opportunistic local shadow of the subscriber. Blank values never overwrite."""
        result = await self.db.execute(select(Customer).where(Customer.username == username))
        customer = result.scalar_one_or_none()
        if customer is None:
            customer = Customer(username=username)
            self.db.add(customer)

        updates = {
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "phone": phone,
            "last_service_plan_id": service_plan_id,
            "last_service_plan_name": service_plan_name,
            "wifi_pin": wifi_pin,
        }
        for key, value in updates.items():
            if value not in (None, ""):
                setattr(customer, key, value)
        await self.db.flush()
        return customer

    async def attribute_owner(self, customer: Customer, owner_tag: Optional[str]) -> None:
        """Adopt the backend's owner tag when it names a known, active owner."""
        if not owner_tag:
            return
        result = await self.db.execute(
            select(AccountOwner).where(
                AccountOwner.owner_username == owner_tag,
                AccountOwner.is_active.is_(True),
            )
        )
        owner = result.scalar_one_or_none()
        if owner is None:
            logger.info("commission_owner_tag_unknown", username=customer.username, owner_tag=owner_tag)
            return
        if customer.account_owner_id != owner.id:
            logger.info(
                "commission_owner_attributed",
                username=customer.username,
                owner_id=str(owner.id),
            )
            customer.account_owner_id = owner.id
            await self.db.flush()

    async def _owner(self, owner_id: Optional[UUID]) -> Optional[AccountOwner]:
        if owner_id is None:
            return None
        owner = await self.db.get(AccountOwner, owner_id)
        if owner is None or not owner.is_active:
            return None
        return owner

    async def _location_owner(self, location_id: Optional[str]) -> Optional[AccountOwner]:
        if not location_id:
            return None
        location = await self.db.get(HotspotLocation, location_id)
        if location is None:
            return None
        return await self._owner(location.commission_owner_id)

    async def assign(
        self,
        amount: Decimal,
        customer: Optional[Customer] = None,
        location_id: Optional[str] = None,
        owner_tag: Optional[str] = None,
    ) -> CommissionAssignment:
        """
        Resolve the rate and compute the commission for one payment.

        Owner attribution from `owner_tag` is applied to the customer first, so
        the figure returned is always computed against the up-to-date owner.
        """
        if customer is not None:
            await self.attribute_owner(customer, owner_tag)

        owner = await self._owner(customer.account_owner_id if customer else None)
        if owner is None:
            owner = await self._location_owner(location_id)

        if owner is not None:
            rate = Decimal(str(owner.commission_rate))
            assignment = CommissionAssignment(
                rate=rate,
                amount=compute_commission(amount, rate),
                account_owner_id=owner.id,
                owner_attributed=True,
                customer_id=customer.id if customer else None,
            )
        else:
            # Bookkeeping only: no payout is computed for unattributed rows.
            assignment = CommissionAssignment(
                rate=self.default_rate,
                amount=compute_commission(amount, self.default_rate),
                account_owner_id=None,
                owner_attributed=False,
                customer_id=customer.id if customer else None,
            )

        logger.info(
            "commission_assigned",
            username=customer.username if customer else None,
            rate=str(assignment.rate),
            amount=str(assignment.amount),
            owner_attributed=assignment.owner_attributed,
        )
        return assignment

    async def owner_summary(self, owner_id: UUID) -> dict[str, Any]:
        owner = await self.db.get(AccountOwner, owner_id)
        if owner is None:
            raise ResourceNotFoundError("Account owner not found", details={"owner_id": str(owner_id)})

        rows = await self.db.execute(
            select(
                RenewalTransaction.payment_status,
                func.count(RenewalTransaction.id),
                func.coalesce(func.sum(RenewalTransaction.commission_amount), 0),
            )
            .where(
                RenewalTransaction.account_owner_id == owner_id,
                RenewalTransaction.owner_attributed.is_(True),
            )
            .group_by(RenewalTransaction.payment_status)
        )
        totals = {status: (count, Decimal(str(total))) for status, count, total in rows.all()}
        completed = totals.get(PaymentStatus.SUCCESS.value, (0, Decimal("0")))[1]
        pending = totals.get(PaymentStatus.PROCESSING.value, (0, Decimal("0")))[1]
        return {
            "owner_id": str(owner.id),
            "owner_username": owner.owner_username,
            "commission_rate": str(owner.commission_rate),
            "total_commissions": str(completed.quantize(CENT)),
            "completed_amount": str(completed.quantize(CENT)),
            "pending_amount": str(pending.quantize(CENT)),
            "total_transactions": sum(count for count, _ in totals.values()),
        }
