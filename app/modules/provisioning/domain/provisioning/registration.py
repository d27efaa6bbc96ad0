"""
Caller-driven flows: payment initiation, synchronous verification, renewal
and direct account registration.

Anything that credits a subscriber goes through ProvisioningOrchestrator, so
these paths and the webhook compete for the same ledger claim and only one of
them ever applies the credit.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.provisioning import (
    Customer,
    HotspotLocation,
    PaymentStatus,
    RenewalTransaction,
    TransactionType,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    AlreadyProcessedError,
    FreePlanNoPaymentError,
    HotspotBillingException,
    PaymentVerificationError,
    PermanentValidationError,
    ResourceNotFoundError,
    SubscriberBackendError,
    SubscriberBackendProtocolError,
    TransientInfrastructureError,
)

from .commission import CommissionEngine
from .expiry import same_day_expiry, utcnow
from .ledger import TransactionLedger
from .orchestrator import OUTCOME_ALREADY_PROCESSED, ProvisioningOrchestrator
from .payment_metadata import classify_payment, extract_metadata
from .paystack_client_impl import PaystackClient
from .paystack_shared import (
    KOBO_PER_NAIRA,
    PURPOSE_ACCOUNT_CREATION,
    PURPOSE_COMBINED,
    PaymentIntent,
    logger,
)
from .radius_client_impl import RadiusClient, ServicePlan, SubscriberProfile


@dataclass(frozen=True)
class CustomerInfo:
    first_name: str
    last_name: str
    email: str
    phone: str
    username: Optional[str] = None
    password: Optional[str] = None
    address: str = ""
    city: str = ""
    state: str = ""

    @property
    def login(self) -> str:
        return self.username or self.phone

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_profile(self, srvid: int, password: str) -> SubscriberProfile:
        return SubscriberProfile(
            username=self.login,
            password=password,
            firstname=self.first_name,
            lastname=self.last_name,
            email=self.email,
            srvid=srvid,
            phone=self.phone,
            address=self.address,
            city=self.city,
            state=self.state,
        )


def generate_reference(first_name: str, last_name: str, now_ms: Optional[int] = None) -> str:
    """ACCT_<epoch-ms>_<First>_<Last>, whitespace collapsed to underscores."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    first = re.sub(r"\s+", "_", first_name.strip())
    last = re.sub(r"\s+", "_", last_name.strip())
    return f"ACCT_{stamp}_{first}_{last}"


def to_kobo(amount: Decimal) -> int:
    return int((amount * KOBO_PER_NAIRA).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _field(display_name: str, variable_name: str, value: Any) -> dict[str, str]:
    return {"display_name": display_name, "variable_name": variable_name, "value": str(value)}


class RegistrationService:
    def __init__(
        self,
        db: AsyncSession,
        paystack: Optional[PaystackClient] = None,
        radius: Optional[RadiusClient] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self._paystack = paystack
        self._radius = radius
        self._now = now

    @property
    def paystack(self) -> PaystackClient:
        if self._paystack is None:
            self._paystack = PaystackClient()
        return self._paystack

    @property
    def radius(self) -> RadiusClient:
        if self._radius is None:
            self._radius = RadiusClient()
        return self._radius

    async def _location(self, location_id: str) -> HotspotLocation:
        location = await self.db.get(HotspotLocation, location_id)
        if location is None or not location.is_active:
            raise ResourceNotFoundError("Location not found", details={"location_id": location_id})
        return location

    async def initiate_account_payment(
        self,
        location_id: str,
        customer: CustomerInfo,
        service_plan_id: Optional[int] = None,
        callback_url: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Start a Paystack checkout for account creation, optionally bundled with a plan.

        Zero-cost plans are rejected with FREE_PLAN_NO_PAYMENT before the
        gateway is contacted.
        """
        location = await self._location(location_id)
        if not location.account_creation_enabled:
            raise PermanentValidationError(
                "Account creation pricing is not enabled for this location",
                code="account_creation_disabled",
            )
        fee = Decimal(str(location.account_creation_price or 0))
        if fee <= 0:
            raise PermanentValidationError("Invalid pricing configuration", code="invalid_pricing")

        plan: Optional[ServicePlan] = None
        if service_plan_id is not None:
            plan = await self.radius.get_plan(service_plan_id)
            if plan.total_price <= 0:
                raise FreePlanNoPaymentError(
                    details={
                        "service_plan": {
                            "id": plan.srvid,
                            "name": plan.srvname,
                            "price": str(plan.total_price),
                        }
                    }
                )

        plan_price = plan.total_price if plan else Decimal("0")
        total = fee + plan_price
        reference = generate_reference(customer.first_name, customer.last_name)
        purpose = PURPOSE_COMBINED if plan else PURPOSE_ACCOUNT_CREATION
        location_name = location.display_name or location.name

        custom_fields = [
            _field("Purpose", "purpose", purpose),
            _field("Location", "location", location_name),
            _field("Location ID", "location_id", location.id),
            _field("Customer Name", "customer_name", customer.full_name),
            _field("Phone", "phone", customer.phone),
            _field("Username", "username", customer.login),
            _field("Email", "email", customer.email),
            _field("Account Creation Fee", "account_creation_fee", fee),
        ]
        if plan:
            custom_fields += [
                _field("Service Plan ID", "srvid", plan.srvid),
                _field("Service Plan", "service_plan_name", plan.srvname),
                _field("Service Plan Price", "service_plan_price", plan_price),
                _field("Duration (days)", "timeunitexp", plan.timeunitexp),
                _field("Traffic Units", "trafficunitcomb", plan.trafficunitcomb),
                _field("Limit Type", "limitcomb", plan.limitcomb),
            ]
        metadata = {
            "custom_fields": custom_fields,
            "purpose": purpose,
            "location_id": location.id,
            "username": customer.login,
        }

        data = await self.paystack.initialize_transaction(
            email=customer.email,
            amount_kobo=to_kobo(total),
            reference=reference,
            metadata=metadata,
            callback_url=callback_url,
            channels=get_settings().PAYMENT_CHANNELS,
        )
        logger.info(
            "account_payment_initiated",
            reference=reference,
            location_id=location.id,
            srvid=plan.srvid if plan else None,
            amount=str(total),
        )
        return {
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "reference": data.get("reference") or reference,
            "amount": str(total),
            "breakdown": {
                "account_creation": {
                    "amount": str(fee),
                    "description": location.account_creation_description,
                },
                "service_plan": (
                    {
                        "id": plan.srvid,
                        "name": plan.srvname,
                        "amount": str(plan_price),
                        "duration_days": plan.timeunitexp,
                    }
                    if plan
                    else None
                ),
            },
        }

    async def verify_account_payment(
        self, reference: str, customer: Optional[CustomerInfo] = None
    ) -> dict[str, Any]:
        """Synchronous counterpart of the webhook for account-creation payments."""
        event = await self.paystack.require_successful(reference)
        settings = get_settings()
        classified = classify_payment(
            event.metadata,
            default_days=settings.DEFAULT_PLAN_DAYS,
            customer_email=event.customer_email,
        )
        meta = classified.metadata
        if classified.intent is PaymentIntent.RENEWAL:
            raise PermanentValidationError(
                "Reference is not an account creation payment", details={"reference": reference}
            )
        expected = meta.bundle_total
        if expected <= 0 or event.amount != expected:
            raise PermanentValidationError(
                "Payment amount mismatch",
                code="amount_mismatch",
                details={"expected": str(expected), "received": str(event.amount)},
            )

        profile = None
        if customer is not None and customer.password and meta.srvid is not None:
            profile = customer.to_profile(meta.srvid, customer.password)

        orchestrator = ProvisioningOrchestrator(self.db, self.radius, now=self._now)
        try:
            outcome = await orchestrator.process(event, classified, profile=profile)
        except AlreadyProcessedError as exc:
            return {
                "status": OUTCOME_ALREADY_PROCESSED,
                "reference": reference,
                "payment_status": exc.payment_status,
            }
        result = outcome.to_dict()
        result["amount"] = str(event.amount)
        result["can_proceed_with_registration"] = outcome.status != "failed"
        if outcome.wifi_pin:
            result["wifi_pin"] = outcome.wifi_pin
        return result

    async def renew(
        self,
        reference: str,
        username: str,
        srvid: int,
        timeunitexp: Optional[int] = None,
        trafficunitcomb: int = 0,
        limitcomb: int = 0,
    ) -> dict[str, Any]:
        """
        Verify a renewal payment and credit it through the orchestrator.

        Any expiry the caller believes the subscriber has is ignored: the
        backend is always re-read.
        """
        event = await self.paystack.require_successful(reference)
        settings = get_settings()
        paid_for = extract_metadata(event.metadata, default_days=settings.DEFAULT_PLAN_DAYS)
        if paid_for.purpose in (PURPOSE_ACCOUNT_CREATION, PURPOSE_COMBINED):
            raise PermanentValidationError(
                "Reference is an account creation payment", details={"reference": reference}
            )
        if paid_for.username and paid_for.username != username:
            raise PermanentValidationError(
                "Payment reference belongs to a different subscriber",
                details={"reference": reference},
            )

        classified = classify_payment(
            {
                "username": username,
                "srvid": srvid,
                "timeunitexp": timeunitexp,
                "trafficunitcomb": trafficunitcomb,
                "limitcomb": limitcomb,
                "location_id": paid_for.location_id,
                "location": paid_for.location,
                "email": event.customer_email,
            },
            default_days=settings.DEFAULT_PLAN_DAYS,
        )
        orchestrator = ProvisioningOrchestrator(self.db, self.radius, now=self._now)
        try:
            outcome = await orchestrator.process(event, classified)
        except AlreadyProcessedError as exc:
            return {
                "status": OUTCOME_ALREADY_PROCESSED,
                "reference": reference,
                "payment_status": exc.payment_status,
            }
        return outcome.to_dict()

    async def _find_recorded(self, reference: str) -> Optional[RenewalTransaction]:
        try:
            return await TransactionLedger(self.db).find(reference)
        except SQLAlchemyError as exc:
            raise TransientInfrastructureError(
                "Ledger unavailable", {"reference": reference}
            ) from exc

    async def _settled_account_creation(self, reference: str, username: str) -> RenewalTransaction:
        """
        The ledger row of a successful account-creation payment made for `username`.

        If the webhook has not landed yet, the payment is verified and recorded
        here through the same ledger claim.
        """
        row = await self._find_recorded(reference)
        if row is None:
            await self.verify_account_payment(reference)
            row = await self._find_recorded(reference)

        if row is None or row.payment_status != PaymentStatus.SUCCESS.value:
            raise PaymentVerificationError(
                "Payment has not been recorded as successful",
                details={
                    "reference": reference,
                    "payment_status": row.payment_status if row else None,
                },
            )
        if row.transaction_type != TransactionType.ACCOUNT_CREATION.value:
            raise PermanentValidationError(
                "Reference is not an account creation payment", details={"reference": reference}
            )
        if row.username != username:
            raise PermanentValidationError(
                "Payment reference belongs to a different subscriber",
                details={"reference": reference},
            )
        return row

    async def register_user(
        self,
        customer: CustomerInfo,
        srvid: int,
        payment_reference: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create the subscriber account directly with a same-day expiry.

        Used for free plans (no reference) and after an account-creation
        payment. A paid reference must be recorded as a successful account
        creation for this username, and buys exactly one account.
        """
        if not customer.password:
            raise PermanentValidationError("Password is required")
        paid: Optional[RenewalTransaction] = None
        if payment_reference:
            paid = await self._settled_account_creation(payment_reference, customer.login)

        plan = await self.radius.get_plan(srvid)
        if await self.radius.get_account(customer.login) is not None:
            raise HotspotBillingException(
                "Username already registered",
                code="username_taken",
                status_code=409,
                details={"username": customer.login},
            )

        ledger = TransactionLedger(self.db)
        if paid is not None and not await ledger.consume_for_registration(paid, self._now()):
            raise HotspotBillingException(
                "Payment has already been used to register an account",
                code="payment_already_used",
                status_code=409,
                details={"reference": payment_reference},
            )

        expiry = same_day_expiry(self._now())
        try:
            await self.radius.create_account(
                customer.to_profile(plan.srvid, customer.password), expiry
            )
        except SubscriberBackendProtocolError:
            # Unreadable answer: the account may exist, so the payment stays spent.
            raise
        except SubscriberBackendError:
            if paid is not None:
                await ledger.restore_for_registration(paid)
            raise

        await CommissionEngine(self.db).upsert_customer(
            customer.login,
            first_name=customer.first_name,
            last_name=customer.last_name,
            email=customer.email,
            phone=customer.phone,
            service_plan_id=plan.srvid,
            service_plan_name=plan.srvname,
        )
        await self.db.commit()
        logger.info(
            "subscriber_registered",
            username=customer.login,
            srvid=plan.srvid,
            paid=paid is not None,
        )
        return {
            "status": "registered",
            "username": customer.login,
            "srvid": plan.srvid,
            "expiry": expiry.isoformat(),
        }

    async def get_wifi_pin(self, reference: str, phone: str) -> dict[str, Any]:
        """Login PIN of an account created on the payer's behalf, for that payer only."""
        row = await self._find_recorded(reference)
        customer = None
        if row is not None and row.payment_status == PaymentStatus.SUCCESS.value and row.customer_id:
            customer = await self.db.get(Customer, row.customer_id)
        if customer is None or not customer.wifi_pin or phone not in (customer.phone, customer.username):
            raise ResourceNotFoundError(
                "Customer not found or PIN not available", details={"reference": reference}
            )
        return {"username": customer.username, "pin": customer.wifi_pin}

    async def check_user(self, username: str) -> dict[str, Any]:
        account = await self.radius.get_account(username)
        if account is None:
            return {"exists": False, "username": username}
        return {
            "exists": True,
            "username": username,
            "enabled": account.enabled,
            "srvid": account.srvid,
            "expiry": account.expiry.isoformat() if account.expiry else None,
            "dlbytes": account.dlbytes,
            "ulbytes": account.ulbytes,
            "totalbytes": account.totalbytes,
            "onlinetime": account.onlinetime,
        }

    async def get_plan(self, srvid: int) -> dict[str, Any]:
        return (await self.radius.get_plan(srvid)).to_dict()

    async def list_plans(self) -> list[dict[str, Any]]:
        return [plan.to_dict() for plan in await self.radius.list_plans()]

    async def owner_commission_summary(self, owner_id: UUID) -> dict[str, Any]:
        return await CommissionEngine(self.db).owner_summary(owner_id)
