"""
Provisioning orchestrator.

Drives one confirmed payment through

    Claimed -> {Provisioned(minimal) -> CreditApplied(full)} -> Finalized

exactly once per payment reference. Rules that keep subscribers from being
credited twice:

- Nothing touches the subscriber backend before the ledger claim is won.
- A transient failure before the first backend mutation releases the claim so
  the gateway's redelivery can try again.
- Once a mutation has been attempted, the row is finalized (`failed` if need
  be) and the delivery is acknowledged. No in-process retries.
- New accounts in a combined payment are created with a short placeholder
  window and then topped up with the full plan from a fresh re-read.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.provisioning import Customer, PaymentStatus, RenewalTransaction, TransactionType
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    HotspotBillingException,
    PartialFailureError,
    SubscriberBackendError,
    SubscriberNotFoundError,
    TransientInfrastructureError,
)
from app.shared.core.ops_metrics import PROVISIONING_OUTCOMES_TOTAL

from .commission import CommissionEngine
from .expiry import (
    compute_new_expiry,
    credit_days,
    placeholder_expiry,
    traffic_credit_bytes,
    utcnow,
)
from .ledger import TransactionLedger
from .payment_metadata import ClassifiedPayment, PaymentMetadata
from .paystack_client_impl import PaymentEvent
from .paystack_shared import COMBINED_PLAN_NAME_SUFFIX, PaymentIntent, logger
from .radius_client_impl import RadiusClient, SubscriberAccount, SubscriberProfile

OUTCOME_PROCESSED = "processed"
OUTCOME_FAILED = "failed"
OUTCOME_ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class ProvisioningOutcome:
    reference: str
    status: str
    intent: PaymentIntent
    username: str
    new_expiry: Optional[datetime] = None
    transaction_id: Optional[UUID] = None
    failure_reason: Optional[str] = None
    # Only for the paying customer; never part of webhook responses.
    wifi_pin: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reference": self.reference,
            "intent": self.intent.value,
            "username": self.username,
            "new_expiry": self.new_expiry.isoformat() if self.new_expiry else None,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class _CreditApplied:
    expiry: datetime
    days: int
    totalbytes: int


class _Progress:
    """Tracks whether the backend may already have been changed."""

    def __init__(self) -> None:
        self.mutation_attempted = False


def generate_pin(length: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class ProvisioningOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        radius: RadiusClient,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.radius = radius
        self.ledger = TransactionLedger(db)
        self.commissions = CommissionEngine(db)
        self._now = now
        self.placeholder_window_minutes = get_settings().ACCOUNT_PLACEHOLDER_WINDOW_MINUTES

    async def process(
        self,
        event: PaymentEvent,
        classified: ClassifiedPayment,
        profile: Optional[SubscriberProfile] = None,
    ) -> ProvisioningOutcome:
        """
        Satisfy one payment event.

        Raises AlreadyProcessedError if another unit of work owns the reference
        and TransientInfrastructureError when nothing was changed and the
        caller should redeliver. Every other failure is recorded on the ledger
        row and returned as a `failed` outcome.
        """
        meta = classified.metadata
        intent = classified.intent
        row = await self.ledger.claim(event.reference, **self._provisional_fields(event, classified))

        progress = _Progress()
        log = logger.bind(reference=event.reference, intent=intent.value, username=meta.username)
        try:
            if intent is PaymentIntent.RENEWAL:
                return await self._renew(row, event, meta, progress)
            if intent is PaymentIntent.COMBINED:
                return await self._create_and_credit(row, event, meta, profile, progress)
            return await self._record_account_creation(row, event, meta)
        except TransientInfrastructureError as exc:
            if not progress.mutation_attempted:
                log.warning("provisioning_transient_failure_claim_released", error=exc.message)
                await self.ledger.release(row)
                PROVISIONING_OUTCOMES_TOTAL.labels(intent=intent.value, status="released").inc()
                raise
            return await self._fail(row, intent, meta, exc.message, progress)
        except HotspotBillingException as exc:
            return await self._fail(row, intent, meta, exc.message, progress)
        except SQLAlchemyError as exc:
            log.error("provisioning_ledger_error", error=str(exc))
            if not await self._recover_session(row):
                # Row stays `processing`; redeliveries observe it as already claimed.
                if not progress.mutation_attempted:
                    raise TransientInfrastructureError(
                        "Ledger unavailable during provisioning", {"reference": event.reference}
                    ) from exc
                PROVISIONING_OUTCOMES_TOTAL.labels(intent=intent.value, status=PaymentStatus.FAILED.value).inc()
                return ProvisioningOutcome(
                    reference=event.reference,
                    status=OUTCOME_FAILED,
                    intent=intent,
                    username=meta.username,
                    failure_reason=f"ledger error: {exc}",
                )
            if not progress.mutation_attempted:
                await self.ledger.release(row)
                raise TransientInfrastructureError(
                    "Ledger unavailable during provisioning", {"reference": event.reference}
                ) from exc
            return await self._fail(row, intent, meta, f"ledger error: {exc}", progress)
        except Exception as exc:
            log.exception("provisioning_unexpected_error")
            return await self._fail(row, intent, meta, f"unexpected error: {exc}", progress)

    def _provisional_fields(
        self, event: PaymentEvent, classified: ClassifiedPayment
    ) -> dict[str, Any]:
        meta = classified.metadata
        is_creation = classified.intent is PaymentIntent.ACCOUNT_CREATION_ONLY
        plan_name = meta.service_plan_name or (f"Service Plan {meta.srvid}" if meta.srvid else None)
        if classified.intent is PaymentIntent.COMBINED and plan_name:
            plan_name = f"{plan_name}{COMBINED_PLAN_NAME_SUFFIX}"
        return {
            "transaction_type": (
                TransactionType.ACCOUNT_CREATION.value if is_creation else TransactionType.RENEWAL.value
            ),
            "username": meta.username,
            "service_plan_id": 0 if is_creation else meta.srvid,
            "service_plan_name": "Account Creation" if is_creation else plan_name,
            "amount_paid": event.amount,
            "renewal_period_days": 0 if is_creation else meta.timeunitexp,
            "customer_location": meta.location or meta.location_id,
            "payment_method": event.channel,
        }

    async def _fail(
        self,
        row: RenewalTransaction,
        intent: PaymentIntent,
        meta: PaymentMetadata,
        reason: str,
        progress: _Progress,
    ) -> ProvisioningOutcome:
        reference, transaction_id = row.paystack_reference, row.id
        logger.error(
            "provisioning_failed",
            reference=reference,
            intent=intent.value,
            username=meta.username,
            reason=reason,
            mutation_attempted=progress.mutation_attempted,
        )
        await self.ledger.finalize(row, PaymentStatus.FAILED, failure_reason=reason[:2000])
        PROVISIONING_OUTCOMES_TOTAL.labels(intent=intent.value, status=PaymentStatus.FAILED.value).inc()
        return ProvisioningOutcome(
            reference=reference,
            status=OUTCOME_FAILED,
            intent=intent,
            username=meta.username,
            transaction_id=transaction_id,
            failure_reason=reason,
        )

    async def _succeed(
        self,
        row: RenewalTransaction,
        intent: PaymentIntent,
        meta: PaymentMetadata,
        new_expiry: Optional[datetime],
        wifi_pin: Optional[str] = None,
        **fields: Any,
    ) -> ProvisioningOutcome:
        reference, transaction_id = row.paystack_reference, row.id
        await self.ledger.finalize(row, PaymentStatus.SUCCESS, **fields)
        PROVISIONING_OUTCOMES_TOTAL.labels(intent=intent.value, status=PaymentStatus.SUCCESS.value).inc()
        return ProvisioningOutcome(
            reference=reference,
            status=OUTCOME_PROCESSED,
            intent=intent,
            username=meta.username,
            new_expiry=new_expiry,
            transaction_id=transaction_id,
            wifi_pin=wifi_pin,
        )

    async def _recover_session(self, row: RenewalTransaction) -> bool:
        """Roll back a broken unit of work and reload the claimed row."""
        try:
            await self.db.rollback()
            await self.db.refresh(row)
        except SQLAlchemyError as exc:
            logger.critical("ledger_session_recovery_failed", error=str(exc))
            return False
        return True

    async def _customer_commission(
        self,
        event: PaymentEvent,
        meta: PaymentMetadata,
        account: Optional[SubscriberAccount],
        wifi_pin: Optional[str] = None,
    ) -> tuple[Customer, dict[str, Any]]:
        first, _, last = (meta.customer_name or "").partition(" ")
        customer = await self.commissions.upsert_customer(
            meta.username,
            first_name=(account.firstname if account else "") or first,
            last_name=(account.lastname if account else "") or last,
            email=meta.customer_email or (account.email if account else None),
            phone=meta.phone or (account.phone if account else None),
            wifi_pin=wifi_pin,
        )
        assignment = await self.commissions.assign(
            event.amount,
            customer=customer,
            location_id=meta.location_id,
            owner_tag=account.owner if account else None,
        )
        return customer, assignment.as_ledger_fields()

    @staticmethod
    def _record_plan(customer: Customer, meta: PaymentMetadata, renewed_at: Optional[datetime]) -> None:
        # Success path only; a failed credit must not look like a renewal.
        if meta.srvid is not None:
            customer.last_service_plan_id = meta.srvid
        if meta.service_plan_name:
            customer.last_service_plan_name = meta.service_plan_name
        if renewed_at is not None:
            customer.last_renewal_date = renewed_at

    async def _apply_plan_credit(
        self,
        meta: PaymentMetadata,
        account: SubscriberAccount,
        now: datetime,
        progress: _Progress,
    ) -> _CreditApplied:
        local_expiry = compute_new_expiry(account.expiry, meta.timeunitexp, now)
        days = credit_days(local_expiry, now)
        totalbytes = traffic_credit_bytes(meta.trafficunitcomb, meta.limitcomb)
        if days == 0:
            logger.warning(
                "provisioning_credit_absorbed_by_lapse",
                username=meta.username,
                current_expiry=account.expiry.isoformat() if account.expiry else None,
                plan_days=meta.timeunitexp,
            )

        progress.mutation_attempted = True
        try:
            credit = await self.radius.add_credit(meta.username, days=days, totalbytes=totalbytes)
        except (SubscriberBackendError, TransientInfrastructureError) as exc:
            raise PartialFailureError(
                f"add_credits failed: {exc.message}",
                {"username": meta.username, "days": days, "totalbytes": totalbytes},
            ) from exc
        # The backend's own confirmation is authoritative when it sends a valid date.
        return _CreditApplied(expiry=credit.expiry or local_expiry, days=days, totalbytes=totalbytes)

    async def _renew(
        self,
        row: RenewalTransaction,
        event: PaymentEvent,
        meta: PaymentMetadata,
        progress: _Progress,
    ) -> ProvisioningOutcome:
        account = await self.radius.get_account(meta.username)
        if account is None:
            raise SubscriberNotFoundError(meta.username)

        now = self._now()
        customer, ledger_fields = await self._customer_commission(event, meta, account)
        applied = await self._apply_plan_credit(meta, account, now, progress)
        self._record_plan(customer, meta, now)

        logger.info(
            "provisioning_renewal_applied",
            reference=event.reference,
            username=meta.username,
            previous_expiry=account.expiry.isoformat() if account.expiry else None,
            new_expiry=applied.expiry.isoformat(),
            days=applied.days,
        )
        return await self._succeed(
            row,
            PaymentIntent.RENEWAL,
            meta,
            applied.expiry,
            renewal_start_date=now,
            renewal_end_date=applied.expiry,
            **ledger_fields,
        )

    def _profile_from_metadata(self, meta: PaymentMetadata) -> SubscriberProfile:
        first, _, last = (meta.customer_name or "").partition(" ")
        return SubscriberProfile(
            username=meta.username,
            password=generate_pin(),
            firstname=first or meta.username,
            lastname=last,
            email=meta.customer_email or "",
            srvid=meta.srvid or 0,
            phone=meta.phone or meta.username,
        )

    async def _create_and_credit(
        self,
        row: RenewalTransaction,
        event: PaymentEvent,
        meta: PaymentMetadata,
        profile: Optional[SubscriberProfile],
        progress: _Progress,
    ) -> ProvisioningOutcome:
        if meta.bundle_total != event.amount:
            logger.warning(
                "combined_payment_amount_mismatch",
                reference=event.reference,
                declared=str(meta.bundle_total),
                paid=str(event.amount),
            )

        account = await self.radius.get_account(meta.username)
        created = account is None
        generated_pin: Optional[str] = None
        if created:
            if profile is None:
                profile = self._profile_from_metadata(meta)
                generated_pin = profile.password
            now = self._now()
            window = placeholder_expiry(self.placeholder_window_minutes, now)
            progress.mutation_attempted = True
            try:
                await self.radius.create_account(profile, window)
            except (SubscriberBackendError, TransientInfrastructureError) as exc:
                raise PartialFailureError(
                    f"new_user failed: {exc.message}", {"username": meta.username}
                ) from exc
            logger.info(
                "provisioning_account_placeholder_created",
                reference=event.reference,
                username=meta.username,
                placeholder_expiry=window.isoformat(),
                pin_generated=generated_pin is not None,
            )
            # Mandatory re-read: the top-up must start from what the backend holds now.
            account = await self.radius.get_account(meta.username)
            if account is None:
                raise SubscriberBackendError(
                    "Account missing right after creation", details={"username": meta.username}
                )

        now = self._now()
        # The PIN is stored before the top-up: the account exists with it either way.
        customer, ledger_fields = await self._customer_commission(
            event, meta, account, wifi_pin=generated_pin
        )
        applied = await self._apply_plan_credit(meta, account, now, progress)
        self._record_plan(customer, meta, now)

        logger.info(
            "provisioning_combined_applied",
            reference=event.reference,
            username=meta.username,
            account_created=created,
            new_expiry=applied.expiry.isoformat(),
            days=applied.days,
        )
        return await self._succeed(
            row,
            PaymentIntent.COMBINED,
            meta,
            applied.expiry,
            wifi_pin=generated_pin,
            renewal_start_date=now,
            renewal_end_date=applied.expiry,
            **ledger_fields,
        )

    async def _record_account_creation(
        self,
        row: RenewalTransaction,
        event: PaymentEvent,
        meta: PaymentMetadata,
    ) -> ProvisioningOutcome:
        """Account creation fee only. The account itself is created by registration."""
        now = self._now()
        customer, ledger_fields = await self._customer_commission(event, meta, None)
        self._record_plan(customer, meta, None)
        return await self._succeed(
            row,
            PaymentIntent.ACCOUNT_CREATION_ONLY,
            meta,
            None,
            renewal_start_date=now,
            renewal_end_date=now,
            **ledger_fields,
        )
