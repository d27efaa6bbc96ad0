"""
Idempotency ledger over `renewal_transactions`.

Inserting the row in `processing` state is the claim on a payment reference.
The unique constraint on `paystack_reference` is the only mutual exclusion we
rely on: the service may run as many workers as it likes, and in-process locks
would protect nothing.

Usage:
    ledger = TransactionLedger(db)
    row = await ledger.claim(reference, username=..., amount_paid=...)
    ... mutate the subscriber backend ...
    await ledger.finalize(row, PaymentStatus.SUCCESS, renewal_end_date=...)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.provisioning import PaymentStatus, RenewalTransaction
from app.shared.core.exceptions import AlreadyProcessedError, TransientInfrastructureError
from app.shared.core.ops_metrics import LEDGER_CLAIMS_TOTAL

from .paystack_shared import logger


class TransactionLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(self, reference: str) -> Optional[RenewalTransaction]:
        result = await self.db.execute(
            select(RenewalTransaction).where(
                RenewalTransaction.paystack_reference == reference
            )
        )
        return result.scalar_one_or_none()

    async def is_settled(self, reference: str) -> Optional[RenewalTransaction]:
        """Returns the row if this reference already reached `success`."""
        try:
            row = await self.find(reference)
        except SQLAlchemyError as exc:
            raise TransientInfrastructureError(
                "Ledger unavailable", {"reference": reference}
            ) from exc
        if row is not None and row.payment_status == PaymentStatus.SUCCESS.value:
            return row
        return None

    async def claim(self, reference: str, **provisional: Any) -> RenewalTransaction:
        """
        Atomically claim `reference`.

        Raises AlreadyProcessedError when another unit of work holds the row
        (whatever its status) and TransientInfrastructureError for any other
        storage failure.
        """
        row = RenewalTransaction(
            paystack_reference=reference,
            payment_status=PaymentStatus.PROCESSING.value,
            **provisional,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            existing = await self._find_after_conflict(reference)
            if existing is None:
                # Integrity failure unrelated to the reference (e.g. a foreign key).
                LEDGER_CLAIMS_TOTAL.labels(result="error").inc()
                logger.error("ledger_claim_integrity_error", reference=reference, error=str(exc))
                raise TransientInfrastructureError(
                    "Ledger rejected the claim", {"reference": reference}
                ) from exc
            LEDGER_CLAIMS_TOTAL.labels(result="already_claimed").inc()
            logger.info(
                "ledger_reference_already_claimed",
                reference=reference,
                payment_status=existing.payment_status,
            )
            raise AlreadyProcessedError(reference, existing.payment_status) from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            LEDGER_CLAIMS_TOTAL.labels(result="error").inc()
            logger.error("ledger_claim_failed", reference=reference, error=str(exc))
            raise TransientInfrastructureError(
                "Ledger unavailable", {"reference": reference}
            ) from exc

        LEDGER_CLAIMS_TOTAL.labels(result="claimed").inc()
        logger.info("ledger_reference_claimed", reference=reference, transaction_id=str(row.id))
        return row

    async def _find_after_conflict(self, reference: str) -> Optional[RenewalTransaction]:
        try:
            return await self.find(reference)
        except SQLAlchemyError as exc:
            raise TransientInfrastructureError(
                "Ledger unavailable", {"reference": reference}
            ) from exc

    async def finalize(
        self, row: RenewalTransaction, status: PaymentStatus, **fields: Any
    ) -> bool:
        """
        Move a claimed row to a terminal status.

        A failure here is logged and reported through the return value only;
        the caller must never re-apply credit because of it.
        """
        reference = row.paystack_reference
        for key, value in fields.items():
            setattr(row, key, value)
        row.payment_status = status.value
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.critical(
                "ledger_finalize_failed",
                reference=reference,
                target_status=status.value,
                error=str(exc),
            )
            return False

        logger.info(
            "ledger_transaction_finalized",
            reference=reference,
            payment_status=status.value,
        )
        return True

    async def release(self, row: RenewalTransaction) -> None:
        """Drop a claim whose work never touched the subscriber backend, so redelivery can retry it."""
        reference = row.paystack_reference
        try:
            await self.db.execute(
                delete(RenewalTransaction).where(
                    RenewalTransaction.id == row.id,
                    RenewalTransaction.payment_status == PaymentStatus.PROCESSING.value,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.critical("ledger_claim_release_failed", reference=reference, error=str(exc))
            return
        logger.warning("ledger_claim_released", reference=reference)

    async def consume_for_registration(self, row: RenewalTransaction, when: datetime) -> bool:
        """
        Spend a settled account-creation payment on one registration.

        Conditional update, so concurrent registrations on the same reference
        cannot both win. Returns False when the payment was already used.
        """
        reference = row.paystack_reference
        try:
            result = await self.db.execute(
                update(RenewalTransaction)
                .where(
                    RenewalTransaction.id == row.id,
                    RenewalTransaction.payment_status == PaymentStatus.SUCCESS.value,
                    RenewalTransaction.registration_consumed_at.is_(None),
                )
                .values(registration_consumed_at=when)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("ledger_registration_consume_failed", reference=reference, error=str(exc))
            raise TransientInfrastructureError(
                "Ledger unavailable", {"reference": reference}
            ) from exc

        if result.rowcount != 1:
            logger.warning("ledger_registration_already_consumed", reference=reference)
            return False
        logger.info("ledger_registration_consumed", reference=reference)
        return True

    async def restore_for_registration(self, row: RenewalTransaction) -> None:
        """Give the payment back after the backend definitively refused the account."""
        reference = row.paystack_reference
        try:
            await self.db.execute(
                update(RenewalTransaction)
                .where(RenewalTransaction.id == row.id)
                .values(registration_consumed_at=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.critical("ledger_registration_restore_failed", reference=reference, error=str(exc))
            return
        logger.warning("ledger_registration_restored", reference=reference)
