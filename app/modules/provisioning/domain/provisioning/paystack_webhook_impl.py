"""Webhook handler implementation for Paystack payment events."""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    AlreadyProcessedError,
    PaymentVerificationError,
    PermanentValidationError,
    SignatureInvalidError,
)
from app.shared.core.ops_metrics import WEBHOOK_EVENTS_TOTAL

from . import paystack_shared as shared
from .expiry import utcnow
from .ledger import TransactionLedger
from .orchestrator import OUTCOME_ALREADY_PROCESSED, ProvisioningOrchestrator
from .payment_metadata import classify_payment
from .paystack_client_impl import PaymentEvent, PaystackClient
from .radius_client_impl import RadiusClient


class WebhookHandler:
    """Paystack Webhook Handler."""

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
        self.ledger = TransactionLedger(db)

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

    async def handle(
        self, request: Request, payload: bytes, signature: Optional[str]
    ) -> dict[str, Any]:
        """Verify and process webhook."""
        content_type = request.headers.get("Content-Type", "")
        if content_type and "application/json" not in content_type.lower():
            shared.logger.warning(
                "paystack_webhook_invalid_content_type", content_type=content_type
            )
            raise PermanentValidationError(
                "Unsupported media type: expected application/json", code="invalid_payload"
            )

        # Signature covers the raw bytes; nothing is parsed before it checks out.
        if not self.verify_signature(payload, signature):
            WEBHOOK_EVENTS_TOTAL.labels(event="unknown", outcome="signature_invalid").inc()
            raise SignatureInvalidError()

        try:
            envelope = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            shared.logger.error("paystack_webhook_invalid_json", payload_len=len(payload))
            raise PermanentValidationError("Invalid JSON payload", code="invalid_payload")
        if not isinstance(envelope, dict):
            raise PermanentValidationError("Invalid JSON payload", code="invalid_payload")

        event_type = str(envelope.get("event") or "")
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}

        shared.logger.info(
            "paystack_webhook_received",
            paystack_event=event_type,
            reference=data.get("reference"),
        )

        if event_type != shared.CHARGE_SUCCESS_EVENT:
            WEBHOOK_EVENTS_TOTAL.labels(event=event_type or "unknown", outcome="noted").inc()
            return {"status": "noted", "event": event_type}

        result = await self._handle_charge_success(PaymentEvent.from_paystack_data(data))
        WEBHOOK_EVENTS_TOTAL.labels(event=event_type, outcome=result["status"]).inc()
        return result

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Verify Paystack webhook signature using HMAC-SHA512."""
        if not signature:
            shared.logger.warning("paystack_webhook_missing_signature")
            return False

        secret = get_settings().PAYSTACK_SECRET_KEY
        if not secret:
            shared.logger.error("paystack_secret_key_not_configured")
            return False

        expected = hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()

        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            shared.logger.warning(
                "paystack_webhook_invalid_signature", provided_sig=signature[:8] + "..."
            )

        return is_valid

    async def _handle_charge_success(self, event: PaymentEvent) -> dict[str, Any]:
        if not event.reference:
            raise PermanentValidationError("Missing payment reference")

        settled = await self.ledger.is_settled(event.reference)
        if settled is not None:
            shared.logger.info("paystack_webhook_already_processed", reference=event.reference)
            return {
                "status": OUTCOME_ALREADY_PROCESSED,
                "reference": event.reference,
                "payment_status": settled.payment_status,
            }

        settings = get_settings()
        # Validation failures surface before any claim is taken.
        classified = classify_payment(
            event.metadata,
            default_days=settings.DEFAULT_PLAN_DAYS,
            customer_email=event.customer_email,
        )

        if settings.PAYSTACK_VERIFY_ON_WEBHOOK:
            verified = await self.paystack.verify_transaction(event.reference)
            if not verified.verified:
                raise PaymentVerificationError(
                    "Payment verification failed",
                    {"reference": event.reference, "status": verified.event.status},
                )
            if verified.event.metadata:
                event = verified.event
                classified = classify_payment(
                    event.metadata,
                    default_days=settings.DEFAULT_PLAN_DAYS,
                    customer_email=event.customer_email,
                )
            else:
                event = PaymentEvent(
                    reference=event.reference,
                    amount_minor_units=verified.event.amount_minor_units,
                    status=verified.event.status,
                    metadata=event.metadata,
                    customer_email=verified.event.customer_email or event.customer_email,
                    channel=verified.event.channel or event.channel,
                )
        elif not event.is_successful:
            raise PaymentVerificationError(
                "Payment not successful", {"reference": event.reference, "status": event.status}
            )

        orchestrator = ProvisioningOrchestrator(self.db, self.radius, now=self._now)
        try:
            outcome = await orchestrator.process(event, classified)
        except AlreadyProcessedError as exc:
            return {
                "status": OUTCOME_ALREADY_PROCESSED,
                "reference": exc.reference,
                "payment_status": exc.payment_status,
            }
        return outcome.to_dict()
