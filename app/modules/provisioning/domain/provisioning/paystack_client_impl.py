"""Paystack API client implementation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    ConfigurationError,
    PaymentVerificationError,
    TransientInfrastructureError,
)
from app.shared.core.http import get_http_client
from app.shared.core.retry import is_transient_http_error, retry_read_only

from . import paystack_shared as shared


def decode_metadata(raw: Any) -> Any:
    """Paystack sometimes delivers metadata as a JSON string; decode it when we can."""
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            shared.logger.warning("paystack_metadata_decode_failed")
            return raw
    return raw


@dataclass(frozen=True)
class PaymentEvent:
    """A confirmed (or claimed) payment, independent of how we learned about it."""

    reference: str
    amount_minor_units: int
    status: str
    metadata: Any = field(default_factory=dict)
    customer_email: Optional[str] = None
    channel: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_minor_units) / shared.KOBO_PER_NAIRA).quantize(
            Decimal("0.01")
        )

    @property
    def is_successful(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_paystack_data(cls, data: dict[str, Any]) -> "PaymentEvent":
        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        try:
            amount = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0
        return cls(
            reference=str(data.get("reference") or ""),
            amount_minor_units=amount,
            status=str(data.get("status") or ""),
            metadata=decode_metadata(data.get("metadata")) or {},
            customer_email=customer.get("email"),
            channel=data.get("channel"),
        )


@dataclass(frozen=True)
class VerifiedPayment:
    verified: bool
    event: PaymentEvent


class PaystackClient:
    """Async wrapper for Paystack operations."""

    def __init__(self, secret_key: Optional[str] = None) -> None:
        settings = get_settings()
        key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")

        self.base_url = settings.PAYSTACK_BASE_URL.rstrip("/")
        self.timeout = settings.PAYSTACK_TIMEOUT_SECONDS
        self.headers: dict[str, str] = {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = get_http_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{endpoint}",
                headers=self.headers,
                json=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Invalid Paystack response payload type")
            return payload
        except httpx.HTTPError as exc:
            shared.logger.error("paystack_api_error", endpoint=endpoint, error=str(exc))
            raise

    @retry_read_only("paystack_verify")
    async def _verify_request(self, reference: str) -> dict[str, Any]:
        return await self._request("GET", f"transaction/verify/{reference}")

    async def initialize_transaction(
        self,
        email: str,
        amount_kobo: int,
        reference: str,
        metadata: dict[str, Any],
        callback_url: Optional[str] = None,
        channels: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Initialize a one-off transaction. Never retried."""
        data: dict[str, Any] = {
            "email": email,
            "amount": amount_kobo,
            "reference": reference,
            "currency": shared.PAYSTACK_CHECKOUT_CURRENCY,
            "metadata": metadata,
        }
        if callback_url:
            data["callback_url"] = callback_url
        if channels:
            data["channels"] = channels

        try:
            payload = await self._request("POST", "transaction/initialize", data)
        except httpx.HTTPError as exc:
            if is_transient_http_error(exc):
                raise TransientInfrastructureError(
                    "Payment gateway unavailable", {"reference": reference}
                ) from exc
            raise PaymentVerificationError(
                "Payment gateway rejected the transaction",
                {"reference": reference},
            ) from exc

        if not payload.get("status") or not isinstance(payload.get("data"), dict):
            raise PaymentVerificationError(
                str(payload.get("message") or "Failed to initialize payment"),
                {"reference": reference},
            )
        return payload["data"]

    async def verify_transaction(self, reference: str) -> VerifiedPayment:
        """
        Verify a reference with the gateway.

        Timeouts, connection errors and 5xx become TransientInfrastructureError.
        A 4xx (unknown reference) is reported as not verified.
        """
        try:
            payload = await self._verify_request(reference)
        except httpx.HTTPError as exc:
            if is_transient_http_error(exc):
                raise TransientInfrastructureError(
                    "Payment gateway unavailable", {"reference": reference}
                ) from exc
            return VerifiedPayment(
                verified=False,
                event=PaymentEvent(reference=reference, amount_minor_units=0, status="unknown"),
            )
        except ValueError as exc:
            raise TransientInfrastructureError(
                "Payment gateway returned an unreadable response", {"reference": reference}
            ) from exc

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        event = PaymentEvent.from_paystack_data({"reference": reference, **data})
        verified = bool(payload.get("status")) and event.is_successful
        shared.logger.info(
            "paystack_transaction_verified",
            reference=reference,
            verified=verified,
            gateway_status=event.status,
            amount_kobo=event.amount_minor_units,
        )
        return VerifiedPayment(verified=verified, event=event)

    async def require_successful(self, reference: str) -> PaymentEvent:
        """Verify and hard-reject anything the gateway does not report as successful."""
        result = await self.verify_transaction(reference)
        if not result.verified:
            raise PaymentVerificationError(
                "Payment verification failed",
                {"reference": reference, "status": result.event.status},
            )
        return result.event
