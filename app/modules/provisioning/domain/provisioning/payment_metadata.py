"""
Payment metadata extraction and intent classification.

Paystack metadata reaches us in two styles: `custom_fields` triples
(`display_name` / `variable_name` / `value`) added at initialization time, and
plain top-level keys. Triples win; top-level keys fill the gaps.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from app.shared.core.exceptions import PermanentValidationError

from .paystack_shared import (
    PURPOSE_ACCOUNT_CREATION,
    PURPOSE_COMBINED,
    PaymentIntent,
    logger,
)

DEFAULT_PLAN_DAYS = 30
_INTEGER = re.compile(r"[+-]?\d+")


def _custom_fields(metadata: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    raw_fields = metadata.get("custom_fields")
    if not isinstance(raw_fields, list):
        return fields
    for entry in raw_fields:
        if isinstance(entry, dict) and entry.get("variable_name"):
            fields.setdefault(str(entry["variable_name"]), entry.get("value"))
    return fields


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _int_or_none(value: Any) -> Optional[int]:
    """Whole numbers only: "7.9" or "1e3" are not plan ids."""
    text = _text(value)
    if not _INTEGER.fullmatch(text):
        return None
    return int(text)


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    text = _text(value)
    if not text:
        return None
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


@dataclass(frozen=True)
class PaymentMetadata:
    username: str
    srvid_raw: str
    srvid: Optional[int]
    timeunitexp: int
    trafficunitcomb: int
    limitcomb: int
    purpose: str
    location_id: Optional[str] = None
    location: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    account_creation_fee: Optional[Decimal] = None
    service_plan_price: Optional[Decimal] = None
    service_plan_name: Optional[str] = None

    @property
    def bundle_total(self) -> Decimal:
        return (self.account_creation_fee or Decimal("0")) + (
            self.service_plan_price or Decimal("0")
        )


@dataclass(frozen=True)
class ClassifiedPayment:
    intent: PaymentIntent
    metadata: PaymentMetadata


def extract_metadata(
    raw: Any, default_days: int = DEFAULT_PLAN_DAYS, customer_email: Optional[str] = None
) -> PaymentMetadata:
    """Tolerant of missing keys and of metadata that never decoded from a string."""
    if not isinstance(raw, dict):
        if raw:
            logger.warning("payment_metadata_not_an_object", type=type(raw).__name__)
        raw = {}

    fields = _custom_fields(raw)

    def get(*names: str) -> Any:
        for name in names:
            if _text(fields.get(name)):
                return fields[name]
        for name in names:
            if _text(raw.get(name)):
                return raw[name]
        return None

    phone = _text(get("phone", "phone_number")) or None
    username = _text(get("username")) or (phone or "")
    srvid_raw = _text(get("srvid", "service_plan_id"))
    days = _int_or_none(get("timeunitexp"))

    return PaymentMetadata(
        username=username,
        srvid_raw=srvid_raw,
        srvid=_int_or_none(srvid_raw),
        timeunitexp=days if days and days > 0 else default_days,
        trafficunitcomb=_int_or_none(get("trafficunitcomb")) or 0,
        limitcomb=_int_or_none(get("limitcomb")) or 0,
        purpose=_text(get("purpose")),
        location_id=_text(get("location_id")) or None,
        location=_text(get("location", "customer_location")) or None,
        customer_email=_text(get("email", "customer_email")) or customer_email,
        customer_name=_text(get("customer_name")) or None,
        phone=phone,
        account_creation_fee=_decimal_or_none(get("account_creation_fee")),
        service_plan_price=_decimal_or_none(get("service_plan_price")),
        service_plan_name=_text(get("service_plan_name")) or None,
    )


def classify_intent(metadata: PaymentMetadata) -> PaymentIntent:
    if (
        metadata.purpose == PURPOSE_COMBINED
        and (metadata.account_creation_fee or 0) > 0
        and (metadata.service_plan_price or 0) > 0
        and metadata.srvid is not None
        and metadata.service_plan_name
    ):
        return PaymentIntent.COMBINED
    if metadata.purpose in (PURPOSE_ACCOUNT_CREATION, PURPOSE_COMBINED):
        if metadata.purpose == PURPOSE_COMBINED:
            logger.warning(
                "combined_payment_metadata_incomplete",
                username=metadata.username,
                srvid=metadata.srvid_raw or None,
                has_fee=metadata.account_creation_fee is not None,
                has_plan_price=metadata.service_plan_price is not None,
            )
        return PaymentIntent.ACCOUNT_CREATION_ONLY
    return PaymentIntent.RENEWAL


def classify_payment(
    raw: Any, default_days: int = DEFAULT_PLAN_DAYS, customer_email: Optional[str] = None
) -> ClassifiedPayment:
    """
    Extract, classify and validate in one step.

    Every payment either classifies to exactly one intent or is rejected with
    PermanentValidationError.
    """
    metadata = extract_metadata(raw, default_days=default_days, customer_email=customer_email)

    if metadata.srvid_raw and metadata.srvid is None:
        raise PermanentValidationError(
            "Malformed service plan id", details={"srvid": metadata.srvid_raw}
        )
    if not metadata.username:
        raise PermanentValidationError("Missing username in payment metadata")

    intent = classify_intent(metadata)
    if intent is PaymentIntent.RENEWAL and metadata.srvid is None:
        raise PermanentValidationError(
            "Missing service plan id in payment metadata",
            details={"username": metadata.username},
        )
    return ClassifiedPayment(intent=intent, metadata=metadata)
