"""Shared runtime state and primitives for the provisioning modules."""

from __future__ import annotations

from enum import Enum

import structlog

logger = structlog.get_logger()
PAYSTACK_CHECKOUT_CURRENCY = "NGN"
KOBO_PER_NAIRA = 100

CHARGE_SUCCESS_EVENT = "charge.success"
PURPOSE_ACCOUNT_CREATION = "Account Creation"
PURPOSE_COMBINED = "Combined Account Creation & Service Plan"
COMBINED_PLAN_NAME_SUFFIX = " (with account setup)"


class PaymentIntent(str, Enum):
    """What a confirmed payment is for."""

    RENEWAL = "renewal"
    ACCOUNT_CREATION_ONLY = "account_creation_only"
    COMBINED = "combined_account_creation_and_plan"


