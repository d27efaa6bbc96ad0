"""
Provisioning API Endpoints - Paystack + RADIUS Integration

Provides:
- POST /webhook/paystack - Handle Paystack webhooks
- POST /account-creation/payment - Initialize account-creation checkout
- POST /account-creation/verify - Verify account-creation payment
- GET /account-creation/{reference}/pin - Login PIN of an account created at checkout
- POST /renew - Verify and apply a renewal payment
- POST /radius/register-user - Create a subscriber account directly
- POST /radius/check-user - Look up a subscriber
- GET /radius/service-plans - Enabled service plans
- GET /owners/{owner_id}/commissions - Commission summary
"""

from typing import Any, Dict, List
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.provisioning.api.v1.provisioning_models import (
    AccountPaymentInitiateRequest,
    AccountPaymentInitiateResponse,
    AccountPaymentVerifyRequest,
    CheckUserRequest,
    CustomerInfoModel,
    ProvisioningResponse,
    RegisterUserRequest,
    RenewRequest,
)
from app.modules.provisioning.domain.provisioning import (
    CustomerInfo,
    RegistrationService,
    WebhookHandler,
)
from app.shared.core.exceptions import HotspotBillingException
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Provisioning"])


def _customer(model: CustomerInfoModel) -> CustomerInfo:
    return CustomerInfo(
        first_name=model.first_name.strip(),
        last_name=model.last_name.strip(),
        email=str(model.email),
        phone=model.phone.strip(),
        username=(model.username or "").strip() or None,
        password=model.password,
        address=model.address,
        city=model.city,
        state=model.state,
    )


@router.post("/webhook/paystack")
async def handle_paystack_webhook(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Handle Paystack webhook events.

    Acknowledges with 200 whenever redelivery would not help (already
    processed, noted, failed after a backend mutation) and with 503 only when
    nothing was changed and the gateway should try again.
    """
    payload = await request.body()
    signature = request.headers.get("x-paystack-signature")
    try:
        return await WebhookHandler(db).handle(request, payload, signature)
    except HotspotBillingException:
        raise
    except Exception as e:
        logger.error("webhook_failed", error=str(e))
        raise HTTPException(500, "Webhook processing failed") from e


@router.post("/account-creation/payment", response_model=AccountPaymentInitiateResponse)
async def initiate_account_payment(
    request: AccountPaymentInitiateRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Initialize a Paystack checkout for account creation (optionally with a plan)."""
    return await RegistrationService(db).initiate_account_payment(
        request.location_id,
        _customer(request.user_info),
        service_plan_id=request.service_plan_id,
        callback_url=request.callback_url,
    )


@router.post("/account-creation/verify")
async def verify_account_payment(
    request: AccountPaymentVerifyRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    customer = _customer(request.user_info) if request.user_info else None
    return await RegistrationService(db).verify_account_payment(request.reference, customer)


@router.get("/account-creation/{reference}/pin")
async def account_wifi_pin(
    reference: str,
    phone: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await RegistrationService(db).get_wifi_pin(reference, phone.strip())


@router.post("/renew", response_model=ProvisioningResponse)
async def renew(request: RenewRequest, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """Verify a renewal payment and credit the subscriber exactly once."""
    if request.current_expiry:
        logger.debug("renew_caller_expiry_ignored", username=request.username)
    return await RegistrationService(db).renew(
        request.reference,
        request.username,
        request.srvid,
        timeunitexp=request.timeunitexp,
        trafficunitcomb=request.trafficunitcomb,
        limitcomb=request.limitcomb,
    )


@router.post("/radius/register-user")
async def register_user(
    request: RegisterUserRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await RegistrationService(db).register_user(
        _customer(request.user_info),
        request.srvid,
        payment_reference=request.payment_reference,
    )


@router.post("/radius/check-user")
async def check_user(
    request: CheckUserRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await RegistrationService(db).check_user(request.username.strip())


@router.get("/radius/service-plans")
async def list_service_plans(db: AsyncSession = Depends(get_db)) -> Dict[str, List[Dict[str, Any]]]:
    return {"plans": await RegistrationService(db).list_plans()}


@router.get("/radius/service-plans/{srvid}")
async def get_service_plan(srvid: int, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await RegistrationService(db).get_plan(srvid)


@router.get("/owners/{owner_id}/commissions")
async def owner_commissions(owner_id: UUID, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await RegistrationService(db).owner_commission_summary(owner_id)
