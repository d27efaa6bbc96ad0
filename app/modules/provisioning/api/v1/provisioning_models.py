from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class CustomerInfoModel(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(min_length=3, max_length=50)
    username: Optional[str] = None  # defaults to phone
    password: Optional[str] = Field(default=None, min_length=4, max_length=64)
    address: str = ""
    city: str = ""
    state: str = ""


class AccountPaymentInitiateRequest(BaseModel):
    location_id: str
    user_info: CustomerInfoModel
    service_plan_id: Optional[int] = Field(default=None, ge=0)
    callback_url: Optional[str] = None


class AccountPaymentVerifyRequest(BaseModel):
    reference: str = Field(min_length=1)
    user_info: Optional[CustomerInfoModel] = None


class RenewRequest(BaseModel):
    reference: str = Field(min_length=1)
    username: str = Field(min_length=1)
    srvid: int = Field(ge=0)
    timeunitexp: Optional[int] = Field(default=None, gt=0)
    trafficunitcomb: int = Field(default=0, ge=0)
    limitcomb: int = Field(default=0, ge=0)
    # Accepted for compatibility with older portal builds; never trusted.
    current_expiry: Optional[str] = None


class RegisterUserRequest(BaseModel):
    user_info: CustomerInfoModel
    srvid: int = Field(ge=0)
    payment_reference: Optional[str] = None


class CheckUserRequest(BaseModel):
    username: str = Field(min_length=1)


class ProvisioningResponse(BaseModel):
    status: str
    reference: str
    intent: Optional[str] = None
    username: Optional[str] = None
    new_expiry: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    payment_status: Optional[str] = None


class AccountPaymentInitiateResponse(BaseModel):
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    reference: str
    amount: str
    breakdown: Dict[str, Any]
