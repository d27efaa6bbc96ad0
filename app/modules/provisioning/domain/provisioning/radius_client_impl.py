"""
Subscriber backend (RADIUS manager sysapi) client.

Every operation is an HTTP GET against one endpoint with `q=<operation>`.
The backend answers either with a positional array `[code, payload, ...]` or
with an object keyed by stringified indices (`{"0": code, "1": payload, ...}`)
that may also carry extra named keys. Both shapes are normalized into one
`BackendEnvelope` before any operation-specific parsing happens.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    ConfigurationError,
    ServicePlanUnavailableError,
    SubscriberBackendError,
    SubscriberBackendProtocolError,
    TransientInfrastructureError,
)
from app.shared.core.http import get_http_client
from app.shared.core.ops_metrics import RADIUS_CALL_DURATION
from app.shared.core.retry import is_transient_http_error, retry_read_only

from .expiry import parse_backend_datetime
from .paystack_shared import logger


@dataclass(frozen=True)
class BackendEnvelope:
    """Normalized `[code, payload]` response of any backend operation."""

    code: int
    payload: Any
    values: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code == 0

    @property
    def message(self) -> str:
        if isinstance(self.payload, str) and self.payload:
            return self.payload
        return "Unknown error from subscriber backend"

    def positional(self, index: int) -> Any:
        return self.values.get(str(index))


def _coerce_code(raw: Any) -> int:
    if isinstance(raw, bool):
        raise SubscriberBackendProtocolError("Result code must be numeric", {"code": raw})
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    raise SubscriberBackendProtocolError("Result code must be numeric", {"code": raw})


def normalize_envelope(body: Any) -> BackendEnvelope:
    """
    Collapses both response conventions into a BackendEnvelope.

    A single-record payload wrapped as `[record]` is unwrapped. Anything that is
    neither a list nor an object, or lacks a result code, fails loudly.
    """
    if isinstance(body, list):
        values = {str(i): value for i, value in enumerate(body)}
    elif isinstance(body, dict):
        values = {str(key): value for key, value in body.items()}
    else:
        raise SubscriberBackendProtocolError(
            "Unrecognized subscriber backend response shape",
            {"type": type(body).__name__},
        )

    if "0" not in values:
        raise SubscriberBackendProtocolError("Subscriber backend response has no result code")

    payload = values.get("1")
    if isinstance(payload, list) and len(payload) == 1:
        payload = payload[0]
    return BackendEnvelope(code=_coerce_code(values["0"]), payload=payload, values=values)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _as_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value).strip() or "0")
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


@dataclass(frozen=True)
class SubscriberAccount:
    username: str
    enabled: bool
    srvid: Optional[int]
    expiry: Optional[datetime]
    dlbytes: int = 0
    ulbytes: int = 0
    totalbytes: int = 0
    onlinetime: int = 0
    owner: Optional[str] = None
    firstname: str = ""
    lastname: str = ""
    email: str = ""
    phone: str = ""

    @classmethod
    def from_envelope(cls, username: str, envelope: BackendEnvelope) -> "SubscriberAccount":
        record = envelope.payload
        if not isinstance(record, dict):
            raise SubscriberBackendProtocolError(
                "get_userdata payload is not a record", {"username": username}
            )
        values = envelope.values

        def pick(key: str) -> Any:
            # Root-level counters/expiry win over the nested record.
            return values[key] if key in values else record.get(key)

        srvid = _as_int(record.get("srvid"), default=-1)
        return cls(
            username=username,
            enabled=_as_int(record.get("enableuser")) == 1,
            srvid=srvid if srvid >= 0 else None,
            expiry=parse_backend_datetime(pick("expiry")),
            dlbytes=_as_int(pick("dlbytes")),
            ulbytes=_as_int(pick("ulbytes")),
            totalbytes=_as_int(pick("totalbytes")),
            onlinetime=_as_int(pick("onlinetime")),
            owner=(str(record["owner"]).strip() or None) if record.get("owner") else None,
            firstname=str(record.get("firstname") or ""),
            lastname=str(record.get("lastname") or ""),
            email=str(record.get("email") or ""),
            phone=str(record.get("phone") or record.get("mobile") or ""),
        )


@dataclass(frozen=True)
class ServicePlan:
    srvid: int
    srvname: str
    unitprice: Decimal
    unitpriceadd: Decimal
    unitpricetax: Decimal
    unitpriceaddtax: Decimal
    timeunitexp: int
    trafficunitcomb: int
    limitcomb: int
    enabled: bool

    @property
    def total_price(self) -> Decimal:
        return self.unitprice + self.unitpriceadd + self.unitpricetax + self.unitpriceaddtax

    @property
    def is_unlimited(self) -> bool:
        return self.limitcomb == 0

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ServicePlan":
        if "srvid" not in record:
            raise SubscriberBackendProtocolError("Service plan record has no srvid")
        return cls(
            srvid=_as_int(record["srvid"]),
            srvname=str(record.get("srvname") or ""),
            unitprice=_as_decimal(record.get("unitprice")),
            unitpriceadd=_as_decimal(record.get("unitpriceadd")),
            unitpricetax=_as_decimal(record.get("unitpricetax")),
            unitpriceaddtax=_as_decimal(record.get("unitpriceaddtax")),
            timeunitexp=_as_int(record.get("timeunitexp")),
            trafficunitcomb=_as_int(record.get("trafficunitcomb")),
            limitcomb=_as_int(record.get("limitcomb")),
            enabled=str(record.get("enableservice", "1")).strip() == "1",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "srvid": self.srvid,
            "srvname": self.srvname,
            "total_price": str(self.total_price),
            "timeunitexp": self.timeunitexp,
            "trafficunitcomb": self.trafficunitcomb,
            "limitcomb": self.limitcomb,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class SubscriberProfile:
    username: str
    password: str
    firstname: str
    lastname: str
    email: str
    srvid: int
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    enabled: bool = True
    acctype: int = 0


@dataclass(frozen=True)
class CreditResult:
    """Outcome of add_credits. `expiry` is the backend-confirmed expiry, if any."""

    expiry: Optional[datetime]
    envelope: BackendEnvelope


class RadiusClient:
    """Async wrapper for the subscriber backend's sysapi operations."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_user: Optional[str] = None,
        api_pass: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url or settings.RADIUS_API_URL
        self.api_user = api_user or settings.RADIUS_API_USER
        self.api_pass = api_pass or settings.RADIUS_API_PASS
        self.timeout = timeout or settings.RADIUS_TIMEOUT_SECONDS
        if not (self.base_url and self.api_user and self.api_pass):
            raise ConfigurationError("RADIUS API credentials are not configured")

    async def _send(self, operation: str, params: dict[str, Any]) -> Any:
        query = {
            "apiuser": self.api_user,
            "apipass": self.api_pass,
            "q": operation,
            **{key: str(value) for key, value in params.items()},
        }
        start = time.perf_counter()
        try:
            response = await get_http_client().get(
                self.base_url, params=query, timeout=self.timeout
            )
            response.raise_for_status()
        finally:
            RADIUS_CALL_DURATION.labels(operation=operation).observe(
                time.perf_counter() - start
            )
        try:
            return response.json()
        except ValueError as exc:
            raise SubscriberBackendProtocolError(
                "Subscriber backend returned non-JSON body", {"operation": operation}
            ) from exc

    @retry_read_only("radius_read")
    async def _send_read_only(self, operation: str, params: dict[str, Any]) -> Any:
        return await self._send(operation, params)

    def _map_http_error(self, operation: str, exc: httpx.HTTPError) -> Exception:
        logger.error(
            "radius_api_error",
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if is_transient_http_error(exc):
            return TransientInfrastructureError(
                f"Subscriber backend unavailable during {operation}",
                {"operation": operation},
            )
        return SubscriberBackendError(
            f"Subscriber backend rejected {operation}", details={"operation": operation}
        )

    async def _read(self, operation: str, **params: Any) -> BackendEnvelope:
        try:
            body = await self._send_read_only(operation, params)
        except httpx.HTTPError as exc:
            raise self._map_http_error(operation, exc) from exc
        return normalize_envelope(body)

    async def _mutate(self, operation: str, **params: Any) -> BackendEnvelope:
        # Never retried: the backend may have applied the change before failing.
        try:
            body = await self._send(operation, params)
        except httpx.HTTPError as exc:
            raise self._map_http_error(operation, exc) from exc
        return normalize_envelope(body)

    async def get_account(self, username: str) -> Optional[SubscriberAccount]:
        """Returns the live account, or None when the backend reports no such user."""
        envelope = await self._read("get_userdata", username=username)
        if not envelope.ok:
            if "not found" in envelope.message.lower():
                return None
            raise SubscriberBackendError(
                envelope.message, details={"operation": "get_userdata", "code": envelope.code}
            )
        return SubscriberAccount.from_envelope(username, envelope)

    async def create_account(
        self, profile: SubscriberProfile, expiry: datetime
    ) -> BackendEnvelope:
        envelope = await self._mutate(
            "new_user",
            username=profile.username,
            password=profile.password,
            enabled=1 if profile.enabled else 0,
            acctype=profile.acctype,
            srvid=profile.srvid,
            firstname=profile.firstname,
            lastname=profile.lastname,
            email=profile.email,
            phone=profile.phone or profile.username,
            address=profile.address,
            city=profile.city,
            state=profile.state,
            expiration=expiry.strftime("%Y-%m-%d %H:%M:%S"),
        )
        if not envelope.ok:
            raise SubscriberBackendError(
                envelope.message,
                details={"operation": "new_user", "username": profile.username},
            )
        logger.info(
            "radius_account_created",
            username=profile.username,
            srvid=profile.srvid,
            expiry=expiry.isoformat(),
        )
        return envelope

    async def add_credit(
        self,
        username: str,
        days: int,
        totalbytes: int = 0,
        dlbytes: int = 0,
        ulbytes: int = 0,
    ) -> CreditResult:
        """Credits days and traffic. Index 5 of a success response is the new expiry."""
        envelope = await self._mutate(
            "add_credits",
            username=username,
            dlbytes=dlbytes,
            ulbytes=ulbytes,
            totalbytes=totalbytes,
            expiry=days,
            unit="DAY",
            onlinetime=0,
        )
        if not envelope.ok:
            raise SubscriberBackendError(
                envelope.message,
                details={"operation": "add_credits", "username": username},
            )
        confirmed = parse_backend_datetime(envelope.positional(5))
        logger.info(
            "radius_add_credits_applied",
            username=username,
            days=days,
            totalbytes=totalbytes,
            confirmed_expiry=confirmed.isoformat() if confirmed else None,
        )
        return CreditResult(expiry=confirmed, envelope=envelope)

    async def get_plan(self, srvid: int) -> ServicePlan:
        envelope = await self._read("get_srv", srvid=srvid)
        record = envelope.payload
        if isinstance(record, list):
            record = next(
                (r for r in record if isinstance(r, dict) and _as_int(r.get("srvid")) == srvid),
                None,
            )
        if not envelope.ok or not isinstance(record, dict):
            raise ServicePlanUnavailableError(srvid, "not found")
        plan = ServicePlan.from_record(record)
        if not plan.enabled:
            raise ServicePlanUnavailableError(srvid, "disabled")
        return plan

    async def list_plans(self) -> list[ServicePlan]:
        """Enabled plans only."""
        envelope = await self._read("get_srv")
        if not envelope.ok:
            raise SubscriberBackendError(envelope.message, details={"operation": "get_srv"})
        records = envelope.payload
        if isinstance(records, dict):
            records = [records]
        if not isinstance(records, list):
            raise SubscriberBackendProtocolError("get_srv payload is not a list")
        plans = [ServicePlan.from_record(r) for r in records if isinstance(r, dict)]
        return [plan for plan in plans if plan.enabled]
