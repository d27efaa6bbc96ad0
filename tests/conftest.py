"""
Global pytest fixtures for the hotspot billing test suite.

Provides:
- Async database session on a temp-file SQLite database
- FastAPI async test client sharing that database
- A stateful fake subscriber backend (RADIUS manager sysapi) behind respx
- Paystack verify/initialize mocks and webhook signing
"""
import os

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_SSL_MODE"] = "disable"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_hotspot_billing_secret"
os.environ["RADIUS_API_URL"] = "http://radius.test/radiusmanager/api/sysapi.php"
os.environ["RADIUS_API_USER"] = "api_user"
os.environ["RADIUS_API_PASS"] = "api_pass"

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Iterator, Optional

import httpx
import pytest
import pytest_asyncio
import respx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

PAYSTACK_SECRET = os.environ["PAYSTACK_SECRET_KEY"]
PAYSTACK_BASE_URL = "https://api.paystack.co"
RADIUS_URL = os.environ["RADIUS_API_URL"]
BACKEND_FORMAT = "%Y-%m-%d %H:%M:%S"

FIXED_NOW = datetime(2026, 3, 15, 9, 30, 0, tzinfo=timezone.utc)


# ============================================================================
# Fake subscriber backend
# ============================================================================


class FakeRadiusBackend:
    """
    In-memory RADIUS manager sysapi.

    add_credits behaves like the real backend: the day count is applied to
    the current date and the resulting expiry is echoed at index 5.
    """

    def __init__(self, clock: Callable[[], datetime]):
        self.clock = clock
        self.accounts: dict[str, dict[str, Any]] = {}
        self.plans: dict[int, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []
        # operation -> exception class (raised) or int (HTTP status returned)
        self.failures: dict[str, Any] = {}
        self.echo_expiry = True

    def add_plan(
        self,
        srvid: int,
        srvname: str = "Monthly 30",
        price: str = "300.00",
        days: int = 30,
        trafficunitcomb: int = 0,
        limitcomb: int = 0,
        enabled: bool = True,
    ) -> dict[str, Any]:
        plan = {
            "srvid": str(srvid),
            "srvname": srvname,
            "unitprice": price,
            "unitpriceadd": "0.00",
            "unitpricetax": "0.00",
            "unitpriceaddtax": "0.00",
            "timeunitexp": str(days),
            "trafficunitcomb": str(trafficunitcomb),
            "limitcomb": str(limitcomb),
            "enableservice": "1" if enabled else "0",
        }
        self.plans[srvid] = plan
        return plan

    def add_account(
        self,
        username: str,
        expiry: Optional[datetime],
        srvid: int = 1,
        owner: str = "",
    ) -> dict[str, Any]:
        account = {
            "username": username,
            "enableuser": "1",
            "srvid": str(srvid),
            "expiry": expiry.strftime(BACKEND_FORMAT) if expiry else "0000-00-00 00:00:00",
            "dlbytes": "0",
            "ulbytes": "0",
            "totalbytes": "0",
            "onlinetime": "0",
            "owner": owner,
            "firstname": "Ada",
            "lastname": "Obi",
            "email": f"{username}@example.com",
            "phone": username,
        }
        self.accounts[username] = account
        return account

    def expiry_of(self, username: str) -> Optional[datetime]:
        raw = self.accounts[username]["expiry"]
        if raw.startswith("0000"):
            return None
        return datetime.strptime(raw, BACKEND_FORMAT).replace(tzinfo=timezone.utc)

    def calls_to(self, operation: str) -> list[dict[str, str]]:
        return [params for op, params in self.calls if op == operation]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        operation = params.pop("q", "")
        params.pop("apiuser", None)
        params.pop("apipass", None)
        self.calls.append((operation, params))

        failure = self.failures.get(operation)
        if isinstance(failure, int):
            return httpx.Response(failure, text="backend error")
        if failure is not None:
            raise failure("simulated backend failure", request=request)

        handler = getattr(self, f"_op_{operation}")
        return httpx.Response(200, json=handler(params))

    def _op_get_userdata(self, params: dict[str, str]) -> Any:
        account = self.accounts.get(params["username"])
        if account is None:
            return [1, "User not found"]
        # Keyed-object envelope with the expiry duplicated at root level.
        return {"0": 0, "1": [dict(account)], "expiry": account["expiry"]}

    def _op_new_user(self, params: dict[str, str]) -> Any:
        username = params["username"]
        if username in self.accounts:
            return [1, "Username already exists"]
        self.accounts[username] = {
            "username": username,
            "enableuser": params.get("enabled", "1"),
            "srvid": params.get("srvid", "0"),
            "expiry": params["expiration"],
            "dlbytes": "0",
            "ulbytes": "0",
            "totalbytes": "0",
            "onlinetime": "0",
            "owner": "",
            "firstname": params.get("firstname", ""),
            "lastname": params.get("lastname", ""),
            "email": params.get("email", ""),
            "phone": params.get("phone", ""),
        }
        return [0, "User created"]

    def _op_add_credits(self, params: dict[str, str]) -> Any:
        account = self.accounts.get(params["username"])
        if account is None:
            return [1, "User not found"]
        new_expiry = self.clock() + timedelta(days=int(params["expiry"]))
        account["expiry"] = new_expiry.strftime(BACKEND_FORMAT)
        account["totalbytes"] = str(int(account["totalbytes"]) + int(params["totalbytes"]))
        echoed = account["expiry"] if self.echo_expiry else ""
        return [0, "Credits added", params["username"], params["expiry"], params["totalbytes"], echoed]

    def _op_get_srv(self, params: dict[str, str]) -> Any:
        if "srvid" in params:
            plan = self.plans.get(int(params["srvid"]))
            if plan is None:
                return [1, "Service not found"]
            return [0, [dict(plan)]]
        return [0, [dict(plan) for plan in self.plans.values()]]


# ============================================================================
# Paystack helpers
# ============================================================================


class FakePaystack:
    def __init__(self, router: respx.MockRouter):
        self.router = router

    @staticmethod
    def sign(payload: bytes, secret: str = PAYSTACK_SECRET) -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()

    @staticmethod
    def custom_fields(**values: Any) -> list[dict[str, str]]:
        return [
            {"display_name": key.replace("_", " ").title(), "variable_name": key, "value": str(value)}
            for key, value in values.items()
        ]

    def verify(
        self,
        reference: str,
        amount_kobo: int,
        metadata: Any,
        status: str = "success",
        email: str = "buyer@example.com",
    ) -> respx.Route:
        return self.router.get(f"{PAYSTACK_BASE_URL}/transaction/verify/{reference}").respond(
            json={
                "status": True,
                "message": "Verification successful",
                "data": {
                    "reference": reference,
                    "amount": amount_kobo,
                    "status": status,
                    "channel": "card",
                    "metadata": metadata,
                    "customer": {"email": email},
                },
            }
        )

    def initialize(self, authorization_url: str = "https://checkout.paystack.com/abc") -> respx.Route:
        return self.router.post(f"{PAYSTACK_BASE_URL}/transaction/initialize").mock(
            side_effect=lambda request: httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": authorization_url,
                        "access_code": "access_abc",
                        "reference": json.loads(request.content)["reference"],
                    },
                },
            )
        )

    @staticmethod
    def charge_success(
        reference: str, amount_kobo: int, metadata: Any, email: str = "buyer@example.com"
    ) -> bytes:
        return json.dumps(
            {
                "event": "charge.success",
                "data": {
                    "reference": reference,
                    "amount": amount_kobo,
                    "status": "success",
                    "channel": "card",
                    "metadata": metadata,
                    "customer": {"email": email},
                },
            }
        ).encode()


# ============================================================================
# HTTP mocking fixtures
# ============================================================================


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def backend_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def http_mock() -> Iterator[respx.MockRouter]:
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture
def radius_backend(
    http_mock: respx.MockRouter, backend_clock: Callable[[], datetime]
) -> FakeRadiusBackend:
    backend = FakeRadiusBackend(clock=backend_clock)
    http_mock.get(url__startswith=RADIUS_URL).mock(side_effect=backend)
    return backend


@pytest.fixture
def paystack(http_mock: respx.MockRouter) -> FakePaystack:
    return FakePaystack(http_mock)


@pytest_asyncio.fixture(autouse=True)
async def shared_http_client() -> AsyncGenerator[None, None]:
    from app.shared.core.http import close_http_client

    yield
    await close_http_client()


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Async SQLite engine on a temporary file, schema created from metadata."""
    from app.shared.db.base import Base
    import app.models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.sqlite'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app():
    """The real application."""
    from app.main import app as hotspot_app

    return hotspot_app


@pytest_asyncio.fixture
async def async_client(app, session_maker) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async test client. get_db hands out sessions bound to the test database."""
    from app.shared.db.session import get_db

    async def _test_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = _test_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_db, None)
