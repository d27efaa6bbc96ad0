"""
End-to-end tests through the FastAPI app: real routing, exception handlers
and middleware, with Paystack and the subscriber backend mocked over HTTP.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models.provisioning import AccountOwner, HotspotLocation, PaymentStatus, RenewalTransaction

WEBHOOK_URL = "/api/v1/provisioning/webhook/paystack"


@pytest.fixture
def backend_clock() -> Callable[[], datetime]:
    # The app runs on the wall clock here, so the fake backend must too.
    return lambda: datetime.now(timezone.utc)


def _close_to(raw: str, expected: datetime, tolerance: timedelta = timedelta(minutes=1)) -> bool:
    return abs(datetime.fromisoformat(raw) - expected) <= tolerance


@pytest.mark.asyncio
async def test_health_reports_database(async_client) -> None:
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["database"]["status"] == "up"


@pytest.mark.asyncio
async def test_liveness_and_request_id(async_client) -> None:
    response = await async_client.get("/health/live", headers={"X-Request-ID": "req-42"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-42"
    generated = await async_client.get("/health/live")
    assert generated.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_metrics_are_exposed(async_client) -> None:
    response = await async_client.get("/metrics")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_bad_signature_is_400_with_error_body(async_client, paystack) -> None:
    body = paystack.charge_success("ref-1", 30000, {"username": "0803", "srvid": 7})

    response = await async_client.post(
        WEBHOOK_URL,
        content=body,
        headers={"Content-Type": "application/json", "x-paystack-signature": "0" * 128},
    )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "signature_invalid"
    assert error["message"] == "Invalid signature"


@pytest.mark.asyncio
async def test_webhook_processes_once_then_acknowledges_replays(
    async_client, paystack, radius_backend, session_maker
) -> None:
    radius_backend.add_account("0803", None)
    metadata = {"custom_fields": paystack.custom_fields(username="0803", srvid=7, timeunitexp=30)}
    paystack.verify("ref-api", 30000, metadata)
    body = paystack.charge_success("ref-api", 30000, metadata)
    headers = {"Content-Type": "application/json", "x-paystack-signature": paystack.sign(body)}

    first = await async_client.post(WEBHOOK_URL, content=body, headers=headers)
    second = await async_client.post(WEBHOOK_URL, content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert _close_to(first.json()["new_expiry"], datetime.now(timezone.utc) + timedelta(days=30))
    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"
    assert len(radius_backend.calls_to("add_credits")) == 1

    async with session_maker() as session:
        rows = (await session.execute(select(RenewalTransaction))).scalars().all()
    assert [row.payment_status for row in rows] == [PaymentStatus.SUCCESS.value]


@pytest.mark.asyncio
async def test_webhook_outage_before_mutation_asks_for_redelivery(
    async_client, paystack, radius_backend, session_maker
) -> None:
    radius_backend.failures["get_userdata"] = 502
    metadata = {"username": "0803", "srvid": 7}
    paystack.verify("ref-down", 30000, metadata)
    body = paystack.charge_success("ref-down", 30000, metadata)

    response = await async_client.post(
        WEBHOOK_URL,
        content=body,
        headers={"Content-Type": "application/json", "x-paystack-signature": paystack.sign(body)},
    )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "transient_infrastructure_error"
    async with session_maker() as session:
        assert (await session.execute(select(RenewalTransaction))).scalars().all() == []


@pytest.mark.asyncio
async def test_free_plan_payment_initiation_is_refused(
    async_client, paystack, radius_backend, session_maker
) -> None:
    async with session_maker() as session:
        session.add(
            HotspotLocation(
                id="loc-1",
                name="Campus",
                account_creation_enabled=True,
                account_creation_price=Decimal("200.00"),
            )
        )
        await session.commit()
    radius_backend.add_plan(3, srvname="Free Daily", price="0.00", days=1)
    initialize = paystack.initialize()

    response = await async_client.post(
        "/api/v1/provisioning/account-creation/payment",
        json={
            "location_id": "loc-1",
            "service_plan_id": 3,
            "user_info": {
                "first_name": "Ada",
                "last_name": "Obi",
                "email": "ada@example.com",
                "phone": "08031234567",
            },
        },
    )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "FREE_PLAN_NO_PAYMENT"
    assert error["details"]["service_plan"]["id"] == 3
    assert initialize.call_count == 0


@pytest.mark.asyncio
async def test_register_and_check_user(async_client, radius_backend) -> None:
    radius_backend.add_plan(3, srvname="Free Daily", price="0.00", days=1)

    registered = await async_client.post(
        "/api/v1/provisioning/radius/register-user",
        json={
            "srvid": 3,
            "user_info": {
                "first_name": "Ada",
                "last_name": "Obi",
                "email": "ada@example.com",
                "phone": "08031234567",
                "password": "4321",
            },
        },
    )
    checked = await async_client.post(
        "/api/v1/provisioning/radius/check-user", json={"username": "08031234567"}
    )
    duplicate = await async_client.post(
        "/api/v1/provisioning/radius/register-user",
        json={
            "srvid": 3,
            "user_info": {
                "first_name": "Ada",
                "last_name": "Obi",
                "email": "ada@example.com",
                "phone": "08031234567",
                "password": "4321",
            },
        },
    )

    assert registered.status_code == 200
    assert registered.json()["expiry"].endswith("23:59:59+00:00")
    assert checked.json()["exists"] is True
    assert checked.json()["srvid"] == 3
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "username_taken"


@pytest.mark.asyncio
async def test_service_plans(async_client, radius_backend) -> None:
    radius_backend.add_plan(1, srvname="Daily", price="100.00", days=1)
    radius_backend.add_plan(2, srvname="Retired", enabled=False)

    listing = await async_client.get("/api/v1/provisioning/radius/service-plans")
    single = await async_client.get("/api/v1/provisioning/radius/service-plans/1")
    disabled = await async_client.get("/api/v1/provisioning/radius/service-plans/2")

    assert [plan["srvname"] for plan in listing.json()["plans"]] == ["Daily"]
    assert single.json()["total_price"] == "100.00"
    assert disabled.status_code == 400
    assert disabled.json()["error"]["code"] == "service_plan_unavailable"


@pytest.mark.asyncio
async def test_renew_endpoint_ignores_caller_expiry(async_client, paystack, radius_backend) -> None:
    radius_backend.add_account("0803", None)
    paystack.verify("ref-renew", 30000, {"username": "0803", "srvid": 7})

    response = await async_client.post(
        "/api/v1/provisioning/renew",
        json={
            "reference": "ref-renew",
            "username": "0803",
            "srvid": 7,
            "timeunitexp": 30,
            "current_expiry": "2099-01-01 00:00:00",
        },
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert _close_to(response.json()["new_expiry"], datetime.now(timezone.utc) + timedelta(days=30))


@pytest.mark.asyncio
async def test_invalid_request_body_is_422(async_client) -> None:
    response = await async_client.post("/api/v1/provisioning/renew", json={"reference": "ref-1"})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "request_validation_error"
    assert {tuple(item["loc"]) for item in error["details"]} >= {("body", "username"), ("body", "srvid")}


@pytest.mark.asyncio
async def test_owner_commission_summary(async_client, session_maker) -> None:
    owner_id = uuid4()
    async with session_maker() as session:
        session.add(
            AccountOwner(id=owner_id, owner_username="alice", name="Alice", commission_rate=Decimal("10.00"))
        )
        session.add(
            RenewalTransaction(
                paystack_reference="ref-1",
                payment_status=PaymentStatus.SUCCESS.value,
                username="0803",
                account_owner_id=owner_id,
                owner_attributed=True,
                commission_amount=Decimal("30.00"),
            )
        )
        await session.commit()

    found = await async_client.get(f"/api/v1/provisioning/owners/{owner_id}/commissions")
    missing = await async_client.get(f"/api/v1/provisioning/owners/{uuid4()}/commissions")

    assert found.status_code == 200
    assert found.json()["total_commissions"] == "30.00"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_wifi_pin_lookup(async_client, paystack, radius_backend) -> None:
    radius_backend.add_plan(7)
    metadata = {
        "custom_fields": paystack.custom_fields(
            purpose="Combined Account Creation & Service Plan",
            username="08031234567",
            customer_name="Ada Obi",
            srvid=7,
            service_plan_name="Monthly 30",
            account_creation_fee="200.00",
            service_plan_price="300.00",
            timeunitexp=30,
        )
    }
    paystack.verify("ACCT_PIN", 50000, metadata)
    body = paystack.charge_success("ACCT_PIN", 50000, metadata)

    delivered = await async_client.post(
        WEBHOOK_URL,
        content=body,
        headers={"Content-Type": "application/json", "x-paystack-signature": paystack.sign(body)},
    )
    found = await async_client.get(
        "/api/v1/provisioning/account-creation/ACCT_PIN/pin", params={"phone": "08031234567"}
    )
    wrong_phone = await async_client.get(
        "/api/v1/provisioning/account-creation/ACCT_PIN/pin", params={"phone": "0809999"}
    )
    no_phone = await async_client.get("/api/v1/provisioning/account-creation/ACCT_PIN/pin")

    assert delivered.json()["status"] == "processed"
    assert "wifi_pin" not in delivered.json()
    assert found.status_code == 200
    assert found.json()["pin"] == radius_backend.calls_to("new_user")[0]["password"]
    assert wrong_phone.status_code == 404
    assert no_phone.status_code == 422
