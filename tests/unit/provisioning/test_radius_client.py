from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from app.modules.provisioning.domain.provisioning.radius_client_impl import (
    RadiusClient,
    SubscriberProfile,
    normalize_envelope,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    ConfigurationError,
    ServicePlanUnavailableError,
    SubscriberBackendError,
    SubscriberBackendProtocolError,
    TransientInfrastructureError,
)


def test_positional_and_keyed_envelopes_normalize_alike() -> None:
    positional = normalize_envelope([0, [{"username": "ada"}]])
    keyed = normalize_envelope({"0": "0", "1": {"username": "ada"}, "expiry": "2026-01-01"})

    assert positional.ok and keyed.ok
    assert positional.payload == keyed.payload == {"username": "ada"}
    assert keyed.values["expiry"] == "2026-01-01"


def test_failure_envelope_exposes_message() -> None:
    envelope = normalize_envelope([3, "Invalid service"])
    assert not envelope.ok
    assert envelope.message == "Invalid service"
    assert normalize_envelope([3, None]).message == "Unknown error from subscriber backend"


@pytest.mark.parametrize("body", ["ok", 42, None, {"1": "no code"}, [True, "x"], ["zero", "x"]])
def test_unrecognized_envelopes_fail_loudly(body: object) -> None:
    with pytest.raises(SubscriberBackendProtocolError):
        normalize_envelope(body)


def test_missing_credentials_is_a_configuration_error(monkeypatch) -> None:
    settings = get_settings()
    monkeypatch.setattr(settings, "RADIUS_API_USER", None)
    monkeypatch.setattr(settings, "RADIUS_API_PASS", None)
    with pytest.raises(ConfigurationError):
        RadiusClient()


@pytest.mark.asyncio
async def test_get_account_reads_root_level_expiry(radius_backend, fixed_now) -> None:
    radius_backend.add_account("0803", fixed_now + timedelta(days=5), srvid=7, owner="alice")

    account = await RadiusClient().get_account("0803")

    assert account is not None
    assert account.expiry == fixed_now + timedelta(days=5)
    assert account.srvid == 7
    assert account.owner == "alice"
    assert account.enabled is True
    params = radius_backend.calls_to("get_userdata")[0]
    assert params == {"username": "0803"}


@pytest.mark.asyncio
async def test_get_account_prefers_root_values_over_record(http_mock) -> None:
    http_mock.get(url__startswith="http://radius.test").respond(
        json={
            "0": 0,
            "1": [{"username": "ada", "expiry": "2020-01-01 00:00:00", "totalbytes": "1"}],
            "expiry": "2026-05-01 12:00:00",
            "totalbytes": "2048",
        }
    )

    account = await RadiusClient().get_account("ada")

    assert account.expiry == datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert account.totalbytes == 2048


@pytest.mark.asyncio
async def test_get_account_sentinel_expiry_is_unset(radius_backend) -> None:
    radius_backend.add_account("0803", None)
    account = await RadiusClient().get_account("0803")
    assert account.expiry is None


@pytest.mark.asyncio
async def test_get_account_not_found_returns_none(radius_backend) -> None:
    assert await RadiusClient().get_account("nobody") is None


@pytest.mark.asyncio
async def test_get_account_other_errors_raise(http_mock) -> None:
    http_mock.get(url__startswith="http://radius.test").respond(json=[5, "Access denied"])
    with pytest.raises(SubscriberBackendError, match="Access denied"):
        await RadiusClient().get_account("ada")


@pytest.mark.asyncio
async def test_read_only_calls_retry_transport_errors(radius_backend) -> None:
    radius_backend.failures["get_userdata"] = httpx.ConnectError

    with pytest.raises(TransientInfrastructureError):
        await RadiusClient().get_account("0803")

    assert len(radius_backend.calls_to("get_userdata")) == 3


@pytest.mark.asyncio
async def test_upstream_5xx_is_transient(radius_backend) -> None:
    radius_backend.failures["get_userdata"] = 502
    with pytest.raises(TransientInfrastructureError):
        await RadiusClient().get_account("0803")
    assert len(radius_backend.calls_to("get_userdata")) == 1


@pytest.mark.asyncio
async def test_upstream_4xx_is_a_backend_rejection(radius_backend) -> None:
    radius_backend.failures["get_srv"] = 403
    with pytest.raises(SubscriberBackendError) as excinfo:
        await RadiusClient().get_plan(7)
    assert not isinstance(excinfo.value, TransientInfrastructureError)


@pytest.mark.asyncio
async def test_add_credit_is_never_retried(radius_backend) -> None:
    radius_backend.add_account("0803", None)
    radius_backend.failures["add_credits"] = httpx.ReadTimeout

    with pytest.raises(TransientInfrastructureError):
        await RadiusClient().add_credit("0803", days=30)

    assert len(radius_backend.calls_to("add_credits")) == 1


@pytest.mark.asyncio
async def test_add_credit_sends_days_and_returns_confirmed_expiry(radius_backend, fixed_now) -> None:
    radius_backend.add_account("0803", None)

    result = await RadiusClient().add_credit("0803", days=30, totalbytes=2_097_152)

    params = radius_backend.calls_to("add_credits")[0]
    assert params["expiry"] == "30"
    assert params["unit"] == "DAY"
    assert params["totalbytes"] == "2097152"
    assert params["dlbytes"] == "0"
    assert result.expiry == fixed_now + timedelta(days=30)


@pytest.mark.asyncio
async def test_add_credit_without_echoed_expiry(radius_backend) -> None:
    radius_backend.add_account("0803", None)
    radius_backend.echo_expiry = False

    result = await RadiusClient().add_credit("0803", days=1)

    assert result.expiry is None


@pytest.mark.asyncio
async def test_add_credit_failure_code_raises(radius_backend) -> None:
    with pytest.raises(SubscriberBackendError, match="User not found"):
        await RadiusClient().add_credit("ghost", days=30)


@pytest.mark.asyncio
async def test_create_account_sends_profile_and_expiration(radius_backend, fixed_now) -> None:
    profile = SubscriberProfile(
        username="0803",
        password="1234",
        firstname="Ada",
        lastname="Obi",
        email="ada@example.com",
        srvid=7,
    )

    await RadiusClient().create_account(profile, fixed_now + timedelta(hours=1))

    params = radius_backend.calls_to("new_user")[0]
    assert params["expiration"] == "2026-03-15 10:30:00"
    assert params["srvid"] == "7"
    assert params["phone"] == "0803"
    assert params["enabled"] == "1"


@pytest.mark.asyncio
async def test_create_account_rejection_raises(radius_backend) -> None:
    radius_backend.add_account("0803", None)
    profile = SubscriberProfile("0803", "1234", "Ada", "Obi", "ada@example.com", 7)
    with pytest.raises(SubscriberBackendError, match="already exists"):
        await RadiusClient().create_account(profile, datetime.now(timezone.utc))


@pytest.mark.asyncio
async def test_get_plan_totals_all_price_components(radius_backend) -> None:
    plan = radius_backend.add_plan(7, price="250.00")
    plan["unitpricetax"] = "50.00"

    result = await RadiusClient().get_plan(7)

    assert result.total_price == Decimal("300.00")
    assert result.timeunitexp == 30
    assert result.is_unlimited


@pytest.mark.asyncio
@pytest.mark.parametrize(("enabled", "reason"), [(False, "disabled"), (None, "not found")])
async def test_unavailable_plans_are_reportable(radius_backend, enabled, reason) -> None:
    if enabled is not None:
        radius_backend.add_plan(7, enabled=enabled)

    with pytest.raises(ServicePlanUnavailableError) as excinfo:
        await RadiusClient().get_plan(7)

    assert excinfo.value.details["reason"] == reason
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_list_plans_returns_enabled_only(radius_backend) -> None:
    radius_backend.add_plan(1, srvname="Daily", days=1)
    radius_backend.add_plan(2, srvname="Legacy", enabled=False)
    radius_backend.add_plan(3, srvname="Weekly", days=7)

    plans = await RadiusClient().list_plans()

    assert [plan.srvname for plan in plans] == ["Daily", "Weekly"]
    assert "srvid" not in radius_backend.calls_to("get_srv")[0]
