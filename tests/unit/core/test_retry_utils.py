from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.shared.core.retry import (
    READ_ONLY_MAX_ATTEMPTS,
    is_transient_http_error,
    retry_read_only,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://upstream.test")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("upstream", request=request, response=response)


@pytest.mark.asyncio
async def test_read_only_call_succeeds_after_transport_errors():
    attempts = 0

    @retry_read_only("test_read")
    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise httpx.ConnectError("refused")
        return "ok"

    with patch("asyncio.sleep", new=AsyncMock()):
        assert await flaky() == "ok"
    assert attempts == 3


@pytest.mark.asyncio
async def test_read_only_call_reraises_after_exhaustion():
    attempts = 0

    @retry_read_only("test_read")
    async def always_down():
        nonlocal attempts
        attempts += 1
        raise httpx.ReadTimeout("slow")

    with patch("asyncio.sleep", new=AsyncMock()):
        with pytest.raises(httpx.ReadTimeout):
            await always_down()
    assert attempts == READ_ONLY_MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_status_errors_are_not_retried():
    attempts = 0

    @retry_read_only("test_read")
    async def rejected():
        nonlocal attempts
        attempts += 1
        raise _status_error(503)

    with pytest.raises(httpx.HTTPStatusError):
        await rejected()
    assert attempts == 1


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (_status_error(500), True),
        (_status_error(503), True),
        (_status_error(404), False),
        (_status_error(401), False),
        (ValueError("nope"), False),
    ],
)
def test_is_transient_http_error(exc, expected):
    assert is_transient_http_error(exc) is expected
