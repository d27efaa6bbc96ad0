"""
Tests for app/shared/core/exceptions.py and error governance
"""
import json
from unittest.mock import MagicMock, patch

from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import (
    AlreadyProcessedError,
    FreePlanNoPaymentError,
    HotspotBillingException,
    PartialFailureError,
    PermanentValidationError,
    ServicePlanUnavailableError,
    SignatureInvalidError,
    SubscriberBackendError,
    SubscriberBackendProtocolError,
    TransientInfrastructureError,
)


def _request(path: str = "/api/v1/provisioning/webhook/paystack") -> MagicMock:
    request = MagicMock()
    request.url.path = path
    request.method = "POST"
    return request


class TestHotspotBillingException:
    def test_defaults(self):
        exc = HotspotBillingException(message="Simple error")

        assert exc.message == "Simple error"
        assert exc.code == "internal_error"
        assert exc.status_code == 500
        assert exc.details == {}
        assert str(exc) == "Simple error"

    def test_status_codes_follow_redelivery_semantics(self):
        assert SignatureInvalidError().status_code == 400
        assert AlreadyProcessedError("ref").status_code == 200
        assert PartialFailureError("add_credits failed").status_code == 200
        assert TransientInfrastructureError("down").status_code == 503
        assert PermanentValidationError("bad").status_code == 400

    def test_hierarchy(self):
        assert isinstance(FreePlanNoPaymentError(), PermanentValidationError)
        assert isinstance(SubscriberBackendProtocolError("shape"), SubscriberBackendError)
        assert isinstance(ServicePlanUnavailableError(7, "disabled"), SubscriberBackendError)
        assert not isinstance(TransientInfrastructureError("down"), SubscriberBackendError)


class TestErrorGovernance:
    def test_application_error_body(self):
        response = handle_exception(_request(), SignatureInvalidError(), error_id="err-1")

        assert response.status_code == 400
        assert json.loads(response.body) == {
            "error": {
                "message": "Invalid signature",
                "code": "signature_invalid",
                "id": "err-1",
                "details": None,
            }
        }

    def test_unexpected_errors_never_leak(self):
        response = handle_exception(_request(), RuntimeError("password=hunter2"))

        body = json.loads(response.body)
        assert response.status_code == 500
        assert body["error"]["code"] == "internal_error"
        assert "hunter2" not in body["error"]["message"]

    def test_value_errors_are_bad_requests(self):
        response = handle_exception(_request(), ValueError("plan_days must be non-negative"))
        assert response.status_code == 400
        assert json.loads(response.body)["error"]["code"] == "value_error"

    def test_production_hides_unsafe_details(self):
        settings = MagicMock(ENVIRONMENT="production")
        with patch("app.shared.core.error_governance.get_settings", return_value=settings):
            unsafe = handle_exception(
                _request(), SubscriberBackendError("Access denied", details={"operation": "get_srv"})
            )
            safe = handle_exception(_request(), FreePlanNoPaymentError(details={"service_plan": {"id": 3}}))

        unsafe_body = json.loads(unsafe.body)["error"]
        assert unsafe_body["message"] == "An error occurred while processing your request"
        assert unsafe_body["details"] is None
        safe_body = json.loads(safe.body)["error"]
        assert safe_body["code"] == "FREE_PLAN_NO_PAYMENT"
        assert safe_body["details"] == {"service_plan": {"id": 3}}
