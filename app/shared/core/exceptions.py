from typing import Optional, Dict, Any


class HotspotBillingException(Exception):
    """Base exception for all hotspot billing errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class SignatureInvalidError(HotspotBillingException):
    """Webhook signature missing or wrong. Discarded, never retried."""

    def __init__(self, message: str = "Invalid signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="signature_invalid", status_code=400, details=details)


class AlreadyProcessedError(HotspotBillingException):
    """The payment reference has already been claimed by another unit of work."""

    def __init__(self, reference: str, payment_status: Optional[str] = None):
        super().__init__(
            "Already processed",
            code="already_processed",
            status_code=200,
            details={"reference": reference, "payment_status": payment_status},
        )
        self.reference = reference
        self.payment_status = payment_status


class TransientInfrastructureError(HotspotBillingException):
    """Ledger or upstream outage. Callers should retry / redeliver."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="transient_infrastructure_error", status_code=503, details=details
        )


class PermanentValidationError(HotspotBillingException):
    """Bad or missing input that no amount of retrying will fix."""

    def __init__(self, message: str, code: str = "validation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class FreePlanNoPaymentError(PermanentValidationError):
    """Payment initiation attempted for a zero-cost plan."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "Payment not required for free service plans. Please proceed with direct account creation.",
            code="FREE_PLAN_NO_PAYMENT",
            details=details,
        )


class PaymentVerificationError(PermanentValidationError):
    """The gateway reports the transaction as not successful."""

    def __init__(self, message: str = "Payment verification failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="payment_not_successful", details=details)


class PartialFailureError(HotspotBillingException):
    """Payment confirmed but the subscriber backend mutation failed after the claim."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="partial_failure", status_code=200, details=details)


class SubscriberBackendError(HotspotBillingException):
    """The subscriber backend rejected an operation."""

    def __init__(
        self,
        message: str,
        code: str = "subscriber_backend_error",
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


class SubscriberBackendProtocolError(SubscriberBackendError):
    """The subscriber backend answered with an envelope we cannot parse."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="subscriber_backend_protocol_error", details=details)


class SubscriberNotFoundError(SubscriberBackendError):
    def __init__(self, username: str):
        super().__init__(
            "User not found",
            code="subscriber_not_found",
            status_code=404,
            details={"username": username},
        )


class ServicePlanUnavailableError(SubscriberBackendError):
    """Plan is disabled or does not exist. Reportable, not a retry candidate."""

    def __init__(self, srvid: int, reason: str):
        super().__init__(
            f"Service plan {srvid} is unavailable: {reason}",
            code="service_plan_unavailable",
            status_code=400,
            details={"srvid": srvid, "reason": reason},
        )


class ConfigurationError(HotspotBillingException):
    """Raised when application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(HotspotBillingException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)
