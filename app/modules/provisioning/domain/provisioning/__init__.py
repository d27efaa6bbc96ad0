"""Payment-driven provisioning services."""

from app.modules.provisioning.domain.provisioning.orchestrator import (
    ProvisioningOrchestrator,
    ProvisioningOutcome,
)
from app.modules.provisioning.domain.provisioning.paystack_client_impl import (
    PaymentEvent,
    PaystackClient,
)
from app.modules.provisioning.domain.provisioning.paystack_webhook_impl import (
    WebhookHandler,
)
from app.modules.provisioning.domain.provisioning.radius_client_impl import RadiusClient
from app.modules.provisioning.domain.provisioning.registration import (
    CustomerInfo,
    RegistrationService,
)

__all__ = [
    "CustomerInfo",
    "PaymentEvent",
    "PaystackClient",
    "ProvisioningOrchestrator",
    "ProvisioningOutcome",
    "RadiusClient",
    "RegistrationService",
    "WebhookHandler",
]
