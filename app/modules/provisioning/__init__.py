from app.modules.provisioning.api.v1.provisioning import router
from app.modules.provisioning.domain.provisioning import (
    ProvisioningOrchestrator,
    RegistrationService,
    WebhookHandler,
)

__all__ = [
    "router",
    "ProvisioningOrchestrator",
    "RegistrationService",
    "WebhookHandler",
]
