"""Azure API Mock for Integration Testing.

In-memory stand-in for the Azure Resource Manager calls the engine makes,
so kinds and the manifest runner can be exercised without Azure.

Key Features:
- Resource groups and generic resources addressed by ARM ID
- Provisioning-state progressions (Accepted → Succeeded, Deleting → gone)
- Error injection per operation (get, put, patch, delete)
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext(provisioning_steps=2) as ctx:
        client = ArmClient.from_config(azure_config)
        ...
        assert ctx.state.resource_count == 1
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential
from .resources import (
    MockArmObject,
    MockResourceClient,
    MockResourceState,
    make_http_error,
)

__all__ = [
    "MockArmObject",
    "MockAzureContext",
    "MockManagedIdentityCredential",
    "MockResourceClient",
    "MockResourceState",
    "make_http_error",
]
