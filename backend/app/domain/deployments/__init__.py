"""
Deployments domain package.
"""

from .entities import (
    ALLOWED_TRANSITIONS,
    IN_SERVICE_STATES,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentState,
)
from .naming import deployment_key, object_name, subdomain_for, validate_identifier

__all__ = [
    "ALLOWED_TRANSITIONS",
    "IN_SERVICE_STATES",
    "DeploymentRecord",
    "DeploymentRequest",
    "DeploymentState",
    "deployment_key",
    "object_name",
    "subdomain_for",
    "validate_identifier",
]
