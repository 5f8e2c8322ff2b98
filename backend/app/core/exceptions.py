"""
Challenge Deployer - Error taxonomy

Every error raised across a component boundary derives from DeploymentError
and carries a stable error code plus the HTTP status it maps to.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for all domain errors."""

    code: str = "DEPLOYMENT_ERROR"
    status_code: int = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ValidationError(DeploymentError):
    """Malformed deployment request."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ChallengeNotFoundError(DeploymentError, LookupError):
    """Unknown challenge identifier."""

    code = "CHALLENGE_NOT_FOUND"
    status_code = 404

    def __init__(self, challenge_id: str):
        self.challenge_id = challenge_id
        super().__init__(f"Challenge not found: {challenge_id}")


class RepositoryUnavailableError(DeploymentError):
    """Challenge repository cannot be reached."""

    code = "REPOSITORY_UNAVAILABLE"
    status_code = 503


class ProvisioningError(DeploymentError):
    """Terminal cluster-side failure."""

    code = "PROVISIONING_FAILED"
    status_code = 502

    def __init__(self, cause_code: str, message: Optional[str] = None):
        self.cause_code = cause_code
        super().__init__(message or f"Provisioning failed: {cause_code}")


class InvalidDefinitionError(ProvisioningError):
    """Stored challenge definition is malformed."""

    def __init__(self, challenge_id: str, reason: str):
        self.challenge_id = challenge_id
        super().__init__(
            "INVALID_DEFINITION",
            f"Invalid definition for challenge {challenge_id}: {reason}",
        )


class RouteConflictError(DeploymentError):
    """Subdomain already bound to a different workload."""

    code = "ROUTE_CONFLICT"
    status_code = 409

    def __init__(self, host: str, bound_key: Optional[str] = None):
        self.host = host
        self.bound_key = bound_key
        super().__init__(f"Route {host} is bound to another deployment")


class TransitionError(DeploymentError):
    """Illegal deployment state transition."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, from_state: str, to_state: str, reason: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(reason or f"Cannot transition from {from_state} to {to_state}")
