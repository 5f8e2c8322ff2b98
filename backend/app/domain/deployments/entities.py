"""
Challenge Deployer - Deployment Domain Entities
Deployment requests, records and the per-key lifecycle state machine
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from app.core.exceptions import TransitionError

from .naming import deployment_key, object_name


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentState(str, Enum):
    """Deployment lifecycle states."""
    REQUESTED = "Requested"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    FAILED = "Failed"
    TERMINATING = "Terminating"
    ABSENT = "Absent"


ALLOWED_TRANSITIONS: Dict[DeploymentState, Tuple[DeploymentState, ...]] = {
    DeploymentState.REQUESTED: (DeploymentState.PROVISIONING, DeploymentState.FAILED),
    DeploymentState.PROVISIONING: (DeploymentState.READY, DeploymentState.FAILED),
    DeploymentState.READY: (DeploymentState.TERMINATING, DeploymentState.FAILED),
    DeploymentState.TERMINATING: (DeploymentState.ABSENT, DeploymentState.FAILED),
    DeploymentState.FAILED: (DeploymentState.ABSENT,),
    DeploymentState.ABSENT: (),
}

# States in which a resubmitted deploy returns the existing record untouched
IN_SERVICE_STATES = (DeploymentState.READY, DeploymentState.PROVISIONING)


@dataclass(frozen=True)
class DeploymentRequest:
    """Request to deploy one challenge for one requester."""
    requester_id: str
    challenge_id: str
    requested_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return deployment_key(self.requester_id, self.challenge_id)


@dataclass
class DeploymentRecord:
    """
    Orchestrator-side view of one deployment.

    Exactly one live record exists per deployment key.
    """
    key: str
    requester_id: str
    challenge_id: str
    state: DeploymentState = DeploymentState.REQUESTED
    url: Optional[str] = None
    cause: Optional[str] = None
    workload_ready: Optional[bool] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    history: List[Tuple[DeploymentState, DeploymentState]] = field(default_factory=list)

    @classmethod
    def for_request(
        cls,
        request: DeploymentRequest,
        ttl_seconds: Optional[int] = None,
    ) -> "DeploymentRecord":
        now = utcnow()
        return cls(
            key=request.key,
            requester_id=request.requester_id,
            challenge_id=request.challenge_id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
        )

    @property
    def workload_name(self) -> str:
        return object_name(self.key)

    @property
    def service_name(self) -> str:
        return object_name(self.key)

    @property
    def route_name(self) -> str:
        return object_name(self.key)

    def can_transition(self, to_state: DeploymentState) -> bool:
        return to_state in ALLOWED_TRANSITIONS[self.state]

    def transition(self, to_state: DeploymentState, cause: Optional[str] = None) -> None:
        """Move to a new state, recording the failure cause where given."""
        if not self.can_transition(to_state):
            raise TransitionError(self.state.value, to_state.value)
        self.history.append((self.state, to_state))
        self.state = to_state
        self.updated_at = utcnow()
        if to_state == DeploymentState.FAILED:
            self.cause = cause or self.cause or "UNKNOWN"
        elif cause is not None:
            self.cause = cause

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def snapshot(self) -> "DeploymentRecord":
        """Detached copy handed out to callers."""
        return replace(self, history=list(self.history))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "requesterId": self.requester_id,
            "challengeId": self.challenge_id,
            "state": self.state.value,
            "url": self.url,
            "cause": self.cause,
            "workloadReady": self.workload_ready,
            "objects": {
                "workload": self.workload_name,
                "service": self.service_name,
                "route": self.route_name,
            },
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }
