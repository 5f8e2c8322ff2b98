"""
Orchestrator Models - Cluster-facing data classes
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ClusterState(str, Enum):
    """Readiness of a deployment's workload as seen by the control plane."""
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"
    ABSENT = "Absent"


@dataclass(frozen=True)
class WorkloadHandle:
    """Names of the workload and service created for one deployment key."""
    key: str
    namespace: str
    workload_name: str
    service_name: str
    port: int


@dataclass(frozen=True)
class WorkloadStatus:
    """Polled workload state with the reason for a failure, if any."""
    state: ClusterState
    reason: Optional[str] = None


@dataclass(frozen=True)
class WorkloadSummary:
    """A managed workload read back from the cluster."""
    key: str
    requester_id: Optional[str]
    challenge_id: Optional[str]
    url: Optional[str]
    has_route: bool
    created_at: Optional[datetime] = None
