"""Orchestrator services."""

from .config_store import ChallengeConfigStore
from .deployment_manager import ClusterClient, DeploymentOrchestrator
from .kube_client import KubeClient

__all__ = [
    "ChallengeConfigStore",
    "ClusterClient",
    "DeploymentOrchestrator",
    "KubeClient",
]
