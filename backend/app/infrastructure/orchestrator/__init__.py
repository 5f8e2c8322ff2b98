"""
Challenge Deployer - Deployment Orchestrator

Per-requester challenge instances on Kubernetes:
- Challenge configuration store (TTL cache over the repository)
- Kubernetes cluster client (Deployment, Service, Ingress per instance)
- Deployment orchestrator (per-key lifecycle state machine)
"""

from .services.config_store import ChallengeConfigStore
from .services.deployment_manager import DeploymentOrchestrator
from .services.kube_client import KubeClient

__all__ = [
    "ChallengeConfigStore",
    "DeploymentOrchestrator",
    "KubeClient",
]
