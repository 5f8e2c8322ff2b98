"""
Kubernetes object builders for challenge deployments

Every object carries the managed-by and deployment key labels so that a
deployment's objects can be found (and garbage collected) by selector.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from kubernetes import client

from app.domain.challenges.entities import ChallengeDefinition

MANAGED_BY = "challenge-deployer"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_NAME = "app.kubernetes.io/name"
LABEL_KEY = "challenge-deployer.io/key"
LABEL_SUBDOMAIN = "challenge-deployer.io/subdomain"

ANNOTATION_REQUESTER = "challenge-deployer.io/requester-id"
ANNOTATION_CHALLENGE = "challenge-deployer.io/challenge-id"
ANNOTATION_FINGERPRINT = "challenge-deployer.io/definition-hash"
ANNOTATION_CREATED_AT = "challenge-deployer.io/created-at"

CONTAINER_NAME = "challenge"


def managed_selector() -> str:
    return f"{LABEL_MANAGED_BY}={MANAGED_BY}"


def key_selector(key: str) -> str:
    return f"{managed_selector()},{LABEL_KEY}={key}"


def subdomain_selector(subdomain: str) -> str:
    return f"{managed_selector()},{LABEL_SUBDOMAIN}={subdomain}"


def instance_labels(key: str, name: str) -> Dict[str, str]:
    """Common labels used for lookup and cleanup."""
    return {
        LABEL_MANAGED_BY: MANAGED_BY,
        LABEL_NAME: name,
        LABEL_KEY: key,
    }


def _resources(definition: ChallengeDefinition) -> Optional[client.V1ResourceRequirements]:
    requests = definition.resources.requests or None
    limits = definition.resources.limits or None
    if requests is None and limits is None:
        return None
    return client.V1ResourceRequirements(requests=requests, limits=limits)


def _env(definition: ChallengeDefinition) -> Optional[List[client.V1EnvVar]]:
    if not definition.environment:
        return None
    return [
        client.V1EnvVar(name=name, value=value)
        for name, value in sorted(definition.environment.items())
    ]


def build_deployment(
    definition: ChallengeDefinition,
    key: str,
    name: str,
    requester_id: str,
    pull_secret: Optional[str] = None,
) -> client.V1Deployment:
    """Single-replica Deployment running the challenge image."""
    labels = instance_labels(key, name)
    annotations = {
        ANNOTATION_REQUESTER: requester_id,
        ANNOTATION_CHALLENGE: definition.challenge_id,
        ANNOTATION_FINGERPRINT: definition.fingerprint(),
        ANNOTATION_CREATED_AT: datetime.now(timezone.utc).isoformat(),
    }
    image_pull_secrets = (
        [client.V1LocalObjectReference(name=pull_secret)] if pull_secret else None
    )

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=name,
            labels=labels,
            annotations=annotations,
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels={LABEL_KEY: key}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    automount_service_account_token=False,
                    image_pull_secrets=image_pull_secrets,
                    containers=[
                        client.V1Container(
                            name=CONTAINER_NAME,
                            image=definition.image,
                            ports=[client.V1ContainerPort(container_port=definition.port)],
                            env=_env(definition),
                            resources=_resources(definition),
                        )
                    ],
                ),
            ),
        ),
    )


def build_service(
    definition: ChallengeDefinition,
    key: str,
    name: str,
    service_type: str = "ClusterIP",
) -> client.V1Service:
    """Service fronting the challenge pod on the definition's port."""
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(name=name, labels=instance_labels(key, name)),
        spec=client.V1ServiceSpec(
            type=service_type,
            selector={LABEL_KEY: key},
            ports=[
                client.V1ServicePort(
                    name="http",
                    port=definition.port,
                    target_port=definition.port,
                )
            ],
        ),
    )


def build_ingress(
    key: str,
    name: str,
    host: str,
    subdomain: str,
    service_name: str,
    port: int,
    ingress_class_name: Optional[str] = None,
) -> client.V1Ingress:
    """Ingress routing ``host`` to the deployment's service."""
    labels = instance_labels(key, name)
    labels[LABEL_SUBDOMAIN] = subdomain

    return client.V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=client.V1ObjectMeta(name=name, labels=labels),
        spec=client.V1IngressSpec(
            ingress_class_name=ingress_class_name,
            rules=[
                client.V1IngressRule(
                    host=host,
                    http=client.V1HTTPIngressRuleValue(
                        paths=[
                            client.V1HTTPIngressPath(
                                path="/",
                                path_type="Prefix",
                                backend=client.V1IngressBackend(
                                    service=client.V1IngressServiceBackend(
                                        name=service_name,
                                        port=client.V1ServiceBackendPort(number=port),
                                    )
                                ),
                            )
                        ]
                    ),
                )
            ],
        ),
    )


def ingress_host(ingress: client.V1Ingress) -> Optional[str]:
    rules = (ingress.spec.rules if ingress.spec else None) or []
    return rules[0].host if rules else None


def ingress_service(ingress: client.V1Ingress) -> Optional[str]:
    rules = (ingress.spec.rules if ingress.spec else None) or []
    if not rules or not rules[0].http or not rules[0].http.paths:
        return None
    backend = rules[0].http.paths[0].backend
    return backend.service.name if backend and backend.service else None
