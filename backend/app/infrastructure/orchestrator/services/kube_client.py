"""
Kubernetes Cluster Client - workload, service and route objects per deployment

All objects live in one namespace and are named after the deployment key.
The official kubernetes client is synchronous, so every call runs in a worker
thread. Transient control-plane errors are retried with bounded exponential
backoff; everything else surfaces as a terminal ProvisioningError.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from app.core.config import Settings
from app.core.exceptions import ProvisioningError, RouteConflictError
from app.domain.challenges.entities import ChallengeDefinition
from app.domain.deployments.naming import object_name

from ..models import ClusterState, WorkloadHandle, WorkloadStatus, WorkloadSummary
from .kube_manifests import (
    ANNOTATION_CHALLENGE,
    ANNOTATION_CREATED_AT,
    ANNOTATION_FINGERPRINT,
    ANNOTATION_REQUESTER,
    LABEL_KEY,
    build_deployment,
    build_ingress,
    build_service,
    ingress_host,
    ingress_service,
    key_selector,
    managed_selector,
    subdomain_selector,
)

logger = structlog.get_logger(__name__)

TRANSIENT_STATUSES = {429, 500, 502, 503, 504}

# Container waiting reasons that will not resolve without a new definition
FAILED_WAITING_REASONS = {
    "ErrImagePull",
    "ImagePullBackOff",
    "InvalidImageName",
    "CreateContainerConfigError",
    "CrashLoopBackOff",
}


def load_kube_config(kubeconfig_path: Optional[str] = None) -> None:
    """Load in-cluster credentials, falling back to a kubeconfig file."""
    try:
        config.load_incluster_config()
    except ConfigException:
        config.load_kube_config(config_file=kubeconfig_path)


def _body_reason(exc: ApiException) -> Optional[str]:
    """Machine-readable reason from a Status body (e.g. "AlreadyExists")."""
    try:
        return json.loads(exc.body or "{}").get("reason")
    except (TypeError, ValueError, AttributeError):
        return None


def is_already_exists(exc: BaseException) -> bool:
    return (
        isinstance(exc, ApiException)
        and exc.status == 409
        and _body_reason(exc) == "AlreadyExists"
    )


def is_transient(exc: BaseException) -> bool:
    """Timeouts, throttling, server errors and optimistic-concurrency conflicts."""
    if isinstance(exc, ApiException):
        if exc.status == 409:
            return not is_already_exists(exc)
        return exc.status in TRANSIENT_STATUSES
    return isinstance(exc, (Urllib3HTTPError, ConnectionError, TimeoutError))


def to_provisioning_error(exc: BaseException) -> ProvisioningError:
    """Map a control-plane failure to a ProvisioningError cause code."""
    if isinstance(exc, ApiException):
        detail = f"{exc.reason or ''} {exc.body or ''}".lower()
        if exc.status in (400, 422):
            cause = "INVALID_DEFINITION"
        elif exc.status == 403 and "quota" in detail:
            cause = "QUOTA_EXCEEDED"
        elif exc.status in (401, 403):
            cause = "FORBIDDEN"
        elif is_transient(exc):
            cause = "CLUSTER_UNAVAILABLE"
        else:
            cause = "CLUSTER_ERROR"
        return ProvisioningError(cause, f"Kubernetes API error {exc.status}: {exc.reason}")
    if is_transient(exc):
        return ProvisioningError("CLUSTER_UNAVAILABLE", f"Kubernetes API unreachable: {exc}")
    return ProvisioningError("CLUSTER_ERROR", str(exc))


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Transient Kubernetes error, retrying",
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


_CLUSTER_ERRORS = (ApiException, Urllib3HTTPError, ConnectionError, TimeoutError)


class KubeClient:
    """
    Typed interface to the control plane, scoped to one namespace and one
    base routing domain.
    """

    def __init__(
        self,
        settings: Settings,
        core_api: Optional[client.CoreV1Api] = None,
        apps_api: Optional[client.AppsV1Api] = None,
        networking_api: Optional[client.NetworkingV1Api] = None,
    ):
        self._namespace = settings.k8s_namespace
        self._base_domain = settings.base_domain
        self._container_secret = settings.container_secret or None
        self._service_type = settings.service_type
        self._ingress_class_name = settings.ingress_class_name
        self._retry_attempts = settings.cluster_retry_attempts
        self._retry_backoff = settings.cluster_retry_backoff
        self._retry_backoff_max = settings.cluster_retry_backoff_max

        self._core = core_api or client.CoreV1Api()
        self._apps = apps_api or client.AppsV1Api()
        self._networking = networking_api or client.NetworkingV1Api()

    @classmethod
    def from_settings(cls, settings: Settings) -> "KubeClient":
        """Load cluster credentials and build the API clients."""
        load_kube_config(settings.kubeconfig_path)
        logger.info("Kubernetes client configured", namespace=settings.k8s_namespace)
        return cls(settings)

    @property
    def namespace(self) -> str:
        return self._namespace

    def host_for(self, subdomain: str) -> str:
        return f"{subdomain}.{self._base_domain}"

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking API call in a thread, retrying transient failures."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=self._retry_backoff_max),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                result = await asyncio.to_thread(fn, *args, **kwargs)
        return result

    async def _create_or_read(
        self,
        kind: str,
        create: Callable[..., Any],
        read: Callable[..., Any],
        body: Any,
        name: str,
    ) -> Tuple[Any, bool]:
        """Create an object, reading the existing one back on AlreadyExists."""
        try:
            obj = await self._call(create, self._namespace, body)
            logger.info("Created cluster object", kind=kind, name=name, namespace=self._namespace)
            return obj, True
        except ApiException as exc:
            if exc.status != 409:
                raise
        return await self._call(read, name, self._namespace), False

    async def _delete(self, kind: str, delete: Callable[..., Any], name: str) -> bool:
        try:
            await self._call(delete, name, self._namespace, propagation_policy="Background")
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        logger.info("Deleted cluster object", kind=kind, name=name, namespace=self._namespace)
        return True

    @staticmethod
    def _check_owner(obj: Any, key: str) -> None:
        owner = (obj.metadata.labels or {}).get(LABEL_KEY)
        if owner != key:
            raise ProvisioningError(
                "NAME_COLLISION",
                f"{obj.metadata.name} belongs to deployment {owner}",
            )

    async def _verify_pull_secret(self, secret: str) -> None:
        try:
            await self._call(self._core.read_namespaced_secret, secret, self._namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise ProvisioningError(
                    "IMAGE_PULL_SECRET_MISSING",
                    f"Image pull secret {secret} not found in {self._namespace}",
                ) from exc
            raise

    async def ensure_workload(
        self,
        definition: ChallengeDefinition,
        key: str,
        requester_id: str,
    ) -> WorkloadHandle:
        """
        Create or confirm the Deployment and Service for a deployment key.

        Idempotent: existing objects are reused. A Deployment built from an
        older definition is patched to the current one.

        Raises:
            ProvisioningError: Terminal control-plane failure
        """
        name = object_name(key)
        secret = definition.image_pull_secret or self._container_secret
        deployment = build_deployment(definition, key, name, requester_id, secret)
        service = build_service(definition, key, name, self._service_type)

        try:
            if secret:
                await self._verify_pull_secret(secret)

            existing, created = await self._create_or_read(
                "Deployment",
                self._apps.create_namespaced_deployment,
                self._apps.read_namespaced_deployment,
                deployment,
                name,
            )
            if not created:
                self._check_owner(existing, key)
                annotations = existing.metadata.annotations or {}
                if annotations.get(ANNOTATION_FINGERPRINT) != definition.fingerprint():
                    if annotations.get(ANNOTATION_CREATED_AT):
                        deployment.metadata.annotations[ANNOTATION_CREATED_AT] = annotations[
                            ANNOTATION_CREATED_AT
                        ]
                    logger.info("Challenge definition changed, patching workload", name=name)
                    await self._call(
                        self._apps.patch_namespaced_deployment, name, self._namespace, deployment
                    )

            existing, created = await self._create_or_read(
                "Service",
                self._core.create_namespaced_service,
                self._core.read_namespaced_service,
                service,
                name,
            )
            if not created:
                self._check_owner(existing, key)
        except _CLUSTER_ERRORS as exc:
            logger.error("ensure_workload failed", key=key, error=str(exc))
            raise to_provisioning_error(exc) from exc

        return WorkloadHandle(
            key=key,
            namespace=self._namespace,
            workload_name=name,
            service_name=name,
            port=definition.port,
        )

    async def ensure_route(self, handle: WorkloadHandle, key: str, subdomain: str) -> str:
        """
        Create or confirm the Ingress for ``{subdomain}.{base_domain}``.

        Returns:
            The externally reachable host name

        Raises:
            RouteConflictError: The subdomain is bound to another deployment
            ProvisioningError: Terminal control-plane failure
        """
        host = self.host_for(subdomain)
        name = object_name(key)
        ingress = build_ingress(
            key,
            name,
            host,
            subdomain,
            handle.service_name,
            handle.port,
            self._ingress_class_name,
        )

        try:
            bound = await self._call(
                self._networking.list_namespaced_ingress,
                self._namespace,
                label_selector=subdomain_selector(subdomain),
            )
            for item in bound.items:
                owner = (item.metadata.labels or {}).get(LABEL_KEY)
                if owner != key:
                    raise RouteConflictError(host, owner)

            existing, created = await self._create_or_read(
                "Ingress",
                self._networking.create_namespaced_ingress,
                self._networking.read_namespaced_ingress,
                ingress,
                name,
            )
            if not created:
                self._check_owner(existing, key)
                if ingress_host(existing) != host or ingress_service(existing) != handle.service_name:
                    logger.info("Route drifted, patching ingress", name=name, host=host)
                    await self._call(
                        self._networking.patch_namespaced_ingress, name, self._namespace, ingress
                    )
        except _CLUSTER_ERRORS as exc:
            logger.error("ensure_route failed", key=key, host=host, error=str(exc))
            raise to_provisioning_error(exc) from exc

        return host

    async def teardown(self, key: str) -> None:
        """
        Delete route, service and workload for a key.

        Missing objects are ignored, so repeated calls converge on nothing
        existing for the key.
        """
        name = object_name(key)
        kinds = (
            ("Ingress", self._networking.list_namespaced_ingress, self._networking.delete_namespaced_ingress),
            ("Service", self._core.list_namespaced_service, self._core.delete_namespaced_service),
            ("Deployment", self._apps.list_namespaced_deployment, self._apps.delete_namespaced_deployment),
        )

        try:
            for kind, _, delete in kinds:
                await self._delete(kind, delete, name)

            # Anything else still carrying the key label
            for kind, list_objects, delete in kinds:
                leftovers = await self._call(
                    list_objects, self._namespace, label_selector=key_selector(key)
                )
                for item in leftovers.items:
                    if item.metadata.name != name and item.metadata.deletion_timestamp is None:
                        await self._delete(kind, delete, item.metadata.name)
        except _CLUSTER_ERRORS as exc:
            logger.error("teardown failed", key=key, error=str(exc))
            raise to_provisioning_error(exc) from exc

    async def status(self, key: str) -> WorkloadStatus:
        """Poll the readiness of the workload for a key."""
        name = object_name(key)
        try:
            try:
                deployment = await self._call(
                    self._apps.read_namespaced_deployment, name, self._namespace
                )
            except ApiException as exc:
                if exc.status == 404:
                    return WorkloadStatus(ClusterState.ABSENT)
                raise

            status = deployment.status
            if status and (status.ready_replicas or 0) >= 1:
                return WorkloadStatus(ClusterState.READY)

            for condition in (status.conditions if status else None) or []:
                if (
                    condition.type == "Progressing"
                    and condition.status == "False"
                    and condition.reason == "ProgressDeadlineExceeded"
                ):
                    return WorkloadStatus(ClusterState.FAILED, condition.reason)

            pods = await self._call(
                self._core.list_namespaced_pod,
                self._namespace,
                label_selector=key_selector(key),
            )
        except _CLUSTER_ERRORS as exc:
            raise to_provisioning_error(exc) from exc

        for pod in pods.items:
            if not pod.status:
                continue
            if pod.status.phase == "Failed":
                return WorkloadStatus(ClusterState.FAILED, pod.status.reason or "PodFailed")
            for container in pod.status.container_statuses or []:
                waiting = container.state.waiting if container.state else None
                if waiting and waiting.reason in FAILED_WAITING_REASONS:
                    return WorkloadStatus(ClusterState.FAILED, waiting.reason)

        return WorkloadStatus(ClusterState.PENDING)

    async def list_workloads(self) -> List[WorkloadSummary]:
        """All managed workloads in the namespace, with their routes."""
        try:
            deployments = await self._call(
                self._apps.list_namespaced_deployment,
                self._namespace,
                label_selector=managed_selector(),
            )
            ingresses = await self._call(
                self._networking.list_namespaced_ingress,
                self._namespace,
                label_selector=managed_selector(),
            )
        except _CLUSTER_ERRORS as exc:
            raise to_provisioning_error(exc) from exc

        hosts: Dict[str, Optional[str]] = {}
        for ingress in ingresses.items:
            key = (ingress.metadata.labels or {}).get(LABEL_KEY)
            if key:
                hosts[key] = ingress_host(ingress)

        summaries = []
        for deployment in deployments.items:
            metadata = deployment.metadata
            key = (metadata.labels or {}).get(LABEL_KEY)
            if not key:
                continue
            annotations = metadata.annotations or {}
            summaries.append(
                WorkloadSummary(
                    key=key,
                    requester_id=annotations.get(ANNOTATION_REQUESTER),
                    challenge_id=annotations.get(ANNOTATION_CHALLENGE),
                    url=hosts.get(key),
                    has_route=key in hosts,
                    created_at=_parse_created_at(annotations.get(ANNOTATION_CREATED_AT))
                    or metadata.creation_timestamp,
                )
            )
        return summaries

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self._call(self._apps.list_namespaced_deployment, self._namespace, limit=1)
            return {"status": "healthy", "namespace": self._namespace}
        except _CLUSTER_ERRORS as exc:
            logger.error("Kubernetes health check failed", error=str(exc))
            return {"status": "unhealthy", "namespace": self._namespace, "error": str(exc)}


def _parse_created_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
