"""
Deployment Orchestrator - Lifecycle management for challenge deployments

Handles:
- Idempotent, single-flight provisioning per deployment key
- Per-key serialization of deploy, teardown and status
- Status refresh against the cluster
- Startup reconciliation with existing cluster objects
- Reaping of expired deployments and abandoned failed records
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

import structlog

from app.core.config import Settings
from app.core.exceptions import DeploymentError, ProvisioningError
from app.core.metrics import DEPLOYMENTS, TEARDOWNS
from app.domain.challenges.entities import ChallengeDefinition
from app.domain.deployments.entities import (
    IN_SERVICE_STATES,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentState,
    utcnow,
)
from app.domain.deployments.naming import (
    deployment_key,
    subdomain_for,
    validate_identifier,
)
from app.infrastructure.concurrency import KeyedLocks, SingleFlight, run_detached

from ..models import ClusterState, WorkloadHandle, WorkloadStatus, WorkloadSummary
from .config_store import ChallengeConfigStore

logger = structlog.get_logger(__name__)


class ClusterClient(Protocol):
    """Control-plane operations the orchestrator depends on."""

    async def ensure_workload(
        self, definition: ChallengeDefinition, key: str, requester_id: str
    ) -> WorkloadHandle: ...

    async def ensure_route(self, handle: WorkloadHandle, key: str, subdomain: str) -> str: ...

    async def teardown(self, key: str) -> None: ...

    async def status(self, key: str) -> WorkloadStatus: ...

    async def list_workloads(self) -> List[WorkloadSummary]: ...


class DeploymentOrchestrator:
    """
    Coordinates challenge configuration lookups with cluster calls.

    Holds the deployment record table: at most one live record per key.
    Every operation on a key runs under that key's lock, so deploy, teardown
    and status observe a linear history. Deploy and teardown run as detached
    tasks; a caller that stops waiting does not stop the cluster work.
    """

    def __init__(
        self,
        config_store: ChallengeConfigStore,
        cluster: ClusterClient,
        settings: Settings,
    ):
        self.config_store = config_store
        self.cluster = cluster

        self._records: Dict[str, DeploymentRecord] = {}
        self._locks = KeyedLocks()
        self._flights: SingleFlight[DeploymentRecord] = SingleFlight("provisioning")

        # Configuration
        self._deployment_ttl = settings.deployment_ttl_seconds
        self._failed_retention = timedelta(seconds=settings.failed_record_retention_seconds)
        self._reaper_interval = settings.reaper_interval_seconds
        self._reconcile_on_startup = settings.reconcile_on_startup
        self._refresh_status = settings.refresh_status_from_cluster

        # Background tasks
        self._reaper_task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Reconcile with the cluster and start the reaper loop."""
        if self._reconcile_on_startup:
            try:
                await self.reconcile()
            except ProvisioningError as exc:
                # Existing instances stay unknown until their owners resubmit
                logger.error("Startup reconciliation failed", cause=exc.cause_code, error=str(exc))
        self._running = True
        self._reaper_task = asyncio.create_task(self._reaper_loop())
        logger.info("Deployment orchestrator started")

    async def stop(self) -> None:
        """Stop background tasks. Cluster objects are left running."""
        self._running = False

        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass

        logger.info("Deployment orchestrator stopped", live_records=len(self._records))

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def deploy(self, request: DeploymentRequest) -> DeploymentRecord:
        """
        Deploy a challenge for a requester.

        Concurrent calls for the same key share one provisioning attempt and
        observe the same result.

        Args:
            request: Deployment request

        Returns:
            Snapshot of the deployment record (Ready, or Provisioning when a
            reconciled workload is still coming up)

        Raises:
            ValidationError: Malformed identifiers
            ChallengeNotFoundError: Unknown challenge (no record is created)
            RepositoryUnavailableError: Configuration store unreachable
            ProvisioningError: Cluster failure (record left in Failed)
            RouteConflictError: Subdomain owned by another deployment
        """
        validate_identifier("requesterId", request.requester_id)
        validate_identifier("challengeId", request.challenge_id)
        key = request.key
        return await self._flights.do(key, lambda: self._deploy(request, key))

    async def teardown(self, requester_id: str, challenge_id: str) -> None:
        """Tear down a deployment; a no-op when none exists."""
        key = self._key(requester_id, challenge_id)
        await run_detached(self._teardown(key))

    async def status(self, requester_id: str, challenge_id: str) -> Optional[DeploymentRecord]:
        """
        Current record for a (requester, challenge) pair.

        Returns:
            Record snapshot, or None when the deployment is Absent
        """
        key = self._key(requester_id, challenge_id)
        async with self._locks.hold(key):
            record = self._records.get(key)
            if record is None:
                return None
            if self._refresh_status and record.state == DeploymentState.READY:
                record = await self._refresh(record)
                if record is None:
                    return None
            return record.snapshot()

    def records(self) -> List[DeploymentRecord]:
        return [record.snapshot() for record in self._records.values()]

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    @staticmethod
    def _key(requester_id: str, challenge_id: str) -> str:
        validate_identifier("requesterId", requester_id)
        validate_identifier("challengeId", challenge_id)
        return deployment_key(requester_id, challenge_id)

    async def _deploy(self, request: DeploymentRequest, key: str) -> DeploymentRecord:
        async with self._locks.hold(key):
            existing = self._records.get(key)
            if existing is not None:
                if existing.state in IN_SERVICE_STATES:
                    logger.info(
                        "Deployment already in service",
                        key=key,
                        state=existing.state.value,
                    )
                    DEPLOYMENTS.labels(outcome="existing").inc()
                    return existing.snapshot()

            # Resolve before creating the record: unknown challenges leave no trace
            try:
                definition = await self.config_store.get(request.challenge_id)
            except ProvisioningError as exc:
                # The challenge exists but cannot be deployed as stored
                record = self._start_record(request, existing)
                record.transition(DeploymentState.FAILED, cause=exc.cause_code)
                DEPLOYMENTS.labels(outcome="failed").inc()
                logger.error(
                    "Challenge definition rejected",
                    key=key,
                    cause=exc.cause_code,
                    error=str(exc),
                )
                raise

            record = self._start_record(request, existing)

            logger.info(
                "Provisioning deployment",
                key=key,
                requester_id=request.requester_id,
                challenge_id=request.challenge_id,
                image=definition.image,
            )

            try:
                handle = await self.cluster.ensure_workload(definition, key, request.requester_id)
                url = await self.cluster.ensure_route(
                    handle,
                    key,
                    subdomain_for(request.requester_id, request.challenge_id),
                )
            except DeploymentError as exc:
                cause = exc.cause_code if isinstance(exc, ProvisioningError) else exc.code
                record.transition(DeploymentState.FAILED, cause=cause)
                DEPLOYMENTS.labels(outcome="failed").inc()
                logger.error("Provisioning failed", key=key, cause=cause, error=str(exc))
                raise
            except Exception as exc:
                record.transition(DeploymentState.FAILED, cause="INTERNAL_ERROR")
                DEPLOYMENTS.labels(outcome="failed").inc()
                logger.exception("Provisioning crashed", key=key, error=str(exc))
                raise

            record.url = url
            record.transition(DeploymentState.READY)
            DEPLOYMENTS.labels(outcome="ready").inc()
            logger.info("Deployment ready", key=key, url=url)
            return record.snapshot()

    def _start_record(
        self,
        request: DeploymentRequest,
        existing: Optional[DeploymentRecord],
    ) -> DeploymentRecord:
        """Replace a Failed record (if any) with a new one in Provisioning."""
        if existing is not None and existing.state == DeploymentState.FAILED:
            logger.info(
                "Clearing failed deployment for resubmission",
                key=existing.key,
                cause=existing.cause,
            )
            existing.transition(DeploymentState.ABSENT)
            del self._records[existing.key]

        record = DeploymentRecord.for_request(request, self._deployment_ttl)
        self._records[record.key] = record
        record.transition(DeploymentState.PROVISIONING)
        return record

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self, key: str) -> None:
        async with self._locks.hold(key):
            await self._teardown_locked(key)

    async def _teardown_locked(self, key: str) -> None:
        """Tear down a key's deployment (must hold the key lock)."""
        record = self._records.get(key)
        if record is None:
            logger.debug("Teardown of absent deployment", key=key)
            return

        if record.can_transition(DeploymentState.TERMINATING):
            record.transition(DeploymentState.TERMINATING)

        try:
            await self.cluster.teardown(key)
        except DeploymentError as exc:
            cause = exc.cause_code if isinstance(exc, ProvisioningError) else exc.code
            self._fail_teardown(record, cause)
            logger.error("Teardown failed", key=key, cause=cause, error=str(exc))
            raise
        except Exception as exc:
            self._fail_teardown(record, "INTERNAL_ERROR")
            logger.exception("Teardown crashed", key=key, error=str(exc))
            raise

        record.transition(DeploymentState.ABSENT)
        del self._records[key]
        TEARDOWNS.labels(outcome="absent").inc()
        logger.info("Deployment torn down", key=key)

    @staticmethod
    def _fail_teardown(record: DeploymentRecord, cause: str) -> None:
        if record.state != DeploymentState.FAILED:
            record.transition(DeploymentState.FAILED, cause=cause)
        TEARDOWNS.labels(outcome="failed").inc()

    # ------------------------------------------------------------------
    # Status refresh and reconciliation
    # ------------------------------------------------------------------

    async def _refresh(self, record: DeploymentRecord) -> Optional[DeploymentRecord]:
        """Fold the cluster's view into a Ready record (must hold the key lock)."""
        try:
            observed = await self.cluster.status(record.key)
        except ProvisioningError as exc:
            logger.warning(
                "Cluster status unavailable, returning last known state",
                key=record.key,
                cause=exc.cause_code,
            )
            return record

        if observed.state == ClusterState.ABSENT:
            logger.warning("Workload vanished from cluster", key=record.key)
            record.transition(DeploymentState.TERMINATING)
            record.transition(DeploymentState.ABSENT)
            del self._records[record.key]
            return None

        if observed.state == ClusterState.FAILED:
            logger.warning("Workload failed", key=record.key, reason=observed.reason)
            record.transition(DeploymentState.FAILED, cause="WORKLOAD_FAILED")
            record.workload_ready = False
            return record

        record.workload_ready = observed.state == ClusterState.READY
        return record

    async def reconcile(self) -> int:
        """
        Rebuild records for managed workloads already running in the cluster.

        Workloads with a route come back Ready; those without one come back
        Failed so the reaper or a resubmitted deploy finishes them.

        Returns:
            Number of records restored
        """
        workloads = await self.cluster.list_workloads()
        restored = 0

        for workload in workloads:
            if not workload.requester_id or not workload.challenge_id:
                logger.warning("Skipping unlabeled workload", key=workload.key)
                continue
            key = deployment_key(workload.requester_id, workload.challenge_id)
            if key != workload.key:
                logger.warning("Skipping workload with mismatched key", key=workload.key)
                continue

            async with self._locks.hold(key):
                if key in self._records:
                    continue
                request = DeploymentRequest(
                    requester_id=workload.requester_id,
                    challenge_id=workload.challenge_id,
                    requested_at=workload.created_at or utcnow(),
                )
                record = DeploymentRecord.for_request(request, self._deployment_ttl)
                if workload.created_at:
                    record.created_at = workload.created_at
                    if self._deployment_ttl:
                        record.expires_at = workload.created_at + timedelta(
                            seconds=self._deployment_ttl
                        )
                record.transition(DeploymentState.PROVISIONING)
                if workload.has_route:
                    record.url = workload.url
                    record.transition(DeploymentState.READY)
                else:
                    record.transition(DeploymentState.FAILED, cause="INCOMPLETE_PROVISIONING")
                self._records[key] = record
                restored += 1

        logger.info("Reconciled deployments with cluster", found=len(workloads), restored=restored)
        return restored

    # ------------------------------------------------------------------
    # Reaper
    # ------------------------------------------------------------------

    async def reap(self, now: Optional[datetime] = None) -> int:
        """
        Tear down expired deployments and clean up stale failed records.

        Returns:
            Number of deployments removed
        """
        now = now or utcnow()
        removed = 0

        for record in list(self._records.values()):
            if not self._reapable(record, now):
                continue
            try:
                if await run_detached(self._reap_key(record.key, now)):
                    removed += 1
            except DeploymentError as exc:
                logger.error("Reap failed", key=record.key, error=str(exc))

        self.config_store.cache.sweep()
        return removed

    def _reapable(self, record: DeploymentRecord, now: datetime) -> bool:
        if record.state == DeploymentState.READY:
            return record.is_expired(now)
        if record.state == DeploymentState.FAILED:
            return now - record.updated_at >= self._failed_retention
        return False

    async def _reap_key(self, key: str, now: datetime) -> bool:
        async with self._locks.hold(key):
            record = self._records.get(key)
            # The record may have changed while we waited for the lock
            if record is None or not self._reapable(record, now):
                return False
            logger.info(
                "Reaping deployment",
                key=key,
                state=record.state.value,
                reason="expired" if record.state == DeploymentState.READY else "failed",
            )
            await self._teardown_locked(key)
            return True

    async def _reaper_loop(self) -> None:
        """Background loop to reap expired and failed deployments."""
        while self._running:
            try:
                await asyncio.sleep(self._reaper_interval)
                await self.reap()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in reaper loop", error=str(e))
