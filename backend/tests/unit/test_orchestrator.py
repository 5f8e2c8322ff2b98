"""
Unit tests for the deployment orchestrator.

Tests:
- End-to-end deploy, status and teardown against a fake cluster
- Single-flight provisioning under concurrent deploys
- Failure handling and resubmission
- Teardown idempotence and per-key ordering
- Status refresh, startup reconciliation and reaping
"""

import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import (
    ChallengeNotFoundError,
    InvalidDefinitionError,
    ProvisioningError,
    RepositoryUnavailableError,
    RouteConflictError,
    ValidationError,
)
from app.domain.deployments import DeploymentRequest, DeploymentState, deployment_key
from app.domain.deployments.entities import utcnow
from app.infrastructure.orchestrator.models import ClusterState, WorkloadStatus, WorkloadSummary
from app.infrastructure.orchestrator.services.deployment_manager import DeploymentOrchestrator


def request(requester_id: str = "team1", challenge_id: str = "c42") -> DeploymentRequest:
    return DeploymentRequest(requester_id=requester_id, challenge_id=challenge_id)


class TestDeploy:
    """Test deployment provisioning."""

    @pytest.mark.asyncio
    async def test_deploy_returns_url(self, orchestrator, cluster):
        """Test the basic deploy scenario."""
        record = await orchestrator.deploy(request())

        assert record.state == DeploymentState.READY
        assert record.url == "c42-team1.example.org"
        assert record.key == deployment_key("team1", "c42")
        assert cluster.calls["ensure_workload"] == 1
        assert cluster.calls["ensure_route"] == 1

    @pytest.mark.asyncio
    async def test_redeploy_is_idempotent(self, orchestrator, cluster):
        """Test that a second deploy makes no provisioning attempt."""
        first = await orchestrator.deploy(request())
        second = await orchestrator.deploy(request())

        assert second.url == first.url
        assert second.state == DeploymentState.READY
        assert cluster.calls["ensure_workload"] == 1
        assert cluster.calls["ensure_route"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_deploys_provision_once(self, orchestrator, cluster, repository):
        """Test that N concurrent deploys share one provisioning attempt."""
        cluster.gate = asyncio.Event()

        tasks = [asyncio.create_task(orchestrator.deploy(request())) for _ in range(20)]
        await asyncio.sleep(0.01)
        cluster.gate.set()
        records = await asyncio.gather(*tasks)

        assert {r.url for r in records} == {"c42-team1.example.org"}
        assert cluster.calls["ensure_workload"] == 1
        assert cluster.calls["ensure_route"] == 1
        assert repository.reads == 1
        assert len(orchestrator.records()) == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_block(self, orchestrator, cluster):
        """Test that different requesters each get their own instance."""
        first, second = await asyncio.gather(
            orchestrator.deploy(request("team1")),
            orchestrator.deploy(request("team2")),
        )

        assert first.url == "c42-team1.example.org"
        assert second.url == "c42-team2.example.org"
        assert cluster.calls["ensure_workload"] == 2

    @pytest.mark.asyncio
    async def test_invalid_identifier(self, orchestrator, cluster):
        """Test that malformed identifiers are rejected before any I/O."""
        with pytest.raises(ValidationError):
            await orchestrator.deploy(request("bad id"))

        assert cluster.calls["ensure_workload"] == 0

    @pytest.mark.asyncio
    async def test_unknown_challenge_creates_no_record(self, orchestrator, cluster):
        """Test that NotFound leaves no deployment record behind."""
        with pytest.raises(ChallengeNotFoundError):
            await orchestrator.deploy(request(challenge_id="missing"))

        assert await orchestrator.status("team1", "missing") is None
        assert cluster.calls["ensure_workload"] == 0

    @pytest.mark.asyncio
    async def test_repository_outage_creates_no_record(self, orchestrator, repository):
        """Test that an unreachable repository surfaces without a record."""
        repository.failures = 5

        with pytest.raises(RepositoryUnavailableError):
            await orchestrator.deploy(request())

        assert orchestrator.records() == []

    @pytest.mark.asyncio
    async def test_malformed_definition_marks_record_failed(self, orchestrator, cluster, repository, mocker):
        """Test that a malformed stored definition leaves a Failed record."""
        mocker.patch.object(
            repository,
            "read",
            side_effect=InvalidDefinitionError("c42", "image is required"),
        )

        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED
        assert record.cause == "INVALID_DEFINITION"
        assert cluster.calls["ensure_workload"] == 0

    @pytest.mark.asyncio
    async def test_malformed_definition_replaces_failed_record(self, orchestrator, cluster, repository, mocker):
        """Test that resubmitting a now-malformed challenge records the new cause."""
        cluster.workload_error = ProvisioningError("CLUSTER_UNAVAILABLE")
        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        orchestrator.config_store.invalidate("c42")
        mocker.patch.object(
            repository,
            "read",
            side_effect=InvalidDefinitionError("c42", "image is required"),
        )
        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED
        assert record.cause == "INVALID_DEFINITION"
        assert len(orchestrator.records()) == 1

    @pytest.mark.asyncio
    async def test_cluster_failure_marks_record_failed(self, orchestrator, cluster):
        """Test that a terminal cluster error leaves a Failed record with its cause."""
        cluster.workload_error = ProvisioningError("QUOTA_EXCEEDED")

        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED
        assert record.cause == "QUOTA_EXCEEDED"
        assert record.url is None

    @pytest.mark.asyncio
    async def test_route_conflict_marks_record_failed(self, orchestrator, cluster):
        """Test that a route conflict is reported with its own cause."""
        cluster.route_error = RouteConflictError("c42-team1.example.org", "other")

        with pytest.raises(RouteConflictError):
            await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED
        assert record.cause == "ROUTE_CONFLICT"

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_record_failed(self, orchestrator, cluster):
        """Test that unexpected errors still fail the record."""
        cluster.workload_error = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")
        assert record.cause == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_failed_deployment_can_be_resubmitted(self, orchestrator, cluster):
        """Test that resubmitting after a failure provisions again."""
        cluster.workload_error = ProvisioningError("CLUSTER_UNAVAILABLE")
        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        cluster.workload_error = None
        record = await orchestrator.deploy(request())

        assert record.state == DeploymentState.READY
        assert record.cause is None
        assert cluster.calls["ensure_workload"] == 2

    @pytest.mark.asyncio
    async def test_failed_record_kept_when_challenge_vanishes(self, orchestrator, cluster, repository):
        """Test that resubmission for a removed challenge keeps the Failed record."""
        cluster.workload_error = ProvisioningError("CLUSTER_UNAVAILABLE")
        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        repository.definitions.clear()
        orchestrator.config_store.invalidate("c42")
        with pytest.raises(ChallengeNotFoundError):
            await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED

    @pytest.mark.asyncio
    async def test_caller_cancellation_does_not_abort_provisioning(self, orchestrator, cluster):
        """Test that a deploy keeps running after its caller goes away."""
        cluster.gate = asyncio.Event()

        caller = asyncio.create_task(orchestrator.deploy(request()))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        cluster.gate.set()
        record = await orchestrator.status("team1", "c42")

        assert record.state == DeploymentState.READY
        assert record.url == "c42-team1.example.org"


class TestTeardown:
    """Test deployment teardown."""

    @pytest.mark.asyncio
    async def test_teardown_then_status_absent(self, orchestrator, cluster):
        """Test that status reports Absent after teardown."""
        record = await orchestrator.deploy(request())

        await orchestrator.teardown("team1", "c42")

        assert await orchestrator.status("team1", "c42") is None
        assert cluster.torn_down == [record.key]

    @pytest.mark.asyncio
    async def test_teardown_of_absent_is_noop(self, orchestrator, cluster):
        """Test that tearing down nothing succeeds without cluster calls."""
        await orchestrator.teardown("team1", "c42")

        assert cluster.calls["teardown"] == 0

    @pytest.mark.asyncio
    async def test_teardown_twice(self, orchestrator, cluster):
        """Test that a repeated teardown is a no-op."""
        await orchestrator.deploy(request())

        await orchestrator.teardown("team1", "c42")
        await orchestrator.teardown("team1", "c42")

        assert cluster.calls["teardown"] == 1

    @pytest.mark.asyncio
    async def test_teardown_invalid_identifier(self, orchestrator):
        """Test that teardown validates identifiers."""
        with pytest.raises(ValidationError):
            await orchestrator.teardown("team1", "")

    @pytest.mark.asyncio
    async def test_teardown_failure_then_retry(self, orchestrator, cluster):
        """Test that a failed teardown leaves a Failed record that can be retried."""
        await orchestrator.deploy(request())
        cluster.teardown_error = ProvisioningError("CLUSTER_UNAVAILABLE")

        with pytest.raises(ProvisioningError):
            await orchestrator.teardown("team1", "c42")

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED
        assert record.cause == "CLUSTER_UNAVAILABLE"

        cluster.teardown_error = None
        await orchestrator.teardown("team1", "c42")

        assert await orchestrator.status("team1", "c42") is None

    @pytest.mark.asyncio
    async def test_teardown_crash_then_retry(self, orchestrator, cluster):
        """Test that an unexpected teardown error fails the record and allows a retry."""
        await orchestrator.deploy(request())
        cluster.teardown_error = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await orchestrator.teardown("team1", "c42")

        record = await orchestrator.status("team1", "c42")
        assert record.state == DeploymentState.FAILED
        assert record.cause == "INTERNAL_ERROR"

        cluster.teardown_error = None
        await orchestrator.teardown("team1", "c42")

        assert await orchestrator.status("team1", "c42") is None
        assert cluster.calls["teardown"] == 2

    @pytest.mark.asyncio
    async def test_teardown_waits_for_inflight_deploy(self, orchestrator, cluster):
        """Test that teardown issued mid-deploy observes the finished deploy."""
        cluster.gate = asyncio.Event()

        deploy_task = asyncio.create_task(orchestrator.deploy(request()))
        await asyncio.sleep(0.01)
        teardown_task = asyncio.create_task(orchestrator.teardown("team1", "c42"))
        await asyncio.sleep(0.01)

        assert not teardown_task.done()
        cluster.gate.set()

        record = await deploy_task
        await teardown_task

        assert record.state == DeploymentState.READY
        assert cluster.torn_down == [record.key]
        assert await orchestrator.status("team1", "c42") is None


class TestStatus:
    """Test status lookups and cluster refresh."""

    @pytest.mark.asyncio
    async def test_absent(self, orchestrator):
        """Test that an unknown pair has no record."""
        assert await orchestrator.status("team1", "c42") is None

    @pytest.mark.asyncio
    async def test_ready_with_running_workload(self, orchestrator, cluster):
        """Test that a healthy workload is reported ready."""
        await orchestrator.deploy(request())

        record = await orchestrator.status("team1", "c42")

        assert record.state == DeploymentState.READY
        assert record.workload_ready is True
        assert cluster.calls["status"] == 1

    @pytest.mark.asyncio
    async def test_pending_workload(self, orchestrator, cluster):
        """Test that a starting workload stays Ready but not yet serving."""
        await orchestrator.deploy(request())
        cluster.status_result = WorkloadStatus(ClusterState.PENDING)

        record = await orchestrator.status("team1", "c42")

        assert record.state == DeploymentState.READY
        assert record.workload_ready is False

    @pytest.mark.asyncio
    async def test_failed_workload(self, orchestrator, cluster):
        """Test that a crashed workload fails the record."""
        await orchestrator.deploy(request())
        cluster.status_result = WorkloadStatus(ClusterState.FAILED, "CrashLoopBackOff")

        record = await orchestrator.status("team1", "c42")

        assert record.state == DeploymentState.FAILED
        assert record.cause == "WORKLOAD_FAILED"

    @pytest.mark.asyncio
    async def test_vanished_workload(self, orchestrator, cluster):
        """Test that a workload deleted out of band becomes Absent."""
        await orchestrator.deploy(request())
        cluster.status_result = WorkloadStatus(ClusterState.ABSENT)

        assert await orchestrator.status("team1", "c42") is None
        assert orchestrator.records() == []

    @pytest.mark.asyncio
    async def test_cluster_unavailable_returns_last_known(self, orchestrator, cluster):
        """Test that a status poll failure does not change the record."""
        await orchestrator.deploy(request())
        cluster.status_error = ProvisioningError("CLUSTER_UNAVAILABLE")

        record = await orchestrator.status("team1", "c42")

        assert record.state == DeploymentState.READY
        assert record.url == "c42-team1.example.org"

    @pytest.mark.asyncio
    async def test_refresh_disabled(self, config_store, cluster, settings):
        """Test that refresh can be turned off."""
        orchestrator = DeploymentOrchestrator(
            config_store,
            cluster,
            settings.model_copy(update={"refresh_status_from_cluster": False}),
        )
        await orchestrator.deploy(request())

        await orchestrator.status("team1", "c42")

        assert cluster.calls["status"] == 0


class TestReconcile:
    """Test startup reconciliation with the cluster."""

    def _workloads(self):
        return [
            WorkloadSummary(
                key=deployment_key("team1", "c42"),
                requester_id="team1",
                challenge_id="c42",
                url="c42-team1.example.org",
                has_route=True,
            ),
            WorkloadSummary(
                key=deployment_key("team2", "c42"),
                requester_id="team2",
                challenge_id="c42",
                url=None,
                has_route=False,
            ),
            WorkloadSummary(
                key="0" * 20,
                requester_id="team3",
                challenge_id="c42",
                url=None,
                has_route=True,
            ),
        ]

    @pytest.mark.asyncio
    async def test_restores_records(self, orchestrator, cluster):
        """Test that routed workloads return Ready and partial ones Failed."""
        cluster.workloads = self._workloads()

        restored = await orchestrator.reconcile()

        assert restored == 2
        ready = await orchestrator.status("team1", "c42")
        assert ready.state == DeploymentState.READY
        assert ready.url == "c42-team1.example.org"
        partial = await orchestrator.status("team2", "c42")
        assert partial.state == DeploymentState.FAILED
        assert partial.cause == "INCOMPLETE_PROVISIONING"
        assert await orchestrator.status("team3", "c42") is None

    @pytest.mark.asyncio
    async def test_deploy_after_reconcile_reuses_instance(self, orchestrator, cluster):
        """Test that a reconciled instance is returned without provisioning."""
        cluster.workloads = self._workloads()
        await orchestrator.reconcile()

        record = await orchestrator.deploy(request())

        assert record.url == "c42-team1.example.org"
        assert cluster.calls["ensure_workload"] == 0

    @pytest.mark.asyncio
    async def test_start_reconciles(self, config_store, cluster, settings):
        """Test that start() reconciles when enabled."""
        cluster.workloads = self._workloads()
        orchestrator = DeploymentOrchestrator(
            config_store,
            cluster,
            settings.model_copy(update={"reconcile_on_startup": True}),
        )

        await orchestrator.start()
        try:
            assert len(orchestrator.records()) == 2
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_start_survives_cluster_outage(self, config_store, cluster, settings, mocker):
        """Test that start() logs and continues when the cluster is unreachable."""
        mocker.patch.object(
            cluster,
            "list_workloads",
            side_effect=ProvisioningError("CLUSTER_UNAVAILABLE"),
        )
        orchestrator = DeploymentOrchestrator(
            config_store,
            cluster,
            settings.model_copy(update={"reconcile_on_startup": True}),
        )

        await orchestrator.start()
        await orchestrator.stop()

        assert orchestrator.records() == []


class TestReap:
    """Test expiry and failed-record reaping."""

    @pytest.mark.asyncio
    async def test_expired_deployment_removed(self, config_store, cluster, settings):
        """Test that a deployment past its TTL is torn down."""
        orchestrator = DeploymentOrchestrator(
            config_store,
            cluster,
            settings.model_copy(update={"deployment_ttl_seconds": 60}),
        )
        record = await orchestrator.deploy(request())

        assert await orchestrator.reap(utcnow()) == 0
        assert await orchestrator.reap(utcnow() + timedelta(seconds=61)) == 1
        assert cluster.torn_down == [record.key]
        assert orchestrator.records() == []

    @pytest.mark.asyncio
    async def test_deployments_without_ttl_kept(self, orchestrator, cluster):
        """Test that deployments never expire without a TTL."""
        await orchestrator.deploy(request())

        assert await orchestrator.reap(utcnow() + timedelta(days=30)) == 0
        assert cluster.calls["teardown"] == 0

    @pytest.mark.asyncio
    async def test_stale_failed_record_cleaned(self, orchestrator, cluster):
        """Test that a Failed record is cleaned up after the retention period."""
        cluster.workload_error = ProvisioningError("QUOTA_EXCEEDED")
        with pytest.raises(ProvisioningError):
            await orchestrator.deploy(request())

        assert await orchestrator.reap(utcnow() + timedelta(seconds=1)) == 0
        assert await orchestrator.reap(utcnow() + timedelta(seconds=601)) == 1
        assert cluster.calls["teardown"] == 1
        assert await orchestrator.status("team1", "c42") is None

    @pytest.mark.asyncio
    async def test_reap_sweeps_config_cache(self, orchestrator, config_cache, clock):
        """Test that reaping also evicts expired challenge definitions."""
        await orchestrator.deploy(request())
        assert len(config_cache) == 1

        clock.advance(61)
        await orchestrator.reap()

        assert len(config_cache) == 0
