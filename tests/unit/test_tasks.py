"""Unit tests for the server task state machine and DeploymentAggregator."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from deployer import errors
from deployer.api.models import DeploymentRequest, TaskStatusUpdate
from deployer.models.status import DeploymentStatus, TaskStatus
from deployer.services.events import EventType


async def _report(services, db, task_id, status, now, **kwargs):
    return await services.tasks.update_status(
        db, TaskStatusUpdate(task_id=task_id, status=status, **kwargs), now=now
    )


async def _three_machine_deployment(services, db, package_id, now):
    deployment = await services.planner.plan(
        db,
        DeploymentRequest(package_version_id=package_id, is_global=True, deployed_by="admin"),
        now=now,
    )
    tasks = await services.tasks.list_tasks(db, deployment.id)
    return deployment, tasks


def _assert_counters(deployment):
    assert deployment.total_targets == (
        deployment.success_count + deployment.failed_count + deployment.pending_count
    )
    assert deployment.pending_count >= 0


@pytest.mark.unit
class TestDeploymentOutcome:

    @pytest.mark.asyncio
    async def test_all_succeed(self, db, services, events, application, machines, now):
        # Arrange
        _, _, v2 = application
        deployment, tasks = await _three_machine_deployment(services, db, v2.id, now)

        # Act
        for task in tasks:
            await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)
            await _report(services, db, task.id, TaskStatus.COMPLETED, now, is_success=True)
            _assert_counters(await services.planner.get_deployment(db, deployment.id))

        # Assert
        final = await services.planner.get_deployment(db, deployment.id)
        assert final.status == DeploymentStatus.SUCCESS
        assert final.success_count == 3
        assert final.completed_at == now
        status_events = [e.detail["status"] for e in events.of_type(EventType.DEPLOYMENT_STATUS_CHANGED)]
        assert status_events == ["InProgress", "Success"]

    @pytest.mark.asyncio
    async def test_partial_failure(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment, tasks = await _three_machine_deployment(services, db, v2.id, now)
        outcomes = [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.COMPLETED]

        for task, outcome in zip(tasks, outcomes):
            await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)
            await _report(services, db, task.id, outcome, now, retryable=False, error_message="x")

        final = await services.planner.get_deployment(db, deployment.id)
        assert final.status == DeploymentStatus.PARTIAL_FAILURE
        assert (final.success_count, final.failed_count, final.pending_count) == (2, 1, 0)

    @pytest.mark.asyncio
    async def test_retries_exhausted_on_one_machine(self, db, services, application, machines, now):
        """Two machines succeed, the third fails on every attempt: PartialFailure."""
        # Arrange
        _, _, v2 = application
        deployment, (first, flaky, third) = await _three_machine_deployment(services, db, v2.id, now)
        for task in (first, third):
            await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)
            await _report(services, db, task.id, TaskStatus.COMPLETED, now)

        # Act: initial attempt plus three retries, each after its back-off
        clock = now
        for _ in range(4):
            await _report(services, db, flaky.id, TaskStatus.IN_PROGRESS, clock)
            result = await _report(services, db, flaky.id, TaskStatus.FAILED, clock, error_message="disk busy")
            _assert_counters(await services.planner.get_deployment(db, deployment.id))
            clock = result.next_retry_at or clock

        # Assert
        assert result.status == TaskStatus.FAILED
        assert result.retry_count == 3
        final = await services.planner.get_deployment(db, deployment.id)
        assert final.status == DeploymentStatus.PARTIAL_FAILURE
        assert (final.success_count, final.failed_count, final.pending_count) == (2, 1, 0)

    @pytest.mark.asyncio
    async def test_all_fail(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment, tasks = await _three_machine_deployment(services, db, v2.id, now)

        for task in tasks:
            await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)
            await _report(services, db, task.id, TaskStatus.FAILED, now, retryable=False)

        final = await services.planner.get_deployment(db, deployment.id)
        assert final.status == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_not_final_while_pending(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment, tasks = await _three_machine_deployment(services, db, v2.id, now)
        await _report(services, db, tasks[0].id, TaskStatus.IN_PROGRESS, now)
        await _report(services, db, tasks[0].id, TaskStatus.COMPLETED, now)

        current = await services.planner.get_deployment(db, deployment.id)

        assert current.status == DeploymentStatus.IN_PROGRESS
        assert current.completed_at is None
        assert await services.aggregator.finalize(db, deployment.id, now) is None


@pytest.mark.unit
class TestTransitions:

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, db, services, application, machines, now):
        _, _, v2 = application
        _, tasks = await _three_machine_deployment(services, db, v2.id, now)
        task_id = tasks[0].id
        await _report(services, db, task_id, TaskStatus.IN_PROGRESS, now)

        updated = await _report(
            services, db, task_id, TaskStatus.IN_PROGRESS, now,
            progress_percentage=40, current_step="Downloading", download_size_bytes=1234,
        )
        assert updated.progress_percentage == 40
        assert updated.current_step == "Downloading"
        assert updated.download_size_bytes == 1234

        with pytest.raises(errors.ConflictError, match="PROGRESS_REGRESSION"):
            await _report(services, db, task_id, TaskStatus.IN_PROGRESS, now, progress_percentage=30)
        assert (await services.tasks.get_task(db, task_id)).progress_percentage == 40

        same = await _report(services, db, task_id, TaskStatus.IN_PROGRESS, now, progress_percentage=40)
        assert same.progress_percentage == 40

    @pytest.mark.asyncio
    async def test_terminal_task_rejects_reports(self, db, services, application, machines, now):
        _, _, v2 = application
        _, tasks = await _three_machine_deployment(services, db, v2.id, now)
        task_id = tasks[0].id
        await _report(services, db, task_id, TaskStatus.IN_PROGRESS, now)
        await _report(services, db, task_id, TaskStatus.COMPLETED, now)

        for status in (TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.COMPLETED):
            with pytest.raises(errors.ConflictError, match="TASK_TERMINAL"):
                await _report(services, db, task_id, status, now)

    @pytest.mark.asyncio
    async def test_terminal_report_requires_claim(self, db, services, application, machines, now):
        _, _, v2 = application
        _, tasks = await _three_machine_deployment(services, db, v2.id, now)

        with pytest.raises(errors.ConflictError, match="ILLEGAL_TRANSITION"):
            await _report(services, db, tasks[0].id, TaskStatus.COMPLETED, now)

    @pytest.mark.asyncio
    async def test_unknown_task(self, db, services, machines, now):
        with pytest.raises(errors.NotFoundError, match="TASK_NOT_FOUND"):
            await _report(services, db, 12345, TaskStatus.IN_PROGRESS, now)

    @pytest.mark.asyncio
    async def test_completion_records_duration(self, db, services, application, machines, now):
        _, _, v2 = application
        _, tasks = await _three_machine_deployment(services, db, v2.id, now)
        await _report(services, db, tasks[0].id, TaskStatus.IN_PROGRESS, now)

        done = await _report(services, db, tasks[0].id, TaskStatus.COMPLETED, now + timedelta(seconds=90))

        assert done.progress_percentage == 100
        assert done.is_success is True
        assert done.install_duration_seconds == 90.0
        assert done.completed_at == now + timedelta(seconds=90)

    def test_agents_cannot_report_queue_states(self):
        for status in (TaskStatus.QUEUED, TaskStatus.RETRYING):
            with pytest.raises(ValidationError):
                TaskStatusUpdate(task_id=1, status=status)


@pytest.mark.unit
class TestAggregator:

    @pytest.mark.asyncio
    async def test_record_outcome_underflow(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment = await services.planner.plan(
            db,
            DeploymentRequest(package_version_id=v2.id, target_machines=["M1"], deployed_by="admin"),
            now=now,
        )
        await services.aggregator.record_outcome(db, deployment.id, success=True)

        with pytest.raises(errors.ConflictError, match="COUNTER_UNDERFLOW"):
            await services.aggregator.record_outcome(db, deployment.id, success=False)

    @pytest.mark.asyncio
    async def test_progress_estimates_completion(self, db, services, application, machines, now):
        # Arrange: one of three targets finished 60s after the first claim
        _, _, v2 = application
        deployment, tasks = await _three_machine_deployment(services, db, v2.id, now)
        await _report(services, db, tasks[0].id, TaskStatus.IN_PROGRESS, now)
        await _report(services, db, tasks[0].id, TaskStatus.COMPLETED, now + timedelta(seconds=60))

        # Act
        progress = await services.aggregator.progress(db, deployment.id, now + timedelta(seconds=60))

        # Assert
        assert progress.status == DeploymentStatus.IN_PROGRESS
        assert progress.percent_complete == 33.3
        assert progress.elapsed_seconds == 60.0
        assert progress.estimated_seconds_remaining == 120.0
        assert progress.estimated_completion == now + timedelta(seconds=180)
        assert [t.status for t in progress.tasks] == [
            TaskStatus.COMPLETED, TaskStatus.QUEUED, TaskStatus.QUEUED
        ]

    @pytest.mark.asyncio
    async def test_progress_before_start(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment, _ = await _three_machine_deployment(services, db, v2.id, now)

        progress = await services.aggregator.progress(db, deployment.id, now)

        assert progress.percent_complete == 0.0
        assert progress.elapsed_seconds is None
        assert progress.estimated_completion is None

    @pytest.mark.asyncio
    async def test_progress_unknown_deployment(self, db, services, now):
        with pytest.raises(errors.NotFoundError):
            await services.aggregator.progress(db, 77, now)


@pytest.mark.unit
class TestStaleClaims:

    @pytest.mark.asyncio
    async def test_silent_claim_is_requeued_and_machine_unblocked(self, db, services, application, machines, now):
        """A claim without any later report stops blocking the machine's queue."""
        # Arrange: task claimed, agent never reports again
        _, v1, v2 = application
        first = await services.planner.plan(
            db, DeploymentRequest(package_version_id=v2.id, target_machines=["M1"], deployed_by="admin"), now=now
        )
        [stuck] = await services.tasks.list_tasks(db, first.id)
        await _report(services, db, stuck.id, TaskStatus.IN_PROGRESS, now)
        later = now + timedelta(hours=1)
        await services.registry.heartbeat(db, "M1", now=later)
        second = await services.planner.plan(
            db, DeploymentRequest(package_version_id=v1.id, target_machines=["M1"], deployed_by="admin"), now=later
        )
        [waiting] = await services.tasks.list_tasks(db, second.id)

        # Act
        expired = await services.tasks.expire_stale_claims(db, now=later)

        # Assert
        assert expired == 1
        requeued = await services.tasks.get_task(db, stuck.id)
        assert requeued.status == TaskStatus.RETRYING
        assert requeued.error_message.startswith("CLAIM_EXPIRED")
        claimed = await _report(services, db, waiting.id, TaskStatus.IN_PROGRESS, later)
        assert claimed.status == TaskStatus.IN_PROGRESS
        _assert_counters(await services.planner.get_deployment(db, first.id))

    @pytest.mark.asyncio
    async def test_offline_machine_claim_expires(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment, (on_m1, on_m2, _) = await _three_machine_deployment(services, db, v2.id, now)
        await _report(services, db, on_m1.id, TaskStatus.IN_PROGRESS, now)
        await _report(services, db, on_m2.id, TaskStatus.IN_PROGRESS, now)
        later = now + timedelta(seconds=150)
        await services.registry.heartbeat(db, "M2", now=later)

        expired = await services.tasks.expire_stale_claims(db, now=later)

        assert expired == 1
        assert (await services.tasks.get_task(db, on_m1.id)).status == TaskStatus.RETRYING
        assert (await services.tasks.get_task(db, on_m2.id)).status == TaskStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_reporting_task_is_kept(self, db, services, application, machines, now):
        _, _, v2 = application
        _, tasks = await _three_machine_deployment(services, db, v2.id, now)
        await _report(services, db, tasks[0].id, TaskStatus.IN_PROGRESS, now)
        later = now + timedelta(minutes=25)
        await _report(services, db, tasks[0].id, TaskStatus.IN_PROGRESS, later, progress_percentage=40)
        for machine_id in ("M1", "M2", "M3"):
            await services.registry.heartbeat(db, machine_id, now=now + timedelta(minutes=40))

        expired = await services.tasks.expire_stale_claims(db, now=now + timedelta(minutes=40))

        assert expired == 0
        assert (await services.tasks.get_task(db, tasks[0].id)).last_report_at == later

    @pytest.mark.asyncio
    async def test_expired_claim_of_cancelled_deployment_finalizes(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment = await services.planner.plan(
            db, DeploymentRequest(package_version_id=v2.id, target_machines=["M1"], deployed_by="admin"), now=now
        )
        [task] = await services.tasks.list_tasks(db, deployment.id)
        await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)
        await services.planner.cancel(db, deployment.id, "admin", now=now)

        await services.tasks.expire_stale_claims(db, now=now + timedelta(hours=1))

        final = await services.planner.get_deployment(db, deployment.id)
        assert (await services.tasks.get_task(db, task.id)).status == TaskStatus.FAILED
        assert final.status == DeploymentStatus.CANCELLED
        assert final.pending_count == 0
        _assert_counters(final)
