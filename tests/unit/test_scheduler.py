"""Unit tests for TaskScheduler: eligibility, ordering, claim and retry policy."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from deployer import errors
from deployer.api.models import DeploymentRequest, TaskStatusUpdate
from deployer.db.tables import ApplicationManifestDB
from deployer.models.status import DeploymentStatus, MergeStrategy, TaskStatus
from deployer.models.manifest import ApplicationManifest
from deployer.services.events import EventType


def _request(package_version_id: int, **kwargs) -> DeploymentRequest:
    kwargs.setdefault("deployed_by", "admin")
    kwargs.setdefault("target_machines", ["M1"])
    return DeploymentRequest(package_version_id=package_version_id, **kwargs)


async def _report(services, db, task_id, status, now, **kwargs):
    return await services.tasks.update_status(
        db, TaskStatusUpdate(task_id=task_id, status=status, **kwargs), now=now
    )


@pytest.mark.unit
class TestBackoff:

    def test_backoff_doubles_from_base(self, services):
        assert services.scheduler.backoff(1) == timedelta(seconds=60)
        assert services.scheduler.backoff(2) == timedelta(seconds=120)
        assert services.scheduler.backoff(3) == timedelta(seconds=240)

    def test_backoff_is_capped(self, services):
        assert services.scheduler.backoff(10) == timedelta(seconds=900)


@pytest.mark.unit
class TestPendingTasks:

    @pytest.mark.asyncio
    async def test_unknown_machine(self, db, services, now):
        with pytest.raises(errors.NotFoundError):
            await services.scheduler.pending_tasks(db, "ghost", now)

    @pytest.mark.asyncio
    async def test_no_work_is_empty_list(self, db, services, machines, now):
        assert await services.scheduler.pending_tasks(db, "M1", now) == []

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, db, services, application, machines, now):
        """Higher priority first; equal priority in creation order."""
        # Arrange
        _, v1, v2 = application
        low = await services.planner.plan(db, _request(v1.id, priority=0), now=now)
        high_first = await services.planner.plan(
            db, _request(v2.id, priority=5), now=now + timedelta(seconds=1)
        )
        high_second = await services.planner.plan(
            db, _request(v1.id, priority=5), now=now + timedelta(seconds=2)
        )

        # Act
        pending = await services.scheduler.pending_tasks(db, "M1", now + timedelta(seconds=3))

        # Assert
        assert [t.deployment_id for t in pending] == [high_first.id, high_second.id, low.id]
        assert pending[0].app_code == "billing"
        assert pending[0].version == "2.0.0"
        assert pending[0].file_hash == v2.file_hash
        assert pending[0].file_size_bytes == v2.file_size_bytes

    @pytest.mark.asyncio
    async def test_polling_is_idempotent(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(db, _request(v2.id), now=now)

        first = await services.scheduler.pending_tasks(db, "M1", now)
        second = await services.scheduler.pending_tasks(db, "M1", now)

        assert first == second
        assert len(first) == 1

    @pytest.mark.asyncio
    async def test_only_own_tasks(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(db, _request(v2.id, target_machines=["M2"]), now=now)

        assert await services.scheduler.pending_tasks(db, "M1", now) == []
        assert len(await services.scheduler.pending_tasks(db, "M2", now)) == 1

    @pytest.mark.asyncio
    async def test_scheduled_for_future_is_hidden(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(
            db, _request(v2.id, scheduled_for=now + timedelta(hours=1)), now=now
        )

        assert await services.scheduler.pending_tasks(db, "M1", now) == []
        later = await services.scheduler.pending_tasks(db, "M1", now + timedelta(hours=1))
        assert len(later) == 1

    @pytest.mark.asyncio
    async def test_claimed_task_is_not_returned(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(db, _request(v2.id), now=now)
        task = (await services.scheduler.pending_tasks(db, "M1", now))[0]

        await _report(services, db, task.task_id, TaskStatus.IN_PROGRESS, now)

        assert await services.scheduler.pending_tasks(db, "M1", now) == []

    @pytest.mark.asyncio
    async def test_active_manifest_policy_is_attached(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.manifests.create_manifest(
            db,
            "billing",
            ApplicationManifest(
                version="2.0.0",
                binary_version="2.0.0",
                merge_strategy=MergeStrategy.SELECTIVE,
                preserved_files=["app.ini"],
                is_active=True,
            ),
        )
        await services.planner.plan(db, _request(v2.id), now=now)

        [task] = await services.scheduler.pending_tasks(db, "M1", now)

        assert task.merge_strategy == MergeStrategy.SELECTIVE
        assert task.preserved_files == ["app.ini"]

    @pytest.mark.asyncio
    async def test_two_active_manifests_fail_the_poll(self, db, services, application, machines, now):
        # Arrange: bypass activate() to leave two manifests active
        _, v1, v2 = application
        for version in ("1.0.0", "2.0.0"):
            await services.manifests.create_manifest(
                db, "billing", ApplicationManifest(version=version, binary_version=version)
            )
        await db.execute(update(ApplicationManifestDB).values(is_active=True))
        await db.commit()
        await services.planner.plan(db, _request(v2.id), now=now)

        # Act / Assert
        with pytest.raises(errors.FatalConfigurationError, match="CORRUPT_MANIFEST"):
            await services.scheduler.pending_tasks(db, "M1", now)

    @pytest.mark.asyncio
    async def test_without_manifest_replaces_all(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(db, _request(v2.id), now=now)

        [task] = await services.scheduler.pending_tasks(db, "M1", now)

        assert task.merge_strategy == MergeStrategy.REPLACE_ALL
        assert task.preserved_files == []


@pytest.mark.unit
class TestClaim:

    @pytest.mark.asyncio
    async def test_first_claim_starts_deployment(self, db, services, events, application, machines, now):
        _, _, v2 = application
        deployment = await services.planner.plan(db, _request(v2.id), now=now)
        task = (await services.scheduler.pending_tasks(db, "M1", now))[0]

        claimed = await _report(services, db, task.task_id, TaskStatus.IN_PROGRESS, now)
        refreshed = await services.planner.get_deployment(db, deployment.id)

        assert claimed.status == TaskStatus.IN_PROGRESS
        assert claimed.started_at == now
        assert refreshed.status == DeploymentStatus.IN_PROGRESS
        assert refreshed.started_at == now
        assert len(events.of_type(EventType.TASK_CLAIMED)) == 1

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(db, _request(v2.id), now=now)
        task = (await services.scheduler.pending_tasks(db, "M1", now))[0]
        row = await services.tasks.get_task(db, task.task_id)
        await services.scheduler.claim(db, row, now)
        await db.commit()

        with pytest.raises(errors.ConflictError, match="TASK_NOT_CLAIMABLE"):
            await services.scheduler.claim(db, row, now)

    @pytest.mark.asyncio
    async def test_one_task_in_progress_per_machine(self, db, services, application, machines, now):
        """A machine works its queue sequentially."""
        _, v1, v2 = application
        await services.planner.plan(db, _request(v2.id), now=now)
        await services.planner.plan(db, _request(v1.id), now=now)
        first, second = await services.scheduler.pending_tasks(db, "M1", now)
        await _report(services, db, first.task_id, TaskStatus.IN_PROGRESS, now)

        with pytest.raises(errors.ConflictError, match="TASK_NOT_CLAIMABLE"):
            await _report(services, db, second.task_id, TaskStatus.IN_PROGRESS, now)

        assert (await services.tasks.get_task(db, second.task_id)).status == TaskStatus.QUEUED

    @pytest.mark.asyncio
    async def test_claim_by_other_machine_rejected(self, db, services, application, machines, now):
        _, _, v2 = application
        await services.planner.plan(db, _request(v2.id), now=now)
        task = (await services.scheduler.pending_tasks(db, "M1", now))[0]

        with pytest.raises(errors.ConflictError, match="TASK_NOT_OWNED"):
            await _report(services, db, task.task_id, TaskStatus.IN_PROGRESS, now, machine_id="M2")

    @pytest.mark.asyncio
    async def test_claim_before_schedule_rejected(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment = await services.planner.plan(
            db, _request(v2.id, scheduled_for=now + timedelta(minutes=10)), now=now
        )
        [task] = await services.tasks.list_tasks(db, deployment.id)

        with pytest.raises(errors.ConflictError):
            await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)


@pytest.mark.unit
class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_retryable_failure_backs_off_then_fails(self, db, services, events, application, machines, now):
        # Arrange
        _, _, v2 = application
        deployment = await services.planner.plan(db, _request(v2.id), now=now)
        [task] = await services.tasks.list_tasks(db, deployment.id)
        clock = now

        # Act / Assert: three retries, each after its back-off
        for attempt, delay in enumerate([60, 120, 240], start=1):
            await _report(services, db, task.id, TaskStatus.IN_PROGRESS, clock)
            retrying = await _report(services, db, task.id, TaskStatus.FAILED, clock, error_message="disk busy")

            assert retrying.status == TaskStatus.RETRYING
            assert retrying.retry_count == attempt
            assert retrying.next_retry_at == clock + timedelta(seconds=delay)
            assert await services.scheduler.pending_tasks(db, "M1", clock) == []
            counters = await services.planner.get_deployment(db, deployment.id)
            assert counters.pending_count == 1 and counters.failed_count == 0

            clock = retrying.next_retry_at
            assert len(await services.scheduler.pending_tasks(db, "M1", clock)) == 1

        await _report(services, db, task.id, TaskStatus.IN_PROGRESS, clock)
        failed = await _report(services, db, task.id, TaskStatus.FAILED, clock, error_message="disk busy")

        assert failed.status == TaskStatus.FAILED
        assert failed.retry_count == 3
        final = await services.planner.get_deployment(db, deployment.id)
        assert final.status == DeploymentStatus.FAILED
        assert final.failed_count == 1 and final.pending_count == 0
        assert len(events.of_type(EventType.TASK_RETRY_SCHEDULED)) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_terminal(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment = await services.planner.plan(db, _request(v2.id), now=now)
        [task] = await services.tasks.list_tasks(db, deployment.id)
        await _report(services, db, task.id, TaskStatus.IN_PROGRESS, now)

        failed = await _report(
            services, db, task.id, TaskStatus.FAILED, now, error_message="HASH_MISMATCH", retryable=False
        )

        assert failed.status == TaskStatus.FAILED
        assert failed.retry_count == 0
        assert failed.completed_at == now


@pytest.mark.unit
class TestStatistics:

    @pytest.mark.asyncio
    async def test_task_statistics(self, db, services, application, machines, now):
        _, _, v2 = application
        deployment = await services.planner.plan(db, _request(v2.id, target_machines=["M1", "M2", "M3"]), now=now)
        t1, t2, _ = await services.tasks.list_tasks(db, deployment.id)
        await _report(services, db, t1.id, TaskStatus.IN_PROGRESS, now)
        await _report(services, db, t1.id, TaskStatus.COMPLETED, now + timedelta(seconds=40))
        await _report(services, db, t2.id, TaskStatus.IN_PROGRESS, now)
        await _report(services, db, t2.id, TaskStatus.FAILED, now, retryable=False)

        stats = await services.scheduler.task_statistics(db, deployment.id)

        assert stats.total == 3
        assert stats.by_status["Completed"] == 1
        assert stats.by_status["Failed"] == 1
        assert stats.by_status["Queued"] == 1
        assert stats.success_rate == 50.0
        assert stats.average_install_duration_seconds == 40.0
