"""Task Scheduler / Queue: per-machine eligibility, ordering, claim and retry."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from deployer import errors
from deployer.api.models import PendingTask, TaskStatistics
from deployer.config import ServerSettings
from deployer.db.tables import (
    ApplicationDB,
    ApplicationManifestDB,
    ClientMachineDB,
    DeploymentTaskDB,
    PackageVersionDB,
)
from deployer.models.status import PENDING_TASK_STATUSES, MachineStatus, MergeStrategy, TaskStatus
from deployer.services.machine_registry import MachineRegistry


def _eligible(now: datetime):
    """Pending status, scheduled start reached and retry back-off elapsed."""
    return and_(
        DeploymentTaskDB.status.in_(list(PENDING_TASK_STATUSES)),
        or_(DeploymentTaskDB.scheduled_for.is_(None), DeploymentTaskDB.scheduled_for <= now),
        or_(DeploymentTaskDB.next_retry_at.is_(None), DeploymentTaskDB.next_retry_at <= now),
    )


class TaskScheduler:
    """Exposes and hands out tasks; each machine works its own queue sequentially.

    Nothing here commits: the claim and failure transitions are guarded
    UPDATE statements that the calling unit of work commits.
    """

    def __init__(self, settings: ServerSettings, registry: MachineRegistry):
        self.logger = logging.getLogger("deployer.scheduler")
        self.registry = registry
        self.backoff_base = settings.retry_backoff_base_seconds
        self.backoff_max = settings.retry_backoff_max_seconds
        self.claim_timeout = timedelta(seconds=settings.claim_timeout_seconds)

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before retry number ``retry_count``: base * 2^retry_count, capped."""
        return timedelta(seconds=min(self.backoff_base * (2 ** retry_count), self.backoff_max))

    async def pending_tasks(
        self, db: AsyncSession, machine_id: str, now: datetime
    ) -> list[PendingTask]:
        """Eligible tasks for a machine, highest priority first then FIFO.

        Read-only: polling twice without a claim returns the same list, and a
        claimed (InProgress) task is never included.

        Raises:
            errors.NotFoundError: Unknown machine
        """
        await self.registry.get_machine(db, machine_id)

        query = (
            select(
                DeploymentTaskDB,
                ApplicationDB.app_code,
                PackageVersionDB.version,
                PackageVersionDB.file_hash,
                PackageVersionDB.file_size_bytes,
                ApplicationManifestDB.merge_strategy,
                ApplicationManifestDB.preserved_files,
            )
            .join(PackageVersionDB, PackageVersionDB.id == DeploymentTaskDB.package_version_id)
            .join(ApplicationDB, ApplicationDB.id == PackageVersionDB.application_id)
            .outerjoin(
                ApplicationManifestDB,
                and_(
                    ApplicationManifestDB.application_id == ApplicationDB.id,
                    ApplicationManifestDB.is_active.is_(True),
                ),
            )
            .where(DeploymentTaskDB.target_machine_id == machine_id, _eligible(now))
            .order_by(
                DeploymentTaskDB.priority.desc(),
                DeploymentTaskDB.created_at.asc(),
                DeploymentTaskDB.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)

        pending = []
        seen: set[int] = set()
        for task, app_code, version, file_hash, size, strategy, preserved in result.all():
            if task.id in seen:
                raise errors.FatalConfigurationError(
                    f"CORRUPT_MANIFEST: more than one active manifest for {app_code}"
                )
            seen.add(task.id)
            pending.append(
                PendingTask(
                    task_id=task.id,
                    app_code=app_code,
                    version=version,
                    priority=task.priority,
                    scheduled_for=task.scheduled_for,
                    deployment_id=task.deployment_id,
                    package_version_id=task.package_version_id,
                    file_hash=file_hash,
                    file_size_bytes=size,
                    merge_strategy=strategy or MergeStrategy.REPLACE_ALL,
                    preserved_files=preserved or [],
                    retry_count=task.retry_count,
                )
            )
        self.logger.debug(f"Poll from {machine_id}: {len(pending)} eligible task(s)")
        return pending

    async def claim(
        self, db: AsyncSession, task: DeploymentTaskDB, now: datetime
    ) -> None:
        """Atomically move an eligible task to InProgress.

        The UPDATE only matches while the task is still Queued/Retrying and
        eligible, and while its machine has no other task InProgress.

        Raises:
            errors.ConflictError: Already claimed, not yet eligible, or machine busy
        """
        other = aliased(DeploymentTaskDB)
        machine_busy = (
            select(other.id)
            .where(
                other.target_machine_id == task.target_machine_id,
                other.status == TaskStatus.IN_PROGRESS,
                other.id != task.id,
            )
            .exists()
        )
        result = await db.execute(
            update(DeploymentTaskDB)
            .where(DeploymentTaskDB.id == task.id, _eligible(now), ~machine_busy)
            .values(
                status=TaskStatus.IN_PROGRESS,
                started_at=now,
                completed_at=None,
                next_retry_at=None,
                progress_percentage=0,
                current_step="Claimed",
                last_report_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise errors.ConflictError(
                f"TASK_NOT_CLAIMABLE: task {task.id} is {task.status.value}, "
                f"not yet eligible, or machine {task.target_machine_id} is busy"
            )
        self.logger.info(f"Task {task.id} claimed by {task.target_machine_id}")

    async def fail(
        self,
        db: AsyncSession,
        task: DeploymentTaskDB,
        error_message: Optional[str],
        retryable: bool,
        now: datetime,
    ) -> TaskStatus:
        """Apply the retry policy to a failed InProgress task.

        With retries left and a retryable error the task goes to Retrying with
        ``next_retry_at = now + backoff(retry_count + 1)``; otherwise it is
        terminally Failed.

        Returns:
            TaskStatus.RETRYING or TaskStatus.FAILED

        Raises:
            errors.ConflictError: Task left InProgress concurrently
        """
        guard = and_(
            DeploymentTaskDB.id == task.id,
            DeploymentTaskDB.status == TaskStatus.IN_PROGRESS,
            DeploymentTaskDB.retry_count == task.retry_count,
        )
        if retryable and task.retry_count < task.max_retries:
            retry_count = task.retry_count + 1
            next_retry_at = now + self.backoff(retry_count)
            values = dict(
                status=TaskStatus.RETRYING,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                current_step=f"Retry {retry_count}/{task.max_retries} scheduled",
                error_message=error_message,
                is_success=False,
            )
            new_status = TaskStatus.RETRYING
        else:
            values = dict(
                status=TaskStatus.FAILED,
                completed_at=now,
                next_retry_at=None,
                current_step="Failed",
                error_message=error_message,
                is_success=False,
            )
            new_status = TaskStatus.FAILED

        result = await db.execute(
            update(DeploymentTaskDB)
            .where(guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise errors.ConflictError(f"TASK_STATE_CHANGED: task {task.id} is no longer InProgress")

        if new_status == TaskStatus.RETRYING:
            self.logger.warning(
                f"Task {task.id} failed, retry {values['retry_count']}/{task.max_retries} "
                f"at {values['next_retry_at'].isoformat()}: {error_message}"
            )
        else:
            self.logger.error(
                f"Task {task.id} failed terminally after {task.retry_count} retries: {error_message}"
            )
        return new_status

    async def stale_claims(self, db: AsyncSession, now: datetime) -> list[DeploymentTaskDB]:
        """InProgress tasks whose agent is gone.

        A claim is stale when its machine is Offline or when nothing was
        reported for it within ``claim_timeout_seconds``.
        """
        last_report = func.coalesce(DeploymentTaskDB.last_report_at, DeploymentTaskDB.started_at)
        result = await db.execute(
            select(DeploymentTaskDB)
            .join(ClientMachineDB, ClientMachineDB.machine_id == DeploymentTaskDB.target_machine_id)
            .where(
                DeploymentTaskDB.status == TaskStatus.IN_PROGRESS,
                or_(
                    ClientMachineDB.status == MachineStatus.OFFLINE,
                    last_report < now - self.claim_timeout,
                ),
            )
            .order_by(DeploymentTaskDB.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def cancel_pending(self, db: AsyncSession, deployment_id: int, now: datetime) -> int:
        """Cancel every Queued/Retrying task of a deployment.

        In-flight tasks are left alone; the agent learns about the
        cancellation on its next report.

        Returns:
            Number of tasks cancelled
        """
        result = await db.execute(
            update(DeploymentTaskDB)
            .where(
                DeploymentTaskDB.deployment_id == deployment_id,
                DeploymentTaskDB.status.in_(list(PENDING_TASK_STATUSES)),
            )
            .values(
                status=TaskStatus.CANCELLED,
                completed_at=now,
                next_retry_at=None,
                current_step="Cancelled",
                is_success=False,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def task_statistics(
        self, db: AsyncSession, deployment_id: Optional[int] = None
    ) -> TaskStatistics:
        """Counts per status, success rate and average install duration."""
        counts_query = select(DeploymentTaskDB.status, func.count()).group_by(DeploymentTaskDB.status)
        duration_query = select(func.avg(DeploymentTaskDB.install_duration_seconds)).where(
            DeploymentTaskDB.status == TaskStatus.COMPLETED
        )
        if deployment_id is not None:
            counts_query = counts_query.where(DeploymentTaskDB.deployment_id == deployment_id)
            duration_query = duration_query.where(DeploymentTaskDB.deployment_id == deployment_id)

        by_status = {status.value: 0 for status in TaskStatus}
        for status, count in (await db.execute(counts_query)).all():
            by_status[status.value] = count

        terminal = sum(by_status[s.value] for s in TaskStatus if s.is_terminal)
        completed = by_status[TaskStatus.COMPLETED.value]
        average = await db.scalar(duration_query)

        return TaskStatistics(
            total=sum(by_status.values()),
            by_status=by_status,
            success_rate=round(completed / terminal * 100, 1) if terminal else 0.0,
            average_install_duration_seconds=float(average) if average is not None else None,
        )
