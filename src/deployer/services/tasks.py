"""Server half of the task state machine: validates and applies agent reports."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.api.models import TaskStatusUpdate
from deployer.db.tables import DeploymentHistoryDB, DeploymentTaskDB
from deployer.models.status import (
    PENDING_TASK_STATUSES,
    DeploymentStatus,
    TaskStatus,
)
from deployer.services.aggregator import DeploymentAggregator
from deployer.services.events import DeploymentEvent, EventSink, EventType, LoggingEventSink
from deployer.services.scheduler import TaskScheduler
from deployer.utils.clock import utcnow


class TaskService:
    """Applies one status report per call as a single unit of work.

    Transitions are driven only by explicit agent reports:

    - InProgress on Queued/Retrying claims the task
    - InProgress on InProgress is a progress report (percentage never decreases)
    - Completed/Failed/Cancelled are accepted only from InProgress
    - anything on a terminal task is rejected
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        aggregator: DeploymentAggregator,
        events: Optional[EventSink] = None,
    ):
        self.logger = logging.getLogger("deployer.tasks")
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.events = events or LoggingEventSink()

    async def get_task(self, db: AsyncSession, task_id: int) -> DeploymentTaskDB:
        result = await db.execute(
            select(DeploymentTaskDB)
            .where(DeploymentTaskDB.id == task_id)
            .execution_options(populate_existing=True)
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise errors.NotFoundError(f"TASK_NOT_FOUND: id={task_id}")
        return task

    async def list_tasks(self, db: AsyncSession, deployment_id: int) -> list[DeploymentTaskDB]:
        result = await db.execute(
            select(DeploymentTaskDB)
            .where(DeploymentTaskDB.deployment_id == deployment_id)
            .order_by(DeploymentTaskDB.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def update_status(
        self, db: AsyncSession, report: TaskStatusUpdate, now: Optional[datetime] = None
    ) -> DeploymentTaskDB:
        """Validate and apply an agent status report.

        Args:
            db: Database session (committed once on success)
            report: Agent report
            now: Current time (naive UTC)

        Returns:
            The task after the transition

        Raises:
            errors.NotFoundError: Unknown task
            errors.ConflictError: Illegal transition or progress regression
            errors.TaskCancelledError: Progress report on a cancelled deployment
        """
        now = now or utcnow()
        task = await self.get_task(db, report.task_id)
        if report.machine_id is not None and report.machine_id != task.target_machine_id:
            raise errors.ConflictError(
                f"TASK_NOT_OWNED: task {task.id} belongs to {task.target_machine_id}"
            )
        if task.status.is_terminal:
            raise errors.ConflictError(
                f"TASK_TERMINAL: task {task.id} is already {task.status.value}"
            )

        deployment = await db.get(DeploymentHistoryDB, task.deployment_id, populate_existing=True)
        pending_events: list[DeploymentEvent] = []

        try:
            if report.status == TaskStatus.IN_PROGRESS:
                if task.status in PENDING_TASK_STATUSES:
                    await self._claim(db, task, deployment, now, pending_events)
                else:
                    await self._progress(db, task, deployment, report, now, pending_events)
            elif task.status != TaskStatus.IN_PROGRESS:
                raise errors.ConflictError(
                    f"ILLEGAL_TRANSITION: task {task.id} is {task.status.value}, "
                    f"cannot report {report.status.value} before claiming"
                )
            elif report.status == TaskStatus.COMPLETED:
                await self._complete(db, task, report, now, pending_events)
            elif report.status == TaskStatus.FAILED:
                await self._fail(db, task, deployment, report, now, pending_events)
            elif report.status == TaskStatus.CANCELLED:
                await self._cancel(db, task, report, now, pending_events)
            else:
                raise errors.ValidationError(f"UNREPORTABLE_STATUS: {report.status.value}")
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        for event in pending_events:
            self.events.emit(event)
        return await self.get_task(db, task.id)

    async def expire_stale_claims(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Fail InProgress tasks whose agent crashed or went silent.

        Each stale task goes through the normal retryable failure path, so
        it is re-queued with back-off while retries remain and its machine
        can claim other work again.

        Returns:
            Number of tasks expired
        """
        now = now or utcnow()
        await self.scheduler.registry.mark_stale_offline(db, now)
        stale = [
            (task.id, task.target_machine_id, task.last_report_at or task.started_at)
            for task in await self.scheduler.stale_claims(db, now)
        ]

        expired = 0
        for task_id, machine_id, last_report in stale:
            report = TaskStatusUpdate(
                task_id=task_id,
                status=TaskStatus.FAILED,
                error_message=f"CLAIM_EXPIRED: no report from {machine_id} since {last_report}",
                retryable=True,
            )
            try:
                await self.update_status(db, report, now=now)
            except errors.ConflictError as e:
                self.logger.info(f"Task {task_id} changed while expiring its claim: {e}")
                continue
            self.logger.warning(f"Expired stale claim of task {task_id} on {machine_id}")
            expired += 1
        return expired

    async def _claim(self, db, task, deployment, now, pending_events) -> None:
        if deployment.status == DeploymentStatus.CANCELLED:
            raise errors.TaskCancelledError(f"DEPLOYMENT_CANCELLED: deployment {deployment.id}")
        await self.scheduler.claim(db, task, now)
        pending_events.append(
            DeploymentEvent(
                type=EventType.TASK_CLAIMED,
                deployment_id=task.deployment_id,
                task_id=task.id,
                machine_id=task.target_machine_id,
                detail={"retry_count": task.retry_count},
            )
        )
        if await self.aggregator.mark_started(db, task.deployment_id, now):
            pending_events.append(self._status_event(deployment, DeploymentStatus.IN_PROGRESS))

    async def _progress(self, db, task, deployment, report, now, pending_events) -> None:
        if deployment.status == DeploymentStatus.CANCELLED:
            raise errors.TaskCancelledError(
                f"DEPLOYMENT_CANCELLED: deployment {deployment.id} was cancelled, abort task {task.id}"
            )
        percentage = report.progress_percentage
        if percentage is None:
            percentage = task.progress_percentage
        if percentage < task.progress_percentage:
            raise errors.ConflictError(
                f"PROGRESS_REGRESSION: task {task.id} at {task.progress_percentage}%, "
                f"reported {percentage}%"
            )

        values = {"progress_percentage": percentage, "last_report_at": now}
        if report.current_step is not None:
            values["current_step"] = report.current_step
        if report.download_size_bytes is not None:
            values["download_size_bytes"] = report.download_size_bytes
        # Guarded so two racing reports cannot move progress backwards
        result = await db.execute(
            update(DeploymentTaskDB)
            .where(
                DeploymentTaskDB.id == task.id,
                DeploymentTaskDB.status == TaskStatus.IN_PROGRESS,
                DeploymentTaskDB.progress_percentage <= percentage,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise errors.ConflictError(f"PROGRESS_REJECTED: task {task.id} changed concurrently")
        pending_events.append(
            DeploymentEvent(
                type=EventType.TASK_PROGRESS,
                deployment_id=task.deployment_id,
                task_id=task.id,
                machine_id=task.target_machine_id,
                detail={"progress": percentage, "step": report.current_step},
            )
        )

    async def _complete(self, db, task, report, now, pending_events) -> None:
        duration = (now - task.started_at).total_seconds() if task.started_at else None
        values = dict(
            status=TaskStatus.COMPLETED,
            progress_percentage=100,
            current_step=report.current_step or "Completed",
            is_success=True,
            error_message=None,
            completed_at=now,
            install_duration_seconds=duration,
        )
        if report.download_size_bytes is not None:
            values["download_size_bytes"] = report.download_size_bytes
        await self._finish(db, task, values)
        await self.aggregator.record_outcome(db, task.deployment_id, success=True)
        pending_events.append(self._task_event(EventType.TASK_COMPLETED, task, {"duration_seconds": duration}))
        await self._finalize(db, task, now, pending_events)

    async def _fail(self, db, task, deployment, report, now, pending_events) -> None:
        # A cancelled deployment never re-queues work
        retryable = report.retryable and deployment.status != DeploymentStatus.CANCELLED
        if report.download_size_bytes is not None:
            task.download_size_bytes = report.download_size_bytes
        new_status = await self.scheduler.fail(db, task, report.error_message, retryable, now)
        if new_status == TaskStatus.RETRYING:
            pending_events.append(
                self._task_event(
                    EventType.TASK_RETRY_SCHEDULED,
                    task,
                    {"retry_count": task.retry_count + 1, "error": report.error_message},
                )
            )
            return
        await self.aggregator.record_outcome(db, task.deployment_id, success=False)
        pending_events.append(
            self._task_event(EventType.TASK_FAILED, task, {"error": report.error_message})
        )
        await self._finalize(db, task, now, pending_events)

    async def _cancel(self, db, task, report, now, pending_events) -> None:
        await self._finish(
            db,
            task,
            dict(
                status=TaskStatus.CANCELLED,
                current_step=report.current_step or "Cancelled",
                is_success=False,
                error_message=report.error_message,
                completed_at=now,
            ),
        )
        await self.aggregator.record_outcome(db, task.deployment_id, success=False)
        pending_events.append(self._task_event(EventType.TASK_CANCELLED, task, {}))
        await self._finalize(db, task, now, pending_events)

    async def _finish(self, db, task, values: dict) -> None:
        result = await db.execute(
            update(DeploymentTaskDB)
            .where(DeploymentTaskDB.id == task.id, DeploymentTaskDB.status == TaskStatus.IN_PROGRESS)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise errors.ConflictError(f"TASK_STATE_CHANGED: task {task.id} is no longer InProgress")
        self.logger.info(f"Task {task.id} on {task.target_machine_id}: {values['status'].value}")

    async def _finalize(self, db, task, now, pending_events) -> None:
        final_status = await self.aggregator.finalize(db, task.deployment_id, now)
        if final_status is not None:
            deployment = await db.get(DeploymentHistoryDB, task.deployment_id)
            pending_events.append(self._status_event(deployment, final_status))

    @staticmethod
    def _task_event(event_type: EventType, task: DeploymentTaskDB, detail: dict) -> DeploymentEvent:
        return DeploymentEvent(
            type=event_type,
            deployment_id=task.deployment_id,
            task_id=task.id,
            machine_id=task.target_machine_id,
            detail=detail,
        )

    @staticmethod
    def _status_event(deployment: DeploymentHistoryDB, status: DeploymentStatus) -> DeploymentEvent:
        return DeploymentEvent(
            type=EventType.DEPLOYMENT_STATUS_CHANGED,
            deployment_id=deployment.id,
            detail={"status": status.value},
        )
