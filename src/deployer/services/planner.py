"""Deployment Planner: expands a deployment request into per-machine tasks."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.api.models import DeploymentRequest
from deployer.config import ServerSettings
from deployer.db.tables import DeploymentHistoryDB, DeploymentTaskDB
from deployer.models.status import DeploymentStatus, DeploymentType, TaskStatus
from deployer.services.aggregator import DeploymentAggregator
from deployer.services.events import DeploymentEvent, EventSink, EventType, LoggingEventSink
from deployer.services.machine_registry import MachineRegistry
from deployer.services.package_store import PackageStore
from deployer.services.scheduler import TaskScheduler
from deployer.utils.clock import utcnow


class DeploymentPlanner:
    """Creates deployments and drives their admin-side lifecycle.

    A deployment and all of its tasks are written in one transaction, so a
    history row without its full task set is never observable.
    """

    def __init__(
        self,
        settings: ServerSettings,
        package_store: PackageStore,
        registry: MachineRegistry,
        scheduler: TaskScheduler,
        aggregator: DeploymentAggregator,
        events: Optional[EventSink] = None,
    ):
        self.logger = logging.getLogger("deployer.planner")
        self.max_retries = settings.default_max_retries
        self.package_store = package_store
        self.registry = registry
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.events = events or LoggingEventSink()

    async def plan(
        self,
        db: AsyncSession,
        request: DeploymentRequest,
        now: Optional[datetime] = None,
        rollback_of_id: Optional[int] = None,
    ) -> DeploymentHistoryDB:
        """Validate a request, resolve its targets and persist the deployment.

        Global deployments snapshot every machine known right now; later
        registrations are not added. Targeted deployments skip unknown
        identifiers and record them in ``skipped_targets``.

        Args:
            db: Database session
            request: Deployment request
            now: Current time (naive UTC)
            rollback_of_id: Deployment this one rolls back, if any

        Returns:
            The persisted deployment (Pending, or PendingApproval without tasks)

        Raises:
            errors.ValidationError: Both or neither of global/targets given
            errors.InvalidPackageVersionError: Version missing or deactivated
            errors.NoEligibleTargetsError: No machine resolved
        """
        now = now or utcnow()
        if request.is_global and request.target_machines:
            raise errors.ValidationError("INVALID_TARGETS: global deployment must not list targets")
        if not request.is_global and not request.target_machines:
            raise errors.ValidationError("INVALID_TARGETS: targeted deployment needs at least one target")

        try:
            package = await self.package_store.get_by_id(db, request.package_version_id)
        except errors.NotFoundError as e:
            raise errors.InvalidPackageVersionError(
                f"INVALID_PACKAGE_VERSION: id={request.package_version_id} does not exist"
            ) from e
        if not package.is_active:
            raise errors.InvalidPackageVersionError(
                f"INVALID_PACKAGE_VERSION: id={package.id} ({package.version}) is deactivated"
            )

        if request.is_global:
            machine_ids = await self.registry.list_known_machines(db)
            skipped: list[str] = []
        else:
            machine_ids, skipped = await self.registry.resolve_machines(db, request.target_machines)
        if not machine_ids:
            raise errors.NoEligibleTargetsError(
                f"NO_ELIGIBLE_TARGETS: none of {request.target_machines or 'all machines'} resolved"
            )

        deployment = DeploymentHistoryDB(
            application_id=package.application_id,
            package_version_id=package.id,
            environment=request.environment,
            deployment_type=request.deployment_type,
            is_global=request.is_global,
            target_machines=list(request.target_machines),
            target_machine_ids=list(machine_ids),
            skipped_targets=list(skipped),
            priority=request.priority,
            scheduled_for=request.scheduled_for,
            status=(
                DeploymentStatus.PENDING_APPROVAL if request.requires_approval else DeploymentStatus.PENDING
            ),
            total_targets=len(machine_ids),
            success_count=0,
            failed_count=0,
            pending_count=len(machine_ids),
            deployed_by=request.deployed_by,
            deployed_at=now,
            requires_approval=request.requires_approval,
            rollback_of_id=rollback_of_id,
        )
        db.add(deployment)
        try:
            await db.flush()
            tasks = []
            if not request.requires_approval:
                tasks = await self.release_tasks(db, deployment, now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        self.logger.info(
            f"Planned deployment {deployment.id}: {package.version} to {len(machine_ids)} machine(s), "
            f"status={deployment.status.value}, skipped={skipped}"
        )
        self.events.emit(
            DeploymentEvent(
                type=EventType.DEPLOYMENT_CREATED,
                deployment_id=deployment.id,
                actor=request.deployed_by,
                detail={
                    "package_version_id": package.id,
                    "version": package.version,
                    "total_targets": len(machine_ids),
                    "skipped_targets": skipped,
                    "status": deployment.status.value,
                },
            )
        )
        self._emit_task_created(deployment, tasks)
        return deployment

    async def release_tasks(
        self, db: AsyncSession, deployment: DeploymentHistoryDB, now: datetime
    ) -> list[DeploymentTaskDB]:
        """Create one Queued task per snapshotted target (no commit).

        Raises:
            errors.ApprovalRequiredError: Deployment is still awaiting approval
        """
        if deployment.status == DeploymentStatus.PENDING_APPROVAL:
            raise errors.ApprovalRequiredError(
                f"APPROVAL_REQUIRED: deployment {deployment.id} has not been approved"
            )
        tasks = [
            DeploymentTaskDB(
                deployment_id=deployment.id,
                target_machine_id=machine_id,
                package_version_id=deployment.package_version_id,
                status=TaskStatus.QUEUED,
                priority=deployment.priority,
                created_at=now,
                scheduled_for=deployment.scheduled_for,
                max_retries=self.max_retries,
                retry_count=0,
                progress_percentage=0,
            )
            for machine_id in deployment.target_machine_ids
        ]
        db.add_all(tasks)
        await db.flush()
        return tasks

    async def approve(
        self, db: AsyncSession, deployment_id: int, approved_by: str, now: Optional[datetime] = None
    ) -> DeploymentHistoryDB:
        """Approve a gated deployment and release its tasks.

        Raises:
            errors.ConflictError: Deployment is not awaiting approval
        """
        now = now or utcnow()
        deployment = await self.get_deployment(db, deployment_id)
        if deployment.status != DeploymentStatus.PENDING_APPROVAL:
            raise errors.ConflictError(
                f"NOT_PENDING_APPROVAL: deployment {deployment_id} is {deployment.status.value}"
            )
        deployment.status = DeploymentStatus.PENDING
        deployment.approved_by = approved_by
        deployment.approved_at = now
        try:
            tasks = await self.release_tasks(db, deployment, now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        self.logger.info(f"Deployment {deployment_id} approved by {approved_by}")
        self.events.emit(
            DeploymentEvent(
                type=EventType.DEPLOYMENT_APPROVED, deployment_id=deployment_id, actor=approved_by
            )
        )
        self._emit_task_created(deployment, tasks)
        return deployment

    async def reject(
        self,
        db: AsyncSession,
        deployment_id: int,
        rejected_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeploymentHistoryDB:
        deployment = await self.get_deployment(db, deployment_id)
        if deployment.status != DeploymentStatus.PENDING_APPROVAL:
            raise errors.ConflictError(
                f"NOT_PENDING_APPROVAL: deployment {deployment_id} is {deployment.status.value}"
            )
        return await self._close_cancelled(
            db, deployment, rejected_by, f"Rejected by {rejected_by}: {reason or 'no reason given'}", now
        )

    async def cancel(
        self, db: AsyncSession, deployment_id: int, cancelled_by: str, now: Optional[datetime] = None
    ) -> DeploymentHistoryDB:
        """Cancel a deployment; queued and retrying tasks are cancelled now.

        Tasks already in flight finish through their own reports and still
        move the counters, but the deployment stays Cancelled.

        Raises:
            errors.ConflictError: Deployment is already terminal
        """
        deployment = await self.get_deployment(db, deployment_id)
        if deployment.status.is_terminal:
            raise errors.ConflictError(
                f"DEPLOYMENT_TERMINAL: deployment {deployment_id} is already {deployment.status.value}"
            )
        return await self._close_cancelled(db, deployment, cancelled_by, f"Cancelled by {cancelled_by}", now)

    async def _close_cancelled(
        self,
        db: AsyncSession,
        deployment: DeploymentHistoryDB,
        actor: str,
        message: str,
        now: Optional[datetime],
    ) -> DeploymentHistoryDB:
        now = now or utcnow()
        try:
            if deployment.status == DeploymentStatus.PENDING_APPROVAL:
                # No tasks exist yet; every target is cancelled
                cancelled = deployment.pending_count
            else:
                cancelled = await self.scheduler.cancel_pending(db, deployment.id, now)
            await self.aggregator.record_cancelled(db, deployment.id, cancelled)
            result = await db.execute(
                update(DeploymentHistoryDB)
                .where(
                    DeploymentHistoryDB.id == deployment.id,
                    DeploymentHistoryDB.status == deployment.status,
                )
                .values(status=DeploymentStatus.CANCELLED, completed_at=now, error_message=message)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise errors.ConflictError(
                    f"DEPLOYMENT_STATE_CHANGED: deployment {deployment.id} changed concurrently"
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        self.logger.info(f"Deployment {deployment.id} cancelled by {actor}: {cancelled} task(s) cancelled")
        self.events.emit(
            DeploymentEvent(
                type=EventType.DEPLOYMENT_STATUS_CHANGED,
                deployment_id=deployment.id,
                actor=actor,
                detail={"status": DeploymentStatus.CANCELLED.value, "cancelled_tasks": cancelled},
            )
        )
        return await self.get_deployment(db, deployment.id)

    async def plan_rollback(
        self, db: AsyncSession, deployment_id: int, initiated_by: str, now: Optional[datetime] = None
    ) -> DeploymentHistoryDB:
        """Deploy the predecessor version to machines that completed a deployment.

        Raises:
            errors.ValidationError: Package version has no predecessor
            errors.NoEligibleTargetsError: No machine completed the deployment
        """
        original = await self.get_deployment(db, deployment_id)
        predecessor = await self.package_store.get_predecessor(db, original.package_version_id)
        if predecessor is None:
            raise errors.ValidationError(
                f"NO_PREDECESSOR: package version id={original.package_version_id} replaces nothing"
            )

        result = await db.execute(
            select(DeploymentTaskDB.target_machine_id)
            .where(
                DeploymentTaskDB.deployment_id == deployment_id,
                DeploymentTaskDB.status == TaskStatus.COMPLETED,
            )
            .order_by(DeploymentTaskDB.id)
        )
        machine_ids = list(result.scalars())
        if not machine_ids:
            raise errors.NoEligibleTargetsError(
                f"NO_ELIGIBLE_TARGETS: no machine completed deployment {deployment_id}"
            )

        request = DeploymentRequest(
            package_version_id=predecessor.id,
            environment=original.environment,
            deployment_type=DeploymentType.ROLLBACK,
            is_global=False,
            target_machines=machine_ids,
            requires_approval=False,
            deployed_by=initiated_by,
            priority=original.priority + 1,
        )
        self.logger.info(
            f"Rolling back deployment {deployment_id} to version {predecessor.version} "
            f"on {len(machine_ids)} machine(s)"
        )
        return await self.plan(db, request, now=now, rollback_of_id=deployment_id)

    async def get_deployment(self, db: AsyncSession, deployment_id: int) -> DeploymentHistoryDB:
        result = await db.execute(
            select(DeploymentHistoryDB)
            .where(DeploymentHistoryDB.id == deployment_id)
            .execution_options(populate_existing=True)
        )
        deployment = result.scalar_one_or_none()
        if deployment is None:
            raise errors.NotFoundError(f"DEPLOYMENT_NOT_FOUND: id={deployment_id}")
        return deployment

    async def list_deployments(self, db: AsyncSession, limit: int = 50) -> list[DeploymentHistoryDB]:
        result = await db.execute(
            select(DeploymentHistoryDB)
            .order_by(DeploymentHistoryDB.deployed_at.desc(), DeploymentHistoryDB.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    def _emit_task_created(self, deployment: DeploymentHistoryDB, tasks: list[DeploymentTaskDB]) -> None:
        for task in tasks:
            self.events.emit(
                DeploymentEvent(
                    type=EventType.TASK_CREATED,
                    deployment_id=deployment.id,
                    task_id=task.id,
                    machine_id=task.target_machine_id,
                )
            )
