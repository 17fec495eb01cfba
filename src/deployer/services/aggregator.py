"""Deployment Aggregator: rolls task outcomes up into deployment counters.

All counter changes are single UPDATE statements with relative increments,
so concurrent task completions from many machines never lose an update.
Callers own the transaction; nothing here commits.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.api.models import DeploymentProgress, TaskInfo
from deployer.db.tables import DeploymentHistoryDB, DeploymentTaskDB
from deployer.models.status import TERMINAL_DEPLOYMENT_STATUSES, DeploymentStatus


class DeploymentAggregator:
    def __init__(self):
        self.logger = logging.getLogger("deployer.aggregator")

    async def mark_started(self, db: AsyncSession, deployment_id: int, now: datetime) -> bool:
        """Pending → InProgress on the first claimed task.

        Returns:
            True if this call performed the transition
        """
        result = await db.execute(
            update(DeploymentHistoryDB)
            .where(
                DeploymentHistoryDB.id == deployment_id,
                DeploymentHistoryDB.status == DeploymentStatus.PENDING,
            )
            .values(status=DeploymentStatus.IN_PROGRESS, started_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_outcome(self, db: AsyncSession, deployment_id: int, success: bool) -> None:
        """Move one target from pending to success or failed.

        Raises:
            errors.ConflictError: Deployment has no pending targets left
        """
        counter = DeploymentHistoryDB.success_count if success else DeploymentHistoryDB.failed_count
        result = await db.execute(
            update(DeploymentHistoryDB)
            .where(
                DeploymentHistoryDB.id == deployment_id,
                DeploymentHistoryDB.pending_count > 0,
            )
            .values({counter: counter + 1, DeploymentHistoryDB.pending_count: DeploymentHistoryDB.pending_count - 1})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise errors.ConflictError(
                f"COUNTER_UNDERFLOW: deployment {deployment_id} has no pending targets"
            )

    async def record_cancelled(self, db: AsyncSession, deployment_id: int, count: int) -> None:
        """Move ``count`` cancelled targets from pending to failed."""
        if count <= 0:
            return
        await db.execute(
            update(DeploymentHistoryDB)
            .where(
                DeploymentHistoryDB.id == deployment_id,
                DeploymentHistoryDB.pending_count >= count,
            )
            .values(
                failed_count=DeploymentHistoryDB.failed_count + count,
                pending_count=DeploymentHistoryDB.pending_count - count,
            )
            .execution_options(synchronize_session=False)
        )

    async def finalize(
        self, db: AsyncSession, deployment_id: int, now: datetime
    ) -> Optional[DeploymentStatus]:
        """Compute the final status once no targets are pending.

        The status is derived inside the UPDATE from the committed counters,
        and terminal deployments (including Cancelled) are never touched.

        Returns:
            The new terminal status, or None if the deployment is not done
        """
        final_status = case(
            (DeploymentHistoryDB.failed_count == 0, DeploymentStatus.SUCCESS.value),
            (DeploymentHistoryDB.success_count == 0, DeploymentStatus.FAILED.value),
            else_=DeploymentStatus.PARTIAL_FAILURE.value,
        )
        result = await db.execute(
            update(DeploymentHistoryDB)
            .where(
                DeploymentHistoryDB.id == deployment_id,
                DeploymentHistoryDB.pending_count == 0,
                DeploymentHistoryDB.status.not_in(list(TERMINAL_DEPLOYMENT_STATUSES)),
            )
            .values(status=final_status, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        status = await db.scalar(
            select(DeploymentHistoryDB.status).where(DeploymentHistoryDB.id == deployment_id)
        )
        self.logger.info(f"Deployment {deployment_id} finished: {status.value}")
        return status

    async def progress(
        self, db: AsyncSession, deployment_id: int, now: datetime
    ) -> DeploymentProgress:
        """Counters, per-task state and an ETA for one deployment.

        The ETA is the average time per finished target multiplied by the
        targets still pending.
        """
        result = await db.execute(
            select(DeploymentHistoryDB)
            .where(DeploymentHistoryDB.id == deployment_id)
            .execution_options(populate_existing=True)
        )
        deployment = result.scalar_one_or_none()
        if deployment is None:
            raise errors.NotFoundError(f"DEPLOYMENT_NOT_FOUND: id={deployment_id}")

        tasks = await db.execute(
            select(DeploymentTaskDB)
            .where(DeploymentTaskDB.deployment_id == deployment_id)
            .order_by(DeploymentTaskDB.id)
            .execution_options(populate_existing=True)
        )

        finished = deployment.success_count + deployment.failed_count
        total = deployment.total_targets
        elapsed = None
        remaining = None
        eta = None
        if deployment.started_at is not None:
            end = deployment.completed_at or now
            elapsed = max((end - deployment.started_at).total_seconds(), 0.0)
            if finished and deployment.pending_count and deployment.completed_at is None:
                remaining = elapsed / finished * deployment.pending_count
                eta = now + timedelta(seconds=remaining)

        return DeploymentProgress(
            deployment_id=deployment.id,
            status=deployment.status,
            total_targets=total,
            success_count=deployment.success_count,
            failed_count=deployment.failed_count,
            pending_count=deployment.pending_count,
            percent_complete=round(finished / total * 100, 1) if total else 0.0,
            elapsed_seconds=elapsed,
            estimated_seconds_remaining=remaining,
            estimated_completion=eta,
            tasks=[TaskInfo.model_validate(t) for t in tasks.scalars()],
        )
