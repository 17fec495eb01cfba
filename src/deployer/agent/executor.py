"""Agent half of the task state machine: claim, download, install, report."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from deployer import errors
from deployer.agent.client import ServerClient
from deployer.agent.download import PackageDownloader
from deployer.agent.installer import UNSETTLED_STAGES, Installer
from deployer.agent.state_manager import AgentStateManager
from deployer.api.models import PendingTask, TaskStatusUpdate
from deployer.models.state import StateFile
from deployer.models.status import StageEnum, TaskStatus

# Progress bands reported to the server
DOWNLOAD_START = 5
DOWNLOAD_END = 60
VERIFIED = 65


class TaskExecutor:
    """Executes one task end to end and reports every transition.

    Progress sent to the server never decreases within a task. A
    ``TaskCancelledError`` from any progress report aborts the task with
    the same rollback as a failure and ends in a Cancelled report.

    The task is written to the state file before it is claimed and stays
    there until the server has acknowledged its terminal report, so a crash
    or a lost report is resent by ``report_unfinished``.
    """

    def __init__(
        self,
        client: ServerClient,
        downloader: PackageDownloader,
        installer: Installer,
        state_manager: AgentStateManager,
        machine_id: str,
        report_attempts: int = 3,
        report_retry_delay: float = 1.0,
    ):
        self.logger = logging.getLogger("deployer.agent.executor")
        self.client = client
        self.downloader = downloader
        self.installer = installer
        self.state_manager = state_manager
        self.machine_id = machine_id
        self.report_attempts = report_attempts
        self.report_retry_delay = report_retry_delay
        self._last_progress = 0

    async def execute(self, task: PendingTask) -> Optional[TaskStatus]:
        """Run one polled task.

        Returns:
            Terminal status decided, or None if the task could not be claimed
        """
        self._last_progress = 0
        self.state_manager.save_state(
            StateFile(
                task_id=task.task_id,
                app_code=task.app_code,
                version=task.version,
                stage=StageEnum.CLAIMING,
            )
        )
        if not await self._claim(task):
            return None

        self.logger.info(f"Executing task {task.task_id}: {task.app_code} {task.version}")
        self.state_manager.update_status(
            StageEnum.CLAIMING,
            0,
            f"Claimed task for {task.app_code} {task.version}",
            task_id=task.task_id,
            app_code=task.app_code,
        )

        package_path: Optional[Path] = None
        download_size: Optional[int] = None
        try:
            await self._progress(task, StageEnum.DOWNLOADING, DOWNLOAD_START, "Downloading")

            async def on_download_progress(done: int, total: int) -> None:
                percent = DOWNLOAD_START + int((DOWNLOAD_END - DOWNLOAD_START) * min(done / total, 1.0))
                await self._progress(task, StageEnum.DOWNLOADING, percent, "Downloading")

            package_path = await self.downloader.fetch(task, self.machine_id, on_progress=on_download_progress)
            download_size = package_path.stat().st_size
            await self._progress(task, StageEnum.VERIFYING, VERIFIED, "Verified", download_size)

            await self.installer.install(task, package_path, checkpoint=self._checkpoint_for(task))
        except errors.TaskCancelledError as e:
            self.logger.warning(f"Task {task.task_id} cancelled by server: {e}")
            return await self._finish(task, TaskStatus.CANCELLED, StageEnum.CANCELLED, error=str(e))
        except errors.DeployerError as e:
            self.logger.error(f"Task {task.task_id} failed: {type(e).__name__}: {e}")
            return await self._finish(
                task,
                TaskStatus.FAILED,
                StageEnum.FAILED,
                error=f"{type(e).__name__}: {e}",
                retryable=e.retryable,
                download_size=download_size,
            )
        except Exception as e:
            self.logger.error(f"Task {task.task_id} failed unexpectedly: {e}", exc_info=True)
            return await self._finish(
                task,
                TaskStatus.FAILED,
                StageEnum.FAILED,
                error=f"{type(e).__name__}: {e}",
                download_size=download_size,
            )
        finally:
            if package_path is not None:
                package_path.unlink(missing_ok=True)

        return await self._finish(
            task, TaskStatus.COMPLETED, StageEnum.SUCCESS, download_size=download_size
        )

    async def _claim(self, task: PendingTask) -> bool:
        """Send the claim, resending it while the network fails.

        A resent claim that already reached the server is taken as a
        progress report at 0%. If no attempt gets through, a retryable
        ``CLAIM_UNCONFIRMED`` failure is left in the state file for
        ``report_unfinished``; should the claim never have arrived, the
        server rejects that report and the state file is dropped.
        """
        claim = TaskStatusUpdate(
            task_id=task.task_id,
            status=TaskStatus.IN_PROGRESS,
            progress_percentage=0,
            current_step="Claimed",
            machine_id=self.machine_id,
        )
        for attempt in range(1, self.report_attempts + 1):
            try:
                await self.client.update_task_status(claim)
                return True
            except errors.TransientNetworkError as e:
                self.logger.warning(
                    f"Claim of task {task.task_id} failed "
                    f"(attempt {attempt}/{self.report_attempts}): {e}"
                )
                if attempt < self.report_attempts:
                    await asyncio.sleep(self.report_retry_delay * attempt)
            except errors.DeployerError as e:
                self.logger.info(f"Task {task.task_id} not claimed, skipping: {e}")
                self.state_manager.delete_state()
                return False

        self.logger.error(f"Claim of task {task.task_id} unconfirmed, will report it failed")
        self._record_outcome(
            TaskStatus.FAILED,
            f"CLAIM_UNCONFIRMED: claim of task {task.task_id} got no answer "
            f"after {self.report_attempts} attempts",
            retryable=True,
        )
        return False

    def _checkpoint_for(self, task: PendingTask):
        async def checkpoint(stage: StageEnum, progress: int, step: str) -> None:
            await self._progress(task, stage, progress, step)

        return checkpoint

    async def _progress(
        self,
        task: PendingTask,
        stage: StageEnum,
        percent: int,
        step: str,
        download_size: Optional[int] = None,
    ) -> None:
        """Report progress; transient failures are logged and skipped.

        Raises:
            errors.TaskCancelledError: Deployment was cancelled server-side
        """
        self.state_manager.update_status(stage, percent, f"{step} {task.app_code} {task.version}")
        if percent <= self._last_progress:
            return
        self._last_progress = percent
        try:
            await self.client.update_task_status(
                TaskStatusUpdate(
                    task_id=task.task_id,
                    status=TaskStatus.IN_PROGRESS,
                    progress_percentage=percent,
                    current_step=step,
                    download_size_bytes=download_size,
                    machine_id=self.machine_id,
                )
            )
        except errors.TaskCancelledError:
            raise
        except (errors.TransientNetworkError, errors.ConflictError) as e:
            self.logger.warning(f"Progress report for task {task.task_id} skipped: {e}")

    async def _finish(
        self,
        task: PendingTask,
        status: TaskStatus,
        stage: StageEnum,
        error: Optional[str] = None,
        retryable: bool = True,
        download_size: Optional[int] = None,
    ) -> TaskStatus:
        """Persist the outcome, then send the terminal report."""
        self.state_manager.update_status(
            stage, 100 if status == TaskStatus.COMPLETED else self._last_progress,
            f"Task {task.task_id} {status.value}", error=error,
        )
        self._record_outcome(status, error, retryable)
        report = TaskStatusUpdate(
            task_id=task.task_id,
            status=status,
            is_success=status == TaskStatus.COMPLETED,
            progress_percentage=100 if status == TaskStatus.COMPLETED else None,
            current_step=status.value,
            error_message=error,
            retryable=retryable,
            download_size_bytes=download_size,
            machine_id=self.machine_id,
        )
        if await self._deliver(report):
            self._clear_state()
        else:
            self.logger.error(
                f"Task {task.task_id} finished {status.value} but the server was not told, "
                f"will resend before the next poll"
            )
        self.state_manager.reset()
        return status

    async def report_unfinished(self) -> bool:
        """Resend the outcome of a task left in the state file.

        Covers tasks interrupted by an agent crash (the install directory
        is settled first) and terminal reports that never got through. An
        interrupted task with no decided outcome is reported as a
        retryable failure, or Completed if its install had already
        committed.

        Returns:
            True once nothing is left to report
        """
        state = self.state_manager.load_state()
        if state is None:
            return True
        if state.stage in UNSETTLED_STAGES:
            state = self.installer.recover()
            if state is None:
                return True
        if state.reported:
            self.state_manager.delete_state()
            return True

        if state.outcome is not None:
            outcome = state.outcome
        elif state.stage == StageEnum.SUCCESS:
            outcome = TaskStatus.COMPLETED
        else:
            outcome = TaskStatus.FAILED
        error = state.error
        if outcome != TaskStatus.COMPLETED and error is None:
            error = f"AGENT_INTERRUPTED: task {state.task_id} interrupted while {state.stage.value}"

        self.logger.warning(f"Reporting unfinished task {state.task_id} as {outcome.value}")
        report = TaskStatusUpdate(
            task_id=state.task_id,
            status=outcome,
            is_success=outcome == TaskStatus.COMPLETED,
            progress_percentage=100 if outcome == TaskStatus.COMPLETED else None,
            current_step=outcome.value,
            error_message=error,
            retryable=state.retryable,
            machine_id=self.machine_id,
        )
        if not await self._deliver(report):
            return False
        self.state_manager.delete_state()
        return True

    async def _deliver(self, report: TaskStatusUpdate) -> bool:
        """Send a terminal report, retrying transient failures.

        Returns:
            True if the server answered, including a definitive rejection
        """
        for attempt in range(1, self.report_attempts + 1):
            try:
                await self.client.update_task_status(report)
                self.logger.info(f"Task {report.task_id} reported {report.status.value}")
                return True
            except errors.TransientNetworkError as e:
                self.logger.warning(
                    f"Terminal report for task {report.task_id} failed "
                    f"(attempt {attempt}/{self.report_attempts}): {e}"
                )
                if attempt < self.report_attempts:
                    await asyncio.sleep(self.report_retry_delay * attempt)
            except errors.DeployerError as e:
                self.logger.error(f"Server rejected terminal report for task {report.task_id}: {e}")
                return True
        return False

    def _record_outcome(self, status: TaskStatus, error: Optional[str], retryable: bool) -> None:
        state = self.state_manager.get_persistent_state()
        if state is not None:
            self.state_manager.save_state(
                state.model_copy(update={"outcome": status, "error": error, "retryable": retryable})
            )

    def _clear_state(self) -> None:
        state = self.state_manager.get_persistent_state()
        if state is not None and state.stage in UNSETTLED_STAGES:
            # rollback itself failed; the tree still needs recovering
            self.state_manager.save_state(state.model_copy(update={"reported": True}))
        else:
            self.state_manager.delete_state()
