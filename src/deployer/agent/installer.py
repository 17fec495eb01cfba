"""Atomic install with snapshot and rollback, one operation per application.

Layout per application under ``apps_root``::

    <app_code>/app/          live install (what the application runs from)
    <app_code>/.staging/     new version being prepared
    <app_code>/.previous/    old live tree, kept until the new one is verified

The live directory is only ever replaced by two renames, so users of the
application see either the old tree or the new one.
"""

import asyncio
import json
import logging
import shutil
import zipfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Optional

from deployer import errors
from deployer.agent.process import ProcessManager
from deployer.agent.state_manager import AgentStateManager
from deployer.api.models import PendingTask
from deployer.models.state import StateFile
from deployer.models.status import MergeStrategy, StageEnum
from deployer.utils.clock import utcnow
from deployer.utils.verification import EMPTY_TREE_DIGEST, tree_digest

MARKER_FILE = ".deployer_version.json"
CONFIG_DIR = "config"

Checkpoint = Callable[[StageEnum, int, str], Awaitable[None]]

# Persisted stages during which the live tree may be half replaced
UNSETTLED_STAGES = frozenset(
    {StageEnum.STAGING, StageEnum.STOPPING, StageEnum.SWAPPING, StageEnum.ROLLING_BACK}
)


@dataclass
class InstallResult:
    app_code: str
    version: str
    previous_version: Optional[str]
    duration_seconds: float


class InstallLocks:
    """One asyncio lock per application code."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, app_code: str, timeout: float):
        lock = self._locks.setdefault(app_code, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError as e:
            raise errors.InstallExecutionError(
                f"INSTALL_LOCKED: another operation on {app_code} did not finish within {timeout}s"
            ) from e
        try:
            yield
        finally:
            lock.release()


class Installer:
    """Installs, rolls back and uninstalls applications on this machine."""

    def __init__(
        self,
        apps_root: Path,
        process_manager: ProcessManager,
        state_manager: AgentStateManager,
        process_stop_timeout: float = 5.0,
        lock_timeout: float = 60.0,
        locks: Optional[InstallLocks] = None,
    ):
        self.logger = logging.getLogger("deployer.agent.installer")
        self.apps_root = Path(apps_root)
        self.process_manager = process_manager
        self.state_manager = state_manager
        self.process_stop_timeout = process_stop_timeout
        self.lock_timeout = lock_timeout
        self.locks = locks or InstallLocks()

    # -- layout ---------------------------------------------------------------

    def app_dir(self, app_code: str) -> Path:
        return self.apps_root / app_code

    def live_dir(self, app_code: str) -> Path:
        return self.app_dir(app_code) / "app"

    def staging_dir(self, app_code: str) -> Path:
        return self.app_dir(app_code) / ".staging"

    def previous_dir(self, app_code: str) -> Path:
        return self.app_dir(app_code) / ".previous"

    def installed_version(self, app_code: str) -> Optional[str]:
        return self._read_marker(self.live_dir(app_code))

    def installed_applications(self) -> dict[str, str]:
        """app_code -> version for every application with a version marker."""
        installed = {}
        if not self.apps_root.is_dir():
            return installed
        for app_dir in sorted(self.apps_root.iterdir()):
            if app_dir.is_dir():
                version = self.installed_version(app_dir.name)
                if version:
                    installed[app_dir.name] = version
        return installed

    # -- install --------------------------------------------------------------

    async def install(
        self,
        task: PendingTask,
        package_path: Path,
        checkpoint: Optional[Checkpoint] = None,
    ) -> InstallResult:
        """Install a verified package for ``task``.

        Sequence: lock → snapshot → stage (extract + config merge) → stop
        running instances → swap → verify. Any failure or cancellation after
        the snapshot restores the pre-install tree before re-raising.

        Args:
            task: Task being executed
            package_path: Verified package (zip archive)
            checkpoint: Awaited at stage boundaries; may raise to abort

        Returns:
            InstallResult

        Raises:
            errors.InstallExecutionError: Disk space, lock or process-stop failure
            errors.FatalConfigurationError: Package is not a usable archive
            errors.TaskCancelledError: Raised by a checkpoint report
        """
        app_code = task.app_code
        async with self.locks.hold(app_code, self.lock_timeout):
            started = utcnow()
            live = self.live_dir(app_code)
            staging = self.staging_dir(app_code)
            previous = self.previous_dir(app_code)
            self.app_dir(app_code).mkdir(parents=True, exist_ok=True)

            previous_version = self._read_marker(live)
            had_live = live.exists()
            snapshot_digest = await asyncio.to_thread(tree_digest, live)
            state = StateFile(
                task_id=task.task_id,
                app_code=app_code,
                version=task.version,
                stage=StageEnum.STAGING,
                previous_version=previous_version,
                snapshot_digest=snapshot_digest,
            )
            self.state_manager.save_state(state)
            self.logger.info(
                f"Installing {app_code} {task.version} over {previous_version or 'nothing'}"
            )

            swapped = False
            try:
                self._check_disk_space(app_code, package_path)
                await asyncio.to_thread(self._remove_tree, staging)
                await asyncio.to_thread(self._remove_tree, previous)
                await asyncio.to_thread(self._extract, package_path, staging)
                await asyncio.to_thread(
                    self._merge_config, live, staging, task.merge_strategy, task.preserved_files
                )
                self._write_marker(staging, task)
                await self._checkpoint(checkpoint, StageEnum.STAGING, 75, "Staged")

                await self._checkpoint(checkpoint, StageEnum.STOPPING, 80, "Stopping application")
                await self.process_manager.stop_application(live, self.process_stop_timeout)

                self.state_manager.save_state(
                    state.model_copy(update={"stage": StageEnum.SWAPPING, "last_update": utcnow()})
                )
                if had_live:
                    live.rename(previous)
                swapped = True
                staging.rename(live)

                installed = self._read_marker(live)
                if installed != task.version:
                    raise errors.InstallExecutionError(
                        f"VERSION_MARKER_MISMATCH: expected {task.version}, found {installed}"
                    )
                await self._checkpoint(checkpoint, StageEnum.SWAPPING, 95, "Swapped")
            except (Exception, asyncio.CancelledError) as e:
                self.logger.error(f"Install of {app_code} {task.version} failed: {e}")
                await self._rollback(app_code, snapshot_digest, had_live, swapped, e)
                raise

            self.state_manager.save_state(
                state.model_copy(update={"stage": StageEnum.SUCCESS, "last_update": utcnow()})
            )
            try:
                await asyncio.to_thread(self._remove_tree, previous)
            except OSError as e:
                self.logger.warning(f"Could not remove previous tree of {app_code}: {e}")

            duration = (utcnow() - started).total_seconds()
            self.logger.info(f"Installed {app_code} {task.version} in {duration:.1f}s")
            return InstallResult(app_code, task.version, previous_version, duration)

    async def _rollback(
        self,
        app_code: str,
        snapshot_digest: str,
        had_live: bool,
        swapped: bool,
        cause: BaseException,
    ) -> None:
        """Restore the live tree to the snapshot taken before the install.

        Raises:
            errors.InstallExecutionError: Restored tree does not match the snapshot
        """
        self.state_manager.update_status(
            StageEnum.ROLLING_BACK, 0, f"Rolling back {app_code}", error=str(cause)
        )
        live = self.live_dir(app_code)
        previous = self.previous_dir(app_code)
        try:
            if swapped:
                await asyncio.to_thread(self._restore_previous, live, previous, had_live)
            await asyncio.to_thread(self._remove_tree, self.staging_dir(app_code))
            restored_digest = await asyncio.to_thread(tree_digest, live)
        except OSError as e:
            self.logger.critical(f"Rollback of {app_code} failed: {e}", exc_info=True)
            raise errors.InstallExecutionError(
                f"ROLLBACK_FAILED: {app_code}: {e} (after: {cause})", retryable=False
            ) from cause

        if restored_digest != snapshot_digest:
            self.logger.critical(f"Rollback of {app_code} did not restore the snapshot")
            raise errors.InstallExecutionError(
                f"ROLLBACK_VERIFY_FAILED: {app_code} differs from pre-install snapshot "
                f"(after: {cause})",
                retryable=False,
            ) from cause

        self._mark_stage(StageEnum.FAILED)
        self.logger.info(f"Rolled back {app_code} to pre-install snapshot")

    def recover(self) -> Optional[StateFile]:
        """Settle the install directory of a task interrupted by an agent crash.

        Called on agent start before any polling, and again before an
        undelivered outcome is resent. The state file is kept with its
        settled stage so the outcome can still be reported:

        - ``success``: the new tree is live; a leftover ``.previous`` is removed
        - ``swapping``: ``.previous`` is restored only if it matches the
          pre-install snapshot; otherwise a live tree carrying the new version
          marker is kept
        - ``staging``: the live tree was never touched
        - earlier stages: nothing was installed

        Staging leftovers are always removed.

        Returns:
            The settled state, or None if nothing was pending
        """
        state = self.state_manager.load_state()
        if state is None:
            return None

        app_code = state.app_code
        staging = self.staging_dir(app_code)
        if state.stage not in UNSETTLED_STAGES and state.stage != StageEnum.SUCCESS:
            self._remove_tree(staging)
            return state

        self.logger.warning(
            f"Recovering interrupted install: task={state.task_id}, "
            f"app={app_code}, stage={state.stage.value}"
        )
        if state.stage == StageEnum.SUCCESS:
            self._remove_tree(self.previous_dir(app_code))
            stage = StageEnum.SUCCESS
        elif state.stage == StageEnum.SWAPPING:
            stage = self._recover_swap(state)
        else:
            stage = StageEnum.FAILED
        self._remove_tree(staging)

        update = {"stage": stage, "last_update": utcnow()}
        if stage == StageEnum.FAILED and state.error is None:
            update["error"] = (
                f"AGENT_INTERRUPTED: install of {app_code} {state.version} "
                f"interrupted while {state.stage.value}"
            )
        recovered = state.model_copy(update=update)
        self.state_manager.save_state(recovered)
        return recovered

    def _recover_swap(self, state: StateFile) -> StageEnum:
        live = self.live_dir(state.app_code)
        previous = self.previous_dir(state.app_code)
        if previous.exists() and tree_digest(previous) == state.snapshot_digest:
            self._remove_tree(live)
            previous.rename(live)
            self.logger.warning(f"Restored {state.app_code} from its pre-install snapshot")
            return StageEnum.FAILED

        if self._read_marker(live) == state.version:
            self._remove_tree(previous)
            self.logger.warning(f"Kept swapped-in {state.app_code} {state.version}")
            return StageEnum.SUCCESS

        if tree_digest(live) == state.snapshot_digest:
            self._remove_tree(previous)
            self.logger.warning(f"Swap of {state.app_code} never started, live tree untouched")
            return StageEnum.FAILED

        if state.snapshot_digest == EMPTY_TREE_DIGEST and not previous.exists():
            # nothing was installed before; an unmarked live tree is debris
            self._remove_tree(live)
            return StageEnum.FAILED

        self.logger.critical(
            f"Cannot recover {state.app_code}: neither {live} nor {previous} matches "
            f"the pre-install snapshot, leaving both for manual repair"
        )
        return StageEnum.FAILED

    def _mark_stage(self, stage: StageEnum) -> None:
        state = self.state_manager.get_persistent_state()
        if state is not None:
            self.state_manager.save_state(
                state.model_copy(update={"stage": stage, "last_update": utcnow()})
            )

    # -- uninstall ------------------------------------------------------------

    async def uninstall(self, app_code: str) -> bool:
        """Stop and remove an application.

        Returns:
            True if something was removed
        """
        async with self.locks.hold(app_code, self.lock_timeout):
            app_dir = self.app_dir(app_code)
            if not app_dir.exists():
                return False
            await self.process_manager.stop_application(self.live_dir(app_code), self.process_stop_timeout)
            await asyncio.to_thread(self._remove_tree, app_dir)
            self.logger.info(f"Uninstalled {app_code}")
            return True

    # -- helpers --------------------------------------------------------------

    @staticmethod
    async def _checkpoint(checkpoint: Optional[Checkpoint], stage: StageEnum, progress: int, step: str) -> None:
        if checkpoint is not None:
            await checkpoint(stage, progress, step)

    def _check_disk_space(self, app_code: str, package_path: Path) -> None:
        needed = package_path.stat().st_size * 2
        free = shutil.disk_usage(self.app_dir(app_code)).free
        if free < needed:
            raise errors.InstallExecutionError(
                f"INSUFFICIENT_DISK_SPACE: {free} bytes free, {needed} needed for {app_code}"
            )

    @staticmethod
    def _extract(package_path: Path, staging: Path) -> None:
        try:
            with zipfile.ZipFile(package_path, "r") as zf:
                for name in zf.namelist():
                    parts = PurePosixPath(name).parts
                    if name.startswith("/") or ".." in parts:
                        raise errors.FatalConfigurationError(
                            f"UNSAFE_PACKAGE_PATH: {name!r} escapes the install directory"
                        )
                staging.mkdir(parents=True, exist_ok=True)
                zf.extractall(staging)
        except zipfile.BadZipFile as e:
            raise errors.FatalConfigurationError(f"INVALID_PACKAGE: not a zip archive: {e}") from e

    @staticmethod
    def _merge_config(
        live: Path, staging: Path, strategy: MergeStrategy, preserved_files: list[str]
    ) -> None:
        """Apply the manifest's merge policy to the ``config`` subtree."""
        local_config = live / CONFIG_DIR
        staged_config = staging / CONFIG_DIR
        if strategy == MergeStrategy.REPLACE_ALL or not local_config.is_dir():
            return

        if strategy == MergeStrategy.SELECTIVE:
            candidates = [local_config / p for p in preserved_files]
        else:
            candidates = [p for p in local_config.rglob("*") if p.is_file()]

        for source in candidates:
            if not source.is_file():
                continue
            target = staged_config / source.relative_to(local_config)
            # merge only adds local-only files; packaged files win on conflict
            if strategy == MergeStrategy.MERGE and target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)

    @staticmethod
    def _restore_previous(live: Path, previous: Path, had_live: bool) -> None:
        if previous.exists():
            Installer._remove_tree(live)
            previous.rename(live)
        elif not had_live:
            Installer._remove_tree(live)

    @staticmethod
    def _remove_tree(path: Path) -> None:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)

    @staticmethod
    def _read_marker(live: Path) -> Optional[str]:
        marker = live / MARKER_FILE
        if not marker.is_file():
            return None
        try:
            return json.loads(marker.read_text(encoding="utf-8")).get("version")
        except (OSError, ValueError):
            return None

    @staticmethod
    def _write_marker(staging: Path, task: PendingTask) -> None:
        staging.mkdir(parents=True, exist_ok=True)
        (staging / MARKER_FILE).write_text(
            json.dumps(
                {
                    "app_code": task.app_code,
                    "version": task.version,
                    "task_id": task.task_id,
                    "installed_at": utcnow().isoformat(),
                },
                indent=2,
            ),
            encoding="utf-8",
        )
