"""Client agent: registration, heartbeat loop and task polling loop."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from deployer import errors
from deployer.agent.client import ServerClient
from deployer.agent.download import PackageDownloader
from deployer.agent.executor import TaskExecutor
from deployer.agent.installer import Installer
from deployer.agent.machine_info import collect_registration
from deployer.agent.process import ProcessManager
from deployer.agent.state_manager import AgentStateManager
from deployer.api.models import MachineRegistration
from deployer.config import AgentSettings
from deployer.models.status import MachineStatus


class AgentService:
    """Runs the heartbeat and polling loops as two independent asyncio tasks.

    Heartbeat failures are logged and skipped, so a long install (which
    keeps the polling loop busy) never stops liveness reporting. Tasks are
    executed sequentially by the polling loop.
    """

    def __init__(
        self,
        settings: AgentSettings,
        client: Optional[ServerClient] = None,
        registration: Optional[MachineRegistration] = None,
        process_manager: Optional[ProcessManager] = None,
    ):
        self.logger = logging.getLogger("deployer.agent")
        self.settings = settings
        self.client = client or ServerClient(
            settings.server_url,
            timeout=settings.request_timeout_seconds,
            download_timeout=settings.download_timeout_seconds,
        )
        self.state_manager = AgentStateManager(Path(settings.state_file))
        self.installer = Installer(
            Path(settings.apps_root),
            process_manager or ProcessManager(),
            self.state_manager,
            process_stop_timeout=settings.process_stop_timeout_seconds,
            lock_timeout=settings.install_lock_timeout_seconds,
        )
        self.registration = registration or collect_registration(
            settings.client_version,
            self.installer.installed_applications(),
            location=settings.location,
        )
        self.machine_id = self.registration.machine_id
        self.executor = TaskExecutor(
            self.client,
            PackageDownloader(self.client, Path(settings.tmp_dir), settings.integrity_retries),
            self.installer,
            self.state_manager,
            self.machine_id,
            report_attempts=settings.report_attempts,
        )
        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task] = []

    async def run(self) -> None:
        """Recover, register, then run both loops until ``stop()``."""
        recovered = self.installer.recover()
        if recovered:
            self.logger.warning(
                f"Found unfinished task {recovered.task_id} ({recovered.app_code} "
                f"{recovered.version}, {recovered.stage.value}), reporting it on the first poll"
            )

        if not await self.register():
            return

        self._loops = [
            asyncio.create_task(self.heartbeat_loop(), name="heartbeat"),
            asyncio.create_task(self.poll_loop(), name="poll"),
        ]
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self.logger.info("Agent stop requested")
        self._stop.set()

    async def shutdown(self) -> None:
        for loop_task in self._loops:
            loop_task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        await self.client.close()
        self.logger.info("Agent stopped")

    async def register(self) -> bool:
        """Register with the server, retrying until it succeeds or stop.

        Returns:
            True once registered, False if stopped first
        """
        while not self._stop.is_set():
            self.registration.installed_applications = self.installer.installed_applications()
            try:
                await self.client.register(self.registration)
                self.logger.info(
                    f"Registered as {self.machine_id} ({self.registration.machine_name})"
                )
                return True
            except errors.DeployerError as e:
                self.logger.warning(
                    f"Registration failed, retrying in {self.settings.registration_retry_seconds}s: {e}"
                )
            if await self._sleep(self.settings.registration_retry_seconds):
                break
        return False

    async def heartbeat_loop(self) -> None:
        while not self._stop.is_set():
            await self.send_heartbeat()
            if await self._sleep(self.settings.heartbeat_interval_seconds):
                break

    async def send_heartbeat(self) -> None:
        status = MachineStatus.BUSY if self.state_manager.is_busy else MachineStatus.ONLINE
        try:
            await self.client.heartbeat(
                self.machine_id, status, self.installer.installed_applications()
            )
        except errors.NotFoundError:
            self.logger.warning("Server does not know this machine, re-registering")
            await self.register()
        except errors.DeployerError as e:
            self.logger.warning(f"Heartbeat failed, skipping: {e}")

    async def poll_loop(self) -> None:
        if await self._sleep(self.settings.poll_initial_delay_seconds):
            return
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                self.logger.error(f"Polling cycle failed: {e}", exc_info=True)
            if await self._sleep(self.settings.poll_interval_seconds):
                break

    async def poll_once(self) -> int:
        """Fetch pending tasks and execute them in server order.

        An outcome the server was not told about yet is resent first; no
        new task is taken until it gets through.

        Returns:
            Number of tasks that reached a terminal report
        """
        if not await self.executor.report_unfinished():
            self.logger.warning("Outcome of an earlier task still undelivered, skipping poll")
            return 0
        try:
            tasks = await self.client.poll_tasks(self.machine_id)
        except errors.NotFoundError:
            self.logger.warning("Server does not know this machine, re-registering")
            await self.register()
            return 0
        except errors.DeployerError as e:
            self.logger.warning(f"Polling failed, skipping cycle: {e}")
            return 0

        if tasks:
            self.logger.info(f"Received {len(tasks)} pending task(s)")
        executed = 0
        for task in tasks:
            if self._stop.is_set():
                break
            if await self.executor.execute(task) is not None:
                executed += 1
            if self.state_manager.get_persistent_state() is not None:
                # outcome not delivered yet; resent before the next poll
                break
        return executed

    async def _sleep(self, seconds: float) -> bool:
        """Wait for ``seconds`` or until stop; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
