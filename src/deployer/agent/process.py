"""Stop running instances of an application before its files are swapped."""

import asyncio
import logging
import os
import signal
from pathlib import Path

from deployer import errors


class ProcessManager:
    """Finds processes started from an install directory and stops them."""

    def __init__(self, kill_grace_seconds: float = 1.0, poll_interval: float = 0.1):
        self.logger = logging.getLogger("deployer.agent.process")
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval = poll_interval

    async def find_processes(self, install_path: Path) -> list[int]:
        """PIDs whose command line references ``install_path``.

        Raises:
            errors.InstallExecutionError: Process lookup itself failed
        """
        try:
            process = await asyncio.create_subprocess_exec(
                "pgrep",
                "-f",
                str(install_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise errors.InstallExecutionError(f"PROCESS_LOOKUP_FAILED: {e}") from e

        # pgrep exits 1 when nothing matches
        if process.returncode == 1:
            return []
        if process.returncode != 0:
            raise errors.InstallExecutionError(
                f"PROCESS_LOOKUP_FAILED: pgrep exit code {process.returncode}, "
                f"stderr: {stderr.decode().strip()}"
            )

        own_pid = os.getpid()
        return [
            int(line)
            for line in stdout.decode().split()
            if line.strip().isdigit() and int(line) != own_pid
        ]

    async def stop_application(self, install_path: Path, timeout: float) -> int:
        """Terminate every process running from ``install_path``.

        Sends SIGTERM, waits up to ``timeout`` seconds, then SIGKILLs
        survivors. Failing to stop is a fatal precondition for the install.

        Returns:
            Number of processes stopped

        Raises:
            errors.InstallExecutionError: A process could not be stopped
        """
        pids = await self.find_processes(install_path)
        if not pids:
            self.logger.debug(f"No running processes under {install_path}")
            return 0

        self.logger.info(f"Stopping {len(pids)} process(es) under {install_path}: {pids}")
        self._signal_all(pids, signal.SIGTERM)
        remaining = await self._wait_for_exit(pids, timeout)

        if remaining:
            self.logger.warning(f"Processes {remaining} ignored SIGTERM, sending SIGKILL")
            self._signal_all(remaining, signal.SIGKILL)
            remaining = await self._wait_for_exit(remaining, self.kill_grace_seconds)

        if remaining:
            raise errors.InstallExecutionError(
                f"PROCESS_STOP_FAILED: {remaining} still running under {install_path} "
                f"after {timeout}s"
            )
        return len(pids)

    def _signal_all(self, pids: list[int], sig: signal.Signals) -> None:
        for pid in pids:
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                continue
            except PermissionError as e:
                raise errors.InstallExecutionError(
                    f"PROCESS_STOP_FAILED: not permitted to signal pid {pid}: {e}"
                ) from e

    async def _wait_for_exit(self, pids: list[int], timeout: float) -> list[int]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        alive = [pid for pid in pids if self._is_alive(pid)]
        while alive and loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            alive = [pid for pid in alive if self._is_alive(pid)]
        return alive

    @staticmethod
    def _is_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True
