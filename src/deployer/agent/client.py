"""HTTP channel from the agent to the deployment server."""

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiofiles
import httpx

from deployer import errors
from deployer.api.models import MachineRegistration, PendingTask, TaskStatusUpdate
from deployer.models.status import MachineStatus

ProgressCallback = Callable[[int, int], Awaitable[None]]


class ServerClient:
    """Thin async wrapper over the server API.

    Transport failures become ``errors.TransientNetworkError``; rejections in
    the response envelope are re-raised as the matching ``errors`` class.
    One ``httpx.AsyncClient`` is shared by the heartbeat and polling loops.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 10.0,
        download_timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.logger = logging.getLogger("deployer.agent.client")
        self.download_timeout = download_timeout
        self.chunk_size = 64 * 1024
        self._client = httpx.AsyncClient(
            base_url=server_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def register(self, registration: MachineRegistration) -> dict:
        return await self._call("POST", "/api/v1.0/machines/register", json=registration.model_dump(mode="json"))

    async def heartbeat(
        self,
        machine_id: str,
        status: MachineStatus,
        installed_applications: Optional[dict[str, str]] = None,
    ) -> dict:
        payload = {"machine_id": machine_id, "status": status.value}
        if installed_applications is not None:
            payload["installed_applications"] = installed_applications
        return await self._call("POST", "/api/v1.0/machines/heartbeat", json=payload)

    async def poll_tasks(self, machine_id: str) -> list[PendingTask]:
        data = await self._call("GET", f"/api/v1.0/tasks/pending/{machine_id}")
        return [PendingTask.model_validate(item) for item in data or []]

    async def update_task_status(self, report: TaskStatusUpdate) -> dict:
        return await self._call(
            "POST",
            "/api/v1.0/tasks/update-status",
            json=report.model_dump(mode="json", exclude_none=True),
        )

    async def download_package(
        self,
        package_version_id: int,
        machine_id: str,
        target_path: Path,
        expected_size: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Stream a package to ``target_path``.

        Args:
            package_version_id: Package version to fetch
            machine_id: Reported to the server for download statistics
            target_path: Destination file (overwritten)
            expected_size: Size recorded by the server, for progress
            on_progress: Awaited with (bytes_done, expected_size) every 5%

        Returns:
            Bytes written

        Raises:
            errors.TransientNetworkError: Transport failure mid-stream
            errors.DeployerError: Server rejected the download
        """
        target_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"/api/v1.0/packages/{package_version_id}/download"
        bytes_done = 0
        try:
            async with self._client.stream(
                "GET", url, params={"machine_id": machine_id}, timeout=self.download_timeout
            ) as response:
                response.raise_for_status()
                if response.headers.get("content-type", "").startswith("application/json"):
                    await response.aread()
                    self._unwrap(response.json())

                async with aiofiles.open(target_path, "wb") as f:
                    last_progress = -5
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        await f.write(chunk)
                        bytes_done += len(chunk)
                        if on_progress and expected_size > 0:
                            current = int(bytes_done / expected_size * 100)
                            if current >= last_progress + 5:
                                last_progress = current
                                await on_progress(bytes_done, expected_size)
        except httpx.HTTPError as e:
            raise errors.TransientNetworkError(f"DOWNLOAD_FAILED: {e}") from e

        self.logger.info(f"Downloaded package {package_version_id}: {bytes_done} bytes")
        return bytes_done

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise errors.TransientNetworkError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise errors.TransientNetworkError(f"{method} {path} returned invalid JSON: {e}") from e
        return self._unwrap(body)

    @staticmethod
    def _unwrap(body: dict) -> Any:
        code = body.get("code", 500)
        if code != 200:
            raise errors.from_payload(code, body.get("msg", "unknown error"), body.get("error"))
        return body.get("data")
