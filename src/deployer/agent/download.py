"""Package download with SHA-256 verification and bounded re-downloads."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from deployer import errors
from deployer.agent.client import ProgressCallback, ServerClient
from deployer.api.models import PendingTask
from deployer.utils.verification import verify_sha256


class PackageDownloader:
    """Fetches a task's package into the agent's tmp directory."""

    def __init__(self, client: ServerClient, tmp_dir: Path, integrity_retries: int = 2):
        """Initialize downloader.

        Args:
            client: Server channel
            tmp_dir: Download directory
            integrity_retries: Re-downloads allowed after a hash mismatch
        """
        self.logger = logging.getLogger("deployer.agent.download")
        self.client = client
        self.tmp_dir = Path(tmp_dir)
        self.integrity_retries = integrity_retries

    async def fetch(
        self,
        task: PendingTask,
        machine_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Download and verify a package.

        A hash mismatch is treated as transient corruption and re-downloaded
        up to ``integrity_retries`` times; after that it is fatal for the
        task (reported as not retryable).

        Returns:
            Path to the verified package file

        Raises:
            errors.IntegrityError: Hash still mismatched after all re-downloads
            errors.TransientNetworkError: Download failed at the transport level
        """
        target_path = self.tmp_dir / f"{task.app_code}-{task.version}-{task.package_version_id}.pkg"
        attempts = self.integrity_retries + 1

        for attempt in range(1, attempts + 1):
            self.logger.info(
                f"Downloading {task.app_code} {task.version} "
                f"(attempt {attempt}/{attempts}, {task.file_size_bytes} bytes)"
            )
            size = await self.client.download_package(
                task.package_version_id,
                machine_id,
                target_path,
                task.file_size_bytes,
                on_progress=on_progress,
            )

            # Hashing large files must not stall the heartbeat loop
            matches = await asyncio.to_thread(verify_sha256, target_path, task.file_hash)
            if matches and size == task.file_size_bytes:
                return target_path

            target_path.unlink(missing_ok=True)
            self.logger.warning(
                f"Integrity check failed for {task.app_code} {task.version} "
                f"(attempt {attempt}/{attempts}, got {size} bytes)"
            )

        raise errors.IntegrityError(
            f"HASH_MISMATCH: {task.app_code} {task.version} failed verification "
            f"after {attempts} download(s), expected sha256 {task.file_hash}",
            retryable=False,
        )
