"""Unit tests for PackageDownloader."""

import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer import errors
from deployer.agent.download import PackageDownloader
from deployer.api.models import PendingTask

CONTENT = b"package bytes " * 100


def _task(content: bytes = CONTENT) -> PendingTask:
    return PendingTask(
        task_id=5,
        app_code="billing",
        version="2.0.0",
        priority=0,
        deployment_id=1,
        package_version_id=9,
        file_hash=hashlib.sha256(content).hexdigest(),
        file_size_bytes=len(content),
    )


def _writing(*payloads: bytes):
    """download_package stand-in writing each payload on successive calls."""
    remaining = list(payloads)

    async def download(version_id, machine_id, target_path, expected_size, on_progress=None):
        data = remaining.pop(0)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target_path.write_bytes(data)
        if on_progress:
            await on_progress(len(data), expected_size)
        return len(data)

    return download


@pytest.mark.unit
class TestPackageDownloader:

    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.mark.asyncio
    async def test_fetch_verified(self, client, tmp_path):
        # Arrange
        client.download_package = AsyncMock(side_effect=_writing(CONTENT))
        downloader = PackageDownloader(client, tmp_path)
        progress = AsyncMock()

        # Act
        path = await downloader.fetch(_task(), "M1", on_progress=progress)

        # Assert
        assert path == tmp_path / "billing-2.0.0-9.pkg"
        assert path.read_bytes() == CONTENT
        assert client.download_package.await_args.args[:2] == (9, "M1")
        progress.assert_awaited_once_with(len(CONTENT), len(CONTENT))

    @pytest.mark.asyncio
    async def test_mismatch_then_recovers(self, client, tmp_path):
        """A corrupted download is fetched again."""
        client.download_package = AsyncMock(side_effect=_writing(b"corrupt", CONTENT))
        downloader = PackageDownloader(client, tmp_path, integrity_retries=2)

        path = await downloader.fetch(_task(), "M1")

        assert path.read_bytes() == CONTENT
        assert client.download_package.await_count == 2

    @pytest.mark.asyncio
    async def test_mismatch_exhausts_retries(self, client, tmp_path):
        client.download_package = AsyncMock(side_effect=_writing(b"bad1", b"bad2", b"bad3"))
        downloader = PackageDownloader(client, tmp_path, integrity_retries=2)

        with pytest.raises(errors.IntegrityError, match="HASH_MISMATCH") as exc_info:
            await downloader.fetch(_task(), "M1")

        assert exc_info.value.retryable is False
        assert client.download_package.await_count == 3
        assert not (tmp_path / "billing-2.0.0-9.pkg").exists()

    @pytest.mark.asyncio
    async def test_size_mismatch_is_rejected(self, client, tmp_path):
        task = _task().model_copy(update={"file_size_bytes": len(CONTENT) + 1})
        client.download_package = AsyncMock(side_effect=_writing(CONTENT))
        downloader = PackageDownloader(client, tmp_path, integrity_retries=0)

        with pytest.raises(errors.IntegrityError):
            await downloader.fetch(task, "M1")

    @pytest.mark.asyncio
    async def test_network_failure_propagates(self, client, tmp_path):
        client.download_package = AsyncMock(side_effect=errors.TransientNetworkError("reset"))
        downloader = PackageDownloader(client, tmp_path)

        with pytest.raises(errors.TransientNetworkError):
            await downloader.fetch(_task(), "M1")
        assert client.download_package.await_count == 1
