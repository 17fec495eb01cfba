"""Package Store: durable registry of uploaded package versions."""

import hashlib
import logging
import re
import uuid
from pathlib import Path
from typing import Optional

import aiofiles
from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.config import ServerSettings
from deployer.db.tables import (
    ApplicationDB,
    DeploymentHistoryDB,
    DeploymentTaskDB,
    DownloadStatisticDB,
    PackageVersionDB,
)
from deployer.services.events import DeploymentEvent, EventSink, EventType, LoggingEventSink
from deployer.utils.clock import utcnow

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")


def version_key(version: str) -> tuple[int, ...]:
    """Sort key comparing versions numerically per segment ("1.10.0" > "1.9.3")."""
    return tuple(int(part) for part in version.split("."))


class PackageStore:
    """Stores package files under ``storage_root`` and their metadata in the DB.

    Files live at ``<storage_root>/<app_code>/<version>/<file_name>``; the
    recorded ``storage_path`` is relative to ``storage_root``.
    """

    def __init__(self, settings: ServerSettings, events: Optional[EventSink] = None):
        """Initialize package store.

        Args:
            settings: Server settings (storage root)
            events: Audit sink (logging sink if None)
        """
        self.logger = logging.getLogger("deployer.package_store")
        self.storage_root = Path(settings.storage_root)
        self.events = events or LoggingEventSink()

    # -- applications -------------------------------------------------------

    async def create_application(
        self, db: AsyncSession, app_code: str, name: str
    ) -> ApplicationDB:
        existing = await db.execute(
            select(ApplicationDB).where(ApplicationDB.app_code == app_code)
        )
        if existing.scalar_one_or_none() is not None:
            raise errors.ConflictError(f"APPLICATION_EXISTS: {app_code}")

        application = ApplicationDB(app_code=app_code, name=name, created_at=utcnow())
        db.add(application)
        await db.commit()
        self.logger.info(f"Created application {app_code} (id={application.id})")
        return application

    async def get_application(self, db: AsyncSession, application_id: int) -> ApplicationDB:
        application = await db.get(ApplicationDB, application_id)
        if application is None:
            raise errors.NotFoundError(f"APPLICATION_NOT_FOUND: id={application_id}")
        return application

    async def get_application_by_code(self, db: AsyncSession, app_code: str) -> ApplicationDB:
        result = await db.execute(
            select(ApplicationDB).where(ApplicationDB.app_code == app_code)
        )
        application = result.scalar_one_or_none()
        if application is None:
            raise errors.NotFoundError(f"APPLICATION_NOT_FOUND: {app_code}")
        return application

    async def list_applications(self, db: AsyncSession) -> list[ApplicationDB]:
        result = await db.execute(select(ApplicationDB).order_by(ApplicationDB.app_code))
        return list(result.scalars())

    # -- versions -----------------------------------------------------------

    async def upload(
        self,
        db: AsyncSession,
        app_code: str,
        version: str,
        file_name: str,
        content: bytes,
        uploaded_by: Optional[str] = None,
        is_stable: bool = True,
        release_notes: Optional[str] = None,
    ) -> PackageVersionDB:
        """Store a new package version.

        The new version replaces the current latest active version, which
        becomes its rollback predecessor.

        Args:
            db: Database session
            app_code: Application code
            version: Semantic version ("2.0.0")
            file_name: Package file name (no directories)
            content: Package bytes
            uploaded_by: Uploader identity
            is_stable: Whether the version counts for stable-only lookups
            release_notes: Free text

        Returns:
            Persisted PackageVersionDB

        Raises:
            errors.ValidationError: Bad version string, file name or empty content
            errors.NotFoundError: Unknown application
            errors.ConflictError: Version already uploaded for the application
        """
        if not _VERSION_RE.match(version):
            raise errors.ValidationError(f"INVALID_VERSION: {version!r} (expected X.Y.Z)")
        safe_name = Path(file_name).name
        if not safe_name or safe_name != file_name or safe_name in (".", ".."):
            raise errors.ValidationError(f"INVALID_FILE_NAME: {file_name!r}")
        if not content:
            raise errors.ValidationError("EMPTY_PACKAGE: upload has no content")

        application = await self.get_application_by_code(db, app_code)
        if await self._version_exists(db, application.id, version):
            raise errors.ConflictError(f"VERSION_EXISTS: {app_code} {version}")

        predecessor = await self.get_latest(db, application.id, stable_only=False)

        relative_path = Path(app_code) / version / safe_name
        target_path = self.storage_root / relative_path
        target_path.parent.mkdir(parents=True, exist_ok=True)

        # Unique temp name; the final path is only written once the row is committed
        tmp_path = target_path.with_name(f".{safe_name}.{uuid.uuid4().hex}.tmp")
        package = PackageVersionDB(
            application_id=application.id,
            version=version,
            package_file_name=safe_name,
            file_size_bytes=len(content),
            file_hash=hashlib.sha256(content).hexdigest(),
            storage_path=relative_path.as_posix(),
            is_stable=is_stable,
            is_active=True,
            release_notes=release_notes,
            uploaded_by=uploaded_by,
            uploaded_at=utcnow(),
            replaces_version_id=predecessor.id if predecessor else None,
        )
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(content)
            db.add(package)
            await db.flush()
            await db.commit()
        except DBIntegrityError as e:
            await db.rollback()
            tmp_path.unlink(missing_ok=True)
            raise errors.ConflictError(f"VERSION_EXISTS: {app_code} {version}") from e
        except Exception:
            await db.rollback()
            tmp_path.unlink(missing_ok=True)
            raise
        try:
            tmp_path.replace(target_path)
        except OSError as e:
            self.logger.critical(f"Package {app_code} {version} committed but not stored: {e}")
            raise errors.FatalConfigurationError(
                f"PACKAGE_STORE_FAILED: {app_code} {version}: {e}"
            ) from e

        self.logger.info(
            f"Uploaded {app_code} {version}: {package.file_size_bytes} bytes, "
            f"sha256={package.file_hash}, replaces={package.replaces_version_id}"
        )
        self.events.emit(
            DeploymentEvent(
                type=EventType.PACKAGE_UPLOADED,
                actor=uploaded_by,
                detail={"app_code": app_code, "version": version, "package_version_id": package.id},
            )
        )
        return package

    async def _version_exists(self, db: AsyncSession, application_id: int, version: str) -> bool:
        result = await db.execute(
            select(PackageVersionDB.id).where(
                PackageVersionDB.application_id == application_id,
                PackageVersionDB.version == version,
            )
        )
        return result.scalar_one_or_none() is not None

    async def get_by_id(self, db: AsyncSession, version_id: int) -> PackageVersionDB:
        package = await db.get(PackageVersionDB, version_id, populate_existing=True)
        if package is None:
            raise errors.NotFoundError(f"PACKAGE_VERSION_NOT_FOUND: id={version_id}")
        return package

    async def get_version(
        self, db: AsyncSession, application_id: int, version: str
    ) -> PackageVersionDB:
        """Look up one version of an application.

        Raises:
            errors.NotFoundError: No such version
        """
        result = await db.execute(
            select(PackageVersionDB).where(
                PackageVersionDB.application_id == application_id,
                PackageVersionDB.version == version,
            )
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise errors.NotFoundError(
                f"PACKAGE_VERSION_NOT_FOUND: application={application_id} version={version}"
            )
        return package

    async def list_versions(
        self, db: AsyncSession, application_id: int, active_only: bool = False
    ) -> list[PackageVersionDB]:
        """All versions of an application, newest first."""
        query = select(PackageVersionDB).where(PackageVersionDB.application_id == application_id)
        if active_only:
            query = query.where(PackageVersionDB.is_active.is_(True))
        result = await db.execute(query)
        return sorted(result.scalars(), key=lambda p: version_key(p.version), reverse=True)

    async def get_latest(
        self, db: AsyncSession, application_id: int, stable_only: bool = True
    ) -> Optional[PackageVersionDB]:
        """Highest active version, compared numerically per segment."""
        versions = await self.list_versions(db, application_id, active_only=True)
        if stable_only:
            versions = [p for p in versions if p.is_stable]
        return versions[0] if versions else None

    async def get_predecessor(
        self, db: AsyncSession, version_id: int
    ) -> Optional[PackageVersionDB]:
        """Version this one replaced, following the rollback chain one step."""
        package = await self.get_by_id(db, version_id)
        if package.replaces_version_id is None:
            return None
        return await db.get(PackageVersionDB, package.replaces_version_id)

    def resolve_path(self, package: PackageVersionDB) -> Path:
        """Absolute path of a stored package file.

        Raises:
            errors.FatalConfigurationError: The file is missing from storage
        """
        path = (self.storage_root / package.storage_path).resolve()
        if not path.is_file():
            self.logger.error(f"Package file missing for version id={package.id}: {path}")
            raise errors.FatalConfigurationError(
                f"STORAGE_PATH_MISSING: package {package.id} expected at {path}"
            )
        return path

    async def record_download(
        self,
        db: AsyncSession,
        version_id: int,
        machine_id: Optional[str],
        bytes_transferred: int,
        success: bool,
    ) -> None:
        """Record one download attempt; successful ones bump the counters."""
        now = utcnow()
        db.add(
            DownloadStatisticDB(
                package_version_id=version_id,
                machine_id=machine_id,
                bytes_transferred=bytes_transferred,
                success=success,
                downloaded_at=now,
            )
        )
        if success:
            await db.execute(
                update(PackageVersionDB)
                .where(PackageVersionDB.id == version_id)
                .values(
                    download_count=PackageVersionDB.download_count + 1,
                    last_downloaded_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        await db.commit()

    async def download_statistics(self, db: AsyncSession, version_id: int) -> dict:
        result = await db.execute(
            select(DownloadStatisticDB).where(DownloadStatisticDB.package_version_id == version_id)
        )
        rows = list(result.scalars())
        succeeded = [r for r in rows if r.success]
        return {
            "package_version_id": version_id,
            "attempts": len(rows),
            "successful": len(succeeded),
            "failed": len(rows) - len(succeeded),
            "bytes_transferred": sum(r.bytes_transferred for r in succeeded),
            "machines": sorted({r.machine_id for r in succeeded if r.machine_id}),
        }

    # -- lifecycle ----------------------------------------------------------

    async def is_referenced(self, db: AsyncSession, version_id: int) -> bool:
        """Whether any deployment or task points at the version."""
        result = await db.execute(
            select(
                exists().where(DeploymentHistoryDB.package_version_id == version_id)
                | exists().where(DeploymentTaskDB.package_version_id == version_id)
            )
        )
        return bool(result.scalar())

    async def update_metadata(
        self,
        db: AsyncSession,
        version_id: int,
        is_stable: Optional[bool] = None,
        release_notes: Optional[str] = None,
    ) -> PackageVersionDB:
        """Edit metadata of a version no deployment has referenced yet.

        Raises:
            errors.ConflictError: The version is referenced and therefore immutable
        """
        package = await self.get_by_id(db, version_id)
        if await self.is_referenced(db, version_id):
            raise errors.ConflictError(
                f"PACKAGE_IMMUTABLE: version id={version_id} is referenced by a deployment"
            )
        if is_stable is not None:
            package.is_stable = is_stable
        if release_notes is not None:
            package.release_notes = release_notes
        await db.commit()
        return package

    async def deactivate(self, db: AsyncSession, version_id: int) -> PackageVersionDB:
        package = await self.get_by_id(db, version_id)
        package.is_active = False
        await db.commit()
        self.logger.info(f"Deactivated package version id={version_id}")
        return package

    async def delete(self, db: AsyncSession, version_id: int) -> bool:
        """Delete a version, soft-deactivating it instead when referenced.

        Returns:
            True if the row and file were removed, False if only deactivated
        """
        package = await self.get_by_id(db, version_id)
        if await self.is_referenced(db, version_id):
            self.logger.info(
                f"Package version id={version_id} is in use, deactivating instead of deleting"
            )
            await self.deactivate(db, version_id)
            return False

        # Successors point at this row; bridge them to its own predecessor
        await db.execute(
            update(PackageVersionDB)
            .where(PackageVersionDB.replaces_version_id == version_id)
            .values(replaces_version_id=package.replaces_version_id)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(DownloadStatisticDB).where(DownloadStatisticDB.package_version_id == version_id)
        )
        file_path = self.storage_root / package.storage_path
        await db.delete(package)
        await db.commit()
        file_path.unlink(missing_ok=True)
        self.logger.info(f"Deleted package version id={version_id}")
        return True
