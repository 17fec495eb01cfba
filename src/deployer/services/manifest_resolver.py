"""Manifest Resolver: the active manifest and update policy per application."""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.db.tables import ApplicationDB, ApplicationManifestDB
from deployer.models.manifest import ApplicationManifest
from deployer.services.events import DeploymentEvent, EventSink, EventType, LoggingEventSink
from deployer.services.package_store import PackageStore, version_key
from deployer.utils.clock import utcnow


class ManifestResolver:
    """Creates manifests and keeps at most one of them active per application."""

    def __init__(self, package_store: PackageStore, events: Optional[EventSink] = None):
        self.logger = logging.getLogger("deployer.manifest_resolver")
        self.package_store = package_store
        self.events = events or LoggingEventSink()

    async def create_manifest(
        self, db: AsyncSession, app_code: str, manifest: ApplicationManifest
    ) -> ApplicationManifest:
        """Persist a manifest for an application, activating it when asked.

        Raises:
            errors.NotFoundError: Unknown application
            errors.InvalidPackageVersionError: Binary version not in the store
            errors.ConflictError: Manifest version already exists
        """
        application = await self.package_store.get_application_by_code(db, app_code)
        try:
            await self.package_store.get_version(db, application.id, manifest.binary_version)
        except errors.NotFoundError as e:
            raise errors.InvalidPackageVersionError(
                f"BINARY_VERSION_NOT_FOUND: {app_code} {manifest.binary_version}"
            ) from e

        duplicate = await db.execute(
            select(ApplicationManifestDB.id).where(
                ApplicationManifestDB.application_id == application.id,
                ApplicationManifestDB.version == manifest.version,
            )
        )
        if duplicate.scalar_one_or_none() is not None:
            raise errors.ConflictError(f"MANIFEST_EXISTS: {app_code} {manifest.version}")

        row = ApplicationManifestDB(
            **manifest.model_dump(exclude={"id", "application_id", "is_active", "created_at"}),
            application_id=application.id,
            is_active=False,
            created_at=utcnow(),
        )
        db.add(row)
        await db.commit()
        self.logger.info(f"Created manifest {app_code} {manifest.version} (id={row.id})")

        if manifest.is_active:
            return await self.activate(db, row.id)
        return ApplicationManifest.model_validate(row)

    async def activate(
        self, db: AsyncSession, manifest_id: int, actor: Optional[str] = None
    ) -> ApplicationManifest:
        """Make one manifest the active one for its application.

        Sibling deactivation and target activation commit together, with the
        application row locked so concurrent activations serialize.
        """
        row = await db.get(ApplicationManifestDB, manifest_id)
        if row is None:
            raise errors.NotFoundError(f"MANIFEST_NOT_FOUND: id={manifest_id}")
        application_id = row.application_id

        await db.execute(
            select(ApplicationDB.id).where(ApplicationDB.id == application_id).with_for_update()
        )
        await db.execute(
            update(ApplicationManifestDB)
            .where(
                ApplicationManifestDB.application_id == application_id,
                ApplicationManifestDB.id != manifest_id,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(ApplicationManifestDB)
            .where(ApplicationManifestDB.id == manifest_id)
            .values(is_active=True)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        self.logger.info(f"Activated manifest id={manifest_id} for application id={application_id}")
        self.events.emit(
            DeploymentEvent(
                type=EventType.MANIFEST_ACTIVATED,
                actor=actor,
                detail={"manifest_id": manifest_id, "application_id": application_id},
            )
        )
        refreshed = await db.execute(
            select(ApplicationManifestDB)
            .where(ApplicationManifestDB.id == manifest_id)
            .execution_options(populate_existing=True)
        )
        return ApplicationManifest.model_validate(refreshed.scalar_one())

    async def get_active_manifest(
        self, db: AsyncSession, application_id: int
    ) -> Optional[ApplicationManifest]:
        """Active manifest of an application, or None.

        Raises:
            errors.FatalConfigurationError: Active manifest points at a missing package
        """
        result = await db.execute(
            select(ApplicationManifestDB)
            .where(
                ApplicationManifestDB.application_id == application_id,
                ApplicationManifestDB.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars())
        if not rows:
            return None
        if len(rows) > 1:
            raise errors.FatalConfigurationError(
                f"CORRUPT_MANIFEST: {len(rows)} active manifests for application id={application_id}"
            )

        row = rows[0]
        try:
            await self.package_store.get_version(db, application_id, row.binary_version)
        except errors.NotFoundError as e:
            raise errors.FatalConfigurationError(
                f"CORRUPT_MANIFEST: manifest id={row.id} references missing "
                f"binary version {row.binary_version}"
            ) from e
        return ApplicationManifest.model_validate(row)

    async def get_active_manifest_by_code(
        self, db: AsyncSession, app_code: str
    ) -> Optional[ApplicationManifest]:
        application = await self.package_store.get_application_by_code(db, app_code)
        return await self.get_active_manifest(db, application.id)

    async def list_manifests(self, db: AsyncSession, application_id: int) -> list[ApplicationManifest]:
        result = await db.execute(
            select(ApplicationManifestDB)
            .where(ApplicationManifestDB.application_id == application_id)
            .execution_options(populate_existing=True)
        )
        rows = sorted(result.scalars(), key=lambda m: version_key(m.version), reverse=True)
        return [ApplicationManifest.model_validate(row) for row in rows]
