"""Admin API: applications, packages, manifests, machines and deployments."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.api.dependencies import ServiceContainer, get_services
from deployer.api.models import (
    ApplicationCreate,
    ApplicationInfo,
    ApprovalRequest,
    CancelRequest,
    DeploymentInfo,
    DeploymentRequest,
    MachineInfo,
    PackageVersionInfo,
    RejectRequest,
    RollbackRequest,
    SuccessResponse,
    TaskInfo,
)
from deployer.api.routes import ok
from deployer.db.database import get_db
from deployer.models.manifest import ApplicationManifest
from deployer.utils.clock import utcnow

router = APIRouter(prefix="/api/v1.0")


def _deployment(deployment) -> dict:
    return DeploymentInfo.model_validate(deployment).model_dump(mode="json")


def _package(package) -> dict:
    return PackageVersionInfo.model_validate(package).model_dump(mode="json")


# -- applications and packages ----------------------------------------------


@router.post("/applications", response_model=SuccessResponse)
async def create_application(
    request: ApplicationCreate,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    application = await services.package_store.create_application(db, request.app_code, request.name)
    return ok(ApplicationInfo.model_validate(application).model_dump(mode="json"))


@router.get("/applications", response_model=SuccessResponse)
async def list_applications(
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    applications = await services.package_store.list_applications(db)
    return ok([ApplicationInfo.model_validate(a).model_dump(mode="json") for a in applications])


@router.post("/applications/{app_code}/packages/{version}", response_model=SuccessResponse)
async def upload_package(
    app_code: str,
    version: str,
    request: Request,
    file_name: str = Query(..., description="Package file name, e.g. billing-2.0.0.zip"),
    uploaded_by: Optional[str] = None,
    is_stable: bool = True,
    release_notes: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """POST /api/v1.0/applications/{app_code}/packages/{version}?file_name=...

    The request body is the raw package file.
    """
    content = await request.body()
    package = await services.package_store.upload(
        db,
        app_code,
        version,
        file_name,
        content,
        uploaded_by=uploaded_by,
        is_stable=is_stable,
        release_notes=release_notes,
    )
    return ok(_package(package))


@router.get("/applications/{app_code}/packages", response_model=SuccessResponse)
async def list_packages(
    app_code: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    application = await services.package_store.get_application_by_code(db, app_code)
    versions = await services.package_store.list_versions(db, application.id)
    return ok([_package(p) for p in versions])


@router.get("/applications/{app_code}/packages/latest", response_model=SuccessResponse)
async def get_latest_package(
    app_code: str,
    stable_only: bool = True,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    application = await services.package_store.get_application_by_code(db, app_code)
    package = await services.package_store.get_latest(db, application.id, stable_only)
    if package is None:
        raise errors.NotFoundError(f"NO_ACTIVE_VERSION: {app_code}")
    return ok(_package(package))


@router.get("/packages/{version_id}/statistics", response_model=SuccessResponse)
async def get_download_statistics(
    version_id: int,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    await services.package_store.get_by_id(db, version_id)
    return ok(await services.package_store.download_statistics(db, version_id))


@router.delete("/packages/{version_id}", response_model=SuccessResponse)
async def delete_package(
    version_id: int,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """DELETE /api/v1.0/packages/{version_id} - Soft-deactivates versions in use."""
    deleted = await services.package_store.delete(db, version_id)
    return ok({"package_version_id": version_id, "deleted": deleted, "deactivated": not deleted})


# -- manifests -----------------------------------------------------------------


@router.post("/applications/{app_code}/manifests", response_model=SuccessResponse)
async def create_manifest(
    app_code: str,
    manifest: ApplicationManifest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    created = await services.manifests.create_manifest(db, app_code, manifest)
    return ok(created.model_dump(mode="json"))


@router.get("/applications/{app_code}/manifests", response_model=SuccessResponse)
async def list_manifests(
    app_code: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    application = await services.package_store.get_application_by_code(db, app_code)
    manifests = await services.manifests.list_manifests(db, application.id)
    return ok([m.model_dump(mode="json") for m in manifests])


@router.post("/manifests/{manifest_id}/activate", response_model=SuccessResponse)
async def activate_manifest(
    manifest_id: int,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    manifest = await services.manifests.activate(db, manifest_id)
    return ok(manifest.model_dump(mode="json"))


# -- machines ------------------------------------------------------------------


@router.get("/machines", response_model=SuccessResponse)
async def list_machines(
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    machines = await services.registry.list_machines(db)
    return ok([MachineInfo.model_validate(m).model_dump(mode="json") for m in machines])


# -- deployments ---------------------------------------------------------------


@router.post("/deployments", response_model=SuccessResponse)
async def create_deployment(
    request: DeploymentRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """POST /api/v1.0/deployments - Plan a global or targeted rollout.

    Example:
        {
            "package_version_id": 7,
            "target_machines": ["WS-0142", "jdoe"],
            "deployed_by": "admin",
            "requires_approval": false
        }
    """
    deployment = await services.planner.plan(db, request)
    return ok(_deployment(deployment))


@router.get("/deployments", response_model=SuccessResponse)
async def list_deployments(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    deployments = await services.planner.list_deployments(db, limit)
    return ok([_deployment(d) for d in deployments])


@router.get("/deployments/{deployment_id}", response_model=SuccessResponse)
async def get_deployment(
    deployment_id: int,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    return ok(_deployment(await services.planner.get_deployment(db, deployment_id)))


@router.get("/deployments/{deployment_id}/progress", response_model=SuccessResponse)
async def get_deployment_progress(
    deployment_id: int,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    progress = await services.aggregator.progress(db, deployment_id, utcnow())
    return ok(progress.model_dump(mode="json"))


@router.get("/deployments/{deployment_id}/tasks", response_model=SuccessResponse)
async def list_deployment_tasks(
    deployment_id: int,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    await services.planner.get_deployment(db, deployment_id)
    tasks = await services.tasks.list_tasks(db, deployment_id)
    return ok([TaskInfo.model_validate(t).model_dump(mode="json") for t in tasks])


@router.post("/deployments/{deployment_id}/approve", response_model=SuccessResponse)
async def approve_deployment(
    deployment_id: int,
    request: ApprovalRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    deployment = await services.planner.approve(db, deployment_id, request.approved_by)
    return ok(_deployment(deployment))


@router.post("/deployments/{deployment_id}/reject", response_model=SuccessResponse)
async def reject_deployment(
    deployment_id: int,
    request: RejectRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    deployment = await services.planner.reject(db, deployment_id, request.rejected_by, request.reason)
    return ok(_deployment(deployment))


@router.post("/deployments/{deployment_id}/cancel", response_model=SuccessResponse)
async def cancel_deployment(
    deployment_id: int,
    request: CancelRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    deployment = await services.planner.cancel(db, deployment_id, request.cancelled_by)
    return ok(_deployment(deployment))


@router.post("/deployments/{deployment_id}/rollback", response_model=SuccessResponse)
async def rollback_deployment(
    deployment_id: int,
    request: RollbackRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    deployment = await services.planner.plan_rollback(db, deployment_id, request.initiated_by)
    return ok(_deployment(deployment))


@router.get("/tasks/statistics", response_model=SuccessResponse)
async def get_task_statistics(
    deployment_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    stats = await services.scheduler.task_statistics(db, deployment_id)
    return ok(stats.model_dump(mode="json"))


@router.post("/tasks/expire-stale", response_model=SuccessResponse)
async def expire_stale_claims(
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    expired = await services.tasks.expire_stale_claims(db)
    return ok({"expired": expired})
