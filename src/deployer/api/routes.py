"""Agent-facing API: registration, heartbeat, task polling, reports, downloads."""

from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.api.dependencies import ServiceContainer, get_services
from deployer.api.models import (
    HeartbeatRequest,
    MachineInfo,
    MachineRegistration,
    SuccessResponse,
    TaskInfo,
    TaskStatusUpdate,
)
from deployer.db.database import get_db
from deployer.utils.clock import utcnow

router = APIRouter(prefix="/api/v1.0")


def ok(data: Any = None) -> dict:
    """Success envelope; HTTP status is always 200, real status in 'code'."""
    return {"code": 200, "msg": "success", "data": data}


@router.post("/machines/register", response_model=SuccessResponse)
async def register_machine(
    registration: MachineRegistration,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """POST /api/v1.0/machines/register - Create or refresh a machine (upsert by machine_id)."""
    machine = await services.registry.register(db, registration)
    return ok(MachineInfo.model_validate(machine).model_dump(mode="json"))


@router.post("/machines/heartbeat", response_model=SuccessResponse)
async def heartbeat(
    request: HeartbeatRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """POST /api/v1.0/machines/heartbeat - Liveness signal.

    Unknown machines get code 404 so the agent re-registers.
    """
    machine = await services.registry.heartbeat(
        db,
        request.machine_id,
        status=request.status,
        installed_applications=request.installed_applications,
    )
    return ok({"machine_id": machine.machine_id, "status": machine.status.value})


@router.get("/tasks/pending/{machine_id}", response_model=SuccessResponse)
async def get_pending_tasks(
    machine_id: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """GET /api/v1.0/tasks/pending/{machine_id} - Ordered eligible tasks.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": [
                {"task_id": 41, "app_code": "billing", "version": "2.0.0",
                 "priority": 0, "scheduled_for": null, ...}
            ]
        }

    An empty list means no work.
    """
    tasks = await services.scheduler.pending_tasks(db, machine_id, utcnow())
    return ok([t.model_dump(mode="json") for t in tasks])


@router.post("/tasks/update-status", response_model=SuccessResponse)
async def update_task_status(
    report: TaskStatusUpdate,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """POST /api/v1.0/tasks/update-status - Claim, progress or terminal report.

    Rejections come back as code 404 (unknown task) or 409 (illegal
    transition, progress regression, cancelled deployment).
    """
    task = await services.tasks.update_status(db, report)
    return ok(TaskInfo.model_validate(task).model_dump(mode="json"))


@router.get("/packages/{version_id}/download")
async def download_package(
    version_id: int,
    machine_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """GET /api/v1.0/packages/{version_id}/download - Stream a package file."""
    package = await services.package_store.get_by_id(db, version_id)
    try:
        path = services.package_store.resolve_path(package)
    except errors.FatalConfigurationError:
        await services.package_store.record_download(db, version_id, machine_id, 0, success=False)
        raise
    await services.package_store.record_download(
        db, version_id, machine_id, package.file_size_bytes, success=True
    )
    return FileResponse(
        path,
        media_type="application/octet-stream",
        filename=package.package_file_name,
        headers={"X-Content-SHA256": package.file_hash},
    )


@router.get("/applications/{app_code}/manifest", response_model=SuccessResponse)
async def get_active_manifest(
    app_code: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """GET /api/v1.0/applications/{app_code}/manifest - Active manifest or null."""
    manifest = await services.manifests.get_active_manifest_by_code(db, app_code)
    return ok(manifest.model_dump(mode="json") if manifest else None)
