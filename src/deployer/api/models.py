"""Pydantic models for HTTP API requests and responses."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deployer.models.status import (
    DeploymentStatus,
    DeploymentType,
    MachineStatus,
    MergeStrategy,
    TaskStatus,
)

VERSION_PATTERN = r"^\d+\.\d+\.\d+$"


class SuccessResponse(BaseModel):
    """Envelope for successful calls.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[Any] = Field(None, description="Response payload")


class ErrorResponse(BaseModel):
    """Envelope for rejected calls.

    Example:
        {
            "code": 409,
            "msg": "TASK_TERMINAL: task 12 is already Completed",
            "error": "ConflictError"
        }
    """

    code: int = Field(..., description="Application-level error code (400/404/409/422/500)")
    msg: str = Field(..., description="Error message with error code prefix")
    error: str = Field(..., description="Error class name")


# ---------------------------------------------------------------------------
# Applications and packages
# ---------------------------------------------------------------------------


class ApplicationCreate(BaseModel):
    """POST /api/v1.0/applications payload."""

    app_code: str = Field(
        ...,
        pattern=r"^[A-Za-z0-9_.-]{1,64}$",
        description="Short application code used in install paths",
        examples=["billing", "crm-client"],
    )
    name: str = Field(..., min_length=1, description="Display name")


class ApplicationInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    app_code: str
    name: str
    created_at: datetime


class PackageVersionInfo(BaseModel):
    """Package version as exposed to admins and agents."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    application_id: int
    version: str
    package_file_name: str
    file_size_bytes: int
    file_hash: str = Field(..., description="SHA-256 hex digest")
    is_stable: bool
    is_active: bool
    release_notes: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime
    download_count: int
    last_downloaded_at: Optional[datetime] = None
    replaces_version_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Machines
# ---------------------------------------------------------------------------


class MachineRegistration(BaseModel):
    """POST /api/v1.0/machines/register payload.

    Example:
        {
            "machine_id": "3F2A9C...",
            "machine_name": "WS-0142",
            "user_name": "jdoe",
            "ip_address": "10.0.4.17",
            "mac_address": "00:1A:2B:3C:4D:5E",
            "os_version": "Linux-6.5.0-x86_64",
            "client_version": "1.0.0",
            "installed_applications": {"billing": "1.2.0"}
        }
    """

    machine_id: str = Field(..., min_length=1, max_length=64)
    machine_name: str = Field(..., min_length=1)
    user_name: Optional[str] = None
    domain_name: Optional[str] = None
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    os_version: Optional[str] = None
    client_version: Optional[str] = None
    location: Optional[str] = None
    installed_applications: dict[str, str] = Field(
        default_factory=dict, description="app_code -> installed version"
    )


class HeartbeatRequest(BaseModel):
    """POST /api/v1.0/machines/heartbeat payload."""

    machine_id: str = Field(..., min_length=1)
    status: MachineStatus = MachineStatus.ONLINE
    installed_applications: Optional[dict[str, str]] = None


class MachineInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    machine_id: str
    machine_name: str
    user_name: Optional[str] = None
    ip_address: Optional[str] = None
    os_version: Optional[str] = None
    client_version: Optional[str] = None
    status: MachineStatus
    last_heartbeat: Optional[datetime] = None
    installed_applications: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


class DeploymentRequest(BaseModel):
    """POST /api/v1.0/deployments payload.

    Exactly one of ``is_global`` or a non-empty ``target_machines`` is allowed.
    Targets may be machine ids, machine names or user names.
    """

    package_version_id: int = Field(..., gt=0)
    environment: str = Field(default="Production", min_length=1)
    deployment_type: DeploymentType = DeploymentType.RELEASE
    is_global: bool = False
    target_machines: list[str] = Field(default_factory=list)
    requires_approval: bool = False
    deployed_by: str = Field(..., min_length=1, description="Initiator identity")
    priority: int = Field(default=0, description="Higher runs first")
    scheduled_for: Optional[datetime] = Field(
        None, description="Tasks become eligible at this time (UTC)"
    )

    @field_validator("target_machines")
    @classmethod
    def strip_targets(cls, v: list[str]) -> list[str]:
        return [t.strip() for t in v if t and t.strip()]

    @field_validator("scheduled_for")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Stored timestamps are naive UTC."""
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class DeploymentInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    application_id: int
    package_version_id: int
    environment: str
    deployment_type: DeploymentType
    is_global: bool
    target_machines: list[str]
    target_machine_ids: list[str]
    skipped_targets: list[str]
    status: DeploymentStatus
    total_targets: int
    success_count: int
    failed_count: int
    pending_count: int
    deployed_by: str
    deployed_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    requires_approval: bool
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rollback_of_id: Optional[int] = None


class ApprovalRequest(BaseModel):
    approved_by: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    rejected_by: str = Field(..., min_length=1)
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    cancelled_by: str = Field(..., min_length=1)


class RollbackRequest(BaseModel):
    initiated_by: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class PendingTask(BaseModel):
    """One entry of GET /api/v1.0/tasks/pending/{machine_id}.

    Example:
        {
            "task_id": 41,
            "app_code": "billing",
            "version": "2.0.0",
            "priority": 0,
            "scheduled_for": null,
            "package_version_id": 7,
            "file_hash": "9f86d081884c7d659a2feaa0c55ad015...",
            "file_size_bytes": 1048576,
            "merge_strategy": "preserveLocal",
            "preserved_files": [],
            "retry_count": 0
        }
    """

    task_id: int
    app_code: str
    version: str
    priority: int
    scheduled_for: Optional[datetime] = None
    deployment_id: int
    package_version_id: int
    file_hash: str
    file_size_bytes: int
    merge_strategy: MergeStrategy = MergeStrategy.REPLACE_ALL
    preserved_files: list[str] = Field(default_factory=list)
    retry_count: int = 0


class TaskStatusUpdate(BaseModel):
    """POST /api/v1.0/tasks/update-status payload.

    ``InProgress`` on a queued task claims it; later ``InProgress`` reports
    carry monotonic progress. ``retryable`` lets the agent mark a failure as
    terminal regardless of the remaining retry budget.
    """

    task_id: int = Field(..., gt=0)
    status: TaskStatus
    progress_percentage: Optional[int] = Field(None, ge=0, le=100)
    current_step: Optional[str] = Field(None, max_length=255)
    is_success: Optional[bool] = None
    error_message: Optional[str] = None
    download_size_bytes: Optional[int] = Field(None, ge=0)
    retryable: bool = True
    machine_id: Optional[str] = Field(
        None, description="Reporting machine; must own the task when given"
    )

    @model_validator(mode="after")
    def reportable_status(self) -> "TaskStatusUpdate":
        if self.status in (TaskStatus.QUEUED, TaskStatus.RETRYING):
            raise ValueError(f"Agents cannot report status {self.status.value}")
        return self


class TaskInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deployment_id: int
    target_machine_id: str
    package_version_id: int
    status: TaskStatus
    priority: int
    created_at: datetime
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress_percentage: int
    current_step: Optional[str] = None
    is_success: Optional[bool] = None
    error_message: Optional[str] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    download_size_bytes: Optional[int] = None
    install_duration_seconds: Optional[float] = None
    last_report_at: Optional[datetime] = None


class DeploymentProgress(BaseModel):
    """GET /api/v1.0/deployments/{id}/progress response data."""

    deployment_id: int
    status: DeploymentStatus
    total_targets: int
    success_count: int
    failed_count: int
    pending_count: int
    percent_complete: float
    elapsed_seconds: Optional[float] = None
    estimated_seconds_remaining: Optional[float] = None
    estimated_completion: Optional[datetime] = None
    tasks: list[TaskInfo] = Field(default_factory=list)


class TaskStatistics(BaseModel):
    """GET /api/v1.0/tasks/statistics response data."""

    total: int
    by_status: dict[str, int]
    success_rate: float = Field(..., description="Completed / terminal, percent")
    average_install_duration_seconds: Optional[float] = None
