"""Status enums for deployments, tasks, machines and the agent."""

from enum import Enum


class TaskStatus(str, Enum):
    """Deployment task lifecycle.

    State transitions (server side):
    Queued → InProgress → Completed
               ↓    ↑
             Retrying (retry_count < max_retries, after back-off)
               ↓
             Failed (retries exhausted or not retryable)
    Queued/Retrying/InProgress → Cancelled
    """

    QUEUED = "Queued"
    RETRYING = "Retrying"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)
PENDING_TASK_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RETRYING})


class DeploymentStatus(str, Enum):
    """Deployment (rollout campaign) lifecycle.

    PendingApproval → Pending → InProgress → Success | Failed | PartialFailure
    any non-terminal → Cancelled
    """

    PENDING_APPROVAL = "PendingApproval"
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"
    PARTIAL_FAILURE = "PartialFailure"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_DEPLOYMENT_STATUSES


TERMINAL_DEPLOYMENT_STATUSES = frozenset(
    {
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.PARTIAL_FAILURE,
        DeploymentStatus.CANCELLED,
    }
)


class DeploymentType(str, Enum):
    RELEASE = "Release"
    HOTFIX = "Hotfix"
    ROLLBACK = "Rollback"


class MachineStatus(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"
    BUSY = "Busy"


class MergeStrategy(str, Enum):
    """How packaged config files combine with a machine's local config."""

    PRESERVE_LOCAL = "preserveLocal"
    REPLACE_ALL = "replaceAll"
    SELECTIVE = "selective"
    MERGE = "merge"


class UpdateType(str, Enum):
    BINARY = "binary"
    CONFIG = "config"
    BOTH = "both"
    NONE = "none"


class StageEnum(str, Enum):
    """Agent-side stages of a single task execution.

    idle → claiming → downloading → verifying → staging → stopping → swapping
      → success
    any stage → rollingBack → failed | cancelled
    """

    IDLE = "idle"
    CLAIMING = "claiming"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    STAGING = "staging"
    STOPPING = "stopping"
    SWAPPING = "swapping"
    ROLLING_BACK = "rollingBack"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
