"""Structured deployment events for the audit/logging subsystem."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from deployer.utils.clock import utcnow


class EventType(str, Enum):
    DEPLOYMENT_CREATED = "deployment.created"
    DEPLOYMENT_APPROVED = "deployment.approved"
    DEPLOYMENT_STATUS_CHANGED = "deployment.status_changed"
    TASK_CREATED = "task.created"
    TASK_CLAIMED = "task.claimed"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_RETRY_SCHEDULED = "task.retry_scheduled"
    TASK_CANCELLED = "task.cancelled"
    MANIFEST_ACTIVATED = "manifest.activated"
    PACKAGE_UPLOADED = "package.uploaded"
    MACHINE_REGISTERED = "machine.registered"


class DeploymentEvent(BaseModel):
    """One audit event emitted by the core services."""

    type: EventType
    deployment_id: Optional[int] = None
    task_id: Optional[int] = None
    machine_id: Optional[str] = None
    actor: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class EventSink(Protocol):
    def emit(self, event: DeploymentEvent) -> None: ...


class LoggingEventSink:
    """Default sink: one JSON line per event on the ``deployer.audit`` logger."""

    def __init__(self, logger_name: str = "deployer.audit"):
        self.logger = logging.getLogger(logger_name)

    def emit(self, event: DeploymentEvent) -> None:
        self.logger.info(event.model_dump_json(exclude_none=True))

