"""Persistent in-flight install state kept by the agent for crash recovery."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from deployer.models.status import StageEnum, TaskStatus


class StateFile(BaseModel):
    """Persistent state at ``AgentSettings.state_file``.

    Written when a task is claimed and deleted once the server has been
    told how it ended. A leftover file on agent start means the agent died
    mid-task or could not deliver the outcome; ``stage`` says what the
    install directory looks like and ``outcome`` what still has to be
    reported.
    """

    task_id: int = Field(..., description="Task being executed")
    app_code: str = Field(..., description="Application being installed")
    version: str = Field(..., description="Version being installed")
    stage: StageEnum = Field(..., description="Last stage reached")
    previous_version: Optional[str] = Field(
        None, description="Version marker found before the install"
    )
    snapshot_digest: Optional[str] = Field(
        None, description="Tree digest of the live install before the install"
    )
    outcome: Optional[TaskStatus] = Field(
        None, description="Terminal status decided but not yet delivered"
    )
    error: Optional[str] = Field(None, description="Error message for the outcome report")
    retryable: bool = Field(True, description="Retryable flag for the outcome report")
    reported: bool = Field(
        False, description="Outcome delivered; kept only until the tree is recovered"
    )
    started_at: datetime = Field(default_factory=datetime.now)
    last_update: datetime = Field(default_factory=datetime.now)

    @field_validator("started_at", "last_update", mode="before")
    @classmethod
    def parse_iso8601(cls, v):
        """Parse ISO 8601 timestamp strings."""
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v


class AgentStatus(BaseModel):
    """In-memory agent status, reported as Busy/Online in heartbeats."""

    stage: StageEnum = Field(..., description="Current execution stage")
    progress: int = Field(..., ge=0, le=100, description="Percentage completion (0-100)")
    message: str = Field(..., description="Human-readable status description")
    task_id: Optional[int] = None
    app_code: Optional[str] = None
    error: Optional[str] = Field(None, description="Error detail if stage is failed")
