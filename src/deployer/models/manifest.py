"""Application manifest model: which packages apply and how to update."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deployer.models.status import MergeStrategy, UpdateType

VERSION_PATTERN = r"^\d+\.\d+\.\d+$"


class ApplicationManifest(BaseModel):
    """Per-application release manifest.

    At most one manifest per application is active at a time; activating one
    deactivates its siblings.
    """

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)

    id: Optional[int] = Field(None, description="Manifest id (assigned on create)")
    application_id: Optional[int] = None
    version: str = Field(..., pattern=VERSION_PATTERN, description="Release version")
    binary_version: str = Field(
        ..., pattern=VERSION_PATTERN, description="Binary package version"
    )
    binary_package: Optional[str] = Field(None, description="Binary package file name")
    config_version: Optional[str] = Field(None, pattern=VERSION_PATTERN)
    config_package: Optional[str] = None
    merge_strategy: MergeStrategy = Field(
        default=MergeStrategy.PRESERVE_LOCAL,
        description="Config merge policy applied by the agent",
    )
    preserved_files: list[str] = Field(
        default_factory=list,
        description="Config paths kept from the machine (selective strategy)",
    )
    update_type: UpdateType = UpdateType.BOTH
    force_update: bool = False
    notify_user: bool = True
    allow_skip: bool = False
    is_active: bool = False
    is_stable: bool = True
    release_notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("preserved_files")
    @classmethod
    def no_directory_traversal(cls, v: list[str]) -> list[str]:
        """Preserved paths must stay inside the config directory."""
        for path in v:
            if ".." in path.split("/") or path.startswith("/"):
                raise ValueError(f"Preserved path must be relative without '..': {path}")
        return v
