"""SQLAlchemy tables.

Relationships are plain integer foreign keys resolved by lookup; no table
carries back-references to its owners.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from deployer.db.database import Base
from deployer.models.status import (
    DeploymentStatus,
    DeploymentType,
    MachineStatus,
    MergeStrategy,
    TaskStatus,
    UpdateType,
)
from deployer.utils.clock import utcnow


def _enum(enum_cls):
    # Store enum values ("InProgress"), not member names ("IN_PROGRESS")
    return SQLEnum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        length=32,
    )


class ApplicationDB(Base):
    """Deployable application"""
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_code = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PackageVersionDB(Base):
    """Uploaded package artifact for one application version"""
    __tablename__ = "package_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False)
    version = Column(String(32), nullable=False)
    package_file_name = Column(String(255), nullable=False)
    file_size_bytes = Column(BigInteger, nullable=False)
    file_hash = Column(String(64), nullable=False)
    storage_path = Column(Text, nullable=False)
    is_stable = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    release_notes = Column(Text, nullable=True)
    uploaded_by = Column(String(255), nullable=True)
    uploaded_at = Column(DateTime, nullable=False, default=utcnow)
    download_count = Column(Integer, nullable=False, default=0)
    last_downloaded_at = Column(DateTime, nullable=True)
    replaces_version_id = Column(Integer, ForeignKey("package_versions.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("application_id", "version", name="uq_package_app_version"),
        CheckConstraint("length(file_hash) > 0", name="ck_package_hash_nonempty"),
    )


class DownloadStatisticDB(Base):
    """One package download attempt by a machine"""
    __tablename__ = "download_statistics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    package_version_id = Column(Integer, ForeignKey("package_versions.id"), nullable=False, index=True)
    machine_id = Column(String(64), nullable=True)
    bytes_transferred = Column(BigInteger, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    downloaded_at = Column(DateTime, nullable=False, default=utcnow)


class ApplicationManifestDB(Base):
    """Release manifest; at most one active per application"""
    __tablename__ = "application_manifests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    version = Column(String(32), nullable=False)
    binary_version = Column(String(32), nullable=False)
    binary_package = Column(String(255), nullable=True)
    config_version = Column(String(32), nullable=True)
    config_package = Column(String(255), nullable=True)
    merge_strategy = Column(_enum(MergeStrategy), nullable=False, default=MergeStrategy.PRESERVE_LOCAL)
    preserved_files = Column(JSON, nullable=False, default=list)
    update_type = Column(_enum(UpdateType), nullable=False, default=UpdateType.BOTH)
    force_update = Column(Boolean, nullable=False, default=False)
    notify_user = Column(Boolean, nullable=False, default=True)
    allow_skip = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=False)
    is_stable = Column(Boolean, nullable=False, default=True)
    release_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("application_id", "version", name="uq_manifest_app_version"),
    )


class ClientMachineDB(Base):
    """Registered client machine; never hard-deleted"""
    __tablename__ = "client_machines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False, unique=True, index=True)
    machine_name = Column(String(255), nullable=False)
    user_name = Column(String(255), nullable=True)
    domain_name = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    mac_address = Column(String(64), nullable=True)
    os_version = Column(String(255), nullable=True)
    client_version = Column(String(32), nullable=True)
    location = Column(String(255), nullable=True)
    status = Column(_enum(MachineStatus), nullable=False, default=MachineStatus.OFFLINE)
    last_heartbeat = Column(DateTime, nullable=True)
    registered_at = Column(DateTime, nullable=False, default=utcnow)
    installed_applications = Column(JSON, nullable=False, default=dict)


class DeploymentHistoryDB(Base):
    """One rollout campaign of a package version"""
    __tablename__ = "deployment_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    package_version_id = Column(Integer, ForeignKey("package_versions.id"), nullable=False, index=True)
    environment = Column(String(32), nullable=False, default="Production")
    deployment_type = Column(_enum(DeploymentType), nullable=False, default=DeploymentType.RELEASE)
    is_global = Column(Boolean, nullable=False, default=False)
    target_machines = Column(JSON, nullable=False, default=list)  # requested identifiers
    target_machine_ids = Column(JSON, nullable=False, default=list)  # resolved snapshot
    skipped_targets = Column(JSON, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    scheduled_for = Column(DateTime, nullable=True)
    status = Column(_enum(DeploymentStatus), nullable=False, default=DeploymentStatus.PENDING, index=True)
    total_targets = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    pending_count = Column(Integer, nullable=False, default=0)
    deployed_by = Column(String(255), nullable=False)
    deployed_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String(255), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rollback_of_id = Column(Integer, ForeignKey("deployment_history.id"), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "total_targets = success_count + failed_count + pending_count",
            name="ck_deployment_counters_sum",
        ),
        CheckConstraint("pending_count >= 0", name="ck_deployment_pending_nonneg"),
    )


class DeploymentTaskDB(Base):
    """Unit of deployment work for one machine"""
    __tablename__ = "deployment_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deployment_id = Column(Integer, ForeignKey("deployment_history.id"), nullable=False, index=True)
    target_machine_id = Column(String(64), ForeignKey("client_machines.machine_id"), nullable=False)
    package_version_id = Column(Integer, ForeignKey("package_versions.id"), nullable=False)
    status = Column(_enum(TaskStatus), nullable=False, default=TaskStatus.QUEUED)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    scheduled_for = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    progress_percentage = Column(Integer, nullable=False, default=0)
    current_step = Column(String(255), nullable=True)
    is_success = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True)
    download_size_bytes = Column(BigInteger, nullable=True)
    install_duration_seconds = Column(Float, nullable=True)
    last_report_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("retry_count <= max_retries", name="ck_task_retry_bound"),
        CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_task_progress_range",
        ),
        # Poll query: WHERE target_machine_id = ? AND status IN (...) ORDER BY priority, created_at
        Index("idx_task_machine_status_priority", "target_machine_id", "status", "priority", "created_at"),
    )
