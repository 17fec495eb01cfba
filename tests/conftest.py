"""Global pytest fixtures and configuration."""

import io
import sys
import zipfile
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from deployer.api.models import MachineRegistration  # noqa: E402
from deployer.api.dependencies import ServiceContainer  # noqa: E402
from deployer.config import AgentSettings, ServerSettings  # noqa: E402
from deployer.db.database import Base  # noqa: E402
from deployer.db import tables  # noqa: E402,F401
from deployer.services.events import DeploymentEvent, EventType  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for deterministic scheduling tests
NOW = datetime(2026, 3, 2, 9, 0, 0)


class RecordingEventSink:
    """Event sink that keeps every emitted event for assertions."""

    def __init__(self):
        self.events: list[DeploymentEvent] = []

    def emit(self, event: DeploymentEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[DeploymentEvent]:
        return [e for e in self.events if e.type == event_type]


def make_zip(files: dict) -> bytes:
    """Build an in-memory zip archive from {relative path: text}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def server_settings(tmp_path):
    """Server settings pointing at a temporary storage root."""
    return ServerSettings(
        database_url=TEST_DATABASE_URL,
        storage_root=str(tmp_path / "packages"),
        log_file=str(tmp_path / "logs" / "server.log"),
        default_max_retries=3,
        retry_backoff_base_seconds=30,
        retry_backoff_max_seconds=900,
        offline_threshold_seconds=120,
    )


@pytest.fixture
def agent_settings(tmp_path):
    """Agent settings with every path under tmp_path and short intervals."""
    return AgentSettings(
        server_url="http://testserver",
        apps_root=str(tmp_path / "apps"),
        tmp_dir=str(tmp_path / "tmp"),
        state_file=str(tmp_path / "tmp" / "agent_state.json"),
        log_file=str(tmp_path / "logs" / "agent.log"),
        heartbeat_interval_seconds=0.01,
        poll_interval_seconds=0.01,
        poll_initial_delay_seconds=0.0,
        registration_retry_seconds=0.01,
    )


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def services(server_settings, events):
    """Service container wired to the recording event sink."""
    return ServiceContainer(server_settings, events)


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


def registration(machine_id: str, machine_name: str, user_name: str = "user") -> MachineRegistration:
    return MachineRegistration(
        machine_id=machine_id,
        machine_name=machine_name,
        user_name=user_name,
        ip_address="10.0.0.1",
        client_version="1.0.0",
    )


@pytest_asyncio.fixture
async def application(db, services):
    """Application 'billing' with versions 1.0.0 and 2.0.0 uploaded."""
    app = await services.package_store.create_application(db, "billing", "Billing")
    v1 = await services.package_store.upload(
        db, "billing", "1.0.0", "billing-1.0.0.zip", make_zip({"bin/app.txt": "v1"}), uploaded_by="ci"
    )
    v2 = await services.package_store.upload(
        db, "billing", "2.0.0", "billing-2.0.0.zip", make_zip({"bin/app.txt": "v2"}), uploaded_by="ci"
    )
    return app, v1, v2


@pytest_asyncio.fixture
async def machines(db, services):
    """Three registered machines, M1..M3, heartbeating at NOW."""
    registered = []
    for i, user in enumerate(["alice", "bob", "carol"], start=1):
        machine = await services.registry.register(
            db, registration(f"M{i}", f"WS-{i:04d}", user), now=NOW
        )
        registered.append(machine)
    return registered


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def zip_bytes():
    return make_zip


@pytest.fixture
def make_registration():
    return registration
