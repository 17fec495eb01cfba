"""Service wiring shared by the route modules."""

from typing import Optional

from fastapi import Request

from deployer.config import ServerSettings
from deployer.services.aggregator import DeploymentAggregator
from deployer.services.events import EventSink, LoggingEventSink
from deployer.services.machine_registry import MachineRegistry
from deployer.services.manifest_resolver import ManifestResolver
from deployer.services.package_store import PackageStore
from deployer.services.planner import DeploymentPlanner
from deployer.services.scheduler import TaskScheduler
from deployer.services.tasks import TaskService


class ServiceContainer:
    """Stateless services built once per app; sessions are passed per call."""

    def __init__(self, settings: ServerSettings, events: Optional[EventSink] = None):
        self.settings = settings
        self.events = events or LoggingEventSink()
        self.package_store = PackageStore(settings, self.events)
        self.registry = MachineRegistry(settings, self.events)
        self.manifests = ManifestResolver(self.package_store, self.events)
        self.aggregator = DeploymentAggregator()
        self.scheduler = TaskScheduler(settings, self.registry)
        self.tasks = TaskService(self.scheduler, self.aggregator, self.events)
        self.planner = DeploymentPlanner(
            settings,
            self.package_store,
            self.registry,
            self.scheduler,
            self.aggregator,
            self.events,
        )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
