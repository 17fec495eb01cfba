"""Machine Registry: client machine identity, liveness and target resolution."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deployer import errors
from deployer.api.models import MachineRegistration
from deployer.config import ServerSettings
from deployer.db.tables import ClientMachineDB
from deployer.models.status import MachineStatus
from deployer.services.events import DeploymentEvent, EventSink, EventType, LoggingEventSink
from deployer.utils.clock import utcnow


class MachineRegistry:
    """Registered client machines, upserted by machine id and never deleted."""

    def __init__(self, settings: ServerSettings, events: Optional[EventSink] = None):
        self.logger = logging.getLogger("deployer.machine_registry")
        self.offline_threshold = timedelta(seconds=settings.offline_threshold_seconds)
        self.events = events or LoggingEventSink()

    async def register(
        self, db: AsyncSession, registration: MachineRegistration, now: Optional[datetime] = None
    ) -> ClientMachineDB:
        """Create or refresh a machine record.

        Re-registration with the same machine id updates the existing row,
        so deployment history stays attributable to one machine.
        """
        now = now or utcnow()
        machine = await self._find(db, registration.machine_id)
        created = machine is None
        if created:
            machine = ClientMachineDB(machine_id=registration.machine_id, registered_at=now)
            db.add(machine)

        machine.machine_name = registration.machine_name
        machine.user_name = registration.user_name
        machine.domain_name = registration.domain_name
        machine.ip_address = registration.ip_address
        machine.mac_address = registration.mac_address
        machine.os_version = registration.os_version
        machine.client_version = registration.client_version
        machine.location = registration.location
        machine.installed_applications = dict(registration.installed_applications)
        machine.status = MachineStatus.ONLINE
        machine.last_heartbeat = now
        await db.commit()

        self.logger.info(
            f"{'Registered' if created else 'Re-registered'} machine "
            f"{machine.machine_id} ({machine.machine_name}/{machine.user_name})"
        )
        self.events.emit(
            DeploymentEvent(
                type=EventType.MACHINE_REGISTERED,
                machine_id=machine.machine_id,
                detail={"created": created, "client_version": machine.client_version},
            )
        )
        return machine

    async def heartbeat(
        self,
        db: AsyncSession,
        machine_id: str,
        status: MachineStatus = MachineStatus.ONLINE,
        installed_applications: Optional[dict[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> ClientMachineDB:
        """Record a liveness signal.

        Raises:
            errors.NotFoundError: Machine never registered (agent should re-register)
        """
        machine = await self.get_machine(db, machine_id)
        machine.last_heartbeat = now or utcnow()
        machine.status = MachineStatus.BUSY if status == MachineStatus.BUSY else MachineStatus.ONLINE
        if installed_applications is not None:
            machine.installed_applications = dict(installed_applications)
        await db.commit()
        self.logger.debug(f"Heartbeat from {machine_id}: {machine.status.value}")
        return machine

    async def get_machine(self, db: AsyncSession, machine_id: str) -> ClientMachineDB:
        machine = await self._find(db, machine_id)
        if machine is None:
            raise errors.NotFoundError(f"MACHINE_NOT_FOUND: {machine_id}")
        return machine

    async def list_machines(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> list[ClientMachineDB]:
        """All machines, with stale ones flipped to Offline first."""
        await self.mark_stale_offline(db, now)
        result = await db.execute(
            select(ClientMachineDB)
            .order_by(ClientMachineDB.machine_name)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def list_known_machines(self, db: AsyncSession) -> list[str]:
        """Machine ids of every registered machine, in registration order."""
        result = await db.execute(
            select(ClientMachineDB.machine_id).order_by(ClientMachineDB.id)
        )
        return list(result.scalars())

    async def resolve_machines(
        self, db: AsyncSession, identifiers: list[str]
    ) -> tuple[list[str], list[str]]:
        """Resolve machine ids, machine names or user names to machine ids.

        A user name matches every machine that user is registered on.

        Returns:
            (resolved machine ids without duplicates, unresolved identifiers)
        """
        resolved: list[str] = []
        unresolved: list[str] = []
        for identifier in identifiers:
            lowered = identifier.lower()
            result = await db.execute(
                select(ClientMachineDB.machine_id)
                .where(
                    or_(
                        ClientMachineDB.machine_id == identifier,
                        func.lower(ClientMachineDB.machine_name) == lowered,
                        func.lower(ClientMachineDB.user_name) == lowered,
                    )
                )
                .order_by(ClientMachineDB.id)
            )
            matches = list(result.scalars())
            if not matches:
                unresolved.append(identifier)
                continue
            for machine_id in matches:
                if machine_id not in resolved:
                    resolved.append(machine_id)

        if unresolved:
            self.logger.warning(f"Unresolved deployment targets skipped: {unresolved}")
        return resolved, unresolved

    async def is_online(
        self, db: AsyncSession, machine_id: str, now: Optional[datetime] = None
    ) -> bool:
        machine = await self._find(db, machine_id)
        if machine is None or machine.status == MachineStatus.OFFLINE:
            return False
        return not self._is_stale(machine.last_heartbeat, now or utcnow())

    async def mark_stale_offline(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Flip machines silent for longer than the threshold to Offline.

        Returns:
            Number of machines marked offline
        """
        cutoff = (now or utcnow()) - self.offline_threshold
        result = await db.execute(
            update(ClientMachineDB)
            .where(
                ClientMachineDB.status != MachineStatus.OFFLINE,
                or_(ClientMachineDB.last_heartbeat.is_(None), ClientMachineDB.last_heartbeat < cutoff),
            )
            .values(status=MachineStatus.OFFLINE)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            self.logger.info(f"Marked {result.rowcount} machine(s) offline")
        return result.rowcount

    def _is_stale(self, last_heartbeat: Optional[datetime], now: datetime) -> bool:
        return last_heartbeat is None or now - last_heartbeat > self.offline_threshold

    async def _find(self, db: AsyncSession, machine_id: str) -> Optional[ClientMachineDB]:
        result = await db.execute(
            select(ClientMachineDB)
            .where(ClientMachineDB.machine_id == machine_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
