"""Unit tests for AgentService: registration, heartbeat and polling loops."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer import errors
from deployer.agent.service import AgentService
from deployer.api.models import PendingTask
from deployer.models.state import StateFile
from deployer.models.status import MachineStatus, StageEnum, TaskStatus


def _pending(task_id: int) -> PendingTask:
    return PendingTask(
        task_id=task_id,
        app_code="billing",
        version="2.0.0",
        priority=0,
        deployment_id=1,
        package_version_id=2,
        file_hash="a" * 64,
        file_size_bytes=1,
    )


@pytest.mark.unit
class TestAgentService:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.register = AsyncMock(return_value={})
        client.heartbeat = AsyncMock(return_value={})
        client.poll_tasks = AsyncMock(return_value=[])
        client.update_task_status = AsyncMock(return_value={})
        client.close = AsyncMock()
        return client

    @pytest.fixture
    def service(self, agent_settings, client, make_registration):
        service = AgentService(
            agent_settings,
            client=client,
            registration=make_registration("M1", "WS-0001"),
            process_manager=MagicMock(),
        )
        service.executor.execute = AsyncMock(return_value=TaskStatus.COMPLETED)
        return service

    @pytest.mark.asyncio
    async def test_register_retries_until_success(self, service, client):
        client.register.side_effect = [errors.TransientNetworkError("down"), {}]

        assert await service.register() is True
        assert client.register.await_count == 2

    @pytest.mark.asyncio
    async def test_register_stops_when_requested(self, service, client):
        client.register.side_effect = errors.TransientNetworkError("down")
        service.stop()

        assert await service.register() is False
        client.register.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register_reports_installed_applications(self, service, client):
        marker = service.installer.live_dir("billing") / ".deployer_version.json"
        marker.parent.mkdir(parents=True)
        marker.write_text('{"version": "1.0.0"}')

        await service.register()

        sent = client.register.await_args.args[0]
        assert sent.installed_applications == {"billing": "1.0.0"}

    @pytest.mark.asyncio
    async def test_heartbeat_online_when_idle(self, service, client):
        await service.send_heartbeat()

        client.heartbeat.assert_awaited_once_with("M1", MachineStatus.ONLINE, {})

    @pytest.mark.asyncio
    async def test_heartbeat_busy_during_task(self, service, client):
        service.state_manager.update_status(StageEnum.DOWNLOADING, 30, "Downloading")

        await service.send_heartbeat()

        assert client.heartbeat.await_args.args[1] == MachineStatus.BUSY

    @pytest.mark.asyncio
    async def test_heartbeat_unknown_machine_reregisters(self, service, client):
        client.heartbeat.side_effect = errors.NotFoundError("MACHINE_NOT_FOUND: M1")

        await service.send_heartbeat()

        client.register.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_heartbeat_failure_is_skipped(self, service, client):
        client.heartbeat.side_effect = errors.TransientNetworkError("timeout")

        await service.send_heartbeat()

        client.register.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poll_executes_in_server_order(self, service, client):
        client.poll_tasks.return_value = [_pending(5), _pending(3)]

        executed = await service.poll_once()

        assert executed == 2
        assert [c.args[0].task_id for c in service.executor.execute.await_args_list] == [5, 3]

    @pytest.mark.asyncio
    async def test_poll_skips_unclaimed(self, service, client):
        client.poll_tasks.return_value = [_pending(5), _pending(6)]
        service.executor.execute.side_effect = [None, TaskStatus.FAILED]

        assert await service.poll_once() == 1

    @pytest.mark.asyncio
    async def test_poll_unknown_machine_reregisters(self, service, client):
        client.poll_tasks.side_effect = errors.NotFoundError("MACHINE_NOT_FOUND: M1")

        assert await service.poll_once() == 0
        client.register.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_transient_error_skips_cycle(self, service, client):
        client.poll_tasks.side_effect = errors.TransientNetworkError("timeout")

        assert await service.poll_once() == 0
        service.executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poll_resends_undelivered_outcome_first(self, service, client):
        # Arrange
        service.state_manager.save_state(
            StateFile(
                task_id=4, app_code="billing", version="2.0.0",
                stage=StageEnum.SUCCESS, outcome=TaskStatus.COMPLETED,
            )
        )
        client.poll_tasks.return_value = [_pending(5)]

        # Act
        executed = await service.poll_once()

        # Assert
        assert executed == 1
        report = client.update_task_status.await_args.args[0]
        assert (report.task_id, report.status, report.is_success) == (4, TaskStatus.COMPLETED, True)
        assert not service.state_manager.state_file_path.exists()

    @pytest.mark.asyncio
    async def test_poll_stops_after_undelivered_outcome(self, service, client):
        client.poll_tasks.return_value = [_pending(5), _pending(6)]

        async def execute(task):
            service.state_manager.save_state(
                StateFile(
                    task_id=task.task_id, app_code="billing", version="2.0.0",
                    stage=StageEnum.FAILED, outcome=TaskStatus.FAILED,
                )
            )
            return TaskStatus.FAILED

        service.executor.execute.side_effect = execute

        assert await service.poll_once() == 1
        assert [c.args[0].task_id for c in service.executor.execute.await_args_list] == [5]

    @pytest.mark.asyncio
    async def test_poll_waits_while_outcome_undelivered(self, service, client):
        service.executor.report_retry_delay = 0
        service.state_manager.save_state(
            StateFile(
                task_id=4, app_code="billing", version="2.0.0",
                stage=StageEnum.FAILED, outcome=TaskStatus.FAILED, error="InstallExecutionError: x",
            )
        )
        client.update_task_status.side_effect = errors.TransientNetworkError("timeout")

        assert await service.poll_once() == 0
        client.poll_tasks.assert_not_awaited()
        assert service.state_manager.load_state().outcome == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_run_recovers_registers_and_stops(self, service, client):
        # Arrange: leftover state from an interrupted install
        service.state_manager.save_state(
            StateFile(task_id=9, app_code="billing", version="2.0.0", stage=StageEnum.STAGING)
        )

        # Act
        runner = asyncio.create_task(service.run())
        for _ in range(100):
            if client.heartbeat.await_count and client.poll_tasks.await_count:
                break
            await asyncio.sleep(0.01)
        service.stop()
        await asyncio.wait_for(runner, timeout=5)

        # Assert: the interrupted task is reported failed before polling
        assert not service.state_manager.state_file_path.exists()
        report = client.update_task_status.await_args_list[0].args[0]
        assert (report.task_id, report.status, report.retryable) == (9, TaskStatus.FAILED, True)
        assert report.error_message.startswith("AGENT_INTERRUPTED")
        client.register.assert_awaited_once()
        assert client.heartbeat.await_count >= 1
        assert client.poll_tasks.await_count >= 1
        client.close.assert_awaited_once()
