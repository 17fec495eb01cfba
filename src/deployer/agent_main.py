"""Entry point for the client agent."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from deployer.agent.installer import Installer
from deployer.agent.process import ProcessManager
from deployer.agent.service import AgentService
from deployer.agent.state_manager import AgentStateManager
from deployer.config import AgentSettings
from deployer.utils.logging import setup_logger


async def run_agent(settings: AgentSettings) -> None:
    service = AgentService(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await service.run()


async def uninstall_application(
    settings: AgentSettings, app_code: str, process_manager: Optional[ProcessManager] = None
) -> bool:
    """Stop and remove one installed application (operator command).

    Refused while the agent's state file shows a task for the same
    application, so an interrupted install is recovered first.

    Returns:
        True if the application was removed
    """
    logger = logging.getLogger("deployer.agent")
    state_manager = AgentStateManager(Path(settings.state_file))
    in_flight = state_manager.load_state()
    if in_flight is not None and in_flight.app_code == app_code:
        logger.error(
            f"Not uninstalling {app_code}: task {in_flight.task_id} is still "
            f"{in_flight.stage.value}, start the agent to recover it first"
        )
        return False

    installer = Installer(
        Path(settings.apps_root),
        process_manager or ProcessManager(),
        state_manager,
        process_stop_timeout=settings.process_stop_timeout_seconds,
        lock_timeout=settings.install_lock_timeout_seconds,
    )
    removed = await installer.uninstall(app_code)
    if not removed:
        logger.warning(f"{app_code} is not installed")
    return removed


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for running the agent."""
    parser = argparse.ArgumentParser(description="Deployment agent")
    parser.add_argument(
        "--uninstall",
        metavar="APP_CODE",
        help="Stop and remove an installed application, then exit",
    )
    args = parser.parse_args(argv)

    settings = AgentSettings()
    logger = setup_logger("deployer", settings.log_file, level=settings.log_level)
    if args.uninstall:
        return 0 if asyncio.run(uninstall_application(settings, args.uninstall)) else 1

    logger.info(f"Deployment agent starting, server={settings.server_url}")
    asyncio.run(run_agent(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
