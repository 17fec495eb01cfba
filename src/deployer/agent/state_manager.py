"""Agent state: in-memory execution status plus the persistent in-flight file."""

import json
import logging
from pathlib import Path
from typing import Optional

from deployer.models.state import AgentStatus, StateFile
from deployer.models.status import StageEnum

IDLE_STAGES = frozenset({StageEnum.IDLE, StageEnum.SUCCESS, StageEnum.FAILED, StageEnum.CANCELLED})


class AgentStateManager:
    """State shared by the heartbeat and polling loops.

    Manages:
    - In-memory status (heartbeat reports Busy while a task runs)
    - Persistent state file (interrupted install recovery)

    Both loops run on one event loop and only the polling loop writes, so
    plain attributes need no locking.
    """

    def __init__(self, state_file_path: Path = Path("./tmp/agent_state.json")):
        self.logger = logging.getLogger("deployer.agent.state_manager")
        self.state_file_path = Path(state_file_path)
        self._status = AgentStatus(stage=StageEnum.IDLE, progress=0, message="Agent ready")
        self._persistent_state: Optional[StateFile] = None

    def get_status(self) -> AgentStatus:
        return self._status.model_copy()

    @property
    def is_busy(self) -> bool:
        return self._status.stage not in IDLE_STAGES

    def update_status(
        self,
        stage: StageEnum,
        progress: int,
        message: str,
        task_id: Optional[int] = None,
        app_code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update in-memory status.

        Args:
            stage: Current execution stage
            progress: Percentage completion (0-100)
            message: Human-readable description
            task_id: Task being executed (kept from previous update if None)
            app_code: Application being installed (kept if None)
            error: Error message if stage is failed
        """
        self._status = AgentStatus(
            stage=stage,
            progress=progress,
            message=message,
            task_id=task_id if task_id is not None else self._status.task_id,
            app_code=app_code if app_code is not None else self._status.app_code,
            error=error,
        )
        self.logger.debug(
            f"Status updated: stage={stage.value}, progress={progress}%, message={message}"
        )

    def load_state(self) -> Optional[StateFile]:
        """Load the in-flight state file.

        Returns:
            StateFile if present and valid, None otherwise (corrupt files are deleted)
        """
        if not self.state_file_path.exists():
            self.logger.debug("No state file found")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = StateFile(**data)
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load state file, discarding it: {e}")
            self.state_file_path.unlink(missing_ok=True)
            return None

        self._persistent_state = state
        self.logger.info(
            f"Loaded state: task={state.task_id}, app={state.app_code}, stage={state.stage.value}"
        )
        return state

    def save_state(self, state: StateFile) -> None:
        """Persist the in-flight state (write to temp file, then rename)."""
        self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_file_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state.model_dump(mode="json"), f, indent=2)
        tmp_path.replace(self.state_file_path)
        self._persistent_state = state
        self.logger.debug(f"Saved state: task={state.task_id}, stage={state.stage.value}")

    def delete_state(self) -> None:
        if self.state_file_path.exists():
            self.state_file_path.unlink()
            self.logger.info("Deleted state file")
        self._persistent_state = None

    def get_persistent_state(self) -> Optional[StateFile]:
        return self._persistent_state

    def reset(self) -> None:
        """Back to idle after a task finished."""
        self._status = AgentStatus(stage=StageEnum.IDLE, progress=0, message="Agent ready")
        self.logger.debug("State reset to idle")
