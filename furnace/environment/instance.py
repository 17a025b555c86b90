"""Runtime representation for a recipe's environment."""

from __future__ import annotations

from copy import copy
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from furnace.allocator import Allocation
from furnace.errors import Conflict


class EnvironmentState(str, Enum):
    """Lifecycle states for an environment."""

    STOPPED = "stopped"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


TRANSITIONS = {
    EnvironmentState.STOPPED: {EnvironmentState.STARTING},
    EnvironmentState.STARTING: {EnvironmentState.HEALTH_CHECKING, EnvironmentState.STOPPING, EnvironmentState.FAILED},
    EnvironmentState.HEALTH_CHECKING: {EnvironmentState.RUNNING, EnvironmentState.STOPPING, EnvironmentState.FAILED},
    EnvironmentState.RUNNING: {EnvironmentState.STOPPING, EnvironmentState.FAILED},
    EnvironmentState.STOPPING: {EnvironmentState.STOPPED},
    EnvironmentState.FAILED: {EnvironmentState.STARTING, EnvironmentState.STOPPING},
}

LIVE_STATES = {EnvironmentState.STARTING, EnvironmentState.HEALTH_CHECKING, EnvironmentState.RUNNING}


class EnvironmentInstance:
    """Represents the single live environment of one recipe."""

    def __init__(self, recipe_name: str) -> None:
        self.recipe_name = recipe_name
        self.state = EnvironmentState.STOPPED
        self.allocation: Optional[Allocation] = None
        self.runtime_process_id: Optional[int] = None
        self.serving_process_id: Optional[int] = None
        self.started_at: Optional[datetime] = None
        self.last_health_check_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.restarts = 0

    # ---------------------------------------------------------------------
    # Lifecycle helpers
    # ---------------------------------------------------------------------
    def transition(self, new_state: EnvironmentState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise Conflict(
                f"Cannot move {self.recipe_name} from {self.state.value} to {new_state.value}",
                recipe_name=self.recipe_name,
                stage="transition",
            )
        self.state = new_state

    def mark_starting(self) -> None:
        self.transition(EnvironmentState.STARTING)
        self.started_at = datetime.now()
        self.last_error = None
        self.restarts = 0

    def mark_health_checking(self) -> None:
        self.transition(EnvironmentState.HEALTH_CHECKING)

    def mark_running(self) -> None:
        self.transition(EnvironmentState.RUNNING)
        self.last_health_check_at = datetime.now()

    def mark_stopping(self) -> None:
        self.transition(EnvironmentState.STOPPING)

    def mark_stopped(self) -> None:
        self.transition(EnvironmentState.STOPPED)
        self._clear_resources()

    def mark_failed(self, error: str) -> None:
        self.transition(EnvironmentState.FAILED)
        self.last_error = error
        self._clear_resources()

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def snapshot(self) -> "EnvironmentInstance":
        return copy(self)

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipe_name": self.recipe_name,
            "state": self.state.value,
            "port": self.allocation.port if self.allocation else None,
            "hostname": self.allocation.hostname_binding if self.allocation else None,
            "runtime_process_id": self.runtime_process_id,
            "serving_process_id": self.serving_process_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_health_check_at": self.last_health_check_at.isoformat() if self.last_health_check_at else None,
            "last_error": self.last_error,
            "restarts": self.restarts,
            "uptime_seconds": self.uptime_seconds(),
        }

    def uptime_seconds(self) -> float:
        if self.state != EnvironmentState.RUNNING or not self.started_at:
            return 0.0
        return (datetime.now() - self.started_at).total_seconds()

    # ------------------------------------------------------------------
    def _clear_resources(self) -> None:
        self.allocation = None
        self.runtime_process_id = None
        self.serving_process_id = None


__all__ = ["EnvironmentInstance", "EnvironmentState", "LIVE_STATES"]
