"""Read-only status snapshots for recipes and their environments."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from furnace.environment import EnvironmentInstance, EnvironmentOrchestrator, EnvironmentState
from furnace.recipe import Recipe, RecipeStore
from furnace.supervisor import ProcessSupervisor


@dataclass
class StatusSnapshot:
    name: str
    site: str
    state: str
    uptime_seconds: float = 0.0
    port: Optional[int] = None
    hostname: Optional[str] = None
    last_error: Optional[str] = None
    health: Optional[str] = None
    pids: Dict[str, Optional[int]] = field(default_factory=dict)
    started_at: Optional[str] = None
    last_health_check_at: Optional[str] = None
    restarts: int = 0

    @property
    def url(self) -> Optional[str]:
        if self.port is None or not self.hostname:
            return None
        return f"http://{self.hostname}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "site": self.site,
            "state": self.state,
            "uptime_seconds": self.uptime_seconds,
            "port": self.port,
            "hostname": self.hostname,
            "url": self.url,
            "last_error": self.last_error,
            "health": self.health,
            "pids": dict(self.pids),
            "started_at": self.started_at,
            "last_health_check_at": self.last_health_check_at,
            "restarts": self.restarts,
        }


class StatusReporter:
    """Builds status snapshots from cached orchestrator and supervisor state.

    Nothing here probes a process or opens a socket; health comes from the
    last result the supervisor cached on its background cadence.
    """

    def __init__(
        self,
        orchestrator: EnvironmentOrchestrator,
        store: Optional[RecipeStore] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store or orchestrator.store
        self.supervisor = supervisor or orchestrator.supervisor

    def status(self, recipe_name: str) -> StatusSnapshot:
        recipe = self.store.get(recipe_name)
        return self._snapshot(recipe, self.orchestrator.get_instance(recipe_name))

    def status_all(self) -> List[StatusSnapshot]:
        instances = self.orchestrator.instances()
        return [self._snapshot(recipe, instances.get(recipe.name)) for recipe in self.store.list()]

    # ------------------------------------------------------------------
    def _snapshot(self, recipe: Recipe, instance: Optional[EnvironmentInstance]) -> StatusSnapshot:
        if instance is None:
            return StatusSnapshot(name=recipe.name, site=recipe.site_hostname, state=EnvironmentState.STOPPED.value)

        probe = self.supervisor.cached_probe(recipe.name)
        allocation = instance.allocation
        return StatusSnapshot(
            name=recipe.name,
            site=recipe.site_hostname,
            state=instance.state.value,
            uptime_seconds=instance.uptime_seconds(),
            port=allocation.port if allocation else None,
            hostname=allocation.hostname_binding if allocation else None,
            last_error=instance.last_error,
            health=probe.health.value if probe else None,
            pids={"runtime": instance.runtime_process_id, "serving": instance.serving_process_id},
            started_at=instance.started_at.isoformat() if instance.started_at else None,
            last_health_check_at=(
                instance.last_health_check_at.isoformat() if instance.last_health_check_at else None
            ),
            restarts=instance.restarts,
        )


__all__ = ["StatusReporter", "StatusSnapshot"]
