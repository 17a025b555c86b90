"""Environment module public API."""

from .instance import EnvironmentInstance, EnvironmentState, LIVE_STATES
from .orchestrator import EnvironmentOrchestrator

__all__ = [
    "EnvironmentInstance",
    "EnvironmentState",
    "EnvironmentOrchestrator",
    "LIVE_STATES",
]
