"""Error taxonomy shared by every furnace component."""

from __future__ import annotations

from typing import Any, Dict, Optional


class FurnaceError(Exception):
    """Base class for recoverable orchestrator errors.

    Every error names the recipe it concerns and the stage that failed so the
    caller can show an actionable message.
    """

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        recipe_name: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recipe_name = recipe_name
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "recipe_name": self.recipe_name,
            "stage": self.stage,
        }


class NotFound(FurnaceError):
    kind = "not_found"


class Conflict(FurnaceError):
    kind = "conflict"


class InvalidRecipe(FurnaceError, ValueError):
    kind = "invalid_recipe"


class ResourceExhausted(FurnaceError):
    kind = "resource_exhausted"


class RenderError(FurnaceError):
    kind = "render_error"


class LaunchError(FurnaceError):
    kind = "launch_error"


class HealthCheckTimeout(FurnaceError):
    kind = "health_check_timeout"


class Crashed(FurnaceError):
    kind = "crashed"


class Cancelled(FurnaceError):
    kind = "cancelled"


class StoreUnavailable(FurnaceError):
    kind = "store_unavailable"


class StartFailed(FurnaceError):
    """A start was rolled back; ``cause`` holds the error of the failing stage."""

    kind = "start_failed"

    def __init__(self, message: str, *, cause: Optional[FurnaceError] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["cause"] = self.cause.to_dict() if self.cause else None
        return data


__all__ = [
    "FurnaceError",
    "NotFound",
    "Conflict",
    "InvalidRecipe",
    "ResourceExhausted",
    "RenderError",
    "LaunchError",
    "HealthCheckTimeout",
    "Crashed",
    "Cancelled",
    "StoreUnavailable",
    "StartFailed",
]
