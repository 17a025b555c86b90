"""
Boundary between furnace and an external caller such as a UI process.

Each operation returns a :class:`Response`; errors raised by the
components below are converted into its ``error`` payload, so a failing
request never takes the service down. :func:`serve_stdio` speaks the same
operations as JSON lines over a pair of streams, answering requests
concurrently and tagging each reply with the request's ``id``.
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from furnace.environment import EnvironmentOrchestrator
from furnace.errors import FurnaceError
from furnace.recipe import Recipe
from furnace.status import StatusReporter


class BadRequest(FurnaceError):
    kind = "bad_request"


@dataclass
class RecipeSummary:
    name: str
    site: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "site": self.site}


@dataclass
class ErrorInfo:
    kind: str
    message: str
    recipe_name: Optional[str] = None
    stage: Optional[str] = None
    cause: Optional[Dict[str, Any]] = None

    @classmethod
    def from_error(cls, error: FurnaceError) -> "ErrorInfo":
        data = error.to_dict()
        return cls(
            kind=data["kind"],
            message=data["message"],
            recipe_name=data["recipe_name"],
            stage=data["stage"],
            cause=data.get("cause"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "message": self.message,
            "recipe_name": self.recipe_name,
            "stage": self.stage,
        }
        if self.cause is not None:
            data["cause"] = self.cause
        return data


@dataclass
class Response:
    ok: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def success(cls, data: Any = None) -> "Response":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: FurnaceError) -> "Response":
        return cls(ok=False, error=ErrorInfo.from_error(error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class Command:
    handler: Callable[..., Response]
    required: List[str] = field(default_factory=list)
    optional: List[str] = field(default_factory=list)


class FurnaceService:
    """The fixed set of operations offered to external callers."""

    def __init__(self, orchestrator: EnvironmentOrchestrator, reporter: Optional[StatusReporter] = None) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.reporter = reporter or StatusReporter(orchestrator)
        self.commands: Dict[str, Command] = {
            "recipe_list": Command(self.recipe_list),
            "furnace_status": Command(self.furnace_status, optional=["name"]),
            "recipe_start": Command(self.recipe_start, required=["name"]),
            "recipe_stop": Command(self.recipe_stop, required=["name"]),
            "recipe_create": Command(self.recipe_create, required=["recipe"]),
            "recipe_delete": Command(self.recipe_delete, required=["name"]),
        }

    # ------------------------------------------------------------------
    def recipe_list(self) -> Response:
        return self._call(lambda: [
            RecipeSummary(name=recipe.name, site=recipe.site_hostname).to_dict() for recipe in self.store.list()
        ])

    def furnace_status(self, name: Optional[str] = None) -> Response:
        if name:
            return self._call(lambda: self.reporter.status(name).to_dict())
        return self._call(lambda: [snapshot.to_dict() for snapshot in self.reporter.status_all()])

    def recipe_start(self, name: str) -> Response:
        return self._call(lambda: self.orchestrator.start(name).to_dict())

    def recipe_stop(self, name: str) -> Response:
        return self._call(lambda: {"name": name, "stopped": self.orchestrator.stop(name)})

    def recipe_create(self, recipe: Union[Recipe, Dict[str, Any]]) -> Response:
        def create() -> Dict[str, Any]:
            candidate = recipe if isinstance(recipe, Recipe) else Recipe.from_dict(recipe)
            return self.orchestrator.create_recipe(candidate).to_dict()

        return self._call(create)

    def recipe_delete(self, name: str) -> Response:
        return self._call(lambda: self.orchestrator.delete_recipe(name).to_dict())

    # ------------------------------------------------------------------
    def dispatch(self, command: str, args: Optional[Dict[str, Any]] = None) -> Response:
        """Run ``command`` with keyword ``args`` after checking their names."""
        args = dict(args or {})
        entry = self.commands.get(command)
        if entry is None:
            return Response.failure(BadRequest(f"Unknown command: {command!r}", stage="dispatch"))

        missing = [key for key in entry.required if key not in args]
        unknown = [key for key in args if key not in entry.required and key not in entry.optional]
        if missing or unknown:
            problems = []
            if missing:
                problems.append(f"missing {', '.join(missing)}")
            if unknown:
                problems.append(f"unexpected {', '.join(unknown)}")
            return Response.failure(
                BadRequest(f"Invalid arguments for {command}: {'; '.join(problems)}", stage="dispatch")
            )
        return entry.handler(**args)

    @staticmethod
    def _call(operation: Callable[[], Any]) -> Response:
        try:
            return Response.success(operation())
        except FurnaceError as exc:
            logger.debug(f"Request failed with {exc.kind}: {exc.message}")
            return Response.failure(exc)


def serve_stdio(service: FurnaceService, stdin: IO[str], stdout: IO[str], *, max_workers: int = 8) -> int:
    """
    Answer one JSON request per input line until EOF; returns the request count.

    Requests run on a worker pool, so a slow ``recipe_start`` does not hold
    up status calls or work on other recipes. Replies may arrive out of
    order; each one echoes the request's ``id`` so the caller can match it.
    """
    write_lock = threading.Lock()

    def answer(line: str) -> None:
        request_id, response = _handle_line(service, line)
        payload = json.dumps({"id": request_id, **response.to_dict()})
        with write_lock:
            try:
                stdout.write(payload + "\n")
                stdout.flush()
            except (OSError, ValueError) as exc:
                logger.error(f"Could not write reply to request {request_id!r}: {exc}")

    handled = 0
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="furnace-request") as executor:
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            handled += 1
            executor.submit(answer, line)
    return handled


def _handle_line(service: FurnaceService, line: str) -> Tuple[Any, Response]:
    try:
        request = json.loads(line)
    except ValueError as exc:
        return None, Response.failure(BadRequest(f"Request is not valid JSON: {exc}", stage="decode"))

    request_id = request.get("id") if isinstance(request, dict) else None
    if not isinstance(request, dict) or not isinstance(request.get("command"), str):
        return request_id, Response.failure(
            BadRequest("Request must be an object with a 'command' string", stage="decode")
        )
    args = request.get("args") or {}
    if not isinstance(args, dict):
        return request_id, Response.failure(BadRequest("'args' must be an object", stage="decode"))

    try:
        return request_id, service.dispatch(request["command"], args)
    except Exception as exc:
        logger.exception(f"Unexpected error while handling {request['command']}")
        return request_id, Response(
            ok=False, error=ErrorInfo(kind="internal", message=str(exc), stage=request["command"])
        )


__all__ = [
    "BadRequest",
    "ErrorInfo",
    "FurnaceService",
    "RecipeSummary",
    "Response",
    "serve_stdio",
]
