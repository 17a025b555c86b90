"""
Process supervision for running environments.

Each environment is backed by two OS processes: the PHP-FPM runtime worker
and the serving engine in front of it. The supervisor launches them with
their output captured to per-process log files, probes them on a background
cadence, restarts a crashed process once, and gives up when the same
environment crashes again inside the cooldown window.
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from loguru import logger

from furnace.errors import Crashed, LaunchError
from furnace.recipe import Recipe
from furnace.renderer import RenderedConfig
from furnace.settings import EngineProfile, FurnaceSettings

IS_WINDOWS = os.name == "nt"


class ProcessState(str, Enum):
    """Lifecycle states for one managed process."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


class Health(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EXITED = "exited"


@dataclass
class ProbeResult:
    health: Health
    exit_code: Optional[int] = None
    role: Optional[str] = None
    detail: Optional[str] = None
    checked_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "health": self.health.value,
            "exit_code": self.exit_code,
            "role": self.role,
            "detail": self.detail,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class ManagedProcess:
    role: str
    command: List[str]
    log_path: Path
    process: Any = None
    state: ProcessState = ProcessState.STARTING
    started_at: Optional[datetime] = None
    exit_code: Optional[int] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def poll(self) -> Optional[int]:
        if self.process is None:
            return self.exit_code
        return self.process.poll()


@dataclass
class ProcessHandles:
    """The processes backing one recipe's environment."""

    recipe_name: str
    runtime: ManagedProcess
    serving: ManagedProcess
    address: str
    port: int
    hostname: str
    supervised: bool = False
    failed: bool = False
    restarts: int = 0
    last_crash_at: Optional[float] = None

    @property
    def processes(self) -> Tuple[ManagedProcess, ManagedProcess]:
        return self.runtime, self.serving

    @property
    def runtime_process_id(self) -> Optional[int]:
        return self.runtime.pid

    @property
    def serving_process_id(self) -> Optional[int]:
        return self.serving.pid


def read_log_tail(log_path: Path, max_lines: int = 20) -> str:
    try:
        with open(log_path, "r", encoding="utf-8", errors="replace") as handle:
            lines = handle.readlines()
        tail = lines[-max_lines:]
        return "".join(tail).strip() or "(no log output)"
    except OSError as exc:
        return f"(failed to read log: {exc})"


def spawn_process(command: List[str], log_handle) -> subprocess.Popen:
    popen_kwargs: Dict[str, Any] = {
        "stdin": subprocess.DEVNULL,
        "stdout": log_handle,
        "stderr": subprocess.STDOUT,
    }
    if IS_WINDOWS:
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen(command, **popen_kwargs)


def http_probe(handles: ProcessHandles, timeout: float = 1.0) -> ProbeResult:
    """Healthy when the serving engine answers any HTTP response for the site."""
    url = f"http://{handles.address}:{handles.port}/"
    try:
        response = requests.get(
            url,
            headers={"Host": handles.hostname},
            timeout=timeout,
            allow_redirects=False,
        )
    except requests.RequestException as exc:
        return ProbeResult(health=Health.UNHEALTHY, role="serving", detail=str(exc))
    return ProbeResult(health=Health.HEALTHY, role="serving", detail=f"HTTP {response.status_code}")


class ProcessSupervisor:
    """Launches, probes, restarts and stops environment processes."""

    def __init__(
        self,
        engines: Dict[str, EngineProfile],
        runtime_command: List[str],
        logs_directory: str | Path,
        *,
        stop_grace: float = 10.0,
        probe_interval: float = 2.0,
        probe_timeout: float = 1.0,
        restart_cooldown: float = 60.0,
        spawn: Optional[Callable[[List[str], Any], Any]] = None,
        prober: Optional[Callable[[ProcessHandles], ProbeResult]] = None,
        runner: Optional[Callable[..., Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.engines = engines
        self.runtime_command = runtime_command
        self.logs_directory = Path(logs_directory)
        self.stop_grace = stop_grace
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout
        self.restart_cooldown = restart_cooldown

        self._spawn = spawn or spawn_process
        self._prober = prober or (lambda handles: http_probe(handles, timeout=self.probe_timeout))
        self._runner = runner or subprocess.run
        self._clock = clock or time.monotonic

        self._lock = threading.RLock()
        self._handles: Dict[str, ProcessHandles] = {}
        self._probes: Dict[str, ProbeResult] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.on_failure: Optional[Callable[[ProcessHandles, Crashed], None]] = None
        self.on_restart: Optional[Callable[[ProcessHandles, ProbeResult], None]] = None

    @classmethod
    def from_settings(cls, settings: FurnaceSettings, **kwargs: Any) -> "ProcessSupervisor":
        return cls(
            settings.engines,
            settings.runtime_command,
            settings.logs_dir,
            stop_grace=settings.stop_grace,
            probe_interval=settings.probe_interval,
            probe_timeout=settings.probe_timeout,
            restart_cooldown=settings.restart_cooldown,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Launch / stop
    # ------------------------------------------------------------------
    def launch(self, recipe: Recipe, rendered: RenderedConfig) -> ProcessHandles:
        profile = self.engines.get(recipe.serving_engine)
        if profile is None:
            raise LaunchError(
                f"No launch profile for serving engine {recipe.serving_engine}",
                recipe_name=recipe.name,
                stage="launch",
            )

        values = {
            "name": recipe.name,
            "project": recipe.project_path,
            "version": rendered.runtime_version,
            "prefix": rendered.run_directory,
            "config": rendered.path,
            "runtime_config": rendered.runtime_path,
            "address": rendered.address,
            "port": rendered.port,
        }
        runtime_cmd = self._format(self.runtime_command, values, recipe.name)
        serving_cmd = self._format(profile.command, values, recipe.name)
        if profile.check:
            self._check_config(recipe.name, self._format(profile.check, values, recipe.name))

        log_dir = self.logs_directory / recipe.name
        handles = ProcessHandles(
            recipe_name=recipe.name,
            runtime=ManagedProcess("runtime", runtime_cmd, log_dir / "runtime.log"),
            serving=ManagedProcess("serving", serving_cmd, log_dir / "serving.log"),
            address=rendered.address,
            port=rendered.port,
            hostname=rendered.hostname,
        )

        with self._lock:
            if recipe.name in self._handles:
                raise LaunchError(
                    f"Processes for {recipe.name} are already supervised",
                    recipe_name=recipe.name,
                    stage="launch",
                )
            self._handles[recipe.name] = handles

        try:
            self._start_process(handles.runtime, recipe.name)
            self._start_process(handles.serving, recipe.name)
        except LaunchError:
            self.stop(handles)
            raise

        logger.info(
            f"Launched {recipe.name}: runtime pid={handles.runtime_process_id}, "
            f"serving pid={handles.serving_process_id}"
        )
        return handles

    def stop(self, handles: ProcessHandles) -> None:
        """Terminate both processes, killing any that outlive the grace period."""
        with self._lock:
            if self._handles.get(handles.recipe_name) is handles:
                self._handles.pop(handles.recipe_name)
                self._probes.pop(handles.recipe_name, None)

        running = [p for p in (handles.serving, handles.runtime) if p.process is not None and p.poll() is None]
        for proc in running:
            proc.state = ProcessState.STOPPING
            logger.info(f"Stopping {proc.role} process for {handles.recipe_name} (pid {proc.pid})")
            try:
                proc.process.terminate()
            except ProcessLookupError:
                continue

        deadline = time.monotonic() + self.stop_grace
        for proc in running:
            try:
                proc.process.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning(
                    f"{proc.role} process for {handles.recipe_name} ignored SIGTERM for "
                    f"{self.stop_grace}s, killing"
                )
                try:
                    proc.process.kill()
                    proc.process.wait(timeout=self.stop_grace)
                except ProcessLookupError:
                    pass
                except subprocess.TimeoutExpired:
                    logger.error(f"{proc.role} process for {handles.recipe_name} survived SIGKILL")
                    continue

        for proc in handles.processes:
            proc.exit_code = proc.poll()
            if proc.state != ProcessState.CRASHED:
                proc.state = ProcessState.STOPPED

    def mark_running(self, handles: ProcessHandles) -> None:
        """Hand a health-confirmed environment over to crash supervision."""
        handles.supervised = True
        for proc in handles.processes:
            proc.state = ProcessState.RUNNING

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------
    def probe(self, handles: ProcessHandles) -> ProbeResult:
        for proc in handles.processes:
            code = proc.poll()
            if code is not None:
                return ProbeResult(
                    health=Health.EXITED,
                    exit_code=code,
                    role=proc.role,
                    detail=read_log_tail(proc.log_path),
                )
        return self._prober(handles)

    def cached_probe(self, recipe_name: str) -> Optional[ProbeResult]:
        with self._lock:
            return self._probes.get(recipe_name)

    def handles_for(self, recipe_name: str) -> Optional[ProcessHandles]:
        with self._lock:
            return self._handles.get(recipe_name)

    def poll_once(self) -> None:
        """Probe every supervised environment once and act on crashes."""
        with self._lock:
            items = list(self._handles.values())

        for handles in items:
            if handles.failed:
                continue
            try:
                result = self.probe(handles)
            except Exception as exc:
                logger.warning(f"Probe for {handles.recipe_name} raised: {exc}")
                continue

            with self._lock:
                if self._handles.get(handles.recipe_name) is not handles:
                    continue
                self._probes[handles.recipe_name] = result

            if result.health == Health.EXITED and handles.supervised:
                self._handle_crash(handles, result)
            else:
                logger.debug(f"Probe {handles.recipe_name}: {result.health.value} ({result.detail})")

    # ------------------------------------------------------------------
    # Background monitoring
    # ------------------------------------------------------------------
    def start_monitoring(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitor_loop, name="furnace-supervisor", daemon=True)
        self._thread.start()
        logger.debug(f"Supervisor monitoring every {self.probe_interval}s")

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.probe_interval + self.probe_timeout + 1)
            self._thread = None
        with self._lock:
            remaining = list(self._handles.values())
        for handles in remaining:
            self.stop(handles)

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self.probe_interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Supervision pass failed; retrying on the next interval")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _handle_crash(self, handles: ProcessHandles, result: ProbeResult) -> None:
        name = handles.recipe_name
        crashed = handles.runtime if result.role == "runtime" else handles.serving
        crashed.state = ProcessState.CRASHED
        crashed.exit_code = result.exit_code

        now = self._clock()
        if handles.last_crash_at is not None and now - handles.last_crash_at < self.restart_cooldown:
            self._fail(
                handles,
                Crashed(
                    f"{crashed.role} process crashed again within {self.restart_cooldown:.0f}s "
                    f"(exit code {result.exit_code}): {result.detail}",
                    recipe_name=name,
                    stage=crashed.role,
                ),
            )
            return

        handles.last_crash_at = now
        logger.warning(f"{crashed.role} process for {name} exited with code {result.exit_code}, restarting once")
        try:
            with self._lock:
                if self._handles.get(name) is not handles:
                    return
                self._start_process(crashed, name)
        except LaunchError as exc:
            self._fail(
                handles,
                Crashed(f"Restart of {crashed.role} process failed: {exc.message}", recipe_name=name, stage=crashed.role),
            )
            return

        handles.restarts += 1
        crashed.state = ProcessState.RUNNING
        if self.on_restart:
            self.on_restart(handles, result)

    def _fail(self, handles: ProcessHandles, error: Crashed) -> None:
        handles.failed = True
        logger.error(f"Environment {handles.recipe_name} failed: {error.message}")
        self.stop(handles)
        if self.on_failure:
            self.on_failure(handles, error)

    def _start_process(self, proc: ManagedProcess, recipe_name: str) -> None:
        try:
            proc.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(proc.log_path, "ab") as log_handle:
                proc.process = self._spawn(proc.command, log_handle)
        except OSError as exc:
            proc.state = ProcessState.STOPPED
            raise LaunchError(
                f"Failed to start {proc.role} process ({proc.command[0]}): {exc}",
                recipe_name=recipe_name,
                stage=proc.role,
            ) from exc

        proc.state = ProcessState.STARTING
        proc.started_at = datetime.now()
        proc.exit_code = None

    def _check_config(self, recipe_name: str, command: List[str]) -> None:
        try:
            result = self._runner(command, capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise LaunchError(
                f"Config check ({command[0]}) could not run: {exc}",
                recipe_name=recipe_name,
                stage="config_check",
            ) from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise LaunchError(
                f"Config check failed: {stderr}",
                recipe_name=recipe_name,
                stage="config_check",
            )

    @staticmethod
    def _format(args: List[str], values: Dict[str, Any], recipe_name: str) -> List[str]:
        try:
            return [str(arg).format(**values) for arg in args]
        except (KeyError, IndexError, ValueError) as exc:
            raise LaunchError(
                f"Invalid placeholder in command {args}: {exc}",
                recipe_name=recipe_name,
                stage="launch",
            ) from exc


__all__ = [
    "Health",
    "ManagedProcess",
    "ProbeResult",
    "ProcessHandles",
    "ProcessState",
    "ProcessSupervisor",
    "http_probe",
    "read_log_tail",
]
