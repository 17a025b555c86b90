"""High-level orchestration of per-recipe environments."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, Optional

from loguru import logger

from furnace.allocator import PortAllocator
from furnace.errors import (
    Cancelled,
    Conflict,
    Crashed,
    FurnaceError,
    HealthCheckTimeout,
    NotFound,
    StartFailed,
    StoreUnavailable,
)
from furnace.recipe import Recipe, RecipeStore
from furnace.renderer import ConfigRenderer
from furnace.settings import FurnaceSettings
from furnace.supervisor import Health, ProbeResult, ProcessHandles, ProcessSupervisor
from .instance import LIVE_STATES, EnvironmentInstance, EnvironmentState


class EnvironmentOrchestrator:
    """Turns recipes into running environments and tears them down again.

    Operations on one recipe are serialised by a per-recipe lock; different
    recipes never wait on each other. ``_state_lock`` only guards the
    instance table and is never held across process or network I/O.
    """

    def __init__(
        self,
        store: RecipeStore,
        allocator: PortAllocator,
        renderer: ConfigRenderer,
        supervisor: ProcessSupervisor,
        *,
        health_timeout: float = 30.0,
        health_interval: float = 0.5,
        lock_timeout: float = 60.0,
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.renderer = renderer
        self.supervisor = supervisor
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self.lock_timeout = lock_timeout

        self._state_lock = threading.Lock()
        self._instances: Dict[str, EnvironmentInstance] = {}
        self._handles: Dict[str, ProcessHandles] = {}
        self._recipe_locks: Dict[str, threading.Lock] = {}
        self._cancel_events: Dict[str, threading.Event] = {}

        self.store.in_use = self.is_live
        self.supervisor.on_failure = self._on_process_failure
        self.supervisor.on_restart = self._on_process_restart

    # ------------------------------------------------------------------
    @classmethod
    def from_settings(
        cls,
        settings: FurnaceSettings,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
    ) -> "EnvironmentOrchestrator":
        store = RecipeStore(settings.recipes_dir)
        try:
            store.load()
        except StoreUnavailable as exc:
            logger.error(f"Starting with an unavailable recipe store: {exc.message}")

        return cls(
            store,
            PortAllocator(
                settings.port_range,
                address=settings.bind_address,
                bindings_directory=str(settings.hosts_dir),
                check_available=settings.check_port_available,
            ),
            ConfigRenderer(
                settings.sites_dir,
                settings.run_dir,
                runtime_versions=settings.runtime_versions,
                apache_modules_dir=settings.apache_modules_dir,
            ),
            supervisor or ProcessSupervisor.from_settings(settings),
            health_timeout=settings.health_timeout,
            health_interval=settings.health_interval,
            lock_timeout=settings.lock_timeout,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_live(self, recipe_name: str) -> bool:
        with self._state_lock:
            instance = self._instances.get(recipe_name)
            return bool(instance and instance.is_live)

    def get_instance(self, recipe_name: str) -> Optional[EnvironmentInstance]:
        with self._state_lock:
            instance = self._instances.get(recipe_name)
            return instance.snapshot() if instance else None

    def instances(self) -> Dict[str, EnvironmentInstance]:
        with self._state_lock:
            return {name: instance.snapshot() for name, instance in self._instances.items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, recipe_name: str) -> EnvironmentInstance:
        """Allocate, render, launch and health-check ``recipe_name``.

        Any failure after allocation rolls everything back (processes,
        rendered config, port and hostname) and raises :class:`StartFailed`
        carrying the error of the failing stage.
        """
        with self._exclusive(recipe_name, "start"):
            recipe = self.store.get(recipe_name)
            if not self.store.available:
                raise StoreUnavailable(
                    f"Recipe store is unavailable: {self.store.unavailable_reason}",
                    recipe_name=recipe_name,
                    stage="start",
                )

            with self._state_lock:
                instance = self._instances.get(recipe_name)
                if instance and instance.is_live:
                    raise Conflict(
                        f"Environment {recipe_name} is already {instance.state.value}",
                        recipe_name=recipe_name,
                        stage="start",
                    )
                if instance is None:
                    instance = EnvironmentInstance(recipe_name)
                    self._instances[recipe_name] = instance
                instance.mark_starting()
                cancel = threading.Event()
                self._cancel_events[recipe_name] = cancel

            logger.info(f"Starting environment {recipe_name} ({recipe.serving_engine}, PHP {recipe.runtime_version})")
            self._annotate(recipe_name, EnvironmentState.STARTING)
            try:
                handles = self._bring_up(recipe, instance, cancel)
            except FurnaceError as exc:
                self._abort_start(recipe_name, instance, exc.message)
                raise StartFailed(
                    f"Failed to start {recipe_name} at stage {exc.stage}: {exc.message}",
                    cause=exc,
                    recipe_name=recipe_name,
                    stage=exc.stage,
                ) from exc
            except BaseException as exc:
                self._abort_start(recipe_name, instance, repr(exc))
                raise
            finally:
                with self._state_lock:
                    self._cancel_events.pop(recipe_name, None)

            with self._state_lock:
                instance.mark_running()
            self.supervisor.mark_running(handles)
            self._annotate(recipe_name, EnvironmentState.RUNNING)
            allocation = instance.allocation
            logger.info(f"Environment {recipe_name} is running at http://{allocation.hostname_binding}:{allocation.port}")
            return self.get_instance(recipe_name)

    def stop(self, recipe_name: str) -> bool:
        """Stop the environment; returns False when there was nothing to stop."""
        with self._exclusive(recipe_name, "stop"):
            with self._state_lock:
                instance = self._instances.get(recipe_name)
            if instance is None:
                self.store.get(recipe_name)
                logger.debug(f"Environment {recipe_name} is already stopped")
                return False

            with self._state_lock:
                instance.mark_stopping()
            logger.info(f"Stopping environment {recipe_name}")

            try:
                self._teardown(recipe_name)
            finally:
                with self._state_lock:
                    instance.mark_stopped()
                    self._instances.pop(recipe_name, None)
                self._annotate(recipe_name, EnvironmentState.STOPPED)
            logger.info(f"Environment {recipe_name} stopped")
            return True

    def restart(self, recipe_name: str) -> EnvironmentInstance:
        self.stop(recipe_name)
        return self.start(recipe_name)

    def cancel(self, recipe_name: str) -> bool:
        """Abort an in-flight start; a no-op when no start is running."""
        with self._state_lock:
            event = self._cancel_events.get(recipe_name)
        if event is None:
            return False
        if not event.is_set():
            logger.info(f"Cancelling start of {recipe_name}")
            event.set()
        return True

    def shutdown(self) -> None:
        for name in sorted(self.instances()):
            try:
                self.stop(name)
            except FurnaceError as exc:
                logger.warning(f"Failed to stop {name} during shutdown: {exc.message}")
        self.supervisor.shutdown()

    # ------------------------------------------------------------------
    # Recipes
    # ------------------------------------------------------------------
    def create_recipe(self, recipe: Recipe) -> Recipe:
        return self.store.put(recipe)

    def delete_recipe(self, recipe_name: str) -> Recipe:
        with self._exclusive(recipe_name, "delete"):
            recipe = self.store.delete(recipe_name)
            with self._state_lock:
                self._instances.pop(recipe_name, None)
            return recipe

    def reset_stale_states(self) -> None:
        """Forget states persisted by a previous orchestrator process.

        Processes are never reattached across restarts, so every recipe
        starts out stopped.
        """
        if not self.store.available:
            return
        live = {state.value for state in LIVE_STATES}
        for recipe in self.store.list():
            if recipe.last_known_state in live:
                logger.info(
                    f"{recipe.name} was {recipe.last_known_state} when furnace last exited; marking it stopped"
                )
                self._annotate(recipe.name, EnvironmentState.STOPPED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _bring_up(self, recipe: Recipe, instance: EnvironmentInstance, cancel: threading.Event) -> ProcessHandles:
        allocation = self.allocator.allocate(recipe)
        with self._state_lock:
            instance.allocation = allocation
        self._check_cancelled(recipe.name, cancel, "allocate")

        rendered = self.renderer.render(recipe, allocation)
        self._check_cancelled(recipe.name, cancel, "render")

        handles = self.supervisor.launch(recipe, rendered)
        with self._state_lock:
            self._handles[recipe.name] = handles
            instance.runtime_process_id = handles.runtime_process_id
            instance.serving_process_id = handles.serving_process_id
            instance.mark_health_checking()

        self._await_health(recipe.name, instance, handles, cancel)
        return handles

    def _await_health(
        self,
        recipe_name: str,
        instance: EnvironmentInstance,
        handles: ProcessHandles,
        cancel: threading.Event,
    ) -> None:
        deadline = time.monotonic() + self.health_timeout
        while True:
            self._check_cancelled(recipe_name, cancel, "health_check")

            result = self.supervisor.probe(handles)
            with self._state_lock:
                instance.last_health_check_at = datetime.now()

            if result.health == Health.HEALTHY:
                return
            if result.health == Health.EXITED:
                raise Crashed(
                    f"{result.role} process exited with code {result.exit_code} before becoming healthy: "
                    f"{result.detail}",
                    recipe_name=recipe_name,
                    stage="health_check",
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthCheckTimeout(
                    f"No healthy response within {self.health_timeout:.0f}s: {result.detail}",
                    recipe_name=recipe_name,
                    stage="health_check",
                )
            cancel.wait(min(self.health_interval, remaining))

    @staticmethod
    def _check_cancelled(recipe_name: str, cancel: threading.Event, stage: str) -> None:
        if cancel.is_set():
            raise Cancelled(f"Start of {recipe_name} was cancelled", recipe_name=recipe_name, stage=stage)

    def _abort_start(self, recipe_name: str, instance: EnvironmentInstance, reason: str) -> None:
        logger.error(f"Start of {recipe_name} failed, rolling back: {reason}")
        try:
            self._teardown(recipe_name)
        finally:
            with self._state_lock:
                instance.mark_failed(reason)
            self._annotate(recipe_name, EnvironmentState.FAILED)

    def _teardown(self, recipe_name: str) -> None:
        """Stop processes, delete rendered config and release resources."""
        with self._state_lock:
            handles = self._handles.pop(recipe_name, None)
        try:
            if handles is not None:
                self.supervisor.stop(handles)
        finally:
            try:
                self.renderer.remove(recipe_name)
            except OSError as exc:
                logger.warning(f"Failed to remove rendered config for {recipe_name}: {exc}")
            self.allocator.release(recipe_name)

    def _on_process_failure(self, handles: ProcessHandles, error: Crashed) -> None:
        name = handles.recipe_name
        try:
            with self._exclusive(name, "supervise"):
                with self._state_lock:
                    instance = self._instances.get(name)
                    if self._handles.get(name) is not handles or instance is None:
                        return
                    if instance.state != EnvironmentState.RUNNING:
                        return
                try:
                    self._teardown(name)
                finally:
                    with self._state_lock:
                        instance.mark_failed(error.message)
                    self._annotate(name, EnvironmentState.FAILED)
        except Conflict as exc:
            logger.error(f"Could not record failure of {name}: {exc.message}")

    def _on_process_restart(self, handles: ProcessHandles, result: ProbeResult) -> None:
        with self._state_lock:
            instance = self._instances.get(handles.recipe_name)
            if instance is None or self._handles.get(handles.recipe_name) is not handles:
                return
            instance.restarts = handles.restarts
            instance.runtime_process_id = handles.runtime_process_id
            instance.serving_process_id = handles.serving_process_id
            instance.last_error = f"{result.role} process exited with code {result.exit_code} and was restarted"

    def _annotate(self, recipe_name: str, state: EnvironmentState) -> None:
        try:
            self.store.annotate(recipe_name, state.value)
        except (StoreUnavailable, NotFound) as exc:
            logger.warning(f"Could not record state {state.value} for {recipe_name}: {exc.message}")

    def _lock_for(self, recipe_name: str) -> threading.Lock:
        with self._state_lock:
            lock = self._recipe_locks.get(recipe_name)
            if lock is None:
                lock = self._recipe_locks[recipe_name] = threading.Lock()
            return lock

    @contextmanager
    def _exclusive(self, recipe_name: str, stage: str) -> Iterator[None]:
        lock = self._lock_for(recipe_name)
        if not lock.acquire(timeout=self.lock_timeout):
            raise Conflict(
                f"Another operation on {recipe_name} is still in progress",
                recipe_name=recipe_name,
                stage=stage,
            )
        try:
            yield
        finally:
            lock.release()


__all__ = ["EnvironmentOrchestrator"]
