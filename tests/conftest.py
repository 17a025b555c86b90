import subprocess
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from furnace.environment import EnvironmentOrchestrator
from furnace.recipe import Recipe
from furnace.settings import FurnaceSettings
from furnace.supervisor import Health, ProbeResult, ProcessSupervisor


class FakeProcess:
    """Stands in for ``subprocess.Popen``; tests set ``returncode`` to simulate an exit."""

    _next_pid = 4000

    def __init__(self, command: List[str], *, stubborn: bool = False) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.command = command
        self.returncode: Optional[int] = None
        self.stubborn = stubborn
        self.terminated = False
        self.killed = False

    def poll(self) -> Optional[int]:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.stubborn:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: Optional[float] = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.command, timeout)
        return self.returncode


class FakeSpawner:
    """Records every spawned process; can fail or crash binaries on demand."""

    def __init__(self) -> None:
        self.spawned: List[FakeProcess] = []
        self.fail_binaries: Dict[str, str] = {}
        self.exit_on_start: Dict[str, int] = {}
        self.stubborn_binaries: set = set()
        self.log_output = b"started\n"

    def __call__(self, command, log_handle):
        binary = command[0]
        if binary in self.fail_binaries:
            raise FileNotFoundError(self.fail_binaries[binary])
        log_handle.write(self.log_output)
        proc = FakeProcess(command, stubborn=binary in self.stubborn_binaries)
        if binary in self.exit_on_start:
            proc.returncode = self.exit_on_start[binary]
        self.spawned.append(proc)
        return proc

    def latest(self, binary: str) -> FakeProcess:
        return [p for p in self.spawned if p.command[0] == binary][-1]

    def count(self, binary: str) -> int:
        return len([p for p in self.spawned if p.command[0] == binary])


class FakeProber:
    def __init__(self) -> None:
        self.health = Health.HEALTHY
        self.calls = 0
        self.hook = None

    def __call__(self, handles) -> ProbeResult:
        self.calls += 1
        if self.hook:
            self.hook(handles)
        return ProbeResult(health=self.health, role="serving", detail="fake probe")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner:
    def __init__(self) -> None:
        self.returncode = 0
        self.stderr = ""
        self.commands: List[List[str]] = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        return SimpleNamespace(returncode=self.returncode, stdout="", stderr=self.stderr)


@pytest.fixture
def settings(tmp_path):
    return FurnaceSettings(
        home=tmp_path / "home",
        port_range=(8100, 8199),
        check_port_available=False,
        health_timeout=1.0,
        health_interval=0.01,
        stop_grace=0.1,
        lock_timeout=1.0,
        runtime_command=["php-fpm{version}", "--nodaemonize", "--fpm-config", "{runtime_config}"],
    )


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def supervisor(settings, spawner, prober, runner, clock):
    return ProcessSupervisor.from_settings(settings, spawn=spawner, prober=prober, runner=runner, clock=clock)


@pytest.fixture
def alpha():
    return Recipe(
        name="alpha",
        project_path="/srv/alpha",
        runtime_version="8.2",
        serving_engine="nginx",
        site_hostname="alpha.test",
    )


@pytest.fixture
def beta():
    return Recipe(
        name="beta",
        project_path="/srv/beta",
        runtime_version="8.1",
        serving_engine="apache",
        site_hostname="beta.test",
    )


@pytest.fixture
def orchestrator(settings, supervisor, alpha, beta):
    orchestrator = EnvironmentOrchestrator.from_settings(settings, supervisor=supervisor)
    orchestrator.create_recipe(alpha)
    orchestrator.create_recipe(beta)
    yield orchestrator
    orchestrator.shutdown()
