import threading

import pytest

from furnace.environment import EnvironmentOrchestrator, EnvironmentState
from furnace.errors import Conflict, NotFound, StartFailed, StoreUnavailable
from furnace.recipe import RecipeStore
from furnace.supervisor import Health


def test_start_alpha_runs_in_configured_range(orchestrator, settings):
    instance = orchestrator.start("alpha")

    assert instance.state == EnvironmentState.RUNNING
    start, end = settings.port_range
    assert start <= instance.allocation.port <= end
    assert instance.allocation.hostname_binding == "alpha.test"
    assert instance.runtime_process_id and instance.serving_process_id
    assert orchestrator.store.get("alpha").last_known_state == "running"


def test_second_start_is_conflict_without_new_port(orchestrator, spawner):
    orchestrator.start("alpha")

    with pytest.raises(Conflict):
        orchestrator.start("alpha")

    assert len(orchestrator.allocator) == 1
    assert len(spawner.spawned) == 2


def test_start_unknown_recipe_is_not_found(orchestrator):
    with pytest.raises(NotFound):
        orchestrator.start("missing")
    assert orchestrator.get_instance("missing") is None


def test_running_recipes_get_disjoint_resources(orchestrator):
    alpha = orchestrator.start("alpha")
    beta = orchestrator.start("beta")

    assert alpha.allocation.port != beta.allocation.port
    assert alpha.allocation.hostname_binding != beta.allocation.hostname_binding


def test_start_stop_start_returns_to_baseline(orchestrator, settings):
    first = orchestrator.start("alpha")
    assert orchestrator.stop("alpha") is True

    assert len(orchestrator.allocator) == 0
    assert orchestrator.get_instance("alpha") is None
    assert not orchestrator.renderer.site_directory("alpha").exists()
    assert orchestrator.supervisor.handles_for("alpha") is None
    assert orchestrator.store.get("alpha").last_known_state == "stopped"

    second = orchestrator.start("alpha")
    assert second.allocation.port == first.allocation.port
    assert len(orchestrator.allocator) == 1


def test_stop_is_idempotent(orchestrator):
    assert orchestrator.stop("alpha") is False


def deny_terminate():
    raise PermissionError(1, "Operation not permitted")


def test_stop_reaches_stopped_when_terminate_is_denied(orchestrator, spawner, monkeypatch):
    first = orchestrator.start("alpha")
    monkeypatch.setattr(spawner.latest("nginx"), "terminate", deny_terminate)

    with pytest.raises(PermissionError):
        orchestrator.stop("alpha")

    assert orchestrator.get_instance("alpha") is None
    assert len(orchestrator.allocator) == 0
    assert not orchestrator.renderer.site_directory("alpha").exists()
    assert orchestrator.store.get("alpha").last_known_state == "stopped"

    again = orchestrator.start("alpha")
    assert again.state is EnvironmentState.RUNNING
    assert again.allocation.port == first.allocation.port


def test_rollback_reaches_failed_when_terminate_is_denied(orchestrator, prober, spawner, monkeypatch):
    prober.health = Health.UNHEALTHY
    orchestrator.health_timeout = 0.05
    prober.hook = lambda handles: monkeypatch.setattr(spawner.latest("nginx"), "terminate", deny_terminate)

    with pytest.raises(PermissionError):
        orchestrator.start("alpha")

    instance = orchestrator.get_instance("alpha")
    assert instance.state is EnvironmentState.FAILED
    assert len(orchestrator.allocator) == 0
    assert orchestrator.store.get("alpha").last_known_state == "failed"

    prober.hook = None
    prober.health = Health.HEALTHY
    assert orchestrator.start("alpha").state is EnvironmentState.RUNNING
    orchestrator.start("alpha")
    assert orchestrator.stop("alpha") is True
    assert orchestrator.stop("alpha") is False


def test_stop_unknown_recipe_is_not_found(orchestrator):
    with pytest.raises(NotFound):
        orchestrator.stop("missing")


def test_delete_running_recipe_is_conflict_until_stopped(orchestrator):
    orchestrator.start("alpha")

    with pytest.raises(Conflict):
        orchestrator.delete_recipe("alpha")
    with pytest.raises(Conflict):
        orchestrator.store.delete("alpha")

    orchestrator.stop("alpha")
    orchestrator.delete_recipe("alpha")
    assert [r.name for r in orchestrator.store.list()] == ["beta"]


def test_recipe_running_here_cannot_be_deleted_through_a_separate_store(orchestrator, settings):
    orchestrator.start("alpha")

    with pytest.raises(Conflict):
        RecipeStore(settings.recipes_dir).delete("alpha")
    assert orchestrator.get_instance("alpha").state is EnvironmentState.RUNNING

    orchestrator.stop("alpha")
    RecipeStore(settings.recipes_dir).delete("alpha")


def test_health_timeout_rolls_back(orchestrator, prober, spawner):
    prober.health = Health.UNHEALTHY
    orchestrator.health_timeout = 0.05

    with pytest.raises(StartFailed) as excinfo:
        orchestrator.start("alpha")

    assert excinfo.value.cause.kind == "health_check_timeout"
    assert excinfo.value.stage == "health_check"
    assert len(orchestrator.allocator) == 0
    assert all(p.terminated for p in spawner.spawned)
    assert not orchestrator.renderer.site_directory("alpha").exists()

    instance = orchestrator.get_instance("alpha")
    assert instance.state == EnvironmentState.FAILED
    assert "No healthy response" in instance.last_error
    assert orchestrator.store.get("alpha").last_known_state == "failed"


def test_exit_during_health_check_reports_crash_with_output(orchestrator, spawner):
    spawner.exit_on_start["nginx"] = 1
    spawner.log_output = b"nginx: [emerg] bind() to 127.0.0.1:8100 failed\n"

    with pytest.raises(StartFailed) as excinfo:
        orchestrator.start("alpha")

    assert excinfo.value.cause.kind == "crashed"
    assert "bind() to 127.0.0.1:8100 failed" in orchestrator.get_instance("alpha").last_error
    assert len(orchestrator.allocator) == 0


def test_launch_error_rolls_back(orchestrator, spawner):
    spawner.fail_binaries["php-fpm8.2"] = "No such file or directory: 'php-fpm8.2'"

    with pytest.raises(StartFailed) as excinfo:
        orchestrator.start("alpha")

    assert excinfo.value.cause.kind == "launch_error"
    assert excinfo.value.to_dict()["cause"]["stage"] == "runtime"
    assert len(orchestrator.allocator) == 0


def test_render_error_rolls_back(orchestrator, alpha):
    alpha.runtime_version = "5.6"
    orchestrator.store.put(alpha, replace=True)

    with pytest.raises(StartFailed) as excinfo:
        orchestrator.start("alpha")

    assert excinfo.value.cause.kind == "render_error"
    assert len(orchestrator.allocator) == 0


def test_failed_environment_can_be_started_again(orchestrator, prober):
    prober.health = Health.UNHEALTHY
    orchestrator.health_timeout = 0.05
    with pytest.raises(StartFailed):
        orchestrator.start("alpha")

    prober.health = Health.HEALTHY
    instance = orchestrator.start("alpha")
    assert instance.state == EnvironmentState.RUNNING
    assert instance.last_error is None


def test_cancel_during_health_check_rolls_back(orchestrator, prober, spawner):
    prober.health = Health.UNHEALTHY
    orchestrator.health_timeout = 5.0
    cancelled = []
    prober.hook = lambda handles: cancelled.append(orchestrator.cancel("alpha"))

    with pytest.raises(StartFailed) as excinfo:
        orchestrator.start("alpha")

    assert cancelled[0] is True
    assert excinfo.value.cause.kind == "cancelled"
    assert len(orchestrator.allocator) == 0
    assert all(p.terminated for p in spawner.spawned)
    assert orchestrator.cancel("alpha") is False


def test_cancel_without_start_is_noop(orchestrator):
    assert orchestrator.cancel("alpha") is False


def test_busy_recipe_lock_is_conflict(orchestrator):
    orchestrator.lock_timeout = 0.01
    lock = orchestrator._lock_for("alpha")
    lock.acquire()
    try:
        with pytest.raises(Conflict):
            orchestrator.start("alpha")
        orchestrator.start("beta")
    finally:
        lock.release()


def test_concurrent_starts_of_different_recipes(orchestrator):
    errors = []

    def start(name):
        try:
            orchestrator.start(name)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=start, args=(name,)) for name in ("alpha", "beta")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(set(orchestrator.allocator.held_ports)) == 2


def test_restart_gives_fresh_processes(orchestrator, spawner):
    first = orchestrator.start("alpha")
    second = orchestrator.restart("alpha")

    assert second.state == EnvironmentState.RUNNING
    assert second.serving_process_id != first.serving_process_id
    assert len(orchestrator.allocator) == 1


def test_crash_restarts_once_then_fails(orchestrator, supervisor, spawner, clock):
    orchestrator.start("alpha")

    spawner.latest("nginx").returncode = 1
    supervisor.poll_once()

    instance = orchestrator.get_instance("alpha")
    assert instance.state == EnvironmentState.RUNNING
    assert instance.restarts == 1
    assert instance.serving_process_id == spawner.latest("nginx").pid

    clock.advance(1)
    spawner.latest("nginx").returncode = 1
    supervisor.poll_once()

    instance = orchestrator.get_instance("alpha")
    assert instance.state == EnvironmentState.FAILED
    assert "crashed again" in instance.last_error
    assert len(orchestrator.allocator) == 0
    assert spawner.count("nginx") == 2
    assert orchestrator.store.get("alpha").last_known_state == "failed"


def test_start_refused_while_store_unavailable(orchestrator):
    (orchestrator.store.recipe_directory / "broken.yml").write_text("name: [unclosed\n")
    with pytest.raises(StoreUnavailable):
        orchestrator.store.reload()

    with pytest.raises(StoreUnavailable):
        orchestrator.start("alpha")
    assert len(orchestrator.allocator) == 0


def test_stop_works_while_store_unavailable(orchestrator):
    orchestrator.start("alpha")
    (orchestrator.store.recipe_directory / "broken.yml").write_text("name: [unclosed\n")
    with pytest.raises(StoreUnavailable):
        orchestrator.store.reload()

    assert orchestrator.stop("alpha") is True
    assert len(orchestrator.allocator) == 0


def test_stale_live_states_are_reset(settings, supervisor, orchestrator):
    orchestrator.store.annotate("alpha", "running")
    orchestrator.store.annotate("beta", "failed")

    fresh = EnvironmentOrchestrator.from_settings(settings, supervisor=supervisor)
    fresh.reset_stale_states()

    assert fresh.store.get("alpha").last_known_state == "stopped"
    assert fresh.store.get("beta").last_known_state == "failed"
    assert fresh.instances() == {}
