import pytest
from loguru import logger

import cli
from cli import build_parser
from furnace import hosts
from furnace.__main__ import handle_furnace_commands
from furnace.recipe import RecipeStore


@pytest.fixture
def run(tmp_path, monkeypatch):
    monkeypatch.delenv("FURNACE_HOME", raising=False)
    home = tmp_path / "home"

    def run(*argv):
        args = build_parser().parse_args(["--home", str(home), "--log-level", "WARNING", *argv])
        handle_furnace_commands(args)

    yield run
    logger.remove()


def test_recipe_create_list_info_delete(run, tmp_path, capsys):
    project = tmp_path / "shop"
    project.mkdir()

    run("recipe", "create", "--name", "shop", "--path", str(project), "--php", "8.2")
    run("recipe", "list")
    run("recipe", "info", "--name", "shop")
    out = capsys.readouterr().out

    assert "Created recipe shop -> http://shop.test" in out
    assert "shop.test" in out
    assert "Engine:       nginx" in out

    run("recipe", "delete", "--name", "shop")
    run("recipe", "list")
    assert "No recipes found" in capsys.readouterr().out


def test_errors_exit_non_zero(run, capsys):
    with pytest.raises(SystemExit) as excinfo:
        run("recipe", "info", "--name", "missing")
    assert excinfo.value.code == 1
    assert "Recipe not found: missing" in capsys.readouterr().err


def test_cook_and_dispose(run, tmp_path, capsys, monkeypatch):
    project = tmp_path / "blog"
    project.mkdir()
    (project / "composer.json").write_text('{"require": {"php": "^8.3"}}')

    run("cook", "--path", str(project))
    assert "Cooked blog" in capsys.readouterr().out

    monkeypatch.chdir(project)
    run("dispose")
    assert "Disposed recipe: blog" in capsys.readouterr().out


def test_status_lists_stopped_recipes(run, tmp_path, capsys):
    project = tmp_path / "shop"
    project.mkdir()
    run("recipe", "create", "--name", "shop", "--path", str(project), "--php", "8.2")
    capsys.readouterr()

    run("status")

    out = capsys.readouterr().out
    assert "shop" in out
    assert "State:  stopped" in out


def test_delete_and_dispose_refuse_recipe_running_elsewhere(run, tmp_path, capsys, monkeypatch):
    project = tmp_path / "blog"
    project.mkdir()
    (project / "composer.json").write_text('{"require": {"php": "^8.3"}}')
    run("cook", "--path", str(project))
    RecipeStore(tmp_path / "home" / "recipes").annotate("blog", "running")
    capsys.readouterr()

    with pytest.raises(SystemExit) as excinfo:
        run("recipe", "delete", "--name", "blog")
    assert excinfo.value.code == 1
    assert "has a live environment" in capsys.readouterr().err

    monkeypatch.chdir(project)
    with pytest.raises(SystemExit):
        run("dispose")
    assert (project / ".furnace.recipe.yml").is_symlink()

    run("status", "--name", "blog")
    assert "running (managed by another furnace process)" in capsys.readouterr().out


def test_engines_and_status_list_hostname_bindings(run, tmp_path, capsys):
    hosts_dir = tmp_path / "home" / "dnsmasq.d"
    hosts_dir.mkdir(parents=True)
    hosts.write_binding("shop.test", "127.0.0.1", str(hosts_dir))

    run("engines")
    out = capsys.readouterr().out
    assert "Hostname bindings:" in out
    assert "shop.test -> 127.0.0.1" in out

    run("status")
    assert "shop.test -> 127.0.0.1" in capsys.readouterr().out


def test_main_without_command_prints_help(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["furnace"])

    cli.main()

    out = capsys.readouterr().out
    assert "usage: furnace" in out
    assert "Available commands: recipe, cook, dispose, up, status, engines, serve" in out
    assert not hasattr(cli, "sys")
