"""Command line handlers for furnace."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from loguru import logger

from furnace import hosts
from furnace.api import FurnaceService, serve_stdio
from furnace.environment import EnvironmentOrchestrator
from furnace.errors import FurnaceError, StartFailed
from furnace.recipe import LIVE_STATE_NAMES, Recipe, RecipeStore, cook, dispose, recipe_from_project
from furnace.recipe.project import is_laravel_project, resolve_linked_recipe
from furnace.settings import FurnaceSettings, detect_engines
from furnace.status import StatusReporter


def configure_logging(settings: FurnaceSettings, level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=level,
    )

    try:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning(f"File logging disabled, cannot create {settings.logs_dir}: {exc}")
        return
    logger.add(
        settings.logs_dir / "furnace_{time:YYYY-MM-DD}.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG",
    )


def load_settings(args) -> FurnaceSettings:
    overrides = {}
    if getattr(args, "home", None):
        overrides["home"] = args.home
    try:
        return FurnaceSettings.load(getattr(args, "config", None), **overrides)
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)


def fail(exc: FurnaceError) -> None:
    print(f"Error: {exc.message}", file=sys.stderr)
    if isinstance(exc, StartFailed) and exc.cause is not None:
        print(f"  Cause ({exc.cause.kind}): {exc.cause.message}", file=sys.stderr)
    sys.exit(1)


def handle_recipe_commands(args, settings: FurnaceSettings) -> None:
    """Handle ``recipe`` subcommands"""

    if not args.command:
        print("Error: No command specified", file=sys.stderr)
        sys.exit(1)

    store = RecipeStore(settings.recipes_dir)

    if args.command == "list":
        recipes = store.list()
        if not store.available:
            print(f"Warning: {store.unavailable_reason}", file=sys.stderr)
        if not recipes:
            print("No recipes found")
            return
        print("Available recipes:")
        for recipe in recipes:
            print(f"  - {recipe.name:<20} {recipe.site_hostname}")

    elif args.command == "info":
        try:
            recipe = store.get(args.name)
        except FurnaceError as exc:
            fail(exc)
        print(f"Recipe:       {recipe.name}")
        print(f"Site:         {recipe.site_hostname}")
        print(f"Project:      {recipe.project_path}")
        print(f"PHP:          {recipe.runtime_version}")
        print(f"Engine:       {recipe.serving_engine}")
        print(f"Last state:   {recipe.last_known_state or 'stopped'}")
        print(f"Location:     {store.recipe_path(recipe.name)}")

    elif args.command == "create":
        recipe = Recipe(
            name=args.name,
            project_path=str(Path(args.path).expanduser().resolve()),
            runtime_version=args.php,
            serving_engine=args.engine or settings.default_engine,
            site_hostname=(args.site or f"{args.name}.{settings.tld}").lower(),
        )
        try:
            store.put(recipe)
        except FurnaceError as exc:
            fail(exc)
        print(f"Created recipe {recipe.name} -> http://{recipe.site_hostname}")

    elif args.command == "delete":
        try:
            store.delete(args.name)
        except FurnaceError as exc:
            fail(exc)
        print(f"Deleted recipe: {args.name}")


def handle_cook(args, settings: FurnaceSettings) -> None:
    store = RecipeStore(settings.recipes_dir)
    path = Path(args.path or os.getcwd())
    if not is_laravel_project(path):
        logger.warning(f"{path} does not look like a Laravel project (no artisan/composer.json)")

    try:
        recipe = recipe_from_project(
            path,
            name=args.name,
            runtime_version=args.php,
            serving_engine=args.engine or settings.default_engine,
            tld=settings.tld,
        )
        cook(store, recipe)
    except FurnaceError as exc:
        fail(exc)

    print(f"Cooked {recipe.name}")
    print(f"  Site:   http://{recipe.site_hostname}")
    print(f"  PHP:    {recipe.runtime_version}")
    print(f"  Engine: {recipe.serving_engine}")


def handle_dispose(args, settings: FurnaceSettings) -> None:
    store = RecipeStore(settings.recipes_dir)
    try:
        name = args.name or resolve_linked_recipe(os.getcwd())
        dispose(store, name)
    except FurnaceError as exc:
        fail(exc)
    print(f"Disposed recipe: {name}")


def handle_up(args, settings: FurnaceSettings) -> None:
    """Start environments and keep them supervised until interrupted"""
    orchestrator = EnvironmentOrchestrator.from_settings(settings)
    orchestrator.reset_stale_states()
    orchestrator.supervisor.start_monitoring()

    started = []
    try:
        for name in args.names:
            try:
                instance = orchestrator.start(name)
            except FurnaceError as exc:
                print(f"✗ {name}: {exc.message}", file=sys.stderr)
                if isinstance(exc, StartFailed) and exc.cause is not None:
                    print(f"    Cause ({exc.cause.kind}): {exc.cause.message}", file=sys.stderr)
                continue
            started.append(name)
            print(f"✓ {name} running at {instance.allocation.url}")

        if not started:
            sys.exit(1)

        print("\nPress Ctrl-C to stop all environments")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping environments...")
    finally:
        orchestrator.shutdown()
    print(f"Stopped {len(started)} environment(s)")


def print_bindings(settings: FurnaceSettings) -> None:
    try:
        bindings = hosts.list_bindings(str(settings.hosts_dir))
    except OSError as exc:
        print(f"Warning: cannot read hostname bindings: {exc}", file=sys.stderr)
        return
    if not bindings:
        return
    print("Hostname bindings:")
    for hostname, address in bindings.items():
        print(f"  {hostname} -> {address}")


def handle_status(args, settings: FurnaceSettings) -> None:
    orchestrator = EnvironmentOrchestrator.from_settings(settings)
    reporter = StatusReporter(orchestrator)
    try:
        snapshots = [reporter.status(args.name)] if args.name else reporter.status_all()
    except FurnaceError as exc:
        fail(exc)

    if not snapshots:
        print("No recipes found")

    for snapshot in snapshots:
        recorded = orchestrator.store.get(snapshot.name).last_known_state
        print(f"  - {snapshot.name}")
        print(f"      Site:   {snapshot.site}")
        if recorded in LIVE_STATE_NAMES and snapshot.state == "stopped":
            print(f"      State:  {recorded} (managed by another furnace process)")
        else:
            print(f"      State:  {snapshot.state}")
        if snapshot.port:
            print(f"      Port:   {snapshot.port}")
            print(f"      Uptime: {snapshot.uptime_seconds:.1f}s")
        if snapshot.last_error:
            print(f"      Error:  {snapshot.last_error}")

    if not args.name:
        print_bindings(settings)


def handle_engines(args, settings: FurnaceSettings) -> None:
    print("Detected binaries:")
    for name, path in detect_engines(settings).items():
        print(f"  {'✓' if path else '✗'} {name:<14} {path or 'not found'}")
    print_bindings(settings)


def handle_serve(args, settings: FurnaceSettings) -> None:
    """Serve boundary requests as JSON lines on stdin/stdout"""
    orchestrator = EnvironmentOrchestrator.from_settings(settings)
    orchestrator.reset_stale_states()
    orchestrator.supervisor.start_monitoring()
    service = FurnaceService(orchestrator)
    logger.info("Serving requests on stdin")
    try:
        handled = serve_stdio(service, sys.stdin, sys.stdout)
        logger.info(f"Input closed after {handled} request(s)")
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        orchestrator.shutdown()


HANDLERS = {
    "recipe": handle_recipe_commands,
    "cook": handle_cook,
    "dispose": handle_dispose,
    "up": handle_up,
    "status": handle_status,
    "engines": handle_engines,
    "serve": handle_serve,
}


def handle_furnace_commands(args) -> None:
    """Handle commands from the unified CLI"""
    settings = load_settings(args)
    configure_logging(settings, args.log_level)
    HANDLERS[args.module](args, settings)


if __name__ == "__main__":
    from cli import main

    main()
