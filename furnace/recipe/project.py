"""Helpers for building recipes from project directories on disk."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Optional

import yaml
from loguru import logger

from furnace.errors import Conflict, InvalidRecipe, NotFound
from .recipe import Recipe
from .store import RecipeStore

PROJECT_LINK = ".furnace.recipe.yml"
PROJECT_CONFIG = ".furnace.yml"

VERSION_DIGITS = re.compile(r"\d+(?:\.\d+)*")


def is_laravel_project(directory: str | Path) -> bool:
    directory = Path(directory)
    return (directory / "artisan").exists() and (directory / "composer.json").exists()


def sanitize_runtime_version(constraint: str) -> Optional[str]:
    """Reduce a version constraint such as ``^8.2`` or ``>=8.1.3`` to ``major.minor``."""
    match = VERSION_DIGITS.search(constraint or "")
    if not match:
        return None
    parts = match.group(0).split(".")
    if len(parts) >= 2:
        return f"{parts[0]}.{parts[1]}"
    return parts[0]


def parse_composer_php_version(composer_path: str | Path) -> Optional[str]:
    try:
        data = json.loads(Path(composer_path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    constraint = (data.get("require") or {}).get("php")
    if not isinstance(constraint, str):
        return None
    return sanitize_runtime_version(constraint)


def read_project_php_version(directory: str | Path) -> Optional[str]:
    config_path = Path(directory) / PROJECT_CONFIG
    if not config_path.exists():
        return None
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning(f"Ignoring unreadable {config_path}: {exc}")
        return None
    version = data.get("php_version") if isinstance(data, dict) else None
    return sanitize_runtime_version(str(version)) if version else None


def recipe_from_project(
    project_path: str | Path,
    *,
    name: Optional[str] = None,
    runtime_version: Optional[str] = None,
    serving_engine: str = "nginx",
    tld: str = "test",
) -> Recipe:
    """Derive a recipe for ``project_path``.

    The runtime version comes from the explicit argument, the project's
    ``.furnace.yml``, or the ``require.php`` constraint in ``composer.json``,
    in that order.
    """
    directory = Path(project_path).expanduser().resolve()
    if not directory.is_dir():
        raise InvalidRecipe(f"Project directory does not exist: {directory}", stage="cook")

    name = name or directory.name
    version = (
        sanitize_runtime_version(runtime_version) if runtime_version else None
    ) or read_project_php_version(directory) or parse_composer_php_version(directory / "composer.json")
    if not version:
        raise InvalidRecipe(
            f"Could not determine the PHP version for {directory}; pass one explicitly",
            recipe_name=name,
            stage="cook",
        )

    recipe = Recipe(
        name=name,
        project_path=str(directory),
        runtime_version=version,
        serving_engine=serving_engine,
        site_hostname=f"{name.lower()}.{tld}",
    )
    recipe.validate()
    return recipe


def cook(store: RecipeStore, recipe: Recipe, *, link: bool = True) -> Recipe:
    """Register ``recipe`` and link it from its project directory."""
    existing = store.find_by_path(recipe.project_path)
    if existing is not None:
        raise Conflict(
            f"A recipe for {recipe.project_path} is already registered as '{existing.name}'",
            recipe_name=existing.name,
            stage="cook",
        )

    stored = store.put(recipe)
    if link:
        _link_project(store.recipe_path(stored.name), Path(stored.project_path) / PROJECT_LINK)
    logger.info(f"{stored.name} is cooked at http://{stored.site_hostname}")
    return stored


def resolve_linked_recipe(directory: str | Path) -> str:
    """Return the recipe name the project link in ``directory`` points at."""
    link_path = Path(directory) / PROJECT_LINK
    if not link_path.is_symlink():
        raise NotFound(f"No recipe linked in {directory}", stage="dispose")
    return Path(os.readlink(link_path)).stem


def dispose(store: RecipeStore, name: str) -> Recipe:
    """Delete a recipe and the project link that points at it."""
    recipe = store.delete(name)
    link_path = Path(recipe.project_path) / PROJECT_LINK
    if link_path.is_symlink():
        try:
            link_path.unlink()
            logger.info(f"Deleted project link at {link_path}")
        except OSError as exc:
            logger.warning(f"Failed to delete project link {link_path}: {exc}")
    return recipe


def _link_project(recipe_file: Path, link_path: Path) -> None:
    try:
        if link_path.is_symlink() or link_path.exists():
            link_path.unlink()
        link_path.symlink_to(recipe_file)
        logger.info(f"Symlinked recipe to {link_path}")
    except OSError as exc:
        logger.warning(f"Failed to create project link {link_path}: {exc}")


__all__ = [
    "PROJECT_LINK",
    "cook",
    "dispose",
    "is_laravel_project",
    "parse_composer_php_version",
    "recipe_from_project",
    "resolve_linked_recipe",
    "sanitize_runtime_version",
]
