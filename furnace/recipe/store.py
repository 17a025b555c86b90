"""Durable store of known recipes, one YAML file per recipe."""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml
from loguru import logger

from furnace.errors import Conflict, InvalidRecipe, NotFound, StoreUnavailable
from .recipe import LIVE_STATE_NAMES, Recipe


class RecipeStore:
    """Loads, persists and guards recipes kept under ``recipe_directory``.

    Every operation runs under one lock and files are replaced atomically, so
    no caller can observe a half-written recipe. Reads are served from the
    in-memory cache; once the backing directory fails to read or write, the
    store refuses mutations until :meth:`reload` succeeds.

    A recipe counts as in use when the ``in_use`` callback says so. Without
    a callback (a store opened by a command that runs nothing itself) the
    recorded ``last_known_state`` decides, so a recipe another furnace
    process is running cannot be edited or deleted from here.
    """

    def __init__(
        self,
        recipe_directory: str | Path,
        *,
        in_use: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.recipe_directory = Path(recipe_directory)
        self.in_use = in_use
        self._lock = threading.RLock()
        self._cache: Dict[str, Recipe] = {}
        self._paths: Dict[str, Path] = {}
        self._loaded = False
        self._unavailable: Optional[str] = None

    # ------------------------------------------------------------------
    @property
    def available(self) -> bool:
        return self._unavailable is None

    @property
    def unavailable_reason(self) -> Optional[str]:
        return self._unavailable

    # ------------------------------------------------------------------
    def load(self) -> List[Recipe]:
        """Read every recipe file, replacing the cache on success."""
        with self._lock:
            self._loaded = True
            recipes: Dict[str, Recipe] = {}
            paths: Dict[str, Path] = {}
            try:
                self.recipe_directory.mkdir(parents=True, exist_ok=True)
                files = sorted(
                    list(self.recipe_directory.glob("*.yml")) + list(self.recipe_directory.glob("*.yaml"))
                )
                hostnames: Dict[str, str] = {}
                for path in files:
                    recipe = Recipe.from_yaml(str(path))
                    if recipe.name in recipes:
                        raise InvalidRecipe(f"Duplicate recipe name in {path}", recipe_name=recipe.name)
                    owner = hostnames.get(recipe.site_hostname)
                    if owner:
                        raise InvalidRecipe(
                            f"Hostname {recipe.site_hostname} is claimed by both {owner} and {recipe.name}",
                            recipe_name=recipe.name,
                        )
                    hostnames[recipe.site_hostname] = recipe.name
                    recipes[recipe.name] = recipe
                    paths[recipe.name] = path
            except (OSError, yaml.YAMLError, InvalidRecipe) as exc:
                self._unavailable = f"Failed to read recipe store {self.recipe_directory}: {exc}"
                logger.error(self._unavailable)
                raise StoreUnavailable(self._unavailable, stage="load") from exc

            self._cache = recipes
            self._paths = paths
            self._unavailable = None
            logger.info(f"Loaded {len(recipes)} recipe(s) from {self.recipe_directory}")
            return self.list()

    def reload(self) -> List[Recipe]:
        return self.load()

    # ------------------------------------------------------------------
    def list(self) -> List[Recipe]:
        with self._lock:
            self._ensure_loaded()
            return [self._cache[name] for name in sorted(self._cache)]

    def get(self, name: str) -> Recipe:
        with self._lock:
            self._ensure_loaded()
            recipe = self._cache.get(name)
            if recipe is None:
                raise NotFound(f"Recipe not found: {name}", recipe_name=name, stage="lookup")
            return recipe

    def find_by_path(self, project_path: str) -> Optional[Recipe]:
        with self._lock:
            self._ensure_loaded()
            for recipe in self._cache.values():
                if recipe.project_path == project_path:
                    return recipe
            return None

    def recipe_path(self, name: str) -> Path:
        return self._paths.get(name) or self.recipe_directory / f"{name}.yml"

    # ------------------------------------------------------------------
    def put(self, recipe: Recipe, *, replace: bool = False) -> Recipe:
        """Store ``recipe``; names and hostnames must stay unique.

        Without ``replace`` an existing name is a conflict. Replacing a recipe
        whose environment is live is refused as well.
        """
        recipe.validate()
        with self._lock:
            self._ensure_loaded()
            self._require_available(recipe.name, "put")

            existing = self._cache.get(recipe.name)
            if existing and not replace:
                raise Conflict(f"Recipe already exists: {recipe.name}", recipe_name=recipe.name, stage="put")
            if existing and self._is_in_use(recipe.name):
                raise Conflict(
                    f"Recipe {recipe.name} has a live environment; stop it before editing",
                    recipe_name=recipe.name,
                    stage="put",
                )

            for other in self._cache.values():
                if other.name != recipe.name and other.site_hostname == recipe.site_hostname:
                    raise Conflict(
                        f"Hostname {recipe.site_hostname} is already used by recipe {other.name}",
                        recipe_name=recipe.name,
                        stage="put",
                    )

            self._write(recipe)
            logger.info(f"Stored recipe {recipe.name} ({recipe.site_hostname})")
            return recipe

    def annotate(self, name: str, state: Optional[str]) -> Recipe:
        """Persist ``last_known_state`` for a recipe."""
        with self._lock:
            self._require_available(name, "annotate")
            recipe = self.get(name)
            if recipe.last_known_state == state:
                return recipe
            updated = recipe.with_state(state)
            self._write(updated)
            return updated

    def delete(self, name: str) -> Recipe:
        with self._lock:
            self._ensure_loaded()
            self._require_available(name, "delete")
            recipe = self._cache.get(name)
            if recipe is None:
                raise NotFound(f"Recipe not found: {name}", recipe_name=name, stage="delete")
            if self._is_in_use(name):
                raise Conflict(
                    f"Recipe {name} has a live environment; stop it before deleting",
                    recipe_name=name,
                    stage="delete",
                )

            path = self.recipe_path(name)
            try:
                if path.exists():
                    path.unlink()
            except OSError as exc:
                self._mark_unavailable(f"Failed to delete {path}: {exc}")
                raise StoreUnavailable(self._unavailable, recipe_name=name, stage="delete") from exc

            self._cache.pop(name, None)
            self._paths.pop(name, None)
            logger.info(f"Deleted recipe {name}")
            return recipe

    # ------------------------------------------------------------------
    def _write(self, recipe: Recipe) -> None:
        target = self._paths.get(recipe.name) or self.recipe_directory / f"{recipe.name}.yml"
        temp_path: Optional[str] = None
        try:
            self.recipe_directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self.recipe_directory, prefix=f".{recipe.name}.", suffix=".tmp", delete=False, encoding="utf-8"
            ) as handle:
                temp_path = handle.name
                handle.write(recipe.to_yaml())
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except OSError as exc:
            if temp_path:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
            self._mark_unavailable(f"Failed to write {target}: {exc}")
            raise StoreUnavailable(self._unavailable, recipe_name=recipe.name, stage="write") from exc

        self._cache[recipe.name] = recipe
        self._paths[recipe.name] = target

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            self.load()
        except StoreUnavailable:
            # reads keep serving the (empty) cache
            pass

    def _require_available(self, name: str, stage: str) -> None:
        if self._unavailable is not None:
            raise StoreUnavailable(
                f"Recipe store is unavailable: {self._unavailable}",
                recipe_name=name,
                stage=stage,
            )

    def _mark_unavailable(self, reason: str) -> None:
        self._unavailable = reason
        logger.error(reason)

    def _is_in_use(self, name: str) -> bool:
        if self.in_use is not None:
            return bool(self.in_use(name))
        return self._cache[name].last_known_state in LIVE_STATE_NAMES


__all__ = ["RecipeStore"]
