"""Recipe module public API."""

from .recipe import LIVE_STATE_NAMES, Recipe, SUPPORTED_ENGINES
from .store import RecipeStore
from .project import cook, dispose, recipe_from_project

__all__ = [
    "LIVE_STATE_NAMES",
    "Recipe",
    "RecipeStore",
    "SUPPORTED_ENGINES",
    "cook",
    "dispose",
    "recipe_from_project",
]
