"""Recipe definition for local development environments."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from furnace.errors import InvalidRecipe

SUPPORTED_ENGINES = ("nginx", "apache")

# Values of last_known_state recorded while an environment is up.
LIVE_STATE_NAMES = ("starting", "health_checking", "running")

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
VERSION_PATTERN = re.compile(r"^\d+(\.\d+){0,2}$")
HOSTNAME_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")

# Older recipe files use these key names.
LEGACY_KEYS = {
    "path": "project_path",
    "php_version": "runtime_version",
    "serve_with": "serving_engine",
    "site": "site_hostname",
}


@dataclass
class Recipe:
    """Binds a project directory to a runtime version, serving engine and hostname."""

    name: str
    project_path: str
    runtime_version: str
    serving_engine: str
    site_hostname: str
    last_known_state: Optional[str] = None

    # ------------------------------------------------------------------
    def validate(self) -> None:
        if not self.name or not NAME_PATTERN.match(self.name):
            raise InvalidRecipe(
                "Recipe name must start with a letter or digit and contain only letters, digits, '.', '_' or '-'",
                recipe_name=self.name,
                stage="validate",
            )

        if not self.project_path or not Path(self.project_path).is_absolute():
            raise InvalidRecipe(
                f"project_path must be an absolute path, got {self.project_path!r}",
                recipe_name=self.name,
                stage="validate",
            )

        if not self.runtime_version or not VERSION_PATTERN.match(self.runtime_version):
            raise InvalidRecipe(
                f"runtime_version must look like '8.2', got {self.runtime_version!r}",
                recipe_name=self.name,
                stage="validate",
            )

        if self.serving_engine not in SUPPORTED_ENGINES:
            raise InvalidRecipe(
                f"serving_engine must be one of {', '.join(SUPPORTED_ENGINES)}, got {self.serving_engine!r}",
                recipe_name=self.name,
                stage="validate",
            )

        labels = (self.site_hostname or "").split(".")
        if len(labels) < 2 or not all(HOSTNAME_LABEL.match(label) for label in labels):
            raise InvalidRecipe(
                f"site_hostname must be a lowercase dotted hostname such as 'app.test', got {self.site_hostname!r}",
                recipe_name=self.name,
                stage="validate",
            )

    # ------------------------------------------------------------------
    @property
    def document_root(self) -> str:
        return str(Path(self.project_path) / "public")

    def with_state(self, state: Optional[str]) -> "Recipe":
        return replace(self, last_known_state=state)

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["last_known_state"] is None:
            data.pop("last_known_state")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recipe":
        values = dict(data or {})
        for legacy, canonical in LEGACY_KEYS.items():
            if legacy in values:
                values.setdefault(canonical, values.pop(legacy))

        recipe = cls(
            name=str(values.get("name") or ""),
            project_path=str(values.get("project_path") or ""),
            runtime_version=str(values.get("runtime_version") or ""),
            serving_engine=str(values.get("serving_engine") or ""),
            site_hostname=str(values.get("site_hostname") or "").lower(),
            last_known_state=values.get("last_known_state"),
        )
        recipe.validate()
        return recipe

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "Recipe":
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Recipe file not found: {yaml_path}")

        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}

        if not isinstance(data, dict):
            raise InvalidRecipe(f"Recipe file does not contain a mapping: {yaml_path}", stage="load")

        data.setdefault("name", path.stem)
        return cls.from_dict(data)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)


__all__ = ["LIVE_STATE_NAMES", "Recipe", "SUPPORTED_ENGINES"]
