"""Configuration for the furnace orchestrator.

Values are resolved from explicit overrides, then environment variables (a
``.env`` file is honoured), then ``<home>/config.yml``, then defaults.
"""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from loguru import logger

DEFAULT_HOME = Path("~/.furnace").expanduser()

# Keys that may be set through FURNACE_<KEY> environment variables.
FLOAT_KEYS = (
    "health_timeout",
    "health_interval",
    "probe_interval",
    "probe_timeout",
    "restart_cooldown",
    "stop_grace",
    "lock_timeout",
)
STRING_KEYS = ("bind_address", "tld", "default_engine", "apache_modules_dir")


def detect_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def default_runtime_command(platform: Optional[str] = None) -> List[str]:
    platform = platform or detect_platform()
    if platform == "macos":
        binary = "/opt/homebrew/opt/php@{version}/sbin/php-fpm"
    elif platform == "linux":
        binary = "php-fpm{version}"
    else:
        binary = "php-fpm"
    return [binary, "--nodaemonize", "--fpm-config", "{runtime_config}"]


@dataclass
class EngineProfile:
    """How to launch (and optionally syntax-check) one serving engine."""

    name: str
    command: List[str]
    check: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "EngineProfile":
        command = data.get("command")
        if not command or not isinstance(command, list):
            raise ValueError(f"engines.{name}.command must be a non-empty list")
        check = data.get("check")
        if check is not None and not isinstance(check, list):
            raise ValueError(f"engines.{name}.check must be a list")
        return cls(name=name, command=[str(c) for c in command], check=[str(c) for c in check] if check else None)


def default_engines(platform: Optional[str] = None) -> Dict[str, EngineProfile]:
    platform = platform or detect_platform()
    httpd = "apache2" if platform == "linux" else "httpd"
    return {
        "nginx": EngineProfile(
            name="nginx",
            command=["nginx", "-p", "{prefix}", "-c", "{config}", "-g", "daemon off;"],
            check=["nginx", "-t", "-p", "{prefix}", "-c", "{config}"],
        ),
        "apache": EngineProfile(
            name="apache",
            command=[httpd, "-f", "{config}", "-DFOREGROUND"],
            check=[httpd, "-t", "-f", "{config}"],
        ),
    }


@dataclass
class FurnaceSettings:
    home: Path = DEFAULT_HOME
    port_range: Tuple[int, int] = (8100, 8199)
    bind_address: str = "127.0.0.1"
    tld: str = "test"
    default_engine: str = "nginx"
    health_timeout: float = 30.0
    health_interval: float = 0.5
    probe_interval: float = 2.0
    probe_timeout: float = 1.0
    restart_cooldown: float = 60.0
    stop_grace: float = 10.0
    lock_timeout: float = 60.0
    check_port_available: bool = True
    runtime_versions: List[str] = field(
        default_factory=lambda: ["7.4", "8.0", "8.1", "8.2", "8.3", "8.4"]
    )
    runtime_command: List[str] = field(default_factory=default_runtime_command)
    engines: Dict[str, EngineProfile] = field(default_factory=default_engines)
    apache_modules_dir: str = "/usr/lib/apache2/modules"

    def __post_init__(self) -> None:
        self.home = Path(self.home).expanduser()
        start, end = self.port_range
        if not (0 < start <= end <= 65535):
            raise ValueError(f"Invalid port range: {start}-{end}")
        for key in FLOAT_KEYS:
            if getattr(self, key) <= 0:
                raise ValueError(f"{key} must be positive")

    # ------------------------------------------------------------------
    @property
    def recipes_dir(self) -> Path:
        return self.home / "recipes"

    @property
    def sites_dir(self) -> Path:
        return self.home / "sites"

    @property
    def hosts_dir(self) -> Path:
        return self.home / "dnsmasq.d"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def run_dir(self) -> Path:
        return self.home / "run"

    # ------------------------------------------------------------------
    @classmethod
    def load(cls, config_file: Optional[str] = None, **overrides: Any) -> "FurnaceSettings":
        load_dotenv()

        home = Path(overrides.get("home") or os.getenv("FURNACE_HOME") or DEFAULT_HOME).expanduser()
        config = _load_config(Path(config_file) if config_file else home / "config.yml")

        values: Dict[str, Any] = {"home": home}

        port_range = overrides.get("port_range") or os.getenv("FURNACE_PORT_RANGE") or config.get("port_range")
        if port_range:
            values["port_range"] = parse_port_range(port_range)

        for key in FLOAT_KEYS:
            raw = overrides.get(key) or os.getenv(f"FURNACE_{key.upper()}") or config.get(key)
            if raw is not None:
                try:
                    values[key] = float(raw)
                except (TypeError, ValueError) as exc:
                    raise ValueError(f"{key} must be a number, got {raw!r}") from exc

        for key in STRING_KEYS:
            raw = overrides.get(key) or os.getenv(f"FURNACE_{key.upper()}") or config.get(key)
            if raw:
                values[key] = str(raw)

        check = overrides.get("check_port_available")
        if check is None:
            check = _parse_bool(os.getenv("FURNACE_CHECK_PORT_AVAILABLE"), config.get("check_port_available"))
        if check is not None:
            values["check_port_available"] = bool(check)

        versions = overrides.get("runtime_versions") or config.get("runtime_versions")
        if versions:
            values["runtime_versions"] = [str(v) for v in versions]

        runtime_command = overrides.get("runtime_command") or config.get("runtime_command")
        if runtime_command:
            values["runtime_command"] = [str(c) for c in runtime_command]

        engines = default_engines()
        for name, data in (config.get("engines") or {}).items():
            engines[name] = EngineProfile.from_dict(name, data or {})
        engines.update(overrides.get("engines") or {})
        values["engines"] = engines

        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key in known and key not in values:
                values[key] = value

        settings = cls(**values)
        logger.debug(
            f"Settings loaded: home={settings.home}, ports={settings.port_range[0]}-{settings.port_range[1]}"
        )
        return settings


def detect_engines(settings: FurnaceSettings) -> Dict[str, Optional[str]]:
    """Map each serving engine and PHP-FPM version to the binary found on PATH."""
    found: Dict[str, Optional[str]] = {}
    for name, profile in sorted(settings.engines.items()):
        found[name] = shutil.which(profile.command[0])
    for version in settings.runtime_versions:
        binary = settings.runtime_command[0].format(version=version)
        found[f"php-fpm {version}"] = shutil.which(binary)
    return found


def parse_port_range(value: Any) -> Tuple[int, int]:
    """Accept ``"8100-8199"``, ``[8100, 8199]`` or ``(8100, 8199)``."""
    try:
        if isinstance(value, str):
            start, end = value.split("-", 1)
        else:
            start, end = value
        return int(start), int(end)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid port range: {value!r}") from exc


def _parse_bool(*candidates: Any) -> Optional[bool]:
    for raw in candidates:
        if raw is None:
            continue
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
    return None


def _load_config(config_path: Path) -> Dict[str, Any]:
    """Load configuration from YAML file"""
    if not config_path.exists():
        logger.debug(f"Config file not found: {config_path}")
        return {}

    with open(config_path, "r", encoding="utf-8") as handle:
        config = yaml.safe_load(handle) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")
    return config


__all__ = [
    "EngineProfile",
    "FurnaceSettings",
    "default_engines",
    "default_runtime_command",
    "detect_engines",
    "detect_platform",
    "parse_port_range",
]
