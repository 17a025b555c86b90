"""Port and hostname allocation for running environments."""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from loguru import logger

from furnace import hosts
from furnace.errors import Conflict, ResourceExhausted
from furnace.recipe import Recipe


@dataclass(frozen=True)
class Allocation:
    """Resources reserved for one running recipe."""

    recipe_name: str
    port: int
    hostname_binding: str
    address: str = "127.0.0.1"

    @property
    def url(self) -> str:
        return f"http://{self.hostname_binding}:{self.port}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "recipe_name": self.recipe_name,
            "port": self.port,
            "hostname_binding": self.hostname_binding,
            "address": self.address,
        }


class PortAllocator:
    """Hands out the lowest free port in a range plus an exclusive hostname.

    Reservation happens under a single lock, so two recipes allocating at the
    same time can never be given the same port or hostname.
    """

    def __init__(
        self,
        port_range: Tuple[int, int] = (8100, 8199),
        *,
        address: str = "127.0.0.1",
        bindings_directory: Optional[str] = None,
        check_available: bool = True,
    ) -> None:
        self.port_range = port_range
        self.address = address
        self.bindings_directory = bindings_directory
        self.check_available = check_available
        self._lock = threading.Lock()
        self._allocations: Dict[str, Allocation] = {}

    # ------------------------------------------------------------------
    def allocate(self, recipe: Recipe) -> Allocation:
        with self._lock:
            current = self._allocations.get(recipe.name)
            if current is not None:
                raise Conflict(
                    f"Recipe {recipe.name} already holds port {current.port}",
                    recipe_name=recipe.name,
                    stage="allocate",
                )

            for other in self._allocations.values():
                if other.hostname_binding == recipe.site_hostname:
                    raise Conflict(
                        f"Hostname {recipe.site_hostname} is bound to running recipe {other.recipe_name}",
                        recipe_name=recipe.name,
                        stage="allocate",
                    )

            port = self._find_free_port()
            if port is None:
                start, end = self.port_range
                raise ResourceExhausted(
                    f"No free port in range {start}-{end}",
                    recipe_name=recipe.name,
                    stage="allocate",
                )

            allocation = Allocation(
                recipe_name=recipe.name,
                port=port,
                hostname_binding=recipe.site_hostname,
                address=self.address,
            )
            self._allocations[recipe.name] = allocation

        self._write_binding(allocation)
        logger.info(f"Allocated {allocation.hostname_binding} -> {allocation.address}:{allocation.port} for {recipe.name}")
        return allocation

    def release(self, recipe_name: str) -> Optional[Allocation]:
        """Free the recipe's port and hostname; releasing nothing is a no-op."""
        with self._lock:
            allocation = self._allocations.pop(recipe_name, None)
        if allocation is None:
            return None

        if self.bindings_directory:
            try:
                hosts.clear_binding(allocation.hostname_binding, self.bindings_directory)
            except OSError as exc:
                logger.warning(f"Failed to remove hostname binding for {allocation.hostname_binding}: {exc}")
        logger.info(f"Released port {allocation.port} and {allocation.hostname_binding} from {recipe_name}")
        return allocation

    # ------------------------------------------------------------------
    def get(self, recipe_name: str) -> Optional[Allocation]:
        with self._lock:
            return self._allocations.get(recipe_name)

    def allocations(self) -> List[Allocation]:
        with self._lock:
            return sorted(self._allocations.values(), key=lambda a: a.recipe_name)

    @property
    def held_ports(self) -> List[int]:
        with self._lock:
            return sorted(a.port for a in self._allocations.values())

    @property
    def held_hostnames(self) -> List[str]:
        with self._lock:
            return sorted(a.hostname_binding for a in self._allocations.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._allocations)

    # ------------------------------------------------------------------
    def _find_free_port(self) -> Optional[int]:
        held = {a.port for a in self._allocations.values()}
        start, end = self.port_range
        for port in range(start, end + 1):
            if port in held:
                continue
            if self.check_available and not self._port_is_free(port):
                logger.debug(f"Port {port} is in use by another program, skipping")
                continue
            return port
        return None

    def _port_is_free(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.address, port))
            except OSError:
                return False
        return True

    def _write_binding(self, allocation: Allocation) -> None:
        if not self.bindings_directory:
            return
        try:
            hosts.write_binding(allocation.hostname_binding, allocation.address, self.bindings_directory)
        except OSError as exc:
            logger.warning(f"Failed to write hostname binding for {allocation.hostname_binding}: {exc}")


__all__ = ["Allocation", "PortAllocator"]
