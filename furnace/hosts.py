"""
This module keeps local name resolution entries for allocated hostnames.

Each binding is a dnsmasq configuration file mapping one hostname to the
address its environment listens on. Point dnsmasq at the directory with
``conf-dir=<directory>`` to make the hostnames resolve.
"""

import os
from pathlib import Path
from typing import Dict


def get_binding_path(hostname: str, directory: str) -> str:
    """Get the path to the binding file for a hostname."""
    return os.path.join(directory, f"{hostname}.conf")


def write_binding(hostname: str, address: str, directory: str) -> str:
    """Write the binding file for ``hostname`` and return its path."""
    if not os.path.exists(directory):
        os.makedirs(directory)
    file_path = get_binding_path(hostname, directory)
    with open(file_path, "w", encoding="utf-8") as f:
        f.write(f"address=/{hostname}/{address}\n")
    return file_path


def read_binding(hostname: str, directory: str) -> str:
    """Read the address a hostname is bound to."""
    file_path = get_binding_path(hostname, directory)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Binding file not found for hostname: {hostname}")
    content = Path(file_path).read_text(encoding="utf-8").strip()
    # address=/<hostname>/<address>
    return content.rsplit("/", 1)[-1]


def clear_binding(hostname: str, directory: str) -> None:
    """Clear (delete) the binding file for a hostname."""
    file_path = get_binding_path(hostname, directory)
    if os.path.exists(file_path):
        os.remove(file_path)


def list_bindings(directory: str) -> Dict[str, str]:
    """List all bound hostnames and their addresses."""
    if not os.path.exists(directory):
        return {}

    bindings = {}
    for filename in sorted(os.listdir(directory)):
        if filename.endswith(".conf"):
            hostname = filename[:-5]
            bindings[hostname] = read_binding(hostname, directory)
    return bindings

