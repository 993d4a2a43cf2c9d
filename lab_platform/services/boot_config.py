"""Boot Configuration Builder - cloud-init documents for lab containers"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, List, Mapping, Tuple

import yaml


@dataclass(frozen=True)
class DependencySpec:
    """A catalog entry: human label plus first-boot install commands"""
    label: str
    commands: Tuple[str, ...]


# Closed set of installable dependencies. `{ssh_user}` is substituted at build time.
DEPENDENCY_CATALOG: Mapping[str, DependencySpec] = MappingProxyType({
    "node": DependencySpec(
        label="Node.js 20.x",
        commands=(
            "curl -fsSL https://deb.nodesource.com/setup_20.x | bash -",
            "apt-get install -y nodejs",
        ),
    ),
    "postgresql": DependencySpec(
        label="PostgreSQL 16",
        commands=("apt-get install -y postgresql postgresql-contrib",),
    ),
    "nginx": DependencySpec(
        label="Nginx",
        commands=("apt-get install -y nginx",),
    ),
    "redis": DependencySpec(
        label="Redis 7",
        commands=("apt-get install -y redis-server",),
    ),
    "docker": DependencySpec(
        label="Docker (docker.io)",
        commands=(
            "apt-get install -y docker.io",
            "usermod -aG docker {ssh_user} || true",
        ),
    ),
    "mongodb": DependencySpec(
        label="MongoDB",
        commands=("apt-get install -y mongodb",),
    ),
})

BASE_PACKAGES: Tuple[str, ...] = (
    "curl",
    "wget",
    "ca-certificates",
    "gnupg",
    "software-properties-common",
    "openssh-server",
)

SSH_SERVICE_COMMANDS: Tuple[str, ...] = (
    "systemctl enable ssh",
    "systemctl restart ssh",
)


def dependency_commands(selected: Iterable[str], ssh_user: str) -> List[str]:
    """
    Resolve install commands for the selected dependencies.

    Commands come out in selection order. Keys missing from the catalog are
    skipped, and a key selected twice contributes its commands once.
    """
    commands: List[str] = []
    seen = set()
    for key in selected:
        entry = DEPENDENCY_CATALOG.get(key)
        if entry is None or key in seen:
            continue
        seen.add(key)
        commands.extend(cmd.format(ssh_user=ssh_user) for cmd in entry.commands)
    return commands


def build_boot_config(
    selected: Iterable[str],
    ssh_public_key: str,
    ssh_user: str = "labuser"
) -> str:
    """
    Build the #cloud-config document injected into a new container.

    Args:
        selected: Dependency keys in the order they should be installed
        ssh_public_key: OpenSSH public key for the administrative account
        ssh_user: Name of the single non-root sudo account

    Returns:
        cloud-init user-data as a string
    """
    document = {
        "package_update": True,
        "package_upgrade": True,
        "packages": list(BASE_PACKAGES),
        "users": [
            {
                "name": ssh_user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": [ssh_public_key.strip()],
            }
        ],
        "ssh_pwauth": False,
        "runcmd": list(SSH_SERVICE_COMMANDS) + dependency_commands(selected, ssh_user),
    }
    body = yaml.safe_dump(document, sort_keys=False, default_flow_style=False, width=4096)
    return "#cloud-config\n" + body


def describe_dependencies(selected: Iterable[str]) -> List[str]:
    """Human labels for the known keys in a selection"""
    return [DEPENDENCY_CATALOG[key].label for key in selected if key in DEPENDENCY_CATALOG]
