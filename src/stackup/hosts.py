"""Resolve a network into the concrete list of hosts to run against."""

from __future__ import annotations

import getpass
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import Network
from .errors import InventoryError, NetworkNoHostsError, ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22

# (command) -> stdout
InventoryRunner = Callable[[str], str]


@dataclass(frozen=True)
class Host:
    """A single endpoint, as declared plus its parsed connection details."""

    name: str
    address: str
    port: int = DEFAULT_PORT
    user: str | None = None
    bastion: str | None = None
    identity_file: Path | None = None

    @property
    def identity(self) -> str:
        """Value exported to commands as ``$SUP_HOST``."""
        return f"{self.address}:{self.port}"

    def __str__(self) -> str:
        return self.name


def parse_host(
    value: str,
    *,
    user: str | None = None,
    bastion: str | None = None,
    identity_file: Path | None = None,
) -> Host:
    """Parse ``[ssh://][user@]address[:port]``."""
    text = value.strip()
    if text.startswith("ssh://"):
        text = text[len("ssh://"):]

    host_user = user
    if "@" in text:
        host_user, _, text = text.rpartition("@")

    port = DEFAULT_PORT
    address = text
    if text.startswith("["):
        # [ipv6]:port
        closing = text.find("]")
        if closing == -1:
            raise ResolutionError(f"invalid host {value!r}")
        address = text[1:closing]
        rest = text[closing + 1:]
        if rest.startswith(":"):
            port = _parse_port(rest[1:], value)
    elif text.count(":") == 1:
        address, _, port_text = text.partition(":")
        port = _parse_port(port_text, value)

    if not address:
        raise ResolutionError(f"invalid host {value!r}")
    return Host(
        name=value,
        address=address,
        port=port,
        user=host_user or None,
        bastion=bastion,
        identity_file=identity_file,
    )


def _parse_port(text: str, value: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise ResolutionError(f"invalid port in host {value!r}") from None
    if not 0 < port < 65536:
        raise ResolutionError(f"invalid port in host {value!r}")
    return port


def run_inventory(command: str) -> str:
    """Run an inventory command with ``/bin/sh`` and return its stdout."""
    try:
        proc = subprocess.run(
            ["/bin/sh", "-c", command],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise InventoryError(f"inventory command failed: {exc}") from exc
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit status {proc.returncode}"
        raise InventoryError(f"inventory command failed: {detail}")
    return proc.stdout


def parse_inventory(output: str) -> list[str]:
    """Split inventory output into hosts, skipping blanks and comments."""
    hosts: list[str] = []
    for line in output.splitlines():
        host = line.strip()
        if not host or host.startswith("#"):
            continue
        hosts.append(host)
    return hosts


def compile_filter(pattern: str | None, flag: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ResolutionError(f"{flag}: error parsing regexp: {exc}") from None


class HostResolver:
    """Turns a network plus operator filters into an ordered host list."""

    def __init__(
        self,
        network: Network,
        *,
        only: str | None = None,
        exclude: str | None = None,
        default_user: str | None = None,
        inventory_runner: InventoryRunner | None = None,
    ):
        self.network = network
        # Compile early so a bad pattern fails before any command runs.
        self.only = compile_filter(only, "--only")
        self.exclude = compile_filter(exclude, "--except")
        self.default_user = default_user
        self.inventory_runner = inventory_runner or run_inventory

    def host_names(self) -> list[str]:
        """The network's declared or inventoried host strings, unfiltered."""
        if self.network.inventory:
            logger.debug("network=%s running inventory", self.network.name)
            return parse_inventory(self.inventory_runner(self.network.inventory))
        return list(self.network.hosts)

    def resolve(self, names: list[str] | None = None) -> list[Host]:
        """Filter, deduplicate and parse the network's hosts."""
        if names is None:
            names = self.host_names()
        if not names:
            raise NetworkNoHostsError(f"network {self.network.name!r} has no hosts")

        if self.only is not None:
            names = [name for name in names if self.only.search(name)]
            if not names:
                raise ResolutionError(f"no hosts match --only {self.only.pattern!r} regexp")

        if self.exclude is not None:
            names = [name for name in names if not self.exclude.search(name)]
            if not names:
                raise ResolutionError(f"no hosts left after --except {self.exclude.pattern!r} regexp")

        unique = list(dict.fromkeys(names))
        user = self.network.user or self.default_user or _current_user()
        hosts = [
            parse_host(
                name,
                user=user,
                bastion=self.network.bastion,
                identity_file=self.network.identity_file,
            )
            for name in unique
        ]
        logger.debug("network=%s hosts=%s", self.network.name, ",".join(h.name for h in hosts))
        return hosts


def _current_user() -> str | None:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None
