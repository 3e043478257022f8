"""Supfile loader: networks, commands, targets, env and includes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Mapping, TypeVar

import yaml

from .environment import EnvList, stringify
from .errors import LoadError, MustUpgradeError, UnsupportedVersionError

logger = logging.getLogger(__name__)

DEFAULT_SUPFILES = ("Supfile", "Supfile.yml")

VERSIONS = ("0.1", "0.2", "0.3", "0.4", "0.5", "0.6")
LATEST_VERSION = VERSIONS[-1]

T = TypeVar("T")


@dataclass
class Upload:
    """Copy ``src`` from localhost to ``dst`` on every host."""

    src: str
    dst: str
    exclude: str = ""

    @property
    def exclude_patterns(self) -> list[str]:
        return [p.strip() for p in self.exclude.split(",") if p.strip()]


@dataclass
class Network:
    """A group of hosts plus network-scoped env and connection settings."""

    name: str
    hosts: list[str] = field(default_factory=list)
    inventory: str | None = None
    bastion: str | None = None
    env: EnvList = field(default_factory=EnvList)
    user: str | None = None
    identity_file: Path | None = None


@dataclass
class Command:
    """A named runnable unit."""

    name: str
    desc: str = ""
    local: str = ""
    run: str = ""
    script: str = ""
    upload: list[Upload] = field(default_factory=list)
    stdin: bool = False
    once: bool = False
    serial: int = 0
    # Superseded by ``once`` in v0.3.
    run_once: bool = False


@dataclass
class Include:
    supfile: str
    env: list[str] = field(default_factory=list)


class Registry(Generic[T]):
    """Name-indexed entities with a declaration-ordered name listing."""

    kind = "entry"

    def __init__(self, items: Mapping[str, T] | None = None):
        self._items: dict[str, T] = dict(items or {})
        self.names: list[str] = []
        self._reindex()

    def _reindex(self) -> None:
        self.names = list(self._items)

    def get(self, name: str) -> T | None:
        """Return the named entry, or None."""
        return self._items.get(name)

    def add(self, name: str, item: T) -> None:
        """Add or replace an entry."""
        self._items[name] = item
        self._reindex()

    def items(self) -> list[tuple[str, T]]:
        """(name, entry) pairs in declaration order."""
        return list(self._items.items())

    def values(self) -> list[T]:
        """Entries in declaration order."""
        return list(self._items.values())

    def merged(self, override: "Registry[T]") -> "Registry[T]":
        """Return a copy where ``override`` replaces same-named entries."""
        combined = type(self)(self._items)
        for name, item in override.items():
            if name in combined._items:
                logger.debug("%s %r from an included Supfile is overridden", self.kind, name)
            combined._items[name] = item
        combined._reindex()
        return combined

    def __contains__(self, name: object) -> bool:
        return name in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.names!r})"


class Networks(Registry[Network]):
    kind = "network"


class Commands(Registry[Command]):
    kind = "command"


class Targets(Registry[list[str]]):
    kind = "target"


@dataclass
class Supfile:
    """A parsed configuration document."""

    version: str = LATEST_VERSION
    networks: Networks = field(default_factory=Networks)
    commands: Commands = field(default_factory=Commands)
    targets: Targets = field(default_factory=Targets)
    env: EnvList = field(default_factory=EnvList)
    includes: list[Include] = field(default_factory=list)
    source: Path | None = None

    @property
    def base_dir(self) -> Path:
        if self.source is not None:
            return self.source.parent
        return Path.cwd()

    def resolve_includes(
        self,
        reader: Callable[[Path], bytes] | None = None,
        _seen: set[Path] | None = None,
    ) -> "Supfile":
        """Fold every include into this document, in declaration order.

        Each included document is loaded (and its own includes resolved) and
        then merged as the base layer under the document built so far.
        """
        reader = reader or _read_bytes
        seen = set(_seen or ())
        if self.source is not None:
            seen.add(self.source.resolve())

        merged = self
        for include in self.includes:
            path = (self.base_dir / include.supfile).resolve()
            if path in seen:
                raise LoadError(f"Recursive include detected for {include.supfile}")
            try:
                data = reader(path)
            except OSError as exc:
                raise LoadError(f"Unable to read included Supfile {include.supfile}: {exc}") from exc
            included = parse_supfile(data, source=path)
            included = included.resolve_includes(reader, seen)
            logger.debug("merging included Supfile %s", path)
            merged = merge(included, merged, include.env)
        return merged


def merge(base: Supfile, override: Supfile, injected: list[str]) -> Supfile:
    """Layer ``override`` on top of ``base`` and return a new document.

    Injected names are placed first, holding the override's values, so the
    base's own env entries can reference them.
    """
    env = EnvList()
    for name in injected:
        env.set(name, override.env.get(name))
    for var in base.env:
        env.set(var.key, var.value)
    for var in override.env:
        # Re-setting an injected name keeps its position.
        env.set(var.key, var.value)

    return Supfile(
        version=override.version,
        networks=base.networks.merged(override.networks),
        commands=base.commands.merged(override.commands),
        targets=base.targets.merged(override.targets),
        env=env,
        includes=list(override.includes),
        source=override.source,
    )


def find_supfile(dirname: str | Path, name: str | Path | None = None) -> Path:
    """Locate the Supfile to use, falling back from Supfile to Supfile.yml."""
    dirname = Path(dirname)
    if name:
        path = dirname / name
        if not path.exists():
            raise LoadError(f"Supfile not found: {path}")
        return path
    for candidate in DEFAULT_SUPFILES:
        path = dirname / candidate
        if path.exists():
            return path
    raise LoadError(f"No Supfile found in {dirname} (looked for {', '.join(DEFAULT_SUPFILES)})")


def load_supfile(path: str | Path) -> Supfile:
    """Load, parse and version-check a Supfile from disk."""
    path = Path(path).resolve()
    try:
        data = _read_bytes(path)
    except OSError as exc:
        raise LoadError(f"Unable to read Supfile {path}: {exc}") from exc
    return parse_supfile(data, source=path)


def parse_supfile(data: bytes | str, source: Path | None = None) -> Supfile:
    """Decode a Supfile and apply the version compatibility checks."""
    where = str(source) if source else "<Supfile>"
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise LoadError(f"{where}: invalid YAML: {exc}") from None
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise LoadError(f"{where}: top level must be a mapping")

    try:
        conf = Supfile(
            version=stringify(raw.get("version")),
            networks=_parse_networks(raw.get("networks")),
            commands=_parse_commands(raw.get("commands")),
            targets=_parse_targets(raw.get("targets")),
            env=_parse_env(raw.get("env"), "env"),
            includes=_parse_includes(raw.get("includes")),
            source=source,
        )
    except LoadError as exc:
        raise LoadError(f"{where}: {exc}") from None

    return check_compatibility(conf)


# Version compatibility ---------------------------------------------------


def _reject_run_once(conf: Supfile) -> str | None:
    for cmd in conf.commands.values():
        if cmd.run_once:
            return "command.run_once"
    return None


def _reject_v03_features(conf: Supfile) -> str | None:
    for cmd in conf.commands.values():
        if cmd.once:
            return "command.once"
        if cmd.local:
            return "command.local"
        if cmd.serial:
            return "command.serial"
    for network in conf.networks.values():
        if network.inventory:
            return "network.inventory"
    return None


def _reject_includes(conf: Supfile) -> str | None:
    if conf.includes:
        return "includes"
    return None


# (last version the check applies to, check); applied cumulatively from the
# declared version up to the latest one.
COMPAT_CHECKS: tuple[tuple[str, Callable[[Supfile], str | None]], ...] = (
    ("0.1", _reject_run_once),
    ("0.2", _reject_v03_features),
    ("0.5", _reject_includes),
)

RUN_ONCE_MIGRATED_UNTIL = "0.3"


def check_compatibility(conf: Supfile) -> Supfile:
    """Validate ``conf`` against its declared version.

    Returns the document with legacy fields migrated; raises if the document
    uses a feature its version does not support.
    """
    if conf.version == "":
        conf.version = "0.1"
    if conf.version not in VERSIONS:
        raise UnsupportedVersionError(f"unsupported Supfile version {conf.version}", LATEST_VERSION)
    declared = VERSIONS.index(conf.version)

    for until, check in COMPAT_CHECKS:
        if declared > VERSIONS.index(until):
            continue
        feature = check(conf)
        if feature:
            raise MustUpgradeError(f"{feature} is not supported in Supfile v{conf.version}")

    if declared <= VERSIONS.index(RUN_ONCE_MIGRATED_UNTIL):
        legacy = [name for name, cmd in conf.commands.items() if cmd.run_once]
        for name in legacy:
            conf.commands.add(name, replace(conf.commands.get(name), once=True))
        if legacy:
            logger.warning(
                "command.run_once was deprecated by command.once in Supfile v%s", conf.version
            )
    return conf


# Section parsers ----------------------------------------------------------


def _read_bytes(path: Path) -> bytes:
    return Path(path).read_bytes()


def _parse_env(raw: Any, where: str) -> EnvList:
    if raw is None:
        return EnvList()
    if not isinstance(raw, dict):
        raise LoadError(f"{where} must be a mapping")
    return EnvList.from_mapping(raw)


def _parse_networks(raw: Any) -> Networks:
    if raw is None:
        return Networks()
    if not isinstance(raw, dict):
        raise LoadError("networks must be a mapping")
    networks = Networks()
    for name, net_raw in raw.items():
        networks.add(str(name), _parse_network(str(name), net_raw or {}))
    return networks


def _parse_network(name: str, raw: Any) -> Network:
    """Parse a single network definition."""
    if not isinstance(raw, dict):
        raise LoadError(f"network {name!r} must be a mapping")

    hosts_raw = raw.get("hosts") or []
    if not isinstance(hosts_raw, list):
        raise LoadError(f"network {name!r}: hosts must be a list")
    hosts = [stringify(h) for h in hosts_raw if h is not None]

    inventory = raw.get("inventory") or None
    if inventory is not None and hosts:
        raise LoadError(f"network {name!r}: hosts and inventory are mutually exclusive")

    identity_file = raw.get("identity_file")
    return Network(
        name=name,
        hosts=hosts,
        inventory=str(inventory) if inventory is not None else None,
        bastion=str(raw["bastion"]) if raw.get("bastion") else None,
        env=_parse_env(raw.get("env"), f"network {name!r}: env"),
        user=str(raw["user"]) if raw.get("user") else None,
        identity_file=Path(identity_file).expanduser() if identity_file else None,
    )


def _parse_commands(raw: Any) -> Commands:
    if raw is None:
        return Commands()
    if not isinstance(raw, dict):
        raise LoadError("commands must be a mapping")
    commands = Commands()
    for name, cmd_raw in raw.items():
        commands.add(str(name), _parse_command(str(name), cmd_raw or {}))
    return commands


def _parse_command(name: str, raw: Any) -> Command:
    """Parse a single command definition."""
    if not isinstance(raw, dict):
        raise LoadError(f"command {name!r} must be a mapping")

    bodies = [key for key in ("local", "run", "script") if raw.get(key)]
    if len(bodies) > 1:
        raise LoadError(f"command {name!r}: only one of {', '.join(bodies)} may be set")

    serial = raw.get("serial") or 0
    if isinstance(serial, bool) or not isinstance(serial, int) or serial < 0:
        raise LoadError(f"command {name!r}: serial must be a non-negative integer")
    once = _parse_bool(raw.get("once"), name, "once")
    if once and serial:
        raise LoadError(f"command {name!r}: once and serial are mutually exclusive")

    upload_raw = raw.get("upload") or []
    if not isinstance(upload_raw, list):
        raise LoadError(f"command {name!r}: upload must be a list")

    return Command(
        name=name,
        desc=stringify(raw.get("desc")),
        local=stringify(raw.get("local")),
        run=stringify(raw.get("run")),
        script=stringify(raw.get("script")),
        upload=[_parse_upload(name, item) for item in upload_raw],
        stdin=_parse_bool(raw.get("stdin"), name, "stdin"),
        once=once,
        serial=serial,
        run_once=_parse_bool(raw.get("run_once"), name, "run_once"),
    )


def _parse_upload(command: str, raw: Any) -> Upload:
    if not isinstance(raw, dict):
        raise LoadError(f"command {command!r}: upload entries must be mappings")
    src = raw.get("src")
    dst = raw.get("dst")
    if not src or not dst:
        raise LoadError(f"command {command!r}: upload needs both src and dst")
    return Upload(src=str(src), dst=str(dst), exclude=stringify(raw.get("exclude")))


def _parse_bool(value: Any, command: str, key: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise LoadError(f"command {command!r}: {key} must be true or false")
    return value


def _parse_targets(raw: Any) -> Targets:
    if raw is None:
        return Targets()
    if not isinstance(raw, dict):
        raise LoadError("targets must be a mapping")
    targets = Targets()
    for name, members in raw.items():
        members = members or []
        if not isinstance(members, list):
            raise LoadError(f"target {name!r} must be a list of command or target names")
        targets.add(str(name), [stringify(m) for m in members])
    return targets


def _parse_includes(raw: Any) -> list[Include]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise LoadError("includes must be a list")
    includes: list[Include] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("supfile"):
            raise LoadError("each include needs a supfile path")
        env = item.get("env") or []
        if not isinstance(env, list):
            raise LoadError(f"include {item['supfile']!r}: env must be a list of names")
        includes.append(Include(supfile=str(item["supfile"]), env=[str(e) for e in env]))
    return includes
