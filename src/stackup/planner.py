"""Expand command and target names into an ordered execution plan."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .config import Command, Supfile
from .errors import LoadError, TargetCycleError, UnknownCommandError, UsageError

logger = logging.getLogger(__name__)


def expand_plan(
    supfile: Supfile,
    names: Sequence[str],
    base_dir: Path | None = None,
) -> list[Command]:
    """Return the commands to run, in order, for the operator's names.

    Targets expand in place, recursively, in their declared order.
    """
    if not names:
        raise UsageError("no command or target given")
    base_dir = base_dir or supfile.base_dir

    plan: list[Command] = []
    for name in names:
        _expand(supfile, name, plan, stack=[])
    plan = [_load_script(cmd, base_dir) for cmd in plan]
    logger.debug("plan=%s", ",".join(cmd.name for cmd in plan))
    return plan


def _expand(supfile: Supfile, name: str, plan: list[Command], stack: list[str]) -> None:
    # Targets shadow commands of the same name.
    members = supfile.targets.get(name)
    if members is None:
        command = supfile.commands.get(name)
        if command is None:
            raise UnknownCommandError(name)
        plan.append(command)
        return

    if name in stack:
        chain = " -> ".join([*stack, name])
        raise TargetCycleError(f"target {name!r} references itself: {chain}")

    stack.append(name)
    for member in members:
        _expand(supfile, member, plan, stack)
    stack.pop()


def _load_script(command: Command, base_dir: Path) -> Command:
    # A script is shipped as the remote command text.
    if not command.script:
        return command
    path = Path(command.script).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    try:
        text = path.read_text()
    except OSError as exc:
        raise LoadError(f"command {command.name!r}: unable to read script {path}: {exc}") from exc
    return replace(command, run=text)
