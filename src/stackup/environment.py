"""Ordered environment variables and their shell resolution."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Iterable, Iterator, Mapping

from .errors import EnvResolutionError

logger = logging.getLogger(__name__)

_EXPORT_ESCAPES = str.maketrans({"\\": "\\\\", '"': '\\"', "$": "\\$", "`": "\\`"})


def stringify(value: Any) -> str:
    """Render a YAML scalar the way it was written."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class EnvVar:
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}"

    def as_export(self) -> str:
        """Return a bash export statement holding the literal value."""
        return f'export {self.key}="{self.value.translate(_EXPORT_ESCAPES)}";'


class EnvList:
    """Environment variables that keep declaration order.

    Later variables may reference earlier ones, so order matters both for
    rendering and for resolution.
    """

    def __init__(self, items: Iterable[tuple[str, str]] | None = None):
        self._vars: list[EnvVar] = []
        for key, value in items or ():
            self.set(key, value)

    @classmethod
    def from_mapping(cls, mapping: Mapping[Any, Any] | None) -> "EnvList":
        """Build a list from a YAML mapping, stringifying its values."""
        if not mapping:
            return cls()
        return cls((str(k), stringify(v)) for k, v in mapping.items())

    def set(self, key: str, value: str) -> None:
        """Update ``key`` in place, or append it."""
        for var in self._vars:
            if var.key == key:
                var.value = value
                return
        self._vars.append(EnvVar(key, value))

    def get(self, key: str) -> str:
        """Return the value of ``key``, or an empty string."""
        for var in self._vars:
            if var.key == key:
                return var.value
        return ""

    def keys(self) -> list[str]:
        """Variable names in order."""
        return [var.key for var in self._vars]

    def as_dict(self) -> dict[str, str]:
        return {var.key: var.value for var in self._vars}

    def copy(self) -> "EnvList":
        """Return an independent copy."""
        return EnvList((var.key, var.value) for var in self._vars)

    def as_export(self) -> str:
        """Render every variable as ``export KEY="value"; `` in order."""
        return "".join(var.as_export() + " " for var in self._vars)

    def resolve_values(self, evaluator: Evaluator | None = None) -> None:
        """Evaluate every raw value in order, in place.

        Each value is evaluated with all previously resolved entries exported,
        so ``$FOO-suffix`` sees the resolved ``FOO``.
        """
        evaluator = evaluator or ShellEvaluator()
        resolved = EnvList()
        for var in self._vars:
            var.value = evaluator.evaluate(var.key, var.value, resolved)
            resolved.set(var.key, var.value)

    def __iter__(self) -> Iterator[EnvVar]:
        return iter(self._vars)

    def __len__(self) -> int:
        return len(self._vars)

    def __contains__(self, key: object) -> bool:
        return any(var.key == key for var in self._vars)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EnvList):
            return NotImplemented
        return [(v.key, v.value) for v in self] == [(v.key, v.value) for v in other]

    def __repr__(self) -> str:
        return f"EnvList({[(v.key, v.value) for v in self._vars]!r})"


class Evaluator:
    """Turns a raw value into its resolved string."""

    def evaluate(self, key: str, raw: str, exported: EnvList) -> str:
        raise NotImplementedError


class ShellEvaluator(Evaluator):
    """Resolve values with a real bash, one subprocess per variable."""

    def __init__(self, cwd: str | Path | None = None, shell: str = "bash"):
        self.cwd = cwd
        self.shell = shell

    def evaluate(self, key: str, raw: str, exported: EnvList) -> str:
        script = f"{exported.as_export()}echo -n {raw};"
        logger.debug("resolving %s", key)
        try:
            proc = subprocess.run(
                [self.shell, "-c", script],
                capture_output=True,
                text=True,
                check=False,
                cwd=str(self.cwd) if self.cwd is not None else None,
            )
        except OSError as exc:
            raise EnvResolutionError(key, str(exc)) from exc
        if proc.returncode != 0:
            raise EnvResolutionError(key, proc.stderr.strip() or f"exit status {proc.returncode}")
        return proc.stdout


class _Unset(dict):
    # Unset variables expand to nothing, as in the shell.
    def __missing__(self, key: str) -> str:
        return ""


class TemplateEvaluator(Evaluator):
    """In-process ``$NAME`` substitution, no subprocesses involved."""

    def evaluate(self, key: str, raw: str, exported: EnvList) -> str:
        try:
            return Template(raw).substitute(_Unset(exported.as_dict()))
        except ValueError as exc:
            raise EnvResolutionError(key, str(exc)) from exc
