"""Error types raised while loading, resolving and running a Supfile."""

from __future__ import annotations


class StackupError(Exception):
    """Base class for every fatal stackup error."""

    exit_code = 1


class LoadError(StackupError, ValueError):
    """Malformed or incompatible configuration document."""

    exit_code = 1


class MustUpgradeError(LoadError):
    """A document uses a feature its declared version does not support."""

    def __init__(self, message: str):
        super().__init__(f"{message}\n\nPlease bump the Supfile version to use this feature")


class UnsupportedVersionError(LoadError):
    """The declared version is not one we know how to read."""

    def __init__(self, message: str, latest: str):
        super().__init__(f"{message}\n\nCheck your Supfile version (latest supported version: {latest})")


class UsageError(StackupError):
    """The invocation is missing required arguments."""

    exit_code = 2


class ResolutionError(StackupError):
    """A name, host or filter could not be resolved."""

    exit_code = 5


class UnknownNetworkError(ResolutionError):
    exit_code = 3


class UnknownCommandError(ResolutionError):
    exit_code = 4

    def __init__(self, name: str):
        super().__init__(f"unknown command/target: {name!r}")
        self.name = name


class TargetCycleError(ResolutionError):
    exit_code = 4


class NetworkNoHostsError(ResolutionError):
    pass


class InventoryError(ResolutionError):
    """The network inventory command failed."""


class EnvResolutionError(StackupError):
    """A dynamic environment value could not be evaluated."""

    exit_code = 6

    def __init__(self, key: str, detail: str = ""):
        message = f"resolving env var {key} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.key = key


class ExecutionError(StackupError):
    """At least one host failed while running the plan."""

    exit_code = 7

    def __init__(self, message: str, outcome=None):
        super().__init__(message)
        self.outcome = outcome
