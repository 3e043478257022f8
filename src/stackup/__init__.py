"""stackup: Run Supfile commands and targets on groups of hosts over SSH."""

__version__ = "0.1.0"

from .config import Command, Network, Supfile, load_supfile, merge, parse_supfile
from .environment import EnvList
from .executor import Executor, HostStatus, RunOutcome
from .hosts import Host, HostResolver
from .planner import expand_plan
from .runner import RunOptions, run_supfile

__all__ = [
    "Command",
    "Network",
    "Supfile",
    "load_supfile",
    "merge",
    "parse_supfile",
    "EnvList",
    "Executor",
    "HostStatus",
    "RunOutcome",
    "Host",
    "HostResolver",
    "expand_plan",
    "RunOptions",
    "run_supfile",
]
