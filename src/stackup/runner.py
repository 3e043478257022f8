#!/usr/bin/env python3
"""Main entry point for stackup."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Mapping, Sequence

from . import __version__
from .config import Command, Network, Supfile, find_supfile, load_supfile
from .environment import EnvList, Evaluator, ShellEvaluator
from .errors import ExecutionError, StackupError, UnknownNetworkError, UsageError
from .executor import Executor, HostStatus, OutputCallback, RunOutcome, StatusCallback
from .hosts import Host, HostResolver, InventoryRunner
from .planner import expand_plan
from .transport import SSHTransport, Transport

logger = logging.getLogger(__name__)


@dataclass
class RunOptions:
    """Everything an invocation needs besides its positional arguments."""

    dirname: Path = field(default_factory=Path.cwd)
    supfile: str | None = None
    only: str | None = None
    exclude: str | None = None
    env_vars: list[str] = field(default_factory=list)
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)
    evaluator: Evaluator | None = None
    inventory_runner: InventoryRunner | None = None


@dataclass
class PreparedRun:
    """A fully resolved invocation, ready to execute."""

    supfile: Supfile
    network: Network
    hosts: list[Host]
    plan: list[Command]
    env: EnvList


def load_configuration(options: RunOptions) -> Supfile:
    path = find_supfile(options.dirname, options.supfile)
    return load_supfile(path).resolve_includes()


def build_env(
    conf: Supfile,
    network: Network,
    options: RunOptions,
    now: datetime | None = None,
) -> EnvList:
    """Assemble and resolve the environment exported to every command.

    Order: Supfile env, network env, ``--env`` values, then the SUP_* run
    variables. ``SUP_ENV`` is added after resolution, verbatim.
    """
    net_env = network.env.copy()
    cli_flags: list[str] = []
    for item in options.env_vars:
        if not item:
            continue
        key, sep, value = item.partition("=")
        net_env.set(key, value)
        if sep:
            cli_flags.append(f"-e {key}={_quote(value)}")

    now = now or datetime.now(timezone.utc)
    net_env.set("SUP_NETWORK", network.name)
    net_env.set("SUP_TIME", options.environ.get("SUP_TIME") or now.strftime("%Y-%m-%dT%H:%M:%SZ"))
    net_env.set("SUP_USER", options.environ.get("SUP_USER") or options.environ.get("USER", ""))

    env = conf.env.copy()
    for var in net_env:
        env.set(var.key, var.value)
    env.resolve_values(options.evaluator or ShellEvaluator(cwd=conf.base_dir))
    env.set("SUP_ENV", " ".join(cli_flags))
    return env


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def prepare_run(conf: Supfile, options: RunOptions, args: Sequence[str]) -> PreparedRun:
    """Resolve the network, hosts, plan and environment for ``args``."""
    if not args:
        raise UsageError("no network given")
    network = conf.networks.get(args[0])
    if network is None:
        raise UnknownNetworkError(f"unknown network: {args[0]!r}")

    resolver = HostResolver(
        network,
        only=options.only,
        exclude=options.exclude,
        default_user=options.environ.get("USER"),
        inventory_runner=options.inventory_runner,
    )
    names = resolver.host_names()
    hosts = resolver.resolve(names)
    if len(args) < 2:
        raise UsageError("no command or target given")
    plan = expand_plan(conf, args[1:])
    env = build_env(conf, network, options)
    return PreparedRun(supfile=conf, network=network, hosts=hosts, plan=plan, env=env)


def build_executor(
    prepared: PreparedRun,
    *,
    transport: Transport | None = None,
    local_transport: Transport | None = None,
    on_output: OutputCallback | None = None,
    on_status: StatusCallback | None = None,
    stdin: BinaryIO | None = None,
) -> Executor:
    return Executor(
        prepared.hosts,
        prepared.plan,
        prepared.env,
        transport or SSHTransport(),
        local_transport=local_transport,
        on_output=on_output,
        on_status=on_status,
        stdin=stdin,
        base_dir=prepared.supfile.base_dir,
    )


def run_supfile(
    options: RunOptions,
    args: Sequence[str],
    *,
    transport: Transport | None = None,
    local_transport: Transport | None = None,
    on_output: OutputCallback | None = None,
    on_status: StatusCallback | None = None,
    stdin: BinaryIO | None = None,
) -> RunOutcome:
    """Load, resolve and run; raises ``ExecutionError`` if any host failed."""
    conf = load_configuration(options)
    prepared = prepare_run(conf, options, args)
    executor = build_executor(
        prepared,
        transport=transport,
        local_transport=local_transport,
        on_output=on_output,
        on_status=on_status,
        stdin=stdin,
    )
    outcome = asyncio.run(executor.run_all())
    _raise_for_outcome(outcome)
    return outcome


def _raise_for_outcome(outcome: RunOutcome) -> None:
    if outcome.ok:
        return
    failed = sorted({result.host for result in outcome.failures})
    raise ExecutionError(f"failed hosts: {', '.join(failed)}", outcome)


# Command line ---------------------------------------------------------------


class Ansi:
    RED = "\033[91m"
    RESET = "\033[0m"
    # ANSI colors for different hosts
    HOSTS = [
        "\033[36m",  # Cyan
        "\033[33m",  # Yellow
        "\033[35m",  # Magenta
        "\033[32m",  # Green
        "\033[34m",  # Blue
        "\033[91m",  # Light Red
        "\033[96m",  # Light Cyan
        "\033[93m",  # Light Yellow
    ]


def use_color() -> bool:
    return sys.stdout.isatty() and not os.environ.get("NO_COLOR")


def colorize(text: str, color: str | None) -> str:
    if not color or not use_color():
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stackup",
        description="Run Supfile commands and targets on groups of hosts",
    )
    parser.add_argument("network", nargs="?", help="Network (group of hosts) to run against")
    parser.add_argument("commands", nargs="*", help="Commands or targets to run, in order")
    parser.add_argument(
        "-f",
        "--file",
        dest="supfile",
        help="Custom path to the Supfile (default: ./Supfile, then ./Supfile.yml)",
    )
    parser.add_argument(
        "-e",
        "--env",
        dest="env_vars",
        action="append",
        default=[],
        metavar="KEY[=VALUE]",
        help="Set an environment variable; a bare name exports an empty value",
    )
    parser.add_argument("--only", help="Run only on hosts matching this regexp")
    parser.add_argument("--except", dest="exclude", help="Skip hosts matching this regexp")
    parser.add_argument(
        "--no-prefix",
        action="store_true",
        help="Print host output without the [host] prefix",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument("-D", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Python logging level (default: WARNING)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging("DEBUG" if args.debug else args.log_level)

    options = RunOptions(
        supfile=args.supfile,
        only=args.only,
        exclude=args.exclude,
        env_vars=args.env_vars,
    )
    positional = [args.network, *args.commands] if args.network else []

    try:
        conf = load_configuration(options)
        try:
            prepared = prepare_run(conf, options, positional)
        except UsageError as exc:
            _print_usage(conf, positional, exc)
            return exc.exit_code

        if args.dashboard:
            return _run_dashboard(prepared)
        return _run_headless(prepared, prefix=not args.no_prefix)
    except StackupError as exc:
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            logger.debug("run failed", exc_info=True)
        print(colorize(f"Error: {exc}", Ansi.RED), file=sys.stderr)
        return exc.exit_code


def _print_usage(conf: Supfile, positional: Sequence[str], exc: UsageError) -> None:
    lines = [f"Usage: stackup [OPTIONS] NETWORK COMMAND [...] ({exc})", ""]
    if not positional:
        lines.append("Networks:")
        for name in conf.networks.names:
            lines.append(f"- {name}")
    else:
        lines.append("Targets:")
        for name in conf.targets.names:
            lines.append(f"- {name:<20} {' '.join(conf.targets.get(name) or [])}")
        lines.append("")
        lines.append("Commands:")
        for name in conf.commands.names:
            command = conf.commands.get(name)
            lines.append(f"- {name:<20} {command.desc if command else ''}")
    print("\n".join(lines), file=sys.stderr)


def _run_headless(prepared: PreparedRun, prefix: bool = True) -> int:
    """Run executor without TUI dashboard."""
    names = [host.name for host in prepared.hosts]
    if any(cmd.local for cmd in prepared.plan):
        names.append("localhost")
    width = max(len(name) for name in names)

    # Assign colors to hosts
    host_colors = {name: Ansi.HOSTS[i % len(Ansi.HOSTS)] for i, name in enumerate(names)}

    def on_output(host_name: str, line: str, is_stderr: bool) -> None:
        stream = sys.stderr if is_stderr else sys.stdout
        if prefix:
            label = colorize(f"[{host_name:<{width}}]", host_colors.get(host_name))
            line = f"{label} {line}"
        print(line, file=stream, flush=True)

    def on_status(host_name: str, status: HostStatus) -> None:
        if status in (HostStatus.FAILED, HostStatus.SKIPPED):
            label = colorize(f"[{host_name:<{width}}]", host_colors.get(host_name))
            state = executor.states.get(host_name)
            detail = f" ({state.summary})" if state and state.summary else ""
            print(f"{label} Status: {status.value}{detail}", file=sys.stderr)

    executor = build_executor(prepared, on_output=on_output, on_status=on_status)
    outcome = asyncio.run(executor.run_all())

    # Check final status
    _raise_for_outcome(outcome)
    return 0


def _run_dashboard(prepared: PreparedRun) -> int:
    from .dashboard import Dashboard

    if any(cmd.stdin for cmd in prepared.plan):
        raise UsageError("--dashboard cannot forward stdin; run without it")
    app = Dashboard(prepared)
    app.run()
    if app.outcome is None:
        raise ExecutionError("dashboard closed before the run completed")
    _raise_for_outcome(app.outcome)
    return 0


if __name__ == "__main__":
    sys.exit(main())
