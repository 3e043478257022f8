"""Execution engine: runs the planned commands across the resolved hosts."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Callable, Sequence

import asyncssh

from .config import Command, Upload
from .environment import EnvList
from .errors import LoadError
from .hosts import Host
from .transport import LocalTransport, Transport
from .upload import build_archive, iter_chunks, remote_untar_command

logger = logging.getLogger(__name__)

LOCALHOST = Host(name="localhost", address="localhost", port=0)

STDIN_CHUNK = 64 * 1024


class HostStatus(Enum):
    """Status of a host within the current command."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(Enum):
    IDLE = "idle"
    RESOLVED = "resolved"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class HostResult:
    """Outcome of one command (or upload) on one host."""

    host: str
    command: str
    status: HostStatus
    exit_code: int | None = None
    error: str = ""

    @property
    def failed(self) -> bool:
        return self.status == HostStatus.FAILED


@dataclass
class RunOutcome:
    state: RunState
    results: list[HostResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(result.failed for result in self.results)

    @property
    def failures(self) -> list[HostResult]:
        return [result for result in self.results if result.failed]


@dataclass
class HostState:
    """Runtime state for a host, as shown by the renderers."""

    host: Host
    status: HostStatus = HostStatus.PENDING
    current_command: str = ""
    error_message: str = ""

    @property
    def summary(self) -> str:
        """The error for a failed host, otherwise the step it is on."""
        if self.status == HostStatus.FAILED and self.error_message:
            return self.error_message
        return self.current_command


# Type aliases for callbacks
OutputCallback = Callable[[str, str, bool], None]  # (host_name, line, is_stderr) -> None
StatusCallback = Callable[[str, HostStatus], None]  # (host_name, status) -> None


class StdinBroadcaster:
    """Copy one local input stream to the inputs of the running command.

    The stream is read in a daemon thread, one chunk at a time and only when
    a consumer is waiting, so a command that stops reading leaves the rest of
    the stream for the next ``stdin`` command.
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._demand = threading.Semaphore(0)
        self._requested = False
        self._eof = False
        self._queues: list[asyncio.Queue[bytes]] = []
        # Chunks that arrived while no command was attached.
        self._backlog: list[bytes] = []

    def attach(self, consumers: int) -> list[AsyncIterator[bytes]]:
        """Hand the stream to ``consumers`` new readers, replacing the previous set."""
        if self._thread is None:
            self._loop = asyncio.get_running_loop()
            self._thread = threading.Thread(target=self._pump, daemon=True)
            self._thread.start()
        self._queues = [asyncio.Queue() for _ in range(consumers)]
        for queue in self._queues:
            for chunk in self._backlog:
                queue.put_nowait(chunk)
            if self._eof:
                queue.put_nowait(b"")
        self._backlog.clear()
        return [self._reader(queue) for queue in self._queues]

    def detach(self) -> None:
        self._queues = []

    def _read(self) -> bytes:
        read1 = getattr(self.stream, "read1", None)
        if read1 is not None:
            return read1(STDIN_CHUNK)
        return self.stream.read(STDIN_CHUNK)

    def _pump(self) -> None:
        while True:
            self._demand.acquire()
            try:
                chunk = self._read()
            except (OSError, ValueError):
                chunk = b""
            try:
                self._loop.call_soon_threadsafe(self._publish, chunk)
            except RuntimeError:
                return  # loop already closed
            if not chunk:
                return

    def _publish(self, chunk: bytes) -> None:
        self._requested = False
        if not chunk:
            self._eof = True
        if not self._queues:
            if chunk:
                self._backlog.append(chunk)
            return
        for queue in self._queues:
            queue.put_nowait(chunk)

    async def _reader(self, queue: asyncio.Queue[bytes]) -> AsyncIterator[bytes]:
        while True:
            if queue.empty() and not self._requested and not self._eof:
                self._requested = True
                self._demand.release()
            chunk = await queue.get()
            if not chunk:
                return
            yield chunk


class Executor:
    """Runs a plan of commands across hosts.

    Commands run one after another. Within a command, hosts run concurrently,
    at most ``command.serial`` at a time when set. A failure on any host lets
    the hosts already running finish and stops the plan there.
    """

    def __init__(
        self,
        hosts: Sequence[Host],
        plan: Sequence[Command],
        env: EnvList,
        transport: Transport,
        *,
        local_transport: Transport | None = None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        stdin: BinaryIO | None = None,
        base_dir: Path | None = None,
    ):
        self.state = RunState.IDLE
        self.hosts = list(hosts)
        self.plan = list(plan)
        self.env = env
        self.transport = transport
        self.local_transport = local_transport or LocalTransport(cwd=base_dir)
        self.on_output = on_output
        self.on_status = on_status
        self.stdin = stdin
        self.base_dir = base_dir or Path.cwd()
        self.states: dict[str, HostState] = {host.name: HostState(host) for host in self.hosts}
        if any(cmd.local for cmd in self.plan):
            self.states.setdefault(LOCALHOST.name, HostState(LOCALHOST))
        self.results: list[HostResult] = []
        self._aborted: asyncio.Event | None = None
        self._stdin: StdinBroadcaster | None = None
        if self.hosts and self.plan:
            self.state = RunState.RESOLVED

    def _emit_output(self, host_name: str, line: str, is_stderr: bool = False) -> None:
        if self.on_output:
            self.on_output(host_name, line, is_stderr)

    def _emit_status(self, host_name: str, status: HostStatus) -> None:
        """Emit status change for a host."""
        if host_name in self.states:
            self.states[host_name].status = status
        if self.on_status:
            self.on_status(host_name, status)

    @property
    def aborted(self) -> bool:
        return self._aborted is not None and self._aborted.is_set()

    def _record(self, result: HostResult) -> None:
        self.results.append(result)
        if result.failed and self._aborted is not None:
            self._aborted.set()

    async def run_all(self) -> RunOutcome:
        """Run every command of the plan, in order."""
        if self.state != RunState.RESOLVED:
            raise RuntimeError(f"executor is {self.state.value}, expected resolved hosts and plan")
        self.state = RunState.RUNNING
        self._aborted = asyncio.Event()
        try:
            for command in self.plan:
                if self.aborted:
                    logger.info("aborting before command %s after a failure", command.name)
                    break
                await self._run_command(command)
        finally:
            await self.transport.close()
            await self.local_transport.close()

        self.state = RunState.ABORTED if self.aborted else RunState.COMPLETED
        return RunOutcome(state=self.state, results=list(self.results))

    async def _run_command(self, command: Command) -> None:
        remote_targets = self.hosts[:1] if command.once else self.hosts
        logger.debug("command=%s local=%s once=%s serial=%s", command.name, bool(command.local),
                      command.once, command.serial)

        for upload in command.upload:
            await self._upload(command, upload, remote_targets)
            if self.aborted:
                return

        text = command.local or command.run
        if not text:
            return
        if command.local:
            targets, transport = [LOCALHOST], self.local_transport
        else:
            targets, transport = remote_targets, self.transport

        inputs: list[AsyncIterator[bytes]] = []
        if command.stdin:
            if self._stdin is None:
                self._stdin = StdinBroadcaster(self.stdin or sys.stdin.buffer)
            inputs = self._stdin.attach(len(targets))

        slots = asyncio.Semaphore(command.serial) if command.serial > 0 else None

        async def _one(index: int, host: Host) -> None:
            input = inputs[index] if inputs else None
            if slots is None:
                await self._run_on_host(host, command, text, transport, input)
                return
            async with slots:
                if self.aborted:
                    self._skip(host, command)
                    return
                await self._run_on_host(host, command, text, transport, input)

        try:
            await asyncio.gather(*[_one(i, host) for i, host in enumerate(targets)])
        finally:
            if self._stdin is not None:
                self._stdin.detach()

    async def _upload(self, command: Command, upload: Upload, hosts: list[Host]) -> None:
        label = f"{command.name}:upload {upload.src}"
        try:
            archive = build_archive(upload, self.base_dir)
        except (LoadError, OSError) as exc:
            for host in hosts:
                self._fail(host, label, str(exc))
            return
        untar = remote_untar_command(upload.dst)
        await asyncio.gather(
            *[
                self._run_on_host(host, command, untar, self.transport, iter_chunks(archive), label=label)
                for host in hosts
            ]
        )

    def _skip(self, host: Host, command: Command) -> None:
        self._emit_status(host.name, HostStatus.SKIPPED)
        self._record(HostResult(host.name, command.name, HostStatus.SKIPPED))

    def _fail(self, host: Host, label: str, message: str, exit_code: int | None = None) -> None:
        state = self.states.get(host.name)
        if state:
            state.error_message = message
        self._emit_output(host.name, f"ERROR: {message}", True)
        self._emit_status(host.name, HostStatus.FAILED)
        self._record(HostResult(host.name, label, HostStatus.FAILED, exit_code, message))

    async def _run_on_host(
        self,
        host: Host,
        command: Command,
        text: str,
        transport: Transport,
        input: AsyncIterator[bytes] | None,
        label: str | None = None,
    ) -> None:
        label = label or command.name
        state = self.states[host.name]
        state.current_command = label
        self._emit_status(host.name, HostStatus.RUNNING)

        env = self.env.copy()
        env.set("SUP_HOST", "localhost" if host is LOCALHOST else host.identity)

        def _line(line: str, is_stderr: bool) -> None:
            self._emit_output(host.name, line, is_stderr)

        try:
            exit_code = await transport.run(host, text, env=env.as_export(), input=input, on_output=_line)
        except asyncssh.Error as e:
            self._fail(host, label, f"SSH error: {e}")
            return
        except (OSError, asyncio.TimeoutError) as e:
            self._fail(host, label, f"Connection error: {e}")
            return
        except Exception as e:
            logger.debug("host=%s step=%s failed", host.name, label, exc_info=True)
            self._fail(host, label, f"{type(e).__name__}: {e}")
            return

        if exit_code != 0:
            self._fail(host, label, f"{label} exited with status {exit_code}", exit_code)
            return
        self._emit_status(host.name, HostStatus.SUCCESS)
        self._record(HostResult(host.name, label, HostStatus.SUCCESS, exit_code))
