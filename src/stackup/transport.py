"""Ways of running a command line on a host and streaming its output."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Callable

import asyncssh

from .hosts import Host, parse_host

# (line, is_stderr) -> None
LineCallback = Callable[[str, bool], None]

READ_CHUNK = 64 * 1024


class Transport(ABC):
    """Runs ``env + command`` on a host and returns its exit status."""

    @abstractmethod
    async def run(
        self,
        host: Host,
        command: str,
        *,
        env: str = "",
        input: AsyncIterator[bytes] | None = None,
        on_output: LineCallback | None = None,
    ) -> int:
        """Run ``command`` with the ``env`` export prelude on ``host``."""

    async def close(self) -> None:
        """Release any connections held open between commands."""


async def _pump_lines(stream, is_stderr: bool, on_output: LineCallback | None) -> None:
    """Deliver whole lines from ``stream``, however long they are."""

    def _emit(raw: bytes) -> None:
        if on_output:
            on_output(raw.decode("utf-8", errors="replace").rstrip("\r"), is_stderr)

    pending = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        pending.extend(chunk)
        end = pending.rfind(b"\n")
        if end == -1:
            continue
        complete = bytes(pending[:end])
        del pending[:end + 1]
        for line in complete.split(b"\n"):
            _emit(line)
    if pending:
        _emit(bytes(pending))


async def _feed(writer, input: AsyncIterator[bytes] | None, close: Callable[[], None]) -> None:
    if input is None:
        return
    try:
        async for chunk in input:
            writer.write(chunk)
            await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The command stopped reading; its exit status decides the outcome.
        pass
    finally:
        close()


class LocalTransport(Transport):
    """Run commands on the invoking machine with bash."""

    def __init__(self, cwd: str | Path | None = None, shell: str = "bash"):
        self.cwd = cwd
        self.shell = shell

    async def run(
        self,
        host: Host,
        command: str,
        *,
        env: str = "",
        input: AsyncIterator[bytes] | None = None,
        on_output: LineCallback | None = None,
    ) -> int:
        proc = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            env + command,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd is not None else None,
        )

        def _close_stdin() -> None:
            if proc.stdin is not None:
                proc.stdin.close()

        try:
            await asyncio.gather(
                _pump_lines(proc.stdout, False, on_output),
                _pump_lines(proc.stderr, True, on_output),
                _feed(proc.stdin, input, _close_stdin),
            )
        except BaseException:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()
            raise
        return await proc.wait()


class SSHTransport(Transport):
    """Run commands over SSH, keeping one connection per host for the run."""

    def __init__(self, *, connect_timeout: float = 30, known_hosts=None):
        self.connect_timeout = connect_timeout
        # Host key verification is off unless a known_hosts source is given.
        self.known_hosts = known_hosts
        self._connections: dict[Host, asyncssh.SSHClientConnection] = {}
        self._bastions: dict[tuple[str, str | None], asyncssh.SSHClientConnection] = {}
        self._bastion_lock: asyncio.Lock | None = None

    def _connect_kwargs(self, host: Host) -> dict:
        kwargs = {
            "port": host.port,
            "username": host.user,
            "known_hosts": self.known_hosts,
            "connect_timeout": self.connect_timeout,
        }
        if host.identity_file:
            kwargs["client_keys"] = [str(host.identity_file)]
        return kwargs

    async def _bastion(self, host: Host) -> asyncssh.SSHClientConnection:
        if self._bastion_lock is None:
            self._bastion_lock = asyncio.Lock()
        key = (host.bastion or "", host.user)
        async with self._bastion_lock:
            conn = self._bastions.get(key)
            if conn is None:
                jump = parse_host(host.bastion or "", user=host.user, identity_file=host.identity_file)
                conn = await asyncssh.connect(jump.address, **self._connect_kwargs(jump))
                self._bastions[key] = conn
            return conn

    async def _connection(self, host: Host) -> asyncssh.SSHClientConnection:
        conn = self._connections.get(host)
        if conn is not None:
            return conn
        kwargs = self._connect_kwargs(host)
        if host.bastion:
            kwargs["tunnel"] = await self._bastion(host)
        conn = await asyncssh.connect(host.address, **kwargs)
        self._connections[host] = conn
        return conn

    async def run(
        self,
        host: Host,
        command: str,
        *,
        env: str = "",
        input: AsyncIterator[bytes] | None = None,
        on_output: LineCallback | None = None,
    ) -> int:
        conn = await self._connection(host)
        # A pty merges stderr into stdout and mangles binary input.
        term_type = "xterm" if input is None else None
        async with conn.create_process(env + command, term_type=term_type, encoding=None) as proc:
            await asyncio.gather(
                _pump_lines(proc.stdout, False, on_output),
                _pump_lines(proc.stderr, True, on_output),
                _feed(proc.stdin, input, proc.stdin.write_eof),
            )
            await proc.wait()
            return proc.returncode if proc.returncode is not None else -1

    async def close(self) -> None:
        for conn in [*self._connections.values(), *self._bastions.values()]:
            conn.close()
            await conn.wait_closed()
        self._connections.clear()
        self._bastions.clear()
