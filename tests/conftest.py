import asyncio
from typing import AsyncIterator, Optional

import pytest

from stackup.hosts import Host
from stackup.transport import LineCallback, Transport


class FakeTransport(Transport):
    """Records every call and answers with scripted exit codes."""

    def __init__(self, exit_codes: Optional[dict[tuple[str, str], int]] = None, delay: float = 0):
        self.exit_codes = exit_codes or {}
        self.delay = delay
        self.calls: list[tuple[str, str, str]] = []
        self.inputs: dict[tuple[str, str], bytes] = {}
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def run(
        self,
        host: Host,
        command: str,
        *,
        env: str = "",
        input: Optional[AsyncIterator[bytes]] = None,
        on_output: Optional[LineCallback] = None,
    ) -> int:
        self.calls.append((host.name, command, env))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if input is not None:
                data = b""
                async for chunk in input:
                    data += chunk
                self.inputs[(host.name, command)] = data
            await asyncio.sleep(self.delay)
            if on_output:
                on_output(f"ran {command}", False)
        finally:
            self.active -= 1
        return self.exit_codes.get((host.name, command), 0)

    async def close(self) -> None:
        self.closed = True

    def commands_for(self, host_name: str) -> list[str]:
        return [command for name, command, _ in self.calls if name == host_name]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
