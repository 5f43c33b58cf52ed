"""pytest configuration and WebSocket fakes for the bridge tests."""

import asyncio
import json

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError
from websockets.protocol import State

from heartbeat import Supervisor
from registry import Registry


class FakeTransport:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True
        self.connection.state = State.CLOSED


class FakeConnection:
    """Stands in for websockets' ServerConnection: records sends, pings and closes."""

    def __init__(self, host: str = "10.0.0.5", answer_pings: bool = True) -> None:
        self.remote_address = (host, 50000)
        self.state = State.OPEN
        self.sent: list = []
        self.pings = 0
        self.answer_pings = answer_pings
        self.fail_sends = False
        self.stall_sends = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.transport = FakeTransport(self)

    async def send(self, message) -> None:
        if self.fail_sends or self.state is not State.OPEN:
            raise ConnectionClosedError(None, None)
        if self.stall_sends:
            # a reader that stopped draining: blocks until the transport is aborted
            await asyncio.Event().wait()
        self.sent.append(message)

    async def ping(self):
        if self.state is not State.OPEN:
            raise ConnectionClosedError(None, None)
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self.state = State.CLOSED

    @property
    def texts(self) -> list[str]:
        return [m for m in self.sent if isinstance(m, str)]

    @property
    def binaries(self) -> list[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]

    def json_messages(self) -> list[dict]:
        messages = []
        for text in self.texts:
            try:
                messages.append(json.loads(text))
            except json.JSONDecodeError:
                continue
        return messages

    def types(self) -> list[str]:
        return [m.get("type") for m in self.json_messages()]


class HangingConnection(FakeConnection):
    """A peer whose closing handshake never completes."""

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await asyncio.Event().wait()


@pytest_asyncio.fixture()
async def supervisor():
    sup = Supervisor(interval=3600)
    yield sup
    sup.stop()


@pytest.fixture()
def registry(supervisor):
    return Registry(supervisor)
