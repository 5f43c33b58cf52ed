"""Tests for the shutdown sequence and fatal fault handling."""

import asyncio
import time

import httpx
import pytest
import pytest_asyncio

from auth import AuthGate
from config import Settings
from conftest import FakeConnection, HangingConnection
from lifecycle import Bridge


def _gate() -> AuthGate:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"valid": True}))
    )
    return AuthGate("http://authority.test/validate", client=client)


@pytest_asyncio.fixture()
async def bridge():
    settings = Settings(heartbeat_interval=3600, flush_grace=0.01, shutdown_timeout=0.5)
    bridge = Bridge(settings, gate=_gate())
    yield bridge
    await bridge.shutdown()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_notice_before_close(self, bridge):
        subs = [FakeConnection() for _ in range(3)]
        for conn in subs:
            await bridge.registry.admit_subscriber(conn)
        esp = FakeConnection()
        await bridge.registry.admit_producer(esp, "ESP32")

        await bridge.shutdown()

        for conn in subs:
            assert conn.types()[-1] == "server-shutdown"
            assert conn.close_code == 1001
        assert esp.texts[-1] == "Server shutting down"
        assert esp.close_code is not None
        assert bridge.registry.subscriber_count == 0
        assert bridge.registry.producer is None
        assert bridge.supervisor.active == 0

    @pytest.mark.asyncio
    async def test_idempotent(self, bridge):
        conn = FakeConnection()
        await bridge.registry.admit_subscriber(conn)

        await asyncio.gather(bridge.shutdown(), bridge.shutdown())
        await bridge.shutdown()

        assert conn.types().count("server-shutdown") == 1
        assert bridge.shutting_down

    @pytest.mark.asyncio
    async def test_bounded_when_close_hangs(self, bridge):
        await bridge.registry.admit_subscriber(HangingConnection())

        started = time.monotonic()
        await bridge.shutdown()

        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_timers_stopped_first(self, bridge):
        await bridge.registry.admit_subscriber(FakeConnection())
        await bridge.shutdown()

        await bridge.registry.admit_subscriber(FakeConnection())
        assert bridge.supervisor.active == 0


class TestFail:
    @pytest.mark.asyncio
    async def test_fail_requests_exit(self, bridge):
        called = []
        bridge.on_exit = lambda: called.append(True)

        bridge.fail(RuntimeError("boom"))

        assert called == [True]
        assert bridge.exit_code == 1

    @pytest.mark.asyncio
    async def test_fail_without_runner_shuts_down(self, bridge):
        conn = FakeConnection()
        await bridge.registry.admit_subscriber(conn)

        bridge.fail(RuntimeError("boom"))
        await bridge.shutdown()

        assert bridge.exit_code == 1
        assert "server-shutdown" in conn.types()
        assert conn.close_code == 1001
