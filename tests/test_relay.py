"""Tests for the ESP32 relay: identification, text vocabulary, audio fan-out."""

import asyncio

import pytest

from conftest import FakeConnection, HangingConnection
from relay import Relay
from state import Peer, ProducerSlot, Role


async def _identified(relay: Relay, conn: FakeConnection | None = None) -> ProducerSlot:
    peer = await relay.handle_text(Peer(connection=conn or FakeConnection()), "ESP32\n")
    assert isinstance(peer, ProducerSlot)
    return peer


class TestIdentification:
    @pytest.mark.asyncio
    async def test_identify_confirms_and_installs(self, registry):
        relay = Relay(registry)
        esp = FakeConnection()

        slot = await _identified(relay, esp)

        assert registry.producer is slot
        assert slot.role is Role.PRODUCER
        assert esp.texts == ["Connected to Server"]

    @pytest.mark.asyncio
    async def test_no_listen_without_auto_listen(self, registry):
        esp = FakeConnection()
        await _identified(Relay(registry), esp)
        assert "Listen" not in esp.texts

    @pytest.mark.asyncio
    async def test_auto_listen_sends_command(self, registry):
        esp = FakeConnection()
        await _identified(Relay(registry, auto_listen=True), esp)
        assert esp.texts == ["Connected to Server", "Listen"]

    @pytest.mark.asyncio
    async def test_reidentify_same_connection_keeps_slot(self, registry, supervisor):
        relay = Relay(registry)
        esp = FakeConnection()
        slot = await _identified(relay, esp)

        again = await relay.handle_text(slot, "ESP32")

        assert again is slot
        assert registry.producer is slot
        assert esp.close_code is None
        assert supervisor.active == 1

    @pytest.mark.asyncio
    async def test_sequential_identifications(self, registry):
        relay = Relay(registry)
        conns = [FakeConnection() for _ in range(3)]
        slots = [await _identified(relay, c) for c in conns]
        await asyncio.sleep(0)

        assert registry.producer is slots[-1]
        assert [c.close_code is not None for c in conns] == [True, True, False]

    @pytest.mark.asyncio
    async def test_new_producer_confirmed_while_old_hangs(self, registry):
        relay = Relay(registry)
        old = HangingConnection()
        await _identified(relay, old)
        esp = FakeConnection()

        slot = await asyncio.wait_for(relay.handle_text(Peer(connection=esp), "ESP32"), timeout=0.5)

        assert registry.producer is slot
        assert esp.texts == ["Connected to Server"]
        await registry.close_producer("Server shutting down")
        assert old.transport.aborted


class TestTextVocabulary:
    @pytest.mark.asyncio
    async def test_status_line_forwarded(self, registry):
        relay = Relay(registry)
        sub = FakeConnection()
        await registry.admit_subscriber(sub)
        slot = await _identified(relay)

        await relay.handle_text(slot, "STATUS: battery=87%")

        last = sub.json_messages()[-1]
        assert last["type"] == "esp32-status"
        assert last["status"] == "STATUS: battery=87%"

    @pytest.mark.asyncio
    async def test_pong_recorded_not_forwarded(self, registry):
        relay = Relay(registry)
        sub = FakeConnection()
        await registry.admit_subscriber(sub)
        slot = await _identified(relay)
        before = len(sub.sent)

        await relay.handle_text(slot, "pong")

        assert slot.last_pong_at is not None
        assert len(sub.sent) == before

    @pytest.mark.asyncio
    async def test_unknown_text_dropped(self, registry):
        relay = Relay(registry)
        sub = FakeConnection()
        await registry.admit_subscriber(sub)
        slot = await _identified(relay)
        before = len(sub.sent)

        peer = await relay.handle_text(slot, "reboot now")

        assert peer is slot
        assert len(sub.sent) == before

    @pytest.mark.asyncio
    async def test_status_from_unidentified_ignored(self, registry):
        relay = Relay(registry)
        sub = FakeConnection()
        await registry.admit_subscriber(sub)
        pending = Peer(connection=FakeConnection())

        peer = await relay.handle_text(pending, "STATUS: ok")

        assert peer is pending
        assert sub.types() == ["status"]


class TestAudio:
    @pytest.mark.asyncio
    async def test_frame_reaches_every_subscriber_once(self, registry):
        relay = Relay(registry)
        subs = [FakeConnection() for _ in range(3)]
        for sub in subs:
            await registry.admit_subscriber(sub)
        slot = await _identified(relay)
        frames = [bytes([i]) * (100 + i) for i in range(5)]

        for frame in frames:
            assert await relay.relay_frame(slot, frame) == 3

        for sub in subs:
            assert sub.binaries == frames
        assert relay.frames_relayed == 5
        assert relay.bytes_relayed == sum(len(f) for f in frames)

    @pytest.mark.asyncio
    async def test_no_subscribers_discards(self, registry):
        relay = Relay(registry)
        slot = await _identified(relay)

        assert await relay.relay_frame(slot, b"\x01\x02") == 0
        assert relay.frames_dropped == 1
        assert relay.frames_relayed == 0

    @pytest.mark.asyncio
    async def test_unidentified_audio_dropped(self, registry):
        relay = Relay(registry)
        sub = FakeConnection()
        await registry.admit_subscriber(sub)

        assert await relay.relay_frame(Peer(connection=FakeConnection()), b"\xff" * 64) == 0
        assert sub.binaries == []
        assert relay.frames_dropped == 1

    @pytest.mark.asyncio
    async def test_replaced_producer_audio_dropped(self, registry):
        relay = Relay(registry)
        sub = FakeConnection()
        await registry.admit_subscriber(sub)
        old = await _identified(relay)
        await _identified(relay)

        assert await relay.relay_frame(old, b"\x10" * 16) == 0
        assert sub.binaries == []
