"""
Registro de conexiones: un slot para la ESP32 y el conjunto de clientes autenticados.

Todas las mutaciones ocurren en el loop de asyncio. Las transiciones del slot de la
ESP32 se serializan con un lock; altas y bajas de clientes son secciones sin `await`.
"""

import asyncio
import json
import logging
import time
from typing import Any

import protocol
from errors import BridgeError, SendTimeout, TransportFailure
from heartbeat import Supervisor
from state import MessageKind, ProducerSlot, SubscriberSession, remote_host

logger = logging.getLogger(__name__)


class Registry:
    def __init__(self, supervisor: Supervisor, send_timeout: float | None = 2.0) -> None:
        self.supervisor = supervisor
        self.send_timeout = send_timeout
        self.started_at = time.time()
        self._producer: ProducerSlot | None = None
        self._subscribers: dict[str, SubscriberSession] = {}
        self._lock = asyncio.Lock()
        self._retiring: dict[asyncio.Future, ProducerSlot] = {}

    @property
    def producer(self) -> ProducerSlot | None:
        return self._producer

    @property
    def streaming_active(self) -> bool:
        return self._producer is not None and self._producer.streaming_active

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    # ── ESP32 ────────────────────────────────────────────────────

    async def admit_producer(self, connection: Any, identity: str) -> ProducerSlot:
        """Instala la ESP32. Si ya había una, se desaloja antes (gana la última identificación)."""
        async with self._lock:
            previous = self._producer
            if previous is not None:
                logger.warning(
                    "ESP32 ya conectada (%s), desalojando a favor de %s",
                    previous.id,
                    remote_host(connection),
                )
                self._detach_producer(previous, "replaced")
            slot = ProducerSlot(connection=connection, identity=identity, streaming_active=True)
            self._producer = slot
            self.supervisor.watch_producer(slot, self.evict_producer)
            logger.info("ESP32 registrada: %s desde %s", slot.id, slot.host)
        if previous is not None:
            await self.broadcast(protocol.streaming_status(False, False))
            self._retire(previous)
        await self.broadcast(protocol.streaming_status(True, True))
        return slot

    async def evict_producer(self, slot: ProducerSlot, reason: BridgeError | str = "disconnect") -> bool:
        """Libera el slot. No hace nada si `slot` ya no es la ESP32 instalada."""
        async with self._lock:
            if self._producer is not slot:
                logger.debug("Desalojo ignorado: %s no es la ESP32 actual", slot.id)
                return False
            self._detach_producer(slot, reason)
        await self.broadcast(protocol.streaming_status(False, False))
        return True

    def _detach_producer(self, slot: ProducerSlot, reason: BridgeError | str) -> None:
        self.supervisor.cancel(slot.id)
        slot.streaming_active = False
        self._producer = None
        logger.info("ESP32 %s desalojada (%s)", slot.id, reason)

    def _retire(self, slot: ProducerSlot) -> None:
        """Cierra en segundo plano la ESP32 reemplazada; su handshake no frena a la nueva."""
        task = asyncio.ensure_future(
            slot.close(protocol.CLOSE_REPLACED, "Replaced by a newer ESP32 connection")
        )
        self._retiring[task] = slot
        task.add_done_callback(self._retiring.pop)

    async def close_producer(self, notice: str) -> None:
        """Cierre ordenado de la ESP32: aviso final y cierre del transporte."""
        for task, retired in list(self._retiring.items()):
            task.cancel()
            retired.terminate()
        slot = self._producer
        if slot is None:
            return
        self._producer = None
        self.supervisor.cancel(slot.id)
        slot.streaming_active = False
        if slot.is_open():
            logger.info("Cerrando conexión ESP32 %s", slot.id)
            try:
                await slot.send(notice, self.send_timeout)
            except TransportFailure as e:
                logger.warning("No se pudo avisar el cierre a la ESP32: %s", e)
            await slot.close(protocol.CLOSE_GOING_AWAY, "Server shutdown")

    # ── Clientes ─────────────────────────────────────────────────

    async def admit_subscriber(self, connection: Any) -> SubscriberSession:
        """Da de alta un cliente ya autenticado y le envía el estado actual."""
        session = SubscriberSession(connection=connection)
        self._subscribers[session.id] = session
        self.supervisor.watch_subscriber(session, self.remove_subscriber)
        logger.info(
            "Cliente %s conectado desde %s (total: %d)",
            session.id,
            session.host,
            len(self._subscribers),
        )
        payload = protocol.initial_status(
            self.streaming_active, self._producer is not None, session.id
        )
        try:
            await session.send(json.dumps(payload), self.send_timeout)
        except TransportFailure as e:
            self._drop(session, e)
            raise
        return session

    def remove_subscriber(self, session: SubscriberSession, reason: BridgeError | str = "closed") -> bool:
        """Baja idempotente; cancela el latido en el mismo paso."""
        if self._subscribers.pop(session.id, None) is None:
            return False
        self.supervisor.cancel(session.id)
        logger.info(
            "Cliente %s eliminado (%s). Restantes: %d", session.id, reason, len(self._subscribers)
        )
        return True

    def get_subscriber(self, session_id: str) -> SubscriberSession | None:
        return self._subscribers.get(session_id)

    def list_subscribers(self) -> list[dict[str, Any]]:
        return [session.describe() for session in self._subscribers.values()]

    def snapshot(self) -> dict[str, Any]:
        return {
            "streaming": self.streaming_active,
            "esp32Connected": self._producer is not None,
            "connectedClients": len(self._subscribers),
            "serverUptime": round(self.uptime, 3),
        }

    async def close_subscribers(self, code: int, reason: str) -> None:
        sessions = list(self._subscribers.values())
        logger.info("Cerrando %d clientes...", len(sessions))
        for session in sessions:
            self.remove_subscriber(session, "server shutdown")
        await asyncio.gather(*(session.close(code, reason) for session in sessions))

    # ── Envíos ───────────────────────────────────────────────────

    async def unicast(self, session: SubscriberSession, payload: dict[str, Any]) -> bool:
        if not session.is_open():
            self.remove_subscriber(session, "not open")
            return False
        try:
            await session.send(json.dumps(payload), self.send_timeout)
        except TransportFailure as e:
            logger.warning("Error enviando a cliente %s: %s", session.id, e)
            self._drop(session, e)
            return False
        return True

    async def broadcast(
        self, payload: dict[str, Any] | bytes, kind: MessageKind = MessageKind.CONTROL
    ) -> int:
        """Envía a todos los clientes una vez. Los muertos se purgan en esta misma pasada.

        Cada envío está acotado por `send_timeout`: un cliente que no lee se corta y se
        elimina en lugar de frenar al resto.
        """
        if not self._subscribers:
            return 0
        data = payload if kind is MessageKind.AUDIO else json.dumps(payload)
        live: list[SubscriberSession] = []
        dead: list[tuple[SubscriberSession, BridgeError | str]] = []
        for session in list(self._subscribers.values()):
            if session.is_open():
                live.append(session)
            else:
                dead.append((session, "not open"))

        results = await asyncio.gather(
            *(s.send(data, self.send_timeout) for s in live), return_exceptions=True
        )
        delivered = 0
        try:
            for session, result in zip(live, results):
                if isinstance(result, TransportFailure):
                    logger.warning("Error enviando a cliente %s: %s", session.id, result)
                    dead.append((session, result))
                elif isinstance(result, BaseException):
                    raise result
                else:
                    delivered += 1
        finally:
            for session, reason in dead:
                self._drop(session, reason)
        if kind is MessageKind.CONTROL:
            logger.debug(
                "Broadcast %s: %d entregados, %d eliminados", payload.get("type"), delivered, len(dead)
            )
        return delivered

    def _drop(self, session: SubscriberSession, reason: BridgeError | str) -> None:
        if isinstance(reason, SendTimeout):
            session.terminate()
        self.remove_subscriber(session, reason)
