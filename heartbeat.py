"""
Supervisor de latidos: un timer por conexión (ESP32 o cliente), indexado por id.

- ESP32: pulso saliente `ping` en texto; el `pong` es opcional.
- Clientes: ping de protocolo con desafío/respuesta; un intervalo sin pong es fatal.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import partial

from errors import BridgeError, LivenessTimeout, TransportFailure
from protocol import HEARTBEAT_PING
from state import ProducerSlot, SubscriberSession

logger = logging.getLogger(__name__)

ProducerLost = Callable[[ProducerSlot, BridgeError], Awaitable[bool]]
SubscriberLost = Callable[[SubscriberSession, BridgeError], bool]


class Supervisor:
    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._timers: dict[str, asyncio.Task] = {}
        self._stopped = False

    @property
    def active(self) -> int:
        return len(self._timers)

    def is_watching(self, peer_id: str) -> bool:
        return peer_id in self._timers

    def watch_producer(self, slot: ProducerSlot, on_lost: ProducerLost) -> None:
        self._start(slot.id, partial(self._pulse_producer, slot, on_lost))

    def watch_subscriber(self, session: SubscriberSession, on_lost: SubscriberLost) -> None:
        self._start(session.id, partial(self._pulse_subscriber, session, on_lost))

    def cancel(self, peer_id: str) -> bool:
        """Cancela el timer de una conexión. Se llama en el mismo paso que la saca del registro."""
        task = self._timers.pop(peer_id, None)
        if task is None:
            return False
        # Un timer que se da de baja a sí mismo termina solo al retornar
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def stop(self) -> None:
        """Detiene todos los timers y no acepta nuevos (cierre del servidor)."""
        self._stopped = True
        for peer_id in list(self._timers):
            self.cancel(peer_id)
        logger.info("Latidos detenidos")

    def _start(self, peer_id: str, pulse: Callable[[], Awaitable[None]]) -> None:
        if self._stopped:
            logger.debug("Supervisor detenido, no se vigila %s", peer_id)
            return
        self.cancel(peer_id)
        self._timers[peer_id] = asyncio.get_running_loop().create_task(
            pulse(), name=f"heartbeat:{peer_id}"
        )
        logger.debug("Latido iniciado para %s (cada %.1f s)", peer_id, self.interval)

    async def _pulse_producer(self, slot: ProducerSlot, on_lost: ProducerLost) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not slot.is_open():
                logger.info("Latido ESP32 detenido: conexión no disponible (%s)", slot.id)
                await on_lost(slot, TransportFailure("ESP32 transport closed"))
                return
            try:
                await slot.send(HEARTBEAT_PING)
            except TransportFailure as e:
                logger.warning("Error de latido con la ESP32 %s: %s", slot.id, e)
                await on_lost(slot, e)
                return
            logger.debug("Ping de latido enviado a la ESP32 %s", slot.id)

    async def _pulse_subscriber(self, session: SubscriberSession, on_lost: SubscriberLost) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not session.is_alive:
                logger.warning("Cliente %s sin respuesta al ping, terminando", session.id)
                session.terminate()
                on_lost(session, LivenessTimeout(f"client {session.id} missed heartbeat"))
                return
            session.is_alive = False
            try:
                await session.ping()
            except TransportFailure as e:
                logger.warning("Error enviando ping al cliente %s: %s", session.id, e)
                on_lost(session, e)
                return
