"""
Reenvío de la ESP32 hacia los clientes: frames de audio binarios y vocabulario de texto.
"""

import logging
import time

import protocol
from errors import TransportFailure
from registry import Registry
from state import MessageKind, Peer, ProducerSlot, Role

logger = logging.getLogger(__name__)


class Relay:
    def __init__(self, registry: Registry, auto_listen: bool = False) -> None:
        self.registry = registry
        self.auto_listen = auto_listen
        self.frames_relayed = 0
        self.bytes_relayed = 0
        self.frames_dropped = 0

    def _is_installed(self, peer: Peer) -> bool:
        return peer.role is Role.PRODUCER and self.registry.producer is peer

    def stats(self) -> dict[str, int]:
        return {
            "framesRelayed": self.frames_relayed,
            "bytesRelayed": self.bytes_relayed,
            "framesDropped": self.frames_dropped,
        }

    async def relay_frame(self, peer: Peer, frame: bytes) -> int:
        """Reenvía un frame tal cual a cada cliente. Devuelve la cantidad de entregas."""
        if not self._is_installed(peer):
            self.frames_dropped += 1
            logger.warning(
                "Audio de %s descartado: no es la ESP32 instalada (%d bytes)",
                peer.host,
                len(frame),
            )
            return 0
        if self.registry.subscriber_count == 0:
            self.frames_dropped += 1
            return 0
        delivered = await self.registry.broadcast(frame, MessageKind.AUDIO)
        self.frames_relayed += 1
        self.bytes_relayed += len(frame)
        if self.frames_relayed % 100 == 0:
            logger.info(
                "Audio: %d frames reenviados (%d bytes)", self.frames_relayed, self.bytes_relayed
            )
        return delivered

    async def handle_text(self, peer: Peer, text: str) -> Peer:
        """Interpreta un mensaje de texto de la ESP32. Devuelve el peer (nuevo si se identificó)."""
        message = text.strip()

        if message == protocol.IDENTIFY_TOKEN:
            return await self._identify(peer, message)

        if message == protocol.HEARTBEAT_PONG:
            if isinstance(peer, ProducerSlot):
                peer.last_pong_at = time.time()
                logger.debug("Pong de latido recibido de la ESP32 %s", peer.id)
            else:
                logger.debug("Pong de una conexión no identificada (%s), ignorado", peer.host)
            return peer

        if message.startswith(protocol.STATUS_PREFIX):
            if not self._is_installed(peer):
                logger.warning("Estado de una conexión no instalada (%s) ignorado: %s", peer.host, message)
                return peer
            logger.info("Estado ESP32: %s", message)
            await self.registry.broadcast(protocol.esp32_status(message))
            return peer

        logger.info("Mensaje de ESP32 no reconocido (descartado): %s", message[:100])
        return peer

    async def _identify(self, peer: Peer, identity: str) -> Peer:
        if isinstance(peer, ProducerSlot) and self.registry.producer is peer:
            logger.info("ESP32 %s repitió la identificación", peer.id)
            await self._confirm(peer)
            return peer
        slot = await self.registry.admit_producer(peer.connection, identity)
        await self._confirm(slot)
        if self.auto_listen:
            try:
                await slot.send(protocol.COMMAND_LISTEN)
                logger.info("Comando %s enviado a la ESP32 al identificarse", protocol.COMMAND_LISTEN)
            except TransportFailure as e:
                logger.warning("Error enviando %s a la ESP32: %s", protocol.COMMAND_LISTEN, e)
                await self.registry.evict_producer(slot, e)
        return slot

    async def _confirm(self, slot: ProducerSlot) -> None:
        try:
            await slot.send(protocol.IDENTIFY_CONFIRMATION)
        except TransportFailure as e:
            logger.warning("No se pudo confirmar la conexión a la ESP32 %s: %s", slot.id, e)
            await self.registry.evict_producer(slot, e)
