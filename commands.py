"""
Router de comandos de los clientes: ping, start/stop-listening, get-status, get-clients.
"""

import logging
from typing import Any

import protocol
from errors import ProtocolError, TransportFailure
from registry import Registry
from state import SubscriberSession

logger = logging.getLogger(__name__)


class CommandRouter:
    def __init__(self, registry: Registry) -> None:
        self.registry = registry
        self._handlers = {
            "ping": self._handle_ping,
            "start-listening": self._handle_start,
            "stop-listening": self._handle_stop,
            "get-status": self._handle_status,
            "get-clients": self._handle_clients,
        }

    async def dispatch(self, session: SubscriberSession, raw: str | bytes) -> None:
        try:
            message = protocol.parse_client_message(raw)
        except ProtocolError as e:
            logger.warning("Mensaje inválido del cliente %s: %s", session.id, e)
            await self.registry.unicast(session, protocol.error_message(str(e)))
            return

        msg_type = message["type"]
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning("Tipo de mensaje desconocido del cliente %s: %s", session.id, msg_type)
            await self.registry.unicast(
                session, protocol.error_message(f"Unknown message type: {msg_type}")
            )
            return
        logger.debug("Mensaje %s del cliente %s", msg_type, session.id)
        await handler(session, message)

    async def _handle_ping(self, session: SubscriberSession, message: dict[str, Any]) -> None:
        await self.registry.unicast(session, protocol.pong_message(session.id, message.get("id")))

    async def _handle_start(self, session: SubscriberSession, message: dict[str, Any]) -> None:
        await self._send_command(session, protocol.COMMAND_LISTEN)

    async def _handle_stop(self, session: SubscriberSession, message: dict[str, Any]) -> None:
        await self._send_command(session, protocol.COMMAND_STOP)

    async def _handle_status(self, session: SubscriberSession, message: dict[str, Any]) -> None:
        await self.registry.unicast(
            session, protocol.status_message(self.registry.snapshot(), session.id)
        )

    async def _handle_clients(self, session: SubscriberSession, message: dict[str, Any]) -> None:
        await self.registry.unicast(
            session, protocol.client_list(self.registry.list_subscribers())
        )

    async def _send_command(self, session: SubscriberSession, command: str) -> None:
        producer = self.registry.producer
        if producer is None or not producer.is_open():
            logger.warning("No se puede enviar %s: ESP32 no conectada (pedido de %s)", command, session.id)
            await self.registry.unicast(
                session, protocol.error_message("Cannot send command: ESP32 not connected")
            )
            await self.registry.broadcast(protocol.error_message("ESP32 not connected"))
            return
        try:
            await producer.send(command)
        except TransportFailure as e:
            logger.warning("Error enviando %s a la ESP32: %s", command, e)
            await self.registry.evict_producer(producer, e)
            await self.registry.unicast(
                session, protocol.error_message(f"Error sending command to ESP32: {command}")
            )
            return
        logger.info("Comando %s enviado a la ESP32 (pedido de %s)", command, session.id)
        await self.registry.broadcast(protocol.command_sent(command, session.id))
