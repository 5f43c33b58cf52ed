"""
Ciclo de vida del puente: arranque de los endpoints WebSocket y cierre ordenado.

El cierre es idempotente y acotado en tiempo: si no termina dentro de
`shutdown_timeout` se abandona y el proceso sale igual.
"""

import asyncio
import logging
from collections.abc import Callable
from functools import partial
from typing import Any

from websockets.asyncio.server import Server, serve

import protocol
from auth import AuthGate
from commands import CommandRouter
from config import Settings
from heartbeat import Supervisor
from registry import Registry
from relay import Relay
from routers.websocket import producer_endpoint, subscriber_endpoint

logger = logging.getLogger(__name__)


class Bridge:
    """Dueño de todo el estado del proceso; se inyecta en cada endpoint."""

    def __init__(self, settings: Settings, gate: AuthGate | None = None) -> None:
        self.settings = settings
        self.supervisor = Supervisor(settings.heartbeat_interval)
        self.registry = Registry(self.supervisor, send_timeout=settings.send_timeout)
        self.gate = gate or AuthGate(settings.auth_url, timeout=settings.auth_timeout)
        self.relay = Relay(self.registry, auto_listen=settings.auto_listen)
        self.commands = CommandRouter(self.registry)
        self.exit_code = 0
        self.on_exit: Callable[[], None] | None = None
        self._producer_server: Server | None = None
        self._subscriber_server: Server | None = None
        self._shutdown: asyncio.Future | None = None

    @property
    def shutting_down(self) -> bool:
        return self._shutdown is not None

    @property
    def producer_port(self) -> int | None:
        return _bound_port(self._producer_server)

    @property
    def subscriber_port(self) -> int | None:
        return _bound_port(self._subscriber_server)

    async def start(self) -> None:
        s = self.settings
        asyncio.get_running_loop().set_exception_handler(self._handle_loop_exception)
        self._producer_server = await serve(
            partial(producer_endpoint, self),
            s.host,
            s.producer_port,
            max_size=s.max_payload,
            compression=None,
            ping_interval=None,
        )
        self._subscriber_server = await serve(
            partial(subscriber_endpoint, self),
            s.host,
            s.subscriber_port,
            max_size=s.max_payload,
            compression=None,
            ping_interval=None,
        )
        logger.info("ESP32: ws://%s:%s (enviar %r para identificarse)", s.host, self.producer_port, protocol.IDENTIFY_TOKEN)
        logger.info("Clientes: ws://%s:%s?token=TOKEN", s.host, self.subscriber_port)
        logger.info("Autenticación: %s", s.auth_url)

    async def shutdown(self) -> None:
        """Cierre ordenado. Llamadas repetidas esperan al mismo cierre."""
        if self._shutdown is None:
            logger.info("Iniciando cierre ordenado...")
            self._shutdown = asyncio.ensure_future(self._bounded_teardown())
        await asyncio.shield(self._shutdown)

    def fail(self, exc: BaseException) -> None:
        """Fallo no controlado: se considera fatal para el proceso."""
        logger.critical("Fallo fatal, cerrando el servidor: %r", exc)
        self.exit_code = 1
        if self.on_exit is not None:
            self.on_exit()
        elif self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._bounded_teardown())

    async def _bounded_teardown(self) -> None:
        try:
            await asyncio.wait_for(self._teardown(), timeout=self.settings.shutdown_timeout)
            logger.info("Cierre ordenado completado")
        except asyncio.TimeoutError:
            logger.error(
                "El cierre no terminó en %.1f s, se abandona", self.settings.shutdown_timeout
            )

    async def _teardown(self) -> None:
        self.supervisor.stop()
        notified = await self.registry.broadcast(protocol.server_shutdown())
        logger.info("Aviso de cierre enviado a %d clientes", notified)
        await asyncio.sleep(self.settings.flush_grace)
        await self.registry.close_subscribers(protocol.CLOSE_GOING_AWAY, "Server shutdown")
        await self.registry.close_producer(protocol.PRODUCER_SHUTDOWN_NOTICE)
        for server in (self._producer_server, self._subscriber_server):
            if server is not None:
                server.close()
                await server.wait_closed()
        await self.gate.aclose()

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        loop.default_exception_handler(context)
        if exc is None or isinstance(exc, (ConnectionError, asyncio.CancelledError)):
            return
        self.fail(exc)


def _bound_port(server: Server | None) -> int | None:
    if server is None:
        return None
    for sock in server.sockets:
        return sock.getsockname()[1]
    return None
