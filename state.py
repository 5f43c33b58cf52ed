"""
Modelo de estado del puente: roles, slot de la ESP32 y sesiones de clientes.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from errors import SendTimeout, TransportFailure

logger = logging.getLogger(__name__)


class Role(enum.Enum):
    PENDING = "pending"
    PRODUCER = "producer"
    SUBSCRIBER = "subscriber"


class MessageKind(enum.Enum):
    CONTROL = "control"
    AUDIO = "audio"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def remote_host(connection: Any) -> str:
    address = getattr(connection, "remote_address", None)
    return str(address[0]) if address else "unknown"


@dataclass(eq=False)
class Peer:
    """Conexión WebSocket con rol explícito. Todo envío pasa por aquí."""

    connection: Any
    role: Role = Role.PENDING
    id: str = field(default_factory=lambda: _new_id("conn"))
    joined_at: float = field(default_factory=time.time)

    @property
    def host(self) -> str:
        return remote_host(self.connection)

    def is_open(self) -> bool:
        return self.connection.state is State.OPEN

    async def send(self, payload: str | bytes, timeout: float | None = None) -> None:
        """Envía un mensaje. Con `timeout`, un envío que no drena a tiempo es un fallo de transporte."""
        try:
            await asyncio.wait_for(self.connection.send(payload), timeout)
        except asyncio.TimeoutError as e:
            raise SendTimeout(f"{self.role.value} {self.id}: envío sin drenar en {timeout} s") from e
        except (ConnectionClosed, OSError) as e:
            raise TransportFailure(f"{self.role.value} {self.id}: {e}") from e

    async def close(self, code: int, reason: str) -> None:
        try:
            await self.connection.close(code, reason)
        except (ConnectionClosed, OSError) as e:
            logger.warning("Error cerrando %s %s: %s", self.role.value, self.id, e)

    def terminate(self) -> None:
        """Corta el transporte sin handshake de cierre (peer que no responde)."""
        transport = self.connection.transport
        if transport is not None:
            transport.abort()


@dataclass(eq=False)
class ProducerSlot(Peer):
    """La única ESP32 instalada."""

    role: Role = Role.PRODUCER
    id: str = field(default_factory=lambda: _new_id("esp32"))
    identity: str = ""
    streaming_active: bool = False
    last_pong_at: float | None = None


@dataclass(eq=False)
class SubscriberSession(Peer):
    """Cliente autenticado. El id lo genera el servidor al admitirlo."""

    role: Role = Role.SUBSCRIBER
    id: str = field(default_factory=lambda: _new_id("client"))
    authenticated: bool = True
    is_alive: bool = True

    async def ping(self) -> None:
        """Ping a nivel de protocolo; el pong vuelve a marcar la sesión como viva."""
        try:
            pong_waiter = await self.connection.ping()
        except (ConnectionClosed, OSError) as e:
            raise TransportFailure(f"subscriber {self.id}: {e}") from e
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, waiter: Any) -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        self.is_alive = True

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connected": self.is_open(),
            "joinedAt": int(self.joined_at * 1000),
        }
