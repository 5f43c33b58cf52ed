"""
Endpoints WebSocket: puerto de la ESP32 (productor) y puerto de clientes (con token).
"""

import logging
from typing import TYPE_CHECKING

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed

from errors import AuthFailure, TransportFailure
from protocol import CLOSE_POLICY_VIOLATION, CLOSE_SERVER_ERROR, extract_token
from state import Peer, ProducerSlot, remote_host

if TYPE_CHECKING:
    from lifecycle import Bridge

logger = logging.getLogger(__name__)


async def producer_endpoint(bridge: "Bridge", websocket: ServerConnection) -> None:
    """Endpoint para la ESP32. Solo una conexión identificada a la vez (la última)."""
    host = remote_host(websocket)
    logger.info("Nueva conexión en el puerto ESP32 desde %s", host)
    peer = Peer(connection=websocket)
    try:
        async for message in websocket:
            if isinstance(message, bytes):
                await bridge.relay.relay_frame(peer, message)
            else:
                peer = await bridge.relay.handle_text(peer, message)
    except ConnectionClosed as e:
        logger.warning("Conexión ESP32 %s cerrada con error: %s", host, e)
    except Exception as e:
        logger.exception("Fallo no controlado en la conexión ESP32 %s", host)
        bridge.fail(e)
    finally:
        logger.info(
            "ESP32 desconectada desde %s (code=%s reason=%s)",
            host,
            websocket.close_code,
            websocket.close_reason,
        )
        if isinstance(peer, ProducerSlot):
            await bridge.registry.evict_producer(peer, "disconnect")


async def subscriber_endpoint(bridge: "Bridge", websocket: ServerConnection) -> None:
    """Endpoint para los clientes. El token va en el query string (`?token=...`)."""
    host = remote_host(websocket)
    logger.info("Cliente intentando conectar desde %s", host)
    try:
        token = extract_token(websocket.request.path if websocket.request else None)
        if token is None:
            raise AuthFailure("Authentication token required")
        if not await bridge.gate.validate(token):
            raise AuthFailure("Invalid authentication token")
        session = await bridge.registry.admit_subscriber(websocket)
    except AuthFailure as e:
        logger.warning("Autenticación fallida desde %s: %s", host, e)
        await websocket.close(CLOSE_POLICY_VIOLATION, str(e))
        return
    except TransportFailure as e:
        logger.warning("Cliente %s perdido durante el alta: %s", host, e)
        return
    except Exception:
        logger.exception("Error configurando la conexión del cliente %s", host)
        await websocket.close(CLOSE_SERVER_ERROR, "Server error during authentication")
        return

    reason = "closed"
    try:
        async for message in websocket:
            await bridge.commands.dispatch(session, message)
    except ConnectionClosed as e:
        reason = f"transport error: {e}"
    except Exception as e:
        reason = "server error"
        logger.exception("Fallo no controlado con el cliente %s", session.id)
        bridge.fail(e)
    finally:
        logger.info(
            "Cliente %s desconectado (code=%s reason=%s)",
            session.id,
            websocket.close_code,
            websocket.close_reason,
        )
        bridge.registry.remove_subscriber(session, reason)
