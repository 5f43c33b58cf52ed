"""
Protocolo de cables: tokens de la ESP32, códigos de cierre y mensajes JSON hacia los clientes.
"""

import json
import time
from typing import Any
from urllib.parse import parse_qs, urlsplit

from errors import ProtocolError

# Canal de la ESP32 (texto)
IDENTIFY_TOKEN = "ESP32"
IDENTIFY_CONFIRMATION = "Connected to Server"
HEARTBEAT_PING = "ping"
HEARTBEAT_PONG = "pong"
STATUS_PREFIX = "STATUS:"
COMMAND_LISTEN = "Listen"
COMMAND_STOP = "Stop"
PRODUCER_SHUTDOWN_NOTICE = "Server shutting down"

# Códigos de cierre WebSocket
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_SERVER_ERROR = 1011
CLOSE_REPLACED = 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def extract_token(path: str | None) -> str | None:
    """Token bearer desde el query string (`/?token=...`). Vacío cuenta como ausente."""
    if not path:
        return None
    values = parse_qs(urlsplit(path).query).get("token")
    if not values or not values[0]:
        return None
    return values[0]


def parse_client_message(raw: str | bytes) -> dict[str, Any]:
    """Decodifica un mensaje de control de un cliente. Lanza ProtocolError si no es válido."""
    if isinstance(raw, bytes):
        raise ProtocolError("Binary messages are not accepted")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError("Invalid JSON format") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Invalid message format")
    return data


def error_message(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message, "timestamp": now_ms()}


def pong_message(client_id: str, echo_id: Any = None) -> dict[str, Any]:
    payload = {"type": "pong", "timestamp": now_ms(), "clientId": client_id}
    if echo_id is not None:
        payload["id"] = echo_id
    return payload


def initial_status(streaming: bool, esp32_connected: bool, client_id: str) -> dict[str, Any]:
    return {
        "type": "status",
        "streaming": streaming,
        "esp32Connected": esp32_connected,
        "clientId": client_id,
        "serverTime": now_ms(),
        "message": "Audio stream active" if streaming else "Waiting for ESP32",
    }


def status_message(snapshot: dict[str, Any], client_id: str) -> dict[str, Any]:
    return {
        "type": "status",
        "streaming": snapshot["streaming"],
        "esp32Connected": snapshot["esp32Connected"],
        "connectedClients": snapshot["connectedClients"],
        "serverUptime": snapshot["serverUptime"],
        "serverTime": now_ms(),
        "clientId": client_id,
    }


def streaming_status(streaming: bool, esp32_connected: bool) -> dict[str, Any]:
    return {
        "type": "streaming-status",
        "streaming": streaming,
        "esp32Connected": esp32_connected,
        "message": "Audio stream started" if streaming else "Audio stream stopped",
        "timestamp": now_ms(),
    }


def esp32_status(line: str) -> dict[str, Any]:
    return {"type": "esp32-status", "status": line, "timestamp": now_ms()}


def command_sent(command: str, client_id: str) -> dict[str, Any]:
    return {"type": "command-sent", "command": command, "clientId": client_id, "timestamp": now_ms()}


def client_list(clients: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "client-list", "clients": clients, "total": len(clients), "timestamp": now_ms()}


def server_shutdown() -> dict[str, Any]:
    return {"type": "server-shutdown", "message": "Server is shutting down", "timestamp": now_ms()}
