"""
Endpoints HTTP de estado (puerto del dashboard): health, status y lista de clientes.
"""

import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from pydantic import BaseModel

if TYPE_CHECKING:
    from lifecycle import Bridge

router = APIRouter(tags=["status"])


class BridgeStatus(BaseModel):
    streaming: bool
    esp32Connected: bool
    connectedClients: int
    serverUptime: float
    serverTime: int
    esp32LastPongAgeMs: int | None = None
    framesRelayed: int
    bytesRelayed: int
    framesDropped: int


class ClientInfo(BaseModel):
    id: str
    connected: bool
    joinedAt: int


class ClientList(BaseModel):
    clients: list[ClientInfo]
    total: int


def _bridge(request: Request) -> "Bridge":
    return request.app.state.bridge


@router.get("/health")
async def health(request: Request) -> dict[str, str]:
    bridge = _bridge(request)
    return {"status": "shutting_down" if bridge.shutting_down else "ok"}


@router.get("/status", response_model=BridgeStatus)
async def bridge_status(request: Request) -> BridgeStatus:
    """Estado del streaming y de las conexiones."""
    bridge = _bridge(request)
    producer = bridge.registry.producer
    last_pong = producer.last_pong_at if producer else None
    return BridgeStatus(
        **bridge.registry.snapshot(),
        **bridge.relay.stats(),
        serverTime=int(time.time() * 1000),
        esp32LastPongAgeMs=int((time.time() - last_pong) * 1000) if last_pong else None,
    )


@router.get("/clients", response_model=ClientList)
async def clients(request: Request) -> ClientList:
    subscribers = _bridge(request).registry.list_subscribers()
    return ClientList(clients=[ClientInfo(**c) for c in subscribers], total=len(subscribers))
