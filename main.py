"""
Servidor de audio: puente WebSocket entre una ESP32 y las apps cliente.
- ws://<host>:3000: la ESP32 se identifica con "ESP32" y envía frames de audio binarios.
- ws://<host>:3001?token=...: clientes autenticados; reciben el audio y eventos de estado.
- http://<host>:3002: API de estado (health, status, clients).
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings
from lifecycle import Bridge
from routers import status

logger = logging.getLogger(__name__)


def create_app(bridge: Bridge) -> FastAPI:
    """App FastAPI del dashboard. El lifespan arranca y cierra los endpoints WebSocket."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await bridge.start()
        try:
            yield
        finally:
            await bridge.shutdown()

    app = FastAPI(title="Audio WebSocket Bridge", lifespan=lifespan)
    app.state.bridge = bridge

    # CORS - permitir requests desde cualquier origen
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(status.router)

    @app.get("/")
    async def root() -> dict[str, str]:
        s = bridge.settings
        return {
            "service": "Audio WebSocket Bridge",
            "ws_esp32": f"ws://<host>:{s.producer_port}",
            "ws_client": f"ws://<host>:{s.subscriber_port}?token=YOUR_TOKEN",
            "status": f"GET http://<host>:{s.dashboard_port}/status",
            "clients": f"GET http://<host>:{s.dashboard_port}/clients",
        }

    return app


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    settings.log_summary()

    bridge = Bridge(settings)
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(bridge),
            host=settings.host,
            port=settings.dashboard_port,
            log_level=settings.log_level.lower(),
        )
    )

    def request_exit() -> None:
        server.should_exit = True

    bridge.on_exit = request_exit
    try:
        server.run()
    except KeyboardInterrupt:
        pass
    logger.info("Servidor detenido (exit code %d)", bridge.exit_code)
    sys.exit(bridge.exit_code)


if __name__ == "__main__":
    main()
