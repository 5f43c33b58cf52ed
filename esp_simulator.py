#!/usr/bin/env python3
"""
Simulador de la ESP32 para probar el puente sin el dispositivo.
Se identifica con "ESP32", responde "pong" a cada "ping", transmite chunks de audio
aleatorios (512 bytes cada 500 ms) entre "Listen" y "Stop" y envía líneas STATUS:.
"""

import argparse
import asyncio
import logging
import os
import sys
import time

import websockets

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)

CHUNK_SIZE = 512
CHUNK_INTERVAL_S = 0.5
STATUS_INTERVAL_S = 15
RECONNECT_DELAY_S = 10
DEFAULT_URI = "ws://localhost:3000"


class AudioSource:
    """Estado del micrófono simulado: Listen lo enciende, Stop lo apaga."""

    __slots__ = ("listening", "chunks_sent", "started_at")

    def __init__(self) -> None:
        self.listening = False
        self.chunks_sent = 0
        self.started_at = time.monotonic()

    def handle_command(self, text: str) -> str | None:
        """Aplica un mensaje de texto del servidor. Devuelve la respuesta a enviar, si hay."""
        if text == "ping":
            return "pong"
        if text == "Listen":
            self.listening = True
            logger.info("Listen recibido: transmitiendo audio")
        elif text == "Stop":
            self.listening = False
            logger.info("Stop recibido: audio detenido (%d chunks enviados)", self.chunks_sent)
        elif text == "Connected to Server":
            logger.info("Servidor confirmó la identificación")
        else:
            logger.info("Mensaje del servidor: %s", text)
        return None

    def status_line(self) -> str:
        uptime = int(time.monotonic() - self.started_at)
        state = "listening" if self.listening else "idle"
        return f"STATUS: {state} uptime={uptime}s chunks={self.chunks_sent}"

    def next_chunk(self) -> bytes:
        self.chunks_sent += 1
        return os.urandom(CHUNK_SIZE)


async def _stream_audio(ws, source: AudioSource) -> None:
    while True:
        await asyncio.sleep(CHUNK_INTERVAL_S)
        if source.listening:
            await ws.send(source.next_chunk())


async def _report_status(ws, source: AudioSource) -> None:
    while True:
        await asyncio.sleep(STATUS_INTERVAL_S)
        await ws.send(source.status_line())


async def run_simulator(uri: str, reconnect: bool, listen: bool) -> None:
    while True:
        source = AudioSource()
        source.listening = listen
        try:
            logger.info("Conectando a %s ...", uri)
            async with websockets.connect(uri) as ws:
                await ws.send("ESP32")
                logger.info("Conectado como ESP32. Esperando comandos...")
                tasks = [
                    asyncio.create_task(_stream_audio(ws, source)),
                    asyncio.create_task(_report_status(ws, source)),
                ]
                try:
                    async for raw in ws:
                        if not isinstance(raw, str):
                            continue
                        reply = source.handle_command(raw.strip())
                        if reply is not None:
                            await ws.send(reply)
                finally:
                    for task in tasks:
                        task.cancel()
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Conexión cerrada: %s", e)
        except OSError as e:
            logger.warning("Error de conexión: %s", e)
        if not reconnect:
            break
        logger.info("Reconectando en %s s...", RECONNECT_DELAY_S)
        await asyncio.sleep(RECONNECT_DELAY_S)


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulador ESP32 para probar el puente de audio.")
    parser.add_argument(
        "--uri",
        default=DEFAULT_URI,
        help=f"URI del endpoint de la ESP32 (default: {DEFAULT_URI})",
    )
    parser.add_argument(
        "--no-reconnect",
        action="store_true",
        help="No reconectar tras desconexión (por defecto reconecta a los 10 s)",
    )
    parser.add_argument(
        "--listen",
        action="store_true",
        help="Transmitir audio desde el inicio sin esperar Listen",
    )
    args = parser.parse_args()
    asyncio.run(run_simulator(args.uri, reconnect=not args.no_reconnect, listen=args.listen))


if __name__ == "__main__":
    main()
    sys.exit(0)
