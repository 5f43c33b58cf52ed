"""
Configuración: variables de entorno (.env.local) con valores por defecto.
"""

import logging
import os
from dataclasses import asdict, dataclass

from dotenv import load_dotenv

load_dotenv(".env.local")

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Parámetros del puente. Los tiempos están en segundos."""

    host: str = "0.0.0.0"
    producer_port: int = 3000
    subscriber_port: int = 3001
    dashboard_port: int = 3002
    auth_base_url: str = "http://localhost:8000"
    auth_validate_path: str = "/api/v1/audio/validate-token"
    auth_timeout: float = 5.0
    heartbeat_interval: float = 30.0
    max_payload: int = 10 * 1024 * 1024
    send_timeout: float = 2.0
    shutdown_timeout: float = 3.0
    flush_grace: float = 0.1
    auto_listen: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            host=os.getenv("HOST", defaults.host),
            producer_port=int(os.getenv("ESP32_PORT", defaults.producer_port)),
            subscriber_port=int(os.getenv("APP_PORT", defaults.subscriber_port)),
            dashboard_port=int(os.getenv("DASHBOARD_PORT", defaults.dashboard_port)),
            auth_base_url=os.getenv(
                "AUTH_BASE_URL", os.getenv("LARAVEL_BASE_URL", defaults.auth_base_url)
            ),
            auth_validate_path=os.getenv("AUTH_VALIDATE_PATH", defaults.auth_validate_path),
            auth_timeout=float(os.getenv("AUTH_TIMEOUT", defaults.auth_timeout)),
            heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL", defaults.heartbeat_interval)),
            max_payload=int(os.getenv("MAX_PAYLOAD", defaults.max_payload)),
            send_timeout=float(os.getenv("SEND_TIMEOUT", defaults.send_timeout)),
            shutdown_timeout=float(os.getenv("SHUTDOWN_TIMEOUT", defaults.shutdown_timeout)),
            flush_grace=float(os.getenv("FLUSH_GRACE", defaults.flush_grace)),
            auto_listen=_env_bool("AUTO_LISTEN", defaults.auto_listen),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )

    @property
    def auth_url(self) -> str:
        return self.auth_base_url.rstrip("/") + self.auth_validate_path

    def log_summary(self) -> None:
        """Enumera la configuración una sola vez al arrancar."""
        for key, value in asdict(self).items():
            logger.info("Config %s=%s", key, value)
