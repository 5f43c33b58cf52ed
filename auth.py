"""
Validación de tokens de los clientes contra el backend de autenticación (HTTP).

Usa httpx para la llamada asíncrona. Cualquier fallo (red, timeout, status no 2xx,
respuesta sin `valid: true`) se resuelve como token inválido; nunca lanza.
"""

import logging

import httpx

logger = logging.getLogger(__name__)


class AuthGate:
    def __init__(
        self,
        validate_url: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.validate_url = validate_url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def validate(self, token: str | None) -> bool:
        """True solo si la autoridad responde 2xx con `valid` literalmente true."""
        if not token:
            return False
        try:
            response = await self._client.post(
                self.validate_url, json={"token": token}, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.error("Validación de token fallida (%s): %s", self.validate_url, e)
            return False

        if not response.is_success:
            logger.warning(
                "Validación de token rechazada: status=%d body=%s",
                response.status_code,
                response.text[:200],
            )
            return False
        try:
            data = response.json()
        except ValueError:
            logger.warning("Respuesta de validación no es JSON: %s", response.text[:200])
            return False
        return isinstance(data, dict) and data.get("valid") is True
