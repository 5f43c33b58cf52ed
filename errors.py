"""
Taxonomía de errores del puente: autenticación, protocolo, transporte y latido.
"""


class BridgeError(Exception):
    """Error base del puente."""


class AuthFailure(BridgeError):
    """Token ausente, inválido o autoridad inalcanzable. Se cierra la conexión con 1008."""


class ProtocolError(BridgeError):
    """Mensaje de control mal formado. Se responde con un `error` y la conexión sigue abierta."""


class TransportFailure(BridgeError):
    """Fallo al enviar/recibir o cierre abrupto. La sesión sale del registro sin reintentos."""


class LivenessTimeout(BridgeError):
    """Latido sin respuesta dentro de un intervalo completo."""


class SendTimeout(TransportFailure):
    """El cliente no drenó el envío a tiempo (lector lento o bloqueado)."""
