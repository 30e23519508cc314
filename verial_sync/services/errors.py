# -*- coding: utf-8 -*-
"""
Taxonomía de errores del conector Verial

Los fallos esperados de una llamada remota son valores (no excepciones):
el ejecutor los devuelve dentro de un ExecutionResult. Solo los errores
de programación (configuración inválida) se lanzan como excepción.
"""

from dataclasses import dataclass
from typing import Optional

RETRYABLE_STATUS_CODES = frozenset(
    {408, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524}
)


class ConfigurationError(ValueError):
    """Configuración inválida (error del programador, no del servidor remoto)"""
    pass


class TransportException(Exception):
    """
    Fallo de red lanzado por un transporte (conexión, DNS, TLS, timeout)

    El ejecutor lo captura y lo convierte en TransportError.
    """

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


@dataclass(frozen=True)
class ErrorKind:
    """Base de todos los errores devueltos como valor"""

    message: str

    kind = 'error'
    retryable = False

    def __str__(self):
        return f"{self.kind}: {self.message}"


@dataclass(frozen=True)
class TransportError(ErrorKind):
    timeout: bool = False

    kind = 'transport'
    retryable = True


@dataclass(frozen=True)
class HttpStatusError(ErrorKind):
    status_code: int = 0
    body: str = ''

    kind = 'http_status'

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES

    def __str__(self):
        return f"HTTP {self.status_code}: {self.message}"


@dataclass(frozen=True)
class ApplicationError(ErrorKind):
    """Error de negocio informado en InfoError (Codigo != 0)"""

    code: Optional[int] = None
    transient: bool = False

    kind = 'application'

    @property
    def retryable(self) -> bool:
        return self.transient

    def __str__(self):
        return f"Verial error {self.code}: {self.message}"


@dataclass(frozen=True)
class DecodeError(ErrorKind):
    """Respuesta 2xx cuyo cuerpo no es JSON válido o no tiene la forma esperada"""

    body_sample: str = ''

    kind = 'decode'


@dataclass(frozen=True)
class UnexpectedError(ErrorKind):
    """Excepción no prevista al enviar o decodificar una petición"""

    exception_type: str = ''

    kind = 'unexpected'


@dataclass(frozen=True)
class CircuitOpenError(ErrorKind):
    retry_after: float = 0.0

    kind = 'circuit_open'


@dataclass(frozen=True)
class MemoryLimitError(ErrorKind):
    usage_mb: float = 0.0
    limit_mb: float = 0.0

    kind = 'memory_limit'


@dataclass(frozen=True)
class CancellationError(ErrorKind):
    kind = 'cancelled'


@dataclass(frozen=True)
class ItemProcessingError(ErrorKind):
    """Excepción inesperada lanzada por la función de procesamiento de un elemento"""

    exception_type: str = ''

    kind = 'item_exception'
