# -*- coding: utf-8 -*-
"""
Modelos de petición y respuesta del API de Verial
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..services.errors import ErrorKind

GET_LIKE_METHODS = frozenset({'GET', 'HEAD', 'DELETE'})
CACHEABLE_METHODS = frozenset({'GET', 'HEAD'})
BODY_METHODS = frozenset({'POST', 'PUT', 'PATCH'})


class RequestOptions(BaseModel):
    """
    Opciones por llamada

    Attributes:
        timeout: Sustituye el timeout configurado para el método
        use_cache: Permite leer/escribir la caché (solo GET/HEAD)
        cache_ttl: Sustituye el TTL configurado para el endpoint
        retry_transient_errors: Reintentar errores de negocio transitorios
            (None = valor del ejecutor)
        headers: Cabeceras adicionales
    """

    model_config = ConfigDict(frozen=True)

    timeout: Optional[float] = Field(None, gt=0)
    use_cache: bool = True
    cache_ttl: Optional[int] = Field(None, ge=0)
    retry_transient_errors: Optional[bool] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class RequestSpec(BaseModel):
    """Llamada lógica al API (antes de añadir el parámetro de sesión)"""

    model_config = ConfigDict(frozen=True)

    method: str = 'GET'
    endpoint: str
    query_params: Dict[str, Any] = Field(default_factory=dict)
    body_params: Dict[str, Any] = Field(default_factory=dict)
    options: RequestOptions = Field(default_factory=RequestOptions)

    @field_validator('method')
    @classmethod
    def _upper_method(cls, value):
        value = value.upper()
        if value not in GET_LIKE_METHODS | BODY_METHODS:
            raise ValueError(f"Unsupported HTTP method: {value}")
        return value

    @field_validator('endpoint')
    @classmethod
    def _strip_endpoint(cls, value):
        value = value.strip()
        if not value.strip('/'):
            raise ValueError('endpoint must not be empty')
        return value

    @property
    def is_get_like(self) -> bool:
        return self.method in GET_LIKE_METHODS

    @property
    def is_cacheable(self) -> bool:
        return self.method in CACHEABLE_METHODS and self.options.use_cache


@dataclass(frozen=True)
class WireRequest:
    """Petición lista para el transporte"""

    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[str]
    timeout: float


@dataclass(frozen=True)
class InfoError:
    codigo: int = 0
    descripcion: str = ''

    @property
    def is_error(self) -> bool:
        return self.codigo != 0


@dataclass(frozen=True)
class Envelope:
    """
    Respuesta decodificada de Verial

    El bloque InfoError se separa del resto del documento, que queda en payload.
    Las respuestas sin InfoError (listas, 204) se tratan como éxito.
    """

    info_error: InfoError = field(default_factory=InfoError)
    payload: Any = None

    @classmethod
    def from_json(cls, data: Any) -> 'Envelope':
        if not isinstance(data, dict) or 'InfoError' not in data:
            return cls(payload=data)

        raw = data.get('InfoError')
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"InfoError must be a JSON object, got {type(raw).__name__}")
        try:
            codigo = int(raw.get('Codigo', 0) or 0)
        except (TypeError, ValueError):
            codigo = -1
        info_error = InfoError(codigo=codigo, descripcion=str(raw.get('Descripcion') or ''))
        payload = {key: value for key, value in data.items() if key != 'InfoError'}
        return cls(info_error=info_error, payload=payload)

    def to_json(self) -> Any:
        if not isinstance(self.payload, dict):
            return self.payload
        document = {'InfoError': {'Codigo': self.info_error.codigo,
                                  'Descripcion': self.info_error.descripcion}}
        document.update(self.payload)
        return document

    @property
    def is_empty(self) -> bool:
        return not self.payload


@dataclass(frozen=True)
class Response:
    status_code: int
    envelope: Envelope
    headers: Dict[str, str] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def data(self) -> Any:
        return self.envelope.payload


@dataclass(frozen=True)
class ExecutionResult:
    """
    Resultado etiquetado de RequestExecutor.execute

    ok == True  -> response presente, error None
    ok == False -> error presente (la respuesta puede acompañar a un ApplicationError)
    """

    response: Optional[Response] = None
    error: Optional[ErrorKind] = None
    retries: int = 0
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def data(self) -> Any:
        return self.response.data if self.response is not None else None
