# -*- coding: utf-8 -*-
"""
Configuración tipada del conector Verial

Los modelos se validan una sola vez al arrancar; los valores de
despliegue se leen del entorno (prefijo VERIAL_).
"""

from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.errors import ConfigurationError

DEFAULT_BASE_URL = 'http://x.verial.org:8000/WcfServiceLibraryVerial'
VERIAL_SERVICE_PATH = '/WcfServiceLibraryVerial'


class RetryStrategy(str, Enum):
    FIXED = 'fixed'
    LINEAR = 'linear'
    EXPONENTIAL = 'exponential'
    CUSTOM = 'custom'


class RetryPolicy(BaseModel):
    """
    Política de reintentos de una llamada remota

    Attributes:
        max_retries: Reintentos además del primer intento
        base_delay: Espera base en segundos
        max_delay: Techo de la espera (se aplica antes del jitter)
        backoff_multiplier: Factor de crecimiento (estrategia exponencial)
        jitter: Variación aleatoria de ±10%
        strategy: fixed | linear | exponential | custom
        custom_delay: Función (attempt, policy) -> segundos para 'custom'
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(3, ge=0, le=20)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    jitter: bool = True
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    custom_delay: Optional[Callable[..., float]] = None

    @classmethod
    def preset(cls, name: str) -> 'RetryPolicy':
        """
        Devuelve una política predefinida

        Args:
            name: critical | standard | background | realtime

        Raises:
            ConfigurationError: Si la política no existe
        """
        try:
            return RETRY_POLICIES[name]
        except KeyError:
            raise ConfigurationError(
                f"Retry policy '{name}' does not exist. "
                f"Available: {', '.join(sorted(RETRY_POLICIES))}"
            ) from None


RETRY_POLICIES: Dict[str, RetryPolicy] = {
    'critical': RetryPolicy(
        max_retries=5, base_delay=2, max_delay=120, backoff_multiplier=2.5,
        jitter=True, strategy=RetryStrategy.EXPONENTIAL,
    ),
    'standard': RetryPolicy(
        max_retries=3, base_delay=1, max_delay=60, backoff_multiplier=2,
        jitter=True, strategy=RetryStrategy.EXPONENTIAL,
    ),
    'background': RetryPolicy(
        max_retries=7, base_delay=5, max_delay=300, backoff_multiplier=1.5,
        jitter=True, strategy=RetryStrategy.LINEAR,
    ),
    'realtime': RetryPolicy(
        max_retries=2, base_delay=0.5, max_delay=5, backoff_multiplier=2,
        jitter=False, strategy=RetryStrategy.EXPONENTIAL,
    ),
}


class CircuitBreakerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    failure_threshold: int = Field(5, ge=1)
    recovery_timeout: float = Field(300.0, ge=0)
    half_open_max_probes: int = Field(3, ge=1)


class CacheConfig(BaseModel):
    """TTL por endpoint (segundos); 'default' se usa si el endpoint no aparece"""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    namespace: str = 'verial_cache'
    ttl: Dict[str, int] = Field(default_factory=lambda: {
        'default': 3600,
        'GetPaisesWS': 86400,
        'GetCategoriasWS': 86400,
        'GetFabricantesWS': 86400,
        'GetStockArticulosWS': 300,
        'GetCondicionesTarifaWS': 1800,
    })

    @field_validator('ttl')
    @classmethod
    def _check_ttl(cls, value):
        if any(ttl < 0 for ttl in value.values()):
            raise ValueError('cache TTL values must be >= 0')
        value.setdefault('default', 3600)
        return value

    def ttl_for(self, endpoint: str) -> int:
        return self.ttl.get(endpoint, self.ttl['default'])


class ExecutorConfig(BaseModel):
    """Configuración de RequestExecutor"""

    model_config = ConfigDict(frozen=True)

    base_url: str = DEFAULT_BASE_URL
    session_id: str = Field(..., min_length=1)
    timeout: float = Field(30.0, gt=0)
    timeouts: Dict[str, float] = Field(default_factory=lambda: {'GET': 30.0, 'POST': 60.0})
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry_transient_errors: bool = True
    transient_codes: Tuple[int, ...] = (-3,)
    user_agent: str = 'VerialSync/1.0'

    @field_validator('timeouts')
    @classmethod
    def _normalize_timeouts(cls, value):
        return {method.upper(): seconds for method, seconds in value.items()}

    def timeout_for(self, method: str) -> float:
        return self.timeouts.get(method.upper(), self.timeout)


# Tamaño de lote por defecto y límites [min, max] por entidad
DEFAULT_BATCH_SIZES = {
    'productos': 20,
    'clientes': 50,
    'pedidos': 50,
    'precios': 20,
}

BATCH_SIZE_LIMITS = {
    'productos': (1, 200),
    'clientes': (1, 200),
    'pedidos': (1, 100),
    'precios': (1, 500),
}

ENTITY_ALIASES = {
    'products': 'productos',
    'customers': 'clientes',
    'orders': 'pedidos',
    'prices': 'precios',
}


def normalize_entity(entity: str) -> str:
    return ENTITY_ALIASES.get(entity, entity)


class BatchConfig(BaseModel):
    """
    Presupuestos del procesamiento por lotes

    Attributes:
        batch_timeout: Segundos de reloj por lote antes de cortarlo
        memory_limit_mb: Techo de memoria (RSS); 0 desactiva el control
        item_max_retries: Reintentos por elemento ante errores recuperables
        cancel_check_interval: Cada cuántos elementos se consulta la cancelación
            dentro de un lote (0 = solo entre lotes)
        checkpoint_ttl: Vida del punto de recuperación en segundos
        notify_on_item_failure: Avisar cuando un elemento agota sus reintentos
    """

    model_config = ConfigDict(frozen=True)

    batch_timeout: float = Field(300.0, gt=0)
    memory_limit_mb: float = Field(256.0, ge=0)
    item_max_retries: int = Field(2, ge=0, le=10)
    cancel_check_interval: int = Field(10, ge=0)
    checkpoint_ttl: int = Field(86400, gt=0)
    notify_on_item_failure: bool = True

    def batch_size_for(self, entity: str, requested: Optional[int] = None) -> int:
        """
        Valida el tamaño de lote para una entidad

        Args:
            entity: Nombre de la entidad (se aceptan alias en inglés)
            requested: Tamaño pedido; None o <= 0 usa el valor por defecto

        Returns:
            Tamaño de lote dentro de los límites de la entidad
        """
        entity = normalize_entity(entity)
        default = DEFAULT_BATCH_SIZES.get(entity, 20)
        if requested is None or requested <= 0:
            requested = default
        low, high = BATCH_SIZE_LIMITS.get(entity, (1, 200))
        return max(low, min(high, int(requested)))


class Settings(BaseSettings):
    """Valores de despliegue leídos del entorno"""

    model_config = SettingsConfigDict(env_prefix='VERIAL_')

    API_URL: str = DEFAULT_BASE_URL
    SESSION_ID: str = ''
    TIMEOUT: float = 30.0
    RETRY_POLICY: str = 'standard'
    CIRCUIT_BREAKER_ENABLED: bool = True
    CACHE_ENABLED: bool = True
    STATE_DB: str = 'verial_state.db'
    BATCH_TIMEOUT: float = 300.0
    MEMORY_LIMIT_MB: float = 256.0
    NOTIFY_ITEM_FAILURES: bool = True
    ADMIN_EMAIL: Optional[str] = None
    SMTP_HOST: str = 'localhost'
    SMTP_PORT: int = 25

    def executor_config(self) -> ExecutorConfig:
        try:
            return ExecutorConfig(
                base_url=self.API_URL,
                session_id=self.SESSION_ID,
                timeout=self.TIMEOUT,
                retry_policy=RetryPolicy.preset(self.RETRY_POLICY),
                circuit_breaker=CircuitBreakerConfig(enabled=self.CIRCUIT_BREAKER_ENABLED),
                cache=CacheConfig(enabled=self.CACHE_ENABLED),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid Verial configuration: {e}") from e

    def batch_config(self) -> BatchConfig:
        try:
            return BatchConfig(
                batch_timeout=self.BATCH_TIMEOUT,
                memory_limit_mb=self.MEMORY_LIMIT_MB,
                notify_on_item_failure=self.NOTIFY_ITEM_FAILURES,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid batch configuration: {e}") from e
