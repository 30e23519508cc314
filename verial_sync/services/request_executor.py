# -*- coding: utf-8 -*-
"""
Ejecutor de llamadas al API de Verial
Incluye caché de respuestas, circuit breaker y reintentos con backoff
"""

import dataclasses
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

from pydantic import ValidationError

from ..config import VERIAL_SERVICE_PATH, ExecutorConfig, RetryPolicy
from ..models.request import (
    Envelope,
    ExecutionResult,
    RequestOptions,
    RequestSpec,
    Response,
    WireRequest,
)
from .cache_store import CacheStore
from .circuit_breaker import CircuitBreaker
from .errors import (
    ApplicationError,
    CircuitOpenError,
    ConfigurationError,
    DecodeError,
    ErrorKind,
    HttpStatusError,
    TransportError,
    TransportException,
    UnexpectedError,
)
from .retry_policy import TransientErrorClassifier, calculate_delay
from .transport import RequestsTransport, Transport

_logger = logging.getLogger(__name__)

QUERY_SESSION_PARAM = 'x'
BODY_SESSION_PARAM = 'sesionwcf'
SESSION_PARAMS = (QUERY_SESSION_PARAM, BODY_SESSION_PARAM)

VERIAL_ERROR_HINTS = {
    -1: 'Posible número de sesión inválido',
    -2: 'Posible error de autenticación',
    -3: 'Posible servicio no disponible',
}


class RequestExecutor:
    """
    Cliente resiliente para el API de Verial

    Características:
    - Parámetro de sesión presente exactamente una vez en cada petición
    - Caché de respuestas GET con TTL por endpoint
    - Circuit breaker propio de cada instancia
    - Reintentos con backoff (fixed, linear, exponential, custom) y jitter
    - Estadísticas de reintentos y de caché

    Los fallos remotos nunca se lanzan: execute() devuelve un ExecutionResult.
    """

    def __init__(
        self,
        config: ExecutorConfig,
        transport: Optional[Transport] = None,
        cache: Optional[CacheStore] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transient_classifier: Optional[Callable[[ApplicationError], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng=None,
    ):
        """
        Inicializa el ejecutor

        Args:
            config: Configuración validada (URL base, sesión, timeouts, políticas)
            transport: Transporte HTTP (por defecto requests)
            cache: Caché de respuestas; si no se indica y la caché está
                habilitada se usa una caché en memoria
            circuit_breaker: Circuit breaker (por defecto uno nuevo para esta instancia)
            transient_classifier: Predicado para errores de negocio transitorios
            sleep: Función de espera entre reintentos (inyectable en tests)
            rng: Generador aleatorio para el jitter
        """
        self.config = config
        self.transport = transport or RequestsTransport()
        self.cache_enabled = config.cache.enabled
        if cache is None and self.cache_enabled:
            cache = CacheStore(config=config.cache)
        self.cache = cache
        self.circuit_breaker = circuit_breaker or CircuitBreaker(config.circuit_breaker)
        self.transient_classifier = transient_classifier or TransientErrorClassifier(
            codes=config.transient_codes
        )
        self.retry_policy = config.retry_policy
        self._sleep = sleep
        self._rng = rng
        self.last_request_url: Optional[str] = None
        self.reset_retry_stats()

        _logger.info(
            f"RequestExecutor initialized: {config.base_url} "
            f"(timeout={config.timeout}s, retries={self.retry_policy.max_retries}, "
            f"cache={'on' if self.cache_enabled else 'off'}, "
            f"circuit_breaker={'on' if self.circuit_breaker.enabled else 'off'})"
        )

    # ========== Configuración ==========

    def use_retry_policy(self, policy) -> 'RequestExecutor':
        """
        Cambia la política por defecto

        Args:
            policy: RetryPolicy o nombre de una política predefinida

        Returns:
            El propio ejecutor (encadenable)
        """
        if isinstance(policy, str):
            policy = RetryPolicy.preset(policy)
        self.retry_policy = policy
        _logger.info(f"Retry policy updated: {policy.model_dump(exclude={'custom_delay'})}")
        return self

    # ========== Construcción de la petición ==========

    def build_api_url(self, endpoint: str) -> str:
        """
        Construye la URL completa del endpoint

        Si la URL base no tiene ruta se le añade /WcfServiceLibraryVerial.
        """
        base = self.config.base_url.strip()
        if not urlsplit(base).path.strip('/'):
            base = base.rstrip('/') + VERIAL_SERVICE_PATH
        endpoint = endpoint.strip().strip('/')
        if not endpoint:
            return base
        return f"{base.rstrip('/')}/{endpoint}"

    @staticmethod
    def _flatten_params(params: Dict[str, Any]) -> List[Tuple[str, str]]:
        pairs = []
        for key, value in params.items():
            if value is None:
                continue
            values = value if isinstance(value, (list, tuple)) else [value]
            for item in values:
                if isinstance(item, bool):
                    item = 'true' if item else 'false'
                pairs.append((str(key), str(item)))
        return pairs

    def build_wire_request(self, spec: RequestSpec) -> Tuple[WireRequest, List[Tuple[str, str]], str]:
        """
        Construye la petición de red con el parámetro de sesión una sola vez

        GET/HEAD/DELETE llevan la sesión en la query (x); POST/PUT/PATCH en el
        cuerpo JSON (sesionwcf). Si el llamante ya incluyó la sesión (en la URL,
        en la query o en el cuerpo) se respeta su valor y se eliminan las copias.

        Returns:
            (WireRequest, parámetros de query sin sesión, endpoint sin query)
        """
        path, _, embedded_query = spec.endpoint.partition('?')
        query = parse_qsl(embedded_query, keep_blank_values=True)
        query += self._flatten_params(spec.query_params)
        body = dict(spec.body_params)

        session = None
        for key, value in query:
            if key in SESSION_PARAMS:
                session = value
                break
        body_session = body.pop(BODY_SESSION_PARAM, None)
        if session is None:
            session = body_session
        if session is None or session == '':
            session = self.config.session_id

        query = [(key, value) for key, value in query if key not in SESSION_PARAMS]
        plain_query = list(query)

        headers = {'User-Agent': self.config.user_agent, 'Accept': 'application/json'}
        payload = None
        if spec.is_get_like:
            query.append((QUERY_SESSION_PARAM, str(session)))
        else:
            session_value = int(session) if str(session).isdigit() else session
            payload = json.dumps(
                {BODY_SESSION_PARAM: session_value, **body},
                ensure_ascii=False,
                default=str,
            )
            headers['Content-Type'] = 'application/json'
        headers.update(spec.options.headers)

        url = self.build_api_url(path)
        if query:
            url = f"{url}?{urlencode(query)}"

        timeout = spec.options.timeout or self.config.timeout_for(spec.method)
        wire = WireRequest(method=spec.method, url=url, headers=headers, body=payload, timeout=timeout)
        return wire, plain_query, path.strip().strip('/')

    # ========== Ejecución ==========

    def execute(self, spec: RequestSpec, policy: Optional[RetryPolicy] = None) -> ExecutionResult:
        """
        Ejecuta una llamada lógica

        Flujo:
        1. Caché (solo GET/HEAD): un acierto vuelve sin tocar transporte ni circuit breaker
        2. Circuit breaker: si está abierto se falla de inmediato
        3. Bucle de reintentos: errores de red y HTTP {408,429,5xx,520-524} se
           reintentan; el resto de errores son terminales
        4. Éxito: cierra el circuito, guarda en caché y actualiza estadísticas

        Args:
            spec: Petición lógica
            policy: Política de reintentos (por defecto la del ejecutor)

        Returns:
            ExecutionResult con la respuesta o el error
        """
        policy = policy or self.retry_policy
        wire, plain_query, endpoint = self.build_wire_request(spec)
        self.last_request_url = wire.url

        cache_key = None
        if self.cache is not None and self.cache_enabled and spec.is_cacheable:
            cache_key = self.cache.make_key(spec.method, endpoint, self._session_of(wire), plain_query)
            cached = self.cache.get(cache_key)
            envelope = None
            if isinstance(cached, dict):
                try:
                    envelope = Envelope.from_json(cached.get('body'))
                except ValueError:
                    _logger.warning(f"Discarding malformed cache entry for {spec.method} {endpoint}")
                    self.cache.delete(cache_key)
            if envelope is not None:
                _logger.debug(f"Serving {spec.method} {endpoint} from cache")
                response = Response(
                    status_code=cached.get('status_code', 200),
                    envelope=envelope,
                    from_cache=True,
                )
                return ExecutionResult(response=response)

        if not self.circuit_breaker.allow_request():
            retry_after = self.circuit_breaker.retry_after()
            _logger.warning(
                f"Circuit breaker open, rejecting {spec.method} {endpoint} "
                f"(retry in {retry_after:.0f}s)"
            )
            return ExecutionResult(
                error=CircuitOpenError(
                    f"Circuit breaker open for {self.config.base_url}",
                    retry_after=retry_after,
                )
            )

        retry_transient = spec.options.retry_transient_errors
        if retry_transient is None:
            retry_transient = self.config.retry_transient_errors

        last_error: Optional[ErrorKind] = None
        last_response: Optional[Response] = None
        last_status = 0
        attempt = 0

        for attempt in range(policy.max_retries + 1):
            _logger.debug(f"[Attempt {attempt + 1}/{policy.max_retries + 1}] {wire.method} {wire.url}")
            try:
                response, error, status_code = self._send_once(wire, retry_transient)
            except Exception as e:
                _logger.error(f"Unexpected error on {wire.method} {endpoint}: {e}", exc_info=True)
                response, status_code = None, 0
                error = UnexpectedError(str(e), exception_type=type(e).__name__)
            if status_code and error is not None:
                last_status = status_code

            if error is None:
                self.circuit_breaker.record_success()
                if cache_key is not None:
                    self._store_in_cache(cache_key, endpoint, spec.options, response)
                self._update_retry_stats(attempt, True, last_status)
                if attempt:
                    _logger.info(f"{wire.method} {endpoint} succeeded after {attempt} retries")
                return ExecutionResult(response=response, retries=attempt, attempts=attempt + 1)

            last_error, last_response = error, response

            if not error.retryable:
                _logger.error(f"{wire.method} {endpoint} failed with terminal error: {error}")
                self.circuit_breaker.record_failure()
                self._update_retry_stats(attempt, False, last_status)
                return ExecutionResult(
                    response=response, error=error, retries=attempt, attempts=attempt + 1
                )

            if attempt >= policy.max_retries:
                break

            delay = calculate_delay(attempt, policy, self._rng)
            _logger.warning(
                f"{wire.method} {endpoint} failed ({error}), "
                f"retrying in {delay:.2f}s... (attempt {attempt + 1}/{policy.max_retries + 1})"
            )
            self._sleep(delay)

        _logger.error(
            f"{wire.method} {endpoint} failed after {attempt + 1} attempts: {last_error}"
        )
        self.circuit_breaker.record_failure()
        self._update_retry_stats(attempt, False, last_status)
        return ExecutionResult(
            response=last_response, error=last_error, retries=attempt, attempts=attempt + 1
        )

    def _send_once(self, wire: WireRequest, retry_transient: bool):
        """
        Un intento contra el transporte, ya clasificado

        Returns:
            (Response | None, ErrorKind | None, código HTTP o 0)
        """
        try:
            raw = self.transport.send(wire.method, wire.url, wire.headers, wire.body, wire.timeout)
        except TransportException as e:
            return None, TransportError(str(e), timeout=e.timeout), 0

        status = raw.status_code
        if not 200 <= status < 300:
            body = raw.body or ''
            return None, HttpStatusError(
                f"HTTP Error {status}", status_code=status, body=body[:500]
            ), status

        body = raw.body or ''
        if not body.strip():
            return Response(status_code=status, envelope=Envelope(), headers=raw.headers), None, status

        try:
            data = json.loads(body)
        except ValueError:
            _logger.warning(f"Invalid JSON response from {wire.url}")
            return None, DecodeError('Invalid JSON response', body_sample=body[:500]), status

        try:
            envelope = Envelope.from_json(data)
        except ValueError as e:
            _logger.warning(f"Malformed Verial envelope from {wire.url}: {e}")
            return None, DecodeError(str(e), body_sample=body[:500]), status
        response = Response(status_code=status, envelope=envelope, headers=raw.headers)

        if envelope.info_error.is_error:
            error = ApplicationError(
                envelope.info_error.descripcion or 'Unknown Verial error',
                code=envelope.info_error.codigo,
            )
            if retry_transient and self.transient_classifier(error):
                error = dataclasses.replace(error, transient=True)
            return response, error, status

        return response, None, status

    @staticmethod
    def _session_of(wire: WireRequest) -> str:
        for key, value in parse_qsl(urlsplit(wire.url).query):
            if key == QUERY_SESSION_PARAM:
                return value
        return ''

    def _store_in_cache(self, key: str, endpoint: str, options: RequestOptions, response: Response):
        # Solo respuestas 2xx con contenido
        if response is None or response.envelope.is_empty:
            return
        if not 200 <= response.status_code < 300:
            return
        ttl = options.cache_ttl if options.cache_ttl is not None else self.cache.ttl_for(endpoint)
        if ttl <= 0:
            return
        self.cache.set(key, {'status_code': response.status_code,
                             'body': response.envelope.to_json()}, ttl)

    # ========== Verbos ==========

    def _call(self, method, endpoint, params=None, data=None, policy=None, **options) -> ExecutionResult:
        try:
            spec = RequestSpec(
                method=method,
                endpoint=endpoint,
                query_params=params or {},
                body_params=data or {},
                options=RequestOptions(**options),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid request {method} {endpoint!r}: {e}") from e
        return self.execute(spec, policy)

    def get(self, endpoint: str, params: Optional[Dict] = None, policy=None, **options) -> ExecutionResult:
        """
        Petición GET

        Args:
            endpoint: Endpoint de Verial (ej: GetArticulosWS)
            params: Parámetros de query string
            policy: Política de reintentos para esta llamada
            **options: Campos de RequestOptions (timeout, use_cache, ...)
        """
        return self._call('GET', endpoint, params=params, policy=policy, **options)

    def post(self, endpoint: str, data: Dict[str, Any], params: Optional[Dict] = None,
             policy=None, **options) -> ExecutionResult:
        return self._call('POST', endpoint, params=params, data=data, policy=policy, **options)

    def put(self, endpoint: str, data: Dict[str, Any], params: Optional[Dict] = None,
            policy=None, **options) -> ExecutionResult:
        return self._call('PUT', endpoint, params=params, data=data, policy=policy, **options)

    def patch(self, endpoint: str, data: Dict[str, Any], params: Optional[Dict] = None,
              policy=None, **options) -> ExecutionResult:
        return self._call('PATCH', endpoint, params=params, data=data, policy=policy, **options)

    def delete(self, endpoint: str, params: Optional[Dict] = None, policy=None, **options) -> ExecutionResult:
        return self._call('DELETE', endpoint, params=params, policy=policy, **options)

    # ========== Diagnóstico ==========

    def test_connectivity(self) -> Dict[str, Any]:
        """
        Verifica URL y número de sesión llamando a GetPaisesWS sin reintentos

        Returns:
            dict con status ('success' | 'error'), message y details
        """
        _logger.info("Testing Verial API connectivity...")
        result = self.get('GetPaisesWS', policy=RetryPolicy(max_retries=0), use_cache=False)

        if result.ok:
            _logger.info("Verial API connection successful")
            return {
                'status': 'success',
                'message': 'Connection successful',
                'details': {'url': self.last_request_url},
            }

        message = str(result.error)
        if isinstance(result.error, ApplicationError) and result.error.code in VERIAL_ERROR_HINTS:
            message += f" ({VERIAL_ERROR_HINTS[result.error.code]})"
        _logger.error(f"Verial API connection failed: {message}")
        return {
            'status': 'error',
            'message': message,
            'details': {'url': self.last_request_url, 'error_kind': result.error.kind},
        }

    def health_check(self) -> bool:
        return self.test_connectivity()['status'] == 'success'

    # ========== Estadísticas ==========

    def _update_retry_stats(self, retry_count: int, success: bool, status_code: int = 0):
        stats = self._retry_stats
        stats['total_requests'] += 1
        stats['total_retries'] += retry_count
        if success and retry_count > 0:
            stats['success_after_retry'] += 1
        elif not success:
            stats['failed_after_retries'] += 1
        stats['avg_retry_count'] = stats['total_retries'] / stats['total_requests']
        if status_code and retry_count > 0:
            by_code = stats['retry_by_status_code']
            by_code[status_code] = by_code.get(status_code, 0) + 1

    def get_retry_stats(self) -> Dict[str, Any]:
        stats = dict(self._retry_stats)
        stats['retry_by_status_code'] = dict(stats['retry_by_status_code'])
        return stats

    def reset_retry_stats(self) -> 'RequestExecutor':
        self._retry_stats = {
            'total_requests': 0,
            'total_retries': 0,
            'success_after_retry': 0,
            'failed_after_retries': 0,
            'avg_retry_count': 0.0,
            'retry_by_status_code': {},
        }
        return self

    def get_cache_stats(self) -> Dict[str, Any]:
        if self.cache is None:
            return {'hits': 0, 'misses': 0, 'sets': 0, 'hit_ratio': 0.0}
        return self.cache.stats()

    def reset_cache_stats(self):
        if self.cache is not None:
            self.cache.reset_stats()

    def get_system_stats(self) -> Dict[str, Any]:
        """Estadísticas combinadas de reintentos, caché y circuit breaker"""
        retry_stats = self.get_retry_stats()
        cache_stats = self.get_cache_stats()
        breaker = self.circuit_breaker.snapshot()
        return {
            'retry': retry_stats,
            'cache': {
                'enabled': self.cache_enabled,
                'stats': cache_stats,
                'ttl_config': dict(self.config.cache.ttl),
            },
            'circuit_breaker': breaker,
            'performance': {
                'total_requests': retry_stats['total_requests'],
                'cache_hit_ratio': cache_stats['hit_ratio'],
                'avg_retry_count': retry_stats['avg_retry_count'],
                'circuit_breaker_state': breaker['state'],
            },
        }

    def close(self):
        """Cierra el transporte HTTP"""
        self.transport.close()
