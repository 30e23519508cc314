# -*- coding: utf-8 -*-
"""
Cálculo de esperas entre reintentos y clasificación de errores transitorios
"""

import logging
import random
from typing import Iterable, Optional

from ..config import RetryPolicy, RetryStrategy
from .errors import ApplicationError, ErrorKind

_logger = logging.getLogger(__name__)

# Suelo de la espera con jitter: un reintento nunca sale con espera cero
MIN_JITTER_DELAY = 0.1
JITTER_RATIO = 0.1


def calculate_delay(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """
    Calcula la espera antes del siguiente intento

    Estrategias:
    - fixed: base_delay
    - linear: base_delay + attempt * base_delay
    - exponential: base_delay * backoff_multiplier ** attempt
    - custom: policy.custom_delay(attempt, policy); exponencial si no hay función

    Args:
        attempt: Intento que acaba de fallar (0 = primer intento)
        policy: Política de reintentos
        rng: Generador aleatorio (inyectable en tests)

    Returns:
        Segundos a esperar, dentro de [0, max_delay]
    """
    attempt = max(0, attempt)
    base = policy.base_delay

    if policy.strategy == RetryStrategy.FIXED:
        delay = base
    elif policy.strategy == RetryStrategy.LINEAR:
        delay = base + attempt * base
    elif policy.strategy == RetryStrategy.CUSTOM and policy.custom_delay is not None:
        delay = float(policy.custom_delay(attempt, policy))
    else:
        if policy.strategy == RetryStrategy.CUSTOM:
            _logger.warning("Custom retry strategy without custom_delay, using exponential backoff")
        try:
            delay = base * (policy.backoff_multiplier ** attempt)
        except OverflowError:
            delay = policy.max_delay

    delay = max(0.0, min(delay, policy.max_delay))

    if policy.jitter and delay > 0:
        rng = rng or random
        spread = delay * JITTER_RATIO
        jittered = delay + rng.uniform(-spread, spread)
        jittered = min(jittered, policy.max_delay)
        delay = max(jittered, min(MIN_JITTER_DELAY, delay))

    return delay


def is_retryable(error: Optional[ErrorKind]) -> bool:
    return error is not None and bool(error.retryable)


class TransientErrorClassifier:
    """
    Predicado por defecto para errores de negocio transitorios

    Un error de Verial se considera transitorio si su código está en la lista
    configurada o si la descripción contiene alguna de las expresiones
    conocidas (timeouts, sesión). Se puede sustituir por cualquier callable
    (ApplicationError) -> bool al construir el ejecutor.
    """

    DEFAULT_PATTERNS = (
        'timeout',
        'timed out',
        'tiempo de espera',
        'sesión',
        'sesion',
        'session',
        'temporalmente',
    )

    def __init__(self, codes: Iterable[int] = (-3,), patterns: Iterable[str] = DEFAULT_PATTERNS):
        self.codes = frozenset(codes)
        self.patterns = tuple(p.lower() for p in patterns)

    def __call__(self, error: ApplicationError) -> bool:
        if error.code is not None and error.code in self.codes:
            return True
        message = (error.message or '').lower()
        return any(pattern in message for pattern in self.patterns)
