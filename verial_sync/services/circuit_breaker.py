# -*- coding: utf-8 -*-
"""
Circuit Breaker - Protección frente a un endpoint remoto caído

Estados:
- closed: todas las llamadas pasan
- open: se rechazan llamadas hasta que pasa recovery_timeout
- half_open: se admiten hasta half_open_max_probes llamadas de prueba;
  un éxito cierra el circuito, un fallo lo vuelve a abrir

El estado vive solo en memoria del proceso y lo modifica únicamente el
ejecutor que lo posee.
"""

import logging
import time
from typing import Callable, Optional

from ..config import CircuitBreakerConfig

_logger = logging.getLogger(__name__)


class CircuitState:
    CLOSED = 'closed'
    OPEN = 'open'
    HALF_OPEN = 'half_open'


class CircuitBreaker:
    """
    Ejemplo:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=5))
        if breaker.allow_request():
            ok = call_remote()
            breaker.record_success() if ok else breaker.record_failure()
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.last_failure_at: Optional[float] = None
        self.half_open_probes = 0
        self.last_probe_at: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _recovery_elapsed(self) -> bool:
        if self.last_failure_at is None:
            return True
        return self._clock() - self.last_failure_at >= self.config.recovery_timeout

    def retry_after(self) -> float:
        """Segundos que faltan para que el circuito admita una prueba"""
        if self.state != CircuitState.OPEN or self.last_failure_at is None:
            return 0.0
        remaining = self.config.recovery_timeout - (self._clock() - self.last_failure_at)
        return max(0.0, remaining)

    def allow_request(self) -> bool:
        """
        Decide si se puede llamar al endpoint

        Transiciona de open a half_open cuando ha pasado recovery_timeout y
        cuenta las pruebas admitidas en half_open.

        Returns:
            True si la llamada puede realizarse
        """
        if not self.enabled:
            return True

        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if not self._recovery_elapsed():
                return False
            self.state = CircuitState.HALF_OPEN
            self.half_open_probes = 0
            _logger.info("Circuit breaker half-open: allowing probe requests")

        if self.half_open_probes >= self.config.half_open_max_probes:
            # Pruebas sin resolver: se vuelve a admitir una tras recovery_timeout
            if (self.last_probe_at is None
                    or self._clock() - self.last_probe_at < self.config.recovery_timeout):
                return False
            _logger.warning("Circuit breaker half-open probes never resolved, admitting a new probe")
            self.half_open_probes = 0
        self.half_open_probes += 1
        self.last_probe_at = self._clock()
        return True

    def record_success(self):
        if not self.enabled:
            return
        if self.state == CircuitState.HALF_OPEN:
            _logger.info("Circuit breaker closed after successful probe")
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.half_open_probes = 0

    def record_failure(self):
        if not self.enabled:
            return
        self.consecutive_failures += 1
        self.last_failure_at = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.half_open_probes = 0
            _logger.warning("Circuit breaker re-opened: probe request failed")
            return

        if (self.state == CircuitState.CLOSED
                and self.consecutive_failures >= self.config.failure_threshold):
            self.state = CircuitState.OPEN
            _logger.error(
                f"Circuit breaker opened after {self.consecutive_failures} consecutive failures "
                f"(threshold={self.config.failure_threshold}, "
                f"recovery in {self.config.recovery_timeout}s)"
            )

    def reset(self):
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.last_failure_at = None
        self.half_open_probes = 0
        self.last_probe_at = None
        _logger.info("Circuit breaker reset")

    def snapshot(self) -> dict:
        return {
            'enabled': self.enabled,
            'state': self.state,
            'consecutive_failures': self.consecutive_failures,
            'last_failure_at': self.last_failure_at,
            'failure_threshold': self.config.failure_threshold,
            'recovery_timeout': self.config.recovery_timeout,
            'half_open_max_probes': self.config.half_open_max_probes,
        }
