# -*- coding: utf-8 -*-
"""
Procesamiento por lotes con puntos de recuperación

Divide una colección en lotes, aplica una función por elemento, vigila
tiempo y memoria, guarda el progreso tras cada lote y permite reanudar
una ejecución interrumpida desde el último lote completado.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import psutil

from ..config import BatchConfig, normalize_entity
from ..models.checkpoint import BatchResult, Checkpoint, CheckpointStatus, FailedItem, ItemOutcome
from .errors import (
    CancellationError,
    ConfigurationError,
    ErrorKind,
    ItemProcessingError,
    MemoryLimitError,
)
from .notifier import LoggingNotifier, Notifier
from .recovery_store import RecoveryStore

_logger = logging.getLogger(__name__)

ItemFn = Callable[[Any], Any]

REF_FIELDS = ('Id', 'id', 'ReferenciaBarras', 'sku', 'reference')


def process_memory_mb() -> float:
    """RSS del proceso actual en MB"""
    return psutil.Process().memory_info().rss / 1024 / 1024


def default_item_ref(item) -> str:
    if isinstance(item, dict):
        for name in REF_FIELDS:
            if item.get(name) not in (None, ''):
                return str(item[name])
    return str(item)


class _RunState:
    """Contadores de una invocación de process()"""

    def __init__(self, checkpoint: Checkpoint):
        self.checkpoint = checkpoint
        self.failures: List[FailedItem] = []
        self.item_retries = 0
        self.cancelled = False
        self.memory_exceeded = False
        self.stop_error: Optional[ErrorKind] = None

    def record_success(self):
        self.checkpoint.items_processed += 1

    def record_failure(self, ref: str, reason: str, error: Optional[ErrorKind], batch_index: int):
        self.checkpoint.items_failed += 1
        self.checkpoint.failed_item_refs.append(ref)
        self.failures.append(FailedItem(ref=ref, reason=reason, error=error, batch_index=batch_index))


class BatchCoordinator:
    """
    Coordinador de sincronización por lotes de una entidad

    Ejemplo:
        coordinator = BatchCoordinator('productos', RecoveryStore(kv), filters={'fecha': '2024-01-01'})
        result = coordinator.process(articulos, per_item_fn=sync_articulo)
    """

    def __init__(
        self,
        entity: str,
        recovery_store: RecoveryStore,
        filters: Optional[Dict[str, Any]] = None,
        config: Optional[BatchConfig] = None,
        notifier: Optional[Notifier] = None,
        memory_probe: Optional[Callable[[], float]] = None,
        clock: Callable[[], float] = time.monotonic,
        item_ref: Optional[Callable[[Any], str]] = None,
    ):
        self.entity = normalize_entity(entity)
        self.recovery_store = recovery_store
        self.filters = dict(filters or {})
        self.config = config or BatchConfig()
        self.notifier = notifier or LoggingNotifier()
        self.memory_probe = memory_probe or process_memory_mb
        self.clock = clock
        self.item_ref = item_ref or default_item_ref
        self._cancelled = False

    # ========== Cancelación ==========

    def cancel(self) -> bool:
        """Solicita la parada; se respeta en el siguiente punto de control"""
        self._cancelled = True
        return self.recovery_store.request_cancel(self.entity)

    def is_cancelled(self) -> bool:
        return self._cancelled or self.recovery_store.is_cancel_requested(self.entity)

    # ========== Recuperación ==========

    def check_recovery_point(self) -> Optional[Checkpoint]:
        """Checkpoint reanudable para la entidad y los filtros actuales"""
        checkpoint = self.recovery_store.load(self.entity, self.filters)
        if checkpoint is None or checkpoint.status == CheckpointStatus.COMPLETED:
            return None
        return checkpoint

    def get_recovery_message(self) -> str:
        if self.check_recovery_point() is None:
            return ''
        return self.recovery_store.recovery_message(self.entity, self.filters)

    def clear_recovery_point(self) -> bool:
        return self.recovery_store.clear(self.entity)

    # ========== Proceso ==========

    def process(
        self,
        items: Sequence[Any],
        batch_size: Optional[int] = None,
        per_item_fn: Optional[ItemFn] = None,
        force_restart: bool = False,
    ) -> BatchResult:
        """
        Procesa los elementos por lotes

        Args:
            items: Colección completa (la misma en cada reanudación)
            batch_size: Tamaño de lote; None o <= 0 usa el de la entidad
            per_item_fn: Función item -> ItemOutcome (o bool)
            force_restart: Descarta cualquier checkpoint previo

        Returns:
            BatchResult con los contadores acumulados de la ejecución

        Raises:
            ConfigurationError: Si hay elementos y no se indica per_item_fn
        """
        started = self.clock()
        items = list(items)

        if not items:
            _logger.info(f"No {self.entity} to process")
            return BatchResult(success=True, total=0)
        if per_item_fn is None:
            raise ConfigurationError("per_item_fn is required to process items")

        self._cancelled = False
        self.recovery_store.clear_cancel(self.entity)

        if force_restart:
            self.recovery_store.clear(self.entity)

        checkpoint = None if force_restart else self._resumable_checkpoint(len(items))
        resumed = checkpoint is not None

        if resumed:
            checkpoint = checkpoint.model_copy(deep=True, update={
                'total_items': len(items),
                'status': CheckpointStatus.RUNNING,
            })
            _logger.info(
                f"Resuming {self.entity} sync from batch {checkpoint.last_batch_index + 1} "
                f"(offset {checkpoint.batch_item_offset}, {checkpoint.items_processed} processed)"
            )
        else:
            checkpoint = Checkpoint(
                entity=self.entity,
                filter_fingerprint='',
                batch_size=self.config.batch_size_for(self.entity, batch_size),
                total_items=len(items),
            )
            _logger.info(
                f"Starting {self.entity} sync: {len(items)} items, batch size {checkpoint.batch_size}"
            )

        self._save(checkpoint)
        state = _RunState(checkpoint)

        size = checkpoint.batch_size
        batches = [items[i:i + size] for i in range(0, len(items), size)]

        for batch_index in range(checkpoint.last_batch_index, len(batches)):
            if self._check_stop(state, batch_index):
                break

            finished = self._process_batch(state, batch_index, batches[batch_index], per_item_fn)
            if not finished:
                break

            checkpoint.last_batch_index = batch_index + 1
            checkpoint.batch_item_offset = 0
            self._save(checkpoint)
            _logger.info(
                f"Batch {batch_index + 1}/{len(batches)} done for {self.entity}: "
                f"{checkpoint.items_processed} processed, {checkpoint.items_failed} failed "
                f"({checkpoint.progress_percent}%)"
            )

        return self._finish(state, resumed, started)

    def _resumable_checkpoint(self, total: int) -> Optional[Checkpoint]:
        checkpoint = self.check_recovery_point()
        if checkpoint is None:
            return None
        if checkpoint.last_batch_index * checkpoint.batch_size + checkpoint.batch_item_offset >= total:
            _logger.info(f"Recovery point for {self.entity} already covers every item, starting over")
            self.recovery_store.clear(self.entity)
            return None
        return checkpoint

    def _check_stop(self, state: _RunState, batch_index: int) -> bool:
        """Comprueba cancelación y memoria; marca el estado si hay que parar"""
        if self.is_cancelled():
            state.cancelled = True
            state.stop_error = CancellationError(f"{self.entity} sync cancelled")
            _logger.warning(f"{self.entity} sync cancelled at batch {batch_index + 1}")
            return True

        if self.config.memory_limit_mb:
            usage = self.memory_probe()
            if usage > self.config.memory_limit_mb:
                state.memory_exceeded = True
                error = MemoryLimitError(
                    f"memory usage {usage:.1f}MB exceeds {self.config.memory_limit_mb:.0f}MB",
                    usage_mb=usage,
                    limit_mb=self.config.memory_limit_mb,
                )
                state.stop_error = error
                _logger.error(f"Aborting {self.entity} sync: {error}")
                self.notifier.notify(
                    f"Límite de memoria en sincronización de {self.entity}",
                    f"{error.message}. Último lote completado: {state.checkpoint.last_batch_index}.",
                )
                return True
        return False

    def _process_batch(self, state: _RunState, batch_index: int, batch: List[Any],
                       per_item_fn: ItemFn) -> bool:
        """
        Procesa un lote

        Returns:
            False si la ejecución debe detenerse (cancelación o memoria)
        """
        checkpoint = state.checkpoint
        start = checkpoint.batch_item_offset if batch_index == checkpoint.last_batch_index else 0
        batch_started = self.clock()
        failed_in_batch = 0
        interval = self.config.cancel_check_interval

        for position in range(start, len(batch)):
            handled = position - start
            if interval and handled and handled % interval == 0:
                if self._check_stop(state, batch_index):
                    checkpoint.batch_item_offset = position
                    return False

            if self.clock() - batch_started > self.config.batch_timeout:
                _logger.error(
                    f"Batch {batch_index + 1} for {self.entity} exceeded "
                    f"{self.config.batch_timeout:.0f}s, skipping {len(batch) - position} items"
                )
                self._fail_rest(state, batch_index, batch[position:], 'batch_timeout')
                failed_in_batch += len(batch) - position
                break

            item = batch[position]
            outcome = self._run_item(item, per_item_fn, state)
            if outcome.success:
                state.record_success()
                continue

            ref = self.item_ref(item)
            failed_in_batch += 1
            state.record_failure(ref, 'fatal' if outcome.fatal else 'failed', outcome.error, batch_index)

            if outcome.fatal:
                _logger.error(
                    f"Fatal error on {self.entity} item {ref}, aborting batch {batch_index + 1}: "
                    f"{outcome.error}"
                )
                self._fail_rest(state, batch_index, batch[position + 1:], 'batch_aborted')
                failed_in_batch += len(batch) - position - 1
                break

        if failed_in_batch == len(batch) - start and failed_in_batch:
            self.notifier.notify(
                f"Lote fallido en sincronización de {self.entity}",
                f"Todos los elementos del lote {batch_index + 1} han fallado "
                f"({failed_in_batch} elementos).",
            )
        return True

    def _run_item(self, item, per_item_fn: ItemFn, state: _RunState) -> ItemOutcome:
        """Ejecuta la función de un elemento con reintentos ante errores recuperables"""
        ref = self.item_ref(item)
        attempt = 0
        while True:
            try:
                outcome = self._coerce(per_item_fn(item))
            except Exception as e:
                _logger.error(f"Unexpected error processing {self.entity} item {ref}: {e}", exc_info=True)
                return ItemOutcome.failed(
                    ItemProcessingError(str(e), exception_type=type(e).__name__),
                    fatal=True,
                )

            state.item_retries += outcome.retries
            if outcome.success or outcome.fatal:
                return outcome

            recoverable = outcome.error is None or outcome.error.retryable
            if not recoverable or attempt >= self.config.item_max_retries:
                if recoverable:
                    _logger.warning(f"{self.entity} item {ref} failed after {attempt} retries: {outcome.error}")
                    if self.config.notify_on_item_failure:
                        self.notifier.notify(
                            f"Elemento fallido en sincronización de {self.entity}",
                            f"El elemento {ref} agotó sus reintentos"
                            + (f": {outcome.error}" if outcome.error else "."),
                        )
                else:
                    _logger.warning(f"{self.entity} item {ref} failed: {outcome.error}")
                return outcome

            attempt += 1
            state.item_retries += 1
            _logger.debug(f"Retrying {self.entity} item {ref} ({attempt}/{self.config.item_max_retries})")

    @staticmethod
    def _coerce(result) -> ItemOutcome:
        if isinstance(result, ItemOutcome):
            return result
        if result is None or result is True:
            return ItemOutcome.ok()
        if result is False:
            return ItemOutcome(success=False)
        raise TypeError(f"per_item_fn must return ItemOutcome or bool, got {type(result).__name__}")

    def _fail_rest(self, state: _RunState, batch_index: int, rest: List[Any], reason: str):
        for item in rest:
            state.record_failure(self.item_ref(item), reason, None, batch_index)

    def _save(self, checkpoint: Checkpoint):
        self.recovery_store.save(self.entity, self.filters, checkpoint)

    def _finish(self, state: _RunState, resumed: bool, started: float) -> BatchResult:
        checkpoint = state.checkpoint
        errors = checkpoint.items_failed

        if state.cancelled:
            checkpoint.status = CheckpointStatus.CANCELLED
        elif state.memory_exceeded:
            checkpoint.status = CheckpointStatus.MEMORY_LIMIT
        elif errors:
            checkpoint.status = CheckpointStatus.ERROR
        else:
            checkpoint.status = CheckpointStatus.COMPLETED

        success = checkpoint.status == CheckpointStatus.COMPLETED
        if success:
            self.recovery_store.clear(self.entity)
        else:
            self._save(checkpoint)

        duration_ms = int((self.clock() - started) * 1000)
        _logger.info(
            f"{self.entity} sync finished with status {checkpoint.status.value}: "
            f"{checkpoint.items_processed} processed, {errors} failed in {duration_ms}ms"
        )

        return BatchResult(
            success=success,
            processed=checkpoint.items_processed,
            errors=errors,
            total=checkpoint.total_items,
            failed_items=list(checkpoint.failed_item_refs),
            failures=state.failures,
            cancelled=state.cancelled,
            memory_exceeded=state.memory_exceeded,
            resumed=resumed,
            item_retries=state.item_retries,
            duration_ms=duration_ms,
            error=state.stop_error,
        )
