# -*- coding: utf-8 -*-
"""
Modelos de progreso de la sincronización por lotes
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..services.errors import ErrorKind


class CheckpointStatus(str, Enum):
    RUNNING = 'running'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    MEMORY_LIMIT = 'memory_limit'
    ERROR = 'error'


class Checkpoint(BaseModel):
    """
    Punto de recuperación de una ejecución por lotes

    last_batch_index cuenta los lotes completados (1-based); batch_item_offset
    indica cuántos elementos del lote siguiente ya se trataron cuando la
    ejecución se detuvo a mitad de lote.
    """

    entity: str
    filter_fingerprint: str
    last_batch_index: int = Field(0, ge=0)
    batch_item_offset: int = Field(0, ge=0)
    batch_size: int = Field(..., ge=1)
    total_items: int = Field(0, ge=0)
    items_processed: int = Field(0, ge=0)
    items_failed: int = Field(0, ge=0)
    failed_item_refs: List[str] = Field(default_factory=list)
    status: CheckpointStatus = CheckpointStatus.RUNNING
    started_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def items_handled(self) -> int:
        return min(
            self.total_items,
            self.last_batch_index * self.batch_size + self.batch_item_offset,
        )

    @property
    def progress_percent(self) -> float:
        if not self.total_items:
            return 0.0
        return round(self.items_handled * 100.0 / self.total_items, 2)

    def eta_seconds(self, now: Optional[float] = None) -> Optional[float]:
        """
        Estima los segundos restantes a partir del ritmo observado

        Returns:
            Segundos estimados, o None si aún no hay ritmo medible
        """
        handled = self.items_handled
        if handled <= 0 or not self.total_items:
            return None
        elapsed = max(0.0, (self.updated_at if now is None else now) - self.started_at)
        remaining = self.total_items - handled
        return round(elapsed / handled * remaining, 1)


@dataclass(frozen=True)
class ItemOutcome:
    """
    Resultado de procesar un elemento

    fatal=True aborta el resto del lote en curso.
    """

    success: bool
    error: Optional[ErrorKind] = None
    retries: int = 0
    fatal: bool = False

    @classmethod
    def ok(cls, retries: int = 0) -> 'ItemOutcome':
        return cls(success=True, retries=retries)

    @classmethod
    def failed(cls, error: ErrorKind, retries: int = 0, fatal: bool = False) -> 'ItemOutcome':
        return cls(success=False, error=error, retries=retries, fatal=fatal)


@dataclass(frozen=True)
class FailedItem:
    ref: str
    reason: str
    error: Optional[ErrorKind] = None
    batch_index: int = 0


@dataclass
class BatchResult:
    success: bool
    processed: int = 0
    errors: int = 0
    total: int = 0
    failed_items: List[str] = field(default_factory=list)
    failures: List[FailedItem] = field(default_factory=list)
    cancelled: bool = False
    memory_exceeded: bool = False
    resumed: bool = False
    item_retries: int = 0
    duration_ms: int = 0
    # Motivo de parada de la ejecución (cancelación o memoria)
    error: Optional[ErrorKind] = None
