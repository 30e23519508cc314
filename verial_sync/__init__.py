# -*- coding: utf-8 -*-
from .config import (
    BatchConfig,
    CacheConfig,
    CircuitBreakerConfig,
    ExecutorConfig,
    RetryPolicy,
    RetryStrategy,
    Settings,
)
from .models import (
    BatchResult,
    Checkpoint,
    CheckpointStatus,
    ExecutionResult,
    ItemOutcome,
    RequestOptions,
    RequestSpec,
)
from .services.batch_coordinator import BatchCoordinator
from .services.cache_store import CacheStore
from .services.circuit_breaker import CircuitBreaker
from .services.errors import ConfigurationError
from .services.kv_store import InMemoryKVStore, SqliteKVStore
from .services.recovery_store import RecoveryStore
from .services.request_executor import RequestExecutor
from .services.sync_lock import SyncLock
from .services.sync_service import VerialSyncService

__version__ = '1.0.0'
