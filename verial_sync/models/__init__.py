# -*- coding: utf-8 -*-
from .request import (
    Envelope,
    ExecutionResult,
    InfoError,
    RequestOptions,
    RequestSpec,
    Response,
    WireRequest,
)
from .checkpoint import (
    BatchResult,
    Checkpoint,
    CheckpointStatus,
    FailedItem,
    ItemOutcome,
)
