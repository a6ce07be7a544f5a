"""
Payment settlement core.

Provider-agnostic payment adapters, runtime processor selection and the
scheduled recurring billing engine.
"""

from .engine import RecurringBillingEngine, RunLock, RunSummary
from .errors import (
    NoProcessorAvailable,
    OperationNotSupported,
    ProcessorTimeout,
    ProcessorUnavailable,
    RunInProgress,
    SettlementError,
    UnknownProcessor,
)
from .registry import ProcessorConfig, ProcessorRegistry, Selection, SelectionOptions, build_default_registry
from .results import Decline, InfrastructureError, Success

__all__ = [
    "RecurringBillingEngine",
    "RunLock",
    "RunSummary",
    "NoProcessorAvailable",
    "OperationNotSupported",
    "ProcessorTimeout",
    "ProcessorUnavailable",
    "RunInProgress",
    "SettlementError",
    "UnknownProcessor",
    "ProcessorConfig",
    "ProcessorRegistry",
    "Selection",
    "SelectionOptions",
    "build_default_registry",
    "Decline",
    "InfrastructureError",
    "Success",
]
